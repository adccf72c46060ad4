"""Tenant identity: (project, branch, path hash) isolation boundary."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from compound_docs.errors import InvalidArgumentError

_PATH_HASH_LEN = 16
_DEFAULT_BRANCH = "main"


def normalize_root(path: Path | str) -> str:
    """Return an absolute POSIX form of *path* without a trailing slash."""
    text = str(Path(path).expanduser().resolve()).replace("\\", "/")
    return text.rstrip("/") or "/"


def compute_path_hash(path: Path | str) -> str:
    """First 16 lowercase hex chars of SHA-256 over the normalized root path."""
    return hashlib.sha256(normalize_root(path).encode("utf-8")).hexdigest()[:_PATH_HASH_LEN]


def detect_branch(root: Path) -> str:
    """Read the current branch from ``.git/HEAD``; fall back to ``main``.

    A detached HEAD yields the short commit hash.
    """
    head = root / ".git" / "HEAD"
    try:
        text = head.read_text(encoding="utf-8").strip()
    except OSError:
        return _DEFAULT_BRANCH
    if text.startswith("ref:"):
        return text.split("refs/heads/", 1)[-1].strip() or _DEFAULT_BRANCH
    return text[:7] or _DEFAULT_BRANCH


@dataclass(frozen=True)
class TenantContext:
    """Immutable isolation key; every stored row is scoped by it."""

    project_name: str
    branch_name: str
    path_hash: str

    def __post_init__(self) -> None:
        for name in ("project_name", "branch_name", "path_hash"):
            value = getattr(self, name)
            if not value or ":" in value:
                raise InvalidArgumentError(
                    f"Invalid tenant {name} {value!r}: must be non-empty and contain no ':'",
                    operation="tenant",
                )

    @property
    def key(self) -> str:
        return f"{self.project_name}:{self.branch_name}:{self.path_hash}"

    def __str__(self) -> str:
        return self.key

    @classmethod
    def for_project(cls, root: Path | str, branch: str | None = None) -> TenantContext:
        """Derive the tenant for a project rooted at *root*."""
        root_path = Path(root).expanduser().resolve()
        return cls(
            project_name=root_path.name or "root",
            branch_name=branch or detect_branch(root_path),
            path_hash=compute_path_hash(root_path),
        )

    @classmethod
    def parse(cls, key: str) -> TenantContext:
        parts = key.split(":")
        if len(parts) != 3:
            raise InvalidArgumentError(
                f"Tenant key {key!r} must have the form project:branch:path_hash",
                operation="tenant",
            )
        return cls(*parts)
