"""Content hashing (no-op detection fingerprint)."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from compound_docs.errors import FileSystemError


def compute_hash(text: str) -> str:
    """SHA-256 hex digest of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SourceFile:
    content: str
    content_hash: str


def read_source(path: Path) -> SourceFile | None:
    """Read and fingerprint a Markdown file.

    Returns:
        SourceFile, or ``None`` if the file no longer exists (treated as a delete).

    Raises:
        FileSystemError: Unreadable file or invalid UTF-8.
    """
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    except IsADirectoryError:
        return None
    except OSError as exc:
        raise FileSystemError(f"Cannot read file: {exc.strerror or exc}", path=str(path)) from exc
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise FileSystemError(f"File is not valid UTF-8: {exc.reason}", path=str(path)) from exc
    return SourceFile(content=content, content_hash=hashlib.sha256(raw).hexdigest())
