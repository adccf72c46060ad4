"""Typed filesystem change events and settled change sets."""

from __future__ import annotations

from dataclasses import dataclass, field

CREATED = "created"
MODIFIED = "modified"
DELETED = "deleted"
RENAMED = "renamed"

CHANGE_KINDS: tuple[str, ...] = (CREATED, MODIFIED, DELETED, RENAMED)


@dataclass(frozen=True)
class ChangeEvent:
    """One raw notification. Paths are POSIX, relative to the watched root.

    For ``renamed`` events *path* is the new path and *old_path* the old one.
    """

    kind: str
    path: str
    old_path: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in CHANGE_KINDS:
            raise ValueError(f"Unknown change kind {self.kind!r}")
        if self.kind == RENAMED and not self.old_path:
            raise ValueError("renamed events need old_path")


@dataclass
class ChangeSet:
    """Settled changes for one root. A path appears in at most one list."""

    created: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)  # (old, new)

    def __bool__(self) -> bool:
        return bool(self.created or self.modified or self.deleted or self.renamed)

    def __len__(self) -> int:
        return len(self.created) + len(self.modified) + len(self.deleted) + len(self.renamed)

    def events(self) -> list[ChangeEvent]:
        """Flatten back into events (renames first so later entries win)."""
        out = [ChangeEvent(RENAMED, new, old) for old, new in self.renamed]
        out += [ChangeEvent(DELETED, p) for p in self.deleted]
        out += [ChangeEvent(CREATED, p) for p in self.created]
        out += [ChangeEvent(MODIFIED, p) for p in self.modified]
        return out

    def merge(self, later: ChangeSet) -> ChangeSet:
        """Coalesce *later* on top of this set (used for overflow and retries)."""
        from compound_docs.sync.debouncer import coalesce_events

        return coalesce_events(self.events() + later.events())

    def paths(self) -> set[str]:
        out = set(self.created) | set(self.modified) | set(self.deleted)
        for old, new in self.renamed:
            out.update((old, new))
        return out
