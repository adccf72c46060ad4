"""Debouncer: a pure state machine keyed by path, one deadline per path.

No threads and no timers: callers feed events with ``record(event, now)`` and
collect settled paths with ``drain(now)``. A path settles once ``window``
seconds passed since its last event.

Coalescing (previous pending kind + incoming kind → pending kind):

    created  + modified  → created
    renamed  + modified  → renamed
    deleted  + created   → modified     (file replaced)
    created  + deleted   → deleted      (idempotent delete keeps the index clean)
    renamed  + deleted   → deleted at both old and new path
    any      + deleted   → deleted
    a → b    with a pending created   → created b
    a → b    with a pending renamed from x → renamed x → b (x → a → x: modified x)
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from compound_docs.sync.events import (
    CREATED,
    DELETED,
    MODIFIED,
    RENAMED,
    ChangeEvent,
    ChangeSet,
)


@dataclass
class _Pending:
    kind: str
    deadline: float
    old_path: str | None = None


class Debouncer:
    def __init__(self, window: float = 0.5) -> None:
        if window < 0:
            raise ValueError(f"window must be >= 0, got {window}")
        self.window = window
        self._pending: dict[str, _Pending] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def pending_kind(self, path: str) -> str | None:
        entry = self._pending.get(path)
        return entry.kind if entry else None

    def next_deadline(self) -> float | None:
        """Earliest deadline among pending paths, or None when idle."""
        if not self._pending:
            return None
        return min(p.deadline for p in self._pending.values())

    def record(self, event: ChangeEvent, now: float) -> None:
        deadline = now + self.window
        if event.kind == RENAMED:
            self._record_rename(event.old_path or "", event.path, deadline)
            return

        prev = self._pending.get(event.path)
        kind = event.kind
        old_path: str | None = None

        if prev is not None:
            if event.kind == MODIFIED:
                if prev.kind in (CREATED, RENAMED):
                    kind, old_path = prev.kind, prev.old_path
                else:
                    kind = MODIFIED
            elif event.kind == CREATED:
                if prev.kind == DELETED:
                    kind = MODIFIED
                elif prev.kind == RENAMED:
                    kind, old_path = RENAMED, prev.old_path
                elif prev.kind == CREATED:
                    kind = CREATED
            elif event.kind == DELETED and prev.kind == RENAMED and prev.old_path:
                self._set(prev.old_path, _Pending(DELETED, deadline))

        self._set(event.path, _Pending(kind, deadline, old_path))

    def _record_rename(self, old: str, new: str, deadline: float) -> None:
        prev = self._pending.pop(old, None)
        if prev is None or prev.kind == MODIFIED:
            entry = _Pending(RENAMED, deadline, old)
        elif prev.kind == CREATED:
            entry = _Pending(CREATED, deadline)
        elif prev.kind == RENAMED:
            if prev.old_path == new:
                entry = _Pending(MODIFIED, deadline)
            else:
                entry = _Pending(RENAMED, deadline, prev.old_path)
        else:  # pending delete at the source: treat the target as new
            self._set(old, prev)
            entry = _Pending(CREATED, deadline)
        self._set(new, entry)

    def _set(self, path: str, entry: _Pending) -> None:
        self._pending[path] = entry

    def drain(self, now: float) -> ChangeSet:
        """Remove and return every path whose deadline is at or before *now*."""
        settled = sorted(p for p, e in self._pending.items() if e.deadline <= now)
        changes = ChangeSet()
        for path in settled:
            entry = self._pending.pop(path)
            if entry.kind == CREATED:
                changes.created.append(path)
            elif entry.kind == MODIFIED:
                changes.modified.append(path)
            elif entry.kind == DELETED:
                changes.deleted.append(path)
            else:
                changes.renamed.append((entry.old_path or "", path))
        return changes

    def drain_all(self) -> ChangeSet:
        return self.drain(math.inf)


def coalesce_events(events: list[ChangeEvent]) -> ChangeSet:
    """Apply the coalescing rules to *events* in order and return the result."""
    debouncer = Debouncer(window=0.0)
    for event in events:
        debouncer.record(event, now=0.0)
    return debouncer.drain_all()
