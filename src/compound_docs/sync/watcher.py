"""Directory watcher: watchdog notifications → Debouncer → bounded queue.

One watcher per root. The watchdog observer thread records raw events into
the Debouncer; a ticker thread drains settled paths at most once per
debounce window and hands the ChangeSet to the reconcile worker through a
bounded ``queue.Queue``. When the queue is full the ChangeSet is held as
overflow and coalesced with later changes; events are never dropped.
"""

from __future__ import annotations

import fnmatch
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from compound_docs.sync.debouncer import Debouncer
from compound_docs.sync.events import CREATED, DELETED, MODIFIED, RENAMED, ChangeEvent, ChangeSet

logger = logging.getLogger(__name__)


class PathFilter:
    """Include/exclude glob matching on root-relative POSIX paths.

    A leading ``**/`` also matches at the root, so ``**/*.md`` covers
    ``README.md`` as well as ``docs/a/b.md``.
    """

    def __init__(self, include: Iterable[str], exclude: Iterable[str] = ()) -> None:
        self.include = list(include)
        self.exclude = list(exclude)

    @staticmethod
    def _match(path: str, pattern: str) -> bool:
        if fnmatch.fnmatchcase(path, pattern):
            return True
        while pattern.startswith("**/"):
            pattern = pattern[3:]
            if fnmatch.fnmatchcase(path, pattern):
                return True
        return False

    def matches(self, rel_path: str) -> bool:
        if not rel_path or rel_path.startswith("../"):
            return False
        if any(self._match(rel_path, p) for p in self.exclude):
            return False
        return any(self._match(rel_path, p) for p in self.include)

    def walk(self, root: Path) -> list[str]:
        """Return every matching file under *root* as sorted relative paths."""
        found = []
        for p in root.rglob("*"):
            if p.is_file():
                rel = p.relative_to(root).as_posix()
                if self.matches(rel):
                    found.append(rel)
        return sorted(found)


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: DirectoryWatcher) -> None:
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.handle_fs_event(CREATED, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.handle_fs_event(MODIFIED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.handle_fs_event(DELETED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.handle_fs_event(RENAMED, event.src_path, event.dest_path)


class DirectoryWatcher:
    """Watch *root* and publish settled ChangeSets to *out_queue*.

    Args:
        root: Directory to watch (recursive).
        out_queue: Bounded queue consumed by the reconcile worker.
        debounce: Debounce window in seconds.
        path_filter: Which files are in scope.
        clock: Monotonic clock; injectable for tests.
        observer_factory: Builds the watchdog observer.
    """

    def __init__(
        self,
        root: Path,
        out_queue: queue.Queue,
        *,
        debounce: float = 0.5,
        path_filter: PathFilter | None = None,
        clock: Callable[[], float] = time.monotonic,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self.root = Path(root).resolve()
        self.queue = out_queue
        self.debounce = debounce
        self.filter = path_filter or PathFilter(["**/*.md"])
        self._clock = clock
        self._observer_factory = observer_factory
        self._debouncer = Debouncer(debounce)
        self._overflow = ChangeSet()
        self._last_emit: float | None = None
        self._cond = threading.Condition()
        self._stopped = threading.Event()
        self._observer: Observer | None = None
        self._ticker: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        observer = self._observer_factory()
        observer.daemon = True
        observer.schedule(_Handler(self), str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        self._ticker = threading.Thread(
            target=self._run, name=f"compound-docs-debounce:{self.root.name}", daemon=True
        )
        self._ticker.start()
        logger.info("watching %s (debounce %.0f ms)", self.root, self.debounce * 1000)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop accepting events; pending, unsettled events are discarded."""
        self._stopped.set()
        with self._cond:
            self._cond.notify_all()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=timeout)
        if self._ticker is not None:
            self._ticker.join(timeout=timeout)
        logger.info("stopped watching %s", self.root)

    @property
    def running(self) -> bool:
        return self._observer is not None and not self._stopped.is_set()

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def handle_fs_event(self, kind: str, src_path: str, dest_path: str | None = None) -> None:
        """Translate one absolute-path notification and feed the Debouncer."""
        if self._stopped.is_set():
            return
        src = self._relative(src_path)
        if kind == RENAMED:
            dest = self._relative(dest_path) if dest_path else None
            src_in = src is not None and self.filter.matches(src)
            dest_in = dest is not None and self.filter.matches(dest)
            if src_in and dest_in:
                event = ChangeEvent(RENAMED, dest, src)
            elif src_in:
                event = ChangeEvent(DELETED, src)
            elif dest_in:
                event = ChangeEvent(CREATED, dest)
            else:
                return
        else:
            if src is None or not self.filter.matches(src):
                return
            event = ChangeEvent(kind, src)
        self.record(event)

    def record(self, event: ChangeEvent) -> None:
        with self._cond:
            self._debouncer.record(event, self._clock())
            self._cond.notify_all()

    def _relative(self, path: str | None) -> str | None:
        if not path:
            return None
        try:
            return Path(path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def tick(self, now: float | None = None) -> bool:
        """Drain settled paths and try to enqueue them. Returns True if enqueued."""
        now = self._clock() if now is None else now
        with self._cond:
            if self._last_emit is not None and now - self._last_emit < self.debounce:
                return False
            settled = self._debouncer.drain(now)
            batch = self._overflow.merge(settled) if self._overflow else settled
            self._overflow = ChangeSet()
            if not batch:
                return False
            try:
                self.queue.put_nowait(batch)
            except queue.Full:
                self._overflow = batch
                logger.warning(
                    "reconcile queue full for %s; holding %d changes", self.root, len(batch)
                )
                return False
            self._last_emit = now
            return True

    def _wait_timeout(self, now: float) -> float | None:
        candidates = []
        deadline = self._debouncer.next_deadline()
        if deadline is not None:
            candidates.append(deadline - now)
        if self._overflow:
            candidates.append(self.debounce)
        if not candidates:
            return None
        timeout = max(0.0, min(candidates))
        if self._last_emit is not None:
            timeout = max(timeout, self._last_emit + self.debounce - now)
        return timeout

    def _run(self) -> None:
        while not self._stopped.is_set():
            with self._cond:
                timeout = self._wait_timeout(self._clock())
                if timeout is None or timeout > 0:
                    self._cond.wait(timeout)
            if self._stopped.is_set():
                break
            self.tick()
