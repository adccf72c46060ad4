"""Per-tenant reconcile worker consuming the watcher's bounded queue."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from pathlib import Path

from compound_docs.errors import CompoundDocsError
from compound_docs.sync.events import ChangeSet
from compound_docs.sync.reconciler import Reconciler, ReconcileResult
from compound_docs.tenant import TenantContext

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.5


class ReconcileWorker:
    """Process ChangeSets for one tenant sequentially on a background thread.

    Retryable per-path failures are kept and merged into the next ChangeSet,
    or retried on their own after ``retry_interval`` seconds of idleness.
    Whole-batch failures (store unavailable, unexpected errors) keep the
    entire batch for retry and the thread carries on.
    """

    def __init__(
        self,
        tenant: TenantContext,
        root: Path,
        reconciler: Reconciler,
        in_queue: queue.Queue,
        *,
        retry_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_result: Callable[[ReconcileResult], None] | None = None,
    ) -> None:
        self.tenant = tenant
        self.root = Path(root)
        self.reconciler = reconciler
        self.queue = in_queue
        self.retry_interval = retry_interval
        self._clock = clock
        self._on_result = on_result
        self._retry = ChangeSet()
        self._retry_since: float | None = None
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_result: ReconcileResult | None = None
        self.cycles = 0

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"compound-docs-reconcile:{self.tenant.key}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        """Let the current ChangeSet finish, then exit. Queued work is abandoned."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("reconcile worker for %s did not stop in %.0fs", self.tenant.key, timeout)

    @property
    def pending_retries(self) -> int:
        return len(self._retry)

    def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                changes = self.queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._retry_due():
                    self.process(ChangeSet())
                continue
            try:
                self.process(changes)
            finally:
                self.queue.task_done()

    def _retry_due(self) -> bool:
        return bool(self._retry) and (
            self._retry_since is None or self._clock() - self._retry_since >= self.retry_interval
        )

    def process(self, changes: ChangeSet) -> ReconcileResult | None:
        """Reconcile *changes* merged with outstanding retries."""
        batch = self._retry.merge(changes) if self._retry else changes
        self._retry = ChangeSet()
        if not batch:
            return None
        try:
            result = self.reconciler.reconcile(self.tenant, self.root, batch)
        except CompoundDocsError as exc:
            logger.error(
                "reconciliation aborted for %s (%d changes kept for retry): %s",
                self.tenant.key,
                len(batch),
                exc,
            )
            self._keep_for_retry(batch)
            return None
        except Exception:
            logger.exception(
                "reconcile cycle failed for %s (%d changes kept for retry)",
                self.tenant.key,
                len(batch),
            )
            self._keep_for_retry(batch)
            return None

        self.cycles += 1
        self.last_result = result
        retry = result.retry_changes()
        if retry:
            self._keep_for_retry(retry)
            logger.info("%d paths scheduled for retry on %s", len(retry), self.tenant.key)
        if self._on_result is not None:
            self._on_result(result)
        return result

    def _keep_for_retry(self, changes: ChangeSet) -> None:
        self._retry = changes
        self._retry_since = self._clock()
