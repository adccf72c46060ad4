"""Reconciler: aligns the stored index with the files on disk.

Per path to index:
  read → hash → no-op if unchanged → chunk → embed (reusing embeddings of
  unchanged chunks) → re-read the disk hash (skip as superseded if it moved
  on) → one atomic upsert guarded by the hash observed at the start.

Errors local to one path are collected in ReconcileResult.errors and never
abort the batch; StoreUnavailableError aborts the whole call.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

from compound_docs.db.models import (
    DEFAULT_PROMOTION_LEVEL,
    Chunk,
    Document,
    normalize_promotion_level,
)
from compound_docs.db.repository import Repository
from compound_docs.errors import (
    CompoundDocsError,
    ConflictError,
    ParseError,
    StoreUnavailableError,
)
from compound_docs.ingest.chunker import chunk_document, extract_title, parse_frontmatter
from compound_docs.ingest.embedding_gateway import EmbeddingGateway
from compound_docs.ingest.hashing import SourceFile, read_source
from compound_docs.ingest.links import extract_links
from compound_docs.sync.events import ChangeSet
from compound_docs.sync.watcher import PathFilter
from compound_docs.tenant import TenantContext

logger = logging.getLogger(__name__)


@dataclass
class PathError:
    path: str
    operation: str
    code: str
    message: str
    retryable: bool = False


@dataclass
class ReconcileResult:
    indexed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    superseded: list[str] = field(default_factory=list)
    errors: list[PathError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def retry_changes(self) -> ChangeSet:
        """Retryable failures as a ChangeSet for the next cycle."""
        changes = ChangeSet()
        for err in self.errors:
            if not err.retryable:
                continue
            if err.operation == "delete":
                changes.deleted.append(err.path)
            else:
                changes.modified.append(err.path)
        return changes

    def to_dict(self) -> dict:
        data = asdict(self)
        data["renamed"] = [{"old": o, "new": n} for o, n in self.renamed]
        return data

    def summary(self) -> str:
        return (
            f"{len(self.indexed)} indexed, {len(self.unchanged)} unchanged, "
            f"{len(self.deleted)} deleted, {len(self.renamed)} renamed, "
            f"{len(self.superseded)} superseded, {len(self.errors)} errors"
        )


@dataclass
class _Prepared:
    doc: Document
    chunks: list[Chunk]


class Reconciler:
    """Drives repository mutations from disk state.

    Args:
        repo: The index owner.
        gateway: Embedding capability.
        threshold_lines: Chunking threshold (see ingest.chunker).
        path_filter: Which files under the root are in scope.
    """

    def __init__(
        self,
        repo: Repository,
        gateway: EmbeddingGateway,
        *,
        threshold_lines: int = 500,
        path_filter: PathFilter | None = None,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.threshold_lines = threshold_lines
        self.filter = path_filter or PathFilter(["**/*.md"])

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def reconcile_full(self, tenant: TenantContext, root: Path) -> ReconcileResult:
        """Index every stale or missing file under *root*; delete vanished ones."""
        result = ReconcileResult()
        root = Path(root)
        on_disk = self.filter.walk(root)
        stored = self.repo.list_paths(tenant)

        for path in on_disk:
            self._index(result, tenant, root, path)
        for path in sorted(set(stored) - set(on_disk)):
            self._delete(result, tenant, root, path)

        self._log(tenant, "full reconciliation", result)
        return result

    def reconcile(self, tenant: TenantContext, root: Path, changes: ChangeSet) -> ReconcileResult:
        """Process only the paths in *changes*."""
        result = ReconcileResult()
        root = Path(root)
        for old, new in changes.renamed:
            self._rename(result, tenant, root, old, new)
        for path in changes.deleted:
            self._delete(result, tenant, root, path)
        for path in [*changes.created, *changes.modified]:
            self._index(result, tenant, root, path)
        self._log(tenant, "incremental reconciliation", result)
        return result

    def index_path(self, tenant: TenantContext, root: Path, path: str) -> ReconcileResult:
        """Reconcile a single path (index, or delete if the file is gone)."""
        result = ReconcileResult()
        self._index(result, tenant, Path(root), path)
        return result

    # ------------------------------------------------------------------
    # Per-path work
    # ------------------------------------------------------------------

    def _index(
        self,
        result: ReconcileResult,
        tenant: TenantContext,
        root: Path,
        path: str,
        *,
        retry_conflict: bool = True,
    ) -> None:
        try:
            source = read_source(root / path)
            if source is None:
                self._delete(result, tenant, root, path)
                return

            existing = self.repo.get_by_path(tenant, path)
            if existing is not None and existing.content_hash == source.content_hash:
                result.unchanged.append(path)
                return

            prepared = self._prepare(tenant, path, source, existing)

            fresh = read_source(root / path)
            if fresh is None or fresh.content_hash != source.content_hash:
                logger.debug("%s changed while indexing; leaving it to the next cycle", path)
                result.superseded.append(path)
                return

            stored = self.repo.upsert_document(
                prepared.doc,
                prepared.chunks,
                expected_hash=existing.content_hash if existing else None,
            )
            (result.indexed if stored is not None else result.unchanged).append(path)
        except ConflictError as exc:
            if retry_conflict:
                logger.info("conflict on %s for tenant %s; retrying once", path, tenant.key)
                self._index(result, tenant, root, path, retry_conflict=False)
            else:
                self._record(result, tenant, path, "index", exc)
        except StoreUnavailableError:
            raise
        except CompoundDocsError as exc:
            self._record(result, tenant, path, "index", exc)

    def _delete(self, result: ReconcileResult, tenant: TenantContext, root: Path, path: str) -> None:
        if (root / path).is_file() and self.filter.matches(path):
            # recreated after the delete was observed
            self._index(result, tenant, root, path)
            return
        try:
            if self.repo.delete_by_path(tenant, path):
                result.deleted.append(path)
        except StoreUnavailableError:
            raise
        except CompoundDocsError as exc:
            self._record(result, tenant, path, "delete", exc)

    def _rename(
        self, result: ReconcileResult, tenant: TenantContext, root: Path, old: str, new: str
    ) -> None:
        try:
            existing = self.repo.get_by_path(tenant, old)
            source = read_source(root / new)
            if existing is not None and source is not None:
                _, body = _split_frontmatter(source.content, new)
                self.repo.rename_document(tenant, old, new, extract_links(body, new))
                result.renamed.append((old, new))
        except StoreUnavailableError:
            raise
        except CompoundDocsError as exc:
            self._record(result, tenant, new, "rename", exc)
            return
        # re-indexes the old path if a file is back there
        self._delete(result, tenant, root, old)
        self._index(result, tenant, root, new)

    # ------------------------------------------------------------------
    # Document preparation (pure apart from embedding calls)
    # ------------------------------------------------------------------

    def _prepare(
        self,
        tenant: TenantContext,
        path: str,
        source: SourceFile,
        existing: Document | None,
    ) -> _Prepared:
        frontmatter, body = _split_frontmatter(source.content, path)
        title = extract_title(body, path, frontmatter)
        level = _initial_promotion_level(frontmatter, path)

        try:
            spans = chunk_document(body, self.threshold_lines)
        except ParseError as exc:
            logger.warning("%s: %s; indexing as one unchunked document", path, exc.message)
            spans = []

        doc = Document(
            tenant=tenant,
            relative_path=path,
            content=source.content,
            content_hash=source.content_hash,
            title=title,
            promotion_level=level,
            links=extract_links(body, path),
        )

        if len(spans) <= 1:
            doc.embedding = self.gateway.embed(body if body.strip() else title)
            return _Prepared(doc, [])

        reusable = (
            self.repo.get_chunk_embeddings(tenant, path)
            if existing is not None and existing.chunk_count > 1
            else {}
        )
        chunks = []
        for span in spans:
            embedding = reusable.get(span.content_hash) or self.gateway.embed(span.content)
            chunks.append(
                Chunk(
                    chunk_index=span.index,
                    heading_path=span.heading_path,
                    content=span.content,
                    content_hash=span.content_hash,
                    embedding=embedding,
                )
            )
        logger.debug(
            "%s: %d chunks, %d embeddings reused",
            path,
            len(chunks),
            sum(1 for s in spans if s.content_hash in reusable),
        )
        return _Prepared(doc, chunks)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _record(
        self,
        result: ReconcileResult,
        tenant: TenantContext,
        path: str,
        operation: str,
        exc: CompoundDocsError,
    ) -> None:
        logger.warning(
            "%s failed for %s (tenant %s): [%s] %s", operation, path, tenant.key, exc.code, exc.message
        )
        result.errors.append(
            PathError(
                path=path,
                operation=operation,
                code=exc.code,
                message=exc.message,
                retryable=exc.retryable,
            )
        )

    def _log(self, tenant: TenantContext, what: str, result: ReconcileResult) -> None:
        if result.indexed or result.deleted or result.renamed or result.errors:
            logger.info("%s for %s: %s", what, tenant.key, result.summary())


def _split_frontmatter(content: str, path: str) -> tuple[dict, str]:
    try:
        return parse_frontmatter(content)
    except ParseError as exc:
        logger.warning("%s: %s; ignoring frontmatter", path, exc.message)
        return {}, content


def _initial_promotion_level(frontmatter: dict, path: str) -> str:
    raw = frontmatter.get("promotion_level")
    if raw is None:
        return DEFAULT_PROMOTION_LEVEL
    try:
        return normalize_promotion_level(str(raw))
    except CompoundDocsError:
        logger.warning("%s: unknown promotion_level %r; using %s", path, raw, DEFAULT_PROMOTION_LEVEL)
        return DEFAULT_PROMOTION_LEVEL
