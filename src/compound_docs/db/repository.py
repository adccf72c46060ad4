"""Repository for all compound-docs index state.

Single owner of persisted state: documents, chunks, vec embeddings, links.
Every public method is tenant-scoped and runs as one transaction under an
internal lock, so callers never hold a lock across calls.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from compound_docs.db.models import (
    DEFAULT_PROMOTION_LEVEL,
    PROMOTION_LEVELS,
    Chunk,
    Document,
    SearchHit,
    normalize_promotion_level,
    promotion_rank,
)
from compound_docs.db.vectors import ensure_vec_tables, model_to_slug
from compound_docs.errors import (
    ConflictError,
    EmbeddingError,
    NotFoundError,
    StoreUnavailableError,
)
from compound_docs.tenant import TenantContext

logger = logging.getLogger(__name__)

_NOW = "strftime('%Y-%m-%d %H:%M:%f', 'now')"
# float32 storage makes "exactly equal" scores drift in the last digits
_SCORE_DECIMALS = 6
# Scores below min_relevance are excluded, allowing this much float32 drift.
_SCORE_TOLERANCE = 1e-6

_DOC_COLUMNS = (
    "id, tenant_key, project_name, branch_name, path_hash, relative_path, title, "
    "content, content_hash, promotion_level, chunk_count, created_at, updated_at"
)


class Repository:
    """Data access layer for documents, chunks, embeddings and links.

    Wraps an open sqlite3.Connection (see compound_docs.db.connection) and
    provides typed methods. The connection is owned by the caller.

    Args:
        conn: Open connection with sqlite-vec loaded and migrations applied.
        embedding_model: Provider/model string; selects the vec tables.
        dimensions: Fixed embedding dimension enforced on every write.
    """

    def __init__(
        self, conn: sqlite3.Connection, embedding_model: str, dimensions: int
    ) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self.embedding_model = embedding_model
        self.dimensions = dimensions
        with self._lock:
            self._vec_documents, self._vec_chunks = ensure_vec_tables(
                conn, model_to_slug(embedding_model), dimensions
            )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str, tenant: TenantContext | None = None) -> Iterator[None]:
        """BEGIN IMMEDIATE … COMMIT, rolled back on any exception."""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise StoreUnavailableError(
                    f"Database unavailable: {exc}",
                    tenant=tenant.key if tenant else None,
                    operation=operation,
                ) from exc
            try:
                yield
            except sqlite3.OperationalError as exc:
                self._conn.execute("ROLLBACK")
                raise StoreUnavailableError(
                    f"Database unavailable: {exc}",
                    tenant=tenant.key if tenant else None,
                    operation=operation,
                ) from exc
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    @contextmanager
    def _reading(self, operation: str, tenant: TenantContext | None = None) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except sqlite3.OperationalError as exc:
                raise StoreUnavailableError(
                    f"Database unavailable: {exc}",
                    tenant=tenant.key if tenant else None,
                    operation=operation,
                ) from exc

    def _bump(self, tenant: TenantContext) -> None:
        # caller holds an open write transaction
        self._conn.execute(
            "INSERT INTO tenant_generations (tenant_key, generation) VALUES (?, 1) "
            "ON CONFLICT(tenant_key) DO UPDATE SET generation = generation + 1",
            (tenant.key,),
        )

    def generation(self, tenant: TenantContext) -> int:
        """Monotonic write counter for *tenant*; changes whenever links may have changed.

        Stored in the index file, so writes from other connections count too.
        """
        with self._reading("generation", tenant):
            row = self._conn.execute(
                "SELECT generation FROM tenant_generations WHERE tenant_key = ?", (tenant.key,)
            ).fetchone()
        return row[0] if row is not None else 0

    # ------------------------------------------------------------------
    # Document writes
    # ------------------------------------------------------------------

    def upsert_document(
        self,
        doc: Document,
        chunks: list[Chunk],
        expected_hash: str | None = None,
    ) -> Document | None:
        """Atomically replace a Document row, its chunk set, embeddings and links.

        Args:
            doc: Document to store. ``doc.embedding`` is required when
                *chunks* has fewer than two entries (unchunked document).
            chunks: Replacement chunk set (each with an embedding), or ``[]``.
            expected_hash: Content hash the caller observed before doing its
                work (``None`` if no row existed).

        Returns:
            The stored Document, or ``None`` if the stored hash already equals
            ``doc.content_hash`` (nothing written).

        Raises:
            ConflictError: A concurrent writer committed a different hash.
            EmbeddingError: An embedding has the wrong dimension.
            StoreUnavailableError: Transport-level failure.
        """
        tenant = doc.tenant
        chunked = len(chunks) > 1
        self._check_embeddings(doc, chunks if chunked else [], chunked)

        with self._transaction("upsert_document", tenant):
            existing = self._conn.execute(
                "SELECT id, content_hash, promotion_level FROM documents "
                "WHERE tenant_key = ? AND relative_path = ?",
                (tenant.key, doc.relative_path),
            ).fetchone()

            if existing is not None:
                if existing["content_hash"] == doc.content_hash:
                    return None
                if existing["content_hash"] != expected_hash:
                    raise ConflictError(
                        "Document changed by a concurrent writer "
                        f"(stored {existing['content_hash'][:12]}, expected "
                        f"{(expected_hash or 'none')[:12]})",
                        path=doc.relative_path,
                        tenant=tenant.key,
                        operation="upsert_document",
                    )
                doc_id = existing["id"]
                level = existing["promotion_level"]
                self._clear_document_content(doc_id)
                self._conn.execute(
                    f"""
                    UPDATE documents
                    SET title = ?, content = ?, content_hash = ?, chunk_count = ?,
                        embedding_model = ?, updated_at = {_NOW}
                    WHERE id = ?
                    """,
                    (
                        doc.title,
                        doc.content,
                        doc.content_hash,
                        len(chunks) if chunked else 0,
                        self.embedding_model,
                        doc_id,
                    ),
                )
            else:
                level = normalize_promotion_level(doc.promotion_level or DEFAULT_PROMOTION_LEVEL)
                cur = self._conn.execute(
                    """
                    INSERT INTO documents (
                        tenant_key, project_name, branch_name, path_hash, relative_path,
                        title, content, content_hash, promotion_level, chunk_count,
                        embedding_model
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tenant.key,
                        tenant.project_name,
                        tenant.branch_name,
                        tenant.path_hash,
                        doc.relative_path,
                        doc.title,
                        doc.content,
                        doc.content_hash,
                        level,
                        len(chunks) if chunked else 0,
                        self.embedding_model,
                    ),
                )
                doc_id = cur.lastrowid

            if chunked:
                for chunk in chunks:
                    cur = self._conn.execute(
                        """
                        INSERT INTO chunks (
                            document_id, tenant_key, chunk_index, heading_path,
                            content, content_hash, promotion_level
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            doc_id,
                            tenant.key,
                            chunk.chunk_index,
                            chunk.heading_path,
                            chunk.content,
                            chunk.content_hash,
                            level,
                        ),
                    )
                    self._conn.execute(
                        f"INSERT INTO {self._vec_chunks}(rowid, embedding) VALUES (?, ?)",
                        (cur.lastrowid, json.dumps(chunk.embedding)),
                    )
            else:
                self._conn.execute(
                    f"INSERT INTO {self._vec_documents}(rowid, embedding) VALUES (?, ?)",
                    (doc_id, json.dumps(doc.embedding)),
                )

            self._insert_links(doc_id, tenant, doc.relative_path, doc.links)
            self._bump(tenant)
            stored = self._fetch_document(tenant, doc.relative_path)

        logger.debug(
            "upserted %s (%d chunks) for tenant %s",
            doc.relative_path,
            len(chunks) if chunked else 0,
            tenant.key,
        )
        return stored

    def rename_document(
        self, tenant: TenantContext, old_path: str, new_path: str, links: list[str]
    ) -> Document:
        """Move a stored Document to *new_path* without re-embedding.

        Any Document already stored at *new_path* is replaced.

        Raises:
            NotFoundError: No Document at *old_path*.
        """
        with self._transaction("rename_document", tenant):
            row = self._conn.execute(
                "SELECT id FROM documents WHERE tenant_key = ? AND relative_path = ?",
                (tenant.key, old_path),
            ).fetchone()
            if row is None:
                raise NotFoundError(
                    f"No indexed document at '{old_path}'",
                    path=old_path,
                    tenant=tenant.key,
                    operation="rename_document",
                )
            target = self._conn.execute(
                "SELECT id FROM documents WHERE tenant_key = ? AND relative_path = ?",
                (tenant.key, new_path),
            ).fetchone()
            if target is not None:
                self._delete_document(target["id"])
            self._conn.execute(
                f"UPDATE documents SET relative_path = ?, updated_at = {_NOW} WHERE id = ?",
                (new_path, row["id"]),
            )
            self._conn.execute("DELETE FROM document_links WHERE document_id = ?", (row["id"],))
            self._insert_links(row["id"], tenant, new_path, links)
            self._bump(tenant)
            return self._fetch_document(tenant, new_path)

    def update_promotion_level(
        self, tenant: TenantContext, path: str, level: str
    ) -> Document:
        """Set the promotion level on a Document and all its Chunks.

        Embeddings and content are untouched.

        Raises:
            NotFoundError: No Document at *path*.
            InvalidArgumentError: Unknown level.
        """
        canonical = normalize_promotion_level(level)
        with self._transaction("update_promotion_level", tenant):
            row = self._conn.execute(
                "SELECT id FROM documents WHERE tenant_key = ? AND relative_path = ?",
                (tenant.key, path),
            ).fetchone()
            if row is None:
                raise NotFoundError(
                    f"No indexed document at '{path}'",
                    path=path,
                    tenant=tenant.key,
                    operation="update_promotion_level",
                )
            self._conn.execute(
                "UPDATE documents SET promotion_level = ? WHERE id = ?", (canonical, row["id"])
            )
            self._conn.execute(
                "UPDATE chunks SET promotion_level = ? WHERE document_id = ?",
                (canonical, row["id"]),
            )
            return self._fetch_document(tenant, path)

    def delete_by_path(self, tenant: TenantContext, path: str) -> bool:
        """Delete a Document with its chunks, embeddings and links.

        Idempotent: returns False when nothing was stored at *path*.
        """
        with self._transaction("delete_by_path", tenant):
            row = self._conn.execute(
                "SELECT id FROM documents WHERE tenant_key = ? AND relative_path = ?",
                (tenant.key, path),
            ).fetchone()
            if row is None:
                return False
            self._delete_document(row["id"])
            self._bump(tenant)
        logger.debug("deleted %s for tenant %s", path, tenant.key)
        return True

    def delete_by_tenant(self, tenant: TenantContext) -> int:
        """Delete every Document of *tenant*. Returns the number deleted."""
        with self._transaction("delete_by_tenant", tenant):
            ids = [
                r["id"]
                for r in self._conn.execute(
                    "SELECT id FROM documents WHERE tenant_key = ?", (tenant.key,)
                ).fetchall()
            ]
            for doc_id in ids:
                self._delete_document(doc_id)
            if ids:
                self._bump(tenant)
        return len(ids)

    # ------------------------------------------------------------------
    # Document reads
    # ------------------------------------------------------------------

    def get_by_path(self, tenant: TenantContext, path: str) -> Document | None:
        """Return the Document stored at *path*, or None."""
        with self._reading("get_by_path", tenant):
            return self._fetch_document(tenant, path)

    def list_documents(self, tenant: TenantContext) -> list[Document]:
        """Return all Documents of *tenant*, ordered by path."""
        with self._reading("list_documents", tenant):
            rows = self._conn.execute(
                f"SELECT {_DOC_COLUMNS} FROM documents WHERE tenant_key = ? ORDER BY relative_path",
                (tenant.key,),
            ).fetchall()
            return [_row_to_document(r, tenant) for r in rows]

    def list_paths(self, tenant: TenantContext) -> dict[str, str]:
        """Return ``{relative_path: content_hash}`` for *tenant*."""
        with self._reading("list_paths", tenant):
            rows = self._conn.execute(
                "SELECT relative_path, content_hash FROM documents WHERE tenant_key = ?",
                (tenant.key,),
            ).fetchall()
            return {r["relative_path"]: r["content_hash"] for r in rows}

    def count_documents(self, tenant: TenantContext) -> int:
        with self._reading("count_documents", tenant):
            return self._conn.execute(
                "SELECT COUNT(*) FROM documents WHERE tenant_key = ?", (tenant.key,)
            ).fetchone()[0]

    def get_chunks(self, tenant: TenantContext, path: str) -> list[Chunk]:
        """Return the ordered chunk set of the Document at *path* (embeddings included)."""
        with self._reading("get_chunks", tenant):
            rows = self._conn.execute(
                f"""
                SELECT c.id, c.document_id, c.chunk_index, c.heading_path, c.content,
                       c.content_hash, c.promotion_level, vec_to_json(v.embedding) AS embedding
                FROM chunks c
                JOIN documents d ON d.id = c.document_id
                LEFT JOIN {self._vec_chunks} v ON v.rowid = c.id
                WHERE d.tenant_key = ? AND d.relative_path = ?
                ORDER BY c.chunk_index
                """,
                (tenant.key, path),
            ).fetchall()
            return [_row_to_chunk(r) for r in rows]

    def get_chunk_embeddings(self, tenant: TenantContext, path: str) -> dict[str, list[float]]:
        """Return ``{chunk content_hash: embedding}`` for reuse on re-index."""
        return {
            c.content_hash: c.embedding
            for c in self.get_chunks(tenant, path)
            if c.embedding is not None
        }

    def get_document_embedding(self, tenant: TenantContext, path: str) -> list[float] | None:
        """Return the whole-document embedding of an unchunked Document."""
        with self._reading("get_document_embedding", tenant):
            row = self._conn.execute(
                f"""
                SELECT vec_to_json(v.embedding) AS embedding
                FROM documents d JOIN {self._vec_documents} v ON v.rowid = d.id
                WHERE d.tenant_key = ? AND d.relative_path = ?
                """,
                (tenant.key, path),
            ).fetchone()
            return json.loads(row["embedding"]) if row else None

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def list_links(self, tenant: TenantContext) -> list[tuple[str, str]]:
        """Return all ``(source_path, target_path)`` edges of *tenant*."""
        with self._reading("list_links", tenant):
            rows = self._conn.execute(
                "SELECT source_path, target_path FROM document_links "
                "WHERE tenant_key = ? ORDER BY source_path, rowid",
                (tenant.key,),
            ).fetchall()
            return [(r["source_path"], r["target_path"]) for r in rows]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        tenant: TenantContext,
        query_embedding: list[float],
        limit: int,
        min_relevance: float,
        min_promotion_level: str | None = None,
    ) -> list[SearchHit]:
        """Cosine-similarity search over unchunked Documents and Chunks.

        Score is ``1 - cosine_distance``. Results with ``score >= min_relevance``
        are returned best first; ties go to the most recently updated Document.
        Never crosses tenants.
        """
        if len(query_embedding) != self.dimensions:
            raise EmbeddingError(
                f"Query embedding has {len(query_embedding)} dimensions, expected {self.dimensions}",
                tenant=tenant.key,
                operation="search",
            )
        floor = promotion_rank(min_promotion_level) if min_promotion_level else 0
        levels = list(PROMOTION_LEVELS[floor:])
        level_marks = ",".join("?" * len(levels))
        vector = json.dumps(query_embedding)

        with self._reading("search", tenant):
            rows = self._conn.execute(
                f"""
                SELECT * FROM (
                    SELECT 'document' AS kind, d.id AS document_id, d.relative_path, d.title,
                           d.content, d.promotion_level, d.updated_at,
                           NULL AS chunk_index, '' AS heading_path,
                           1.0 - vec_distance_cosine(v.embedding, ?) AS score
                    FROM documents d
                    JOIN {self._vec_documents} v ON v.rowid = d.id
                    WHERE d.tenant_key = ? AND d.chunk_count = 0
                    UNION ALL
                    SELECT 'chunk', c.document_id, d.relative_path, d.title,
                           c.content, c.promotion_level, d.updated_at,
                           c.chunk_index, c.heading_path,
                           1.0 - vec_distance_cosine(v.embedding, ?)
                    FROM chunks c
                    JOIN documents d ON d.id = c.document_id
                    JOIN {self._vec_chunks} v ON v.rowid = c.id
                    WHERE c.tenant_key = ?
                )
                WHERE score >= ?
                  AND promotion_level IN ({level_marks})
                ORDER BY round(score, {_SCORE_DECIMALS}) DESC, updated_at DESC,
                         document_id DESC, chunk_index
                LIMIT ?
                """,
                (
                    vector,
                    tenant.key,
                    vector,
                    tenant.key,
                    min_relevance - _SCORE_TOLERANCE,
                    *levels,
                    limit,
                ),
            ).fetchall()
        return [_row_to_hit(r) for r in rows]

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock / open transaction)
    # ------------------------------------------------------------------

    def _check_embeddings(self, doc: Document, chunks: list[Chunk], chunked: bool) -> None:
        vectors = [c.embedding for c in chunks] if chunked else [doc.embedding]
        for vec in vectors:
            if vec is None or len(vec) != self.dimensions:
                raise EmbeddingError(
                    f"Embedding has {0 if vec is None else len(vec)} dimensions, "
                    f"expected {self.dimensions}",
                    path=doc.relative_path,
                    tenant=doc.tenant.key,
                    operation="upsert_document",
                )

    def _clear_document_content(self, doc_id: int) -> None:
        """Remove chunks, embeddings and links of *doc_id* (row itself kept)."""
        chunk_ids = [
            r["id"]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE document_id = ?", (doc_id,)
            ).fetchall()
        ]
        for chunk_id in chunk_ids:
            self._conn.execute(f"DELETE FROM {self._vec_chunks} WHERE rowid = ?", (chunk_id,))
        self._conn.execute("DELETE FROM chunks WHERE document_id = ?", (doc_id,))
        self._conn.execute(f"DELETE FROM {self._vec_documents} WHERE rowid = ?", (doc_id,))
        self._conn.execute("DELETE FROM document_links WHERE document_id = ?", (doc_id,))

    def _delete_document(self, doc_id: int) -> None:
        # vec0 rows are not covered by ON DELETE CASCADE
        self._clear_document_content(doc_id)
        self._conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,))

    def _insert_links(
        self, doc_id: int, tenant: TenantContext, source_path: str, links: list[str]
    ) -> None:
        for target in dict.fromkeys(links):
            if target == source_path:
                continue
            self._conn.execute(
                "INSERT OR IGNORE INTO document_links (document_id, tenant_key, source_path, target_path) "
                "VALUES (?, ?, ?, ?)",
                (doc_id, tenant.key, source_path, target),
            )

    def _fetch_document(self, tenant: TenantContext, path: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE tenant_key = ? AND relative_path = ?",
            (tenant.key, path),
        ).fetchone()
        if row is None:
            return None
        doc = _row_to_document(row, tenant)
        doc.links = [
            r["target_path"]
            for r in self._conn.execute(
                "SELECT target_path FROM document_links WHERE document_id = ? ORDER BY rowid",
                (doc.id,),
            ).fetchall()
        ]
        return doc


# ------------------------------------------------------------------
# Row mappers
# ------------------------------------------------------------------


def _row_to_document(row: sqlite3.Row, tenant: TenantContext) -> Document:
    return Document(
        id=row["id"],
        tenant=tenant,
        relative_path=row["relative_path"],
        title=row["title"],
        content=row["content"],
        content_hash=row["content_hash"],
        promotion_level=row["promotion_level"],
        chunk_count=row["chunk_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        chunk_index=row["chunk_index"],
        heading_path=row["heading_path"],
        content=row["content"],
        content_hash=row["content_hash"],
        promotion_level=row["promotion_level"],
        embedding=json.loads(row["embedding"]) if row["embedding"] else None,
    )


def _row_to_hit(row: sqlite3.Row) -> SearchHit:
    return SearchHit(
        kind=row["kind"],
        document_id=row["document_id"],
        relative_path=row["relative_path"],
        title=row["title"],
        content=row["content"],
        score=max(0.0, min(1.0, float(row["score"]))),
        promotion_level=row["promotion_level"],
        updated_at=row["updated_at"],
        chunk_index=row["chunk_index"],
        heading_path=row["heading_path"],
    )
