"""Per-model sqlite-vec virtual table management."""

from __future__ import annotations

import re
import sqlite3

_SLUG_RE = re.compile(r"[a-z0-9_]+")


def model_to_slug(model: str) -> str:
    """Convert a provider/model string to a valid table name suffix.

    Examples:
        "openai/text-embedding-3-small" -> "openai_text_embedding_3_small"
    """
    return re.sub(r"[^a-z0-9]", "_", model.lower())


def vec_table_names(model_slug: str) -> tuple[str, str]:
    """Return ``(documents_table, chunks_table)`` for a model slug."""
    return f"vec_documents_{model_slug}", f"vec_chunks_{model_slug}"


def ensure_vec_tables(
    conn: sqlite3.Connection, model_slug: str, dimensions: int
) -> tuple[str, str]:
    """Create the document and chunk vec0 tables for *model_slug* if missing.

    Both tables use cosine distance; rowid is the documents.id / chunks.id
    of the row the embedding belongs to.

    Raises:
        ValueError: On an unsanitized slug, bad dimensions, or an existing
            table created with a different dimension.
    """
    if not _SLUG_RE.fullmatch(model_slug):
        raise ValueError(
            f"Invalid model_slug '{model_slug}'; use model_to_slug() to sanitize."
        )
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    tables = vec_table_names(model_slug)
    for table in tables:
        existing = conn.execute(
            "SELECT sql FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ).fetchone()
        if existing is None:
            conn.execute(
                f"CREATE VIRTUAL TABLE {table} USING "
                f"vec0(embedding float[{dimensions}] distance_metric=cosine)"
            )
        elif f"float[{dimensions}]" not in existing[0]:
            raise ValueError(
                f"Vec table '{table}' exists with different dimensions "
                f"(expected {dimensions}); re-index into a fresh database."
            )
    return tables
