"""Forward-only migration runner for the compound-docs schema.

Vec tables (vec_documents_*, vec_chunks_*) are NOT migration-managed; use
ensure_vec_tables().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_key      TEXT NOT NULL,
    project_name    TEXT NOT NULL,
    branch_name     TEXT NOT NULL,
    path_hash       TEXT NOT NULL,
    relative_path   TEXT NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    content         TEXT NOT NULL,
    content_hash    TEXT NOT NULL,
    promotion_level TEXT NOT NULL DEFAULT 'standard',
    chunk_count     INTEGER NOT NULL DEFAULT 0,
    embedding_model TEXT NOT NULL,
    created_at      DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    updated_at      DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    UNIQUE (tenant_key, relative_path)
);

CREATE INDEX IF NOT EXISTS idx_documents_tenant ON documents (tenant_key);

CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id     INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    tenant_key      TEXT NOT NULL,
    chunk_index     INTEGER NOT NULL,
    heading_path    TEXT NOT NULL DEFAULT '',
    content         TEXT NOT NULL,
    content_hash    TEXT NOT NULL,
    promotion_level TEXT NOT NULL DEFAULT 'standard',
    created_at      DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    UNIQUE (document_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_chunks_tenant ON chunks (tenant_key);

CREATE TABLE IF NOT EXISTS document_links (
    document_id     INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    tenant_key      TEXT NOT NULL,
    source_path     TEXT NOT NULL,
    target_path     TEXT NOT NULL,
    PRIMARY KEY (document_id, target_path)
);

CREATE INDEX IF NOT EXISTS idx_links_tenant ON document_links (tenant_key);
"""

# Per-tenant write counter, bumped in the same transaction as each write so
# every connection to the file sees link changes.
_V2_SQL = """
CREATE TABLE IF NOT EXISTS tenant_generations (
    tenant_key  TEXT PRIMARY KEY,
    generation  INTEGER NOT NULL DEFAULT 0
);
"""

# Append-only. Each entry: (version: int, sql: str).
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
]

CURRENT_VERSION = MIGRATIONS[-1][0]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )


def schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0
