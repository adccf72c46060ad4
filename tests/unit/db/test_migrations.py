"""Tests for the forward-only migration runner."""

from __future__ import annotations

from compound_docs.db.connection import Database
from compound_docs.db.migrations import CURRENT_VERSION, MIGRATIONS, run_migrations, schema_version


def _fresh_conn(tmp_path):
    """Open a new connection without running migrations."""
    return Database(tmp_path / "test.db").connect()


def _table_exists(conn, name: str) -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
    ).fetchone() is not None


def test_run_migrations_creates_schema_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _table_exists(conn, "schema_version")
    conn.close()


def test_run_migrations_records_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert schema_version(conn) == CURRENT_VERSION == MIGRATIONS[-1][0]
    conn.close()


def test_run_migrations_creates_tables(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    for table in ("documents", "chunks", "document_links", "tenant_generations"):
        assert _table_exists(conn, table), table
    conn.close()


def test_run_migrations_idempotent(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    rows = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert rows == len(MIGRATIONS)
    conn.close()


def test_documents_unique_per_tenant_and_path(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    indexes = conn.execute("PRAGMA index_list('documents')").fetchall()
    unique_cols = []
    for idx in indexes:
        if idx["unique"]:
            cols = [r["name"] for r in conn.execute(f"PRAGMA index_info('{idx['name']}')")]
            unique_cols.append(cols)
    assert ["tenant_key", "relative_path"] in unique_cols
    conn.close()


def test_migration_versions_ascending():
    versions = [v for v, _ in MIGRATIONS]
    assert versions == sorted(versions)
    assert len(set(versions)) == len(versions)
