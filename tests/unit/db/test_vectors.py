"""Tests for per-model sqlite-vec virtual tables."""

from __future__ import annotations

import pytest

from compound_docs.db.vectors import ensure_vec_tables, model_to_slug, vec_table_names


@pytest.mark.parametrize("model,expected", [
    ("openai/text-embedding-3-small", "openai_text_embedding_3_small"),
    ("cohere/embed-english-v3.0", "cohere_embed_english_v3_0"),
    ("ollama/mxbai-embed-large", "ollama_mxbai_embed_large"),
])
def test_model_to_slug(model, expected):
    assert model_to_slug(model) == expected


def test_vec_table_names():
    assert vec_table_names("m") == ("vec_documents_m", "vec_chunks_m")


def _exists(conn, table):
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone() is not None


def test_ensure_vec_tables_creates_both(tmp_db):
    docs, chunks = ensure_vec_tables(tmp_db, "test_model", dimensions=4)
    assert _exists(tmp_db, docs)
    assert _exists(tmp_db, chunks)


def test_ensure_vec_tables_idempotent(tmp_db):
    assert ensure_vec_tables(tmp_db, "m", 4) == ensure_vec_tables(tmp_db, "m", 4)


def test_ensure_vec_tables_rejects_dimension_change(tmp_db):
    ensure_vec_tables(tmp_db, "m", 4)
    with pytest.raises(ValueError, match="different dimensions"):
        ensure_vec_tables(tmp_db, "m", 8)


def test_ensure_vec_tables_rejects_bad_slug(tmp_db):
    with pytest.raises(ValueError, match="Invalid model_slug"):
        ensure_vec_tables(tmp_db, "bad; DROP TABLE documents", 4)


def test_ensure_vec_tables_rejects_zero_dimensions(tmp_db):
    with pytest.raises(ValueError, match="dimensions"):
        ensure_vec_tables(tmp_db, "m", 0)


def test_vec_table_uses_cosine_distance(tmp_db):
    docs, _ = ensure_vec_tables(tmp_db, "m", 2)
    tmp_db.execute(f"INSERT INTO {docs}(rowid, embedding) VALUES (1, '[1, 0]')")
    tmp_db.execute(f"INSERT INTO {docs}(rowid, embedding) VALUES (2, '[0, 1]')")
    rows = tmp_db.execute(
        f"SELECT rowid, distance FROM {docs} WHERE embedding MATCH '[2, 0]' AND k = 2"
    ).fetchall()
    assert rows[0]["rowid"] == 1
    assert rows[0]["distance"] == pytest.approx(0.0, abs=1e-6)
    assert rows[1]["distance"] == pytest.approx(1.0, abs=1e-6)
