"""Tests for the Repository (documents, chunks, embeddings, links, search)."""

from __future__ import annotations

import pytest

from compound_docs.db.models import Chunk, Document, promotion_rank
from compound_docs.db.repository import Repository
from compound_docs.errors import (
    ConflictError,
    EmbeddingError,
    InvalidArgumentError,
    NotFoundError,
)

DIMS = 4


def _doc(tenant, path="a.md", content="alpha text", hash="h1", embedding=None, links=None, level="standard"):
    return Document(
        tenant=tenant,
        relative_path=path,
        content=content,
        content_hash=hash,
        title=path.removesuffix(".md"),
        promotion_level=level,
        embedding=embedding if embedding is not None else [1.0, 0.0, 0.0, 0.0],
        links=links or [],
    )


def _chunks(n=3, base="chunk"):
    out = []
    for i in range(n):
        emb = [0.0] * DIMS
        emb[i % DIMS] = 1.0
        out.append(
            Chunk(
                chunk_index=i,
                heading_path=f"Section {i}",
                content=f"{base} {i}",
                content_hash=f"{base}-hash-{i}",
                embedding=emb,
            )
        )
    return out


def _count(conn, table):
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


# ------------------------------------------------------------------
# Upsert
# ------------------------------------------------------------------


def test_upsert_inserts_unchunked_document(repo, tenant):
    stored = repo.upsert_document(_doc(tenant), [])
    assert stored is not None
    assert stored.id is not None
    assert stored.chunk_count == 0
    assert repo.get_document_embedding(tenant, "a.md") == pytest.approx([1.0, 0.0, 0.0, 0.0])


def test_upsert_inserts_chunked_document(repo, tenant):
    stored = repo.upsert_document(_doc(tenant), _chunks(3))
    assert stored.chunk_count == 3
    chunks = repo.get_chunks(tenant, "a.md")
    assert [c.chunk_index for c in chunks] == [0, 1, 2]
    assert chunks[1].heading_path == "Section 1"
    assert chunks[1].embedding == pytest.approx([0.0, 1.0, 0.0, 0.0])


def test_upsert_single_chunk_is_stored_unchunked(repo, tenant):
    stored = repo.upsert_document(_doc(tenant), _chunks(1))
    assert stored.chunk_count == 0
    assert repo.get_chunks(tenant, "a.md") == []


def test_upsert_same_hash_is_noop(repo, tenant, tmp_db):
    first = repo.upsert_document(_doc(tenant), [])
    generation = repo.generation(tenant)
    assert repo.upsert_document(_doc(tenant), [], expected_hash="h1") is None
    assert repo.generation(tenant) == generation
    assert repo.get_by_path(tenant, "a.md").updated_at == first.updated_at


def test_upsert_replaces_chunk_set(repo, tenant, tmp_db):
    repo.upsert_document(_doc(tenant), _chunks(3))
    repo.upsert_document(_doc(tenant, hash="h2"), _chunks(2, base="new"), expected_hash="h1")
    chunks = repo.get_chunks(tenant, "a.md")
    assert [c.content for c in chunks] == ["new 0", "new 1"]
    assert _count(tmp_db, "chunks") == 2
    assert _count(tmp_db, repo._vec_chunks) == 2


def test_upsert_chunked_to_unchunked_clears_chunks(repo, tenant, tmp_db):
    repo.upsert_document(_doc(tenant), _chunks(3))
    stored = repo.upsert_document(_doc(tenant, hash="h2"), [], expected_hash="h1")
    assert stored.chunk_count == 0
    assert _count(tmp_db, "chunks") == 0
    assert _count(tmp_db, repo._vec_chunks) == 0
    assert _count(tmp_db, repo._vec_documents) == 1


def test_upsert_conflict_when_stored_hash_moved_on(repo, tenant):
    repo.upsert_document(_doc(tenant, hash="h1"), [])
    with pytest.raises(ConflictError) as exc_info:
        repo.upsert_document(_doc(tenant, hash="h3"), [], expected_hash="h0")
    assert exc_info.value.path == "a.md"
    assert exc_info.value.tenant == tenant.key
    assert repo.get_by_path(tenant, "a.md").content_hash == "h1"


def test_upsert_conflict_when_row_appeared_concurrently(repo, tenant):
    repo.upsert_document(_doc(tenant, hash="h1"), [])
    with pytest.raises(ConflictError):
        repo.upsert_document(_doc(tenant, hash="h2"), [], expected_hash=None)


def test_upsert_rejects_wrong_dimension_without_writing(repo, tenant, tmp_db):
    with pytest.raises(EmbeddingError):
        repo.upsert_document(_doc(tenant, embedding=[1.0, 0.0]), [])
    assert _count(tmp_db, "documents") == 0


def test_failed_upsert_leaves_previous_state_intact(repo, tenant, tmp_db):
    repo.upsert_document(_doc(tenant), _chunks(3))
    bad = _chunks(3, base="bad")
    bad[2].embedding = [1.0]  # wrong dimension on the last chunk
    with pytest.raises(EmbeddingError):
        repo.upsert_document(_doc(tenant, hash="h2"), bad, expected_hash="h1")
    doc = repo.get_by_path(tenant, "a.md")
    assert doc.content_hash == "h1"
    assert [c.content for c in repo.get_chunks(tenant, "a.md")] == ["chunk 0", "chunk 1", "chunk 2"]


def test_upsert_keeps_existing_promotion_level(repo, tenant):
    repo.upsert_document(_doc(tenant), [])
    repo.update_promotion_level(tenant, "a.md", "pinned")
    stored = repo.upsert_document(_doc(tenant, hash="h2", level="standard"), _chunks(2), expected_hash="h1")
    assert stored.promotion_level == "pinned"
    assert {c.promotion_level for c in repo.get_chunks(tenant, "a.md")} == {"pinned"}


def test_upsert_first_index_uses_document_level(repo, tenant):
    stored = repo.upsert_document(_doc(tenant, level="critical"), [])
    assert stored.promotion_level == "pinned"


def test_upsert_stores_links_without_self_links(repo, tenant):
    stored = repo.upsert_document(_doc(tenant, links=["b.md", "a.md", "c.md", "b.md"]), [])
    assert stored.links == ["b.md", "c.md"]
    assert repo.list_links(tenant) == [("a.md", "b.md"), ("a.md", "c.md")]


def test_get_chunk_embeddings_by_hash(repo, tenant):
    repo.upsert_document(_doc(tenant), _chunks(2))
    reuse = repo.get_chunk_embeddings(tenant, "a.md")
    assert set(reuse) == {"chunk-hash-0", "chunk-hash-1"}
    assert reuse["chunk-hash-1"] == pytest.approx([0.0, 1.0, 0.0, 0.0])


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------


def test_get_by_path_not_found(repo, tenant):
    assert repo.get_by_path(tenant, "missing.md") is None


def test_list_paths_and_count(repo, tenant):
    repo.upsert_document(_doc(tenant, path="a.md", hash="ha"), [])
    repo.upsert_document(_doc(tenant, path="b.md", hash="hb"), [])
    assert repo.list_paths(tenant) == {"a.md": "ha", "b.md": "hb"}
    assert repo.count_documents(tenant) == 2
    assert [d.relative_path for d in repo.list_documents(tenant)] == ["a.md", "b.md"]


# ------------------------------------------------------------------
# Deletes
# ------------------------------------------------------------------


def test_delete_by_path_cascades(repo, tenant, tmp_db):
    repo.upsert_document(_doc(tenant, links=["b.md"]), _chunks(3))
    assert _count(tmp_db, "chunks") == 3

    assert repo.delete_by_path(tenant, "a.md") is True

    assert repo.get_by_path(tenant, "a.md") is None
    assert _count(tmp_db, "chunks") == 0
    assert _count(tmp_db, repo._vec_chunks) == 0
    assert _count(tmp_db, "document_links") == 0


def test_delete_by_path_idempotent(repo, tenant):
    assert repo.delete_by_path(tenant, "never.md") is False


def test_delete_by_tenant_counts_and_isolates(repo, tenant, other_tenant):
    repo.upsert_document(_doc(tenant, path="a.md"), [])
    repo.upsert_document(_doc(tenant, path="b.md"), _chunks(2))
    repo.upsert_document(_doc(other_tenant, path="a.md"), [])

    assert repo.delete_by_tenant(tenant) == 2
    assert repo.count_documents(tenant) == 0
    assert repo.get_by_path(other_tenant, "a.md") is not None


# ------------------------------------------------------------------
# Promotion
# ------------------------------------------------------------------


def test_update_promotion_level_propagates_to_chunks(repo, tenant):
    repo.upsert_document(_doc(tenant), _chunks(3))
    before = repo.get_chunks(tenant, "a.md")

    doc = repo.update_promotion_level(tenant, "a.md", "important")

    after = repo.get_chunks(tenant, "a.md")
    assert doc.promotion_level == "promoted"
    assert {c.promotion_level for c in after} == {"promoted"}
    assert [c.embedding for c in after] == [c.embedding for c in before]
    assert [c.content for c in after] == [c.content for c in before]


def test_update_promotion_level_missing_raises(repo, tenant):
    with pytest.raises(NotFoundError):
        repo.update_promotion_level(tenant, "missing.md", "pinned")


def test_update_promotion_level_invalid_raises(repo, tenant):
    repo.upsert_document(_doc(tenant), [])
    with pytest.raises(InvalidArgumentError):
        repo.update_promotion_level(tenant, "a.md", "urgent")


# ------------------------------------------------------------------
# Rename
# ------------------------------------------------------------------


def test_rename_document_moves_without_reembedding(repo, tenant):
    repo.upsert_document(_doc(tenant, links=["b.md"]), _chunks(2))
    doc = repo.rename_document(tenant, "a.md", "docs/a.md", ["docs/b.md"])
    assert doc.relative_path == "docs/a.md"
    assert repo.get_by_path(tenant, "a.md") is None
    assert len(repo.get_chunks(tenant, "docs/a.md")) == 2
    assert repo.list_links(tenant) == [("docs/a.md", "docs/b.md")]


def test_rename_document_replaces_existing_target(repo, tenant):
    repo.upsert_document(_doc(tenant, path="a.md", hash="ha"), [])
    repo.upsert_document(_doc(tenant, path="b.md", hash="hb"), [])
    repo.rename_document(tenant, "a.md", "b.md", [])
    assert repo.list_paths(tenant) == {"b.md": "ha"}


def test_rename_missing_raises(repo, tenant):
    with pytest.raises(NotFoundError):
        repo.rename_document(tenant, "nope.md", "x.md", [])


# ------------------------------------------------------------------
# Search
# ------------------------------------------------------------------


def test_search_ranks_by_cosine_similarity(repo, tenant):
    repo.upsert_document(_doc(tenant, path="near.md", embedding=[1.0, 0.1, 0.0, 0.0]), [])
    repo.upsert_document(_doc(tenant, path="far.md", embedding=[0.2, 1.0, 0.0, 0.0]), [])
    hits = repo.search(tenant, [1.0, 0.0, 0.0, 0.0], limit=10, min_relevance=0.0)
    assert [h.relative_path for h in hits] == ["near.md", "far.md"]
    assert hits[0].score > hits[1].score
    assert hits[0].kind == "document"


def test_search_includes_chunks(repo, tenant):
    repo.upsert_document(_doc(tenant, path="long.md"), _chunks(3))
    hits = repo.search(tenant, [0.0, 1.0, 0.0, 0.0], limit=1, min_relevance=0.5)
    assert len(hits) == 1
    assert hits[0].kind == "chunk"
    assert hits[0].chunk_index == 1
    assert hits[0].heading_path == "Section 1"


def test_search_relevance_boundary_inclusive(repo, tenant):
    repo.upsert_document(_doc(tenant, path="same.md", embedding=[0.0, 0.0, 1.0, 0.0]), [])
    repo.upsert_document(_doc(tenant, path="orth.md", embedding=[1.0, 0.0, 0.0, 0.0]), [])
    hits = repo.search(tenant, [0.0, 0.0, 1.0, 0.0], limit=10, min_relevance=1.0)
    assert [h.relative_path for h in hits] == ["same.md"]
    assert hits[0].score == pytest.approx(1.0)


def test_search_excludes_below_threshold(repo, tenant):
    # cosine([1,1,0,0], [1,0,0,0]) ~= 0.7071
    repo.upsert_document(_doc(tenant, path="half.md", embedding=[1.0, 1.0, 0.0, 0.0]), [])
    assert repo.search(tenant, [1.0, 0.0, 0.0, 0.0], limit=10, min_relevance=0.7)
    assert repo.search(tenant, [1.0, 0.0, 0.0, 0.0], limit=10, min_relevance=0.71) == []


def test_search_tolerance_is_float32_sized(repo, tenant):
    # cosine = 0.70710678...
    repo.upsert_document(_doc(tenant, path="half.md", embedding=[1.0, 1.0, 0.0, 0.0]), [])
    assert repo.search(tenant, [1.0, 0.0, 0.0, 0.0], limit=10, min_relevance=0.707106)
    assert repo.search(tenant, [1.0, 0.0, 0.0, 0.0], limit=10, min_relevance=0.70711) == []


def test_search_ties_prefer_recently_updated(repo, tenant, tmp_db):
    repo.upsert_document(_doc(tenant, path="old.md"), [])
    repo.upsert_document(_doc(tenant, path="new.md"), [])
    tmp_db.execute("UPDATE documents SET updated_at = '2020-01-01 00:00:00.000' WHERE relative_path = 'new.md'")
    tmp_db.execute("UPDATE documents SET updated_at = '2019-01-01 00:00:00.000' WHERE relative_path = 'old.md'")
    hits = repo.search(tenant, [1.0, 0.0, 0.0, 0.0], limit=10, min_relevance=0.5)
    assert [h.relative_path for h in hits] == ["new.md", "old.md"]


def test_search_tenant_isolation(repo, tenant, other_tenant):
    repo.upsert_document(_doc(tenant, path="mine.md"), _chunks(2))
    repo.upsert_document(_doc(other_tenant, path="theirs.md"), _chunks(2))
    for query in ([1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0]):
        hits = repo.search(tenant, query, limit=50, min_relevance=0.0)
        assert hits
        assert {h.relative_path for h in hits} == {"mine.md"}


def test_search_respects_limit(repo, tenant):
    for i in range(5):
        repo.upsert_document(_doc(tenant, path=f"d{i}.md"), [])
    assert len(repo.search(tenant, [1.0, 0.0, 0.0, 0.0], limit=3, min_relevance=0.0)) == 3


def test_search_min_promotion_level(repo, tenant):
    repo.upsert_document(_doc(tenant, path="std.md"), [])
    repo.upsert_document(_doc(tenant, path="pin.md", level="pinned"), [])
    hits = repo.search(tenant, [1.0, 0.0, 0.0, 0.0], limit=10, min_relevance=0.0, min_promotion_level="promoted")
    assert [h.relative_path for h in hits] == ["pin.md"]


def test_search_rejects_wrong_query_dimension(repo, tenant):
    with pytest.raises(EmbeddingError):
        repo.search(tenant, [1.0, 0.0], limit=10, min_relevance=0.0)


# ------------------------------------------------------------------
# Generation counter
# ------------------------------------------------------------------


def test_generation_bumps_on_writes_only(repo, tenant, other_tenant):
    g0 = repo.generation(tenant)
    repo.upsert_document(_doc(tenant), [])
    g1 = repo.generation(tenant)
    repo.get_by_path(tenant, "a.md")
    assert repo.generation(tenant) == g1 > g0
    repo.delete_by_path(tenant, "a.md")
    assert repo.generation(tenant) > g1
    assert repo.generation(other_tenant) == 0


def test_repository_requires_matching_dimensions(tmp_db):
    Repository(tmp_db, "test/fake-embedding", 4)
    with pytest.raises(ValueError):
        Repository(tmp_db, "test/fake-embedding", 8)


def test_promotion_rank_orders_levels_and_aliases():
    assert promotion_rank("standard") < promotion_rank("important") < promotion_rank("Critical")
    assert promotion_rank("promoted") == promotion_rank("important")
    with pytest.raises(InvalidArgumentError):
        promotion_rank("urgent")
