"""Tests for LinkGraph expansion and the repository-backed resolver."""

from __future__ import annotations

import logging

from compound_docs.db.connection import Database
from compound_docs.db.models import Document
from compound_docs.db.repository import Repository
from compound_docs.rag.link_graph import LinkGraph, LinkGraphResolver


def _store(repo, tenant, path, links):
    repo.upsert_document(
        Document(
            tenant=tenant,
            relative_path=path,
            content=path,
            content_hash=f"h-{path}-{len(links)}",
            title=path,
            embedding=[1.0, 0.0, 0.0, 0.0],
            links=links,
        ),
        [],
    )


# ------------------------------------------------------------------
# LinkGraph
# ------------------------------------------------------------------


def test_expand_respects_depth():
    g = LinkGraph([("a", "b"), ("b", "c"), ("c", "d")])
    assert g.expand(["a"], max_depth=1, max_results=10)[0] == ["b"]
    assert g.expand(["a"], max_depth=2, max_results=10)[0] == ["b", "c"]
    assert g.expand(["a"], max_depth=0, max_results=10)[0] == []


def test_expand_is_breadth_first_and_capped():
    g = LinkGraph([("a", "b"), ("a", "c"), ("b", "d"), ("c", "e")])
    assert g.expand(["a"], max_depth=2, max_results=3)[0] == ["b", "c", "d"]


def test_expand_excludes_roots_and_duplicates():
    g = LinkGraph([("a", "b"), ("b", "a"), ("x", "b")])
    reachable, _ = g.expand(["a", "x"], max_depth=3, max_results=10)
    assert reachable == ["b"]


def test_two_cycle_terminates_and_reports_back_edge():
    g = LinkGraph([("a", "b"), ("b", "a")])
    reachable, cycles = g.expand(["a"], max_depth=2, max_results=10)
    assert reachable == ["b"]
    assert cycles == [("b", "a")]


def test_diamond_is_not_a_cycle():
    g = LinkGraph([("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")])
    reachable, cycles = g.expand(["a"], max_depth=3, max_results=10)
    assert reachable == ["b", "c", "d"]
    assert cycles == []


def test_self_loops_are_ignored():
    g = LinkGraph([("a", "a"), ("a", "b"), ("a", "b")])
    assert len(g) == 1
    assert g.outgoing("a") == ["b"]
    assert g.incoming("b") == ["a"]


def test_find_cycle():
    g = LinkGraph([("a", "b"), ("b", "c"), ("c", "a"), ("c", "d")])
    assert g.find_cycle("a") == ["a", "b", "c", "a"]
    assert g.find_cycle("d") is None


# ------------------------------------------------------------------
# LinkGraphResolver
# ------------------------------------------------------------------


def test_resolver_logs_cycle_warning(repo, tenant, caplog):
    _store(repo, tenant, "a.md", ["b.md"])
    _store(repo, tenant, "b.md", ["a.md"])
    resolver = LinkGraphResolver(repo)

    with caplog.at_level(logging.WARNING, logger="compound_docs.rag.link_graph"):
        linked = resolver.expand_links(tenant, ["a.md"], max_depth=2, max_linked_docs=5)

    assert linked == ["b.md"]
    assert "link cycle detected" in caplog.text
    assert "b.md -> a.md" in caplog.text


def test_resolver_rebuilds_after_writes(repo, tenant):
    _store(repo, tenant, "a.md", ["b.md"])
    resolver = LinkGraphResolver(repo)
    first = resolver.graph(tenant)
    assert resolver.graph(tenant) is first

    _store(repo, tenant, "b.md", ["c.md"])
    second = resolver.graph(tenant)
    assert second is not first
    assert resolver.expand_links(tenant, ["a.md"]) == ["b.md", "c.md"]


def test_resolver_is_tenant_scoped(repo, tenant, other_tenant):
    _store(repo, tenant, "a.md", ["b.md"])
    _store(repo, other_tenant, "a.md", ["z.md"])
    resolver = LinkGraphResolver(repo)
    assert resolver.expand_links(tenant, ["a.md"]) == ["b.md"]
    assert resolver.expand_links(other_tenant, ["a.md"]) == ["z.md"]


def test_invalidate_drops_cache(repo, tenant):
    resolver = LinkGraphResolver(repo)
    first = resolver.graph(tenant)
    resolver.invalidate(tenant)
    assert resolver.graph(tenant) is not first


def test_resolver_sees_writes_from_another_connection(repo, tenant, tmp_path):
    _store(repo, tenant, "a.md", ["b.md"])
    resolver = LinkGraphResolver(repo)
    assert resolver.expand_links(tenant, ["a.md"]) == ["b.md"]

    other_conn = Database(tmp_path / ".compound-docs.db").connect()
    try:
        other = Repository(other_conn, repo.embedding_model, repo.dimensions)
        other.upsert_document(
            Document(
                tenant=tenant,
                relative_path="a.md",
                content="a.md",
                content_hash="h-a.md-rewritten",
                title="a.md",
                embedding=[1.0, 0.0, 0.0, 0.0],
                links=["c.md"],
            ),
            [],
            expected_hash="h-a.md-1",
        )
    finally:
        other_conn.close()

    assert resolver.expand_links(tenant, ["a.md"]) == ["c.md"]
