"""Tests for context assembly under a token budget."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from compound_docs.db.models import SearchHit
from compound_docs.rag.assembler import assemble_context
from compound_docs.rag.query_engine import LinkedDocument, QueryResult


def _hit(path, content, score, heading=""):
    return SearchHit(
        kind="chunk" if heading else "document",
        relative_path=path,
        title=path,
        content=content,
        score=score,
        promotion_level="standard",
        updated_at="2026-01-01 00:00:00.000",
        document_id=1,
        heading_path=heading,
    )


@pytest.fixture(autouse=True)
def word_tokens():
    with patch(
        "compound_docs.rag.assembler.count_tokens",
        side_effect=lambda model, text: len(text.split()),
    ):
        yield


def _result():
    return QueryResult(
        query="q",
        mode="rag",
        primary=[
            _hit("guide.md", "install steps here", 0.91, heading="Setup > Install"),
            _hit("faq.md", "answers", 0.75),
        ],
        linked=[LinkedDocument("ref.md", "ref", "reference text", "standard")],
    )


def test_blocks_carry_source_attribution():
    ctx = assemble_context(_result(), token_budget=1_000)
    blocks = ctx.text.split("\n\n---\n\n")
    assert blocks[0] == "[Source: guide.md > Setup > Install | relevance 0.91]\ninstall steps here"
    assert blocks[1] == "[Source: faq.md | relevance 0.75]\nanswers"
    assert blocks[2] == "[Linked: ref.md]\nreference text"
    assert ctx.sources == ["guide.md", "faq.md", "ref.md"]
    assert ctx.truncated is False


def test_budget_drops_trailing_blocks():
    # block token counts: 12, 6, 4
    ctx = assemble_context(_result(), token_budget=18)
    assert ctx.sources == ["guide.md", "faq.md"]
    assert ctx.total_tokens == 18
    assert ctx.truncated is True
    assert "[Linked: ref.md]" not in ctx.text


def test_budget_too_small_for_anything():
    ctx = assemble_context(_result(), token_budget=3)
    assert ctx.text == ""
    assert ctx.sources == []
    assert ctx.truncated is True


def test_sources_are_deduplicated():
    result = QueryResult(
        query="q",
        mode="rag",
        primary=[_hit("a.md", "one", 0.9, "A"), _hit("a.md", "two", 0.8, "B")],
    )
    assert assemble_context(result).sources == ["a.md"]


def test_empty_result():
    ctx = assemble_context(QueryResult(query="q", mode="rag"))
    assert ctx.text == ""
    assert ctx.truncated is False
