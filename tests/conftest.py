"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from compound_docs.db.connection import Database
from compound_docs.db.migrations import run_migrations
from compound_docs.db.repository import Repository
from compound_docs.ingest.embedding_gateway import EmbeddingGateway, RetryPolicy
from compound_docs.tenant import TenantContext

TEST_MODEL = "test/fake-embedding"
DIMS = 4

# Each keyword owns one axis; text without keywords lands on the last axis.
_AXES = ("alpha", "beta", "gamma")


class FakeEmbedder:
    """Deterministic keyword-count embedder with a call log.

    Set ``fail_with`` to an exception to make every call raise it.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_with: BaseException | None = None

    def __call__(self, text: str, timeout: float = 60.0) -> list[float]:
        self.calls.append(text)
        if self.fail_with is not None:
            raise self.fail_with
        return vector_for(text)


def vector_for(text: str) -> list[float]:
    lowered = text.lower()
    vec = [float(lowered.count(word)) for word in _AXES]
    vec.append(0.0 if any(vec) else 1.0)
    return vec


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".compound-docs.db")
    conn = db.connect()
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db, TEST_MODEL, DIMS)


@pytest.fixture
def tenant():
    return TenantContext("proj", "main", "0123456789abcdef")


@pytest.fixture
def other_tenant():
    return TenantContext("proj", "feature-x", "0123456789abcdef")


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def gateway(embedder):
    return EmbeddingGateway(
        embedder,
        model=TEST_MODEL,
        dimensions=DIMS,
        retry=RetryPolicy(max_attempts=1),
        cache_size=0,
        sleep=lambda _s: None,
    )


@pytest.fixture
def docs_root(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def vec():
    """The FakeEmbedder's vector function, for building expected embeddings."""
    return vector_for
