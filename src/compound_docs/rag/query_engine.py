"""Query engine: embed → similarity search → (RAG) link expansion.

Read-only; runs concurrently with reconciliation and sees either the state
before or after any single document upsert. Answer synthesis is left to the
caller, who hands the assembled context to a text-generation capability.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from compound_docs.config import CompoundDocsConfig, QueryOptions, resolve_query_options
from compound_docs.db.models import SearchHit
from compound_docs.db.repository import Repository
from compound_docs.errors import EmptyQueryError, InvalidArgumentError, ShutdownError
from compound_docs.ingest.embedding_gateway import EmbeddingGateway
from compound_docs.rag.link_graph import LinkGraphResolver
from compound_docs.tenant import TenantContext

logger = logging.getLogger(__name__)

RAG = "rag"
SEMANTIC = "semantic"


@dataclass
class LinkedDocument:
    relative_path: str
    title: str
    content: str
    promotion_level: str

    def to_dict(self) -> dict:
        return {
            "path": self.relative_path,
            "title": self.title,
            "content": self.content,
            "promotion_level": self.promotion_level,
        }


@dataclass
class QueryResult:
    query: str
    mode: str
    primary: list[SearchHit] = field(default_factory=list)
    linked: list[LinkedDocument] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "mode": self.mode,
            "results": [h.to_dict() for h in self.primary],
            "linked_documents": [d.to_dict() for d in self.linked],
            "total_results": len(self.primary),
        }


class QueryEngine:
    def __init__(
        self,
        repo: Repository,
        gateway: EmbeddingGateway,
        resolver: LinkGraphResolver | None = None,
        config: CompoundDocsConfig | None = None,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.resolver = resolver or LinkGraphResolver(repo)
        self.config = config or CompoundDocsConfig()
        self._closed = threading.Event()

    def close(self) -> None:
        """Reject every later query with ShutdownError."""
        self._closed.set()

    def rag_query(
        self, tenant: TenantContext, text: str, options: QueryOptions | None = None
    ) -> QueryResult:
        return self.query(tenant, text, options, mode=RAG)

    def semantic_search(
        self, tenant: TenantContext, text: str, options: QueryOptions | None = None
    ) -> QueryResult:
        return self.query(tenant, text, options, mode=SEMANTIC)

    def query(
        self,
        tenant: TenantContext,
        text: str,
        options: QueryOptions | None = None,
        mode: str = RAG,
    ) -> QueryResult:
        """Run a RAG or semantic query scoped to *tenant*.

        Raises:
            ShutdownError: After close().
            EmptyQueryError: Blank query text.
            EmbeddingUnavailableError: Embedding provider down.
        """
        if self._closed.is_set():
            raise ShutdownError("Query rejected: engine is shutting down", tenant=tenant.key, operation=mode)
        if mode not in (RAG, SEMANTIC):
            raise InvalidArgumentError(f"Unknown query mode {mode!r}", operation="query")
        if not text or not text.strip():
            raise EmptyQueryError("Query text is empty", tenant=tenant.key, operation=mode)

        opts = resolve_query_options(options, self.config, semantic=mode == SEMANTIC)
        embedding = self.gateway.embed(text)
        hits = self.repo.search(
            tenant,
            embedding,
            limit=opts.max_results,
            min_relevance=opts.min_relevance,
            min_promotion_level=opts.min_promotion_level,
        )
        result = QueryResult(query=text, mode=mode, primary=hits)

        if mode == RAG and hits:
            roots = list(dict.fromkeys(h.relative_path for h in hits))
            linked_paths = self.resolver.expand_links(
                tenant, roots, max_depth=opts.max_depth, max_linked_docs=opts.max_linked_docs
            )
            for path in linked_paths:
                doc = self.repo.get_by_path(tenant, path)
                if doc is None:
                    logger.debug("linked document %s not indexed in %s", path, tenant.key)
                    continue
                result.linked.append(
                    LinkedDocument(
                        relative_path=doc.relative_path,
                        title=doc.title,
                        content=doc.content,
                        promotion_level=doc.promotion_level,
                    )
                )

        logger.debug(
            "%s query for %s: %d results, %d linked",
            mode,
            tenant.key,
            len(result.primary),
            len(result.linked),
        )
        return result
