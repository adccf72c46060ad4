"""Link graph resolver: bounded, cycle-safe expansion over document links.

The graph is built lazily per tenant from the persisted ``document_links``
edges and cached; a cached graph is rebuilt when the repository's write
generation for that tenant moves on.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable

from compound_docs.db.repository import Repository
from compound_docs.tenant import TenantContext

logger = logging.getLogger(__name__)


class LinkGraph:
    """Adjacency lists keyed by path (no node objects, no recursion)."""

    def __init__(self, edges: Iterable[tuple[str, str]] = ()) -> None:
        self._out: dict[str, list[str]] = {}
        self._in: dict[str, list[str]] = {}
        for source, target in edges:
            self.add_edge(source, target)

    def add_edge(self, source: str, target: str) -> None:
        if source == target:
            return
        targets = self._out.setdefault(source, [])
        if target not in targets:
            targets.append(target)
            self._in.setdefault(target, []).append(source)

    def outgoing(self, path: str) -> list[str]:
        return list(self._out.get(path, ()))

    def incoming(self, path: str) -> list[str]:
        return list(self._in.get(path, ()))

    def __len__(self) -> int:
        return sum(len(t) for t in self._out.values())

    def expand(
        self, roots: Iterable[str], max_depth: int = 2, max_results: int = 5
    ) -> tuple[list[str], list[tuple[str, str]]]:
        """Breadth-first expansion from *roots*.

        Returns:
            ``(reachable, cycle_edges)``: reachable paths in discovery order
            (closest first, roots excluded, capped at *max_results*) and the
            edges that led back to an ancestor on the traversal path.
        """
        root_list = list(dict.fromkeys(roots))
        visited = set(root_list)
        parents: dict[str, str] = {}
        reachable: list[str] = []
        cycle_edges: list[tuple[str, str]] = []
        frontier = deque((r, 0) for r in root_list)

        while frontier and len(reachable) < max_results:
            node, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            for target in self._out.get(node, ()):
                if target in visited:
                    if _is_ancestor(parents, target, node):
                        cycle_edges.append((node, target))
                    continue
                visited.add(target)
                parents[target] = node
                reachable.append(target)
                if len(reachable) >= max_results:
                    break
                frontier.append((target, depth + 1))
        return reachable, cycle_edges

    def find_cycle(self, start: str) -> list[str] | None:
        """Return one cycle through *start* (``[start, ..., start]``), or None."""
        parents: dict[str, str] = {}
        frontier = deque([start])
        seen = {start}
        while frontier:
            node = frontier.popleft()
            for target in self._out.get(node, ()):
                if target == start:
                    chain = [node]
                    while chain[-1] != start:
                        chain.append(parents[chain[-1]])
                    return [*reversed(chain), start]
                if target not in seen:
                    seen.add(target)
                    parents[target] = node
                    frontier.append(target)
        return None


def _is_ancestor(parents: dict[str, str], candidate: str, node: str) -> bool:
    current: str | None = node
    while current is not None:
        if current == candidate:
            return True
        current = parents.get(current)
    return False


class LinkGraphResolver:
    """Per-tenant cache of LinkGraph instances backed by the repository."""

    def __init__(self, repo: Repository) -> None:
        self._repo = repo
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[int, LinkGraph]] = {}

    def graph(self, tenant: TenantContext) -> LinkGraph:
        generation = self._repo.generation(tenant)
        with self._lock:
            cached = self._cache.get(tenant.key)
            if cached is not None and cached[0] == generation:
                return cached[1]
        graph = LinkGraph(self._repo.list_links(tenant))
        with self._lock:
            self._cache[tenant.key] = (generation, graph)
        return graph

    def invalidate(self, tenant: TenantContext | None = None) -> None:
        with self._lock:
            if tenant is None:
                self._cache.clear()
            else:
                self._cache.pop(tenant.key, None)

    def expand_links(
        self,
        tenant: TenantContext,
        root_paths: Iterable[str],
        max_depth: int = 2,
        max_linked_docs: int = 5,
    ) -> list[str]:
        """Paths reachable from *root_paths* within *max_depth* hops.

        Cycles end that branch and log a warning; they are never an error.
        """
        reachable, cycle_edges = self.graph(tenant).expand(root_paths, max_depth, max_linked_docs)
        for source, target in cycle_edges:
            logger.warning(
                "link cycle detected in tenant %s: %s -> %s; not expanding",
                tenant.key,
                source,
                target,
            )
        return reachable
