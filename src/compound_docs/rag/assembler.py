"""Context assembler: source-attributed context string under a token budget.

Primary results come first (best score first), then linked documents in
discovery order. Blocks that would overflow ``token_budget`` are dropped;
the first block that does not fit ends assembly.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from compound_docs.rag.llm_client import count_tokens
from compound_docs.rag.query_engine import QueryResult


@dataclass
class AssembledContext:
    text: str = ""
    sources: list[str] = field(default_factory=list)
    total_tokens: int = 0
    truncated: bool = False


def assemble_context(
    result: QueryResult,
    token_budget: int = 8_192,
    model: str = "openai/gpt-4o",
) -> AssembledContext:
    """Render *result* into a prompt-ready context string."""
    blocks = [_primary_block(h.relative_path, h.heading_path, h.score, h.content) for h in result.primary]
    block_sources = [h.relative_path for h in result.primary]
    for doc in result.linked:
        blocks.append(f"[Linked: {doc.relative_path}]\n{doc.content.strip()}")
        block_sources.append(doc.relative_path)

    selected, total = _apply_token_budget(blocks, model, token_budget)
    sources = list(dict.fromkeys(block_sources[: len(selected)]))
    return AssembledContext(
        text="\n\n---\n\n".join(selected),
        sources=sources,
        total_tokens=total,
        truncated=len(selected) < len(blocks),
    )


def _primary_block(path: str, heading_path: str, score: float, content: str) -> str:
    label = f"{path} > {heading_path}" if heading_path else path
    return f"[Source: {label} | relevance {score:.2f}]\n{content.strip()}"


# ------------------------------------------------------------------
# Token budget
# ------------------------------------------------------------------


def _apply_token_budget(blocks: list[str], model: str, budget: int) -> tuple[list[str], int]:
    """Select blocks that fit within *budget* tokens. Returns (selected, total_tokens)."""
    selected: list[str] = []
    total = 0
    for block in blocks:
        tokens = count_tokens(model, block)
        if total + tokens > budget:
            break
        selected.append(block)
        total += tokens
    return selected, total
