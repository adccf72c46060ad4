"""Domain models for the compound-docs storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field

from compound_docs.errors import InvalidArgumentError
from compound_docs.tenant import TenantContext

# Ordered low → high; search can filter by a minimum level.
PROMOTION_LEVELS: tuple[str, ...] = ("standard", "promoted", "pinned")
_PROMOTION_ALIASES: dict[str, str] = {"important": "promoted", "critical": "pinned"}
DEFAULT_PROMOTION_LEVEL = "standard"


def normalize_promotion_level(level: str) -> str:
    """Map *level* (case-insensitive, aliases allowed) to a canonical level.

    Raises:
        InvalidArgumentError: For unknown levels.
    """
    key = (level or "").strip().lower()
    key = _PROMOTION_ALIASES.get(key, key)
    if key not in PROMOTION_LEVELS:
        raise InvalidArgumentError(
            f"Invalid promotion level {level!r}",
            operation="update_promotion_level",
            hint=f"Use one of: {', '.join(PROMOTION_LEVELS)} (aliases: important, critical).",
        )
    return key


def promotion_rank(level: str) -> int:
    """Position of *level* in PROMOTION_LEVELS (0 = standard)."""
    return PROMOTION_LEVELS.index(normalize_promotion_level(level))


@dataclass
class Document:
    tenant: TenantContext
    relative_path: str
    content: str
    content_hash: str
    title: str = ""
    promotion_level: str = DEFAULT_PROMOTION_LEVEL
    chunk_count: int = 0  # 0 = unchunked, embedded as a whole
    embedding: list[float] | None = None  # whole-document embedding, unchunked only
    links: list[str] = field(default_factory=list)
    id: int | None = None  # set after insert
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Chunk:
    chunk_index: int
    heading_path: str
    content: str
    content_hash: str
    embedding: list[float] | None = None
    promotion_level: str = DEFAULT_PROMOTION_LEVEL
    document_id: int | None = None
    id: int | None = None


@dataclass
class SearchHit:
    """One ranked search result: a whole Document or one of its Chunks."""

    kind: str  # "document" | "chunk"
    relative_path: str
    title: str
    content: str
    score: float
    promotion_level: str
    updated_at: str
    document_id: int
    chunk_index: int | None = None
    heading_path: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "path": self.relative_path,
            "title": self.title,
            "content": self.content,
            "score": round(self.score, 6),
            "promotion_level": self.promotion_level,
            "chunk_index": self.chunk_index,
            "heading_path": self.heading_path,
        }
