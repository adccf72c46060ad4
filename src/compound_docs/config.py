"""compound-docs configuration loader.

Priority (high → low):
  1. Call-site overrides      (QueryOptions, resolved via resolve_query_options())
  2. Environment variables    (COMPOUND_DOCS_EMBEDDING_MODEL, COMPOUND_DOCS_DB_PATH)
  3. Per-project compound-docs.yaml  (tenant config, in the project root)
  4. Global ~/.compound-docs/config.yaml  (defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".compound-docs"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "compound-docs.yaml"
_DEFAULT_DB_NAME: str = ".compound-docs.db"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate keys like token_budget or max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "embedding",
        "rag",
        "link_resolution",
        "file_watcher",
        "chunking",
        "resilience",
        "external_docs",
        "database",
    ]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (compound-docs.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    timeout_seconds: float = 60.0
    cache_size: int = 1_000


@dataclass
class RagCfg:
    """Query thresholds (compound-docs.yaml: rag:)."""

    min_relevance_score: float = 0.7
    semantic_min_relevance: float = 0.5
    max_results: int = 10
    token_budget: int = 8_192
    token_model: str = "openai/gpt-4o"


@dataclass
class LinkResolutionCfg:
    """Link-graph expansion bounds (compound-docs.yaml: link_resolution:)."""

    max_depth: int = 2
    max_linked_docs: int = 5


@dataclass
class FileWatcherCfg:
    """Watcher / debouncer settings (compound-docs.yaml: file_watcher:)."""

    debounce_ms: int = 500
    include: list[str] = field(default_factory=lambda: ["**/*.md"])
    exclude: list[str] = field(
        default_factory=lambda: ["**/node_modules/**", "**/.git/**"]
    )
    queue_size: int = 16
    retry_interval_seconds: float = 30.0


@dataclass
class ChunkingCfg:
    """Chunker settings (compound-docs.yaml: chunking:)."""

    threshold_lines: int = 500


@dataclass
class RetryCfg:
    max_attempts: int = 3
    initial_delay_ms: int = 200
    max_delay_ms: int = 5_000
    multiplier: float = 2.0
    jitter: bool = True


@dataclass
class CircuitBreakerCfg:
    failure_threshold: int = 5
    break_duration_seconds: float = 30.0


@dataclass
class ResilienceCfg:
    """Embedding-call resilience (compound-docs.yaml: resilience:)."""

    retry: RetryCfg = field(default_factory=RetryCfg)
    circuit_breaker: CircuitBreakerCfg = field(default_factory=CircuitBreakerCfg)


@dataclass
class ExternalDocsCfg:
    """Optional external documentation folder (compound-docs.yaml: external_docs:).

    Attributes:
        path: Directory relative to the project root (or absolute). Must exist
            when set; activation fails early otherwise.
    """

    path: str | None = None


@dataclass
class DatabaseCfg:
    """Index location (compound-docs.yaml: database:)."""

    path: str | None = None  # defaults to <root>/.compound-docs.db


@dataclass
class CompoundDocsConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    rag: RagCfg = field(default_factory=RagCfg)
    link_resolution: LinkResolutionCfg = field(default_factory=LinkResolutionCfg)
    file_watcher: FileWatcherCfg = field(default_factory=FileWatcherCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    resilience: ResilienceCfg = field(default_factory=ResilienceCfg)
    external_docs: ExternalDocsCfg = field(default_factory=ExternalDocsCfg)
    database: DatabaseCfg = field(default_factory=DatabaseCfg)

    def db_path(self, root: Path) -> Path:
        """Return the database file location for a project rooted at *root*."""
        if self.database.path:
            p = Path(self.database.path).expanduser()
            return p if p.is_absolute() else root / p
        return root / _DEFAULT_DB_NAME


@dataclass
class QueryOptions:
    """Per-call query overrides. ``None`` means "use tenant config / default"."""

    min_relevance: float | None = None
    max_results: int | None = None
    max_linked_docs: int | None = None
    max_depth: int | None = None
    min_promotion_level: str | None = None


@dataclass(frozen=True)
class ResolvedQueryOptions:
    min_relevance: float
    max_results: int
    max_linked_docs: int
    max_depth: int
    min_promotion_level: str | None = None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Reject a global config that holds anything shaped like a credential."""
    stack: list[tuple[str, Any]] = [("", data)]
    while stack:
        prefix, node = stack.pop()
        if not isinstance(node, dict):
            continue
        for key, value in node.items():
            dotted = f"{prefix}.{key}" if prefix else str(key)
            if _API_KEY_RE.search(str(key)):
                env_name = str(key).upper().replace("-", "_")
                raise ConfigError(
                    f"'{source}' holds a forbidden key '{dotted}'. Credentials belong in "
                    f"environment variables: delete the key and run `export {env_name}=...`."
                )
            stack.append((dotted, value))


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    for key in sorted(set(data) - _KNOWN_SECTIONS, key=str):
        warnings.warn(f"{source}: unknown section '{key}' is ignored", UserWarning, stacklevel=4)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file '{path}' must contain a mapping at the top level.")
    return data


def _validate(cfg: CompoundDocsConfig) -> None:
    if cfg.embedding.dimensions < 1:
        raise ConfigError(f"embedding.dimensions must be >= 1, got {cfg.embedding.dimensions}")
    for name, value in (
        ("rag.min_relevance_score", cfg.rag.min_relevance_score),
        ("rag.semantic_min_relevance", cfg.rag.semantic_min_relevance),
    ):
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"{name} must be between 0.0 and 1.0, got {value}")
    if cfg.link_resolution.max_depth < 0:
        raise ConfigError("link_resolution.max_depth must be >= 0")
    if cfg.file_watcher.queue_size < 1:
        raise ConfigError("file_watcher.queue_size must be >= 1")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Layer *override* on *base*; nested sections merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        below = merged.get(key)
        merged[key] = (
            _deep_merge(below, value) if isinstance(below, dict) and isinstance(value, dict) else value
        )
    return merged


def _cfg_from_dict(data: dict[str, Any]) -> CompoundDocsConfig:
    """Build a *CompoundDocsConfig* from a merged raw YAML dict."""
    cfg = CompoundDocsConfig()

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
            timeout_seconds=float(e.get("timeout_seconds", cfg.embedding.timeout_seconds)),
            cache_size=int(e.get("cache_size", cfg.embedding.cache_size)),
        )

    if "rag" in data:
        r = data["rag"]
        cfg.rag = RagCfg(
            min_relevance_score=float(r.get("min_relevance_score", cfg.rag.min_relevance_score)),
            semantic_min_relevance=float(
                r.get("semantic_min_relevance", cfg.rag.semantic_min_relevance)
            ),
            max_results=int(r.get("max_results", cfg.rag.max_results)),
            token_budget=int(r.get("token_budget", cfg.rag.token_budget)),
            token_model=str(r.get("token_model", cfg.rag.token_model)),
        )

    if "link_resolution" in data:
        lr = data["link_resolution"]
        cfg.link_resolution = LinkResolutionCfg(
            max_depth=int(lr.get("max_depth", cfg.link_resolution.max_depth)),
            max_linked_docs=int(lr.get("max_linked_docs", cfg.link_resolution.max_linked_docs)),
        )

    if "file_watcher" in data:
        fw = data["file_watcher"]
        cfg.file_watcher = FileWatcherCfg(
            debounce_ms=int(fw.get("debounce_ms", cfg.file_watcher.debounce_ms)),
            include=list(fw.get("include", cfg.file_watcher.include)),
            exclude=list(fw.get("exclude", cfg.file_watcher.exclude)),
            queue_size=int(fw.get("queue_size", cfg.file_watcher.queue_size)),
            retry_interval_seconds=float(
                fw.get("retry_interval_seconds", cfg.file_watcher.retry_interval_seconds)
            ),
        )

    if "chunking" in data:
        ch = data["chunking"]
        cfg.chunking = ChunkingCfg(
            threshold_lines=int(ch.get("threshold_lines", cfg.chunking.threshold_lines)),
        )

    if "resilience" in data:
        rs = data["resilience"]
        rt = rs.get("retry", {})
        cb = rs.get("circuit_breaker", {})
        defaults = cfg.resilience
        cfg.resilience = ResilienceCfg(
            retry=RetryCfg(
                max_attempts=int(rt.get("max_attempts", defaults.retry.max_attempts)),
                initial_delay_ms=int(rt.get("initial_delay_ms", defaults.retry.initial_delay_ms)),
                max_delay_ms=int(rt.get("max_delay_ms", defaults.retry.max_delay_ms)),
                multiplier=float(rt.get("multiplier", defaults.retry.multiplier)),
                jitter=bool(rt.get("jitter", defaults.retry.jitter)),
            ),
            circuit_breaker=CircuitBreakerCfg(
                failure_threshold=int(
                    cb.get("failure_threshold", defaults.circuit_breaker.failure_threshold)
                ),
                break_duration_seconds=float(
                    cb.get(
                        "break_duration_seconds",
                        defaults.circuit_breaker.break_duration_seconds,
                    )
                ),
            ),
        )

    if "external_docs" in data:
        cfg.external_docs = ExternalDocsCfg(path=data["external_docs"].get("path"))

    if "database" in data:
        cfg.database = DatabaseCfg(path=data["database"].get("path"))

    return cfg


def _apply_env_overrides(cfg: CompoundDocsConfig) -> CompoundDocsConfig:
    """Apply COMPOUND_DOCS_* environment variable overrides."""
    if model := os.environ.get("COMPOUND_DOCS_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if db_path := os.environ.get("COMPOUND_DOCS_DB_PATH"):
        cfg.database.path = db_path
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> CompoundDocsConfig:
    """Load and return a merged *CompoundDocsConfig*.

    Applies layers in order: global → per-project → env vars.
    Call-site overrides are applied later with resolve_query_options().

    Args:
        project_dir: Project root holding *compound-docs.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If a file is not valid YAML, global config contains
            API-key-like fields, or a value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = _read_yaml(global_path)
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = _read_yaml(project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _apply_env_overrides(_cfg_from_dict(merged))
    _validate(cfg)
    return cfg


def resolve_query_options(
    override: QueryOptions | None,
    cfg: CompoundDocsConfig,
    *,
    semantic: bool = False,
) -> ResolvedQueryOptions:
    """Resolve query knobs with precedence call override > tenant config > default.

    Args:
        override: Per-call options; any ``None`` field falls through.
        cfg: The tenant's merged configuration (already includes defaults).
        semantic: Use the semantic-search relevance floor instead of the RAG one.
    """
    o = override or QueryOptions()
    default_min = cfg.rag.semantic_min_relevance if semantic else cfg.rag.min_relevance_score

    def pick(value: Any, fallback: Any) -> Any:
        return fallback if value is None else value

    resolved = ResolvedQueryOptions(
        min_relevance=float(pick(o.min_relevance, default_min)),
        max_results=int(pick(o.max_results, cfg.rag.max_results)),
        max_linked_docs=int(pick(o.max_linked_docs, cfg.link_resolution.max_linked_docs)),
        max_depth=int(pick(o.max_depth, cfg.link_resolution.max_depth)),
        min_promotion_level=o.min_promotion_level,
    )
    if not 0.0 <= resolved.min_relevance <= 1.0:
        raise ConfigError(f"min_relevance must be between 0.0 and 1.0, got {resolved.min_relevance}")
    if resolved.max_results < 1:
        raise ConfigError(f"max_results must be >= 1, got {resolved.max_results}")
    return resolved
