"""Tool surface: project activation, indexing, queries, deletes, promotion.

Every operation returns a JSON-shaped envelope::

    {"success": true,  "data": {...}, "error": null}
    {"success": false, "data": null,  "error": {"code", "message", "hint", "details"}}

Errors never escape as exceptions; unexpected ones are logged with a
traceback and reported as UNEXPECTED_ERROR.
"""

from __future__ import annotations

import functools
import logging
import queue
import sqlite3
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable

from compound_docs.config import CompoundDocsConfig, ConfigError, QueryOptions, load_config
from compound_docs.db.connection import Database
from compound_docs.db.migrations import run_migrations
from compound_docs.db.repository import Repository
from compound_docs.errors import (
    CompoundDocsError,
    ExternalPathInvalidError,
    InvalidArgumentError,
    NotFoundError,
    ProjectNotActiveError,
    ShutdownError,
)
from compound_docs.ingest.embedding_gateway import EmbedFn, EmbeddingGateway
from compound_docs.logging_config import configure_logging
from compound_docs.rag.assembler import assemble_context
from compound_docs.rag.link_graph import LinkGraphResolver
from compound_docs.rag.llm_client import missing_api_key
from compound_docs.rag.query_engine import QueryEngine
from compound_docs.sync.reconciler import Reconciler
from compound_docs.sync.watcher import DirectoryWatcher, PathFilter
from compound_docs.sync.worker import ReconcileWorker
from compound_docs.tenant import TenantContext

logger = logging.getLogger(__name__)

ToolResponse = dict[str, Any]


def ok(data: Any) -> ToolResponse:
    return {"success": True, "data": data, "error": None}


def fail(error: CompoundDocsError | ConfigError) -> ToolResponse:
    if isinstance(error, ConfigError):
        payload = {"code": "CONFIG_INVALID", "message": str(error)}
    else:
        payload = error.to_dict()
    return {"success": False, "data": None, "error": payload}


def _tool(operation: str) -> Callable:
    """Wrap a service method: shutdown gate, error envelope, logging."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(self: CompoundDocsService, *args: Any, **kwargs: Any) -> ToolResponse:
            try:
                if self._shutdown.is_set():
                    raise ShutdownError(f"{operation} rejected: service is shutting down", operation=operation)
                return ok(fn(self, *args, **kwargs))
            except CompoundDocsError as exc:
                if exc.operation is None:
                    exc.operation = operation
                logger.info("%s failed: [%s] %s", operation, exc.code, exc.message)
                return fail(exc)
            except ConfigError as exc:
                logger.warning("%s failed: invalid configuration: %s", operation, exc)
                return fail(exc)
            except Exception:
                logger.exception("%s failed unexpectedly", operation)
                return {
                    "success": False,
                    "data": None,
                    "error": {
                        "code": "UNEXPECTED_ERROR",
                        "message": f"Unexpected error during {operation}; see server log.",
                    },
                }

        return wrapper

    return decorator


@dataclass
class _Project:
    tenant: TenantContext
    root: Path
    config: CompoundDocsConfig
    conn: sqlite3.Connection
    repo: Repository
    gateway: EmbeddingGateway
    reconciler: Reconciler
    engine: QueryEngine
    queue: queue.Queue
    watcher: DirectoryWatcher | None = None
    worker: ReconcileWorker | None = None

    def stop(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
        if self.worker is not None:
            self.worker.stop()
        self.engine.close()
        self.conn.close()


class CompoundDocsService:
    """Owns active projects and exposes the tool operations.

    Args:
        embed_fn: Override the embedding capability (default: litellm).
        global_config_path: Override ``~/.compound-docs/config.yaml`` (for tests).
        watch: Start watcher/worker threads on activation.
        log_level: When set, install the rich console handler at this level
            (see compound_docs.logging_config). Hosts with their own logging
            setup leave it as None.
    """

    def __init__(
        self,
        embed_fn: EmbedFn | None = None,
        *,
        global_config_path: Path | None = None,
        watch: bool = True,
        log_level: int | str | None = None,
    ) -> None:
        if log_level is not None:
            configure_logging(log_level)
        self._embed_fn = embed_fn
        self._global_config_path = global_config_path
        self._watch = watch
        self._lock = threading.RLock()
        self._projects: dict[str, _Project] = {}
        self._shutdown = threading.Event()

    # ------------------------------------------------------------------
    # Project lifecycle
    # ------------------------------------------------------------------

    @_tool("activate_project")
    def activate_project(self, root: str | Path, branch: str | None = None) -> dict:
        """Open the project's index, run full reconciliation, start watching."""
        root_path = Path(root).expanduser().resolve()
        if not root_path.is_dir():
            raise InvalidArgumentError(
                f"Project root '{root_path}' is not a directory",
                path=str(root_path),
                hint="Pass the absolute path of an existing project directory.",
            )
        cfg = load_config(root_path, global_config_path=self._global_config_path)
        _check_external_docs(root_path, cfg)
        tenant = TenantContext.for_project(root_path, branch)

        with self._lock:
            project = self._projects.get(tenant.key)
            if project is None:
                project = self._open_project(tenant, root_path, cfg)
                self._projects[tenant.key] = project

        result = project.reconciler.reconcile_full(tenant, root_path)
        if self._watch:
            with self._lock:
                if project.watcher is None:
                    self._start_watching(project)

        return {
            "tenant": tenant.key,
            "project_name": tenant.project_name,
            "branch_name": tenant.branch_name,
            "path_hash": tenant.path_hash,
            "root": str(root_path),
            "reconciliation": result.to_dict(),
            "document_count": project.repo.count_documents(tenant),
            "watching": project.watcher is not None,
        }

    @_tool("deactivate_project")
    def deactivate_project(self, tenant: TenantContext | str) -> dict:
        with self._lock:
            project = self._project(tenant)
            del self._projects[project.tenant.key]
        project.stop()
        return {"tenant": project.tenant.key, "deactivated": True}

    def shutdown(self) -> None:
        """Stop watchers, finish in-flight reconciliation, reject later calls."""
        self._shutdown.set()
        with self._lock:
            projects = list(self._projects.values())
            self._projects.clear()
        for project in projects:
            project.stop()
        logger.info("compound-docs service shut down (%d projects)", len(projects))

    @_tool("status")
    def status(self) -> dict:
        with self._lock:
            projects = list(self._projects.values())
        return {
            "projects": [
                {
                    "tenant": p.tenant.key,
                    "root": str(p.root),
                    "document_count": p.repo.count_documents(p.tenant),
                    "watching": p.watcher is not None and p.watcher.running,
                    "pending_retries": p.worker.pending_retries if p.worker else 0,
                    "embedding": p.gateway.status(),
                }
                for p in projects
            ]
        }

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    @_tool("index_document")
    def index_document(self, tenant: TenantContext | str, path: str) -> dict:
        project = self._project(tenant)
        rel = _relative_path(project.root, path)
        if not project.reconciler.filter.matches(rel):
            raise InvalidArgumentError(
                f"'{rel}' is not a watched document",
                path=rel,
                tenant=project.tenant.key,
                hint="Only files matching file_watcher.include (and not exclude) are indexed.",
            )
        if not (project.root / rel).is_file() and project.repo.get_by_path(project.tenant, rel) is None:
            raise NotFoundError(
                f"File '{rel}' does not exist",
                path=rel,
                tenant=project.tenant.key,
                hint="Check the path; it must be relative to the project root.",
            )
        result = project.reconciler.index_path(project.tenant, project.root, rel)
        if result.errors:
            err = result.errors[0]
            exc = CompoundDocsError(err.message, path=rel, tenant=project.tenant.key, operation=err.operation)
            exc.code = err.code
            exc.retryable = err.retryable
            raise exc
        return {"path": rel, **result.to_dict()}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @_tool("rag_query")
    def rag_query(
        self,
        tenant: TenantContext | str,
        text: str,
        options: QueryOptions | dict | None = None,
    ) -> dict:
        project = self._project(tenant)
        result = project.engine.rag_query(project.tenant, text, _options(options))
        context = assemble_context(
            result,
            token_budget=project.config.rag.token_budget,
            model=project.config.rag.token_model,
        )
        data = result.to_dict()
        data["context"] = {
            "text": context.text,
            "sources": context.sources,
            "total_tokens": context.total_tokens,
            "truncated": context.truncated,
        }
        return data

    @_tool("semantic_search")
    def semantic_search(
        self,
        tenant: TenantContext | str,
        text: str,
        options: QueryOptions | dict | None = None,
    ) -> dict:
        project = self._project(tenant)
        return project.engine.semantic_search(project.tenant, text, _options(options)).to_dict()

    # ------------------------------------------------------------------
    # Mutations allowed to external callers
    # ------------------------------------------------------------------

    @_tool("delete_documents")
    def delete_documents(
        self,
        tenant: TenantContext | str,
        paths: list[str] | str,
        dry_run: bool = False,
    ) -> dict:
        """Delete listed paths, or every document of the tenant with ``"all"``."""
        project = self._project(tenant)
        t = project.tenant
        if paths == "all":
            if dry_run:
                return {"dry_run": True, "deleted_count": project.repo.count_documents(t)}
            return {"dry_run": False, "deleted_count": project.repo.delete_by_tenant(t)}
        if isinstance(paths, str) or not paths:
            raise InvalidArgumentError(
                "paths must be a non-empty list of relative paths or the string 'all'"
            )

        deleted: list[str] = []
        not_found: list[str] = []
        for raw in paths:
            rel = _relative_path(project.root, raw)
            if dry_run:
                (deleted if project.repo.get_by_path(t, rel) else not_found).append(rel)
            elif project.repo.delete_by_path(t, rel):
                deleted.append(rel)
            else:
                not_found.append(rel)
        return {
            "dry_run": dry_run,
            "deleted_count": len(deleted),
            "deleted": deleted,
            "not_found": not_found,
        }

    @_tool("update_promotion_level")
    def update_promotion_level(self, tenant: TenantContext | str, path: str, level: str) -> dict:
        project = self._project(tenant)
        rel = _relative_path(project.root, path)
        before = project.repo.get_by_path(project.tenant, rel)
        doc = project.repo.update_promotion_level(project.tenant, rel, level)
        return {
            "path": rel,
            "previous_level": before.promotion_level if before else None,
            "promotion_level": doc.promotion_level,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _project(self, tenant: TenantContext | str) -> _Project:
        key = tenant.key if isinstance(tenant, TenantContext) else str(tenant)
        with self._lock:
            project = self._projects.get(key)
        if project is None:
            raise ProjectNotActiveError(f"Project '{key}' is not active", tenant=key)
        return project

    def _open_project(self, tenant: TenantContext, root: Path, cfg: CompoundDocsConfig) -> _Project:
        conn = Database(cfg.db_path(root)).connect()
        run_migrations(conn)
        repo = Repository(conn, cfg.embedding.model, cfg.embedding.dimensions)
        gateway = EmbeddingGateway.from_config(cfg, embed_fn=self._embed_fn)
        if self._embed_fn is None:
            env_var = missing_api_key(cfg.embedding.model)
            if env_var:
                logger.warning(
                    "%s is not set; embedding with %s will fail until it is",
                    env_var,
                    cfg.embedding.model,
                )
        path_filter = PathFilter(cfg.file_watcher.include, cfg.file_watcher.exclude)
        reconciler = Reconciler(
            repo,
            gateway,
            threshold_lines=cfg.chunking.threshold_lines,
            path_filter=path_filter,
        )
        engine = QueryEngine(repo, gateway, LinkGraphResolver(repo), cfg)
        logger.info("activated %s at %s", tenant.key, root)
        return _Project(
            tenant=tenant,
            root=root,
            config=cfg,
            conn=conn,
            repo=repo,
            gateway=gateway,
            reconciler=reconciler,
            engine=engine,
            queue=queue.Queue(maxsize=cfg.file_watcher.queue_size),
        )

    def _start_watching(self, project: _Project) -> None:
        fw = project.config.file_watcher
        project.worker = ReconcileWorker(
            project.tenant,
            project.root,
            project.reconciler,
            project.queue,
            retry_interval=fw.retry_interval_seconds,
        )
        project.watcher = DirectoryWatcher(
            project.root,
            project.queue,
            debounce=fw.debounce_ms / 1000,
            path_filter=project.reconciler.filter,
        )
        project.worker.start()
        project.watcher.start()


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _check_external_docs(root: Path, cfg: CompoundDocsConfig) -> None:
    if not cfg.external_docs.path:
        return
    external = Path(cfg.external_docs.path).expanduser()
    if not external.is_absolute():
        external = root / external
    if not external.is_dir():
        raise ExternalPathInvalidError(
            f"Configured external docs path '{external}' does not exist or is not a directory",
            path=str(external),
        )


def _relative_path(root: Path, path: str) -> str:
    if not path or not str(path).strip():
        raise InvalidArgumentError("path is required")
    candidate = Path(path).expanduser()
    absolute = candidate if candidate.is_absolute() else root / candidate
    try:
        return absolute.resolve().relative_to(root).as_posix()
    except ValueError:
        raise InvalidArgumentError(
            f"Path '{path}' is outside the project root", path=str(path)
        ) from None


def _options(options: QueryOptions | dict | None) -> QueryOptions | None:
    if options is None or isinstance(options, QueryOptions):
        return options
    known = {f.name for f in fields(QueryOptions)}
    unknown = set(options) - known
    if unknown:
        raise InvalidArgumentError(
            f"Unknown query option(s): {', '.join(sorted(unknown))}",
            hint=f"Supported options: {', '.join(sorted(known))}.",
        )
    return QueryOptions(**options)

