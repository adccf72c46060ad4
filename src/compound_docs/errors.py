"""Error taxonomy with actionable messages.

Every error surfaced to a caller carries:
  1. What went wrong (clear cause, with path / tenant / operation)
  2. A hint describing what to do about it

Per-path errors are collected by the reconciler; whole-operation errors
(store unreachable, invalid tenant, invalid root) abort the call.
"""

from __future__ import annotations

from typing import Any


class CompoundDocsError(Exception):
    """Base class for all engine errors.

    Attributes:
        code: Stable machine-readable error code (used in tool responses).
        hint: Actionable fix shown to the user.
        retryable: True if the same operation may succeed on a later attempt.
    """

    code = "UNEXPECTED_ERROR"
    hint = ""
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        tenant: str | None = None,
        operation: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.tenant = tenant
        self.operation = operation
        if hint is not None:
            self.hint = hint

    def __str__(self) -> str:
        context = ", ".join(
            f"{k}={v}"
            for k, v in (("operation", self.operation), ("tenant", self.tenant), ("path", self.path))
            if v
        )
        text = f"{self.message} ({context})" if context else self.message
        return f"{text}\n  {self.hint}" if self.hint else text

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-shaped error payload used in tool responses."""
        details = {
            k: v
            for k, v in (("path", self.path), ("tenant", self.tenant), ("operation", self.operation))
            if v
        }
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        if details:
            payload["details"] = details
        return payload


class FileSystemError(CompoundDocsError):
    """A source file could not be read (missing, permissions, bad encoding)."""

    code = "FILE_SYSTEM_ERROR"
    hint = "Check that the file exists, is readable, and is UTF-8 encoded."
    retryable = True


class ParseError(CompoundDocsError):
    """Markdown content could not be parsed into chunks or frontmatter."""

    code = "PARSE_ERROR"
    hint = "The document is indexed as a single unchunked unit until the syntax is fixed."


class EmbeddingUnavailableError(CompoundDocsError):
    """Embedding provider unreachable or circuit breaker open."""

    code = "EMBEDDING_UNAVAILABLE"
    hint = "The embedding service is failing; the path will be retried on the next cycle."
    retryable = True


class EmbeddingError(CompoundDocsError):
    """The provider returned an unusable embedding (e.g. wrong dimensions)."""

    code = "EMBEDDING_FAILED"
    hint = "Check embedding.model and embedding.dimensions in compound-docs.yaml."


class ConflictError(CompoundDocsError):
    """A concurrent reconciliation committed a different hash first."""

    code = "CONFLICT"
    hint = "Another writer updated this document; re-index it to pick up the latest content."
    retryable = True


class NotFoundError(CompoundDocsError):
    """Operation targeted a document or tenant that does not exist."""

    code = "DOCUMENT_NOT_FOUND"
    hint = "List indexed documents or activate the project first."


class StoreUnavailableError(CompoundDocsError):
    """The vector store could not be reached or is locked."""

    code = "STORE_UNAVAILABLE"
    hint = "Check the database path and that no other process holds a write lock."
    retryable = True


class ExternalPathInvalidError(CompoundDocsError):
    """The configured external docs path does not exist or is not a directory."""

    code = "EXTERNAL_PATH_INVALID"
    hint = "Fix external_docs.path in compound-docs.yaml or create the directory."


class InvalidArgumentError(CompoundDocsError):
    """A caller-supplied argument is empty or out of range."""

    code = "INVALID_ARGUMENT"


class ShutdownError(CompoundDocsError):
    """The engine is shutting down and rejects new work."""

    code = "SHUTTING_DOWN"
    hint = "Restart the service to accept new requests."


class EmptyQueryError(InvalidArgumentError):
    """Query text is empty or whitespace."""

    code = "EMPTY_QUERY"
    hint = "Provide a non-empty query."


class ProjectNotActiveError(NotFoundError):
    """Tool call referenced a tenant that has not been activated."""

    code = "PROJECT_NOT_ACTIVE"
    hint = "Call activate_project with the project root first."
