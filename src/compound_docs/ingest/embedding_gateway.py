"""Embedding gateway: retry, circuit breaker and cache around an embed function.

Call path for ``EmbeddingGateway.embed(text)``:
  1. Serve from the LRU cache when the same text was embedded before.
  2. Fail fast with EmbeddingUnavailableError while the breaker is open.
  3. Call the provider with a per-call timeout, retrying with bounded
     exponential backoff; exhausting the retries counts as ONE breaker failure.
  4. Check the vector dimension, cache it, return it.
"""

from __future__ import annotations

import hashlib
import logging
import random
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

import litellm

from compound_docs.config import CompoundDocsConfig
from compound_docs.errors import EmbeddingError, EmbeddingUnavailableError, InvalidArgumentError
from compound_docs.rag import llm_client

logger = logging.getLogger(__name__)

# (text, timeout_seconds) -> vector
EmbedFn = Callable[[str, float], list[float]]

# Provider errors that will not go away by retrying the same request.
_NON_RETRYABLE: tuple[type[BaseException], ...] = (
    litellm.AuthenticationError,
    litellm.BadRequestError,
)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass
class RetryPolicy:
    """Bounded exponential backoff (seconds)."""

    max_attempts: int = 3
    initial_delay: float = 0.2
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry number *attempt* (0-based)."""
        base = min(self.max_delay, self.initial_delay * (self.multiplier ** attempt))
        if self.jitter:
            base *= 0.5 + rng() / 2
        return base


class CircuitBreaker:
    """Closed → open after N consecutive failures → half-open after the break.

    Half-open lets exactly one trial call through: success closes the
    breaker, failure reopens it for another full break duration.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        break_duration: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        self.failure_threshold = failure_threshold
        self.break_duration = break_duration
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> str:
        if self._state == OPEN and self._clock() - self._opened_at >= self.break_duration:
            self._state = HALF_OPEN
            self._trial_in_flight = False
        return self._state

    def before_call(self) -> None:
        """Raise EmbeddingUnavailableError unless a call may proceed now."""
        with self._lock:
            state = self._current_state()
            if state == CLOSED:
                return
            if state == HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return
            remaining = max(0.0, self.break_duration - (self._clock() - self._opened_at))
        raise EmbeddingUnavailableError(
            f"Embedding circuit breaker is {state}; retry in {remaining:.1f}s",
            operation="embed",
        )

    def record_success(self) -> None:
        with self._lock:
            if self._state != CLOSED:
                logger.info("embedding circuit breaker closed")
            self._state = CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != OPEN:
                    logger.warning(
                        "embedding circuit breaker opened after %d consecutive failures",
                        self._failures,
                    )
                self._state = OPEN
                self._opened_at = self._clock()
                self._trial_in_flight = False


class EmbeddingCache:
    """Thread-safe LRU of text-hash → vector."""

    def __init__(self, max_entries: int = 1_000) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def get(self, text: str) -> list[float] | None:
        k = self.key(text)
        with self._lock:
            vec = self._entries.get(k)
            if vec is not None:
                self._entries.move_to_end(k)
            return vec

    def put(self, text: str, vec: list[float]) -> None:
        if self.max_entries <= 0:
            return
        k = self.key(text)
        with self._lock:
            self._entries[k] = vec
            self._entries.move_to_end(k)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class EmbeddingGateway:
    """Resilient ``text -> fixed-dimension vector`` capability.

    Args:
        embed_fn: ``(text, timeout) -> vector``. Defaults to litellm via
            llm_client.embed() with *model*.
        model: LiteLLM embedding model string.
        dimensions: Expected vector length; mismatches raise EmbeddingError.
        timeout: Per-call timeout in seconds, passed to *embed_fn*.
        retry: Backoff policy applied before a call counts as a failure.
        breaker: Circuit breaker shared by all calls through this gateway.
        cache_size: LRU entries kept (0 disables caching).
        sleep: Injected for tests.
    """

    def __init__(
        self,
        embed_fn: EmbedFn | None = None,
        *,
        model: str = "openai/text-embedding-3-small",
        dimensions: int = 1536,
        timeout: float = 60.0,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        cache_size: int = 1_000,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()
        self.cache = EmbeddingCache(cache_size)
        self._embed_fn = embed_fn or (lambda text, t: llm_client.embed(self.model, text, timeout=t))
        self._sleep = sleep
        self._rng = rng

    @classmethod
    def from_config(cls, cfg: CompoundDocsConfig, embed_fn: EmbedFn | None = None) -> EmbeddingGateway:
        r = cfg.resilience.retry
        cb = cfg.resilience.circuit_breaker
        return cls(
            embed_fn,
            model=cfg.embedding.model,
            dimensions=cfg.embedding.dimensions,
            timeout=cfg.embedding.timeout_seconds,
            retry=RetryPolicy(
                max_attempts=r.max_attempts,
                initial_delay=r.initial_delay_ms / 1000,
                max_delay=r.max_delay_ms / 1000,
                multiplier=r.multiplier,
                jitter=r.jitter,
            ),
            breaker=CircuitBreaker(cb.failure_threshold, cb.break_duration_seconds),
            cache_size=cfg.embedding.cache_size,
        )

    def embed(self, text: str) -> list[float]:
        """Return the embedding of *text*.

        Raises:
            InvalidArgumentError: Empty text.
            EmbeddingUnavailableError: Breaker open or provider failing after retries.
            EmbeddingError: Provider returned a vector of the wrong dimension.
        """
        if not text or not text.strip():
            raise InvalidArgumentError("Cannot embed empty text", operation="embed")

        cached = self.cache.get(text)
        if cached is not None:
            return cached

        self.breaker.before_call()
        try:
            vec = self._call_with_retry(text)
        except Exception as exc:
            self.breaker.record_failure()
            raise EmbeddingUnavailableError(
                f"Embedding provider failed: {exc}", operation="embed"
            ) from exc

        if len(vec) != self.dimensions:
            self.breaker.record_failure()
            raise EmbeddingError(
                f"Embedding model '{self.model}' returned {len(vec)} dimensions, "
                f"expected {self.dimensions}",
                operation="embed",
            )

        self.breaker.record_success()
        self.cache.put(text, vec)
        return vec

    def status(self) -> dict:
        return {
            "model": self.model,
            "dimensions": self.dimensions,
            "circuit_breaker": self.breaker.state,
            "cached_embeddings": len(self.cache),
        }

    def _call_with_retry(self, text: str) -> list[float]:
        attempts = max(1, self.retry.max_attempts)
        for attempt in range(attempts):
            try:
                return list(self._embed_fn(text, self.timeout))
            except _NON_RETRYABLE:
                raise
            except Exception as exc:
                if attempt + 1 >= attempts:
                    raise
                delay = self.retry.delay(attempt, self._rng)
                logger.debug(
                    "embedding attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt + 1,
                    attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")
