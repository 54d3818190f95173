"""Deterministic retry helpers with metrics instrumentation."""

from __future__ import annotations

import time
from dataclasses import dataclass
from hashlib import blake2b
from typing import Callable, Iterable, Protocol, TypeVar

from prometheus_client import Counter, Histogram, REGISTRY

T = TypeVar("T")


class Sleeper(Protocol):
    """Protocol for synchronous sleep implementations."""

    def __call__(self, seconds: float) -> None:  # pragma: no cover - protocol
        ...


def _safe_metric(factory, name: str, description: str, **kwargs):
    try:
        return factory(name, description, **kwargs)
    except ValueError:
        return REGISTRY._names_to_collectors[name]


retry_attempts_total = _safe_metric(
    Counter,
    "tiermint_retry_attempts_total",
    "Total retry attempts per operation and outcome.",
    labelnames=("op", "outcome"),
)

retry_exhaustion_total = _safe_metric(
    Counter,
    "tiermint_retry_exhaustion_total",
    "Total number of times retries were exhausted.",
    labelnames=("op",),
)

retry_backoff_seconds = _safe_metric(
    Histogram,
    "tiermint_retry_backoff_seconds",
    "Histogram for retry backoff durations in seconds.",
    labelnames=("op",),
)


@dataclass(slots=True)
class RetryPolicy:
    base_delay: float = 0.01
    factor: float = 2.0
    max_delay: float = 0.5
    max_attempts: int = 5

    def backoff_for(self, attempt: int, *, correlation_id: str, op: str) -> float:
        """Return deterministic backoff including jitter for attempt (1-indexed)."""

        attempt = max(1, attempt)
        raw = min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)
        digest = blake2b(f"{correlation_id}:{op}:{attempt}".encode("utf-8"), digest_size=2).digest()
        jitter_seed = int.from_bytes(digest, "big") % 100
        jitter_multiplier = 1 + jitter_seed / 1000
        return raw * jitter_multiplier


class RetryExhaustedError(RuntimeError):
    def __init__(self, *, op: str, correlation_id: str, last_error: Exception) -> None:
        super().__init__(f"RETRY_EXHAUSTED: {op} failed after retries ({last_error})")
        self.op = op
        self.correlation_id = correlation_id
        self.last_error = last_error


def _should_retry(exception: Exception, retryable: Iterable[type[Exception]]) -> bool:
    return any(isinstance(exception, exc_type) for exc_type in retryable)


def _record_metrics(*, op: str, outcome: str, backoff: float | None) -> None:
    retry_attempts_total.labels(op=op, outcome=outcome).inc()
    if backoff is not None:
        retry_backoff_seconds.labels(op=op).observe(backoff)


def execute_with_retry(
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    retryable: Iterable[type[Exception]],
    correlation_id: str,
    op: str,
    sleeper: Sleeper = time.sleep,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Run *func*, retrying exceptions listed in *retryable* with backoff.

    Non-retryable exceptions propagate untouched. When the attempts run out the
    last retryable exception is wrapped in :class:`RetryExhaustedError`.
    """

    retryable = tuple(retryable)
    last_error: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = func()
        except Exception as exc:
            if not _should_retry(exc, retryable):
                raise
            last_error = exc
            if attempt >= policy.max_attempts:
                _record_metrics(op=op, outcome="failure", backoff=None)
                retry_exhaustion_total.labels(op=op).inc()
                raise RetryExhaustedError(op=op, correlation_id=correlation_id, last_error=exc) from exc
            backoff = policy.backoff_for(attempt, correlation_id=correlation_id, op=op)
            _record_metrics(op=op, outcome="retry", backoff=backoff)
            if on_retry is not None:
                on_retry(attempt, exc)
            sleeper(backoff)
        else:
            _record_metrics(op=op, outcome="success", backoff=None)
            return result
    assert last_error is not None  # pragma: no cover - defensive guard
    raise RetryExhaustedError(op=op, correlation_id=correlation_id, last_error=last_error)


__all__ = [
    "RetryExhaustedError",
    "RetryPolicy",
    "Sleeper",
    "execute_with_retry",
    "retry_attempts_total",
    "retry_backoff_seconds",
    "retry_exhaustion_total",
]
