"""Clock and retry primitives shared across the engine."""

from .clock import Clock, FrozenClock, SystemClock, ensure_clock
from .retry import RetryExhaustedError, RetryPolicy, execute_with_retry

__all__ = [
    "Clock",
    "FrozenClock",
    "RetryExhaustedError",
    "RetryPolicy",
    "SystemClock",
    "ensure_clock",
    "execute_with_retry",
]
