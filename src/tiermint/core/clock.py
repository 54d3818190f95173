"""Deterministic clock abstractions.

This module is the single entry-point for interacting with wall clock time.
Runtime code depends on :class:`Clock` (or one of its implementations) instead
of calling ``datetime.now`` directly, so lock expiry and audit timestamps can be
driven by :class:`FrozenClock` in tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Callable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "UTC"


def _system_now() -> datetime:
    """Return an aware UTC datetime using the system wall clock."""

    return datetime.now(UTC)


class SupportsNow(Protocol):
    """Protocol implemented by objects exposing a ``now`` method."""

    def now(self) -> datetime:  # pragma: no cover - structural typing
        ...


def _coerce_aware(value: datetime, *, timezone: ZoneInfo) -> datetime:
    """Ensure *value* is timezone-aware and normalised to *timezone*."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(timezone)


def validate_timezone(tz_name: str | None) -> ZoneInfo:
    """Validate *tz_name* and return an instantiated :class:`ZoneInfo`."""

    candidate = (tz_name or "").strip()
    if not candidate:
        raise ValueError("CONFIG_TZ_INVALID: timezone is empty")
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"CONFIG_TZ_INVALID: unknown timezone {candidate!r}") from exc


class Clock(ABC):
    """Abstract deterministic clock interface."""

    timezone: ZoneInfo

    @abstractmethod
    def now(self) -> datetime:
        """Return the current datetime in :attr:`timezone`."""

    @classmethod
    def for_timezone(
        cls, tz_name: str = DEFAULT_TIMEZONE, *, now_factory: Callable[[], datetime] | None = None
    ) -> "SystemClock":
        """Instantiate a :class:`SystemClock` for *tz_name*."""

        return SystemClock(timezone=validate_timezone(tz_name), now_factory=now_factory or _system_now)


@dataclass(slots=True)
class SystemClock(Clock):
    """Clock backed by the process wall clock."""

    timezone: ZoneInfo
    now_factory: Callable[[], datetime] = field(default=_system_now, repr=False)

    def now(self) -> datetime:  # pragma: no branch - simple call
        return _coerce_aware(self.now_factory(), timezone=self.timezone)


@dataclass(slots=True)
class FrozenClock(Clock):
    """Clock returning a pre-defined deterministic instant."""

    timezone: ZoneInfo
    _current: datetime | None = field(default=None, repr=False)

    def now(self) -> datetime:
        if self._current is None:  # pragma: no cover - defensive guard
            raise RuntimeError("Frozen clock not initialised; call set() first")
        return _coerce_aware(self._current, timezone=self.timezone)

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            raise ValueError("CONFIG_CLOCK_FROZEN: value must be timezone-aware")
        self._current = value

    def tick(self, seconds: float) -> None:
        if self._current is None:
            raise RuntimeError("Frozen clock not initialised; call set() first")
        self._current = self._current + timedelta(seconds=seconds)


@dataclass(slots=True)
class CallableClock(Clock):
    """Adapter turning a callable into a :class:`Clock`."""

    func: Callable[[], datetime]
    timezone: ZoneInfo = field(default_factory=lambda: validate_timezone(DEFAULT_TIMEZONE))

    def now(self) -> datetime:
        return _coerce_aware(self.func(), timezone=self.timezone)


def ensure_clock(
    candidate: Clock | SupportsNow | Callable[[], datetime] | None,
    *,
    default: Clock | None = None,
    timezone: str = DEFAULT_TIMEZONE,
) -> Clock:
    """Normalise *candidate* into a :class:`Clock` instance.

    ``None`` resolves to *default* or a UTC :class:`SystemClock`. A callable is
    wrapped so that returned values are coerced to the configured timezone.
    """

    if candidate is None:
        return default or Clock.for_timezone(timezone)

    if isinstance(candidate, Clock):
        return candidate

    now = getattr(candidate, "now", None)
    if callable(now):
        return CallableClock(now, validate_timezone(timezone))

    if callable(candidate):
        return CallableClock(candidate, validate_timezone(timezone))

    raise TypeError("CONFIG_CLOCK_INVALID: pass a Clock or a callable returning datetime")


__all__ = [
    "CallableClock",
    "Clock",
    "DEFAULT_TIMEZONE",
    "FrozenClock",
    "SupportsNow",
    "SystemClock",
    "ensure_clock",
    "validate_timezone",
]
