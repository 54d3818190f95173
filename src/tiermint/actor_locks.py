# -*- coding: utf-8 -*-
"""Per-actor request locks with automatic expiry.

An actor holds at most one live lock. Locks expire after their TTL so a
crashed process can never block an actor forever, and release is idempotent.
"""
from __future__ import annotations

import threading
import time
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional, Protocol
from uuid import uuid4

import redis
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .core.clock import Clock, ensure_clock
from .core.retry import RetryPolicy
from .errors import actor_busy, persistence_failure
from .infrastructure.persistence import ActorLockModel, session_scope, supports_row_locks
from .metrics import DEFAULT_METERS
from .types import ActorLock, MeterLike


class ActorLockBackend(Protocol):
    def acquire(self, actor_key: str, ttl: float, *, max_wait: float = 0.0) -> ActorLock: ...

    def release(self, actor_key: str, token: Optional[str] = None) -> bool: ...

    def status(self, actor_key: str) -> Optional[ActorLock]: ...


def _new_token() -> str:
    return uuid4().hex


def _validate_ttl(ttl: float) -> None:
    if ttl <= 0:
        raise ValueError("ttl must be positive")


class InMemoryActorLocks(ActorLockBackend):
    """Process-local locks; waiters block on a condition variable."""

    def __init__(self, *, clock: Clock | None = None, meters: MeterLike | None = None) -> None:
        self._clock = ensure_clock(clock)
        self._meters = meters or DEFAULT_METERS
        self._locks: dict[str, ActorLock] = {}
        self._cond = threading.Condition()

    def acquire(self, actor_key: str, ttl: float, *, max_wait: float = 0.0) -> ActorLock:
        _validate_ttl(ttl)
        deadline = time.monotonic() + max(max_wait, 0.0)
        with self._cond:
            while True:
                now = self._clock.now()
                current = self._locks.get(actor_key)
                if current is None or not current.is_live(now):
                    lock = ActorLock(
                        actor_key=actor_key,
                        token=_new_token(),
                        acquired_at=now,
                        expires_at=now + timedelta(seconds=ttl),
                    )
                    self._locks[actor_key] = lock
                    return lock
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._meters.record_actor_busy()
                    raise actor_busy(f"expires_at={current.expires_at.isoformat()}")
                until_expiry = (current.expires_at - now).total_seconds()
                self._cond.wait(timeout=min(remaining, max(until_expiry, 0.01)))

    def release(self, actor_key: str, token: Optional[str] = None) -> bool:
        with self._cond:
            current = self._locks.get(actor_key)
            if current is None or (token is not None and current.token != token):
                return False
            del self._locks[actor_key]
            self._cond.notify_all()
            return True

    def status(self, actor_key: str) -> Optional[ActorLock]:
        with self._cond:
            current = self._locks.get(actor_key)
            if current is None or not current.is_live(self._clock.now()):
                return None
            return current


class _PollingActorLocks(ActorLockBackend):
    """Shared acquire loop for backends that can only be polled."""

    def __init__(
        self,
        *,
        clock: Clock | None,
        meters: MeterLike | None,
        poll_policy: RetryPolicy | None,
        sleeper: Callable[[float], None],
    ) -> None:
        self._clock = ensure_clock(clock)
        self._meters = meters or DEFAULT_METERS
        self._poll = poll_policy or RetryPolicy(base_delay=0.05, factor=2.0, max_delay=0.5)
        self._sleeper = sleeper

    def _try_acquire(self, actor_key: str, ttl: float) -> Optional[ActorLock]:
        raise NotImplementedError

    def acquire(self, actor_key: str, ttl: float, *, max_wait: float = 0.0) -> ActorLock:
        _validate_ttl(ttl)
        deadline = time.monotonic() + max(max_wait, 0.0)
        attempt = 0
        while True:
            lock = self._try_acquire(actor_key, ttl)
            if lock is not None:
                return lock
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._meters.record_actor_busy()
                raise actor_busy(f"actor lock held backend={type(self).__name__}")
            attempt += 1
            delay = self._poll.backoff_for(attempt, correlation_id=actor_key, op="actor_lock")
            self._sleeper(min(delay, remaining))


class RedisActorLocks(_PollingActorLocks):
    """Locks stored as ``SET NX PX`` keys; release is compare-and-delete."""

    _LOCK_RELEASE_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if current and string.sub(current, 1, string.len(ARGV[1]) + 1) == ARGV[1] .. '|' then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        namespace: str = "tiermint",
        clock: Clock | None = None,
        meters: MeterLike | None = None,
        poll_policy: RetryPolicy | None = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(clock=clock, meters=meters, poll_policy=poll_policy, sleeper=sleeper)
        self._client = client
        self._namespace = namespace
        self._release_script = self._client.register_script(self._LOCK_RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisActorLocks":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, actor_key: str) -> str:
        return f"{self._namespace}:actor-lock:{actor_key}"

    def _try_acquire(self, actor_key: str, ttl: float) -> Optional[ActorLock]:
        now = self._clock.now()
        token = _new_token()
        value = f"{token}|{now.isoformat()}"
        try:
            acquired = self._client.set(self._key(actor_key), value, nx=True, px=max(int(ttl * 1000), 1))
        except redis.RedisError as exc:
            raise persistence_failure("actor lock backend unreachable", cause=exc) from exc
        if not acquired:
            return None
        return ActorLock(actor_key=actor_key, token=token, acquired_at=now, expires_at=now + timedelta(seconds=ttl))

    def release(self, actor_key: str, token: Optional[str] = None) -> bool:
        try:
            if token is None:
                return bool(self._client.delete(self._key(actor_key)))
            return bool(self._release_script(keys=[self._key(actor_key)], args=[token]))
        except redis.RedisError as exc:
            raise persistence_failure("actor lock backend unreachable", cause=exc) from exc

    def status(self, actor_key: str) -> Optional[ActorLock]:
        key = self._key(actor_key)
        try:
            value = self._client.get(key)
            remaining_ms = self._client.pttl(key)
        except redis.RedisError as exc:
            raise persistence_failure("actor lock backend unreachable", cause=exc) from exc
        if value is None or remaining_ms is None or remaining_ms < 0:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        token, _, acquired_raw = value.partition("|")
        now = self._clock.now()
        acquired_at = datetime.fromisoformat(acquired_raw) if acquired_raw else now
        return ActorLock(
            actor_key=actor_key,
            token=token,
            acquired_at=acquired_at,
            expires_at=now + timedelta(milliseconds=remaining_ms),
        )


class SqlAlchemyActorLocks(_PollingActorLocks):
    """One row per actor in the ledger database; expired rows are taken over."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Clock | None = None,
        meters: MeterLike | None = None,
        poll_policy: RetryPolicy | None = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(clock=clock, meters=meters, poll_policy=poll_policy, sleeper=sleeper)
        self._session_factory = session_factory

    def _try_acquire(self, actor_key: str, ttl: float) -> Optional[ActorLock]:
        now = self._clock.now()
        lock = ActorLock(
            actor_key=actor_key,
            token=_new_token(),
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        try:
            with session_scope(self._session_factory) as session:
                stmt = select(ActorLockModel).where(ActorLockModel.actor_key == actor_key)
                if supports_row_locks(session):  # pragma: no branch - dialect guard
                    stmt = stmt.with_for_update()
                row = session.execute(stmt).scalar_one_or_none()
                if row is None:
                    try:
                        with session.begin_nested():
                            session.add(
                                ActorLockModel(
                                    actor_key=actor_key,
                                    token=lock.token,
                                    acquired_at=lock.acquired_at,
                                    expires_at=lock.expires_at,
                                )
                            )
                            session.flush()
                    except IntegrityError:
                        return None
                    return lock
                if _aware(row.expires_at) > now:
                    return None
                row.token = lock.token
                row.acquired_at = lock.acquired_at
                row.expires_at = lock.expires_at
                return lock
        except SQLAlchemyError as exc:
            raise persistence_failure("actor lock backend unreachable", cause=exc) from exc

    def release(self, actor_key: str, token: Optional[str] = None) -> bool:
        stmt = delete(ActorLockModel).where(ActorLockModel.actor_key == actor_key)
        if token is not None:
            stmt = stmt.where(ActorLockModel.token == token)
        try:
            with session_scope(self._session_factory) as session:
                return session.execute(stmt).rowcount > 0
        except SQLAlchemyError as exc:
            raise persistence_failure("actor lock backend unreachable", cause=exc) from exc

    def status(self, actor_key: str) -> Optional[ActorLock]:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(ActorLockModel).where(ActorLockModel.actor_key == actor_key)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise persistence_failure("actor lock backend unreachable", cause=exc) from exc
        if row is None:
            return None
        lock = ActorLock(
            actor_key=row.actor_key,
            token=row.token,
            acquired_at=_aware(row.acquired_at),
            expires_at=_aware(row.expires_at),
        )
        return lock if lock.is_live(self._clock.now()) else None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


__all__ = [
    "ActorLockBackend",
    "InMemoryActorLocks",
    "RedisActorLocks",
    "SqlAlchemyActorLocks",
]
