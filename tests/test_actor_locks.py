# -*- coding: utf-8 -*-
from __future__ import annotations

import threading
import time

import fakeredis
import pytest

from tiermint.actor_locks import InMemoryActorLocks, RedisActorLocks, SqlAlchemyActorLocks
from tiermint.core.retry import RetryPolicy
from tiermint.errors import ActorBusy

from .conftest import metric_value, no_sleep

ACTOR = "0.0.4242"
FAST_POLL = RetryPolicy(base_delay=0.005, max_delay=0.01)


@pytest.fixture()
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture(params=["memory", "redis", "sql"])
def locks(request, clock, meters, redis_client, session_factory):
    if request.param == "memory":
        return InMemoryActorLocks(clock=clock, meters=meters)
    if request.param == "redis":
        return RedisActorLocks(redis_client, clock=clock, meters=meters, poll_policy=FAST_POLL, sleeper=no_sleep)
    return SqlAlchemyActorLocks(session_factory, clock=clock, meters=meters, poll_policy=FAST_POLL, sleeper=no_sleep)


def test_second_acquire_is_busy(locks, meters) -> None:
    lock = locks.acquire(ACTOR, 120)
    assert lock.expires_at > lock.acquired_at

    with pytest.raises(ActorBusy) as exc:
        locks.acquire(ACTOR, 120)
    assert exc.value.transient
    assert exc.value.code == "E_ACTOR_BUSY"
    assert metric_value(meters._actor_busy) == 1

    other = locks.acquire("0.0.9999", 120)
    assert other.token != lock.token


def test_release_is_idempotent(locks) -> None:
    lock = locks.acquire(ACTOR, 120)
    assert locks.release(ACTOR, lock.token)
    assert not locks.release(ACTOR, lock.token)
    assert not locks.release(ACTOR)
    assert locks.status(ACTOR) is None
    locks.acquire(ACTOR, 120)


def test_release_with_foreign_token_keeps_lock(locks) -> None:
    lock = locks.acquire(ACTOR, 120)
    assert not locks.release(ACTOR, "someone-else")
    status = locks.status(ACTOR)
    assert status is not None
    assert status.token == lock.token


def test_status_reports_live_lock(locks, clock) -> None:
    assert locks.status(ACTOR) is None
    lock = locks.acquire(ACTOR, 60)
    status = locks.status(ACTOR)
    assert status is not None
    assert status.acquired_at == lock.acquired_at == clock.now()


@pytest.mark.parametrize("backend", ["memory", "sql"])
def test_expired_lock_is_taken_over(backend, clock, meters, session_factory) -> None:
    if backend == "memory":
        locks = InMemoryActorLocks(clock=clock, meters=meters)
    else:
        locks = SqlAlchemyActorLocks(session_factory, clock=clock, meters=meters, sleeper=no_sleep)
    stale = locks.acquire(ACTOR, 120)

    clock.tick(121)

    assert locks.status(ACTOR) is None
    fresh = locks.acquire(ACTOR, 120)
    assert fresh.token != stale.token
    assert not locks.release(ACTOR, stale.token)
    assert locks.release(ACTOR, fresh.token)


def test_redis_lock_expires_after_ttl(redis_client, clock, meters) -> None:
    locks = RedisActorLocks(redis_client, clock=clock, meters=meters, poll_policy=FAST_POLL)
    locks.acquire(ACTOR, 0.05)
    time.sleep(0.15)
    assert locks.acquire(ACTOR, 0.05) is not None


def test_memory_waiter_wakes_on_release(meters) -> None:
    locks = InMemoryActorLocks(meters=meters)
    first = locks.acquire(ACTOR, 30)
    timer = threading.Timer(0.05, lambda: locks.release(ACTOR, first.token))
    timer.start()
    try:
        second = locks.acquire(ACTOR, 30, max_wait=2.0)
    finally:
        timer.cancel()
    assert second.token != first.token


def test_polling_waiter_gives_up_after_max_wait(redis_client, meters) -> None:
    locks = RedisActorLocks(redis_client, meters=meters, poll_policy=FAST_POLL)
    locks.acquire(ACTOR, 30)
    started = time.monotonic()
    with pytest.raises(ActorBusy):
        locks.acquire(ACTOR, 30, max_wait=0.1)
    assert time.monotonic() - started >= 0.1


def test_ttl_must_be_positive(meters) -> None:
    with pytest.raises(ValueError):
        InMemoryActorLocks(meters=meters).acquire(ACTOR, 0)
