# -*- coding: utf-8 -*-
from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Callable
from zoneinfo import ZoneInfo

import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy.orm import sessionmaker

from tiermint.catalog import PoolCatalog
from tiermint.completions import InMemoryCompletionLog
from tiermint.core.clock import FrozenClock
from tiermint.core.retry import RetryPolicy
from tiermint.engine import ReservationEngine
from tiermint.infrastructure.persistence import create_schema, make_engine, make_session_factory
from tiermint.logging_utils import actor_digest, event_logger
from tiermint.metrics import AllocationMeters
from tiermint.stores import FaultInjector, SqlAlchemyLedgerStore
from tiermint.types import RollbackPolicy

CATEGORIZATION = {
    "Common": ["c1", "c2", "c3"],
    "Rare": ["r1", "r2", "r3", "r4", "r5"],
    "Legendary": [101, 102, 103],
    "Legendary 1-of-1": ["L1"],
}

START = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def metric_value(counter, **labels) -> float:
    sample = counter.labels(**labels) if labels else counter
    return sample._value.get()  # type: ignore[attr-defined]


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def catalog() -> PoolCatalog:
    return PoolCatalog.load(CATEGORIZATION)


@pytest.fixture()
def clock() -> FrozenClock:
    frozen = FrozenClock(timezone=ZoneInfo("UTC"))
    frozen.set(START)
    return frozen


@pytest.fixture()
def meters() -> AllocationMeters:
    return AllocationMeters(CollectorRegistry())


@pytest.fixture()
def db_url(tmp_path) -> str:
    return f"sqlite+pysqlite:///{tmp_path / 'ledger.sqlite'}"


@pytest.fixture()
def db_engine(db_url: str) -> Iterator:
    engine = make_engine(db_url)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine) -> sessionmaker:
    return make_session_factory(db_engine)


@pytest.fixture()
def fault_injector() -> FaultInjector:
    return FaultInjector()


@pytest.fixture()
def store(session_factory: sessionmaker, fault_injector: FaultInjector) -> SqlAlchemyLedgerStore:
    return SqlAlchemyLedgerStore(session_factory, fault_injector=fault_injector)


@pytest.fixture()
def completions() -> InMemoryCompletionLog:
    return InMemoryCompletionLog()


@pytest.fixture()
def build_engine(
    catalog: PoolCatalog,
    store: SqlAlchemyLedgerStore,
    completions: InMemoryCompletionLog,
    meters: AllocationMeters,
    clock: FrozenClock,
) -> Callable[..., ReservationEngine]:
    def _build(policy: RollbackPolicy | str = RollbackPolicy.BURN, **overrides) -> ReservationEngine:
        options = {
            "policy": policy,
            "meters": meters,
            "clock": clock,
            "logger": event_logger("test-tiermint"),
            "hash_fn": actor_digest("test-salt"),
            "cas_retry": RetryPolicy(base_delay=0.001, max_delay=0.005, max_attempts=3),
            "sleeper": no_sleep,
            "lock_timeout": 5.0,
        }
        options.update(overrides)
        engine = ReservationEngine(
            options.pop("catalog", catalog),
            options.pop("store", store),
            options.pop("completions", completions),
            **options,
        )
        engine.start()
        return engine

    return _build


@pytest.fixture()
def engine(build_engine) -> ReservationEngine:
    return build_engine(RollbackPolicy.BURN)
