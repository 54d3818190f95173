# -*- coding: utf-8 -*-
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from tiermint.catalog import PoolCatalog
from tiermint.completions import InMemoryCompletionLog
from tiermint.core.retry import RetryPolicy
from tiermint.engine import ReservationEngine
from tiermint.errors import InsufficientSupply
from tiermint.infrastructure.persistence import make_engine, make_session_factory
from tiermint.stores import JsonFileLedgerStore, SqlAlchemyLedgerStore
from tiermint.types import Rarity, RollbackPolicy

POOL_SIZE = 40


@pytest.fixture()
def big_catalog() -> PoolCatalog:
    return PoolCatalog.load({"Common": [f"c{i}" for i in range(POOL_SIZE)], "Rare": ["r1"]})


def _engine(catalog, store, completions, meters, policy=RollbackPolicy.BURN) -> ReservationEngine:
    engine = ReservationEngine(
        catalog,
        store,
        completions,
        policy=policy,
        meters=meters,
        lock_timeout=10.0,
        cas_retry=RetryPolicy(base_delay=0.001, max_delay=0.02, max_attempts=50),
    )
    engine.start()
    return engine


def _reserve_one(engine: ReservationEngine) -> list[str]:
    try:
        return engine.reserve("common", 1)
    except InsufficientSupply:
        return []


@pytest.mark.parametrize("policy", [RollbackPolicy.RECLAIM, RollbackPolicy.BURN])
def test_parallel_reservations_never_overlap(big_catalog, store, meters, policy) -> None:
    engine = _engine(big_catalog, store, InMemoryCompletionLog(), meters, policy)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: _reserve_one(engine), range(POOL_SIZE + 10)))

    issued = [identifier for batch in results for identifier in batch]
    assert len(issued) == POOL_SIZE
    assert len(set(issued)) == POOL_SIZE
    ledger = store.read(Rarity.COMMON)
    assert ledger.next_index == POOL_SIZE
    assert sorted(ledger.allocated) == sorted(issued)


def test_two_processes_sharing_a_database(big_catalog, db_engine, db_url, meters) -> None:
    # a second SQLAlchemy engine stands in for a second process
    other_db = make_engine(db_url)
    try:
        first = _engine(big_catalog, SqlAlchemyLedgerStore(make_session_factory(db_engine)), InMemoryCompletionLog(), meters)
        second = _engine(big_catalog, SqlAlchemyLedgerStore(make_session_factory(other_db)), InMemoryCompletionLog(), meters)

        def _work(index: int) -> list[str]:
            engine = first if index % 2 else second
            try:
                return engine.reserve("common", 2)
            except InsufficientSupply:
                return []

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(_work, range(30)))
    finally:
        other_db.dispose()

    issued = [identifier for batch in results for identifier in batch]
    assert len(issued) == POOL_SIZE
    assert len(set(issued)) == POOL_SIZE
    for batch in results:
        if batch:
            positions = [big_catalog.index_of("common", identifier) for identifier in batch]
            assert positions[1] == positions[0] + 1


def test_file_store_serialises_threads(big_catalog, tmp_path, meters) -> None:
    store = JsonFileLedgerStore(tmp_path / "minted-tracker.json")
    engine = _engine(big_catalog, store, InMemoryCompletionLog(), meters)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: _reserve_one(engine), range(POOL_SIZE)))

    issued = [identifier for batch in results for identifier in batch]
    assert sorted(issued) == sorted(big_catalog.pool("common").members)
    reloaded = JsonFileLedgerStore(tmp_path / "minted-tracker.json").read(Rarity.COMMON)
    assert reloaded.next_index == POOL_SIZE
    assert reloaded.version == POOL_SIZE
