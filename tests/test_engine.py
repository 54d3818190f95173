# -*- coding: utf-8 -*-
from __future__ import annotations

import threading

import pytest

from tiermint.core.retry import RetryPolicy
from tiermint.engine import ReservationEngine
from tiermint.errors import (
    AllocationLockTimeout,
    InsufficientSupply,
    InvalidQuantity,
    PersistenceFailure,
    ResetRefused,
    RollbackRefused,
    UnknownIdentifier,
    UnknownTier,
)
from tiermint.types import Rarity, RollbackPolicy

from .conftest import metric_value


def test_end_to_end_common_pool(engine: ReservationEngine, store) -> None:
    assert engine.reserve("common", 2) == ["c1", "c2"]
    assert store.read(Rarity.COMMON).next_index == 2

    with pytest.raises(InsufficientSupply) as exc:
        engine.reserve("common", 2)
    assert exc.value.code == "E_INSUFFICIENT_SUPPLY"
    assert not exc.value.transient

    assert engine.reserve("common", 1) == ["c3"]
    assert store.read(Rarity.COMMON).allocated == ("c1", "c2", "c3")


@pytest.mark.parametrize("policy", [RollbackPolicy.RECLAIM, RollbackPolicy.BURN])
def test_rollback_then_reserve_never_double_issues(build_engine, policy: RollbackPolicy) -> None:
    engine = build_engine(policy)
    first = engine.reserve("rare", 1)
    assert first == ["r1"]
    engine.commit("rare", first, "tx-1", actor="alice")

    second = engine.reserve("rare", 1)
    assert engine.rollback("rare", second) == second

    third = engine.reserve("rare", 1)
    if policy is RollbackPolicy.RECLAIM:
        assert third == second
    else:
        assert third == ["r3"]
    assert third != first

    issued = first + third + engine.reserve("rare", 2)
    assert len(issued) == len(set(issued))


def test_burned_identifiers_are_recorded(build_engine, store) -> None:
    engine = build_engine(RollbackPolicy.BURN)
    engine.reserve("rare", 2)
    engine.rollback("rare", ["r1"])
    ledger = store.read(Rarity.RARE)
    assert ledger.allocated == ("r2",)
    assert ledger.burned == ("r1",)
    assert ledger.next_index == 2
    assert engine.available("rare") == 3


def test_reclaim_cursor_tracks_allocated_length(build_engine, store) -> None:
    engine = build_engine(RollbackPolicy.RECLAIM)
    engine.reserve("rare", 3)
    engine.rollback("rare", ["r1", "r3"])
    ledger = store.read(Rarity.RARE)
    assert ledger.allocated == ("r2",)
    assert ledger.next_index == 1
    assert engine.preview("rare", 2) == ["r1", "r3"]


@pytest.mark.parametrize("policy", [RollbackPolicy.RECLAIM, RollbackPolicy.BURN])
def test_committed_identifier_cannot_be_rolled_back(build_engine, store, policy) -> None:
    engine = build_engine(policy)
    reserved = engine.reserve("legendary", 2)
    engine.commit("legendary", reserved[:1], "tx-9")

    with pytest.raises(RollbackRefused) as exc:
        engine.rollback("legendary", reserved)

    assert exc.value.code == "E_ROLLBACK_COMMITTED"
    assert store.read(Rarity.LEGENDARY).allocated == tuple(reserved)


def test_rollback_ignores_identifiers_not_allocated(engine: ReservationEngine, store) -> None:
    engine.reserve("rare", 1)
    version = store.read(Rarity.RARE).version
    assert engine.rollback("rare", ["r4"]) == []
    assert store.read(Rarity.RARE).version == version


def test_commit_is_idempotent(engine: ReservationEngine, completions, meters) -> None:
    reserved = engine.reserve("common", 1)
    first = engine.commit("common", reserved, "tx-1", actor="alice", payment_metadata={"amount": 5})
    second = engine.commit("common", reserved, "tx-2", actor="alice")

    assert [record.identifier for record in first] == reserved
    assert first[0].payment_metadata == {"amount": 5}
    assert second == []
    assert len(completions.list_all()) == 1
    assert completions.list_all()[0].external_reference_id == "tx-1"
    assert metric_value(meters._commits, tier="common", outcome="duplicate") == 1


def test_commit_rejects_foreign_identifier(engine: ReservationEngine) -> None:
    with pytest.raises(UnknownIdentifier):
        engine.commit("common", ["r1"], "tx")


def test_commit_outside_ledger_logs_warning(engine: ReservationEngine, caplog) -> None:
    caplog.set_level("WARNING")
    engine.commit("common", ["c2"], "tx")
    assert any("completion_outside_ledger" in record.getMessage() for record in caplog.records)


@pytest.mark.parametrize("quantity", [0, -1, True, 1.5, "2"])
def test_invalid_quantity(engine: ReservationEngine, quantity) -> None:
    with pytest.raises(InvalidQuantity):
        engine.reserve("common", quantity)


def test_unknown_tier(engine: ReservationEngine) -> None:
    with pytest.raises(UnknownTier):
        engine.reserve("mythic", 1)


def test_calls_before_start_fail_closed(catalog, store, completions, meters) -> None:
    engine = ReservationEngine(catalog, store, completions, meters=meters)
    with pytest.raises(PersistenceFailure) as exc:
        engine.reserve("common", 1)
    assert exc.value.code == "E_LEDGER_NOT_LOADED"
    assert not engine.started


def test_start_fails_closed_when_store_unavailable(catalog, store, completions, meters, fault_injector) -> None:
    fault_injector.read_failures = 1
    engine = ReservationEngine(catalog, store, completions, meters=meters)
    with pytest.raises(PersistenceFailure) as exc:
        engine.start()
    assert exc.value.code == "E_PERSISTENCE_FAILURE"
    with pytest.raises(PersistenceFailure):
        engine.reserve("common", 1)


def test_persistence_failure_leaves_cursor_unchanged(engine, store, fault_injector, meters) -> None:
    engine.reserve("common", 1)
    fault_injector.write_failures = 1

    with pytest.raises(PersistenceFailure):
        engine.reserve("common", 1)

    ledger = store.read(Rarity.COMMON)
    assert ledger.next_index == 1
    assert ledger.allocated == ("c1",)
    assert metric_value(meters._reservations, tier="common", outcome="rejected") == 1
    assert engine.reserve("common", 1) == ["c2"]


def test_cas_conflict_is_retried(engine, store, fault_injector, meters) -> None:
    fault_injector.cas_conflicts = 2
    assert engine.reserve("rare", 2) == ["r1", "r2"]
    assert metric_value(meters._cas_conflicts, tier="rare") == 2
    assert store.read(Rarity.RARE).version == 1


def test_cas_exhaustion_is_transient(build_engine, fault_injector, meters) -> None:
    engine = build_engine(cas_retry=RetryPolicy(base_delay=0.001, max_delay=0.001, max_attempts=2))
    fault_injector.cas_conflicts = 5
    with pytest.raises(AllocationLockTimeout) as exc:
        engine.reserve("rare", 1)
    assert exc.value.transient
    assert metric_value(meters._lock_timeouts, lock="ledger_cas") == 1


def test_allocation_lock_timeout(build_engine, meters) -> None:
    engine = build_engine(lock_timeout=0.05)
    locks = engine._locks
    holding = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with locks.hold(Rarity.COMMON, 1.0):
            holding.set()
            release.wait(2.0)

    worker = threading.Thread(target=_hold)
    worker.start()
    try:
        assert holding.wait(1.0)
        assert any(lock.held for lock in engine.lock_status() if lock.tier is Rarity.COMMON)
        with pytest.raises(AllocationLockTimeout):
            engine.reserve("common", 1)
        assert engine.reserve("rare", 1) == ["r1"]
    finally:
        release.set()
        worker.join()
    assert metric_value(meters._lock_timeouts, lock="allocation") == 1


def test_stats_and_preview(engine: ReservationEngine) -> None:
    engine.reserve("rare", 2)
    engine.commit("rare", ["r1"], "tx")
    engine.rollback("rare", ["r2"])

    stats = engine.stats()[Rarity.RARE]
    assert stats.total == 5
    assert stats.allocated == 1
    assert stats.burned == 1
    assert stats.committed == 1
    assert stats.available == 3
    assert stats.percent_allocated == 20.0
    assert engine.preview("rare", 10) == ["r3", "r4", "r5"]
    assert engine.stats()[Rarity.LEGENDARY_1OF1].to_dict()["available"] == 1


def test_reset_refused_while_completions_exist(engine: ReservationEngine, store) -> None:
    engine.reserve("common", 2)
    engine.commit("common", ["c1"], "tx")

    with pytest.raises(ResetRefused):
        engine.reset("common")

    engine.reset("common", force=True)
    ledger = store.read(Rarity.COMMON)
    assert ledger.allocated == ()
    assert ledger.next_index == 0
    # the committed identifier stays out of circulation
    assert engine.reserve("common", 2) == ["c2", "c3"]


def test_reset_all_tiers_without_completions(engine: ReservationEngine, store) -> None:
    engine.reserve("rare", 1)
    engine.reserve("legendary", 1)
    assert engine.reset() == list(Rarity)
    assert store.read(Rarity.RARE).allocated == ()


def test_tier_for_delegates_to_catalog(engine: ReservationEngine) -> None:
    assert engine.tier_for("L1") is Rarity.LEGENDARY_1OF1
    assert engine.tier_for("nope") is None


def test_mirror_failure_never_fails_reserve(build_engine, meters) -> None:
    class ExplodingMirror:
        def submit(self, document) -> None:
            raise RuntimeError("mirror down")

    engine = build_engine(mirror=ExplodingMirror())
    assert engine.reserve("common", 1) == ["c1"]
    assert metric_value(meters._mirror, outcome="failure") == 1
