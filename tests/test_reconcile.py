# -*- coding: utf-8 -*-
from __future__ import annotations

import pytest

from tiermint.errors import InsufficientSupply
from tiermint.reconcile import Discrepancy, Reconciler
from tiermint.types import Rarity, RollbackPolicy

from .conftest import metric_value


@pytest.fixture()
def reconciler_for(completions, meters):
    def _build(engine) -> Reconciler:
        return Reconciler(engine, completions, meters=meters)

    return _build


def test_clean_ledger_has_no_drift(engine, reconciler_for) -> None:
    reserved = engine.reserve("common", 1)
    engine.commit("common", reserved, "tx-1", actor="0.0.1")
    assert reconciler_for(engine).reconcile() == []


def test_detects_both_kinds_of_drift(engine, reconciler_for, meters, caplog) -> None:
    caplog.set_level("WARNING")
    engine.reserve("common", 1)
    engine.commit("rare", ["r4"], "tx-external")

    found = reconciler_for(engine).reconcile()

    assert Discrepancy(Rarity.COMMON, "c1", "unconfirmed_in_ledger") in found
    assert Discrepancy(Rarity.RARE, "r4", "missing_in_ledger") in found
    assert len(found) == 2
    assert metric_value(meters._discrepancies, tier="rare", kind="missing_in_ledger") == 1
    assert metric_value(meters._discrepancies, tier="common", kind="unconfirmed_in_ledger") == 1
    assert any("reconcile_drift" in record.getMessage() for record in caplog.records)
    assert found[0].to_dict()["tier"] in {"common", "rare"}


def test_repair_adds_missing_and_moves_burn_cursor(engine, reconciler_for) -> None:
    engine.commit("common", engine.reserve("common", 1), "tx-1")
    engine.commit("common", ["c3"], "tx-external")

    report = reconciler_for(engine).repair()

    assert report.added[Rarity.COMMON] == ["c3"]
    assert report.next_index[Rarity.COMMON] == 3
    assert report.changed == [Rarity.COMMON]
    ledger = engine.snapshot()[Rarity.COMMON]
    assert ledger.allocated == ("c1", "c3")
    with pytest.raises(InsufficientSupply):
        engine.reserve("common", 1)
    assert reconciler_for(engine).reconcile() == []


def test_repair_is_idempotent(engine, reconciler_for) -> None:
    engine.commit("rare", ["r2"], "tx-external")
    reconciler = reconciler_for(engine)
    assert reconciler.repair().changed == [Rarity.RARE]
    second = reconciler.repair()
    assert second.changed == []
    assert second.to_dict()["added"] == {}


def test_repair_keeps_orphans_unless_asked(engine, reconciler_for) -> None:
    engine.reserve("common", 2)
    engine.commit("common", ["c1"], "tx-1")

    report = reconciler_for(engine).repair()

    assert report.released[Rarity.COMMON] == []
    assert engine.snapshot()[Rarity.COMMON].allocated == ("c1", "c2")


def test_release_orphans_under_burn(engine, reconciler_for) -> None:
    engine.reserve("common", 2)
    engine.commit("common", ["c1"], "tx-1")

    report = reconciler_for(engine).repair(release_orphans=True)

    assert report.released[Rarity.COMMON] == ["c2"]
    ledger = engine.snapshot()[Rarity.COMMON]
    assert ledger.allocated == ("c1",)
    assert ledger.burned == ("c2",)
    assert ledger.next_index == 2
    assert engine.reserve("common", 1) == ["c3"]


def test_release_orphans_under_reclaim(build_engine, reconciler_for) -> None:
    engine = build_engine(RollbackPolicy.RECLAIM)
    engine.reserve("common", 2)
    engine.commit("common", ["c1"], "tx-1")
    engine.commit("common", ["c3"], "tx-external")

    report = reconciler_for(engine).repair(release_orphans=True)

    assert report.added[Rarity.COMMON] == ["c3"]
    assert report.released[Rarity.COMMON] == ["c2"]
    ledger = engine.snapshot()[Rarity.COMMON]
    assert ledger.allocated == ("c1", "c3")
    assert ledger.next_index == 2
    assert engine.reserve("common", 1) == ["c2"]
