# -*- coding: utf-8 -*-
from __future__ import annotations

import pytest

from tiermint.ledger import AllocationLedger, TierLedger
from tiermint.types import Rarity, RollbackPolicy

from .conftest import START

POOL = ("a", "b", "c", "d", "e")


def test_burn_candidates_start_at_cursor() -> None:
    ledger = TierLedger(tier=Rarity.COMMON, allocated=("a",), burned=("b",), next_index=2)
    assert ledger.candidates(POOL, RollbackPolicy.BURN) == ["c", "d", "e"]


def test_reclaim_candidates_reuse_lowest_free_position() -> None:
    ledger = TierLedger(tier=Rarity.COMMON, allocated=("a", "c"), next_index=2)
    assert ledger.candidates(POOL, RollbackPolicy.RECLAIM) == ["b", "d", "e"]


def test_committed_identifiers_are_never_candidates() -> None:
    ledger = TierLedger.empty(Rarity.COMMON)
    assert ledger.candidates(POOL, RollbackPolicy.RECLAIM, excluded={"a", "d"}) == ["b", "c", "e"]
    assert ledger.candidates(POOL, RollbackPolicy.BURN, excluded={"a"}) == ["b", "c", "d", "e"]


def test_with_reserved_bumps_version_and_cursor() -> None:
    ledger = TierLedger.empty(Rarity.COMMON).with_reserved(["a", "b"], POOL, RollbackPolicy.BURN, START)
    assert ledger.allocated == ("a", "b")
    assert ledger.next_index == 2
    assert ledger.version == 1
    assert ledger.updated_at == START


def test_release_under_burn_keeps_cursor() -> None:
    ledger = TierLedger(tier=Rarity.COMMON, allocated=("a", "b"), next_index=2, version=3)
    released = ledger.with_released(["b", "zzz"], RollbackPolicy.BURN, START)
    assert released.allocated == ("a",)
    assert released.burned == ("b",)
    assert released.next_index == 2
    assert released.version == 4


def test_release_under_reclaim_recomputes_cursor() -> None:
    ledger = TierLedger(tier=Rarity.COMMON, allocated=("a", "b", "c"), next_index=3)
    released = ledger.with_released(["a"], RollbackPolicy.RECLAIM, START)
    assert released.allocated == ("b", "c")
    assert released.burned == ()
    assert released.next_index == 2


def test_document_keeps_every_tier() -> None:
    ledger = AllocationLedger().replace_tier(
        TierLedger(tier=Rarity.RARE, allocated=("r1",), next_index=1, version=1, updated_at=START)
    )
    document = ledger.to_document(START)
    assert document["schema"] == 1
    assert set(document["tiers"]) == {rarity.value for rarity in Rarity}

    restored = AllocationLedger.from_document(document)
    assert restored[Rarity.RARE] == ledger[Rarity.RARE]
    assert restored[Rarity.COMMON] == TierLedger.empty(Rarity.COMMON)


def test_unknown_schema_is_rejected() -> None:
    with pytest.raises(ValueError):
        AllocationLedger.from_document({"schema": 2, "tiers": {}})
