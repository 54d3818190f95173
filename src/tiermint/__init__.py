# -*- coding: utf-8 -*-
"""Tiered identifier reservation and allocation engine."""
from __future__ import annotations

from .bootstrap import Runtime, build_runtime, get_runtime
from .catalog import PoolCatalog, RarityPool
from .coordinator import MintCoordinator, MintOutcome
from .engine import ReservationEngine, TierStats
from .errors import AllocationError
from .ledger import AllocationLedger, TierLedger
from .reconcile import Discrepancy, Reconciler, RepairReport
from .types import ConfirmedCompletionRecord, Rarity, RollbackPolicy

__all__ = [
    "AllocationError",
    "AllocationLedger",
    "ConfirmedCompletionRecord",
    "Discrepancy",
    "MintCoordinator",
    "MintOutcome",
    "PoolCatalog",
    "Rarity",
    "RarityPool",
    "Reconciler",
    "RepairReport",
    "ReservationEngine",
    "RollbackPolicy",
    "Runtime",
    "TierLedger",
    "TierStats",
    "build_runtime",
    "get_runtime",
]
