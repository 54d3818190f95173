# -*- coding: utf-8 -*-
"""Drift detection between the completion audit log and the ledger.

Completion records are authoritative for what must be marked allocated. The
ledger is authoritative only for the cursor, which ``repair`` recomputes after
healing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from .engine import ReservationEngine
from .ledger import TierLedger
from .logging_utils import event_logger
from .metrics import DEFAULT_METERS
from .types import CompletionLog, Identifier, LoggerLike, MeterLike, Rarity, RollbackPolicy

DiscrepancyKind = Literal["missing_in_ledger", "unconfirmed_in_ledger"]


@dataclass(frozen=True, slots=True)
class Discrepancy:
    tier: Rarity
    identifier: Identifier
    kind: DiscrepancyKind

    def to_dict(self) -> dict[str, str]:
        return {"tier": self.tier.value, "identifier": self.identifier, "kind": self.kind}


@dataclass(slots=True)
class RepairReport:
    added: dict[Rarity, list[Identifier]] = field(default_factory=dict)
    released: dict[Rarity, list[Identifier]] = field(default_factory=dict)
    next_index: dict[Rarity, int] = field(default_factory=dict)
    changed: list[Rarity] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": {rarity.value: ids for rarity, ids in self.added.items() if ids},
            "released": {rarity.value: ids for rarity, ids in self.released.items() if ids},
            "next_index": {rarity.value: value for rarity, value in self.next_index.items()},
            "changed": [rarity.value for rarity in self.changed],
        }


@dataclass(frozen=True, slots=True)
class _TierRepair:
    added: list[Identifier]
    released: list[Identifier]
    next_index: int
    changed: bool


class Reconciler:
    def __init__(
        self,
        engine: ReservationEngine,
        completions: CompletionLog,
        *,
        meters: MeterLike | None = None,
        logger: LoggerLike | None = None,
    ) -> None:
        self._engine = engine
        self._completions = completions
        self._meters = meters or DEFAULT_METERS
        self._logger = logger or event_logger("tiermint.reconcile")

    def reconcile(self) -> list[Discrepancy]:
        """Compare confirmed completions against ``allocated`` for every tier."""

        ledger = self._engine.snapshot()
        found: list[Discrepancy] = []
        for rarity in Rarity:
            allocated = ledger[rarity].allocated
            confirmed = [record.identifier for record in self._completions.list_for(rarity)]
            confirmed_set = set(confirmed)
            missing = [identifier for identifier in confirmed if identifier not in allocated]
            orphans = [identifier for identifier in allocated if identifier not in confirmed_set]
            found.extend(Discrepancy(rarity, identifier, "missing_in_ledger") for identifier in missing)
            found.extend(Discrepancy(rarity, identifier, "unconfirmed_in_ledger") for identifier in orphans)
            self._meters.record_discrepancy(rarity.value, "missing_in_ledger", len(missing))
            self._meters.record_discrepancy(rarity.value, "unconfirmed_in_ledger", len(orphans))
            if missing or orphans:
                self._logger.warning(
                    "reconcile_drift",
                    extra={"tier": rarity.value, "missing_in_ledger": missing, "unconfirmed_in_ledger": orphans},
                )
        return found

    def repair(self, *, release_orphans: bool = False) -> RepairReport:
        """Heal missing identifiers and recompute each tier's cursor.

        Orphaned reservations are only released when *release_orphans* is set,
        since an orphan may belong to a mint that is still in flight.
        """

        report = RepairReport()
        for rarity in Rarity:
            _, outcome = self._engine.update_tier(
                rarity,
                lambda ledger, rarity=rarity: self._plan(rarity, ledger, release_orphans),
                op="repair",
            )
            report.added[rarity] = outcome.added
            report.released[rarity] = outcome.released
            report.next_index[rarity] = outcome.next_index
            if outcome.changed:
                report.changed.append(rarity)
                self._logger.warning(
                    "repair_applied",
                    extra={
                        "tier": rarity.value,
                        "added": outcome.added,
                        "released": outcome.released,
                        "next_index": outcome.next_index,
                    },
                )
        return report

    def _plan(
        self, rarity: Rarity, ledger: TierLedger, release_orphans: bool
    ) -> tuple[Optional[TierLedger], _TierRepair]:
        confirmed = [record.identifier for record in self._completions.list_for(rarity)]
        confirmed_set = set(confirmed)
        added = [identifier for identifier in confirmed if identifier not in ledger.allocated]
        allocated = list(ledger.allocated) + added
        burned = [identifier for identifier in ledger.burned if identifier not in confirmed_set]
        released: list[Identifier] = []
        if release_orphans:
            released = [identifier for identifier in allocated if identifier not in confirmed_set]
            allocated = [identifier for identifier in allocated if identifier in confirmed_set]
            if self._engine.policy is RollbackPolicy.BURN:
                burned.extend(released)
        next_index = self._cursor(rarity, allocated, burned)
        changed = (
            tuple(allocated) != ledger.allocated
            or tuple(burned) != ledger.burned
            or next_index != ledger.next_index
        )
        outcome = _TierRepair(added=added, released=released, next_index=next_index, changed=changed)
        if not changed:
            return None, outcome
        return (
            ledger.with_state(
                allocated=allocated,
                burned=burned,
                next_index=next_index,
                now=self._engine.clock.now(),
            ),
            outcome,
        )

    def _cursor(self, rarity: Rarity, allocated: list[Identifier], burned: list[Identifier]) -> int:
        if self._engine.policy is RollbackPolicy.RECLAIM:
            return len(allocated)
        catalog = self._engine.catalog
        positions = [
            catalog.index_of(rarity, identifier)
            for identifier in allocated + burned
            if catalog.contains(rarity, identifier)
        ]
        return max(positions) + 1 if positions else 0


__all__ = ["Discrepancy", "Reconciler", "RepairReport"]
