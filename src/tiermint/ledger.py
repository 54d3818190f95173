# -*- coding: utf-8 -*-
"""Allocation ledger value objects.

A :class:`TierLedger` is immutable; every mutation returns a new instance with
``version`` bumped by one so stores can apply it with compare-and-set.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Collection, Iterable, Mapping, Optional, Sequence

from .types import Identifier, Rarity, RollbackPolicy

SCHEMA_VERSION = 1


@dataclass(frozen=True, slots=True)
class TierLedger:
    tier: Rarity
    allocated: tuple[Identifier, ...] = ()
    next_index: int = 0
    burned: tuple[Identifier, ...] = ()
    version: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def empty(cls, tier: Rarity) -> "TierLedger":
        return cls(tier=tier)

    def held(self) -> frozenset[Identifier]:
        """Identifiers that may not be handed out again as things stand."""

        return frozenset(self.allocated) | frozenset(self.burned)

    def candidates(
        self,
        pool: Sequence[Identifier],
        policy: RollbackPolicy,
        excluded: Collection[Identifier] = (),
    ) -> list[Identifier]:
        """Return every identifier a reservation could hand out, in order.

        Burn only looks at positions at or after the cursor. Reclaim scans the
        whole pool so rolled-back identifiers are reissued lowest index first.
        Committed identifiers passed in *excluded* are never candidates.
        """

        blocked = self.held()
        start = self.next_index if policy is RollbackPolicy.BURN else 0
        return [
            identifier
            for identifier in pool[start:]
            if identifier not in blocked and identifier not in excluded
        ]

    def with_reserved(
        self,
        identifiers: Sequence[Identifier],
        pool: Sequence[Identifier],
        policy: RollbackPolicy,
        now: datetime,
    ) -> "TierLedger":
        allocated = self.allocated + tuple(identifiers)
        if policy is RollbackPolicy.BURN:
            positions = {identifier: position for position, identifier in enumerate(pool)}
            next_index = max(self.next_index, max(positions[i] for i in identifiers) + 1)
        else:
            next_index = len(allocated)
        return replace(
            self,
            allocated=allocated,
            next_index=next_index,
            version=self.version + 1,
            updated_at=now,
        )

    def with_released(
        self,
        identifiers: Iterable[Identifier],
        policy: RollbackPolicy,
        now: datetime,
    ) -> "TierLedger":
        released = [identifier for identifier in dict.fromkeys(identifiers) if identifier in self.allocated]
        remaining = tuple(identifier for identifier in self.allocated if identifier not in released)
        if policy is RollbackPolicy.BURN:
            return replace(
                self,
                allocated=remaining,
                burned=self.burned + tuple(released),
                version=self.version + 1,
                updated_at=now,
            )
        return replace(
            self,
            allocated=remaining,
            next_index=len(remaining),
            version=self.version + 1,
            updated_at=now,
        )

    def with_state(
        self,
        *,
        allocated: Sequence[Identifier],
        burned: Sequence[Identifier],
        next_index: int,
        now: datetime,
    ) -> "TierLedger":
        return replace(
            self,
            allocated=tuple(allocated),
            burned=tuple(burned),
            next_index=next_index,
            version=self.version + 1,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "allocated": list(self.allocated),
            "next_index": self.next_index,
            "burned": list(self.burned),
            "version": self.version,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, tier: Rarity, payload: Mapping[str, Any]) -> "TierLedger":
        updated_at = payload.get("updated_at")
        return cls(
            tier=tier,
            allocated=tuple(str(value) for value in payload.get("allocated", ())),
            next_index=int(payload.get("next_index", 0)),
            burned=tuple(str(value) for value in payload.get("burned", ())),
            version=int(payload.get("version", 0)),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


@dataclass(frozen=True, slots=True)
class AllocationLedger:
    """Mapping of every rarity to its tier ledger."""

    tiers: Mapping[Rarity, TierLedger] = field(default_factory=dict)

    def __getitem__(self, tier: Rarity) -> TierLedger:
        return self.tiers.get(tier) or TierLedger.empty(tier)

    def replace_tier(self, ledger: TierLedger) -> "AllocationLedger":
        tiers = dict(self.tiers)
        tiers[ledger.tier] = ledger
        return AllocationLedger(tiers=tiers)

    def to_document(self, generated_at: datetime) -> dict[str, Any]:
        return {
            "schema": SCHEMA_VERSION,
            "tiers": {rarity.value: self[rarity].to_dict() for rarity in Rarity},
            "generated_at": generated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "AllocationLedger":
        schema = document.get("schema", SCHEMA_VERSION)
        if schema != SCHEMA_VERSION:
            raise ValueError(f"unsupported ledger schema {schema!r}")
        raw_tiers = document.get("tiers") or {}
        if not isinstance(raw_tiers, Mapping):
            raise ValueError("ledger document 'tiers' must be an object")
        tiers: dict[Rarity, TierLedger] = {}
        for key, payload in raw_tiers.items():
            rarity = Rarity.parse(key)
            tiers[rarity] = TierLedger.from_dict(rarity, payload)
        return cls(tiers={rarity: tiers.get(rarity) or TierLedger.empty(rarity) for rarity in Rarity})


__all__ = ["AllocationLedger", "SCHEMA_VERSION", "TierLedger"]
