# -*- coding: utf-8 -*-
"""Reservation engine: reserve, commit and rollback identifiers per tier."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar

from .catalog import PoolCatalog
from .core.clock import Clock, ensure_clock
from .core.retry import RetryExhaustedError, RetryPolicy, execute_with_retry
from .errors import (
    PersistenceFailure,
    allocation_lock_timeout,
    insufficient_supply,
    invalid_quantity,
    ledger_not_loaded,
    reset_refused,
    rollback_refused,
    unknown_identifier,
    unknown_tier,
)
from .gate import TierLockRegistry
from .ledger import AllocationLedger, TierLedger
from .logging_utils import actor_digest, event_logger
from .metrics import DEFAULT_METERS
from .mirror import MirrorSync
from .types import (
    AllocationLock,
    CompletionLog,
    ConfirmedCompletionRecord,
    HashFunc,
    Identifier,
    LoggerLike,
    MeterLike,
    Rarity,
    RollbackPolicy,
)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT = 30.0


class _LedgerConflict(Exception):
    """Another writer bumped the tier version between our read and write."""


@dataclass(frozen=True, slots=True)
class TierStats:
    tier: Rarity
    total: int
    allocated: int
    burned: int
    committed: int
    available: int
    next_index: int
    percent_allocated: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "total": self.total,
            "allocated": self.allocated,
            "burned": self.burned,
            "committed": self.committed,
            "available": self.available,
            "next_index": self.next_index,
            "percent_allocated": self.percent_allocated,
        }


class ReservationEngine:
    """Hands out pool identifiers exactly once.

    Every ledger mutation runs under the tier's allocation lock and is written
    to the primary store with compare-and-set before the call returns; the
    write is the commit point. A snapshot is then handed to the mirror, whose
    failures are logged and never propagate.
    """

    def __init__(
        self,
        catalog: PoolCatalog,
        store,
        completions: CompletionLog,
        *,
        policy: RollbackPolicy | str = RollbackPolicy.BURN,
        locks: Optional[TierLockRegistry] = None,
        mirror: Optional[MirrorSync] = None,
        meters: MeterLike | None = None,
        logger: LoggerLike | None = None,
        clock: Clock | None = None,
        hash_fn: HashFunc | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        cas_retry: Optional[RetryPolicy] = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self._catalog = catalog
        self._store = store
        self._completions = completions
        self._policy = RollbackPolicy(policy)
        self._meters = meters or DEFAULT_METERS
        self._clock = ensure_clock(clock)
        self._locks = locks or TierLockRegistry(clock=self._clock, meters=self._meters)
        self._mirror = mirror
        self._logger = logger or event_logger("tiermint.engine")
        self._hash = hash_fn or actor_digest("tiermint")
        self._lock_timeout = lock_timeout
        self._cas_retry = cas_retry or RetryPolicy(base_delay=0.01, factor=2.0, max_delay=0.25, max_attempts=8)
        self._sleeper = sleeper
        self._cache_lock = threading.Lock()
        self._cache: Optional[AllocationLedger] = None

    # Lifecycle ------------------------------------------------------------
    @property
    def policy(self) -> RollbackPolicy:
        return self._policy

    @property
    def catalog(self) -> PoolCatalog:
        return self._catalog

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def started(self) -> bool:
        return self._cache is not None

    def start(self) -> AllocationLedger:
        """Load every tier ledger from the primary store; fails closed."""

        try:
            ledger = self._store.read_all()
        except PersistenceFailure as exc:
            self._logger.error("ledger_load_failed", extra={"error": exc.detail.details})
            raise
        with self._cache_lock:
            self._cache = ledger
        for rarity in Rarity:
            self._meters.set_available(rarity.value, self._available_in(ledger[rarity]))
        self._logger.info(
            "ledger_loaded",
            extra={
                "policy": self._policy.value,
                "allocated": {rarity.value: len(ledger[rarity].allocated) for rarity in Rarity},
            },
        )
        return ledger

    # Allocation -----------------------------------------------------------
    def reserve(self, tier: Rarity | str, quantity: int) -> list[Identifier]:
        rarity = self._tier(tier)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise invalid_quantity(quantity)
        pool = self._catalog.pool(rarity).members

        def _plan(ledger: TierLedger) -> tuple[Optional[TierLedger], list[Identifier]]:
            candidates = ledger.candidates(pool, self._policy, self._committed(rarity))
            if len(candidates) < quantity:
                self._meters.record_supply_exhausted(rarity.value)
                raise insufficient_supply(rarity.value, quantity, len(candidates))
            chosen = candidates[:quantity]
            return ledger.with_reserved(chosen, pool, self._policy, self._clock.now()), chosen

        try:
            ledger, chosen = self._mutate(rarity, "reserve", _plan)
        except Exception as exc:
            code = getattr(exc, "code", type(exc).__name__)
            self._meters.record_reservation(rarity.value, "rejected")
            self._logger.warning(
                "reservation_rejected",
                extra={"tier": rarity.value, "quantity": quantity, "code": code},
            )
            raise
        self._meters.record_reservation(rarity.value, "success", len(chosen))
        self._logger.info(
            "reservation_committed",
            extra={
                "tier": rarity.value,
                "identifiers": chosen,
                "next_index": ledger.next_index,
                "version": ledger.version,
            },
        )
        return chosen

    def commit(
        self,
        tier: Rarity | str,
        identifiers: Iterable[Identifier],
        external_reference_id: str,
        *,
        actor: str = "",
        payment_metadata: Optional[Mapping[str, Any]] = None,
    ) -> list[ConfirmedCompletionRecord]:
        """Record confirmed completions; already recorded identifiers are skipped."""

        rarity = self._tier(tier)
        wanted = self._pool_members(rarity, identifiers)
        self._ensure_started()
        recorded: list[ConfirmedCompletionRecord] = []
        with self._locks.hold(rarity, self._lock_timeout):
            ledger = self._store.read(rarity)
            for identifier in wanted:
                record = ConfirmedCompletionRecord(
                    identifier=identifier,
                    rarity=rarity,
                    external_reference_id=external_reference_id,
                    actor=actor,
                    recorded_at=self._clock.now(),
                    payment_metadata=dict(payment_metadata or {}),
                )
                if not self._completions.append(record):
                    self._meters.record_commit(rarity.value, "duplicate")
                    self._logger.info(
                        "completion_duplicate",
                        extra={"tier": rarity.value, "identifier": identifier},
                    )
                    continue
                recorded.append(record)
                self._meters.record_commit(rarity.value, "recorded")
                self._logger.info(
                    "completion_recorded",
                    extra={
                        "tier": rarity.value,
                        "identifier": identifier,
                        "reference": external_reference_id,
                        "actor": self._hash(actor) if actor else None,
                    },
                )
                if identifier not in ledger.allocated:
                    self._logger.warning(
                        "completion_outside_ledger",
                        extra={"tier": rarity.value, "identifier": identifier},
                    )
        return recorded

    def rollback(self, tier: Rarity | str, identifiers: Iterable[Identifier]) -> list[Identifier]:
        """Release reserved identifiers according to the rollback policy.

        Committed identifiers are refused and nothing changes; identifiers that
        are not currently allocated are ignored. Returns what was released.
        """

        rarity = self._tier(tier)
        wanted = self._pool_members(rarity, identifiers)

        def _plan(ledger: TierLedger) -> tuple[Optional[TierLedger], list[Identifier]]:
            committed = [identifier for identifier in wanted if self._completions.contains(identifier)]
            if committed:
                raise rollback_refused(rarity.value, committed)
            released = [identifier for identifier in wanted if identifier in ledger.allocated]
            if not released:
                return None, []
            return ledger.with_released(released, self._policy, self._clock.now()), released

        ledger, released = self._mutate(rarity, "rollback", _plan)
        if released:
            self._meters.record_rollback(rarity.value, self._policy.value, len(released))
            self._logger.info(
                "rollback_applied",
                extra={
                    "tier": rarity.value,
                    "identifiers": released,
                    "policy": self._policy.value,
                    "next_index": ledger.next_index,
                },
            )
        return released

    def update_tier(
        self,
        tier: Rarity | str,
        plan: Callable[[TierLedger], tuple[Optional[TierLedger], T]],
        *,
        op: str,
    ) -> tuple[TierLedger, T]:
        """Apply *plan* to the tier ledger through the lock and CAS path.

        *plan* receives the current ledger and returns the replacement (or
        ``None`` for no change) plus a value handed back to the caller. It may
        run more than once when a concurrent writer wins the race.
        """

        return self._mutate(self._tier(tier), op, plan)

    def reset(self, tier: Rarity | str | None = None, *, force: bool = False) -> list[Rarity]:
        rarities = [self._tier(tier)] if tier is not None else list(Rarity)
        self._ensure_started()
        if not force:
            for rarity in rarities:
                confirmed = len(self._completions.list_for(rarity))
                if confirmed:
                    raise reset_refused(rarity.value, confirmed)
        for rarity in rarities:
            self._mutate(
                rarity,
                "reset",
                lambda ledger: (
                    ledger.with_state(allocated=(), burned=(), next_index=0, now=self._clock.now()),
                    None,
                ),
            )
            self._logger.warning("ledger_reset", extra={"tier": rarity.value, "force": force})
        return rarities

    # Read operations ------------------------------------------------------
    def snapshot(self) -> AllocationLedger:
        self._ensure_started()
        ledger = self._store.read_all()
        with self._cache_lock:
            self._cache = ledger
        return ledger

    def available(self, tier: Rarity | str) -> int:
        rarity = self._tier(tier)
        self._ensure_started()
        return self._available_in(self._store.read(rarity))

    def preview(self, tier: Rarity | str, count: int = 1) -> list[Identifier]:
        """Identifiers the next reservation would return, without reserving."""

        rarity = self._tier(tier)
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise invalid_quantity(count)
        self._ensure_started()
        ledger = self._store.read(rarity)
        pool = self._catalog.pool(rarity).members
        return ledger.candidates(pool, self._policy, self._committed(rarity))[:count]

    def stats(self) -> dict[Rarity, TierStats]:
        ledger = self.snapshot()
        result: dict[Rarity, TierStats] = {}
        for rarity in Rarity:
            tier_ledger = ledger[rarity]
            total = self._catalog.size(rarity)
            allocated = len(tier_ledger.allocated)
            available = self._available_in(tier_ledger)
            self._meters.set_available(rarity.value, available)
            result[rarity] = TierStats(
                tier=rarity,
                total=total,
                allocated=allocated,
                burned=len(tier_ledger.burned),
                committed=len(self._completions.list_for(rarity)),
                available=available,
                next_index=tier_ledger.next_index,
                percent_allocated=round(allocated / total * 100, 2) if total else 0.0,
            )
        return result

    def tier_for(self, identifier: Identifier) -> Optional[Rarity]:
        return self._catalog.tier_for(identifier)

    def lock_status(self) -> list[AllocationLock]:
        return self._locks.status()

    # Internal helpers ----------------------------------------------------
    def _ensure_started(self) -> None:
        if self._cache is None:
            raise ledger_not_loaded("call start() before allocating")

    @staticmethod
    def _tier(tier: Rarity | str) -> Rarity:
        try:
            return Rarity.parse(tier)
        except ValueError as exc:
            raise unknown_tier(tier) from exc

    def _pool_members(self, rarity: Rarity, identifiers: Iterable[Identifier]) -> list[Identifier]:
        wanted = list(dict.fromkeys(str(identifier).strip() for identifier in identifiers))
        for identifier in wanted:
            if not self._catalog.contains(rarity, identifier):
                raise unknown_identifier(rarity.value, identifier)
        return wanted

    def _committed(self, rarity: Rarity) -> frozenset[Identifier]:
        return frozenset(record.identifier for record in self._completions.list_for(rarity))

    def _available_in(self, ledger: TierLedger) -> int:
        pool = self._catalog.pool(ledger.tier).members
        return len(ledger.candidates(pool, self._policy, self._committed(ledger.tier)))

    def _mutate(
        self,
        rarity: Rarity,
        op: str,
        plan: Callable[[TierLedger], tuple[Optional[TierLedger], T]],
    ) -> tuple[TierLedger, T]:
        self._ensure_started()
        with self._locks.hold(rarity, self._lock_timeout):

            def _attempt() -> tuple[TierLedger, T, bool]:
                current = self._store.read(rarity)
                updated, value = plan(current)
                if updated is None:
                    return current, value, False
                if not self._store.compare_and_set(updated, current.version):
                    self._meters.record_cas_conflict(rarity.value)
                    raise _LedgerConflict(f"tier={rarity.value} version={current.version}")
                return updated, value, True

            try:
                ledger, value, changed = execute_with_retry(
                    _attempt,
                    policy=self._cas_retry,
                    retryable=(_LedgerConflict,),
                    correlation_id=rarity.value,
                    op=f"ledger_{op}",
                    sleeper=self._sleeper,
                )
            except RetryExhaustedError as exc:
                self._meters.record_lock_timeout("ledger_cas")
                raise allocation_lock_timeout(
                    f"tier={rarity.value} compare-and-set lost {self._cas_retry.max_attempts} times",
                    cause=exc.last_error,
                ) from exc
        with self._cache_lock:
            assert self._cache is not None
            self._cache = self._cache.replace_tier(ledger)
            snapshot = self._cache
        if changed:
            self._meters.set_available(rarity.value, self._available_in(ledger))
            self._publish(snapshot)
        return ledger, value

    def _publish(self, snapshot: AllocationLedger) -> None:
        if self._mirror is None:
            return
        try:
            self._mirror.submit(snapshot.to_document(self._clock.now()))
        except Exception as exc:  # pylint: disable=broad-except
            self._meters.record_mirror("failure")
            self._logger.warning("mirror_sync_failed", extra={"error": str(exc), "stage": "submit"})


__all__ = ["DEFAULT_LOCK_TIMEOUT", "ReservationEngine", "TierStats"]
