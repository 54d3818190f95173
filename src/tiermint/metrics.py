# -*- coding: utf-8 -*-
"""Prometheus metrics for the allocation engine."""
from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, REGISTRY

from .types import MeterLike


class AllocationMeters(MeterLike):
    """Wraps Prometheus primitives behind a friendly interface."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or REGISTRY
        self._reservations = self._counter(
            "tiermint_reservations_total",
            "Reservation attempts per tier and outcome",
            ("tier", "outcome"),
        )
        self._reserved_ids = self._counter(
            "tiermint_identifiers_reserved_total",
            "Identifiers handed out per tier",
            ("tier",),
        )
        self._rollbacks = self._counter(
            "tiermint_rollbacks_total",
            "Identifiers rolled back per tier and policy",
            ("tier", "policy"),
        )
        self._commits = self._counter(
            "tiermint_commits_total",
            "Completion records per tier and outcome",
            ("tier", "outcome"),
        )
        self._exhausted = self._counter(
            "tiermint_supply_exhausted_total",
            "Reservations rejected because the tier was exhausted",
            ("tier",),
        )
        self._lock_timeouts = self._counter(
            "tiermint_lock_timeouts_total",
            "Lock waits that timed out",
            ("lock",),
        )
        self._actor_busy = self._counter(
            "tiermint_actor_busy_total",
            "Mint attempts rejected because the actor already holds a lock",
            (),
        )
        self._cas_conflicts = self._counter(
            "tiermint_ledger_cas_conflicts_total",
            "Ledger compare-and-set conflicts per tier",
            ("tier",),
        )
        self._mirror = self._counter(
            "tiermint_mirror_sync_total",
            "Mirror sync outcomes",
            ("outcome",),
        )
        self._discrepancies = self._counter(
            "tiermint_reconcile_discrepancies_total",
            "Discrepancies found by reconciliation",
            ("tier", "kind"),
        )
        self._available = self._gauge(
            "tiermint_available_identifiers",
            "Identifiers still available per tier",
            ("tier",),
        )
        self._exporter_health = self._gauge(
            "tiermint_exporter_health",
            "Exporter health gauge (1=healthy)",
            (),
        )
        self._http_started = self._gauge(
            "tiermint_metrics_http_started",
            "Number of active metrics HTTP servers",
            (),
        )

    def _counter(self, name: str, documentation: str, labelnames: tuple[str, ...]) -> Counter:
        try:
            return Counter(name, documentation, labelnames, registry=self._registry)
        except ValueError:
            collector = self._registry._names_to_collectors.get(name)  # type: ignore[attr-defined]
            if collector is None:
                raise
            return collector  # type: ignore[return-value]

    def _gauge(self, name: str, documentation: str, labelnames: tuple[str, ...]) -> Gauge:
        try:
            return Gauge(name, documentation, labelnames, registry=self._registry)
        except ValueError:
            collector = self._registry._names_to_collectors.get(name)  # type: ignore[attr-defined]
            if collector is None:
                raise
            return collector  # type: ignore[return-value]

    @property
    def registry(self) -> CollectorRegistry:
        """Return the registry backing the meters."""

        return self._registry

    def record_reservation(self, tier: str, outcome: str, quantity: int = 0) -> None:
        self._reservations.labels(tier=tier, outcome=outcome).inc()
        if outcome == "success" and quantity:
            self._reserved_ids.labels(tier=tier).inc(quantity)

    def record_rollback(self, tier: str, policy: str, count: int) -> None:
        if count:
            self._rollbacks.labels(tier=tier, policy=policy).inc(count)

    def record_commit(self, tier: str, outcome: str, count: int = 1) -> None:
        if count:
            self._commits.labels(tier=tier, outcome=outcome).inc(count)

    def record_supply_exhausted(self, tier: str) -> None:
        self._exhausted.labels(tier=tier).inc()

    def record_lock_timeout(self, lock: str) -> None:
        self._lock_timeouts.labels(lock=lock).inc()

    def record_actor_busy(self) -> None:
        self._actor_busy.inc()

    def record_cas_conflict(self, tier: str) -> None:
        self._cas_conflicts.labels(tier=tier).inc()

    def record_mirror(self, outcome: str) -> None:
        self._mirror.labels(outcome=outcome).inc()

    def record_discrepancy(self, tier: str, kind: str, count: int) -> None:
        if count:
            self._discrepancies.labels(tier=tier, kind=kind).inc(count)

    def set_available(self, tier: str, value: int) -> None:
        self._available.labels(tier=tier).set(value)

    def exporter_health(self, value: float) -> None:
        self._exporter_health.set(value)

    def http_started(self, value: float) -> None:
        self._http_started.set(value)


DEFAULT_METERS = AllocationMeters()
