# -*- coding: utf-8 -*-
"""Mint flow: actor lock, payment claim, reserve, external operation, settle."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .actor_locks import ActorLockBackend
from .engine import ReservationEngine
from .errors import (
    ActorBusy,
    AllocationError,
    ExternalOperationAmbiguous,
    ExternalOperationFailed,
    external_ambiguous,
    invalid_quantity,
    unknown_tier,
)
from .logging_utils import actor_digest, event_logger
from .payments import PaymentClaimRegistry
from .types import (
    CompletionVerifier,
    ConfirmedCompletionRecord,
    ExternalMintOperation,
    HashFunc,
    Identifier,
    LoggerLike,
    Rarity,
)

DEFAULT_LOCK_TTL = 120.0


@dataclass(frozen=True, slots=True)
class MintOutcome:
    actor: str
    tier: Rarity
    reserved: list[Identifier]
    committed: list[ConfirmedCompletionRecord] = field(default_factory=list)
    failed: list[Identifier] = field(default_factory=list)
    payment_reference: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.committed) and not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "reserved": list(self.reserved),
            "committed": [record.to_dict() for record in self.committed],
            "failed": list(self.failed),
            "payment_reference": self.payment_reference,
        }


class MintCoordinator:
    """Runs the non-atomic ``reserve -> perform -> commit | rollback`` pipeline.

    The actor lock is held for the whole flow and released on every exit path.
    Only ``ExternalOperationFailed`` releases the identifier. Any other error
    from the operation (ambiguous, timeout, crash) is checked with the
    verifier; when the outcome stays unknown the identifier is left reserved
    for reconciliation and ``ExternalOperationAmbiguous`` is raised with the
    identifier attached.
    """

    def __init__(
        self,
        engine: ReservationEngine,
        actor_locks: ActorLockBackend,
        operation: ExternalMintOperation,
        *,
        payments: Optional[PaymentClaimRegistry] = None,
        verifier: Optional[CompletionVerifier] = None,
        lock_ttl: float = DEFAULT_LOCK_TTL,
        lock_max_wait: float = 0.0,
        logger: LoggerLike | None = None,
        hash_fn: HashFunc | None = None,
    ) -> None:
        self._engine = engine
        self._locks = actor_locks
        self._operation = operation
        self._payments = payments
        self._verifier = verifier
        self._lock_ttl = lock_ttl
        self._lock_max_wait = lock_max_wait
        self._logger = logger or event_logger("tiermint.coordinator")
        self._hash = hash_fn or actor_digest("tiermint")

    def mint(
        self,
        actor: str,
        tier: Rarity | str,
        quantity: int = 1,
        *,
        payment_reference: Optional[str] = None,
        payment_metadata: Optional[Mapping[str, Any]] = None,
    ) -> MintOutcome:
        try:
            rarity = Rarity.parse(tier)
        except ValueError as exc:
            raise unknown_tier(tier) from exc
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise invalid_quantity(quantity)
        if payment_reference is not None and self._payments is None:
            raise ValueError("payment_reference given but no payment registry is configured")

        try:
            lock = self._locks.acquire(actor, self._lock_ttl, max_wait=self._lock_max_wait)
        except ActorBusy:
            self._logger.warning(
                "actor_lock_busy",
                extra={"actor": self._hash(actor), "tier": rarity.value},
            )
            raise
        try:
            return self._mint_locked(actor, rarity, quantity, payment_reference, dict(payment_metadata or {}))
        finally:
            try:
                self._locks.release(actor, lock.token)
            except AllocationError as exc:
                # the lock still expires after its TTL
                self._logger.warning(
                    "actor_lock_release_failed",
                    extra={"actor": self._hash(actor), "code": exc.code},
                )

    def _mint_locked(
        self,
        actor: str,
        rarity: Rarity,
        quantity: int,
        payment_reference: Optional[str],
        payment_metadata: dict[str, Any],
    ) -> MintOutcome:
        if payment_reference is not None:
            assert self._payments is not None
            self._payments.claim(payment_reference, actor=actor, tier=rarity, quantity=quantity)
            payment_metadata.setdefault("payment_reference", payment_reference)

        try:
            reserved = self._engine.reserve(rarity, quantity)
        except AllocationError as exc:
            self._settle_payment(payment_reference, "failed", {"error": exc.code})
            raise

        committed: list[ConfirmedCompletionRecord] = []
        failed: list[Identifier] = []
        try:
            for position, identifier in enumerate(reserved):
                pending = reserved[position + 1 :]
                try:
                    reference = self._operation.perform(actor, identifier)
                except ExternalOperationFailed as exc:
                    self._logger.warning(
                        "mint_failed",
                        extra={
                            "actor": self._hash(actor),
                            "tier": rarity.value,
                            "identifier": identifier,
                            "error": exc.code,
                        },
                    )
                    self._release(rarity, [identifier, *pending], failed)
                    break
                except Exception as exc:  # pylint: disable=broad-except
                    # only a definite failure may release; anything else could have minted
                    verdict = self._verify(actor, identifier)
                    if verdict is None:
                        self._release(rarity, pending, failed)
                        self._settle_payment(
                            payment_reference,
                            "ambiguous",
                            {
                                "identifier": identifier,
                                "committed": [record.identifier for record in committed],
                            },
                        )
                        self._logger.error(
                            "mint_outcome_unknown",
                            extra={
                                "actor": self._hash(actor),
                                "tier": rarity.value,
                                "identifier": identifier,
                                "error": getattr(exc, "code", type(exc).__name__),
                            },
                        )
                        raise external_ambiguous(
                            f"tier={rarity.value} identifier={identifier}",
                            identifier=identifier,
                            cause=exc,
                        ) from exc
                    if verdict is False:
                        self._release(rarity, [identifier, *pending], failed)
                        break
                    reference = verdict if isinstance(verdict, str) else f"verified:{identifier}"
                committed.extend(
                    self._engine.commit(
                        rarity,
                        [identifier],
                        reference,
                        actor=actor,
                        payment_metadata=payment_metadata,
                    )
                )
        except ExternalOperationAmbiguous:
            raise
        except AllocationError as exc:
            self._settle_payment(payment_reference, "ambiguous", {"error": exc.code})
            raise

        self._settle_payment(
            payment_reference,
            "minted" if committed else "failed",
            {"committed": [record.identifier for record in committed], "failed": failed},
        )
        self._logger.info(
            "mint_completed",
            extra={
                "actor": self._hash(actor),
                "tier": rarity.value,
                "committed": [record.identifier for record in committed],
                "failed": failed,
            },
        )
        return MintOutcome(
            actor=actor,
            tier=rarity,
            reserved=reserved,
            committed=committed,
            failed=failed,
            payment_reference=payment_reference,
        )

    def _release(self, rarity: Rarity, identifiers: list[Identifier], failed: list[Identifier]) -> None:
        if not identifiers:
            return
        self._engine.rollback(rarity, identifiers)
        failed.extend(identifiers)

    def _verify(self, actor: str, identifier: Identifier) -> str | bool | None:
        if self._verifier is None:
            return None
        try:
            return self._verifier.verify(actor, identifier)
        except Exception as exc:  # pylint: disable=broad-except
            self._logger.warning(
                "mint_verification_failed",
                extra={"identifier": identifier, "error": str(exc)},
            )
            return None

    def _settle_payment(
        self, reference: Optional[str], status: str, details: Mapping[str, Any]
    ) -> None:
        if reference is None or self._payments is None:
            return
        self._payments.update_status(reference, status, details)  # type: ignore[arg-type]


__all__ = ["DEFAULT_LOCK_TTL", "MintCoordinator", "MintOutcome"]
