# -*- coding: utf-8 -*-
"""Error hierarchy with machine-readable codes and a terminal/transient split."""
from __future__ import annotations

from typing import Optional

from .types import ErrorDetail, Identifier


class AllocationError(Exception):
    """Base class for domain errors exposed to callers."""

    transient = False

    def __init__(self, detail: ErrorDetail, cause: Optional[BaseException] = None) -> None:
        super().__init__(detail.message)
        self.detail = detail
        self.cause = cause

    @property
    def code(self) -> str:
        return self.detail.code

    def __str__(self) -> str:  # pragma: no cover - human readable path
        return f"{self.detail.code}: {self.detail.message} ({self.detail.details})"


class InsufficientSupply(AllocationError):
    """The tier cannot satisfy the request; retrying will not help."""


class ActorBusy(AllocationError):
    transient = True


class AllocationLockTimeout(AllocationError):
    transient = True


class PersistenceFailure(AllocationError):
    """The primary write did not happen; the visible ledger is unchanged."""


class ExternalOperationFailed(AllocationError):
    """The external operation definitely did not take effect."""


class ExternalOperationAmbiguous(AllocationError):
    """The external operation's outcome is unknown and must be reconciled."""

    def __init__(
        self,
        detail: ErrorDetail,
        cause: Optional[BaseException] = None,
        *,
        identifier: Optional[Identifier] = None,
    ) -> None:
        super().__init__(detail, cause)
        self.identifier = identifier


class UnknownTier(AllocationError):
    pass


class InvalidQuantity(AllocationError):
    pass


class UnknownIdentifier(AllocationError):
    pass


class RollbackRefused(AllocationError):
    pass


class ResetRefused(AllocationError):
    pass


class PaymentAlreadyUsed(AllocationError):
    pass


class CatalogLoadError(AllocationError):
    pass


def insufficient_supply(tier: str, requested: int, available: int) -> InsufficientSupply:
    return InsufficientSupply(
        ErrorDetail(
            "E_INSUFFICIENT_SUPPLY",
            f"Not enough {tier} identifiers available.",
            f"requested={requested} available={available}",
        )
    )


def actor_busy(message: str) -> ActorBusy:
    return ActorBusy(
        ErrorDetail("E_ACTOR_BUSY", "A mint is already in progress for this actor.", message),
    )


def allocation_lock_timeout(message: str, *, cause: Optional[BaseException] = None) -> AllocationLockTimeout:
    return AllocationLockTimeout(
        ErrorDetail("E_ALLOCATION_LOCK_TIMEOUT", "Allocation is busy; retry with backoff.", message),
        cause,
    )


def persistence_failure(message: str, *, cause: Optional[BaseException] = None) -> PersistenceFailure:
    return PersistenceFailure(
        ErrorDetail("E_PERSISTENCE_FAILURE", "The allocation ledger could not be persisted.", message),
        cause,
    )


def ledger_not_loaded(message: str) -> PersistenceFailure:
    return PersistenceFailure(
        ErrorDetail("E_LEDGER_NOT_LOADED", "The allocation ledger has not been loaded.", message),
    )


def external_failed(message: str, *, cause: Optional[BaseException] = None) -> ExternalOperationFailed:
    return ExternalOperationFailed(
        ErrorDetail("E_EXTERNAL_FAILED", "The external operation failed.", message),
        cause,
    )


def external_ambiguous(
    message: str,
    *,
    identifier: Optional[Identifier] = None,
    cause: Optional[BaseException] = None,
) -> ExternalOperationAmbiguous:
    return ExternalOperationAmbiguous(
        ErrorDetail(
            "E_EXTERNAL_AMBIGUOUS",
            "The external operation outcome is unknown; reconciliation required.",
            message,
        ),
        cause,
        identifier=identifier,
    )


def unknown_tier(value: object) -> UnknownTier:
    return UnknownTier(ErrorDetail("E_UNKNOWN_TIER", "Unknown tier.", f"tier={value!r}"))


def invalid_quantity(value: object) -> InvalidQuantity:
    return InvalidQuantity(
        ErrorDetail("E_INVALID_QUANTITY", "Quantity must be a positive integer.", f"quantity={value!r}")
    )


def unknown_identifier(tier: str, identifier: Identifier) -> UnknownIdentifier:
    return UnknownIdentifier(
        ErrorDetail(
            "E_UNKNOWN_IDENTIFIER",
            "Identifier does not belong to the tier's pool.",
            f"tier={tier} identifier={identifier}",
        )
    )


def rollback_refused(tier: str, identifiers: list[Identifier]) -> RollbackRefused:
    return RollbackRefused(
        ErrorDetail(
            "E_ROLLBACK_COMMITTED",
            "Committed identifiers cannot be rolled back.",
            f"tier={tier} identifiers={','.join(identifiers)}",
        )
    )


def reset_refused(tier: str, confirmed: int) -> ResetRefused:
    return ResetRefused(
        ErrorDetail(
            "E_RESET_REFUSED",
            "Tier has confirmed completions; pass force to reset anyway.",
            f"tier={tier} confirmed={confirmed}",
        )
    )


def payment_already_used(reference: str) -> PaymentAlreadyUsed:
    return PaymentAlreadyUsed(
        ErrorDetail("E_PAYMENT_USED", "This payment has already been used to mint.", f"reference={reference}")
    )


def catalog_invalid(message: str, *, cause: Optional[BaseException] = None) -> CatalogLoadError:
    return CatalogLoadError(
        ErrorDetail("E_CATALOG_INVALID", "The rarity categorization could not be loaded.", message),
        cause,
    )


__all__ = [
    "ActorBusy",
    "AllocationError",
    "AllocationLockTimeout",
    "CatalogLoadError",
    "ExternalOperationAmbiguous",
    "ExternalOperationFailed",
    "InsufficientSupply",
    "InvalidQuantity",
    "PaymentAlreadyUsed",
    "PersistenceFailure",
    "ResetRefused",
    "RollbackRefused",
    "UnknownIdentifier",
    "UnknownTier",
    "actor_busy",
    "allocation_lock_timeout",
    "catalog_invalid",
    "external_ambiguous",
    "external_failed",
    "insufficient_supply",
    "invalid_quantity",
    "ledger_not_loaded",
    "payment_already_used",
    "persistence_failure",
    "reset_refused",
    "rollback_refused",
    "unknown_identifier",
    "unknown_tier",
]
