# -*- coding: utf-8 -*-
"""Type definitions shared by the tiered allocation engine."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

Identifier = str

_RARITY_LABELS = {
    "common": "common",
    "rare": "rare",
    "legendary": "legendary",
    "legendary_1of1": "legendary_1of1",
    "legendary 1-of-1": "legendary_1of1",
    "legendary-1-of-1": "legendary_1of1",
    "legendary_1_of_1": "legendary_1of1",
}


class Rarity(str, enum.Enum):
    """Named partition of the identifier supply."""

    COMMON = "common"
    RARE = "rare"
    LEGENDARY = "legendary"
    LEGENDARY_1OF1 = "legendary_1of1"

    @classmethod
    def parse(cls, value: "Rarity | str") -> "Rarity":
        """Resolve *value* case-insensitively, accepting categorization labels.

        Raises ``ValueError`` for unknown tiers; callers translate it into the
        domain error.
        """

        if isinstance(value, Rarity):
            return value
        key = str(value).strip().lower()
        canonical = _RARITY_LABELS.get(key)
        if canonical is None:
            raise ValueError(f"unknown tier: {value!r}")
        return cls(canonical)


class RollbackPolicy(str, enum.Enum):
    """What happens to identifiers whose reservation is rolled back."""

    RECLAIM = "reclaim"
    BURN = "burn"


@dataclass(frozen=True, slots=True)
class ErrorDetail:
    """Structured error payload returned to callers.

    Attributes
    ----------
    code:
        Machine-readable error code.
    message:
        Human-facing message.
    details:
        Additional diagnostic details for operators.
    """

    code: str
    message: str
    details: str


@dataclass(frozen=True, slots=True)
class ConfirmedCompletionRecord:
    """Audit entry written once an external mint is known to have succeeded."""

    identifier: Identifier
    rarity: Rarity
    external_reference_id: str
    actor: str
    recorded_at: datetime
    payment_metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "rarity": self.rarity.value,
            "external_reference_id": self.external_reference_id,
            "actor": self.actor,
            "recorded_at": self.recorded_at.isoformat(),
            "payment_metadata": dict(self.payment_metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConfirmedCompletionRecord":
        return cls(
            identifier=str(payload["identifier"]),
            rarity=Rarity.parse(payload["rarity"]),
            external_reference_id=str(payload.get("external_reference_id", "")),
            actor=str(payload.get("actor", "")),
            recorded_at=datetime.fromisoformat(str(payload["recorded_at"])),
            payment_metadata=dict(payload.get("payment_metadata") or {}),
        )


@dataclass(frozen=True, slots=True)
class ActorLock:
    """Live per-actor lock as stored by a lock backend."""

    actor_key: str
    token: str
    acquired_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(frozen=True, slots=True)
class AllocationLock:
    """Point-in-time view of a per-tier allocation lock."""

    tier: Rarity
    held: bool
    acquired_at: Optional[datetime]


class LoggerLike(Protocol):
    """Protocol representing the structured logger adapter used by the engine."""

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None: ...


class HashFunc(Protocol):
    """PII hashing hook injected for structured logging."""

    def __call__(self, actor: str) -> str: ...


class MeterLike(Protocol):
    """Protocol capturing the observability hooks consumed by the engine."""

    def record_reservation(self, tier: str, outcome: str, quantity: int = 0) -> None: ...

    def record_rollback(self, tier: str, policy: str, count: int) -> None: ...

    def record_commit(self, tier: str, outcome: str, count: int = 1) -> None: ...

    def record_supply_exhausted(self, tier: str) -> None: ...

    def record_lock_timeout(self, lock: str) -> None: ...

    def record_actor_busy(self) -> None: ...

    def record_cas_conflict(self, tier: str) -> None: ...

    def record_mirror(self, outcome: str) -> None: ...

    def record_discrepancy(self, tier: str, kind: str, count: int) -> None: ...

    def set_available(self, tier: str, value: int) -> None: ...


class ExternalMintOperation(Protocol):
    """The irreversible downstream operation (for example, a token mint)."""

    def perform(self, actor: str, identifier: Identifier) -> str:
        """Return the external reference id of the completed operation."""


class CompletionVerifier(Protocol):
    """Independent check of an operation whose outcome is unknown."""

    def verify(self, actor: str, identifier: Identifier) -> str | bool | None:
        """Return the external reference when confirmed, ``False`` when it
        definitely did not happen, ``None`` when still unknown."""


class MirrorStore(Protocol):
    """Secondary, best-effort destination for ledger snapshots."""

    def write(self, payload: str) -> None: ...


class CompletionLog(Protocol):
    """Append-only record of confirmed completions."""

    def append(self, record: ConfirmedCompletionRecord) -> bool: ...

    def list_all(self) -> Sequence[ConfirmedCompletionRecord]: ...

    def list_for(self, tier: Rarity) -> Sequence[ConfirmedCompletionRecord]: ...

    def contains(self, identifier: Identifier) -> bool: ...


__all__ = [
    "ActorLock",
    "AllocationLock",
    "CompletionLog",
    "CompletionVerifier",
    "ConfirmedCompletionRecord",
    "ErrorDetail",
    "ExternalMintOperation",
    "HashFunc",
    "Identifier",
    "LoggerLike",
    "MeterLike",
    "MirrorStore",
    "Rarity",
    "RollbackPolicy",
]
