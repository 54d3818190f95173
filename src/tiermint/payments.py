# -*- coding: utf-8 -*-
"""Registry of payment references already used to back a mint."""
from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .core.clock import Clock, ensure_clock
from .errors import payment_already_used, persistence_failure
from .infrastructure.persistence import PaymentClaimModel, session_scope
from .types import Rarity

PaymentStatus = Literal["pending_mint", "minted", "failed", "ambiguous"]
PAYMENT_STATUSES = ("pending_mint", "minted", "failed", "ambiguous")


@dataclass(frozen=True, slots=True)
class PaymentClaim:
    reference: str
    actor: str
    tier: Rarity
    quantity: int
    status: PaymentStatus
    claimed_at: datetime
    updated_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "actor": self.actor,
            "tier": self.tier.value,
            "quantity": self.quantity,
            "status": self.status,
            "claimed_at": self.claimed_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "details": dict(self.details),
        }


class PaymentClaimRegistry(Protocol):
    def claim(self, reference: str, *, actor: str, tier: Rarity, quantity: int) -> PaymentClaim: ...

    def update_status(
        self, reference: str, status: PaymentStatus, details: Optional[Mapping[str, Any]] = None
    ) -> PaymentClaim: ...

    def get(self, reference: str) -> Optional[PaymentClaim]: ...


def _check_status(status: str) -> None:
    if status not in PAYMENT_STATUSES:
        raise ValueError(f"unknown payment status {status!r}")


class InMemoryPaymentClaims(PaymentClaimRegistry):
    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = ensure_clock(clock)
        self._claims: dict[str, PaymentClaim] = {}
        self._lock = threading.Lock()

    def claim(self, reference: str, *, actor: str, tier: Rarity, quantity: int) -> PaymentClaim:
        with self._lock:
            if reference in self._claims:
                raise payment_already_used(reference)
            now = self._clock.now()
            claim = PaymentClaim(
                reference=reference,
                actor=actor,
                tier=tier,
                quantity=quantity,
                status="pending_mint",
                claimed_at=now,
                updated_at=now,
            )
            self._claims[reference] = claim
            return claim

    def update_status(
        self, reference: str, status: PaymentStatus, details: Optional[Mapping[str, Any]] = None
    ) -> PaymentClaim:
        _check_status(status)
        with self._lock:
            current = self._claims[reference]
            merged = {**current.details, **(details or {})}
            updated = replace(current, status=status, updated_at=self._clock.now(), details=merged)
            self._claims[reference] = updated
            return updated

    def get(self, reference: str) -> Optional[PaymentClaim]:
        with self._lock:
            return self._claims.get(reference)


def _claim_from_dict(payload: Mapping[str, Any]) -> PaymentClaim:
    return PaymentClaim(
        reference=str(payload["reference"]),
        actor=str(payload["actor"]),
        tier=Rarity.parse(payload["tier"]),
        quantity=int(payload["quantity"]),
        status=payload["status"],
        claimed_at=datetime.fromisoformat(payload["claimed_at"]),
        updated_at=datetime.fromisoformat(payload["updated_at"]),
        details=dict(payload.get("details") or {}),
    )


class JsonlPaymentClaims(PaymentClaimRegistry):
    """Claims kept as append-only JSON lines next to the file ledger.

    A ``claim`` line registers a reference and ``status`` lines update it. On
    replay the first claim line for a reference wins, so after appending a
    claim the file is re-read and a process that lost the race to another
    writer gets ``PaymentAlreadyUsed`` like any later caller.
    """

    def __init__(self, path: str | Path, *, clock: Clock | None = None) -> None:
        self._path = Path(path)
        self._clock = ensure_clock(clock)
        self._lock = threading.Lock()
        self._claims: dict[str, PaymentClaim] = {}
        self._tokens: dict[str, str] = {}
        self._seen: Optional[tuple[int, int]] = None
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def _signature(self) -> Optional[tuple[int, int]]:
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise persistence_failure(f"unreadable payment claims {self._path}: {exc}", cause=exc) from exc
        return stat.st_size, stat.st_mtime_ns

    def _load(self) -> dict[str, PaymentClaim]:
        signature = self._signature()
        if self._loaded and signature == self._seen:
            return self._claims
        claims: dict[str, PaymentClaim] = {}
        tokens: dict[str, str] = {}
        if signature is not None:
            try:
                with self._path.open("r", encoding="utf-8") as handle:
                    for line in handle:
                        if not line.strip():
                            continue
                        payload = json.loads(line)
                        reference = payload["reference"]
                        if payload["event"] == "claim":
                            if reference not in claims:
                                claims[reference] = _claim_from_dict(payload)
                                tokens[reference] = payload["token"]
                        elif reference in claims:
                            current = claims[reference]
                            claims[reference] = replace(
                                current,
                                status=payload["status"],
                                updated_at=datetime.fromisoformat(payload["updated_at"]),
                                details={**current.details, **(payload.get("details") or {})},
                            )
            except (OSError, ValueError, KeyError) as exc:
                raise persistence_failure(f"unreadable payment claims {self._path}: {exc}", cause=exc) from exc
        self._claims, self._tokens = claims, tokens
        self._seen, self._loaded = signature, True
        return claims

    def _append(self, payload: Mapping[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=False, default=str) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("ab") as handle:
                handle.write(line.encode("utf-8"))
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise persistence_failure(f"payment claim append failed path={self._path}", cause=exc) from exc

    def claim(self, reference: str, *, actor: str, tier: Rarity, quantity: int) -> PaymentClaim:
        with self._lock:
            if reference in self._load():
                raise payment_already_used(reference)
            now = self._clock.now()
            claim = PaymentClaim(
                reference=reference,
                actor=actor,
                tier=tier,
                quantity=quantity,
                status="pending_mint",
                claimed_at=now,
                updated_at=now,
            )
            token = uuid.uuid4().hex
            self._append({"event": "claim", "token": token, **claim.to_dict()})
            self._load()
            if self._tokens.get(reference) != token:
                raise payment_already_used(reference)
            return claim

    def update_status(
        self, reference: str, status: PaymentStatus, details: Optional[Mapping[str, Any]] = None
    ) -> PaymentClaim:
        _check_status(status)
        with self._lock:
            current = self._load()[reference]
            updated = replace(
                current,
                status=status,
                updated_at=self._clock.now(),
                details={**current.details, **(details or {})},
            )
            self._append(
                {
                    "event": "status",
                    "reference": reference,
                    "status": status,
                    "updated_at": updated.updated_at.isoformat(),
                    "details": dict(details or {}),
                }
            )
            return updated

    def get(self, reference: str) -> Optional[PaymentClaim]:
        with self._lock:
            return self._load().get(reference)


class SqlAlchemyPaymentClaims(PaymentClaimRegistry):
    """Claims stored with the payment reference as primary key."""

    def __init__(self, session_factory: sessionmaker, *, clock: Clock | None = None) -> None:
        self._session_factory = session_factory
        self._clock = ensure_clock(clock)

    def claim(self, reference: str, *, actor: str, tier: Rarity, quantity: int) -> PaymentClaim:
        now = self._clock.now()
        try:
            with session_scope(self._session_factory) as session:
                try:
                    with session.begin_nested():
                        session.add(
                            PaymentClaimModel(
                                reference=reference,
                                actor=actor,
                                tier=tier.value,
                                quantity=quantity,
                                status="pending_mint",
                                claimed_at=now,
                                updated_at=now,
                                details={},
                            )
                        )
                        session.flush()
                except IntegrityError as exc:
                    raise payment_already_used(reference) from exc
        except SQLAlchemyError as exc:
            raise persistence_failure(f"payment claim failed reference={reference}", cause=exc) from exc
        return PaymentClaim(
            reference=reference,
            actor=actor,
            tier=tier,
            quantity=quantity,
            status="pending_mint",
            claimed_at=now,
            updated_at=now,
        )

    def update_status(
        self, reference: str, status: PaymentStatus, details: Optional[Mapping[str, Any]] = None
    ) -> PaymentClaim:
        _check_status(status)
        try:
            with session_scope(self._session_factory) as session:
                row = session.execute(
                    select(PaymentClaimModel).where(PaymentClaimModel.reference == reference)
                ).scalar_one()
                row.status = status
                row.updated_at = self._clock.now()
                row.details = {**(row.details or {}), **(details or {})}
                session.flush()
                return self._to_claim(row)
        except SQLAlchemyError as exc:
            raise persistence_failure(f"payment update failed reference={reference}", cause=exc) from exc

    def get(self, reference: str) -> Optional[PaymentClaim]:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(PaymentClaimModel).where(PaymentClaimModel.reference == reference)
                ).scalar_one_or_none()
                return self._to_claim(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise persistence_failure(f"payment lookup failed reference={reference}", cause=exc) from exc

    @staticmethod
    def _to_claim(row: PaymentClaimModel) -> PaymentClaim:
        def _aware(value: datetime) -> datetime:
            return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

        return PaymentClaim(
            reference=row.reference,
            actor=row.actor,
            tier=Rarity.parse(row.tier),
            quantity=int(row.quantity),
            status=row.status,
            claimed_at=_aware(row.claimed_at),
            updated_at=_aware(row.updated_at),
            details=dict(row.details or {}),
        )


__all__ = [
    "InMemoryPaymentClaims",
    "JsonlPaymentClaims",
    "PAYMENT_STATUSES",
    "PaymentClaim",
    "PaymentClaimRegistry",
    "PaymentStatus",
    "SqlAlchemyPaymentClaims",
]
