# -*- coding: utf-8 -*-
from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()

_RARITIES = ("common", "rare", "legendary", "legendary_1of1")


class TierLedgerModel(Base):
    __tablename__ = "tier_ledgers"

    tier = Column(Enum(*_RARITIES, name="rarity", native_enum=False), primary_key=True)
    allocated = Column(JSON, nullable=False, default=list)
    burned = Column(JSON, nullable=False, default=list)
    next_index = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class CompletionRecordModel(Base):
    __tablename__ = "completion_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String(64), nullable=False)
    rarity = Column(Enum(*_RARITIES, name="rarity", native_enum=False), nullable=False)
    external_reference_id = Column(String(256), nullable=False)
    actor = Column(String(256), nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    payment_metadata = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("identifier", name="uq_completion_records_identifier"),
        Index("ix_completion_records_rarity", "rarity"),
    )


class ActorLockModel(Base):
    __tablename__ = "actor_locks"

    actor_key = Column(String(256), primary_key=True)
    token = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class PaymentClaimModel(Base):
    __tablename__ = "payment_claims"

    reference = Column(String(256), primary_key=True)
    actor = Column(String(256), nullable=False)
    tier = Column(Enum(*_RARITIES, name="rarity", native_enum=False), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(
        Enum("pending_mint", "minted", "failed", "ambiguous", name="payment_status", native_enum=False),
        nullable=False,
    )
    claimed_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
