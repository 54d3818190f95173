"""SQLAlchemy models and session helpers shared by the SQL backends."""

from .models import ActorLockModel, Base, CompletionRecordModel, PaymentClaimModel, TierLedgerModel
from .session import create_schema, make_engine, make_session_factory, session_scope, supports_row_locks

__all__ = [
    "ActorLockModel",
    "Base",
    "CompletionRecordModel",
    "PaymentClaimModel",
    "TierLedgerModel",
    "create_schema",
    "make_engine",
    "make_session_factory",
    "session_scope",
    "supports_row_locks",
]
