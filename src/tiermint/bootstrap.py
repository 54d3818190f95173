# -*- coding: utf-8 -*-
"""Wire the engine and its collaborators from a :class:`ServiceConfig`."""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from sqlalchemy.orm import sessionmaker

from .actor_locks import ActorLockBackend, InMemoryActorLocks, RedisActorLocks, SqlAlchemyActorLocks
from .catalog import PoolCatalog
from .completions import JsonlCompletionLog, SqlAlchemyCompletionLog
from .config import ServiceConfig, load_from_env
from .coordinator import MintCoordinator
from .core.clock import Clock, ensure_clock
from .engine import ReservationEngine
from .infrastructure.persistence import create_schema, make_engine, make_session_factory
from .logging_utils import EventLogger, actor_digest, event_logger
from .metrics import DEFAULT_METERS, AllocationMeters
from .mirror import DirectoryMirrorStore, HttpMirrorStore, MirrorSync
from .payments import JsonlPaymentClaims, PaymentClaimRegistry, SqlAlchemyPaymentClaims
from .reconcile import Reconciler
from .stores import JsonFileLedgerStore, LedgerStore, SqlAlchemyLedgerStore
from .types import CompletionLog, CompletionVerifier, ExternalMintOperation, HashFunc, RollbackPolicy


@dataclass(slots=True)
class Runtime:
    config: ServiceConfig
    catalog: PoolCatalog
    engine: ReservationEngine
    reconciler: Reconciler
    actor_locks: ActorLockBackend
    completions: CompletionLog
    payments: PaymentClaimRegistry
    mirror: Optional[MirrorSync]
    meters: AllocationMeters
    logger: EventLogger
    hash_fn: HashFunc

    def coordinator(
        self, operation: ExternalMintOperation, verifier: Optional[CompletionVerifier] = None
    ) -> MintCoordinator:
        """Mint coordinator sharing this runtime's engine, locks and payment claims."""

        return MintCoordinator(
            self.engine,
            self.actor_locks,
            operation,
            payments=self.payments,
            verifier=verifier,
            lock_ttl=self.config.actor_lock_ttl,
            lock_max_wait=self.config.actor_lock_max_wait,
            logger=self.logger,
            hash_fn=self.hash_fn,
        )

    def close(self) -> None:
        if self.mirror is not None:
            self.mirror.flush(timeout=5.0)
            self.mirror.close()


def _session_factory(config: ServiceConfig) -> Optional[sessionmaker]:
    if config.ledger_backend != "sql" and config.actor_lock_backend != "sql":
        return None
    db_engine = make_engine(config.db_url)
    create_schema(db_engine)
    return make_session_factory(db_engine)


def build_runtime(
    config: ServiceConfig,
    *,
    meters: AllocationMeters | None = None,
    clock: Clock | None = None,
    start: bool = True,
) -> Runtime:
    """Build every collaborator and, unless told otherwise, load the ledger."""

    meters = meters or DEFAULT_METERS
    active_clock = ensure_clock(clock)
    logger = event_logger()
    hash_fn = actor_digest(config.pii_hash_salt)
    catalog = PoolCatalog.load(config.catalog_path)
    session_factory = _session_factory(config)

    store: LedgerStore
    completions: CompletionLog
    payments: PaymentClaimRegistry
    if config.ledger_backend == "sql":
        assert session_factory is not None
        store = SqlAlchemyLedgerStore(session_factory)
        payments = SqlAlchemyPaymentClaims(session_factory, clock=active_clock)
    else:
        store = JsonFileLedgerStore(config.ledger_path)
        payments = JsonlPaymentClaims(Path(config.ledger_path).with_name("payment-claims.jsonl"), clock=active_clock)

    if config.completion_log_path:
        completions = JsonlCompletionLog(config.completion_log_path)
    elif session_factory is not None and config.ledger_backend == "sql":
        completions = SqlAlchemyCompletionLog(session_factory)
    else:
        completions = JsonlCompletionLog(Path(config.ledger_path).with_name("completions.jsonl"))

    actor_locks: ActorLockBackend
    if config.actor_lock_backend == "redis":
        assert config.redis_url is not None
        actor_locks = RedisActorLocks.from_url(config.redis_url, clock=active_clock, meters=meters)
    elif config.actor_lock_backend == "sql":
        assert session_factory is not None
        actor_locks = SqlAlchemyActorLocks(session_factory, clock=active_clock, meters=meters)
    else:
        actor_locks = InMemoryActorLocks(clock=active_clock, meters=meters)

    mirror: Optional[MirrorSync] = None
    if config.mirror_url:
        mirror = MirrorSync(HttpMirrorStore(config.mirror_url, token=config.mirror_token), meters=meters)
    elif config.mirror_dir:
        mirror = MirrorSync(DirectoryMirrorStore(config.mirror_dir, clock=active_clock), meters=meters)

    engine = ReservationEngine(
        catalog,
        store,
        completions,
        policy=RollbackPolicy(config.rollback_policy),
        mirror=mirror,
        meters=meters,
        logger=logger,
        clock=active_clock,
        hash_fn=hash_fn,
        lock_timeout=config.allocation_lock_timeout,
    )
    if start:
        engine.start()
    reconciler = Reconciler(engine, completions, meters=meters, logger=logger)
    return Runtime(
        config=config,
        catalog=catalog,
        engine=engine,
        reconciler=reconciler,
        actor_locks=actor_locks,
        completions=completions,
        payments=payments,
        mirror=mirror,
        meters=meters,
        logger=logger,
        hash_fn=hash_fn,
    )


@lru_cache(maxsize=1)
def _bootstrap() -> Runtime:
    return build_runtime(load_from_env())


def get_runtime() -> Runtime:
    return _bootstrap()


__all__ = ["Runtime", "build_runtime", "get_runtime"]
