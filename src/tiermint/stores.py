# -*- coding: utf-8 -*-
"""Primary ledger stores.

The primary write is the commit point of every ledger mutation. Both stores
expose compare-and-set on the tier ledger ``version`` so concurrent writers
(threads or processes) cannot overwrite each other silently.
"""
from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable, Optional, Protocol

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .core.retry import RetryExhaustedError, RetryPolicy, execute_with_retry
from .errors import persistence_failure
from .infrastructure.persistence import TierLedgerModel, session_scope, supports_row_locks
from .ledger import AllocationLedger, TierLedger
from .types import Rarity

FILE_WRITE_ATTEMPTS = 3
_UNREADABLE = (OSError, ValueError, KeyError, TypeError)


@dataclass(slots=True)
class FaultInjector:
    """Deterministic fault injection toggles used only in tests."""

    read_failures: int = 0
    write_failures: int = 0
    cas_conflicts: int = 0

    def take(self, name: str) -> bool:
        remaining = getattr(self, name, 0)
        if remaining > 0:
            setattr(self, name, remaining - 1)
            return True
        return False


class LedgerStore(Protocol):
    def read(self, tier: Rarity) -> TierLedger: ...

    def read_all(self) -> AllocationLedger: ...

    def compare_and_set(self, ledger: TierLedger, expected_version: int) -> bool: ...

    def ping(self) -> None: ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _merge_tier(copies: list[TierLedger], now: datetime) -> TierLedger:
    allocated = tuple(dict.fromkeys(identifier for copy in copies for identifier in copy.allocated))
    held = set(allocated)
    burned = tuple(
        identifier
        for identifier in dict.fromkeys(identifier for copy in copies for identifier in copy.burned)
        if identifier not in held
    )
    return TierLedger(
        tier=copies[0].tier,
        allocated=allocated,
        next_index=max(copy.next_index for copy in copies),
        burned=burned,
        version=max(copy.version for copy in copies) + 1,
        updated_at=now,
    )


class JsonFileLedgerStore(LedgerStore):
    """Ledger kept as one JSON document on local disk.

    A ``.backup`` copy is taken before each write and the new document is
    swapped in with ``os.replace``. Only a single process may use a file.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fault_injector: Optional[FaultInjector] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleeper=None,
    ) -> None:
        self._path = Path(path)
        self._backup = self._path.with_name(self._path.name + ".backup")
        self._lock = threading.RLock()
        self._faults = fault_injector or FaultInjector()
        self._retry = retry_policy or RetryPolicy(base_delay=0.1, max_delay=0.5, max_attempts=FILE_WRITE_ATTEMPTS)
        self._sleeper = sleeper

    @property
    def path(self) -> Path:
        return self._path

    def _load_document(self, path: Path) -> AllocationLedger:
        document = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(document, dict):
            raise ValueError("ledger document must be a JSON object")
        return AllocationLedger.from_document(document)

    def _load(self) -> AllocationLedger:
        if self._faults.take("read_failures"):
            raise persistence_failure(f"fault:read path={self._path}", cause=OSError("fault:read"))
        if not self._path.exists():
            return AllocationLedger.from_document({"tiers": {}})
        try:
            return self._load_document(self._path)
        except _UNREADABLE as exc:
            # the backup is one write behind; loading it would rewind the cursor
            raise persistence_failure(f"unreadable ledger file {self._path}: {exc}", cause=exc) from exc

    def read(self, tier: Rarity) -> TierLedger:
        with self._lock:
            return self._load()[tier]

    def read_all(self) -> AllocationLedger:
        with self._lock:
            return self._load()

    def compare_and_set(self, ledger: TierLedger, expected_version: int) -> bool:
        with self._lock:
            current = self._load()
            if current[ledger.tier].version != expected_version or self._faults.take("cas_conflicts"):
                return False
            document = current.replace_tier(ledger).to_document(datetime.now(UTC))
            self._write(document)
            return True

    def ping(self) -> None:
        with self._lock:
            self._load()

    def restore(self, extra_sources: Iterable[str | Path] = ()) -> AllocationLedger:
        """Rebuild the primary file after it became unreadable.

        Every readable copy (the primary, ``.backup`` and any *extra_sources*
        such as an exported mirror snapshot) is merged per tier: the furthest
        cursor, the union of ``allocated`` and ``burned``, and a version above
        all of them so a stale writer loses its compare-and-set. An unreadable
        primary is moved to ``.corrupt`` first. The backup is one write behind,
        so identifiers reserved by that lost write come back only through a
        newer extra source or ``Reconciler.repair``.
        """

        with self._lock:
            copies: list[AllocationLedger] = []
            if self._path.exists():
                try:
                    copies.append(self._load_document(self._path))
                except _UNREADABLE:
                    os.replace(self._path, self._path.with_name(self._path.name + ".corrupt"))
            for source in (self._backup, *map(Path, extra_sources)):
                if not source.exists():
                    continue
                try:
                    copies.append(self._load_document(source))
                except _UNREADABLE:
                    continue
            if not copies:
                raise persistence_failure(f"no readable ledger copy next to {self._path}")
            now = datetime.now(UTC)
            restored = AllocationLedger(
                tiers={rarity: _merge_tier([copy[rarity] for copy in copies], now) for rarity in Rarity}
            )
            self._write(restored.to_document(now))
            return restored

    def _write(self, document: dict) -> None:
        payload = json.dumps(document, ensure_ascii=False, indent=2)

        def _attempt() -> None:
            if self._faults.take("write_failures"):
                raise OSError("fault:write")
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if self._path.exists():
                shutil.copyfile(self._path, self._backup)
            fd, tmp_name = tempfile.mkstemp(prefix=self._path.name, suffix=".tmp", dir=self._path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self._path)
            except OSError:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

        kwargs = {"sleeper": self._sleeper} if self._sleeper is not None else {}
        try:
            execute_with_retry(
                _attempt,
                policy=self._retry,
                retryable=(OSError,),
                correlation_id=str(self._path),
                op="ledger_file_write",
                **kwargs,
            )
        except RetryExhaustedError as exc:
            raise persistence_failure(
                f"ledger write failed after {self._retry.max_attempts} attempts path={self._path}",
                cause=exc.last_error,
            ) from exc


class SqlAlchemyLedgerStore(LedgerStore):
    """Concrete ledger store backed by SQLAlchemy sessions (one row per tier)."""

    def __init__(self, session_factory: sessionmaker, *, fault_injector: Optional[FaultInjector] = None) -> None:
        self._session_factory = session_factory
        self._faults = fault_injector or FaultInjector()

    # Public API -----------------------------------------------------------
    def read(self, tier: Rarity) -> TierLedger:
        try:
            self._raise_if("read_failures")
            with self._session_factory() as session:
                row = session.execute(
                    select(TierLedgerModel).where(TierLedgerModel.tier == tier.value)
                ).scalar_one_or_none()
                return self._to_ledger(tier, row)
        except SQLAlchemyError as exc:
            raise persistence_failure(f"ledger read failed tier={tier.value}", cause=exc) from exc

    def read_all(self) -> AllocationLedger:
        try:
            self._raise_if("read_failures")
            with self._session_factory() as session:
                rows = {row.tier: row for row in session.execute(select(TierLedgerModel)).scalars()}
        except SQLAlchemyError as exc:
            raise persistence_failure("ledger read failed", cause=exc) from exc
        return AllocationLedger(tiers={rarity: self._to_ledger(rarity, rows.get(rarity.value)) for rarity in Rarity})

    def compare_and_set(self, ledger: TierLedger, expected_version: int) -> bool:
        try:
            with session_scope(self._session_factory) as session:
                if expected_version == 0:
                    self._ensure_row(session, ledger.tier)
                stmt = select(TierLedgerModel.version).where(TierLedgerModel.tier == ledger.tier.value)
                if supports_row_locks(session):  # pragma: no branch - dialect guard
                    stmt = stmt.with_for_update()
                current = session.execute(stmt).scalar_one_or_none()
                if current != expected_version or self._faults.take("cas_conflicts"):
                    return False
                self._raise_if("write_failures")
                result = session.execute(
                    update(TierLedgerModel)
                    .where(
                        TierLedgerModel.tier == ledger.tier.value,
                        TierLedgerModel.version == expected_version,
                    )
                    .values(
                        allocated=list(ledger.allocated),
                        burned=list(ledger.burned),
                        next_index=ledger.next_index,
                        version=ledger.version,
                        updated_at=ledger.updated_at,
                    )
                )
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise persistence_failure(f"ledger write failed tier={ledger.tier.value}", cause=exc) from exc

    def ping(self) -> None:
        try:
            with self._session_factory() as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise persistence_failure("ledger database unreachable", cause=exc) from exc

    # Internal helpers ----------------------------------------------------
    def _raise_if(self, name: str) -> None:
        if self._faults.take(name):
            raise OperationalError(f"fault:{name}", params={}, orig=RuntimeError(name))

    @staticmethod
    def _ensure_row(session, tier: Rarity) -> None:
        exists = session.execute(
            select(TierLedgerModel.tier).where(TierLedgerModel.tier == tier.value)
        ).scalar_one_or_none()
        if exists is not None:
            return
        try:
            with session.begin_nested():
                session.add(TierLedgerModel(tier=tier.value, allocated=[], burned=[], next_index=0, version=0))
                session.flush()
        except IntegrityError:
            # lost the creation race; the version check below decides
            return

    @staticmethod
    def _to_ledger(tier: Rarity, row: Optional[TierLedgerModel]) -> TierLedger:
        if row is None:
            return TierLedger.empty(tier)
        return TierLedger(
            tier=tier,
            allocated=tuple(str(value) for value in row.allocated or ()),
            next_index=int(row.next_index),
            burned=tuple(str(value) for value in row.burned or ()),
            version=int(row.version),
            updated_at=_aware(row.updated_at),
        )


__all__ = ["FaultInjector", "JsonFileLedgerStore", "LedgerStore", "SqlAlchemyLedgerStore"]
