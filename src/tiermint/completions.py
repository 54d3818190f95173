# -*- coding: utf-8 -*-
"""Append-only audit log of confirmed completions."""
from __future__ import annotations

import json
import threading
from datetime import UTC
from pathlib import Path
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import persistence_failure
from .infrastructure.persistence import CompletionRecordModel, session_scope
from .types import CompletionLog, ConfirmedCompletionRecord, Identifier, Rarity


class InMemoryCompletionLog(CompletionLog):
    def __init__(self) -> None:
        self._records: dict[Identifier, ConfirmedCompletionRecord] = {}
        self._lock = threading.Lock()

    def append(self, record: ConfirmedCompletionRecord) -> bool:
        with self._lock:
            if record.identifier in self._records:
                return False
            self._records[record.identifier] = record
            return True

    def list_all(self) -> Sequence[ConfirmedCompletionRecord]:
        with self._lock:
            return list(self._records.values())

    def list_for(self, tier: Rarity) -> Sequence[ConfirmedCompletionRecord]:
        return [record for record in self.list_all() if record.rarity is tier]

    def contains(self, identifier: Identifier) -> bool:
        with self._lock:
            return identifier in self._records


class JsonlCompletionLog(CompletionLog):
    """One JSON object per line; the file is only ever appended to.

    The index is rebuilt whenever the file's size or mtime differs from what
    this instance last saw, so lines appended by another process show up on
    the next call.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._index: Optional[dict[Identifier, ConfirmedCompletionRecord]] = None
        self._seen: Optional[tuple[int, int]] = None

    def _signature(self) -> Optional[tuple[int, int]]:
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise persistence_failure(f"unreadable completion log {self._path}: {exc}", cause=exc) from exc
        return stat.st_size, stat.st_mtime_ns

    def _load(self) -> dict[Identifier, ConfirmedCompletionRecord]:
        signature = self._signature()
        if self._index is not None and signature == self._seen:
            return self._index
        index: dict[Identifier, ConfirmedCompletionRecord] = {}
        if signature is not None:
            try:
                with self._path.open("r", encoding="utf-8") as handle:
                    for line in handle:
                        if not line.strip():
                            continue
                        record = ConfirmedCompletionRecord.from_dict(json.loads(line))
                        index.setdefault(record.identifier, record)
            except (OSError, ValueError, KeyError) as exc:
                raise persistence_failure(f"unreadable completion log {self._path}: {exc}", cause=exc) from exc
        self._index = index
        self._seen = signature
        return index

    def append(self, record: ConfirmedCompletionRecord) -> bool:
        with self._lock:
            index = self._load()
            if record.identifier in index:
                return False
            line = (json.dumps(record.to_dict(), ensure_ascii=False, default=str) + "\n").encode("utf-8")
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("ab") as handle:
                    handle.write(line)
                    handle.flush()
            except OSError as exc:
                raise persistence_failure(f"completion append failed path={self._path}", cause=exc) from exc
            index[record.identifier] = record
            previous = self._seen[0] if self._seen is not None else 0
            signature = self._signature()
            # anything beyond our own line came from another writer
            if signature is not None and signature[0] == previous + len(line):
                self._seen = signature
            else:
                self._index = None
            return True

    def list_all(self) -> Sequence[ConfirmedCompletionRecord]:
        with self._lock:
            return list(self._load().values())

    def list_for(self, tier: Rarity) -> Sequence[ConfirmedCompletionRecord]:
        return [record for record in self.list_all() if record.rarity is tier]

    def contains(self, identifier: Identifier) -> bool:
        with self._lock:
            return identifier in self._load()


class SqlAlchemyCompletionLog(CompletionLog):
    """Completion records in the ledger database; identifier is unique."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def append(self, record: ConfirmedCompletionRecord) -> bool:
        try:
            with session_scope(self._session_factory) as session:
                try:
                    with session.begin_nested():
                        session.add(
                            CompletionRecordModel(
                                identifier=record.identifier,
                                rarity=record.rarity.value,
                                external_reference_id=record.external_reference_id,
                                actor=record.actor,
                                recorded_at=record.recorded_at,
                                payment_metadata=dict(record.payment_metadata),
                            )
                        )
                        session.flush()
                except IntegrityError:
                    return False
                return True
        except SQLAlchemyError as exc:
            raise persistence_failure(f"completion append failed identifier={record.identifier}", cause=exc) from exc

    def list_all(self) -> Sequence[ConfirmedCompletionRecord]:
        return self._query(select(CompletionRecordModel).order_by(CompletionRecordModel.id))

    def list_for(self, tier: Rarity) -> Sequence[ConfirmedCompletionRecord]:
        return self._query(
            select(CompletionRecordModel)
            .where(CompletionRecordModel.rarity == tier.value)
            .order_by(CompletionRecordModel.id)
        )

    def contains(self, identifier: Identifier) -> bool:
        try:
            with self._session_factory() as session:
                found = session.execute(
                    select(CompletionRecordModel.id).where(CompletionRecordModel.identifier == identifier)
                ).first()
                return found is not None
        except SQLAlchemyError as exc:
            raise persistence_failure("completion lookup failed", cause=exc) from exc

    def _query(self, stmt) -> list[ConfirmedCompletionRecord]:
        try:
            with self._session_factory() as session:
                return [self._to_record(row) for row in session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            raise persistence_failure("completion query failed", cause=exc) from exc

    @staticmethod
    def _to_record(row: CompletionRecordModel) -> ConfirmedCompletionRecord:
        recorded_at = row.recorded_at
        if recorded_at.tzinfo is None:
            recorded_at = recorded_at.replace(tzinfo=UTC)
        return ConfirmedCompletionRecord(
            identifier=row.identifier,
            rarity=Rarity.parse(row.rarity),
            external_reference_id=row.external_reference_id,
            actor=row.actor,
            recorded_at=recorded_at,
            payment_metadata=dict(row.payment_metadata or {}),
        )


__all__ = ["InMemoryCompletionLog", "JsonlCompletionLog", "SqlAlchemyCompletionLog"]
