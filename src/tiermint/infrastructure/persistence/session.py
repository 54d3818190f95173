# -*- coding: utf-8 -*-
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from .models import Base


def make_engine(dsn: str) -> Engine:
    if dsn.startswith("sqlite"):
        engine = create_engine(dsn, connect_args={"check_same_thread": False, "timeout": 30})

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):  # pragma: no cover - driver specific
            # hand transaction control to SQLAlchemy so SAVEPOINT works
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        @event.listens_for(engine, "begin")
        def begin_immediate(conn):  # pragma: no cover - driver specific
            # take the write lock up front; a deferred upgrade fails without waiting
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    engine = create_engine(
        dsn,
        pool_size=20,
        max_overflow=40,
        pool_timeout=5,
        pool_recycle=1800,
    )

    @event.listens_for(engine, "connect")
    def set_statement_timeout(dbapi_connection, connection_record):  # pragma: no cover - driver specific
        if engine.dialect.name != "postgresql":
            return
        cursor = dbapi_connection.cursor()
        cursor.execute("SET statement_timeout TO 2000")
        cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def supports_row_locks(session: Session) -> bool:
    """SQLite has no ``SELECT ... FOR UPDATE``; every other backend does."""

    return session.get_bind().dialect.name != "sqlite"


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
