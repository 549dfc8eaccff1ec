from __future__ import annotations

import logging
import sqlite3
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from backupledger.core.config import get_settings

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None

SQLITE_READONLY = 8


def is_readonly_error(exc: BaseException) -> bool:
    # Extended result codes keep the primary code in the low byte (1032 = SQLITE_IOERR_READONLY).
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int):
        return code == 1032 or (code & 0xFF) == SQLITE_READONLY
    message = str(exc).lower()
    return "readonly" in message or "read-only" in message


def apply_sqlite_pragmas(dbapi_connection: Any, busy_timeout_ms: int) -> None:
    """Configure a fresh SQLite connection for concurrent writers.

    A replica that is opened read-only rejects the journal-mode switch. That is
    expected during maintenance windows, so it is logged and the connection is
    still handed out; every later write through it fails loudly.
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
        cursor.execute("PRAGMA foreign_keys=ON;")
        try:
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.OperationalError as exc:
            if not is_readonly_error(exc):
                raise
            logger.warning("SQLite connection is read-only, skipping WAL setup: %s", exc)
        cursor.execute("PRAGMA temp_store=MEMORY;")
    finally:
        cursor.close()


def _configure_sqlite_pragma(engine: Engine, busy_timeout_ms: int) -> None:
    if not engine.url.drivername.startswith("sqlite"):
        return

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        apply_sqlite_pragmas(dbapi_connection, busy_timeout_ms)


def get_engine() -> Engine:
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.effective_database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.sqlite_busy_timeout_ms / 1000

    _engine = create_engine(
        settings.effective_database_url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )
    _configure_sqlite_pragma(_engine, settings.sqlite_busy_timeout_ms)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is not None:
        return _session_factory

    _session_factory = sessionmaker(
        bind=get_engine(),
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        class_=Session,
    )
    return _session_factory

