"""SQLite engine and timestamp helpers shared by the job store."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC, the form SQLite stores and compares."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine shared by pipeline threads and operator CLI processes.

    WAL plus a busy timeout lets a ``job cancel`` from another process write
    while a pipeline holds the database open. Connections are not pooled so
    every conditional update runs on a fresh connection.
    """

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    def on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _configure_connection(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    event.listen(engine, "connect", on_connect)
    return engine


def _configure_connection(connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys = ON")
    finally:
        cursor.close()
