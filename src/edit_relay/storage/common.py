"""Engine construction and timestamp conventions shared by relay repositories.

Rows store naive UTC datetimes; domain objects carry aware UTC datetimes.
Every repository converts at the boundary with the two helpers below.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

# Workers, the dispatcher and CLI readers share one file from separate processes.
_CONNECTION_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA foreign_keys = ON",
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse an ISO-8601 message timestamp; naive values are taken as UTC."""

    return to_utc_aware_datetime(datetime.fromisoformat(value))


def to_db_datetime(value: datetime) -> datetime:
    """Column form: naive UTC, so lease and visibility comparisons order correctly."""

    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(UTC)
    return value.replace(tzinfo=UTC)


def dump_details(details: dict[str, object]) -> str | None:
    """Serialize claim-event details; empty details are stored as NULL."""

    if details:
        return json.dumps(details, sort_keys=True, ensure_ascii=False, default=str)
    return None


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for the relay database with per-connection lock and journal policy.

    Pooling is disabled so a worker thread never reuses a connection that
    another thread left inside a write transaction.
    """

    busy_timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
            for statement in _CONNECTION_PRAGMAS:
                cursor.execute(statement)
        finally:
            cursor.close()

    return engine
