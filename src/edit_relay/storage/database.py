"""Shared SQLite database handle for all routing repositories."""

from __future__ import annotations

from pathlib import Path

from edit_relay.storage.alembic_runner import current_revision, head_revision, upgrade_head
from edit_relay.storage.common import build_sqlite_engine


class RelayDatabase:
    """Owns the engine used by claim, queue, thread and ledger repositories."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        if self.schema_revision() == head_revision(self.db_path):
            return
        upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    def close(self) -> None:
        self.engine.dispose()
