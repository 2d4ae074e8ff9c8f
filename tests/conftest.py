"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from edit_relay.storage.database import RelayDatabase


class ManualClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[RelayDatabase]:
    database = RelayDatabase(tmp_path / "relay.db")
    database.init_schema()
    yield database
    database.close()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


def inbound_payload(  # noqa: PLR0913
    message_id: str,
    *,
    body: str = "Make the header blue",
    project_id: str = "site1",
    user_id: str = "alice",
    sender: str = "alice@example.com",
    subject: str = "Header colour",
    in_reply_to: str | None = None,
    references: list[str] | None = None,
    source_ref: str = "",
) -> dict[str, object]:
    payload: dict[str, object] = {
        "message_id": message_id,
        "from": sender,
        "project_id": project_id,
        "user_id": user_id,
        "subject": subject,
        "body": body,
        "source_ref": source_ref,
    }
    if in_reply_to is not None:
        payload["in_reply_to"] = in_reply_to
    if references is not None:
        payload["references"] = references
    return payload
