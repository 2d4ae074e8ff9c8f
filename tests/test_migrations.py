from pathlib import Path

import allure
from sqlalchemy import inspect, text

from edit_relay.storage.database import RelayDatabase

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = RelayDatabase(tmp_path / "migrations.db")
    assert database.schema_revision() is None

    database.init_schema()

    assert database.schema_revision() == "20261018_0002"

    inspector = inspect(database.engine)
    assert sorted(name for name in inspector.get_table_names() if name != "alembic_version") == [
        "ownership_claims",
        "pair_events",
        "processed_requests",
        "queue_messages",
        "threads",
    ]
    queue_indexes = {index["name"] for index in inspector.get_indexes("queue_messages")}
    assert {"idx_queue_messages_receive", "uq_queue_messages_pending_dedup"} <= queue_indexes
    database.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    database = RelayDatabase(tmp_path / "nested" / "relay.db")

    database.init_schema()
    database.init_schema()

    with database.engine.connect() as connection:
        count = connection.execute(text("SELECT COUNT(*) FROM alembic_version")).scalar_one()
    assert count == 1
    database.close()
