"""Durable message queues and processed-request ledger."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_messages",
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("body_json", sa.Text(), nullable=False),
        sa.Column("dedup_key", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("receive_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("receipt_handle", sa.String(), nullable=True),
        sa.Column("visible_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dead_reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index(
        "idx_queue_messages_receive",
        "queue_messages",
        ["queue_name", "status", "message_id"],
        unique=False,
    )
    op.create_index(
        "uq_queue_messages_pending_dedup",
        "queue_messages",
        ["queue_name", "dedup_key"],
        unique=True,
        sqlite_where=sa.text("status IN ('ready', 'inflight') AND dedup_key IS NOT NULL"),
    )

    op.create_table(
        "processed_requests",
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("thread_id", sa.String(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_kind", sa.String(), nullable=True),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("correlation_id"),
    )
    op.create_index(
        "idx_processed_requests_pair_time",
        "processed_requests",
        ["project_id", "user_id", "recorded_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_processed_requests_pair_time", table_name="processed_requests")
    op.drop_table("processed_requests")
    op.drop_index("uq_queue_messages_pending_dedup", table_name="queue_messages")
    op.drop_index("idx_queue_messages_receive", table_name="queue_messages")
    op.drop_table("queue_messages")
