"""Thread registry, ownership claims and pair audit events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "threads",
        sa.Column("thread_id", sa.String(), nullable=False),
        sa.Column("origin_address", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("branch_name", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("thread_id"),
        sa.UniqueConstraint("branch_name", name="uq_threads_branch_name"),
    )
    op.create_index(
        "idx_threads_origin_activity",
        "threads",
        ["origin_address", "last_activity_at"],
        unique=False,
    )
    op.create_index("idx_threads_pair", "threads", ["project_id", "user_id"], unique=False)

    op.create_table(
        "ownership_claims",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("claim_token", sa.String(), nullable=False),
        sa.Column("source_ref", sa.String(), nullable=False, server_default=""),
        sa.Column("input_queue_ref", sa.String(), nullable=False),
        sa.Column("output_queue_ref", sa.String(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("renewed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("project_id", "user_id"),
    )
    op.create_index(
        "idx_ownership_claims_owner",
        "ownership_claims",
        ["owner_id", "released_at"],
        unique=False,
    )

    op.create_table(
        "pair_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_pair_events_pair_time",
        "pair_events",
        ["project_id", "user_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_pair_events_pair_time", table_name="pair_events")
    op.drop_table("pair_events")
    op.drop_index("idx_ownership_claims_owner", table_name="ownership_claims")
    op.drop_table("ownership_claims")
    op.drop_index("idx_threads_pair", table_name="threads")
    op.drop_index("idx_threads_origin_activity", table_name="threads")
    op.drop_table("threads")
