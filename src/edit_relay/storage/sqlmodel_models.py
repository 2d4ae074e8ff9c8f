"""SQLModel ORM tables for routing storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class ThreadRow(SQLModel, table=True):
    __tablename__ = "threads"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_threads_origin_activity", "origin_address", "last_activity_at"),
        Index("idx_threads_pair", "project_id", "user_id"),
    )

    thread_id: str = Field(primary_key=True)
    origin_address: str
    project_id: str
    user_id: str
    branch_name: str = Field(unique=True)
    subject: str = ""
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_activity_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class OwnershipClaimRow(SQLModel, table=True):
    __tablename__ = "ownership_claims"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_ownership_claims_owner", "owner_id", "released_at"),)

    project_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    owner_id: str
    claim_token: str
    source_ref: str = ""
    input_queue_ref: str
    output_queue_ref: str
    claimed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    renewed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    released_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class PairEventRow(SQLModel, table=True):
    __tablename__ = "pair_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_pair_events_pair_time", "project_id", "user_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    project_id: str
    user_id: str
    event_type: str
    worker_id: str | None = None
    correlation_id: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessageRow(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_messages_receive", "queue_name", "status", "message_id"),
        Index(
            "uq_queue_messages_pending_dedup",
            "queue_name",
            "dedup_key",
            unique=True,
            sqlite_where=text("status IN ('ready', 'inflight') AND dedup_key IS NOT NULL"),
        ),
    )

    message_id: int | None = Field(default=None, primary_key=True)
    queue_name: str
    body_json: str = Field(sa_column=Column(Text, nullable=False))
    dedup_key: str | None = None
    status: str
    receive_count: int = 0
    receipt_handle: str | None = None
    visible_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    dead_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class ProcessedRequestRow(SQLModel, table=True):
    __tablename__ = "processed_requests"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_processed_requests_pair_time", "project_id", "user_id", "recorded_at"),
    )

    correlation_id: str = Field(primary_key=True)
    project_id: str
    user_id: str
    thread_id: str | None = None
    success: bool
    error_kind: str | None = None
    response_json: str = Field(sa_column=Column(Text, nullable=False))
    worker_id: str | None = None
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
