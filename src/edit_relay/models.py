"""Domain models for threads, ownership claims, queues and pair state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(slots=True, frozen=True)
class Pair:
    """(project, user) routing key; the unit of ownership."""

    project_id: str
    user_id: str

    @property
    def key(self) -> str:
        return f"{self.project_id}/{self.user_id}"

    def __str__(self) -> str:
        return self.key


@dataclass(slots=True)
class Thread:
    """Persistent conversation mapped to one git branch."""

    thread_id: str
    origin_address: str
    project_id: str
    user_id: str
    branch_name: str
    subject: str
    created_at: datetime
    last_activity_at: datetime

    @property
    def pair(self) -> Pair:
        return Pair(self.project_id, self.user_id)


class ThreadMatchSource(str, Enum):
    """Strategy that produced a thread resolution."""

    STRUCTURED = "structured"
    EMBEDDED = "embedded"
    HEURISTIC = "heuristic"
    NEW = "new"


@dataclass(slots=True)
class ThreadMatch:
    """Confidence-tagged candidate returned by one resolution strategy."""

    thread_id: str
    source: ThreadMatchSource
    confidence: float


@dataclass(slots=True)
class ResolvedThread:
    thread: Thread
    source: ThreadMatchSource
    confidence: float
    created: bool


class ClaimOutcome(str, Enum):
    ACQUIRED = "acquired"
    ALREADY_OWNED = "already_owned"


@dataclass(slots=True)
class OwnershipClaim:
    """Live or historical ownership record of one pair."""

    project_id: str
    user_id: str
    owner_id: str
    claim_token: str
    source_ref: str
    input_queue_ref: str
    output_queue_ref: str
    claimed_at: datetime
    renewed_at: datetime
    lease_expires_at: datetime
    released_at: datetime | None

    @property
    def pair(self) -> Pair:
        return Pair(self.project_id, self.user_id)

    def is_live(self, now: datetime) -> bool:
        return self.released_at is None and self.lease_expires_at > now


@dataclass(slots=True)
class ClaimResult:
    """Outcome of one try_claim call.

    ``current_owner`` is diagnostic only: by the time the caller reads it the
    lease may already have changed hands.
    """

    outcome: ClaimOutcome
    claim: OwnershipClaim | None = None
    current_owner: str | None = None

    @property
    def acquired(self) -> bool:
        return self.outcome == ClaimOutcome.ACQUIRED


@dataclass(slots=True)
class ClaimContext:
    """Ownership proof passed explicitly into every pair runner operation."""

    pair: Pair
    worker_id: str
    claim_token: str
    input_queue_ref: str
    output_queue_ref: str
    source_ref: str = ""


class QueueMessageStatus(str, Enum):
    READY = "ready"
    INFLIGHT = "inflight"
    DONE = "done"
    DEAD = "dead"


@dataclass(slots=True)
class QueueMessage:
    """Message leased from a durable queue."""

    message_id: int
    queue_name: str
    body: dict[str, Any]
    dedup_key: str | None
    status: QueueMessageStatus
    receive_count: int
    receipt_handle: str | None
    visible_after: datetime
    enqueued_at: datetime
    dead_reason: str | None = None


@dataclass(slots=True)
class QueueDepth:
    queue_name: str
    ready: int
    inflight: int
    dead: int


@dataclass(slots=True)
class PairEventView:
    """Pair event entry for audit trail."""

    event_id: int
    project_id: str
    user_id: str
    event_type: str
    worker_id: str | None
    correlation_id: str | None
    details: dict[str, Any]
    created_at: datetime


class PairState(str, Enum):
    """In-memory lifecycle of one owned pair."""

    CLAIMED = "claimed"
    PROCESSING = "processing"
    BUILDING = "building"
    DEPLOYING = "deploying"
    COMMITTING = "committing"
    READY = "ready"
    IDLE = "idle"
    RELEASED = "released"
