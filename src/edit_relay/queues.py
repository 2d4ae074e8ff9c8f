"""Durable SQL-backed message queues with visibility timeouts and redrive."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from edit_relay.models import Pair, QueueDepth, QueueMessage, QueueMessageStatus
from edit_relay.retry import retry_transient
from edit_relay.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from edit_relay.storage.sqlmodel_models import QueueMessageRow

logger = logging.getLogger(__name__)

UNCLAIMED_QUEUE = "unclaimed"
DEAD_LETTER_QUEUE = "dead-letter"
INPUT_QUEUE_PREFIX = "input-"
OUTPUT_QUEUE_PREFIX = "output-"

_PENDING_STATUSES = (QueueMessageStatus.READY.value, QueueMessageStatus.INFLIGHT.value)


def input_queue_name(pair: Pair) -> str:
    return f"{INPUT_QUEUE_PREFIX}{pair.project_id}-{pair.user_id}"


def output_queue_name(pair: Pair) -> str:
    return f"{OUTPUT_QUEUE_PREFIX}{pair.project_id}-{pair.user_id}"


def pair_from_input_queue(queue_name: str) -> Pair | None:
    """Invert input_queue_name; pair ids never contain '-'."""

    if not queue_name.startswith(INPUT_QUEUE_PREFIX):
        return None
    parts = queue_name[len(INPUT_QUEUE_PREFIX) :].split("-")
    if len(parts) != 2 or not all(parts):  # noqa: PLR2004
        return None
    return Pair(project_id=parts[0], user_id=parts[1])


class QueueBroker:
    """FIFO queues over one table; at-least-once delivery with leased receipts.

    A received message stays ``inflight`` until acked or until its visibility
    timeout passes, after which any consumer may receive it again. Messages
    received more than ``max_receives`` times are moved to the dead-letter
    queue on the next receive attempt. Pair input queues are strictly ordered:
    nothing behind a leased message is handed out until that message is
    acked, released or visible again.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        visibility_timeout_seconds: int = 300,
        max_receives: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_receives = max_receives
        self._clock = clock

    @retry_transient
    def send(
        self,
        queue_name: str,
        body: dict[str, Any],
        *,
        dedup_key: str | None = None,
        delay_seconds: float = 0,
    ) -> int | None:
        """Append a message; return its id, or None when the dedup key is pending."""

        now = self._clock()
        with Session(self.engine) as session:
            row = QueueMessageRow(
                queue_name=queue_name,
                body_json=json.dumps(body, ensure_ascii=False, sort_keys=True),
                dedup_key=dedup_key,
                status=QueueMessageStatus.READY.value,
                receive_count=0,
                visible_after=to_db_datetime(now + timedelta(seconds=delay_seconds)),
                enqueued_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug("Dropped duplicate message for %s dedup=%s", queue_name, dedup_key)
                return None
            session.refresh(row)
            return row.message_id

    @retry_transient
    def receive(
        self,
        queue_name: str,
        *,
        visibility_timeout_seconds: int | None = None,
    ) -> QueueMessage | None:
        """Lease the oldest visible message of the queue."""

        timeout = visibility_timeout_seconds or self.visibility_timeout_seconds
        ordered = queue_name.startswith(INPUT_QUEUE_PREFIX)
        while True:
            now = self._clock()
            with Session(self.engine) as session:
                statement = select(QueueMessageRow).where(
                    QueueMessageRow.queue_name == queue_name,
                    col(QueueMessageRow.status).in_(_PENDING_STATUSES),
                )
                if not ordered:
                    statement = statement.where(
                        col(QueueMessageRow.visible_after) <= to_db_datetime(now),
                    )
                candidate = session.exec(
                    statement.order_by(col(QueueMessageRow.message_id).asc()).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                if candidate.visible_after > to_db_datetime(now):
                    # Head of an ordered queue is still leased.
                    return None

                if candidate.receive_count >= self.max_receives:
                    moved = self._move_to_dead_letter(
                        session=session,
                        row=candidate,
                        reason="max_receives_exceeded",
                        now=now,
                    )
                    if moved:
                        session.commit()
                        logger.warning(
                            "Redrove message %s from %s after %s receives",
                            candidate.message_id,
                            queue_name,
                            candidate.receive_count,
                        )
                    else:
                        session.rollback()
                    continue

                receipt_handle = uuid4().hex
                result = session.exec(
                    sa_update(QueueMessageRow)
                    .where(
                        col(QueueMessageRow.message_id) == candidate.message_id,
                        col(QueueMessageRow.status) == candidate.status,
                        col(QueueMessageRow.receive_count) == candidate.receive_count,
                    )
                    .values(
                        status=QueueMessageStatus.INFLIGHT.value,
                        receive_count=candidate.receive_count + 1,
                        receipt_handle=receipt_handle,
                        visible_after=to_db_datetime(now + timedelta(seconds=timeout)),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                leased = session.exec(
                    select(QueueMessageRow).where(
                        QueueMessageRow.message_id == candidate.message_id,
                    ),
                ).one()
                return _to_message(leased)

    @retry_transient
    def ack(self, message: QueueMessage) -> bool:
        """Mark a leased message done; False when the lease was lost."""

        return self._finish_leased(message, status=QueueMessageStatus.DONE)

    @retry_transient
    def extend_visibility(self, message: QueueMessage, seconds: int | None = None) -> bool:
        """Push the visibility deadline of a leased message forward."""

        now = self._clock()
        timeout = seconds or self.visibility_timeout_seconds
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(
                    col(QueueMessageRow.message_id) == message.message_id,
                    col(QueueMessageRow.status) == QueueMessageStatus.INFLIGHT.value,
                    col(QueueMessageRow.receipt_handle) == message.receipt_handle,
                )
                .values(
                    visible_after=to_db_datetime(now + timedelta(seconds=timeout)),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    @retry_transient
    def release(self, message: QueueMessage) -> bool:
        """Return a leased message to the queue immediately."""

        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(
                    col(QueueMessageRow.message_id) == message.message_id,
                    col(QueueMessageRow.status) == QueueMessageStatus.INFLIGHT.value,
                    col(QueueMessageRow.receipt_handle) == message.receipt_handle,
                )
                .values(
                    status=QueueMessageStatus.READY.value,
                    receipt_handle=None,
                    visible_after=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    @retry_transient
    def dead_letter(self, message: QueueMessage, *, reason: str) -> bool:
        """Move a leased message to the dead-letter queue."""

        now = self._clock()
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueMessageRow).where(
                    QueueMessageRow.message_id == message.message_id,
                    QueueMessageRow.status == QueueMessageStatus.INFLIGHT.value,
                    QueueMessageRow.receipt_handle == message.receipt_handle,
                ),
            ).one_or_none()
            if row is None:
                return False
            if not self._move_to_dead_letter(session=session, row=row, reason=reason, now=now):
                session.rollback()
                return False
            session.commit()
            return True

    @retry_transient
    def dead_letter_raw(self, payload: object, *, reason: str, source_queue: str) -> int:
        """Store a payload that never made it onto a regular queue."""

        now = self._clock()
        with Session(self.engine) as session:
            row = QueueMessageRow(
                queue_name=DEAD_LETTER_QUEUE,
                body_json=json.dumps(
                    {"source_queue": source_queue, "reason": reason, "payload": payload},
                    ensure_ascii=False,
                    sort_keys=True,
                    default=str,
                ),
                status=QueueMessageStatus.READY.value,
                visible_after=to_db_datetime(now),
                enqueued_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
                dead_reason=reason,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.message_id is None:
                raise RuntimeError("Dead-letter insert returned no message id")
            return row.message_id

    @retry_transient
    def dead_letter_pending(self, queue_name: str, *, reason: str) -> list[QueueMessage]:
        """Move every pending message that no consumer currently holds to dead-letter."""

        now = self._clock()
        moved: list[QueueMessage] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueMessageRow)
                .where(
                    QueueMessageRow.queue_name == queue_name,
                    col(QueueMessageRow.status).in_(_PENDING_STATUSES),
                    col(QueueMessageRow.visible_after) <= to_db_datetime(now),
                )
                .order_by(col(QueueMessageRow.message_id).asc()),
            ).all()
            for row in rows:
                snapshot = _to_message(row)
                if self._move_to_dead_letter(session=session, row=row, reason=reason, now=now):
                    moved.append(snapshot)
            session.commit()
        return moved

    def count_pending(
        self,
        queue_name: str,
        *,
        after_message_id: int | None = None,
        enqueued_since: datetime | None = None,
    ) -> int:
        """Count visible ready messages, optionally only newer ones."""

        now = self._clock()
        with Session(self.engine) as session:
            statement = select(func.count()).where(
                QueueMessageRow.queue_name == queue_name,
                QueueMessageRow.status == QueueMessageStatus.READY.value,
                col(QueueMessageRow.visible_after) <= to_db_datetime(now),
            )
            if after_message_id is not None:
                statement = statement.where(col(QueueMessageRow.message_id) > after_message_id)
            if enqueued_since is not None:
                statement = statement.where(
                    col(QueueMessageRow.enqueued_at) >= to_db_datetime(enqueued_since),
                )
            return int(session.exec(statement).one())

    def pending_queues(self, *, prefix: str) -> list[tuple[str, int, datetime]]:
        """Queues with ready/inflight messages: (name, count, oldest enqueued_at)."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    QueueMessageRow.queue_name,
                    func.count(),
                    func.min(QueueMessageRow.enqueued_at),
                )
                .where(
                    col(QueueMessageRow.queue_name).startswith(prefix),
                    col(QueueMessageRow.status).in_(_PENDING_STATUSES),
                )
                .group_by(QueueMessageRow.queue_name)
                .order_by(QueueMessageRow.queue_name),
            ).all()
        return [
            (queue_name, int(count), to_utc_aware_datetime(oldest))
            for queue_name, count, oldest in rows
        ]

    def depths(self) -> list[QueueDepth]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueMessageRow.queue_name, QueueMessageRow.status, func.count())
                .where(col(QueueMessageRow.status) != QueueMessageStatus.DONE.value)
                .group_by(QueueMessageRow.queue_name, QueueMessageRow.status),
            ).all()
        by_queue: dict[str, QueueDepth] = {}
        for queue_name, status, count in rows:
            depth = by_queue.setdefault(queue_name, QueueDepth(queue_name, 0, 0, 0))
            if status == QueueMessageStatus.READY.value:
                depth.ready = int(count)
            elif status == QueueMessageStatus.INFLIGHT.value:
                depth.inflight = int(count)
            elif status == QueueMessageStatus.DEAD.value:
                depth.dead = int(count)
        return [by_queue[name] for name in sorted(by_queue)]

    def list_messages(
        self,
        queue_name: str,
        *,
        statuses: tuple[QueueMessageStatus, ...] = (
            QueueMessageStatus.READY,
            QueueMessageStatus.INFLIGHT,
        ),
        limit: int = 50,
    ) -> list[QueueMessage]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueMessageRow)
                .where(
                    QueueMessageRow.queue_name == queue_name,
                    col(QueueMessageRow.status).in_([status.value for status in statuses]),
                )
                .order_by(col(QueueMessageRow.message_id).asc())
                .limit(limit),
            ).all()
        return [_to_message(row) for row in rows]

    def _finish_leased(
        self,
        message: QueueMessage,
        *,
        status: QueueMessageStatus,
    ) -> bool:
        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(
                    col(QueueMessageRow.message_id) == message.message_id,
                    col(QueueMessageRow.status) == QueueMessageStatus.INFLIGHT.value,
                    col(QueueMessageRow.receipt_handle) == message.receipt_handle,
                )
                .values(
                    status=status.value,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Lease lost before finishing message %s on %s",
                    message.message_id,
                    message.queue_name,
                )
                return False
            session.commit()
            return True

    def _move_to_dead_letter(
        self,
        *,
        session: Session,
        row: QueueMessageRow,
        reason: str,
        now: datetime,
    ) -> bool:
        result = session.exec(
            sa_update(QueueMessageRow)
            .where(
                col(QueueMessageRow.message_id) == row.message_id,
                col(QueueMessageRow.status) == row.status,
                col(QueueMessageRow.receive_count) == row.receive_count,
            )
            .values(
                status=QueueMessageStatus.DEAD.value,
                dead_reason=reason,
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            return False
        session.add(
            QueueMessageRow(
                queue_name=DEAD_LETTER_QUEUE,
                body_json=json.dumps(
                    {
                        "source_queue": row.queue_name,
                        "source_message_id": row.message_id,
                        "reason": reason,
                        "receive_count": row.receive_count,
                        "payload": json.loads(row.body_json),
                    },
                    ensure_ascii=False,
                    sort_keys=True,
                ),
                status=QueueMessageStatus.READY.value,
                visible_after=to_db_datetime(now),
                enqueued_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
                dead_reason=reason,
            ),
        )
        return True


def _to_message(row: QueueMessageRow) -> QueueMessage:
    if row.message_id is None:
        raise RuntimeError("Queue row without message id")
    return QueueMessage(
        message_id=row.message_id,
        queue_name=row.queue_name,
        body=json.loads(row.body_json),
        dedup_key=row.dedup_key,
        status=QueueMessageStatus(row.status),
        receive_count=row.receive_count,
        receipt_handle=row.receipt_handle,
        visible_after=to_utc_aware_datetime(row.visible_after),
        enqueued_at=to_utc_aware_datetime(row.enqueued_at),
        dead_reason=row.dead_reason,
    )
