"""Idempotency ledger of processed work requests."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from edit_relay.messages import ResponseMessage
from edit_relay.models import Pair
from edit_relay.retry import retry_transient
from edit_relay.storage.common import to_db_datetime, utc_now
from edit_relay.storage.sqlmodel_models import ProcessedRequestRow

logger = logging.getLogger(__name__)


class RequestLedger:
    """A work request is pending until its response is recorded here."""

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def get(self, correlation_id: str) -> ResponseMessage | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProcessedRequestRow).where(
                    ProcessedRequestRow.correlation_id == correlation_id,
                ),
            ).one_or_none()
        if row is None:
            return None
        return ResponseMessage.from_payload(json.loads(row.response_json))

    @retry_transient
    def record(self, response: ResponseMessage, *, worker_id: str | None = None) -> bool:
        """Store the outcome; False when the correlation id was already recorded."""

        with Session(self.engine) as session:
            session.add(
                ProcessedRequestRow(
                    correlation_id=response.correlation_id,
                    project_id=response.project_id,
                    user_id=response.user_id,
                    thread_id=response.thread_id,
                    success=response.success,
                    error_kind=(
                        response.error_kind.value if response.error_kind is not None else None
                    ),
                    response_json=json.dumps(
                        response.to_payload(),
                        ensure_ascii=False,
                        sort_keys=True,
                    ),
                    worker_id=worker_id,
                    recorded_at=to_db_datetime(self._clock()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Response for %s already recorded", response.correlation_id)
                return False
        return True

    def list_recent(self, pair: Pair, *, limit: int = 20) -> list[ResponseMessage]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProcessedRequestRow)
                .where(
                    ProcessedRequestRow.project_id == pair.project_id,
                    ProcessedRequestRow.user_id == pair.user_id,
                )
                .order_by(col(ProcessedRequestRow.recorded_at).desc())
                .limit(limit),
            ).all()
        return [ResponseMessage.from_payload(json.loads(row.response_json)) for row in rows]
