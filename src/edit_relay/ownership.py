"""Durable ownership registry with compare-and-swap claim semantics."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from edit_relay.models import (
    ClaimOutcome,
    ClaimResult,
    OwnershipClaim,
    Pair,
    PairEventView,
)
from edit_relay.queues import input_queue_name, output_queue_name
from edit_relay.retry import retry_transient
from edit_relay.storage.common import (
    dump_details,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from edit_relay.storage.sqlmodel_models import OwnershipClaimRow, PairEventRow

logger = logging.getLogger(__name__)

_CLAIM_COLUMNS = (
    "owner_id",
    "claim_token",
    "source_ref",
    "input_queue_ref",
    "output_queue_ref",
    "claimed_at",
    "renewed_at",
    "lease_expires_at",
    "released_at",
)


class OwnershipRegistry:
    """Claim table keyed by (project_id, user_id).

    A claim is live while it is not released and its lease has not expired.
    Acquisition is one conditional upsert, so among concurrent callers at most
    one observes ``ACQUIRED`` for the same pair.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        lease_seconds: int = 900,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.lease_seconds = lease_seconds
        self._clock = clock

    @retry_transient
    def try_claim(
        self,
        project_id: str,
        user_id: str,
        worker_id: str,
        source_ref: str = "",
    ) -> ClaimResult:
        """Take ownership of the pair if it is unowned, released or expired."""

        pair = Pair(project_id, user_id)
        now = self._clock()
        claim_token = uuid4().hex
        table = OwnershipClaimRow.__table__  # type: ignore[attr-defined]
        statement = sqlite_insert(table).values(
            project_id=project_id,
            user_id=user_id,
            owner_id=worker_id,
            claim_token=claim_token,
            source_ref=source_ref,
            input_queue_ref=input_queue_name(pair),
            output_queue_ref=output_queue_name(pair),
            claimed_at=to_db_datetime(now),
            renewed_at=to_db_datetime(now),
            lease_expires_at=to_db_datetime(now + timedelta(seconds=self.lease_seconds)),
            released_at=None,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[table.c.project_id, table.c.user_id],
            set_={name: statement.excluded[name] for name in _CLAIM_COLUMNS},
            where=or_(
                table.c.released_at.is_not(None),
                table.c.lease_expires_at <= to_db_datetime(now),
            ),
        )

        with Session(self.engine) as session:
            result = session.exec(statement)  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                current = self.current_claim(project_id, user_id)
                logger.debug(
                    "Claim of %s by %s lost to %s",
                    pair,
                    worker_id,
                    current.owner_id if current is not None else None,
                )
                return ClaimResult(
                    outcome=ClaimOutcome.ALREADY_OWNED,
                    current_owner=current.owner_id if current is not None else None,
                )
            self._add_event(
                session=session,
                pair=pair,
                event_type="claimed",
                worker_id=worker_id,
                details={"source_ref": source_ref, "lease_seconds": self.lease_seconds},
            )
            session.commit()

            row = session.exec(
                select(OwnershipClaimRow).where(
                    OwnershipClaimRow.project_id == project_id,
                    OwnershipClaimRow.user_id == user_id,
                ),
            ).one()
            claim = _to_claim_view(row)

        if claim.claim_token != claim_token:
            raise RuntimeError(f"Claim row for {pair} changed owner inside one upsert")
        logger.info("Worker %s claimed %s", worker_id, pair)
        return ClaimResult(outcome=ClaimOutcome.ACQUIRED, claim=claim, current_owner=worker_id)

    @retry_transient
    def renew(
        self,
        project_id: str,
        user_id: str,
        worker_id: str,
        claim_token: str | None = None,
    ) -> bool:
        """Extend the lease; False means the caller is no longer the live owner."""

        pair = Pair(project_id, user_id)
        now = self._clock()
        conditions = [
            col(OwnershipClaimRow.project_id) == project_id,
            col(OwnershipClaimRow.user_id) == user_id,
            col(OwnershipClaimRow.owner_id) == worker_id,
            col(OwnershipClaimRow.released_at).is_(None),
            col(OwnershipClaimRow.lease_expires_at) > to_db_datetime(now),
        ]
        if claim_token is not None:
            conditions.append(col(OwnershipClaimRow.claim_token) == claim_token)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(OwnershipClaimRow)
                .where(*conditions)
                .values(
                    renewed_at=to_db_datetime(now),
                    lease_expires_at=to_db_datetime(now + timedelta(seconds=self.lease_seconds)),
                ),
            )
            if result.rowcount == 1:
                session.commit()
                return True
            session.rollback()

            self._add_event(
                session=session,
                pair=pair,
                event_type="renew_failed",
                worker_id=worker_id,
                details={},
            )
            session.commit()
        logger.warning("Worker %s failed to renew claim on %s", worker_id, pair)
        return False

    @retry_transient
    def release(
        self,
        project_id: str,
        user_id: str,
        worker_id: str,
        claim_token: str | None = None,
    ) -> bool:
        """Mark the claim released if the caller still holds it."""

        pair = Pair(project_id, user_id)
        now = self._clock()
        conditions = [
            col(OwnershipClaimRow.project_id) == project_id,
            col(OwnershipClaimRow.user_id) == user_id,
            col(OwnershipClaimRow.owner_id) == worker_id,
            col(OwnershipClaimRow.released_at).is_(None),
        ]
        if claim_token is not None:
            conditions.append(col(OwnershipClaimRow.claim_token) == claim_token)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(OwnershipClaimRow)
                .where(*conditions)
                .values(
                    released_at=to_db_datetime(now),
                    lease_expires_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                pair=pair,
                event_type="released",
                worker_id=worker_id,
                details={},
            )
            session.commit()
        logger.info("Worker %s released %s", worker_id, pair)
        return True

    def is_owned_by(self, project_id: str, user_id: str, worker_id: str) -> bool:
        claim = self.current_claim(project_id, user_id)
        return claim is not None and claim.owner_id == worker_id

    def current_claim(self, project_id: str, user_id: str) -> OwnershipClaim | None:
        """Return the live claim of the pair, or None when unowned."""

        now = self._clock()
        with Session(self.engine) as session:
            row = session.exec(
                select(OwnershipClaimRow).where(
                    OwnershipClaimRow.project_id == project_id,
                    OwnershipClaimRow.user_id == user_id,
                ),
            ).one_or_none()
        if row is None:
            return None
        claim = _to_claim_view(row)
        return claim if claim.is_live(now) else None

    def list_claims(self, *, include_inactive: bool = False) -> list[OwnershipClaim]:
        now = self._clock()
        with Session(self.engine) as session:
            rows = session.exec(
                select(OwnershipClaimRow).order_by(
                    col(OwnershipClaimRow.project_id).asc(),
                    col(OwnershipClaimRow.user_id).asc(),
                ),
            ).all()
        claims = [_to_claim_view(row) for row in rows]
        if include_inactive:
            return claims
        return [claim for claim in claims if claim.is_live(now)]

    @retry_transient
    def record_event(
        self,
        pair: Pair,
        event_type: str,
        *,
        worker_id: str | None = None,
        correlation_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append one audit event for the pair."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                pair=pair,
                event_type=event_type,
                worker_id=worker_id,
                correlation_id=correlation_id,
                details=details or {},
            )
            session.commit()

    def list_pair_events(self, pair: Pair, *, limit: int = 50) -> list[PairEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PairEventRow)
                .where(
                    PairEventRow.project_id == pair.project_id,
                    PairEventRow.user_id == pair.user_id,
                )
                .order_by(col(PairEventRow.id).desc())
                .limit(limit),
            ).all()
        return [
            PairEventView(
                event_id=row.id or 0,
                project_id=row.project_id,
                user_id=row.user_id,
                event_type=row.event_type,
                worker_id=row.worker_id,
                correlation_id=row.correlation_id,
                details=json.loads(row.details_json) if row.details_json else {},
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in reversed(rows)
        ]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        pair: Pair,
        event_type: str,
        worker_id: str | None,
        details: dict[str, object],
        correlation_id: str | None = None,
    ) -> None:
        session.add(
            PairEventRow(
                project_id=pair.project_id,
                user_id=pair.user_id,
                event_type=event_type,
                worker_id=worker_id,
                correlation_id=correlation_id,
                details_json=dump_details(details),
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _to_claim_view(row: OwnershipClaimRow) -> OwnershipClaim:
    return OwnershipClaim(
        project_id=row.project_id,
        user_id=row.user_id,
        owner_id=row.owner_id,
        claim_token=row.claim_token,
        source_ref=row.source_ref,
        input_queue_ref=row.input_queue_ref,
        output_queue_ref=row.output_queue_ref,
        claimed_at=to_utc_aware_datetime(row.claimed_at),
        renewed_at=to_utc_aware_datetime(row.renewed_at),
        lease_expires_at=to_utc_aware_datetime(row.lease_expires_at),
        released_at=(
            to_utc_aware_datetime(row.released_at) if row.released_at is not None else None
        ),
    )
