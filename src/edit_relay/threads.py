"""Thread continuity: map inbound messages onto persistent conversation threads."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from difflib import SequenceMatcher
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from edit_relay.config import ThreadSettings
from edit_relay.messages import InboundMessage
from edit_relay.models import (
    Pair,
    ResolvedThread,
    Thread,
    ThreadMatch,
    ThreadMatchSource,
)
from edit_relay.retry import retry_transient
from edit_relay.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from edit_relay.storage.sqlmodel_models import ThreadRow

logger = logging.getLogger(__name__)

_THREAD_ID = r"[A-Za-z0-9]{8,64}"
_CONTINUITY_TOKEN_RE = re.compile(
    rf"<?thread-(?P<thread_id>{_THREAD_ID})(?:@(?P<domain>[^>\s]+))?>?",
)
_BODY_MARKER_RE = re.compile(rf"\[thread:\s*(?:thread-)?(?P<thread_id>{_THREAD_ID})\s*\]")
_SUBJECT_PREFIX_RE = re.compile(r"^\s*(?:re|fwd?|aw|sv)(?:\[\d+\])?\s*:\s*", re.IGNORECASE)

STRUCTURED_CONFIDENCE = 1.0
EMBEDDED_CONFIDENCE = 0.9


def branch_name_for(thread_id: str) -> str:
    return f"thread-{thread_id}"


def format_continuity_token(thread_id: str, domain: str) -> str:
    """Message-ID style token that replies echo back in In-Reply-To/References."""

    return f"<thread-{thread_id}@{domain}>"


def format_body_marker(thread_id: str) -> str:
    return f"[thread:{thread_id}]"


def strip_body_marker(text: str) -> str:
    return _BODY_MARKER_RE.sub("", text).strip()


def normalize_subject(subject: str) -> str:
    """Drop reply/forward prefixes and collapse whitespace for comparison."""

    normalized = subject
    while True:
        stripped = _SUBJECT_PREFIX_RE.sub("", normalized, count=1)
        if stripped == normalized:
            break
        normalized = stripped
    return " ".join(normalized.split()).lower()


class ThreadStore:
    """Persistence for Thread rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, thread_id: str) -> Thread | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ThreadRow).where(ThreadRow.thread_id == thread_id),
            ).one_or_none()
        return _to_thread(row) if row is not None else None

    @retry_transient
    def create(self, message: InboundMessage, *, now: datetime) -> Thread:
        thread_id = uuid4().hex
        row = ThreadRow(
            thread_id=thread_id,
            origin_address=message.origin_address,
            project_id=message.project_id,
            user_id=message.user_id,
            branch_name=branch_name_for(thread_id),
            subject=normalize_subject(message.subject),
            created_at=to_db_datetime(now),
            last_activity_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_thread(row)

    @retry_transient
    def touch(self, thread_id: str, *, now: datetime) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(ThreadRow)
                .where(col(ThreadRow.thread_id) == thread_id)
                .values(last_activity_at=to_db_datetime(now)),
            )
            session.commit()

    def recent_for_origin(
        self,
        *,
        origin_address: str,
        pair: Pair,
        since: datetime,
    ) -> list[Thread]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ThreadRow)
                .where(
                    ThreadRow.origin_address == origin_address,
                    ThreadRow.project_id == pair.project_id,
                    ThreadRow.user_id == pair.user_id,
                    col(ThreadRow.last_activity_at) >= to_db_datetime(since),
                )
                .order_by(col(ThreadRow.last_activity_at).desc()),
            ).all()
        return [_to_thread(row) for row in rows]

    def list_threads(self, *, pair: Pair | None = None, limit: int = 50) -> list[Thread]:
        statement = select(ThreadRow)
        if pair is not None:
            statement = statement.where(
                ThreadRow.project_id == pair.project_id,
                ThreadRow.user_id == pair.user_id,
            )
        with Session(self.engine) as session:
            rows = session.exec(
                statement.order_by(col(ThreadRow.last_activity_at).desc()).limit(limit),
            ).all()
        return [_to_thread(row) for row in rows]


class ThreadResolver:
    """Ordered strategy chain; the first confident match wins.

    Low-confidence or ambiguous evidence never merges conversations: when no
    strategy matches, a new thread is created.
    """

    def __init__(
        self,
        store: ThreadStore,
        settings: ThreadSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._strategies: tuple[Callable[[InboundMessage], ThreadMatch | None], ...] = (
            self._match_structured,
            self._match_embedded,
            self._match_heuristic,
        )

    def resolve(self, message: InboundMessage) -> ResolvedThread:
        now = self._clock()
        for strategy in self._strategies:
            match = strategy(message)
            if match is None:
                continue
            thread = self.store.get(match.thread_id)
            if thread is None:
                continue
            self.store.touch(thread.thread_id, now=now)
            thread.last_activity_at = now
            logger.debug(
                "Resolved %s to thread %s via %s (%.2f)",
                message.message_id,
                thread.thread_id,
                match.source.value,
                match.confidence,
            )
            return ResolvedThread(
                thread=thread,
                source=match.source,
                confidence=match.confidence,
                created=False,
            )

        thread = self.store.create(message, now=now)
        logger.info(
            "Started thread %s for %s/%s from %s",
            thread.thread_id,
            message.project_id,
            message.user_id,
            message.origin_address,
        )
        return ResolvedThread(
            thread=thread,
            source=ThreadMatchSource.NEW,
            confidence=1.0,
            created=True,
        )

    def continuity_token(self, thread_id: str) -> str:
        return format_continuity_token(thread_id, self.settings.token_domain)

    def _match_structured(self, message: InboundMessage) -> ThreadMatch | None:
        headers: list[str] = []
        if message.in_reply_to:
            headers.append(message.in_reply_to)
        headers.extend(reversed(message.references))
        for thread_id in self._token_ids(headers):
            if self._belongs_to_pair(thread_id, message):
                return ThreadMatch(thread_id, ThreadMatchSource.STRUCTURED, STRUCTURED_CONFIDENCE)
        return None

    def _match_embedded(self, message: InboundMessage) -> ThreadMatch | None:
        for text in (message.body, message.instruction):
            for match in _BODY_MARKER_RE.finditer(text):
                thread_id = match.group("thread_id")
                if self._belongs_to_pair(thread_id, message):
                    return ThreadMatch(thread_id, ThreadMatchSource.EMBEDDED, EMBEDDED_CONFIDENCE)
        return None

    def _match_heuristic(self, message: InboundMessage) -> ThreadMatch | None:
        subject = normalize_subject(message.subject)
        if not subject:
            return None
        since = self._clock() - timedelta(seconds=self.settings.heuristic_window_seconds)
        candidates = self.store.recent_for_origin(
            origin_address=message.origin_address,
            pair=Pair(message.project_id, message.user_id),
            since=since,
        )
        scored = sorted(
            (
                (SequenceMatcher(None, subject, candidate.subject).ratio(), candidate.thread_id)
                for candidate in candidates
                if candidate.subject
            ),
            reverse=True,
        )
        scored = [item for item in scored if item[0] >= self.settings.subject_similarity_threshold]
        if not scored:
            return None
        best_score, best_thread_id = scored[0]
        if len(scored) > 1 and best_score - scored[1][0] < self.settings.ambiguity_margin:
            logger.info(
                "Ambiguous subject match for %s (%.2f vs %.2f); starting a new thread",
                message.message_id,
                best_score,
                scored[1][0],
            )
            return None
        return ThreadMatch(best_thread_id, ThreadMatchSource.HEURISTIC, best_score)

    def _token_ids(self, headers: Iterable[str]) -> list[str]:
        found: list[str] = []
        for header in headers:
            for match in _CONTINUITY_TOKEN_RE.finditer(header):
                domain = match.group("domain")
                if domain is not None and domain.lower() != self.settings.token_domain.lower():
                    continue
                found.append(match.group("thread_id"))
        return found

    def _belongs_to_pair(self, thread_id: str, message: InboundMessage) -> bool:
        thread = self.store.get(thread_id)
        if thread is None:
            return False
        if thread.project_id != message.project_id or thread.user_id != message.user_id:
            logger.warning(
                "Ignoring token for thread %s of %s/%s on message for %s/%s",
                thread_id,
                thread.project_id,
                thread.user_id,
                message.project_id,
                message.user_id,
            )
            return False
        return True


def _to_thread(row: ThreadRow) -> Thread:
    return Thread(
        thread_id=row.thread_id,
        origin_address=row.origin_address,
        project_id=row.project_id,
        user_id=row.user_id,
        branch_name=row.branch_name,
        subject=row.subject,
        created_at=to_utc_aware_datetime(row.created_at),
        last_activity_at=to_utc_aware_datetime(row.last_activity_at),
    )
