"""Route inbound requests to pair input queues and raise claim triggers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from edit_relay.errors import ErrorKind, MalformedMessageError
from edit_relay.ledger import RequestLedger
from edit_relay.messages import (
    ClaimRequest,
    InboundMessage,
    WorkMessage,
    failure_response,
    parse_inbound,
)
from edit_relay.models import Pair
from edit_relay.ownership import OwnershipRegistry
from edit_relay.queues import (
    INPUT_QUEUE_PREFIX,
    UNCLAIMED_QUEUE,
    QueueBroker,
    input_queue_name,
    output_queue_name,
    pair_from_input_queue,
)
from edit_relay.responses import ResponseEmitter
from edit_relay.storage.common import utc_now
from edit_relay.threads import ThreadResolver, strip_body_marker

logger = logging.getLogger(__name__)

INBOUND_SOURCE = "inbound"


class DispatchStatus(str, Enum):
    ROUTED = "routed"
    DUPLICATE = "duplicate"
    ALREADY_PROCESSED = "already_processed"
    DEAD_LETTERED = "dead_lettered"


@dataclass(slots=True)
class DispatchResult:
    """What happened to one inbound message."""

    status: DispatchStatus
    correlation_id: str | None = None
    thread_id: str | None = None
    queue_name: str | None = None
    owner_id: str | None = None
    claim_requested: bool = False
    error: str | None = None


@dataclass(slots=True)
class ReconcileSummary:
    claim_requests: int = 0
    escalated_messages: int = 0
    escalated_pairs: list[str] = field(default_factory=list)


def send_claim_request(
    broker: QueueBroker,
    pair: Pair,
    *,
    source_ref: str,
    now: datetime,
) -> bool:
    """Raise a claim trigger; at most one per pair is pending at a time."""

    message_id = broker.send(
        UNCLAIMED_QUEUE,
        ClaimRequest(
            project_id=pair.project_id,
            user_id=pair.user_id,
            source_ref=source_ref,
            requested_at=now,
        ).to_payload(),
        dedup_key=pair.key,
    )
    return message_id is not None


def pending_source_ref(broker: QueueBroker, queue_name: str) -> str:
    """Source location named by the oldest pending work message, or "" if none."""

    for message in broker.list_messages(queue_name, limit=1):
        try:
            return WorkMessage.from_payload(message.body).source_ref
        except MalformedMessageError:
            return ""
    return ""


class Dispatcher:
    """Validates, resolves the thread, enqueues, then ensures someone will claim."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: QueueBroker,
        registry: OwnershipRegistry,
        resolver: ThreadResolver,
        ledger: RequestLedger,
        emitter: ResponseEmitter | None = None,
        claim_deadline_seconds: int = 900,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.broker = broker
        self.registry = registry
        self.resolver = resolver
        self.ledger = ledger
        self.emitter = emitter
        self.claim_deadline_seconds = claim_deadline_seconds
        self._clock = clock

    def dispatch(self, payload: object) -> DispatchResult:
        """Route one inbound message; malformed payloads land on dead-letter."""

        if isinstance(payload, InboundMessage):
            message = payload
        else:
            try:
                message = parse_inbound(payload)
            except MalformedMessageError as error:
                self.broker.dead_letter_raw(
                    payload,
                    reason=f"{ErrorKind.MALFORMED_MESSAGE.value}: {error}",
                    source_queue=INBOUND_SOURCE,
                )
                logger.warning("Dead-lettered malformed inbound message: %s", error)
                return DispatchResult(status=DispatchStatus.DEAD_LETTERED, error=str(error))

        stored = self.ledger.get(message.correlation_id)
        if stored is not None:
            logger.info(
                "Inbound %s was already processed; re-sending its response",
                message.correlation_id,
            )
            if self.emitter is not None:
                self.emitter.send(
                    stored,
                    output_queue_name(Pair(message.project_id, message.user_id)),
                )
            return DispatchResult(
                status=DispatchStatus.ALREADY_PROCESSED,
                correlation_id=message.correlation_id,
            )

        resolved = self.resolver.resolve(message)
        thread = resolved.thread
        pair = Pair(message.project_id, message.user_id)
        work = WorkMessage(
            correlation_id=message.correlation_id,
            thread_id=thread.thread_id,
            branch_name=thread.branch_name,
            project_id=pair.project_id,
            user_id=pair.user_id,
            instruction=strip_body_marker(message.instruction) or message.instruction,
            origin_address=message.origin_address,
            source_ref=message.source_ref,
            received_at=message.received_at,
        )

        binding = self.registry.current_claim(pair.project_id, pair.user_id)
        queue_name = binding.input_queue_ref if binding is not None else input_queue_name(pair)
        message_id = self.broker.send(
            queue_name,
            work.to_payload(),
            dedup_key=work.correlation_id,
        )

        # The claim is checked after the enqueue: a release racing this call
        # either sees the message pending or we see the pair unowned.
        claim = self.registry.current_claim(pair.project_id, pair.user_id)
        claim_requested = False
        if claim is None:
            claim_requested = send_claim_request(
                self.broker,
                pair,
                source_ref=message.source_ref,
                now=self._clock(),
            )

        status = DispatchStatus.ROUTED if message_id is not None else DispatchStatus.DUPLICATE
        logger.info(
            "Dispatched %s to %s (thread %s via %s, owner=%s, status=%s)",
            work.correlation_id,
            queue_name,
            thread.thread_id,
            resolved.source.value,
            claim.owner_id if claim is not None else None,
            status.value,
        )
        return DispatchResult(
            status=status,
            correlation_id=work.correlation_id,
            thread_id=thread.thread_id,
            queue_name=queue_name,
            owner_id=claim.owner_id if claim is not None else None,
            claim_requested=claim_requested,
        )

    def reconcile(self, now: datetime | None = None) -> ReconcileSummary:
        """Re-raise claim triggers for stranded pairs; escalate the overdue ones."""

        current = now or self._clock()
        deadline = timedelta(seconds=self.claim_deadline_seconds)
        summary = ReconcileSummary()
        for queue_name, count, oldest in self.broker.pending_queues(prefix=INPUT_QUEUE_PREFIX):
            pair = pair_from_input_queue(queue_name)
            if pair is None:
                continue
            if self.registry.current_claim(pair.project_id, pair.user_id) is not None:
                continue

            if current - oldest >= deadline:
                moved = self._escalate(pair, queue_name)
                if moved:
                    summary.escalated_messages += moved
                    summary.escalated_pairs.append(pair.key)
                continue

            source_ref = pending_source_ref(self.broker, queue_name)
            if send_claim_request(self.broker, pair, source_ref=source_ref, now=current):
                summary.claim_requests += 1
                logger.info(
                    "Re-raised claim request for %s with %d pending message(s)",
                    pair,
                    count,
                )
        return summary

    def _escalate(self, pair: Pair, queue_name: str) -> int:
        moved = self.broker.dead_letter_pending(
            queue_name,
            reason=ErrorKind.UNCLAIMED_TIMEOUT.value,
        )
        for message in moved:
            try:
                work = WorkMessage.from_payload(message.body)
            except MalformedMessageError:
                logger.warning("Escalated message %s has no work payload", message.message_id)
                continue
            response = failure_response(
                work,
                error_kind=ErrorKind.UNCLAIMED_TIMEOUT,
                summary=(
                    f"No worker claimed {pair} within {self.claim_deadline_seconds}s; "
                    "the request was not processed."
                ),
                continuity_token=self.resolver.continuity_token(work.thread_id),
            )
            if self.ledger.record(response) and self.emitter is not None:
                self.emitter.send(response, output_queue_name(pair))
        if moved:
            self.registry.record_event(
                pair,
                "dead_lettered",
                details={"reason": ErrorKind.UNCLAIMED_TIMEOUT.value, "messages": len(moved)},
            )
            logger.error("Escalated %d unclaimed message(s) of %s to dead-letter", len(moved), pair)
        return len(moved)
