from __future__ import annotations

import allure
import pytest
from conftest import ManualClock, inbound_payload

from edit_relay.config import ResponseSettings, ThreadSettings
from edit_relay.dispatch import Dispatcher, DispatchStatus
from edit_relay.errors import ErrorKind
from edit_relay.ledger import RequestLedger
from edit_relay.messages import ClaimRequest, ResponseMessage, WorkMessage
from edit_relay.models import Pair
from edit_relay.ownership import OwnershipRegistry
from edit_relay.queues import DEAD_LETTER_QUEUE, UNCLAIMED_QUEUE, QueueBroker
from edit_relay.responses import QueueTransport, ResponseEmitter
from edit_relay.storage.database import RelayDatabase
from edit_relay.threads import ThreadResolver, ThreadStore

pytestmark = [
    allure.epic("Routing"),
    allure.feature("Dispatcher"),
]

SITE_REPO = "https://git.example.com/sites/site1.git"


class _Stack:
    def __init__(self, database: RelayDatabase, clock: ManualClock) -> None:
        self.clock = clock
        self.broker = QueueBroker(database.engine, clock=clock)
        self.registry = OwnershipRegistry(database.engine, lease_seconds=60, clock=clock)
        self.ledger = RequestLedger(database.engine, clock=clock)
        self.resolver = ThreadResolver(
            ThreadStore(database.engine),
            ThreadSettings(token_domain="relay.test"),
            clock=clock,
        )
        self.emitter = ResponseEmitter(
            transports=[QueueTransport(self.broker)],
            broker=self.broker,
            settings=ResponseSettings(max_attempts=1),
        )
        self.dispatcher = Dispatcher(
            broker=self.broker,
            registry=self.registry,
            resolver=self.resolver,
            ledger=self.ledger,
            emitter=self.emitter,
            claim_deadline_seconds=300,
            clock=clock,
        )


@pytest.fixture()
def stack(database: RelayDatabase, clock: ManualClock):
    stack = _Stack(database, clock)
    stack.emitter.start()
    yield stack
    stack.emitter.stop(timeout=5)


def test_dispatch_to_unowned_pair_enqueues_and_requests_claim(stack: _Stack) -> None:
    result = stack.dispatcher.dispatch(inbound_payload("m1", source_ref=SITE_REPO))

    assert result.status == DispatchStatus.ROUTED
    assert result.queue_name == "input-site1-alice"
    assert result.claim_requested
    assert result.owner_id is None

    work_message = stack.broker.receive("input-site1-alice")
    assert work_message is not None
    work = WorkMessage.from_payload(work_message.body)
    assert work.correlation_id == "m1"
    assert work.thread_id == result.thread_id
    assert work.branch_name == f"thread-{result.thread_id}"

    claim_message = stack.broker.receive(UNCLAIMED_QUEUE)
    assert claim_message is not None
    request = ClaimRequest.from_payload(claim_message.body)
    assert (request.project_id, request.user_id) == ("site1", "alice")
    assert request.source_ref == SITE_REPO
    assert work.source_ref == SITE_REPO


def test_dispatch_to_owned_pair_uses_claim_binding_without_claim_request(
    stack: _Stack,
) -> None:
    stack.registry.try_claim("site1", "alice", "worker-a")

    result = stack.dispatcher.dispatch(inbound_payload("m1"))

    assert result.owner_id == "worker-a"
    assert not result.claim_requested
    assert stack.broker.count_pending(UNCLAIMED_QUEUE) == 0
    assert stack.broker.count_pending("input-site1-alice") == 1


def test_repeated_dispatches_keep_one_pending_claim_request(stack: _Stack) -> None:
    first = stack.dispatcher.dispatch(inbound_payload("m1"))
    second = stack.dispatcher.dispatch(inbound_payload("m2", subject="Footer"))

    assert first.claim_requested
    assert not second.claim_requested
    assert stack.broker.count_pending(UNCLAIMED_QUEUE) == 1
    assert stack.broker.count_pending("input-site1-alice") == 2


def test_redelivered_inbound_is_deduplicated(stack: _Stack) -> None:
    stack.dispatcher.dispatch(inbound_payload("m1"))

    again = stack.dispatcher.dispatch(inbound_payload("m1"))

    assert again.status == DispatchStatus.DUPLICATE
    assert stack.broker.count_pending("input-site1-alice") == 1


def test_already_processed_inbound_is_answered_again_without_enqueue(stack: _Stack) -> None:
    stack.ledger.record(
        ResponseMessage(
            correlation_id="m1",
            success=True,
            summary="done",
            project_id="site1",
            user_id="alice",
        ),
    )

    result = stack.dispatcher.dispatch(inbound_payload("m1"))

    assert result.status == DispatchStatus.ALREADY_PROCESSED
    assert stack.broker.count_pending("input-site1-alice") == 0
    resent = stack.broker.list_messages("output-site1-alice")
    assert len(resent) == 1
    assert ResponseMessage.from_payload(resent[0].body).summary == "done"


def test_malformed_inbound_goes_to_dead_letter(stack: _Stack) -> None:
    payload = inbound_payload("m1", project_id="bad project")

    result = stack.dispatcher.dispatch(payload)

    assert result.status == DispatchStatus.DEAD_LETTERED
    dead = stack.broker.list_messages(DEAD_LETTER_QUEUE)
    assert len(dead) == 1
    assert dead[0].body["source_queue"] == "inbound"
    assert dead[0].body["payload"] == payload
    assert dead[0].dead_reason is not None
    assert dead[0].dead_reason.startswith("malformed_message")


def test_body_marker_is_stripped_from_instruction(stack: _Stack) -> None:
    first = stack.dispatcher.dispatch(inbound_payload("m1", subject=""))
    stack.dispatcher.dispatch(
        inbound_payload("m2", subject="", body=f"Now the footer [thread:{first.thread_id}]"),
    )

    first_message = stack.broker.receive("input-site1-alice")
    assert first_message is not None
    assert stack.broker.ack(first_message)
    second = stack.broker.receive("input-site1-alice")
    assert second is not None
    work = WorkMessage.from_payload(second.body)
    assert work.thread_id == first.thread_id
    assert work.instruction == "Now the footer"


def test_reconcile_reraises_claim_request_for_stranded_pair(stack: _Stack) -> None:
    stack.dispatcher.dispatch(inbound_payload("m1", source_ref=SITE_REPO))
    lost = stack.broker.receive(UNCLAIMED_QUEUE)
    assert lost is not None
    stack.broker.ack(lost)

    summary = stack.dispatcher.reconcile()

    assert summary.claim_requests == 1
    assert summary.escalated_messages == 0
    assert stack.broker.count_pending(UNCLAIMED_QUEUE) == 1
    reraised = stack.broker.receive(UNCLAIMED_QUEUE)
    assert reraised is not None
    assert ClaimRequest.from_payload(reraised.body).source_ref == SITE_REPO


def test_reconcile_skips_owned_pairs(stack: _Stack) -> None:
    stack.dispatcher.dispatch(inbound_payload("m1"))
    claim = stack.broker.receive(UNCLAIMED_QUEUE)
    assert claim is not None
    stack.broker.ack(claim)
    stack.registry.try_claim("site1", "alice", "worker-a")

    summary = stack.dispatcher.reconcile()

    assert summary.claim_requests == 0
    assert summary.escalated_messages == 0


def test_reconcile_escalates_unclaimed_work_past_deadline(stack: _Stack) -> None:
    stack.dispatcher.dispatch(inbound_payload("m1"))
    stack.dispatcher.dispatch(inbound_payload("m2", subject="Footer"))
    stack.clock.advance(301)

    summary = stack.dispatcher.reconcile()

    assert summary.escalated_messages == 2
    assert summary.escalated_pairs == ["site1/alice"]
    assert stack.broker.count_pending("input-site1-alice") == 0
    recorded = stack.ledger.get("m1")
    assert recorded is not None
    assert not recorded.success
    assert recorded.error_kind == ErrorKind.UNCLAIMED_TIMEOUT
    assert recorded.continuity_token is not None
    assert recorded.continuity_token.endswith("@relay.test>")

    assert stack.emitter.flush(timeout=5)
    responses = stack.broker.list_messages("output-site1-alice")
    assert {message.body["correlation_id"] for message in responses} == {"m1", "m2"}
    events = stack.registry.list_pair_events(Pair("site1", "alice"))
    assert events[-1].event_type == "dead_lettered"
