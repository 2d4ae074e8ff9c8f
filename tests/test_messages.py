from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest
from conftest import inbound_payload

from edit_relay.errors import ErrorKind, MalformedMessageError
from edit_relay.messages import (
    MAX_INSTRUCTION_CHARS,
    ClaimRequest,
    ResponseMessage,
    WorkMessage,
    failure_response,
    parse_inbound,
)

pytestmark = [
    allure.epic("Routing"),
    allure.feature("Message Contracts"),
]


def test_parse_inbound_normalizes_identity_fields() -> None:
    payload = inbound_payload(
        "<m1@mail.example>",
        project_id=" Site1 ",
        user_id="Alice",
        sender="Alice@Example.COM",
        references=["<a@x>", "<b@x>"],
    )
    payload["received_at"] = "2026-10-18T09:30:00+02:00"

    message = parse_inbound(payload)

    assert message.correlation_id == "<m1@mail.example>"
    assert (message.project_id, message.user_id) == ("site1", "alice")
    assert message.origin_address == "alice@example.com"
    assert message.instruction == "Make the header blue"
    assert message.references == ("<a@x>", "<b@x>")
    assert message.received_at == datetime(2026, 10, 18, 7, 30, tzinfo=UTC)


def test_parse_inbound_prefers_explicit_instruction_and_splits_reference_string() -> None:
    payload = inbound_payload("m1", body="Hi,\n\nsee below", references=None)
    payload["instruction"] = "Add a contact form"
    payload["references"] = "<a@x> <b@x>"

    message = parse_inbound(payload)

    assert message.instruction == "Add a contact form"
    assert message.body == "Hi,\n\nsee below"
    assert message.references == ("<a@x>", "<b@x>")


@pytest.mark.parametrize(
    ("mutate", "reason"),
    [
        (lambda payload: payload.pop("message_id"), "message_id"),
        (lambda payload: payload.update({"from": "not-an-address"}), "from"),
        (lambda payload: payload.update({"project_id": "site-1"}), "project_id"),
        (lambda payload: payload.update({"user_id": ""}), "user_id"),
        (lambda payload: payload.update({"body": "   "}), "empty instruction"),
        (lambda payload: payload.update({"references": [1, 2]}), "references"),
        (lambda payload: payload.update({"received_at": "yesterday"}), "received_at"),
        (
            lambda payload: payload.update({"body": "x" * (MAX_INSTRUCTION_CHARS + 1)}),
            "exceeds",
        ),
    ],
)
def test_parse_inbound_rejects_contract_violations(mutate, reason: str) -> None:
    payload = inbound_payload("m1")
    mutate(payload)

    with pytest.raises(MalformedMessageError, match=reason) as error:
        parse_inbound(payload)

    assert error.value.kind == ErrorKind.MALFORMED_MESSAGE


def test_parse_inbound_rejects_non_objects() -> None:
    with pytest.raises(MalformedMessageError):
        parse_inbound(["not", "an", "object"])


def test_work_message_payload_round_trip() -> None:
    work = WorkMessage(
        correlation_id="m1",
        thread_id="abc12345",
        branch_name="thread-abc12345",
        project_id="site1",
        user_id="alice",
        instruction="Make the header blue",
        origin_address="alice@example.com",
        source_ref="imap:1",
        received_at=datetime(2026, 10, 18, 12, 0, tzinfo=UTC),
    )

    payload = work.to_payload()

    assert payload["type"] == "work"
    assert WorkMessage.from_payload(payload) == work
    with pytest.raises(MalformedMessageError, match="expected message type"):
        ClaimRequest.from_payload(payload)


def test_failure_response_carries_error_kind_and_thread() -> None:
    work = WorkMessage(
        correlation_id="m1",
        thread_id="abc12345",
        branch_name="thread-abc12345",
        project_id="site1",
        user_id="alice",
        instruction="Make the header blue",
        origin_address="alice@example.com",
        source_ref="",
        received_at=datetime(2026, 10, 18, 12, 0, tzinfo=UTC),
    )

    response = failure_response(
        work,
        error_kind=ErrorKind.BUILD_FAILURE,
        summary="npm run build exited 1",
        continuity_token="<thread-abc12345@edit-relay.local>",
    )
    payload = response.to_payload()

    assert not response.success
    assert payload["error_kind"] == "build_failure"
    assert ResponseMessage.from_payload(payload) == response
