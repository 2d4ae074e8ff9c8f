from __future__ import annotations

import allure
import httpx
import pytest

from edit_relay.config import ResponseSettings
from edit_relay.errors import ErrorKind
from edit_relay.messages import ResponseMessage
from edit_relay.queues import DEAD_LETTER_QUEUE, QueueBroker
from edit_relay.responses import (
    QueueTransport,
    ResponseEmitter,
    WebhookTransport,
    build_transports,
)
from edit_relay.storage.database import RelayDatabase

pytestmark = [
    allure.epic("Routing"),
    allure.feature("Response Delivery"),
]

WEBHOOK_URL = "https://hooks.example/relay"


def _response(correlation_id: str = "m1") -> ResponseMessage:
    return ResponseMessage(
        correlation_id=correlation_id,
        success=False,
        summary="npm run build exited 1",
        project_id="site1",
        user_id="alice",
        thread_id="abc12345",
        error_kind=ErrorKind.BUILD_FAILURE,
    )


def _settings(max_attempts: int = 3) -> ResponseSettings:
    return ResponseSettings(
        max_attempts=max_attempts,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
    )


class _Recorder:
    def __init__(self, statuses: list[int]) -> None:
        self.statuses = statuses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses[min(len(self.requests), len(self.statuses)) - 1]
        return httpx.Response(status, json={"ok": status < 400})


def _webhook(recorder: _Recorder) -> WebhookTransport:
    return WebhookTransport(
        WEBHOOK_URL,
        client=httpx.Client(transport=httpx.MockTransport(recorder)),
    )


@pytest.fixture()
def broker(database: RelayDatabase) -> QueueBroker:
    return QueueBroker(database.engine)


def _run(emitter: ResponseEmitter, response: ResponseMessage) -> None:
    emitter.start()
    try:
        emitter.send(response, "output-site1-alice")
        assert emitter.flush(timeout=10)
    finally:
        emitter.stop(timeout=5)


def test_queue_transport_publishes_on_output_queue_once(broker: QueueBroker) -> None:
    emitter = ResponseEmitter(
        transports=[QueueTransport(broker)],
        broker=broker,
        settings=_settings(),
    )
    emitter.start()
    try:
        emitter.send(_response(), "output-site1-alice")
        emitter.send(_response(), "output-site1-alice")
        assert emitter.flush(timeout=10)
    finally:
        emitter.stop(timeout=5)

    messages = broker.list_messages("output-site1-alice")
    assert len(messages) == 1
    assert ResponseMessage.from_payload(messages[0].body).error_kind == ErrorKind.BUILD_FAILURE
    assert emitter.delivered == 2


def test_webhook_retries_transient_failures(broker: QueueBroker) -> None:
    recorder = _Recorder([500, 503, 200])
    emitter = ResponseEmitter(transports=[_webhook(recorder)], broker=broker, settings=_settings())

    _run(emitter, _response())

    assert len(recorder.requests) == 3
    assert emitter.delivered == 1
    assert emitter.dead_lettered == 0
    request = recorder.requests[-1]
    assert request.headers["Idempotency-Key"] == "m1"
    assert request.url == WEBHOOK_URL


def test_webhook_client_error_is_dead_lettered_without_retry(broker: QueueBroker) -> None:
    recorder = _Recorder([400])
    emitter = ResponseEmitter(transports=[_webhook(recorder)], broker=broker, settings=_settings())

    _run(emitter, _response())

    assert len(recorder.requests) == 1
    assert emitter.dead_lettered == 1
    dead = broker.list_messages(DEAD_LETTER_QUEUE)
    assert len(dead) == 1
    assert dead[0].body["source_queue"] == "output-site1-alice"
    assert dead[0].body["payload"]["transport"] == "webhook"
    assert dead[0].body["payload"]["response"]["correlation_id"] == "m1"
    assert dead[0].dead_reason is not None
    assert "HTTP 400" in dead[0].dead_reason


def test_webhook_gives_up_after_max_attempts(broker: QueueBroker) -> None:
    recorder = _Recorder([502])
    emitter = ResponseEmitter(
        transports=[_webhook(recorder)],
        broker=broker,
        settings=_settings(max_attempts=2),
    )

    _run(emitter, _response())

    assert len(recorder.requests) == 2
    assert emitter.dead_lettered == 1
    assert broker.list_messages(DEAD_LETTER_QUEUE)[0].body["payload"]["attempts"] == 2


def test_each_transport_is_delivered_independently(broker: QueueBroker) -> None:
    recorder = _Recorder([400])
    emitter = ResponseEmitter(
        transports=[QueueTransport(broker), _webhook(recorder)],
        broker=broker,
        settings=_settings(),
    )

    _run(emitter, _response())

    assert len(broker.list_messages("output-site1-alice")) == 1
    assert emitter.delivered == 1
    assert emitter.dead_lettered == 1


def test_build_transports_adds_webhook_when_configured(broker: QueueBroker) -> None:
    default = build_transports(broker=broker, settings=ResponseSettings())
    assert [transport.name for transport in default] == ["queue"]

    transports = build_transports(broker=broker, settings=ResponseSettings(webhook_url=WEBHOOK_URL))

    assert [transport.name for transport in transports] == ["queue", "webhook"]
    transports[1].close()  # type: ignore[attr-defined]


def test_queue_transport_writes_before_send_returns(broker: QueueBroker) -> None:
    emitter = ResponseEmitter(
        transports=[QueueTransport(broker)],
        broker=broker,
        settings=_settings(),
    )

    emitter.send(_response(), "output-site1-alice")

    assert len(broker.list_messages("output-site1-alice")) == 1
    assert emitter.pending() == 0


def test_stop_dead_letters_responses_still_waiting_for_retry(broker: QueueBroker) -> None:
    recorder = _Recorder([503])
    emitter = ResponseEmitter(
        transports=[_webhook(recorder)],
        broker=broker,
        settings=ResponseSettings(
            max_attempts=10,
            backoff_base_seconds=5.0,
            backoff_max_seconds=60.0,
        ),
    )
    emitter.start()
    emitter.send(_response(), "output-site1-alice")

    emitter.stop(timeout=0.5)

    assert len(recorder.requests) >= 1
    assert emitter.pending() == 0
    dead = broker.list_messages(DEAD_LETTER_QUEUE)
    assert len(dead) == 1
    assert dead[0].dead_reason == "response_delivery_aborted"
    assert dead[0].body["payload"]["transport"] == "webhook"
    assert dead[0].body["payload"]["response"]["correlation_id"] == "m1"
