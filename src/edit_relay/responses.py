"""Asynchronous response delivery with retry, backoff and dead-lettering."""

from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from edit_relay.config import ResponseSettings
from edit_relay.messages import ResponseMessage
from edit_relay.queues import QueueBroker

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "edit-relay/0.1 (+response-webhook)"


class ResponseDeliveryError(RuntimeError):
    """Transport failed to hand over a response."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ResponseTransport(Protocol):
    """Protocol implemented by response transports.

    ``inline`` transports are attempted inside ``send`` so the response is
    durable before the caller acks the request; the rest go through the outbox.
    """

    name: str
    inline: bool

    def deliver(self, response: ResponseMessage, destination: str) -> None:
        """Deliver one response or raise ResponseDeliveryError."""


class QueueTransport:
    """Publish responses on the pair output queue."""

    name = "queue"
    inline = True

    def __init__(self, broker: QueueBroker) -> None:
        self.broker = broker

    def deliver(self, response: ResponseMessage, destination: str) -> None:
        self.broker.send(
            destination,
            response.to_payload(),
            dedup_key=response.correlation_id,
        )


class WebhookTransport:
    """POST responses as JSON to an HTTP endpoint."""

    name = "webhook"
    inline = False

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
        )

    def deliver(self, response: ResponseMessage, destination: str) -> None:
        try:
            reply = self._client.post(
                self.url,
                json={"destination": destination, "response": response.to_payload()},
                headers={"Idempotency-Key": response.correlation_id},
            )
        except httpx.TimeoutException as error:
            raise ResponseDeliveryError(f"Timeout posting to {self.url}", transient=True) from error
        except httpx.HTTPError as error:
            raise ResponseDeliveryError(
                f"HTTP error posting to {self.url}: {error}",
                transient=True,
            ) from error
        if reply.is_success:
            return
        transient = reply.status_code == 429 or reply.status_code >= 500  # noqa: PLR2004
        raise ResponseDeliveryError(
            f"Webhook {self.url} answered HTTP {reply.status_code}",
            transient=transient,
        )

    def close(self) -> None:
        self._client.close()


@dataclass(slots=True, order=True)
class _Delivery:
    due_at: float
    sequence: int
    response: ResponseMessage = field(compare=False)
    destination: str = field(compare=False)
    transport: ResponseTransport = field(compare=False)
    attempt: int = field(default=0, compare=False)


class ResponseEmitter:
    """Outbox served by a background thread.

    ``send`` writes inline transports right away and only enqueues the rest,
    so pair runners never wait on remote endpoints. Each transport gets its
    own delivery with jittered exponential backoff; after ``max_attempts``
    failures the response is stored on the dead-letter queue.
    """

    def __init__(
        self,
        *,
        transports: list[ResponseTransport],
        broker: QueueBroker,
        settings: ResponseSettings,
    ) -> None:
        self.transports = transports
        self.broker = broker
        self.settings = settings
        self._random = random.Random()  # noqa: S311
        self._outbox: list[_Delivery] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._in_progress = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.delivered = 0
        self.dead_lettered = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="response-emitter",
        )
        self._thread.start()
        logger.info("Response emitter started with %d transport(s)", len(self.transports))

    def stop(self, *, timeout: float = 15.0) -> None:
        """Drain what is due within the timeout, then stop the thread.

        Deliveries still waiting for a retry are dead-lettered, never dropped.
        """

        if self._thread is not None:
            self.flush(timeout=timeout)
            self._stop.set()
            with self._condition:
                self._condition.notify_all()
            self._thread.join(timeout=timeout)
            self._thread = None
        self._abandon_outbox()
        for transport in self.transports:
            close = getattr(transport, "close", None)
            if close is not None:
                close()
        logger.info("Response emitter stopped")

    def send(self, response: ResponseMessage, destination: str) -> None:
        now = time.monotonic()
        inline: list[_Delivery] = []
        with self._condition:
            for transport in self.transports:
                delivery = _Delivery(
                    due_at=now,
                    sequence=next(self._sequence),
                    response=response,
                    destination=destination,
                    transport=transport,
                )
                if transport.inline:
                    self._in_progress += 1
                    inline.append(delivery)
                else:
                    heapq.heappush(self._outbox, delivery)
            self._condition.notify_all()
        for delivery in inline:
            try:
                self._attempt(delivery)
            finally:
                with self._condition:
                    self._in_progress -= 1
                    self._condition.notify_all()

    def pending(self) -> int:
        with self._condition:
            return len(self._outbox) + self._in_progress

    def flush(self, *, timeout: float = 10.0) -> bool:
        """Wait until the outbox is empty; False on timeout."""

        deadline = time.monotonic() + timeout
        with self._condition:
            while self._outbox or self._in_progress:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(timeout=min(remaining, 0.1))
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            delivery = self._next_due()
            if delivery is None:
                continue
            try:
                self._attempt(delivery)
            except Exception:
                logger.exception("Response emitter error")
            finally:
                with self._condition:
                    self._in_progress -= 1
                    self._condition.notify_all()

    def _next_due(self) -> _Delivery | None:
        with self._condition:
            if not self._outbox:
                self._condition.wait(timeout=0.5)
                return None
            wait_seconds = self._outbox[0].due_at - time.monotonic()
            if wait_seconds > 0:
                self._condition.wait(timeout=min(wait_seconds, 0.5))
                return None
            self._in_progress += 1
            return heapq.heappop(self._outbox)

    def _attempt(self, delivery: _Delivery) -> None:
        delivery.attempt += 1
        try:
            delivery.transport.deliver(delivery.response, delivery.destination)
        except ResponseDeliveryError as error:
            self._handle_failure(delivery, str(error), transient=error.transient)
            return
        except Exception as error:
            logger.exception("Unexpected %s transport failure", delivery.transport.name)
            self._handle_failure(delivery, repr(error), transient=True)
            return
        self.delivered += 1
        logger.debug(
            "Delivered response %s via %s (attempt %d)",
            delivery.response.correlation_id,
            delivery.transport.name,
            delivery.attempt,
        )

    def _handle_failure(self, delivery: _Delivery, reason: str, *, transient: bool) -> None:
        if transient and delivery.attempt < self.settings.max_attempts:
            delay = self._compute_retry_delay(retry_number=delivery.attempt)
            logger.warning(
                "Response %s via %s failed (attempt %d/%d), retrying in %.1fs: %s",
                delivery.response.correlation_id,
                delivery.transport.name,
                delivery.attempt,
                self.settings.max_attempts,
                delay,
                reason,
            )
            with self._condition:
                delivery.due_at = time.monotonic() + delay
                delivery.sequence = next(self._sequence)
                heapq.heappush(self._outbox, delivery)
                self._condition.notify_all()
            return

        logger.error(
            "Response %s via %s dead-lettered after %d attempt(s): %s",
            delivery.response.correlation_id,
            delivery.transport.name,
            delivery.attempt,
            reason,
        )
        self._dead_letter(delivery, reason=f"response_delivery_failed: {reason}")

    def _abandon_outbox(self) -> None:
        with self._condition:
            abandoned = sorted(self._outbox)
            self._outbox.clear()
        for delivery in abandoned:
            logger.error(
                "Response %s via %s still undelivered at shutdown after %d attempt(s)",
                delivery.response.correlation_id,
                delivery.transport.name,
                delivery.attempt,
            )
            self._dead_letter(delivery, reason="response_delivery_aborted")

    def _dead_letter(self, delivery: _Delivery, *, reason: str) -> None:
        self.broker.dead_letter_raw(
            {
                "transport": delivery.transport.name,
                "destination": delivery.destination,
                "attempts": delivery.attempt,
                "response": delivery.response.to_payload(),
            },
            reason=reason,
            source_queue=delivery.destination,
        )
        self.dead_lettered += 1

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.settings.backoff_max_seconds,
            self.settings.backoff_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)


def build_transports(
    *,
    broker: QueueBroker,
    settings: ResponseSettings,
) -> list[ResponseTransport]:
    transports: list[ResponseTransport] = [QueueTransport(broker)]
    if settings.webhook_url:
        transports.append(
            WebhookTransport(
                settings.webhook_url,
                timeout_seconds=settings.request_timeout_seconds,
            ),
        )
    return transports
