"""Generic worker loop and per-pair runners driving the pair state machine."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from edit_relay.commit_message import commit_body, commit_subject
from edit_relay.config import Settings
from edit_relay.deploy import DeploymentSink
from edit_relay.dispatch import Dispatcher, pending_source_ref, send_claim_request
from edit_relay.errors import (
    CommitFailureError,
    ErrorKind,
    LeaseLostError,
    MalformedMessageError,
    RelayError,
    SupersededError,
)
from edit_relay.ledger import RequestLedger
from edit_relay.messages import (
    ClaimRequest,
    ResponseMessage,
    WorkMessage,
    failure_response,
)
from edit_relay.models import ClaimContext, Pair, PairState, QueueMessage
from edit_relay.ownership import OwnershipRegistry
from edit_relay.queues import UNCLAIMED_QUEUE, QueueBroker
from edit_relay.responses import ResponseEmitter
from edit_relay.state_machine import PairStateMachine
from edit_relay.steps import (
    BuildRequest,
    EditRequest,
    Editor,
    SiteBuilder,
    StepCancelledError,
)
from edit_relay.storage.common import utc_now
from edit_relay.threads import format_continuity_token
from edit_relay.workspace import GitCommandError, GitWorkspace

logger = logging.getLogger(__name__)

CANCEL_SUPERSEDED = "superseded"
CANCEL_LEASE_LOST = "lease_lost"
CANCEL_SHUTDOWN = "shutdown"


class RequestOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    SKIPPED = "skipped"


class _ShutdownInterruptError(RuntimeError):
    """Worker is stopping without draining; the in-flight request goes back to the queue."""


@dataclass(slots=True)
class RuntimeServices:
    """Collaborators shared by the worker and all of its pair runners."""

    broker: QueueBroker
    registry: OwnershipRegistry
    ledger: RequestLedger
    emitter: ResponseEmitter
    editor: Editor
    builder: SiteBuilder
    sink: DeploymentSink
    workspace_factory: Callable[[Pair, str], GitWorkspace]
    token_domain: str = "edit-relay.local"
    clock: Callable[[], datetime] = utc_now


@dataclass(slots=True)
class RunnerTimings:
    """Timers and intervals of one pair runner, in seconds."""

    renew_interval_seconds: float = 60.0
    visibility_timeout_seconds: int = 300
    poll_interval_seconds: float = 1.0
    idle_timeout_seconds: float = 300.0
    release_timeout_seconds: float = 1_800.0
    graceful_shutdown_seconds: float = 10.0
    monitor_interval_seconds: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> RunnerTimings:
        return cls(
            renew_interval_seconds=settings.claims.renew_interval_seconds,
            visibility_timeout_seconds=settings.queues.visibility_timeout_seconds,
            poll_interval_seconds=settings.queues.poll_interval_seconds,
            idle_timeout_seconds=settings.worker.idle_timeout_seconds,
            release_timeout_seconds=settings.worker.release_timeout_seconds,
            graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
            monitor_interval_seconds=min(0.5, settings.queues.poll_interval_seconds),
        )


class PairRunner:
    """Owns one pair for the lifetime of a claim; strictly sequential inside.

    Every operation carries the explicit ClaimContext. A failed renewal
    cancels the running step and ends the runner without publishing or
    acking, so the message is redelivered to the next owner.
    """

    def __init__(
        self,
        context: ClaimContext,
        services: RuntimeServices,
        timings: RunnerTimings,
        *,
        on_exit: Callable[[PairRunner], None] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.context = context
        self.services = services
        self.timings = timings
        self.machine = PairStateMachine(context.pair, monotonic=monotonic)
        self.outcomes: list[tuple[str, RequestOutcome]] = []
        self.exit_reason: str | None = None
        self._on_exit = on_exit
        self._monotonic = monotonic
        self._stop = threading.Event()
        self._drain = False
        self._cancel = threading.Event()
        self._cancel_reason: str | None = None
        self._last_renew = monotonic()
        self._workspace: GitWorkspace | None = None
        self._workspace_source = ""
        self._thread: threading.Thread | None = None

    @property
    def pair(self) -> Pair:
        return self.context.pair

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run,
            daemon=True,
            name=f"pair-{self.pair.project_id}-{self.pair.user_id}",
        )
        self._thread.start()

    def request_stop(self, *, drain: bool = False) -> None:
        """Ask the runner to release; with ``drain`` it first empties its input queue."""

        self._drain = drain
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        logger.info("Runner for %s started by %s", self.pair, self.context.worker_id)
        try:
            self.exit_reason = self._loop()
        except LeaseLostError:
            self.exit_reason = CANCEL_LEASE_LOST
            if self.machine.can_transition(PairState.RELEASED):
                self.machine.transition(PairState.RELEASED, reason=CANCEL_LEASE_LOST)
            logger.warning("Runner for %s stopped: lease lost", self.pair)
        except Exception:
            logger.exception("Runner for %s crashed", self.pair)
            self.exit_reason = "crashed"
            self._release_claim(reason="crashed")
        finally:
            logger.info("Runner for %s exited (%s)", self.pair, self.exit_reason)
            if self._on_exit is not None:
                self._on_exit(self)

    def _loop(self) -> str:
        broker = self.services.broker
        while True:
            self._renew(force=False)
            if self._stop.is_set() and not self._drain:
                self._release_claim(reason=CANCEL_SHUTDOWN)
                return CANCEL_SHUTDOWN

            message = broker.receive(
                self.context.input_queue_ref,
                visibility_timeout_seconds=self.timings.visibility_timeout_seconds,
            )
            if message is None:
                if self._stop.is_set():
                    self._release_claim(reason="drained")
                    return "drained"
                if self._on_idle_poll():
                    return "idle_release"
                self._stop.wait(self.timings.poll_interval_seconds)
                continue

            current: QueueMessage | None = message
            while current is not None:
                current = self._process_one(current)

    def _on_idle_poll(self) -> bool:
        state = self.machine.state
        waited = self.machine.seconds_in_state()
        if state == PairState.PROCESSING:
            self.machine.transition(PairState.READY, reason="settled")
        elif state in {PairState.CLAIMED, PairState.READY}:
            if waited >= self.timings.idle_timeout_seconds:
                self.machine.transition(PairState.IDLE, reason="idle_timeout")
        elif state == PairState.IDLE and waited >= self.timings.release_timeout_seconds:
            self._release_claim(reason="release_timeout")
            return True
        return False

    def _process_one(self, message: QueueMessage) -> QueueMessage | None:
        """Handle one leased message; return the next message to handle, if any."""

        services = self.services
        try:
            work = WorkMessage.from_payload(message.body)
        except MalformedMessageError as error:
            services.broker.dead_letter(message, reason=f"{error.kind.value}: {error}")
            return None
        if (work.project_id, work.user_id) != (self.pair.project_id, self.pair.user_id):
            services.broker.dead_letter(message, reason="misrouted: pair mismatch")
            return None
        if self._replay_if_processed(message, work):
            return None

        self.machine.transition(PairState.PROCESSING, reason=work.correlation_id)
        started_at = services.clock()
        self._cancel.clear()
        self._cancel_reason = None
        try:
            with self._monitor(message, started_at):
                response = self._run_pipeline(work, message, started_at)
        except SupersededError:
            return self._supersede(message, work)
        except _ShutdownInterruptError:
            self._workspace_for().discard_changes()
            services.broker.release(message)
            logger.info("Returned %s to the queue on shutdown", work.correlation_id)
            return None
        except LeaseLostError:
            self._workspace_for().discard_changes()
            services.broker.release(message)
            raise
        except RelayError as error:
            if self.machine.state != PairState.PROCESSING:
                self.machine.transition(PairState.PROCESSING, reason=error.kind.value)
            logger.warning(
                "Request %s failed (%s): %s",
                work.correlation_id,
                error.kind.value,
                error,
            )
            response = failure_response(
                work,
                error_kind=error.kind,
                summary=_failure_summary(error),
                continuity_token=self._continuity_token(work),
            )
            self._complete(message, response, RequestOutcome.FAILED)
            return None

        self._complete(message, response, RequestOutcome.SUCCEEDED)
        return None

    def _run_pipeline(
        self,
        work: WorkMessage,
        message: QueueMessage,
        started_at: datetime,
    ) -> ResponseMessage:
        services = self.services
        workspace = self._workspace_for(work.source_ref)

        self._checkpoint(message, started_at)
        workspace.prepare()
        workspace.switch_to(work.branch_name)

        try:
            edit = services.editor.edit(
                EditRequest(
                    workspace_path=workspace.path,
                    branch_name=work.branch_name,
                    instruction=work.instruction,
                    correlation_id=work.correlation_id,
                    cancel_requested=self._cancel.is_set,
                ),
            )
        except StepCancelledError:
            self._raise_for_cancel()
        changed_files = edit.changed_files or workspace.changed_files()
        self._checkpoint(message, started_at)

        self.machine.transition(PairState.BUILDING, reason="edit_done")
        try:
            build = services.builder.build(
                BuildRequest(
                    workspace_path=workspace.path,
                    branch_name=work.branch_name,
                    cancel_requested=self._cancel.is_set,
                ),
            )
        except StepCancelledError:
            self._raise_for_cancel()
        self._checkpoint(message, started_at)

        self.machine.transition(PairState.DEPLOYING, reason="build_ok")
        deployment_ref = services.sink.publish(self.pair, build.artifact_path)
        self._checkpoint(message, started_at, allow_interrupt=False)

        self.machine.transition(PairState.COMMITTING, reason="publish_ok")
        subject = commit_subject(work.instruction, changed_files, thread_id=work.thread_id)
        commit_sha = workspace.commit_all(
            subject,
            commit_body(
                work.instruction,
                changed_files,
                thread_id=work.thread_id,
                user_id=work.user_id,
                timestamp=services.clock(),
            ),
        )
        workspace.push(work.branch_name)
        if commit_sha is None:
            try:
                commit_sha = workspace.head()
            except GitCommandError as error:
                raise CommitFailureError("Could not read HEAD", detail=str(error)) from error

        self.machine.transition(PairState.READY, reason="commit_ok")
        return ResponseMessage(
            correlation_id=work.correlation_id,
            success=True,
            summary=edit.summary or subject,
            project_id=work.project_id,
            user_id=work.user_id,
            thread_id=work.thread_id,
            changed_artifacts=changed_files,
            deployment_ref=deployment_ref,
            commit_sha=commit_sha,
            continuity_token=self._continuity_token(work),
            origin_address=work.origin_address or None,
        )

    def _supersede(self, message: QueueMessage, work: WorkMessage) -> QueueMessage | None:
        workspace = self._workspace_for()
        try:
            workspace.commit_all(
                commit_subject(
                    work.instruction,
                    workspace.changed_files(),
                    thread_id=work.thread_id,
                    interrupted=True,
                ),
            )
        except (CommitFailureError, GitCommandError) as error:
            logger.warning("Could not save interrupted work of %s: %s", work.correlation_id, error)
        if self.machine.state != PairState.PROCESSING:
            self.machine.transition(PairState.PROCESSING, reason="interrupt")
        self._complete_superseded(message, work)

        # Input queues hand out one message at a time, so each older request
        # is settled before the next one is leased.
        broker = self.services.broker
        superseded = 0
        while True:
            queued = broker.receive(
                self.context.input_queue_ref,
                visibility_timeout_seconds=self.timings.visibility_timeout_seconds,
            )
            if queued is None:
                return None
            newer = broker.count_pending(
                self.context.input_queue_ref,
                after_message_id=queued.message_id,
            )
            if newer == 0:
                break
            try:
                queued_work = WorkMessage.from_payload(queued.body)
            except MalformedMessageError as error:
                broker.dead_letter(queued, reason=f"{error.kind.value}: {error}")
                continue
            if self._replay_if_processed(queued, queued_work):
                continue
            self._complete_superseded(queued, queued_work)
            superseded += 1
        logger.info(
            "Interrupt on %s: continuing with newest request after superseding %d more",
            self.pair,
            superseded,
        )
        return queued

    def _complete_superseded(self, message: QueueMessage, work: WorkMessage) -> None:
        response = failure_response(
            work,
            error_kind=ErrorKind.SUPERSEDED,
            summary="Superseded by a newer request for the same project.",
            continuity_token=self._continuity_token(work),
        )
        self._complete(message, response, RequestOutcome.SUPERSEDED)

    def _replay_if_processed(self, message: QueueMessage, work: WorkMessage) -> bool:
        """Ack a redelivered request that already has a recorded response, re-sending it."""

        services = self.services
        stored = services.ledger.get(work.correlation_id)
        if stored is None:
            return False
        services.emitter.send(stored, self.context.output_queue_ref)
        services.broker.ack(message)
        self.outcomes.append((work.correlation_id, RequestOutcome.SKIPPED))
        logger.info("Skipping %s: already processed, response re-sent", work.correlation_id)
        return True

    def _complete(
        self,
        message: QueueMessage,
        response: ResponseMessage,
        outcome: RequestOutcome,
    ) -> None:
        services = self.services
        if services.ledger.record(response, worker_id=self.context.worker_id):
            services.emitter.send(response, self.context.output_queue_ref)
        if not services.broker.ack(message):
            logger.warning("Ack of %s failed after completion", response.correlation_id)
        services.registry.record_event(
            self.pair,
            f"work_{outcome.value}",
            worker_id=self.context.worker_id,
            correlation_id=response.correlation_id,
            details={
                "error_kind": response.error_kind.value if response.error_kind else None,
                "deployment_ref": response.deployment_ref,
            },
        )
        self.outcomes.append((response.correlation_id, outcome))

    def _checkpoint(
        self,
        message: QueueMessage,
        started_at: datetime,
        *,
        allow_interrupt: bool = True,
    ) -> None:
        if self._cancel.is_set():
            if self._cancel_reason != CANCEL_SUPERSEDED or allow_interrupt:
                self._raise_for_cancel()
            self._cancel.clear()
            self._cancel_reason = None
        self._renew(force=True)
        self.services.broker.extend_visibility(message, self.timings.visibility_timeout_seconds)
        if allow_interrupt and self._newer_pending(message, started_at):
            raise SupersededError(f"Newer request queued for {self.pair}")
        if self._stop.is_set() and not self._drain:
            raise _ShutdownInterruptError(f"Worker stopping while processing {self.pair}")

    def _raise_for_cancel(self) -> None:
        reason = self._cancel_reason
        if reason == CANCEL_LEASE_LOST:
            raise LeaseLostError(f"Lease on {self.pair} lost during a step")
        if reason == CANCEL_SHUTDOWN:
            raise _ShutdownInterruptError(f"Worker stopping while processing {self.pair}")
        raise SupersededError(f"Newer request queued for {self.pair}")

    def _request_cancel(self, reason: str) -> None:
        if self._cancel.is_set():
            return
        self._cancel_reason = reason
        self._cancel.set()
        logger.info("Cancelling current step of %s: %s", self.pair, reason)

    @contextmanager
    def _monitor(self, message: QueueMessage, started_at: datetime) -> Iterator[None]:
        """Background checks while a step runs: renew, extend visibility, detect interrupts."""

        done = threading.Event()
        visibility_refresh = max(1.0, self.timings.visibility_timeout_seconds / 3)

        def _watch() -> None:
            last_extend = self._monotonic()
            while not done.wait(self.timings.monitor_interval_seconds):
                try:
                    now = self._monotonic()
                    if now - self._last_renew >= self.timings.renew_interval_seconds:
                        if not self._renew_now():
                            self._request_cancel(CANCEL_LEASE_LOST)
                            return
                    if now - last_extend >= visibility_refresh:
                        self.services.broker.extend_visibility(
                            message,
                            self.timings.visibility_timeout_seconds,
                        )
                        last_extend = now
                    if self.machine.is_active and self._newer_pending(message, started_at):
                        self._request_cancel(CANCEL_SUPERSEDED)
                    if self._stop.is_set() and not self._drain:
                        self._request_cancel(CANCEL_SHUTDOWN)
                except Exception:
                    logger.exception("Monitor of %s failed", self.pair)

        watcher = threading.Thread(target=_watch, daemon=True, name=f"monitor-{self.pair.key}")
        watcher.start()
        try:
            yield
        finally:
            done.set()
            watcher.join(timeout=5)

    def _newer_pending(self, message: QueueMessage, started_at: datetime) -> bool:
        return (
            self.services.broker.count_pending(
                self.context.input_queue_ref,
                after_message_id=message.message_id,
                enqueued_since=started_at,
            )
            > 0
        )

    def _renew(self, *, force: bool) -> None:
        if not force and self._monotonic() - self._last_renew < self.timings.renew_interval_seconds:
            return
        if not self._renew_now():
            raise LeaseLostError(f"Renewal of {self.pair} failed")

    def _renew_now(self) -> bool:
        renewed = self.services.registry.renew(
            self.pair.project_id,
            self.pair.user_id,
            self.context.worker_id,
            claim_token=self.context.claim_token,
        )
        if renewed:
            self._last_renew = self._monotonic()
        return renewed

    def _release_claim(self, *, reason: str) -> None:
        services = self.services
        released = services.registry.release(
            self.pair.project_id,
            self.pair.user_id,
            self.context.worker_id,
            claim_token=self.context.claim_token,
        )
        if self.machine.can_transition(PairState.RELEASED):
            self.machine.transition(PairState.RELEASED, reason=reason)
        if not released:
            return
        # Release happens before this check, so a message enqueued concurrently is
        # either seen here or its dispatcher sees the pair unowned.
        queue_name = self.context.input_queue_ref
        if services.broker.count_pending(queue_name) > 0:
            send_claim_request(
                services.broker,
                self.pair,
                source_ref=pending_source_ref(services.broker, queue_name)
                or self.context.source_ref,
                now=services.clock(),
            )
            logger.info("Pending work left on %s after release; claim re-requested", self.pair)

    def _workspace_for(self, source_ref: str | None = None) -> GitWorkspace:
        """Workspace of the pair; a request naming another source location gets a new one."""

        if self._workspace is not None and source_ref in (None, "", self._workspace_source):
            return self._workspace
        location = source_ref or self.context.source_ref
        self._workspace = self.services.workspace_factory(self.pair, location)
        self._workspace_source = location
        return self._workspace

    def _continuity_token(self, work: WorkMessage) -> str:
        return format_continuity_token(work.thread_id, self.services.token_domain)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    claim_requests: int = 0
    claimed: int = 0
    already_owned: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0
    reconciled: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.claim_requests += other.claim_requests
        self.claimed += other.claimed
        self.already_owned += other.already_owned
        self.dead_lettered += other.dead_lettered
        self.idle_polls += other.idle_polls
        self.reconciled += other.reconciled


class Worker:
    """Generic worker: claims pairs from the unclaimed queue and runs one thread per pair."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker_id: str,
        services: RuntimeServices,
        dispatcher: Dispatcher,
        timings: RunnerTimings,
        max_pairs: int = 8,
        reconcile_interval_seconds: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.worker_id = worker_id
        self.services = services
        self.dispatcher = dispatcher
        self.timings = timings
        self.max_pairs = max_pairs
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self._monotonic = monotonic
        self._runners: dict[Pair, PairRunner] = {}
        self._finished: list[PairRunner] = []
        self._lock = threading.Lock()
        self._last_reconcile = monotonic()
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def active_pairs(self) -> list[Pair]:
        with self._lock:
            return [pair for pair, runner in self._runners.items() if runner.is_alive()]

    def runner_for(self, pair: Pair) -> PairRunner | None:
        with self._lock:
            return self._runners.get(pair)

    def finished_runners(self) -> list[PairRunner]:
        with self._lock:
            return list(self._finished)

    def run_once(self) -> WorkerRunSummary:
        """Handle at most one claim request from the unclaimed queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        self._reconcile_if_due(summary)
        if len(self.active_pairs()) >= self.max_pairs:
            summary.idle_polls = 1
            return summary

        broker = self.services.broker
        message = broker.receive(UNCLAIMED_QUEUE)
        if message is None:
            summary.idle_polls = 1
            return summary

        summary.claim_requests = 1
        try:
            request = ClaimRequest.from_payload(message.body)
        except MalformedMessageError as error:
            broker.dead_letter(message, reason=f"{error.kind.value}: {error}")
            summary.dead_lettered = 1
            return summary

        pair = Pair(request.project_id, request.user_id)
        existing = self.runner_for(pair)
        if (
            existing is not None
            and existing.is_alive()
            and self.services.registry.is_owned_by(pair.project_id, pair.user_id, self.worker_id)
        ):
            broker.ack(message)
            summary.already_owned = 1
            return summary
        # A runner still winding down after its release is replaced by a fresh claim.

        result = self.services.registry.try_claim(
            pair.project_id,
            pair.user_id,
            self.worker_id,
            source_ref=request.source_ref,
        )
        broker.ack(message)
        if not result.acquired or result.claim is None:
            logger.debug("Pair %s already owned by %s", pair, result.current_owner)
            summary.already_owned = 1
            return summary

        claim = result.claim
        runner = PairRunner(
            ClaimContext(
                pair=pair,
                worker_id=self.worker_id,
                claim_token=claim.claim_token,
                input_queue_ref=claim.input_queue_ref,
                output_queue_ref=claim.output_queue_ref,
                source_ref=claim.source_ref,
            ),
            self.services,
            self.timings,
            on_exit=self._on_runner_exit,
            monotonic=self._monotonic,
        )
        with self._lock:
            self._runners[pair] = runner
        runner.start()
        summary.claimed = 1
        return summary

    def run_loop(self, *, max_idle_polls: int | None = None) -> WorkerRunSummary:
        """Run until stopped, or until ``max_idle_polls`` consecutive empty polls.

        An idle exit drains the owned pairs before releasing them; a signal
        stops runners at their next checkpoint.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                summary = self.run_once()
                aggregate.add(summary)
                if summary.claim_requests == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.timings.poll_interval_seconds)
                    continue
                consecutive_idle = 0
            self.shutdown(drain=not self._stop_requested)
        return aggregate

    def shutdown(self, *, drain: bool = False, timeout: float | None = None) -> None:
        """Stop all runners; each one releases its claim before exiting."""

        with self._lock:
            runners = list(self._runners.values())
        for runner in runners:
            runner.request_stop(drain=drain)
        for runner in runners:
            runner.join(timeout=timeout)

    def stop(self) -> None:
        self._request_stop(signal_name="stop")

    def _on_runner_exit(self, runner: PairRunner) -> None:
        with self._lock:
            if self._runners.get(runner.pair) is runner:
                del self._runners[runner.pair]
            self._finished.append(runner)

    def _reconcile_if_due(self, summary: WorkerRunSummary) -> None:
        now = self._monotonic()
        if now - self._last_reconcile < self.reconcile_interval_seconds:
            return
        self._last_reconcile = now
        result = self.dispatcher.reconcile()
        summary.reconciled += result.claim_requests + result.escalated_messages

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Worker %s stopping (%s)", self.worker_id, signal_name)


def _failure_summary(error: RelayError) -> str:
    if not error.detail:
        return str(error)
    return f"{error}\n{error.detail[-1_000:]}"
