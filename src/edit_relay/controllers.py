"""Controllers for edit-relay CLI commands."""

from __future__ import annotations

import json
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from edit_relay.config import Settings
from edit_relay.deploy import DirectoryDeploymentSink
from edit_relay.dispatch import Dispatcher, DispatchResult
from edit_relay.ledger import RequestLedger
from edit_relay.models import Pair, QueueMessageStatus
from edit_relay.ownership import OwnershipRegistry
from edit_relay.queues import DEAD_LETTER_QUEUE, QueueBroker, input_queue_name
from edit_relay.responses import ResponseEmitter, build_transports
from edit_relay.runtime import RunnerTimings, RuntimeServices, Worker
from edit_relay.steps import CliEditor, CommandSiteBuilder
from edit_relay.storage.common import utc_now
from edit_relay.storage.database import RelayDatabase
from edit_relay.threads import ThreadResolver, ThreadStore
from edit_relay.workspace import GitWorkspace

EMITTER_FLUSH_SECONDS = 15.0


@dataclass(slots=True)
class DispatchCommand:
    """CLI input for routing inbound messages."""

    db_path: Path | None
    payload_text: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_idle_polls: int | None
    worker_id: str | None = None


@dataclass(slots=True)
class ReconcileCommand:
    db_path: Path | None


@dataclass(slots=True)
class ClaimsCommand:
    """CLI input for claim listing."""

    db_path: Path | None
    include_inactive: bool


@dataclass(slots=True)
class ThreadsCommand:
    """CLI input for thread listing."""

    db_path: Path | None
    project_id: str | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class QueuesCommand:
    db_path: Path | None


@dataclass(slots=True)
class DeadLettersCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class InspectPairCommand:
    """CLI input for pair inspection."""

    db_path: Path | None
    project_id: str
    user_id: str
    limit: int


@dataclass(slots=True)
class RelayServices:
    """Repositories and services bound to one database."""

    settings: Settings
    database: RelayDatabase
    broker: QueueBroker
    registry: OwnershipRegistry
    ledger: RequestLedger
    thread_store: ThreadStore
    resolver: ThreadResolver
    emitter: ResponseEmitter
    dispatcher: Dispatcher


class RelayCliController:
    """Coordinates dispatch, worker and inspection CLI operations."""

    def dispatch(self, command: DispatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payloads = _decode_payloads(command.payload_text)
        lines: list[str] = []
        with open_services(settings, start_emitter=True) as services:
            for payload in payloads:
                lines.append(_render_dispatch(services.dispatcher.dispatch(payload)))
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        worker_id = command.worker_id or settings.worker.worker_id or default_worker_id()
        with open_services(settings, start_emitter=True) as services:
            worker = Worker(
                worker_id=worker_id,
                services=build_runtime_services(services),
                dispatcher=services.dispatcher,
                timings=RunnerTimings.from_settings(settings),
                max_pairs=settings.worker.max_pairs,
                reconcile_interval_seconds=settings.worker.reconcile_interval_seconds,
            )
            if command.once:
                summary = worker.run_once()
                worker.shutdown(drain=True)
            else:
                summary = worker.run_loop(max_idle_polls=command.max_idle_polls)
            finished = worker.finished_runners()

        lines = [
            f"Worker {worker_id} summary: "
            f"claim_requests={summary.claim_requests} claimed={summary.claimed} "
            f"already_owned={summary.already_owned} dead_lettered={summary.dead_lettered} "
            f"reconciled={summary.reconciled} idle_polls={summary.idle_polls}",
        ]
        for runner in finished:
            counts: dict[str, int] = {}
            for _, outcome in runner.outcomes:
                counts[outcome.value] = counts.get(outcome.value, 0) + 1
            rendered = " ".join(f"{name}={count}" for name, count in sorted(counts.items()))
            lines.append(f"- {runner.pair}: exit={runner.exit_reason} {rendered}".rstrip())
        return lines

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings, start_emitter=True) as services:
            summary = services.dispatcher.reconcile()
        lines = [
            "Reconcile summary: "
            f"claim_requests={summary.claim_requests} "
            f"escalated_messages={summary.escalated_messages}",
        ]
        lines.extend(f"- escalated {pair_key}" for pair_key in summary.escalated_pairs)
        return lines

    def claims(self, command: ClaimsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            claims = services.registry.list_claims(include_inactive=command.include_inactive)
        if not claims:
            return ["No claims."]
        now = utc_now()
        lines = [f"Claims: {len(claims)}"]
        for claim in claims:
            state = "live" if claim.is_live(now) else "released" if claim.released_at else "expired"
            lines.append(
                f"- {claim.pair} owner={claim.owner_id} state={state} "
                f"lease_expires_at={claim.lease_expires_at.isoformat()} "
                f"input={claim.input_queue_ref} output={claim.output_queue_ref}",
            )
        return lines

    def threads(self, command: ThreadsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        pair = None
        if command.project_id and command.user_id:
            pair = _pair(command.project_id, command.user_id)
        with open_services(settings) as services:
            threads = services.thread_store.list_threads(pair=pair, limit=command.limit)
        if not threads:
            return ["No threads."]
        lines = [f"Threads: {len(threads)}"]
        for thread in threads:
            lines.append(
                f"- {thread.thread_id} pair={thread.pair} branch={thread.branch_name} "
                f"from={thread.origin_address} "
                f"last_activity={thread.last_activity_at.isoformat()} "
                f"subject={thread.subject!r}",
            )
        return lines

    def queues(self, command: QueuesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            depths = services.broker.depths()
        if not depths:
            return ["No queues."]
        lines = ["Queues:"]
        for depth in depths:
            lines.append(
                f"- {depth.queue_name}: ready={depth.ready} inflight={depth.inflight} "
                f"dead={depth.dead}",
            )
        return lines

    def dead_letters(self, command: DeadLettersCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            messages = services.broker.list_messages(
                DEAD_LETTER_QUEUE,
                statuses=(QueueMessageStatus.READY, QueueMessageStatus.INFLIGHT),
                limit=command.limit,
            )
        if not messages:
            return ["Dead-letter queue is empty."]
        lines = [f"Dead letters: {len(messages)}"]
        for message in messages:
            lines.append(
                f"- #{message.message_id} from={message.body.get('source_queue')} "
                f"reason={message.body.get('reason')} "
                f"enqueued_at={message.enqueued_at.isoformat()}",
            )
        return lines

    def inspect_pair(self, command: InspectPairCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        pair = _pair(command.project_id, command.user_id)
        with open_services(settings) as services:
            claim = services.registry.current_claim(pair.project_id, pair.user_id)
            pending = services.broker.count_pending(input_queue_name(pair))
            events = services.registry.list_pair_events(pair, limit=command.limit)
            responses = services.ledger.list_recent(pair, limit=command.limit)

        lines = [f"Pair: {pair}"]
        if claim is None:
            lines.append("Owner: none")
        else:
            lines.append(
                f"Owner: {claim.owner_id} lease_expires_at={claim.lease_expires_at.isoformat()}",
            )
        lines.append(f"Pending requests: {pending}")
        lines.append("Events:")
        lines.extend(
            f"- {event.created_at.isoformat()} {event.event_type} "
            f"worker={event.worker_id or '-'} correlation={event.correlation_id or '-'}"
            for event in events
        )
        lines.append("Responses:")
        lines.extend(
            f"- {response.correlation_id} success={response.success} "
            f"error_kind={response.error_kind.value if response.error_kind else '-'} "
            f"deployment={response.deployment_ref or '-'}"
            for response in responses
        )
        return lines


@contextmanager
def open_services(settings: Settings, *, start_emitter: bool = False) -> Iterator[RelayServices]:
    database = RelayDatabase(settings.db_path, busy_timeout_ms=settings.queues.busy_timeout_ms)
    database.init_schema()
    broker = QueueBroker(
        database.engine,
        visibility_timeout_seconds=settings.queues.visibility_timeout_seconds,
        max_receives=settings.queues.max_receives,
    )
    registry = OwnershipRegistry(database.engine, lease_seconds=settings.claims.lease_seconds)
    ledger = RequestLedger(database.engine)
    thread_store = ThreadStore(database.engine)
    resolver = ThreadResolver(thread_store, settings.threads)
    emitter = ResponseEmitter(
        transports=build_transports(broker=broker, settings=settings.responses),
        broker=broker,
        settings=settings.responses,
    )
    dispatcher = Dispatcher(
        broker=broker,
        registry=registry,
        resolver=resolver,
        ledger=ledger,
        emitter=emitter,
        claim_deadline_seconds=settings.worker.claim_deadline_seconds,
    )
    if start_emitter:
        emitter.start()
    try:
        yield RelayServices(
            settings=settings,
            database=database,
            broker=broker,
            registry=registry,
            ledger=ledger,
            thread_store=thread_store,
            resolver=resolver,
            emitter=emitter,
            dispatcher=dispatcher,
        )
    finally:
        emitter.stop(timeout=EMITTER_FLUSH_SECONDS)
        database.close()


def build_runtime_services(services: RelayServices) -> RuntimeServices:
    """Wire the configured step executors, sink and workspaces for pair runners."""

    settings = services.settings
    steps = settings.steps
    worker = settings.worker

    build_output = Path(steps.build_output_dir)
    exclude = () if build_output.is_absolute() else (build_output.as_posix(),)

    def _workspace(pair: Pair, source_ref: str) -> GitWorkspace:
        # The request's source location wins; the template covers requests without one.
        repo_url = source_ref or None
        if repo_url is None and worker.repo_url_template:
            repo_url = worker.repo_url_template.format(
                project_id=pair.project_id,
                user_id=pair.user_id,
            )
        return GitWorkspace(
            worker.workspace_root,
            pair,
            repo_url=repo_url,
            push=worker.git_push,
            timeout_seconds=steps.git_timeout_seconds,
            exclude=exclude,
        )

    return RuntimeServices(
        broker=services.broker,
        registry=services.registry,
        ledger=services.ledger,
        emitter=services.emitter,
        editor=CliEditor(
            steps.editor_command,
            timeout_seconds=steps.editor_timeout_seconds,
            graceful_shutdown_seconds=worker.graceful_shutdown_seconds,
        ),
        builder=CommandSiteBuilder(
            steps.build_command,
            output_dir=steps.build_output_dir,
            timeout_seconds=steps.build_timeout_seconds,
            graceful_shutdown_seconds=worker.graceful_shutdown_seconds,
        ),
        sink=DirectoryDeploymentSink(
            settings.deploy.publish_root,
            settings.deploy.public_base_url,
        ),
        workspace_factory=_workspace,
        token_domain=settings.threads.token_domain,
    )


def _pair(project_id: str, user_id: str) -> Pair:
    return Pair(project_id.strip().lower(), user_id.strip().lower())


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _decode_payloads(text: str) -> list[object]:
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        # Undecodable input is still routed so that it lands on dead-letter.
        return [text]
    if isinstance(decoded, list):
        return decoded
    return [decoded]


def _render_dispatch(result: DispatchResult) -> str:
    parts = [f"Dispatch: status={result.status.value}"]
    if result.correlation_id is not None:
        parts.append(f"correlation_id={result.correlation_id}")
    if result.thread_id is not None:
        parts.append(f"thread_id={result.thread_id}")
    if result.queue_name is not None:
        parts.append(f"queue={result.queue_name}")
    if result.owner_id is not None:
        parts.append(f"owner={result.owner_id}")
    if result.claim_requested:
        parts.append("claim_requested=true")
    if result.error is not None:
        parts.append(f"error={result.error}")
    return " ".join(parts)
