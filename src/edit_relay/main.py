"""CLI entrypoint for edit-relay."""

import logging
from pathlib import Path
from typing import TextIO

import rich_click as click

from edit_relay import __version__
from edit_relay.controllers import (
    ClaimsCommand,
    DeadLettersCommand,
    DispatchCommand,
    InspectPairCommand,
    QueuesCommand,
    ReconcileCommand,
    RelayCliController,
    ThreadsCommand,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="edit-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def edit_relay(log_level: str) -> None:
    """Route conversational edit requests to a pool of site-editing workers."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@edit_relay.command("dispatch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("payload", type=click.File("r", encoding="utf-8"), default="-")
def dispatch(db_path: Path | None, payload: TextIO) -> None:
    """Route an inbound message (JSON object or array; file or stdin) to its pair queue."""

    _emit_lines(
        CONTROLLER.dispatch(
            DispatchCommand(
                db_path=db_path,
                payload_text=payload.read(),
            ),
        ),
    )


@edit_relay.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Handle one claim request and drain that pair, or keep polling.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls (default: run until signalled).",
)
@click.option("--worker-id", default=None, help="Override EDIT_RELAY_WORKER_ID.")
def worker(
    db_path: Path | None,
    once: bool,
    max_idle_polls: int | None,
    worker_id: str | None,
) -> None:
    """Claim pairs and process their requests."""

    try:
        lines = CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_idle_polls=max_idle_polls,
                worker_id=worker_id,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@edit_relay.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def reconcile(db_path: Path | None) -> None:
    """Re-raise claim requests for stranded pairs and escalate overdue ones."""

    _emit_lines(CONTROLLER.reconcile(ReconcileCommand(db_path=db_path)))


@edit_relay.command("claims")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--all/--live",
    "include_inactive",
    default=False,
    show_default=True,
    help="Include released and expired claims.",
)
def claims(db_path: Path | None, include_inactive: bool) -> None:
    """List ownership claims."""

    _emit_lines(
        CONTROLLER.claims(ClaimsCommand(db_path=db_path, include_inactive=include_inactive)),
    )


@edit_relay.command("threads")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", default=None, help="Filter by project (requires --user-id).")
@click.option("--user-id", default=None, help="Filter by user (requires --project-id).")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Maximum number of threads to list.",
)
def threads(
    db_path: Path | None,
    project_id: str | None,
    user_id: str | None,
    limit: int,
) -> None:
    """List conversation threads, most recently active first."""

    _emit_lines(
        CONTROLLER.threads(
            ThreadsCommand(
                db_path=db_path,
                project_id=project_id,
                user_id=user_id,
                limit=limit,
            ),
        ),
    )


@edit_relay.command("queues")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queues(db_path: Path | None) -> None:
    """Show message counts per queue."""

    _emit_lines(CONTROLLER.queues(QueuesCommand(db_path=db_path)))


@edit_relay.command("dead-letters")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Maximum number of dead letters to list.",
)
def dead_letters(db_path: Path | None, limit: int) -> None:
    """List messages parked on the dead-letter queue."""

    _emit_lines(CONTROLLER.dead_letters(DeadLettersCommand(db_path=db_path, limit=limit)))


@edit_relay.command("inspect-pair")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many events and responses to show.",
)
@click.argument("project_id")
@click.argument("user_id")
def inspect_pair(db_path: Path | None, limit: int, project_id: str, user_id: str) -> None:
    """Show owner, pending work, audit events and recent responses of one pair."""

    _emit_lines(
        CONTROLLER.inspect_pair(
            InspectPairCommand(
                db_path=db_path,
                project_id=project_id,
                user_id=user_id,
                limit=limit,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    edit_relay()
