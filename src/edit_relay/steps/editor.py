"""Content-generation step backed by an external CLI agent."""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path

from edit_relay.errors import EditFailureError, StepTimeoutError
from edit_relay.steps.base import EditRequest, EditResult, StepCancelledError
from edit_relay.steps.process import render_command, run_command

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 500


class CliEditor:
    """Run ``command_template`` inside the workspace.

    Supported placeholders: ``{instruction}``, ``{instruction_file}``,
    ``{workspace}`` and ``{branch}``. When the last stdout line is a JSON
    object with ``summary``/``changed_files`` it is used as the result.
    """

    def __init__(
        self,
        command_template: str,
        *,
        timeout_seconds: int = 900,
        graceful_shutdown_seconds: int = 10,
    ) -> None:
        if "{instruction}" not in command_template and "{instruction_file}" not in command_template:
            raise ValueError("Editor command must include {instruction} or {instruction_file}.")
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def edit(self, request: EditRequest) -> EditResult:
        with tempfile.TemporaryDirectory(prefix="edit-relay-") as scratch:
            instruction_file = Path(scratch) / "instruction.txt"
            instruction_file.write_text(request.instruction, "utf-8")
            try:
                argv = render_command(
                    self.command_template,
                    {
                        "instruction": request.instruction,
                        "instruction_file": str(instruction_file),
                        "workspace": str(request.workspace_path),
                        "branch": request.branch_name,
                    },
                )
            except ValueError as error:
                raise EditFailureError(f"Invalid editor command: {error}") from error

            try:
                result = run_command(
                    argv,
                    cwd=request.workspace_path,
                    timeout_seconds=self.timeout_seconds,
                    cancel_requested=request.cancel_requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                    extra_env={
                        "EDIT_RELAY_BRANCH": request.branch_name,
                        "EDIT_RELAY_CORRELATION_ID": request.correlation_id,
                    },
                )
            except FileNotFoundError as error:
                raise EditFailureError(f"Editor command not found: {argv[0]}") from error
            except OSError as error:
                raise EditFailureError(f"Editor failed to start: {error}") from error

        if result.cancelled:
            raise StepCancelledError("Editor run cancelled")
        if result.timed_out:
            raise StepTimeoutError(
                f"Editor exceeded {self.timeout_seconds}s",
                detail=result.output_tail(),
            )
        if result.exit_code != 0:
            raise EditFailureError(
                f"Editor exited with code {result.exit_code}",
                detail=result.output_tail(),
            )
        return _parse_editor_output(result.stdout)


def _parse_editor_output(stdout: str) -> EditResult:
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return EditResult()

    last = lines[-1]
    if last.startswith("{"):
        try:
            payload = json.loads(last)
        except json.JSONDecodeError:
            logger.debug("Editor output tail is not JSON; using it as summary")
        else:
            if isinstance(payload, dict):
                changed = payload.get("changed_files") or []
                summary = payload.get("summary") or ""
                if isinstance(changed, list) and isinstance(summary, str):
                    return EditResult(
                        changed_files=[str(item) for item in changed],
                        summary=summary[:SUMMARY_MAX_CHARS],
                    )
    return EditResult(summary=last[:SUMMARY_MAX_CHARS])
