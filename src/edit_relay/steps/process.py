"""Subprocess execution with timeout and cooperative cancellation."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

TIMEOUT_EXIT_CODE = 124
OUTPUT_TAIL_CHARS = 4_000


@dataclass(slots=True)
class ProcessResult:
    """Outcome of one external command."""

    exit_code: int
    timed_out: bool
    cancelled: bool
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    def output_tail(self, limit: int = OUTPUT_TAIL_CHARS) -> str:
        combined = "\n".join(part for part in (self.stdout, self.stderr) if part.strip())
        return combined[-limit:]


def render_command(template: str, values: dict[str, str]) -> list[str]:
    """Render a command template into argv, shell-quoting every placeholder value."""

    stripped = template.strip()
    if not stripped:
        raise ValueError("Command template is empty.")
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("Command template rendered empty command.")
    return argv


def run_command(  # noqa: PLR0913
    argv: list[str],
    *,
    cwd: Path,
    timeout_seconds: float,
    cancel_requested: Callable[[], bool] | None = None,
    extra_env: dict[str, str] | None = None,
    graceful_shutdown_seconds: float = 0,
    poll_interval_seconds: float = 0.1,
) -> ProcessResult:
    """Run argv to completion, polling for timeout and cancellation.

    Raises FileNotFoundError when the executable does not exist.
    """

    env = os.environ.copy()
    if extra_env:
        env.update(extra_env)

    with (
        tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stdout_handle,
        tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stderr_handle,
    ):
        process = subprocess.Popen(  # noqa: S603
            argv,
            cwd=cwd,
            env=env,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        start_monotonic = time.monotonic()
        cancel_deadline: float | None = None
        timed_out = False
        cancelled = False

        while True:
            returncode = process.poll()
            if returncode is not None:
                break

            now = time.monotonic()
            if now - start_monotonic >= timeout_seconds:
                _terminate_process(process)
                timed_out = True
                returncode = TIMEOUT_EXIT_CODE
                break

            if cancel_requested is not None and cancel_requested():
                if cancel_deadline is None:
                    cancel_deadline = now + max(0.0, graceful_shutdown_seconds)
                if now >= cancel_deadline:
                    _terminate_process(process)
                    cancelled = True
                    returncode = process.returncode if process.returncode is not None else -1
                    break

            time.sleep(poll_interval_seconds)

        stdout_handle.seek(0)
        stderr_handle.seek(0)
        return ProcessResult(
            exit_code=returncode,
            timed_out=timed_out,
            cancelled=cancelled,
            stdout=stdout_handle.read(),
            stderr=stderr_handle.read(),
        )


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
