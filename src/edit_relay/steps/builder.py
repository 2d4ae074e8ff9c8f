"""Static-site build step backed by a build command."""

from __future__ import annotations

import logging
import shlex

from edit_relay.errors import BuildFailureError, StepTimeoutError
from edit_relay.steps.base import BuildRequest, BuildResult, StepCancelledError
from edit_relay.steps.process import run_command

logger = logging.getLogger(__name__)


class CommandSiteBuilder:
    """Run the build command in the workspace and return ``output_dir`` as the artifact."""

    def __init__(
        self,
        command: str,
        *,
        output_dir: str = "dist",
        timeout_seconds: int = 600,
        graceful_shutdown_seconds: int = 10,
    ) -> None:
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("Build command must not be empty.")
        self.output_dir = output_dir
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def build(self, request: BuildRequest) -> BuildResult:
        try:
            result = run_command(
                self.argv,
                cwd=request.workspace_path,
                timeout_seconds=self.timeout_seconds,
                cancel_requested=request.cancel_requested,
                graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                extra_env={"EDIT_RELAY_BRANCH": request.branch_name},
            )
        except FileNotFoundError as error:
            raise BuildFailureError(f"Build command not found: {self.argv[0]}") from error
        except OSError as error:
            raise BuildFailureError(f"Build failed to start: {error}") from error

        if result.cancelled:
            raise StepCancelledError("Build cancelled")
        if result.timed_out:
            raise StepTimeoutError(
                f"Build exceeded {self.timeout_seconds}s",
                detail=result.output_tail(),
            )
        if result.exit_code != 0:
            raise BuildFailureError(
                f"Build exited with code {result.exit_code}",
                detail=result.output_tail(),
            )

        artifact_path = request.workspace_path / self.output_dir
        if not artifact_path.is_dir():
            raise BuildFailureError(f"Build produced no output directory: {self.output_dir}")
        logger.debug("Build of %s produced %s", request.branch_name, artifact_path)
        return BuildResult(artifact_path=artifact_path, log_tail=result.output_tail(1_000))
