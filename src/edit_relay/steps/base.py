"""Step executor interfaces."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


class StepCancelledError(RuntimeError):
    """Step stopped early because the caller requested cancellation."""


@dataclass(slots=True)
class EditRequest:
    """Inputs of one content-generation run."""

    workspace_path: Path
    branch_name: str
    instruction: str
    correlation_id: str = ""
    cancel_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class EditResult:
    changed_files: list[str] = field(default_factory=list)
    summary: str = ""


@dataclass(slots=True)
class BuildRequest:
    workspace_path: Path
    branch_name: str
    cancel_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class BuildResult:
    artifact_path: Path
    log_tail: str = ""


class Editor(Protocol):
    """Applies an opaque instruction to the checked-out workspace."""

    def edit(self, request: EditRequest) -> EditResult:
        """Run the editor; raise a RelayError subclass or StepCancelledError on failure."""


class SiteBuilder(Protocol):
    """Builds the deployable artifact from the workspace."""

    def build(self, request: BuildRequest) -> BuildResult:
        """Run the build; raise a RelayError subclass or StepCancelledError on failure."""
