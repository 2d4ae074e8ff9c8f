"""Pipeline step executors (content editing and site build)."""

from edit_relay.steps.base import (
    BuildRequest,
    BuildResult,
    EditRequest,
    EditResult,
    Editor,
    SiteBuilder,
    StepCancelledError,
)
from edit_relay.steps.builder import CommandSiteBuilder
from edit_relay.steps.editor import CliEditor

__all__ = [
    "BuildRequest",
    "BuildResult",
    "CliEditor",
    "CommandSiteBuilder",
    "EditRequest",
    "EditResult",
    "Editor",
    "SiteBuilder",
    "StepCancelledError",
]
