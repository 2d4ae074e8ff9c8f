"""Error taxonomy shared by dispatch, runtime and pipeline steps."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure kinds reported on ResponseMessage.error_kind."""

    CLAIM_CONFLICT = "claim_conflict"
    MALFORMED_MESSAGE = "malformed_message"
    WORKSPACE_CONFLICT = "workspace_conflict"
    EDIT_FAILURE = "edit_failure"
    BUILD_FAILURE = "build_failure"
    DEPLOY_FAILURE = "deploy_failure"
    COMMIT_FAILURE = "commit_failure"
    STEP_TIMEOUT = "step_timeout"
    SUPERSEDED = "superseded"
    LEASE_LOST = "lease_lost"
    UNCLAIMED_TIMEOUT = "unclaimed_timeout"


class RelayError(RuntimeError):
    """Base domain error carrying the reported error kind."""

    kind: ErrorKind = ErrorKind.EDIT_FAILURE

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail


class ClaimConflictError(RelayError):
    """A claim operation lost against another live owner."""

    kind = ErrorKind.CLAIM_CONFLICT


class MalformedMessageError(RelayError):
    """Inbound payload violates the work request contract."""

    kind = ErrorKind.MALFORMED_MESSAGE


class WorkspaceConflictError(RelayError):
    """Thread branch could not be selected without losing state."""

    kind = ErrorKind.WORKSPACE_CONFLICT


class EditFailureError(RelayError):
    kind = ErrorKind.EDIT_FAILURE


class BuildFailureError(RelayError):
    kind = ErrorKind.BUILD_FAILURE


class DeployFailureError(RelayError):
    kind = ErrorKind.DEPLOY_FAILURE


class CommitFailureError(RelayError):
    kind = ErrorKind.COMMIT_FAILURE


class StepTimeoutError(RelayError):
    """External step exceeded its time budget."""

    kind = ErrorKind.STEP_TIMEOUT


class SupersededError(RelayError):
    """Current request was cancelled in favour of a newer one for the same pair."""

    kind = ErrorKind.SUPERSEDED


class LeaseLostError(RelayError):
    """Renewal failed; the caller is no longer the owner of the pair."""

    kind = ErrorKind.LEASE_LOST


class UnclaimedTimeoutError(RelayError):
    kind = ErrorKind.UNCLAIMED_TIMEOUT


class InvalidTransitionError(RuntimeError):
    """Pair state machine received an event not allowed in its current state."""

    def __init__(self, state: str, target: str) -> None:
        super().__init__(f"Invalid pair state transition: {state} -> {target}")
        self.state = state
        self.target = target
