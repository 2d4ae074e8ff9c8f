"""JSON wire contracts for inbound mail, queue messages and responses."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from edit_relay.errors import ErrorKind, MalformedMessageError
from edit_relay.storage.common import from_iso, utc_now

PAIR_ID_PATTERN = re.compile(r"^[a-z0-9_.]{1,64}$")
MAX_INSTRUCTION_CHARS = 20_000

WORK_MESSAGE_TYPE = "work"
CLAIM_REQUEST_TYPE = "claim_request"
RESPONSE_TYPE = "response"


@dataclass(slots=True)
class InboundMessage:
    """Parsed email-originated request handed over by the transport."""

    message_id: str
    origin_address: str
    project_id: str
    user_id: str
    instruction: str
    subject: str = ""
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    body: str = ""
    source_ref: str = ""
    received_at: datetime = field(default_factory=utc_now)

    @property
    def correlation_id(self) -> str:
        return self.message_id


@dataclass(slots=True)
class WorkMessage:
    """Unit of work on a pair input queue."""

    correlation_id: str
    thread_id: str
    branch_name: str
    project_id: str
    user_id: str
    instruction: str
    origin_address: str
    source_ref: str
    received_at: datetime

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = WORK_MESSAGE_TYPE
        payload["received_at"] = self.received_at.isoformat()
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkMessage:
        _expect_type(payload, WORK_MESSAGE_TYPE)
        return cls(
            correlation_id=_required_str(payload, "correlation_id"),
            thread_id=_required_str(payload, "thread_id"),
            branch_name=_required_str(payload, "branch_name"),
            project_id=_required_str(payload, "project_id"),
            user_id=_required_str(payload, "user_id"),
            instruction=_required_str(payload, "instruction"),
            origin_address=_optional_str(payload, "origin_address") or "",
            source_ref=_optional_str(payload, "source_ref") or "",
            received_at=_required_datetime(payload, "received_at"),
        )


@dataclass(slots=True)
class ClaimRequest:
    """Trigger on the unclaimed queue asking any worker to claim a pair."""

    project_id: str
    user_id: str
    source_ref: str
    requested_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": CLAIM_REQUEST_TYPE,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "source_ref": self.source_ref,
            "requested_at": self.requested_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ClaimRequest:
        _expect_type(payload, CLAIM_REQUEST_TYPE)
        return cls(
            project_id=_required_str(payload, "project_id"),
            user_id=_required_str(payload, "user_id"),
            source_ref=_optional_str(payload, "source_ref") or "",
            requested_at=_required_datetime(payload, "requested_at"),
        )


@dataclass(slots=True)
class ResponseMessage:
    """Outcome reported for exactly one WorkRequest."""

    correlation_id: str
    success: bool
    summary: str
    project_id: str
    user_id: str
    thread_id: str | None = None
    changed_artifacts: list[str] = field(default_factory=list)
    deployment_ref: str | None = None
    commit_sha: str | None = None
    error_kind: ErrorKind | None = None
    continuity_token: str | None = None
    origin_address: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = RESPONSE_TYPE
        payload["error_kind"] = self.error_kind.value if self.error_kind is not None else None
        payload["created_at"] = self.created_at.isoformat()
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ResponseMessage:
        _expect_type(payload, RESPONSE_TYPE)
        changed = payload.get("changed_artifacts") or []
        if not isinstance(changed, list) or not all(isinstance(item, str) for item in changed):
            raise MalformedMessageError("response.changed_artifacts must be a list of strings")
        error_kind_raw = _optional_str(payload, "error_kind")
        return cls(
            correlation_id=_required_str(payload, "correlation_id"),
            success=bool(payload.get("success")),
            summary=_optional_str(payload, "summary") or "",
            project_id=_required_str(payload, "project_id"),
            user_id=_required_str(payload, "user_id"),
            thread_id=_optional_str(payload, "thread_id"),
            changed_artifacts=list(changed),
            deployment_ref=_optional_str(payload, "deployment_ref"),
            commit_sha=_optional_str(payload, "commit_sha"),
            error_kind=ErrorKind(error_kind_raw) if error_kind_raw else None,
            continuity_token=_optional_str(payload, "continuity_token"),
            origin_address=_optional_str(payload, "origin_address"),
            created_at=_required_datetime(payload, "created_at"),
        )


def parse_inbound(payload: object) -> InboundMessage:
    """Validate a transport payload and build an InboundMessage.

    Raises MalformedMessageError with a field-level reason on any contract
    violation; the caller keeps the raw payload for dead-lettering.
    """

    if not isinstance(payload, dict):
        raise MalformedMessageError("inbound message must be a JSON object")

    message_id = _required_str(payload, "message_id")
    origin_address = _required_str(payload, "from")
    if "@" not in origin_address:
        raise MalformedMessageError(f"inbound.from is not an address: {origin_address!r}")
    project_id = normalize_pair_id(_required_str(payload, "project_id"), field_name="project_id")
    user_id = normalize_pair_id(_required_str(payload, "user_id"), field_name="user_id")

    body = _optional_str(payload, "body") or ""
    instruction = (_optional_str(payload, "instruction") or body).strip()
    if not instruction:
        raise MalformedMessageError("inbound message has an empty instruction")
    if len(instruction) > MAX_INSTRUCTION_CHARS:
        raise MalformedMessageError(
            f"inbound instruction exceeds {MAX_INSTRUCTION_CHARS} characters",
        )

    references_raw = payload.get("references") or ()
    if isinstance(references_raw, str):
        references = tuple(references_raw.split())
    elif isinstance(references_raw, list | tuple) and all(
        isinstance(item, str) for item in references_raw
    ):
        references = tuple(references_raw)
    else:
        raise MalformedMessageError("inbound.references must be a string or list of strings")

    received_raw = payload.get("received_at")
    received_at = utc_now() if received_raw is None else _required_datetime(payload, "received_at")

    return InboundMessage(
        message_id=message_id,
        origin_address=origin_address.strip().lower(),
        project_id=project_id,
        user_id=user_id,
        instruction=instruction,
        subject=_optional_str(payload, "subject") or "",
        in_reply_to=_optional_str(payload, "in_reply_to"),
        references=references,
        body=body,
        source_ref=_optional_str(payload, "source_ref") or "",
        received_at=received_at,
    )


def normalize_pair_id(value: str, *, field_name: str) -> str:
    normalized = value.strip().lower()
    if not PAIR_ID_PATTERN.fullmatch(normalized):
        raise MalformedMessageError(
            f"inbound.{field_name} must match {PAIR_ID_PATTERN.pattern}: {value!r}",
        )
    return normalized


def _expect_type(payload: dict[str, Any], expected: str) -> None:
    actual = payload.get("type")
    if actual != expected:
        raise MalformedMessageError(f"expected message type {expected!r}, got {actual!r}")


def _required_str(payload: dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise MalformedMessageError(f"{name} must be a non-empty string")
    return value.strip()


def _optional_str(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedMessageError(f"{name} must be a string when provided")
    return value


def _required_datetime(payload: dict[str, Any], name: str) -> datetime:
    raw = _required_str(payload, name)
    try:
        return from_iso(raw)
    except ValueError as error:
        raise MalformedMessageError(f"{name} is not an ISO timestamp: {raw!r}") from error


def failure_response(
    work: WorkMessage,
    *,
    error_kind: ErrorKind,
    summary: str,
    continuity_token: str | None = None,
) -> ResponseMessage:
    return ResponseMessage(
        correlation_id=work.correlation_id,
        success=False,
        summary=summary,
        project_id=work.project_id,
        user_id=work.user_id,
        thread_id=work.thread_id,
        error_kind=error_kind,
        continuity_token=continuity_token,
        origin_address=work.origin_address or None,
    )
