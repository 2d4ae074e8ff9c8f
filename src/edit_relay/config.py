"""Runtime configuration for claims, queues, workers and pipeline steps."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class ClaimSettings:
    """Ownership lease settings."""

    lease_seconds: int = 900
    renew_interval_seconds: int = 60


@dataclass(slots=True)
class QueueSettings:
    """Durable queue settings."""

    visibility_timeout_seconds: int = 300
    max_receives: int = 5
    poll_interval_seconds: float = 1.0
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class ThreadSettings:
    """Thread continuity settings."""

    token_domain: str = "edit-relay.local"
    heuristic_window_seconds: int = 259_200
    subject_similarity_threshold: float = 0.8
    ambiguity_margin: float = 0.1


@dataclass(slots=True)
class WorkerSettings:
    """Generic worker and pair runner settings."""

    worker_id: str | None = None
    max_pairs: int = 8
    idle_timeout_seconds: int = 300
    release_timeout_seconds: int = 1_800
    reconcile_interval_seconds: int = 60
    claim_deadline_seconds: int = 900
    graceful_shutdown_seconds: int = 10
    workspace_root: Path = Path(".edit_relay/workspaces")
    repo_url_template: str = ""
    git_push: bool = True


@dataclass(slots=True)
class StepSettings:
    """External step command settings."""

    editor_command: str = "edit-agent --instruction {instruction}"
    editor_timeout_seconds: int = 900
    build_command: str = "npm run build"
    build_timeout_seconds: int = 600
    build_output_dir: str = "dist"
    git_timeout_seconds: int = 120


@dataclass(slots=True)
class DeploySettings:
    """Deployment sink settings."""

    publish_root: Path = Path(".edit_relay/public")
    public_base_url: str = "http://localhost:8080"


@dataclass(slots=True)
class ResponseSettings:
    """Response delivery settings."""

    webhook_url: str | None = None
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".edit_relay.db")
    claims: ClaimSettings = field(default_factory=ClaimSettings)
    queues: QueueSettings = field(default_factory=QueueSettings)
    threads: ThreadSettings = field(default_factory=ThreadSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    steps: StepSettings = field(default_factory=StepSettings)
    deploy: DeploySettings = field(default_factory=DeploySettings)
    responses: ResponseSettings = field(default_factory=ResponseSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("EDIT_RELAY_DB_PATH", ".edit_relay.db")),
            claims=ClaimSettings(
                lease_seconds=int(os.getenv("EDIT_RELAY_CLAIM_LEASE_SECONDS", "900")),
                renew_interval_seconds=int(
                    os.getenv("EDIT_RELAY_CLAIM_RENEW_INTERVAL_SECONDS", "60"),
                ),
            ),
            queues=QueueSettings(
                visibility_timeout_seconds=int(
                    os.getenv("EDIT_RELAY_QUEUE_VISIBILITY_TIMEOUT_SECONDS", "300"),
                ),
                max_receives=int(os.getenv("EDIT_RELAY_QUEUE_MAX_RECEIVES", "5")),
                poll_interval_seconds=float(
                    os.getenv("EDIT_RELAY_QUEUE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                busy_timeout_ms=int(os.getenv("EDIT_RELAY_DB_BUSY_TIMEOUT_MS", "5000")),
            ),
            threads=ThreadSettings(
                token_domain=os.getenv("EDIT_RELAY_THREAD_TOKEN_DOMAIN", "edit-relay.local"),
                heuristic_window_seconds=int(
                    os.getenv("EDIT_RELAY_THREAD_HEURISTIC_WINDOW_SECONDS", "259200"),
                ),
                subject_similarity_threshold=float(
                    os.getenv("EDIT_RELAY_THREAD_SUBJECT_SIMILARITY", "0.8"),
                ),
                ambiguity_margin=float(os.getenv("EDIT_RELAY_THREAD_AMBIGUITY_MARGIN", "0.1")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("EDIT_RELAY_WORKER_ID") or None,
                max_pairs=int(os.getenv("EDIT_RELAY_WORKER_MAX_PAIRS", "8")),
                idle_timeout_seconds=int(os.getenv("EDIT_RELAY_IDLE_TIMEOUT_SECONDS", "300")),
                release_timeout_seconds=int(
                    os.getenv("EDIT_RELAY_RELEASE_TIMEOUT_SECONDS", "1800"),
                ),
                reconcile_interval_seconds=int(
                    os.getenv("EDIT_RELAY_RECONCILE_INTERVAL_SECONDS", "60"),
                ),
                claim_deadline_seconds=int(
                    os.getenv("EDIT_RELAY_CLAIM_DEADLINE_SECONDS", "900"),
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("EDIT_RELAY_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                workspace_root=Path(
                    os.getenv("EDIT_RELAY_WORKSPACE_ROOT", ".edit_relay/workspaces"),
                ),
                repo_url_template=os.getenv("EDIT_RELAY_REPO_URL_TEMPLATE", ""),
                git_push=_env_bool("EDIT_RELAY_GIT_PUSH", default=True),
            ),
            steps=StepSettings(
                editor_command=os.getenv(
                    "EDIT_RELAY_EDITOR_COMMAND",
                    "edit-agent --instruction {instruction}",
                ),
                editor_timeout_seconds=int(
                    os.getenv("EDIT_RELAY_EDITOR_TIMEOUT_SECONDS", "900"),
                ),
                build_command=os.getenv("EDIT_RELAY_BUILD_COMMAND", "npm run build"),
                build_timeout_seconds=int(os.getenv("EDIT_RELAY_BUILD_TIMEOUT_SECONDS", "600")),
                build_output_dir=os.getenv("EDIT_RELAY_BUILD_OUTPUT_DIR", "dist"),
                git_timeout_seconds=int(os.getenv("EDIT_RELAY_GIT_TIMEOUT_SECONDS", "120")),
            ),
            deploy=DeploySettings(
                publish_root=Path(os.getenv("EDIT_RELAY_PUBLISH_ROOT", ".edit_relay/public")),
                public_base_url=os.getenv(
                    "EDIT_RELAY_PUBLIC_BASE_URL",
                    "http://localhost:8080",
                ).rstrip("/"),
            ),
            responses=ResponseSettings(
                webhook_url=os.getenv("EDIT_RELAY_RESPONSE_WEBHOOK_URL") or None,
                max_attempts=int(os.getenv("EDIT_RELAY_RESPONSE_MAX_ATTEMPTS", "5")),
                backoff_base_seconds=float(
                    os.getenv("EDIT_RELAY_RESPONSE_BACKOFF_BASE_SECONDS", "1.0"),
                ),
                backoff_max_seconds=float(
                    os.getenv("EDIT_RELAY_RESPONSE_BACKOFF_MAX_SECONDS", "60.0"),
                ),
                request_timeout_seconds=float(
                    os.getenv("EDIT_RELAY_RESPONSE_REQUEST_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error when timing or step settings are inconsistent."""

        if self.claims.lease_seconds <= 0:
            raise ValueError("EDIT_RELAY_CLAIM_LEASE_SECONDS must be > 0.")
        if not 0 < self.claims.renew_interval_seconds < self.claims.lease_seconds:
            raise ValueError(
                "EDIT_RELAY_CLAIM_RENEW_INTERVAL_SECONDS must be > 0 and shorter than "
                "EDIT_RELAY_CLAIM_LEASE_SECONDS.",
            )
        if not 0 < self.queues.visibility_timeout_seconds <= self.claims.lease_seconds:
            raise ValueError(
                "EDIT_RELAY_QUEUE_VISIBILITY_TIMEOUT_SECONDS must be > 0 and not longer than "
                "EDIT_RELAY_CLAIM_LEASE_SECONDS.",
            )
        if self.queues.max_receives <= 0:
            raise ValueError("EDIT_RELAY_QUEUE_MAX_RECEIVES must be > 0.")
        if self.queues.poll_interval_seconds <= 0:
            raise ValueError("EDIT_RELAY_QUEUE_POLL_INTERVAL_SECONDS must be > 0.")
        if not 0.0 < self.threads.subject_similarity_threshold <= 1.0:
            raise ValueError("EDIT_RELAY_THREAD_SUBJECT_SIMILARITY must be in (0, 1].")
        if self.threads.ambiguity_margin < 0:
            raise ValueError("EDIT_RELAY_THREAD_AMBIGUITY_MARGIN must be >= 0.")
        if self.worker.max_pairs <= 0:
            raise ValueError("EDIT_RELAY_WORKER_MAX_PAIRS must be > 0.")
        if self.worker.idle_timeout_seconds <= 0:
            raise ValueError("EDIT_RELAY_IDLE_TIMEOUT_SECONDS must be > 0.")
        if self.worker.release_timeout_seconds <= 0:
            raise ValueError("EDIT_RELAY_RELEASE_TIMEOUT_SECONDS must be > 0.")
        if self.worker.claim_deadline_seconds <= 0:
            raise ValueError("EDIT_RELAY_CLAIM_DEADLINE_SECONDS must be > 0.")
        if self.worker.repo_url_template and "{project_id}" not in self.worker.repo_url_template:
            raise ValueError("EDIT_RELAY_REPO_URL_TEMPLATE must include {project_id}.")
        if not any(
            placeholder in self.steps.editor_command
            for placeholder in ("{instruction}", "{instruction_file}")
        ):
            raise ValueError(
                "EDIT_RELAY_EDITOR_COMMAND must include {instruction} or {instruction_file}.",
            )
        if not self.steps.build_command.strip():
            raise ValueError("EDIT_RELAY_BUILD_COMMAND must not be empty.")
        if self.responses.max_attempts <= 0:
            raise ValueError("EDIT_RELAY_RESPONSE_MAX_ATTEMPTS must be > 0.")
        if self.responses.webhook_url is not None:
            _validate_http_url(self.responses.webhook_url, name="EDIT_RELAY_RESPONSE_WEBHOOK_URL")
        _validate_http_url(self.deploy.public_base_url, name="EDIT_RELAY_PUBLIC_BASE_URL")


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
