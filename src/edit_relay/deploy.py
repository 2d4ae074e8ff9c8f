"""Deployment sinks that publish built artifacts per project."""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from edit_relay.errors import DeployFailureError
from edit_relay.models import Pair

logger = logging.getLogger(__name__)

REVISION_MARKER = ".edit-relay-rev"
REVISION_CHARS = 16


class DeploymentSink(Protocol):
    """Publishes an artifact; the same content always yields the same reference."""

    def publish(self, pair: Pair, artifact_location: Path) -> str:
        """Publish and return a deployment reference."""


def artifact_digest(artifact_location: Path) -> str:
    """Content hash over relative paths and bytes of every file in the tree."""

    digest = hashlib.sha256()
    for path in sorted(item for item in artifact_location.rglob("*") if item.is_file()):
        relative = path.relative_to(artifact_location).as_posix()
        if relative == REVISION_MARKER:
            continue
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(65_536), b""):
                digest.update(chunk)
        digest.update(b"\0")
    return digest.hexdigest()


class DirectoryDeploymentSink:
    """Mirror the artifact into ``{publish_root}/{project_id}/``, replacing the previous deploy."""

    def __init__(self, publish_root: Path, public_base_url: str) -> None:
        self.publish_root = publish_root
        self.public_base_url = public_base_url.rstrip("/")

    def location_for(self, pair: Pair) -> Path:
        return self.publish_root / pair.project_id

    def publish(self, pair: Pair, artifact_location: Path) -> str:
        if not artifact_location.is_dir():
            raise DeployFailureError(f"Artifact directory does not exist: {artifact_location}")

        try:
            revision = artifact_digest(artifact_location)[:REVISION_CHARS]
            target = self.location_for(pair)
            if _published_revision(target) == revision:
                logger.debug("Artifact for %s already published at rev %s", pair, revision)
                return self._reference(pair, revision)

            self.publish_root.mkdir(parents=True, exist_ok=True)
            staging = self.publish_root / f".staging-{pair.project_id}-{uuid4().hex[:8]}"
            shutil.copytree(artifact_location, staging)
            (staging / REVISION_MARKER).write_text(revision, "utf-8")

            retired: Path | None = None
            if target.exists():
                retired = self.publish_root / f".retired-{pair.project_id}-{uuid4().hex[:8]}"
                target.rename(retired)
            staging.rename(target)
            if retired is not None:
                shutil.rmtree(retired, ignore_errors=True)
        except OSError as error:
            raise DeployFailureError(
                f"Publishing {pair} to {self.publish_root} failed",
                detail=str(error),
            ) from error

        logger.info("Published %s rev %s to %s", pair, revision, target)
        return self._reference(pair, revision)

    def _reference(self, pair: Pair, revision: str) -> str:
        return f"{self.public_base_url}/{pair.project_id}/?rev={revision}"


def _published_revision(target: Path) -> str | None:
    marker = target / REVISION_MARKER
    if not marker.is_file():
        return None
    return marker.read_text("utf-8").strip()
