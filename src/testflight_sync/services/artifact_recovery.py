"""Crash log and screenshot backfill.

App Store Connect processes crash logs and screenshots some time after the
submission itself shows up. Every sync therefore retries every stored
submission that still has no artifact, once per run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from testflight_sync.asc_client import AscError
from testflight_sync.schemas import SubmissionKind, artifact_extension

if TYPE_CHECKING:
    from testflight_sync.asc_client import AscClient, Artifact
    from testflight_sync.state_store import StateStore, SubmissionRecord

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    """Outcome of one recovery pass over a submission kind."""

    kind: SubmissionKind
    recovered: list[SubmissionRecord] = field(default_factory=list)
    not_ready: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.recovered) + self.not_ready + len(self.warnings)


class ArtifactRecovery:
    """Downloads missing artifacts into per-kind directories.

    Files are named by local submission id, e.g. ``logs/42.ips`` or
    ``screenshots/17.png``, and the absolute path is stored on the row.
    """

    def __init__(
        self,
        client: AscClient,
        store: StateStore,
        artifact_dirs: dict[SubmissionKind, Path],
    ) -> None:
        """Initialize the recovery service.

        Args:
            client: Client used to fetch artifacts.
            store: State store holding the submissions.
            artifact_dirs: Target directory per submission kind.
        """
        self.client = client
        self.store = store
        self.artifact_dirs = artifact_dirs

    def recover(self, kind: SubmissionKind, app_id: int | None = None) -> RecoveryResult:
        """Try once to fetch the artifact of every submission lacking one.

        A "not ready yet" answer leaves the row untouched. Any other failure is
        logged as a warning and the pass moves on to the next submission.

        Args:
            kind: Which submission stream to recover.
            app_id: Restrict to one app's submissions (default: all).

        Returns:
            RecoveryResult with the updated records.
        """
        result = RecoveryResult(kind=kind)
        missing = self.store.submissions_missing_artifact(kind, app_id=app_id)
        if not missing:
            return result

        logger.info("Checking %d %s submission(s) for a %s", len(missing), kind.value, kind.artifact_label)

        for record in missing:
            try:
                artifact = self.client.fetch_artifact(kind, record.submission_id)
                if artifact is None:
                    result.not_ready += 1
                    continue

                path = self._write_artifact(kind, record.id, artifact)
            except (AscError, OSError) as e:
                logger.warning(
                    "Failed to download %s for %s #%d: %s", kind.artifact_label, kind.value, record.id, e
                )
                result.warnings.append(f"{kind.value} #{record.id}: {e}")
                continue

            mime_type = artifact.mime_type if kind is SubmissionKind.FEEDBACK else None
            self.store.set_artifact(kind, record.id, str(path), mime_type)

            updated = self.store.get_submission(kind, record.id)
            if updated is not None:
                result.recovered.append(updated)

        logger.info(
            "%s recovery: %d downloaded, %d not ready, %d failed",
            kind.value,
            len(result.recovered),
            result.not_ready,
            len(result.warnings),
        )
        return result

    def _write_artifact(self, kind: SubmissionKind, local_id: int, artifact: Artifact) -> Path:
        directory = self.artifact_dirs[kind]
        directory.mkdir(parents=True, exist_ok=True)

        path = directory.resolve() / f"{local_id}.{artifact_extension(kind, artifact.mime_type)}"
        path.write_bytes(artifact.content)
        return path
