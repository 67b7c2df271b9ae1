"""Sync services: pagination, artifact recovery and orchestration."""

from testflight_sync.services.artifact_recovery import ArtifactRecovery, RecoveryResult
from testflight_sync.services.submission_sync import (
    MAX_PAGES,
    PageWalker,
    SourceSyncResult,
    StopReason,
    StreamSyncResult,
    SubmissionSyncService,
    SyncResult,
    WalkResult,
)

__all__ = [
    "MAX_PAGES",
    "ArtifactRecovery",
    "PageWalker",
    "RecoveryResult",
    "SourceSyncResult",
    "StopReason",
    "StreamSyncResult",
    "SubmissionSyncService",
    "SyncResult",
    "WalkResult",
]
