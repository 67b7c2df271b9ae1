"""Shared value types: submission kinds and review statuses."""

from .submission import (
    CLOSED_STATUSES,
    OPEN_STATUSES,
    ReviewStatus,
    SubmissionKind,
    artifact_extension,
    mime_to_extension,
    normalize_timestamp,
    utc_now,
)

__all__ = [
    "CLOSED_STATUSES",
    "OPEN_STATUSES",
    "ReviewStatus",
    "SubmissionKind",
    "artifact_extension",
    "mime_to_extension",
    "normalize_timestamp",
    "utc_now",
]
