"""
Submission kinds, review statuses and small value helpers shared by the
client, the state store and the sync services.
"""

from datetime import datetime, timezone
from enum import Enum


class SubmissionKind(str, Enum):
    """The two TestFlight feedback streams.

    Both are stored with identical columns; they differ only in the artifact
    (crash log text vs. screenshot/video blob).
    """

    CRASH = "crash"
    FEEDBACK = "feedback"

    @property
    def table(self) -> str:
        return "crashes" if self is SubmissionKind.CRASH else "feedbacks"

    @property
    def resource(self) -> str:
        """JSON:API resource type on App Store Connect."""
        if self is SubmissionKind.CRASH:
            return "betaFeedbackCrashSubmissions"
        return "betaFeedbackScreenshotSubmissions"

    @property
    def label(self) -> str:
        return "Crash" if self is SubmissionKind.CRASH else "Feedback"

    @property
    def artifact_label(self) -> str:
        return "log" if self is SubmissionKind.CRASH else "screenshot"


class ReviewStatus(str, Enum):
    """Triage status of a submission."""

    NEW = "new"
    INVESTIGATING = "investigating"
    FIXED = "fixed"
    WONTFIX = "wontfix"
    DUPLICATE = "duplicate"

    @classmethod
    def parse_list(cls, value: str) -> list["ReviewStatus"]:
        """Parse a comma-separated list such as ``"new,investigating"``.

        Raises:
            ValueError: on an unknown status name
        """
        statuses = []
        for part in value.split(","):
            part = part.strip().lower()
            if part:
                statuses.append(cls(part))
        return statuses


# Statuses that still need attention
OPEN_STATUSES = (ReviewStatus.NEW, ReviewStatus.INVESTIGATING)

# Statuses subtracted from the total to get the unfixed count
CLOSED_STATUSES = (ReviewStatus.FIXED, ReviewStatus.WONTFIX, ReviewStatus.DUPLICATE)

CRASH_LOG_EXTENSION = "ips"
CRASH_LOG_MIME_TYPE = "text/plain"

_MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/heic": "heic",
    "video/quicktime": "mov",
    "video/mp4": "mp4",
}


def mime_to_extension(mime_type: str | None) -> str:
    """File extension for a screenshot media type (``bin`` if unknown)."""
    if not mime_type:
        return "bin"
    return _MIME_EXTENSIONS.get(mime_type.split(";")[0].strip().lower(), "bin")


def artifact_extension(kind: SubmissionKind, mime_type: str | None = None) -> str:
    if kind is SubmissionKind.CRASH:
        return CRASH_LOG_EXTENSION
    return mime_to_extension(mime_type)


def utc_now() -> str:
    """Current time as an ISO 8601 UTC string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_timestamp(value: str | None) -> str:
    """
    Normalize a remote timestamp to ISO 8601 in UTC.

    Stored creation timestamps must share one offset so that string ordering
    matches chronological ordering. Unparseable values are kept verbatim and
    a missing value becomes an empty string.
    """
    if not value:
        return ""

    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return value

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()
