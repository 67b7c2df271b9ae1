"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Monitored apps
- Crash submissions and their crash logs
- Screenshot feedback submissions and their screenshots
- Review status of every submission

Enforces uniqueness on bundle_id and on the remote submission_id.
"""

from .sqlite_store import (
    NewSubmission,
    SourceRecord,
    StateStore,
    SubmissionFilters,
    SubmissionRecord,
    SubmissionStats,
)

__all__ = [
    "NewSubmission",
    "SourceRecord",
    "StateStore",
    "SubmissionFilters",
    "SubmissionRecord",
    "SubmissionStats",
]
