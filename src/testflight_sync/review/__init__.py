"""
Review (triage) module.

Provides:
- Status transitions for crashes and feedback
- Duplicate marking with target validation
- Reopening of closed submissions
"""

from .workflow import (
    DuplicateTargetError,
    ReviewError,
    ReviewWorkflow,
    SubmissionNotFoundError,
)

__all__ = [
    "DuplicateTargetError",
    "ReviewError",
    "ReviewWorkflow",
    "SubmissionNotFoundError",
]
