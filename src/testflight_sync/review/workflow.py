"""
Review workflow management.

Status lifecycle of a submission::

    new -> investigating -> fixed | wontfix | duplicate
    any status -> new (reopen)

Transitions are not forced through ``investigating``; any status can be
set from any other. ``duplicate`` always points at another submission of
the same kind, which must exist.
"""

from ..schemas import ReviewStatus, SubmissionKind
from ..state_store import StateStore, SubmissionRecord


class ReviewError(Exception):
    """Base exception for review commands."""

    pass


class SubmissionNotFoundError(ReviewError):
    """The submission a command refers to does not exist."""

    def __init__(self, kind: SubmissionKind, submission_id: int):
        self.kind = kind
        self.submission_id = submission_id
        super().__init__(f"{kind.value} #{submission_id} not found")


class DuplicateTargetError(ReviewError):
    """The submission named as the original of a duplicate is unusable."""

    pass


class ReviewWorkflow:
    """
    Applies review decisions to stored submissions.

    Every command returns the updated record or raises a ReviewError;
    nothing is changed when the command fails.
    """

    def __init__(self, store: StateStore):
        """Initialize with state store."""
        self.store = store

    def get(self, kind: SubmissionKind, submission_id: int) -> SubmissionRecord:
        record = self.store.get_submission(kind, submission_id)
        if record is None:
            raise SubmissionNotFoundError(kind, submission_id)
        return record

    def set_status(
        self,
        kind: SubmissionKind,
        submission_id: int,
        status: ReviewStatus,
        notes: str | None = None,
    ) -> SubmissionRecord:
        """
        Set a plain status (everything except duplicate).

        Args:
            kind: Crash or feedback
            submission_id: Local id
            status: New status
            notes: Replaces existing notes when given; kept otherwise

        Returns:
            Updated record
        """
        status = ReviewStatus(status)
        if status is ReviewStatus.DUPLICATE:
            raise ReviewError("marking as duplicate needs a target; use mark_duplicate()")

        if not self.store.set_status(kind, submission_id, status, notes):
            raise SubmissionNotFoundError(kind, submission_id)
        return self.get(kind, submission_id)

    def investigate(self, kind: SubmissionKind, submission_id: int) -> SubmissionRecord:
        return self.set_status(kind, submission_id, ReviewStatus.INVESTIGATING)

    def fix(self, kind: SubmissionKind, submission_id: int, notes: str | None = None) -> SubmissionRecord:
        return self.set_status(kind, submission_id, ReviewStatus.FIXED, notes)

    def wontfix(
        self, kind: SubmissionKind, submission_id: int, notes: str | None = None
    ) -> SubmissionRecord:
        return self.set_status(kind, submission_id, ReviewStatus.WONTFIX, notes)

    def mark_duplicate(self, kind: SubmissionKind, submission_id: int, of_id: int) -> SubmissionRecord:
        """
        Mark a submission as duplicate of another one.

        Raises:
            DuplicateTargetError: target missing or the submission itself
            SubmissionNotFoundError: the submission does not exist
        """
        if of_id == submission_id:
            raise DuplicateTargetError(f"{kind.value} #{submission_id} cannot be a duplicate of itself")

        if self.store.get_submission(kind, of_id) is None:
            raise DuplicateTargetError(f"target {kind.value} #{of_id} not found")

        if not self.store.mark_duplicate(kind, submission_id, of_id):
            raise SubmissionNotFoundError(kind, submission_id)
        return self.get(kind, submission_id)

    def reopen(self, kind: SubmissionKind, submission_id: int) -> SubmissionRecord:
        """Reset to new, clearing fixed timestamp, notes and duplicate reference."""
        if not self.store.reopen(kind, submission_id):
            raise SubmissionNotFoundError(kind, submission_id)
        return self.get(kind, submission_id)
