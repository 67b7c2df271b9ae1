"""Incremental TestFlight submission synchronization.

For every configured app this service resolves the App Store Connect app,
walks the newest-first submission pages until it reaches a page it has
already fully stored, and then backfills missing crash logs/screenshots.

The stop-at-first-known-page rule relies on App Store Connect returning
submissions strictly ordered by createdDate descending. A submission that
appears later with an older createdDate, behind a page that is already
fully known, would not be picked up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from testflight_sync.asc_client import AscError
from testflight_sync.config import ConfigValidationError
from testflight_sync.schemas import SubmissionKind
from testflight_sync.services.artifact_recovery import ArtifactRecovery
from testflight_sync.state_store import NewSubmission

if TYPE_CHECKING:
    from pathlib import Path

    from testflight_sync.asc_client import AscClient, RemoteSubmission
    from testflight_sync.config import AppEntry
    from testflight_sync.state_store import StateStore, SubmissionRecord

logger = logging.getLogger(__name__)

MAX_PAGES = 50

ALL_KINDS = (SubmissionKind.CRASH, SubmissionKind.FEEDBACK)


class StopReason(str, Enum):
    """Why pagination stopped."""

    CAUGHT_UP = "caught_up"  # a whole page was already stored
    EMPTY_PAGE = "empty_page"
    NO_NEXT_PAGE = "no_next_page"
    PAGE_LIMIT = "page_limit"
    FETCH_FAILED = "fetch_failed"


def new_submission_from_remote(app_id: int, remote: RemoteSubmission) -> NewSubmission:
    """Map an API submission onto the store's insert payload."""
    return NewSubmission(
        app_id=app_id,
        submission_id=remote.id,
        created_at=remote.created_date,
        device_model=remote.device_model,
        os_version=remote.os_version,
        locale=remote.locale,
        time_zone=remote.time_zone,
        app_platform=remote.app_platform,
        device_platform=remote.device_platform,
        device_family=remote.device_family,
        architecture=remote.architecture,
        connection_type=remote.connection_type,
        app_uptime_ms=remote.app_uptime_ms,
        battery_pct=remote.battery_percentage,
        tester_email=remote.email,
        tester_comment=remote.comment,
        build_bundle_id=remote.build_bundle_id,
        build_id=remote.build_id,
    )


@dataclass
class WalkResult:
    """Outcome of walking one submission stream of one app."""

    kind: SubmissionKind
    new_records: list[SubmissionRecord] = field(default_factory=list)
    pages_fetched: int = 0
    stop_reason: StopReason | None = None
    error: str | None = None


class PageWalker:
    """Follows ``links.next`` cursors, inserting every submission it sees.

    Pages are requested strictly one after another since each request URL
    comes from the previous response.
    """

    def __init__(self, client: AscClient, store: StateStore, max_pages: int = MAX_PAGES) -> None:
        self.client = client
        self.store = store
        self.max_pages = max_pages

    def walk(
        self,
        kind: SubmissionKind,
        app_id: int,
        remote_app_id: str,
        bundle_id: str = "",
    ) -> WalkResult:
        """Fetch and store all submissions newer than what is already known.

        Each insert commits on its own, so a failure on page N keeps
        everything stored from pages 1..N-1 (and the part of page N that was
        processed). A failed page fetch ends the walk with FETCH_FAILED and
        the error message; it is not raised.

        Args:
            kind: Submission stream to walk.
            app_id: Local app id new rows are attached to.
            remote_app_id: App Store Connect app id.
            bundle_id: Used for log messages only.

        Returns:
            WalkResult listing the newly stored records.
        """
        result = WalkResult(kind=kind)
        url = self.client.submission_list_url(kind, remote_app_id)

        while True:
            result.pages_fetched += 1
            logger.info(
                "Fetching %s page %d for %s", kind.value, result.pages_fetched, bundle_id or remote_app_id
            )

            try:
                page = self.client.fetch_submission_page(url)
            except AscError as e:
                logger.error("Failed to fetch %s page %d: %s", kind.value, result.pages_fetched, e)
                result.stop_reason = StopReason.FETCH_FAILED
                result.error = f"{kind.value} page {result.pages_fetched}: {e}"
                return result

            all_known = True
            for remote in page.submissions:
                local_id = self.store.insert_submission(kind, new_submission_from_remote(app_id, remote))
                if local_id is None:
                    continue

                all_known = False
                record = self.store.get_submission(kind, local_id)
                if record is not None:
                    result.new_records.append(record)

            if page.submissions and all_known:
                result.stop_reason = StopReason.CAUGHT_UP
            elif not page.submissions:
                result.stop_reason = StopReason.EMPTY_PAGE
            elif not page.next_url:
                result.stop_reason = StopReason.NO_NEXT_PAGE
            elif result.pages_fetched >= self.max_pages:
                logger.warning(
                    "Hit %d page limit, stopping %s pagination for %s",
                    self.max_pages,
                    kind.value,
                    bundle_id or remote_app_id,
                )
                result.stop_reason = StopReason.PAGE_LIMIT
            else:
                url = page.next_url
                continue

            logger.debug(
                "%s pagination stopped after %d page(s): %s",
                kind.value,
                result.pages_fetched,
                result.stop_reason.value,
            )
            return result


@dataclass
class StreamSyncResult:
    """New and recovered submissions of one kind for one app."""

    kind: SubmissionKind
    new_records: list[SubmissionRecord] = field(default_factory=list)
    recovered: list[SubmissionRecord] = field(default_factory=list)
    pages_fetched: int = 0
    stop_reason: StopReason | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def artifacts_downloaded(self) -> int:
        return sum(1 for r in self.new_records if r.has_artifact) + len(self.recovered)


@dataclass
class SourceSyncResult:
    """Sync outcome for one configured app."""

    bundle_id: str
    app_name: str | None = None
    streams: dict[SubmissionKind, StreamSyncResult] = field(default_factory=dict)
    error: str | None = None

    @property
    def errors(self) -> list[str]:
        errors = [self.error] if self.error else []
        errors.extend(s.error for s in self.streams.values() if s.error)
        return errors

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class SyncResult:
    """Result of a full sync run."""

    sources: list[SourceSyncResult] = field(default_factory=list)
    totals: dict[SubmissionKind, dict[str, int]] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """True when every app synced; per-artifact warnings do not count."""
        return all(s.success for s in self.sources)

    @property
    def errors(self) -> list[str]:
        return [f"{s.bundle_id}: {e}" for s in self.sources for e in s.errors]

    @property
    def warnings(self) -> list[str]:
        return [w for s in self.sources for stream in s.streams.values() for w in stream.warnings]

    def new_records(self, kind: SubmissionKind) -> list[SubmissionRecord]:
        return [r for s in self.sources if kind in s.streams for r in s.streams[kind].new_records]

    def recovered(self, kind: SubmissionKind) -> list[SubmissionRecord]:
        return [r for s in self.sources if kind in s.streams for r in s.streams[kind].recovered]


class SubmissionSyncService:
    """Service for pulling TestFlight submissions into the local store.

    Apps are processed one after another; a failure for one app (unknown
    bundle id, failed page fetch) is recorded on its result and the
    remaining apps still sync.
    """

    def __init__(
        self,
        client: AscClient,
        store: StateStore,
        artifact_dirs: dict[SubmissionKind, Path],
        max_pages: int = MAX_PAGES,
    ) -> None:
        """Initialize the sync service.

        Args:
            client: Client for the App Store Connect API.
            store: State store for submissions.
            artifact_dirs: Where crash logs and screenshots are written.
            max_pages: Safety ceiling on pages per stream and run.
        """
        self.client = client
        self.store = store
        self.walker = PageWalker(client, store, max_pages=max_pages)
        self.recovery = ArtifactRecovery(client, store, artifact_dirs)

    def sync(
        self,
        apps: list[AppEntry],
        bundle_id: str | None = None,
        kinds: tuple[SubmissionKind, ...] = ALL_KINDS,
    ) -> SyncResult:
        """Sync every configured app, or just ``bundle_id``.

        An unknown bundle id or a failed request is recorded on that app's
        result. Credential failures are not: a token that cannot be signed
        fails every app the same way, so AuthError ends the run.

        Raises:
            ConfigValidationError: if no configured app matches.
            AuthError: if a request token cannot be produced.
        """
        selected = [a for a in apps if bundle_id is None or a.bundle_id == bundle_id]
        if not selected:
            raise ConfigValidationError(
                f"no matching apps found in config{f' for {bundle_id}' if bundle_id else ''}"
            )

        result = SyncResult()
        for app in selected:
            result.sources.append(self.sync_source(app, kinds))

        for kind in kinds:
            result.totals[kind] = {
                "total": self.store.count_total(kind),
                "unfixed": self.store.count_unfixed(kind),
            }

        logger.info(
            "Sync completed: %d app(s), %d new crash(es), %d new feedback(s), %d error(s)",
            len(result.sources),
            len(result.new_records(SubmissionKind.CRASH)),
            len(result.new_records(SubmissionKind.FEEDBACK)),
            len(result.errors),
        )
        return result

    def sync_source(
        self,
        app: AppEntry,
        kinds: tuple[SubmissionKind, ...] = ALL_KINDS,
    ) -> SourceSyncResult:
        """Resolve one app, walk its streams and backfill its artifacts."""
        source = SourceSyncResult(bundle_id=app.bundle_id, app_name=app.name)

        try:
            remote = self.client.find_app(app.bundle_id)
        except AscError as e:
            logger.error("Failed to resolve %s: %s", app.bundle_id, e)
            source.error = f"could not resolve app: {e}"
            return source

        if remote is None:
            logger.error("App %s not found in App Store Connect", app.bundle_id)
            source.error = f"app '{app.bundle_id}' not found in App Store Connect"
            return source

        source.app_name = remote.name or app.name
        app_id = self.store.upsert_source(app.bundle_id, remote.id, source.app_name)
        logger.info("Syncing %s (%s)", app.bundle_id, source.app_name or "unknown")

        for kind in kinds:
            source.streams[kind] = self._sync_stream(kind, app_id, remote.id, app.bundle_id)

        return source

    def _sync_stream(
        self,
        kind: SubmissionKind,
        app_id: int,
        remote_app_id: str,
        bundle_id: str,
    ) -> StreamSyncResult:
        walk = self.walker.walk(kind, app_id, remote_app_id, bundle_id)
        stream = StreamSyncResult(
            kind=kind,
            new_records=walk.new_records,
            pages_fetched=walk.pages_fetched,
            stop_reason=walk.stop_reason,
            error=walk.error,
        )
        # A failed walk only ends pagination; stored rows still get their artifact attempt
        recovery = self.recovery.recover(kind, app_id=app_id)
        stream.warnings = recovery.warnings

        new_index = {r.id: i for i, r in enumerate(stream.new_records)}
        for record in recovery.recovered:
            if record.id in new_index:
                stream.new_records[new_index[record.id]] = record
            else:
                stream.recovered.append(record)

        return stream
