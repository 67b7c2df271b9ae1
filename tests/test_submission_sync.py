"""Tests for incremental submission sync."""

from unittest.mock import MagicMock

import pytest

from conftest import BUNDLE_ID, add_submission, make_page
from testflight_sync.asc_client import AppInfo, AscAPIError, AscConnectionError, Artifact, AuthError
from testflight_sync.config import AppEntry, ConfigValidationError
from testflight_sync.schemas import SubmissionKind
from testflight_sync.services import MAX_PAGES, PageWalker, StopReason, SubmissionSyncService
from testflight_sync.services.submission_sync import new_submission_from_remote

CRASH = SubmissionKind.CRASH
FEEDBACK = SubmissionKind.FEEDBACK


def paged_client(pages: list, fail_at: int | None = None) -> MagicMock:
    """Client whose page fetches walk ``pages`` in order (1-based fail_at raises)."""
    client = MagicMock()
    client.submission_list_url.return_value = "page-1"
    by_url = {f"page-{i + 1}": page for i, page in enumerate(pages)}

    def fetch(url):
        if fail_at is not None and url == f"page-{fail_at}":
            raise AscConnectionError("connection reset")
        return by_url[url]

    client.fetch_submission_page.side_effect = fetch
    client.fetch_artifact.return_value = None
    return client


def build_pages(count: int, per_page: int = 3, prefix: str = "s") -> list:
    pages = []
    for n in range(count):
        ids = [f"{prefix}{n * per_page + i}" for i in range(per_page)]
        next_url = f"page-{n + 2}" if n + 1 < count else None
        pages.append(make_page(ids, next_url))
    return pages


class TestPageWalker:
    """Tests for pagination termination."""

    def test_stops_at_last_page(self, store, app_id):
        client = paged_client(build_pages(3))
        result = PageWalker(client, store).walk(CRASH, app_id, "remote-app")

        assert result.stop_reason == StopReason.NO_NEXT_PAGE
        assert result.pages_fetched == 3
        assert len(result.new_records) == 9
        assert store.count_total(CRASH) == 9

    def test_second_run_is_idempotent(self, store, app_id):
        """Re-running with nothing new fetches one page and stores nothing."""
        pages = build_pages(3)
        PageWalker(paged_client(pages), store).walk(CRASH, app_id, "remote-app")

        client = paged_client(pages)
        result = PageWalker(client, store).walk(CRASH, app_id, "remote-app")

        assert result.stop_reason == StopReason.CAUGHT_UP
        assert result.pages_fetched == 1
        assert result.new_records == []
        assert store.count_total(CRASH) == 9

    def test_stops_at_first_fully_known_page(self, store, app_id):
        """Pages 1-2 new, page 3 known: pages 4-5 are never requested."""
        pages = build_pages(5)
        # Pages 3..5 were stored by an earlier run
        for page in pages[2:]:
            for sub in page.submissions:
                store.insert_submission(CRASH, new_submission_from_remote(app_id, sub))

        client = paged_client(pages)
        result = PageWalker(client, store).walk(CRASH, app_id, "remote-app")

        assert result.stop_reason == StopReason.CAUGHT_UP
        assert result.pages_fetched == 3
        assert len(result.new_records) == 6
        requested = [c.args[0] for c in client.fetch_submission_page.call_args_list]
        assert requested == ["page-1", "page-2", "page-3"]

    def test_partially_known_page_continues(self, store, app_id):
        """A page with at least one new submission does not stop the walk."""
        pages = build_pages(2)
        store.insert_submission(CRASH, new_submission_from_remote(app_id, pages[0].submissions[0]))

        result = PageWalker(paged_client(pages), store).walk(CRASH, app_id, "remote-app")

        assert result.pages_fetched == 2
        assert len(result.new_records) == 5

    def test_empty_page(self, store, app_id):
        client = paged_client([make_page([])])
        result = PageWalker(client, store).walk(CRASH, app_id, "remote-app")

        assert result.stop_reason == StopReason.EMPTY_PAGE
        assert result.pages_fetched == 1

    def test_empty_page_with_next_link_stops(self, store, app_id):
        client = paged_client([make_page([], next_url="page-2"), make_page(["x"])])
        result = PageWalker(client, store).walk(CRASH, app_id, "remote-app")

        assert result.stop_reason == StopReason.EMPTY_PAGE
        assert client.fetch_submission_page.call_count == 1

    def test_page_limit(self, store, app_id):
        """An endless stream of new pages stops at the page ceiling."""
        client = MagicMock()
        client.submission_list_url.return_value = "page-0"
        counter = iter(range(10_000))

        def endless(url):
            n = next(counter)
            return make_page([f"e{n}"], next_url=f"page-{n + 1}")

        client.fetch_submission_page.side_effect = endless

        result = PageWalker(client, store).walk(CRASH, app_id, "remote-app")

        assert result.stop_reason == StopReason.PAGE_LIMIT
        assert result.pages_fetched == MAX_PAGES == 50
        assert client.fetch_submission_page.call_count == 50
        assert store.count_total(CRASH) == 50

    def test_fetch_failure_keeps_earlier_pages(self, store, app_id):
        """Failure on page 3 leaves pages 1-2 stored and reports the error."""
        client = paged_client(build_pages(5), fail_at=3)
        result = PageWalker(client, store).walk(CRASH, app_id, "remote-app")

        assert result.stop_reason == StopReason.FETCH_FAILED
        assert "connection reset" in result.error
        assert len(result.new_records) == 6
        assert store.count_total(CRASH) == 6


class TestSubmissionSyncService:
    """Tests for the per-app orchestration."""

    @pytest.fixture
    def artifact_dirs(self, tmp_path):
        return {CRASH: tmp_path / "logs", FEEDBACK: tmp_path / "screenshots"}

    def make_client(self, crash_pages, feedback_pages=None):
        client = MagicMock()
        client.find_app.side_effect = lambda bundle_id: AppInfo(
            id=f"remote-{bundle_id}", bundle_id=bundle_id, name=bundle_id.split(".")[-1].title()
        )
        client.submission_list_url.side_effect = lambda kind, app_id: f"{kind.value}:{app_id}:page-1"

        def fetch(url):
            kind, app_id, page = url.split(":")
            pages = crash_pages if kind == "crash" else (feedback_pages or [make_page([])])
            if callable(pages):
                pages = pages(app_id)
            n = int(page.split("-")[1])
            result = pages[n - 1]
            if isinstance(result, Exception):
                raise result
            if result.next_url:
                result = type(result)(result.submissions, f"{kind}:{app_id}:{result.next_url}")
            return result

        client.fetch_submission_page.side_effect = fetch
        client.fetch_artifact.return_value = None
        return client

    def test_sync_new_submissions(self, store, artifact_dirs):
        client = self.make_client(build_pages(2), [make_page(["f1", "f2"])])
        service = SubmissionSyncService(client, store, artifact_dirs)

        result = service.sync([AppEntry(BUNDLE_ID)])

        assert result.success
        assert len(result.new_records(CRASH)) == 6
        assert len(result.new_records(FEEDBACK)) == 2
        assert result.totals[CRASH] == {"total": 6, "unfixed": 6}
        assert result.totals[FEEDBACK] == {"total": 2, "unfixed": 2}
        source = store.get_source(BUNDLE_ID)
        assert source.remote_id == f"remote-{BUNDLE_ID}"
        assert source.name == "App"

    def test_new_records_carry_artifacts(self, store, artifact_dirs):
        """A log available right away is reported on the new record."""
        client = self.make_client([make_page(["s1"])])
        client.fetch_artifact.side_effect = lambda kind, sid: (
            Artifact(b"log", "text/plain") if kind is CRASH else None
        )
        service = SubmissionSyncService(client, store, artifact_dirs)

        result = service.sync([AppEntry(BUNDLE_ID)])

        stream = result.sources[0].streams[CRASH]
        assert len(stream.new_records) == 1
        assert stream.new_records[0].has_artifact is True
        assert stream.recovered == []
        assert stream.artifacts_downloaded == 1

    def test_only_selected_kinds(self, store, artifact_dirs):
        client = self.make_client(build_pages(1))
        service = SubmissionSyncService(client, store, artifact_dirs)

        result = service.sync([AppEntry(BUNDLE_ID)], kinds=(CRASH,))

        assert list(result.sources[0].streams) == [CRASH]
        assert FEEDBACK not in result.totals

    def test_bundle_filter(self, store, artifact_dirs):
        client = self.make_client(build_pages(1))
        service = SubmissionSyncService(client, store, artifact_dirs)

        result = service.sync([AppEntry(BUNDLE_ID), AppEntry("com.example.other")], bundle_id="com.example.other")

        assert [s.bundle_id for s in result.sources] == ["com.example.other"]

    def test_no_matching_app(self, store, artifact_dirs):
        service = SubmissionSyncService(self.make_client([]), store, artifact_dirs)

        with pytest.raises(ConfigValidationError):
            service.sync([AppEntry(BUNDLE_ID)], bundle_id="com.missing")

    def test_unresolved_app_does_not_stop_others(self, store, artifact_dirs):
        client = self.make_client(build_pages(1))
        client.find_app.side_effect = lambda bundle_id: (
            None if bundle_id == "com.example.gone" else AppInfo(id=f"remote-{bundle_id}", bundle_id=bundle_id)
        )
        service = SubmissionSyncService(client, store, artifact_dirs)

        result = service.sync([AppEntry("com.example.gone"), AppEntry(BUNDLE_ID)])

        assert not result.success
        assert result.sources[0].error is not None
        assert result.sources[1].success
        assert len(result.new_records(CRASH)) == 3
        assert store.get_source("com.example.gone") is None

    def test_lookup_error_is_isolated(self, store, artifact_dirs):
        client = self.make_client(build_pages(1))

        def find(bundle_id):
            if bundle_id == "com.example.broken":
                raise AscAPIError(403, "Forbidden")
            return AppInfo(id=f"remote-{bundle_id}", bundle_id=bundle_id)

        client.find_app.side_effect = find
        service = SubmissionSyncService(client, store, artifact_dirs)

        result = service.sync([AppEntry("com.example.broken"), AppEntry(BUNDLE_ID)])

        assert len(result.errors) == 1
        assert result.errors[0].startswith("com.example.broken:")
        assert store.count_total(CRASH) == 3

    def test_page_failure_isolated_per_app(self, store, artifact_dirs):
        """A failed page for one app keeps its earlier pages and other apps still sync."""

        def crash_pages(app_id):
            pages = build_pages(3, prefix=app_id)
            if app_id == "remote-com.example.flaky":
                pages[1] = AscConnectionError("timeout")
            return pages

        client = self.make_client(crash_pages)
        service = SubmissionSyncService(client, store, artifact_dirs)

        result = service.sync([AppEntry("com.example.flaky"), AppEntry(BUNDLE_ID)])

        flaky, healthy = result.sources
        assert flaky.streams[CRASH].stop_reason == StopReason.FETCH_FAILED
        assert len(flaky.streams[CRASH].new_records) == 3
        assert flaky.streams[FEEDBACK].error is None
        assert healthy.success
        assert len(healthy.streams[CRASH].new_records) == 9
        assert store.count_total(CRASH) == 12
        assert not result.success

    def test_failed_stream_still_recovers_artifacts(self, store, artifact_dirs):
        """A page failure ends pagination but every stored row still gets its artifact attempt."""
        app_id = store.upsert_source(BUNDLE_ID, f"remote-{BUNDLE_ID}")
        old_id = add_submission(store, app_id, "old-1", "2024-11-01T10:00:00+00:00")

        pages = build_pages(2)
        pages[1] = AscConnectionError("timeout")
        client = self.make_client(pages)
        client.fetch_artifact.return_value = Artifact(b"log", "text/plain")
        service = SubmissionSyncService(client, store, artifact_dirs)

        result = service.sync([AppEntry(BUNDLE_ID)], kinds=(CRASH,))

        stream = result.sources[0].streams[CRASH]
        assert not result.success
        assert stream.stop_reason == StopReason.FETCH_FAILED
        assert client.fetch_artifact.call_count == 4
        assert [r.id for r in stream.recovered] == [old_id]
        assert all(r.has_artifact for r in stream.new_records)
        assert len(stream.new_records) == 3
        assert store.submissions_missing_artifact(CRASH) == []

    def test_auth_failure_ends_run(self, store, artifact_dirs):
        """A token that cannot be produced is not isolated per app."""
        client = self.make_client(build_pages(1))
        client.find_app.side_effect = AuthError("failed to encode JWT")
        service = SubmissionSyncService(client, store, artifact_dirs)

        with pytest.raises(AuthError):
            service.sync([AppEntry(BUNDLE_ID), AppEntry("com.example.other")])

        assert client.find_app.call_count == 1

    def test_second_sync_finds_nothing_new(self, store, artifact_dirs):
        pages = build_pages(3)
        service = SubmissionSyncService(self.make_client(pages), store, artifact_dirs)
        service.sync([AppEntry(BUNDLE_ID)])

        client = self.make_client(pages)
        result = SubmissionSyncService(client, store, artifact_dirs).sync([AppEntry(BUNDLE_ID)])

        assert result.new_records(CRASH) == []
        assert result.sources[0].streams[CRASH].pages_fetched == 1
        assert store.count_total(CRASH) == 9
