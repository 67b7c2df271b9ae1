"""
App Store Connect API client implementation (TestFlight feedback subset).
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..schemas import SubmissionKind, normalize_timestamp

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.appstoreconnect.apple.com"

CRASH_FIELDS = [
    "createdDate",
    "comment",
    "email",
    "deviceModel",
    "osVersion",
    "locale",
    "timeZone",
    "architecture",
    "connectionType",
    "appUptimeInMilliseconds",
    "diskBytesAvailable",
    "diskBytesTotal",
    "batteryPercentage",
    "screenWidthInPoints",
    "screenHeightInPoints",
    "appPlatform",
    "devicePlatform",
    "deviceFamily",
    "buildBundleId",
]

SCREENSHOT_FIELDS = [
    "createdDate",
    "comment",
    "email",
    "deviceModel",
    "osVersion",
    "locale",
    "timeZone",
    "connectionType",
    "batteryPercentage",
    "appPlatform",
    "devicePlatform",
    "deviceFamily",
    "buildBundleId",
]


class AscError(Exception):
    """Base exception for App Store Connect client errors."""
    pass


class AscAPIError(AscError):
    """API returned an error response."""
    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        detail = f"{message}: {response_body}" if response_body else message
        super().__init__(f"App Store Connect API error {status_code}: {detail}")


class AscConnectionError(AscError):
    """Failed to connect to App Store Connect."""
    pass


@dataclass
class AppInfo:
    """An app visible to the API key."""
    id: str
    bundle_id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "AppInfo":
        attrs = data.get("attributes") or {}
        return cls(
            id=data["id"],
            bundle_id=attrs.get("bundleId"),
            name=attrs.get("name"),
        )


@dataclass
class RemoteSubmission:
    """
    One crash or screenshot submission as returned by the API.

    Every attribute is optional; absent fields come back as None.
    """
    id: str
    created_date: str = ""
    comment: Optional[str] = None
    email: Optional[str] = None
    device_model: Optional[str] = None
    os_version: Optional[str] = None
    locale: Optional[str] = None
    time_zone: Optional[str] = None
    architecture: Optional[str] = None
    connection_type: Optional[str] = None
    app_uptime_ms: Optional[int] = None
    battery_percentage: Optional[int] = None
    app_platform: Optional[str] = None
    device_platform: Optional[str] = None
    device_family: Optional[str] = None
    build_bundle_id: Optional[str] = None
    build_id: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "RemoteSubmission":
        """Create from a JSON:API resource object."""
        attrs = data.get("attributes") or {}
        relationships = data.get("relationships") or {}
        build = (relationships.get("build") or {}).get("data") or {}

        return cls(
            id=str(data["id"]),
            created_date=normalize_timestamp(attrs.get("createdDate")),
            comment=attrs.get("comment"),
            email=attrs.get("email"),
            device_model=attrs.get("deviceModel"),
            os_version=attrs.get("osVersion"),
            locale=attrs.get("locale"),
            time_zone=attrs.get("timeZone"),
            architecture=attrs.get("architecture"),
            connection_type=attrs.get("connectionType"),
            app_uptime_ms=attrs.get("appUptimeInMilliseconds"),
            battery_percentage=attrs.get("batteryPercentage"),
            app_platform=attrs.get("appPlatform"),
            device_platform=attrs.get("devicePlatform"),
            device_family=attrs.get("deviceFamily"),
            build_bundle_id=attrs.get("buildBundleId"),
            build_id=build.get("id"),
        )


@dataclass
class SubmissionPage:
    """One page of submissions plus the cursor to the next page."""
    submissions: list[RemoteSubmission]
    next_url: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict) -> "SubmissionPage":
        links = data.get("links") or {}
        return cls(
            submissions=[RemoteSubmission.from_api_response(d) for d in data.get("data") or []],
            next_url=links.get("next"),
        )


@dataclass
class Artifact:
    """Downloaded crash log or screenshot payload."""
    content: bytes
    mime_type: str


class AscClient:
    """
    Client for the App Store Connect API.

    Features:
    - Resolve apps by bundle id
    - Walk crash and screenshot submission pages
    - Download crash logs and screenshots (None while not yet available)
    - Automatic retry with backoff
    """

    DEFAULT_TIMEOUT = 30
    PAGE_SIZE = 200

    def __init__(
        self,
        token_provider,
        base_url: str = DEFAULT_BASE_URL,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize client.

        Args:
            token_provider: Object with ``current_token() -> str``; called once per request
            base_url: API root (override for testing)
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": "testflight-sync/0.2.0",
            "Accept": "application/json",
        })

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        authenticated: bool = True,
        allow_not_found: bool = False,
    ) -> Optional[requests.Response]:
        """
        Make a GET request with error handling.

        ``endpoint`` may be a path below base_url or an absolute URL (as
        returned in pagination links). With ``allow_not_found`` a 404 yields
        None instead of raising.
        """
        url = endpoint if endpoint.startswith(("http://", "https://")) else f"{self.base_url}{endpoint}"

        headers = {}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.token_provider.current_token()}"

        logger.debug(f"GET {url}")
        try:
            response = self.session.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise AscConnectionError(f"Failed to connect to {url}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise AscConnectionError(f"Request to {url} timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise AscError(f"Request failed: {e}") from e

        logger.debug(f"Response status: {response.status_code}")

        if allow_not_found and response.status_code == 404:
            return None

        if not response.ok:
            raise AscAPIError(
                status_code=response.status_code,
                message=response.reason or "",
                response_body=response.text or None,
            )

        return response

    def _get_json(self, endpoint: str, params: Optional[dict] = None, allow_not_found: bool = False) -> Optional[dict]:
        response = self._request(endpoint, params=params, allow_not_found=allow_not_found)
        if response is None:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise AscError(f"Invalid JSON from {response.url}: {e}") from e

    # Apps

    def list_apps(self) -> list[AppInfo]:
        """List every app visible to the API key."""
        data = self._get_json("/v1/apps", params={"fields[apps]": "name,bundleId"})
        return [AppInfo.from_api_response(a) for a in data.get("data") or []]

    def find_app(self, bundle_id: str) -> Optional[AppInfo]:
        """Resolve a bundle id to its App Store Connect app (None if unknown)."""
        data = self._get_json(
            "/v1/apps",
            params={"filter[bundleId]": bundle_id, "fields[apps]": "name,bundleId"},
        )
        apps = data.get("data") or []
        if not apps:
            return None
        return AppInfo.from_api_response(apps[0])

    # Submissions

    def submission_list_url(self, kind: SubmissionKind, app_id: str) -> str:
        """Build the first page URL: fixed projection, newest first, fixed page size."""
        fields = CRASH_FIELDS if kind is SubmissionKind.CRASH else SCREENSHOT_FIELDS
        query = urlencode(
            {
                f"fields[{kind.resource}]": ",".join(fields),
                "sort": "-createdDate",
                "limit": self.PAGE_SIZE,
            },
            safe="[],-",
        )
        return f"{self.base_url}/v1/apps/{app_id}/{kind.resource}?{query}"

    def fetch_submission_page(self, url: str) -> SubmissionPage:
        """Fetch one page of submissions from a first-page or ``links.next`` URL."""
        return SubmissionPage.from_api_response(self._get_json(url))

    # Artifacts

    def fetch_crash_log(self, submission_id: str) -> Optional[Artifact]:
        """Download the crash log text. Returns None if not yet available."""
        data = self._get_json(
            f"/v1/{SubmissionKind.CRASH.resource}/{submission_id}/crashLog",
            params={"fields[betaCrashLogs]": "logText"},
            allow_not_found=True,
        )
        if data is None:
            return None

        attrs = (data.get("data") or {}).get("attributes") or {}
        log_text = attrs.get("logText")
        if log_text is None:
            return None
        return Artifact(content=log_text.encode("utf-8"), mime_type="text/plain")

    def fetch_screenshot(self, submission_id: str) -> Optional[Artifact]:
        """
        Download the first screenshot of a feedback submission.

        Returns None while App Store Connect has not processed the image yet.
        The image URL is pre-signed, so it is fetched without the bearer token.
        """
        data = self._get_json(
            f"/v1/{SubmissionKind.FEEDBACK.resource}/{submission_id}",
            params={f"fields[{SubmissionKind.FEEDBACK.resource}]": "screenshots"},
            allow_not_found=True,
        )
        if data is None:
            return None

        attrs = (data.get("data") or {}).get("attributes") or {}
        screenshots: list[dict[str, Any]] = attrs.get("screenshots") or []
        image_url = next((s.get("url") for s in screenshots if s.get("url")), None)
        if image_url is None:
            return None

        response = self._request(image_url, authenticated=False, allow_not_found=True)
        if response is None:
            return None

        mime_type = response.headers.get("Content-Type", "application/octet-stream")
        return Artifact(content=response.content, mime_type=mime_type.split(";")[0].strip())

    def fetch_artifact(self, kind: SubmissionKind, submission_id: str) -> Optional[Artifact]:
        """Download the artifact for either kind of submission."""
        if kind is SubmissionKind.CRASH:
            return self.fetch_crash_log(submission_id)
        return self.fetch_screenshot(submission_id)
