"""Test fixtures and utilities."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from testflight_sync.asc_client import RemoteSubmission, SubmissionPage
from testflight_sync.schemas import SubmissionKind
from testflight_sync.state_store import NewSubmission, StateStore

BUNDLE_ID = "com.example.app"


def make_remote(submission_id: str, created: str = "2024-11-19T10:00:00Z", **attrs) -> RemoteSubmission:
    """Build a RemoteSubmission through the same parser the client uses."""
    payload = {
        "type": "betaFeedbackCrashSubmissions",
        "id": submission_id,
        "attributes": {"createdDate": created, **attrs},
    }
    return RemoteSubmission.from_api_response(payload)


def make_page(ids: list[str], next_url: str | None = None) -> SubmissionPage:
    """Page of submissions with decreasing creation timestamps."""
    submissions = [
        make_remote(sid, created=f"2024-11-19T10:{59 - (i % 60):02d}:00Z") for i, sid in enumerate(ids)
    ]
    return SubmissionPage(submissions=submissions, next_url=next_url)


def add_submission(store: StateStore, app_id: int, submission_id: str, created_at: str, **fields) -> int:
    """Insert a submission and return its local id."""
    local_id = store.insert_submission(
        fields.pop("kind", SubmissionKind.CRASH),
        NewSubmission(app_id=app_id, submission_id=submission_id, created_at=created_at, **fields),
    )
    assert local_id is not None
    return local_id


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_feedback.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def app_id(store) -> int:
    """Local id of one registered app."""
    return store.upsert_source(BUNDLE_ID, "1234567890", "Example")


@pytest.fixture
def ec_private_key() -> ec.EllipticCurvePrivateKey:
    """Throwaway P-256 key, the kind App Store Connect issues."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def ec_private_key_pem(ec_private_key) -> str:
    """The throwaway key as PKCS#8 PEM (.p8 contents)."""
    return ec_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def token_provider() -> MagicMock:
    """Token provider stub returning a fixed bearer token."""
    provider = MagicMock()
    provider.current_token.return_value = "test-jwt"
    return provider


@pytest.fixture
def sample_crash_submission() -> dict:
    """Sample betaFeedbackCrashSubmissions resource."""
    return {
        "type": "betaFeedbackCrashSubmissions",
        "id": "crash-abc-1",
        "attributes": {
            "createdDate": "2024-11-19T08:14:22.123-08:00",
            "comment": "App crashed when opening settings",
            "email": "tester@example.com",
            "deviceModel": "iPhone15,2",
            "osVersion": "17.1.1",
            "locale": "en-US",
            "timeZone": "America/Los_Angeles",
            "architecture": "arm64e",
            "connectionType": "WIFI",
            "appUptimeInMilliseconds": 53012,
            "batteryPercentage": 81,
            "appPlatform": "IOS",
            "devicePlatform": "IOS",
            "deviceFamily": "IPHONE",
            "buildBundleId": "com.example.app",
        },
        "relationships": {
            "build": {"data": {"type": "builds", "id": "build-77"}},
        },
    }


@pytest.fixture
def config_dir(tmp_path, ec_private_key_pem) -> Path:
    """Data directory with a valid config and inline key."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "AuthKey_TEST.p8").write_text(ec_private_key_pem)
    (data_dir / "config.yaml").write_text(
        "api:\n"
        '  issuer_id: "issuer-123"\n'
        '  key_id: "KEY123"\n'
        '  private_key: "AuthKey_TEST.p8"\n'
        "apps:\n"
        f'  - bundle_id: "{BUNDLE_ID}"\n'
        '    name: "Example"\n'
        '  - "com.example.other"\n'
    )
    return data_dir


@pytest.fixture(autouse=True)
def clean_asc_env(monkeypatch):
    """Keep credentials from the developer's shell out of config tests."""
    for name in ("ASC_ISSUER_ID", "ASC_KEY_ID", "ASC_PRIVATE_KEY", "ASC_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
