"""
App Store Connect API Client.

Provides:
- ES256 bearer tokens, regenerated per request
- App lookup by bundle id
- Paged crash and screenshot submission listings
- Crash log and screenshot download ("not ready" is None, not an error)
- Retry/backoff for transient network failures
"""

from .auth import AuthError, TokenProvider
from .client import (
    AppInfo,
    Artifact,
    AscAPIError,
    AscClient,
    AscConnectionError,
    AscError,
    RemoteSubmission,
    SubmissionPage,
)

__all__ = [
    "AppInfo",
    "Artifact",
    "AscAPIError",
    "AscClient",
    "AscConnectionError",
    "AscError",
    "AuthError",
    "RemoteSubmission",
    "SubmissionPage",
    "TokenProvider",
]
