"""
ES256 JWT generation for App Store Connect API authentication.
"""

import logging
import time

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

AUDIENCE = "appstoreconnect-v1"
TOKEN_TTL_SECONDS = 20 * 60


class AuthError(Exception):
    """Credential material is unusable or a token could not be produced."""

    pass


class TokenProvider:
    """
    Produces a fresh short-lived bearer token for every request.

    The private key is parsed up front so broken key material fails before
    any network call is made.
    """

    def __init__(self, issuer_id: str, key_id: str, private_key: str):
        if not issuer_id or not key_id:
            raise AuthError("issuer_id and key_id are required")

        try:
            key = serialization.load_pem_private_key(private_key.encode(), password=None)
        except (ValueError, TypeError) as e:
            raise AuthError(f"failed to parse .p8 private key: {e}") from e

        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise AuthError("private key must be an EC (P-256) key")

        self.issuer_id = issuer_id
        self.key_id = key_id
        self._key = key

    def __repr__(self) -> str:
        return f"<TokenProvider key_id={self.key_id}>"

    def current_token(self) -> str:
        """Generate a signed token valid for twenty minutes."""
        now = int(time.time())
        claims = {
            "iss": self.issuer_id,
            "iat": now,
            "exp": now + TOKEN_TTL_SECONDS,
            "aud": AUDIENCE,
        }
        headers = {"kid": self.key_id, "typ": "JWT"}

        try:
            return jwt.encode(claims, self._key, algorithm="ES256", headers=headers)
        except jwt.PyJWTError as e:
            raise AuthError(f"failed to encode JWT: {e}") from e
