"""Identity token verification.

The API never issues identities itself in production: callers present a
token minted by the identity provider and this module turns it into
:class:`IdentityClaims`. A local HS256 verifier exists for development
and tests.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx
from jose import ExpiredSignatureError, JWTError, jwt

from .core import get_settings
from .errors import AuthError, ProviderConfigurationError

logger = logging.getLogger(__name__)

_MAX_AGE = re.compile(r"max-age=(\d+)")


@dataclass
class IdentityClaims:
    """Verified facts about the caller taken from an identity token."""

    uid: str | None
    email: str | None
    name: str | None = None
    picture: str | None = None
    sign_in_provider: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IdentityClaims":
        firebase = payload.get("firebase") or {}
        return cls(
            uid=payload.get("user_id") or payload.get("sub"),
            email=payload.get("email"),
            name=payload.get("name"),
            picture=payload.get("picture"),
            sign_in_provider=firebase.get("sign_in_provider"),
        )


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> IdentityClaims: ...


class FirebaseTokenVerifier:
    """
    Verify RS256 ID tokens issued by Firebase Authentication.

    Signing keys are downloaded from ``jwks_url`` and kept until the
    ``Cache-Control: max-age`` of the key response runs out.
    """

    def __init__(self, project_id: str | None, jwks_url: str, timeout: float = 10.0):
        self.project_id = project_id
        self.jwks_url = jwks_url
        self.timeout = timeout
        self._keys: dict[str, Any] | None = None
        self._expires_at = 0.0

    def _signing_keys(self) -> dict[str, Any]:
        if self._keys is not None and time.monotonic() < self._expires_at:
            return self._keys
        try:
            response = httpx.get(self.jwks_url, timeout=self.timeout)
            response.raise_for_status()
            keys = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Could not fetch identity provider keys: %s", exc)
            raise ProviderConfigurationError(
                "Identity provider signing keys are unavailable"
            ) from exc
        match = _MAX_AGE.search(response.headers.get("cache-control", ""))
        ttl = int(match.group(1)) if match else 3600
        self._keys = keys
        self._expires_at = time.monotonic() + ttl
        return keys

    def verify(self, token: str) -> IdentityClaims:
        if not self.project_id:
            raise ProviderConfigurationError(
                "Identity provider is not configured on server. Set FIREBASE_PROJECT_ID."
            )
        keys = self._signing_keys()
        try:
            payload = jwt.decode(
                token,
                keys,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=f"https://securetoken.google.com/{self.project_id}",
            )
        except ExpiredSignatureError:
            raise AuthError("Token has expired")
        except JWTError:
            raise AuthError()
        if not payload.get("sub"):
            raise AuthError()
        return IdentityClaims.from_payload(payload)


class LocalTokenVerifier:
    """Verify HS256 tokens signed with ``SECRET_KEY``."""

    def __init__(self, secret_key: str, algorithm: str):
        self.secret_key = secret_key
        self.algorithm = algorithm

    def verify(self, token: str) -> IdentityClaims:
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise AuthError("Token has expired")
        except JWTError:
            raise AuthError()
        if payload.get("scope", "access") != "access":
            raise AuthError()
        if not payload.get("sub"):
            raise AuthError()
        return IdentityClaims.from_payload(payload)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Create a signed local token.

    ``data`` carries the provider-style claims: ``sub`` (subject id),
    ``email``, ``name``, ``picture`` and optionally ``firebase``.
    """
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "scope": "access"})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


_firebase_verifier: FirebaseTokenVerifier | None = None


def get_identity_verifier() -> IdentityVerifier:
    """Return the verifier selected by ``AUTH_PROVIDER``."""
    global _firebase_verifier
    settings = get_settings()
    provider = settings.AUTH_PROVIDER.lower()
    if provider == "local":
        return LocalTokenVerifier(settings.SECRET_KEY, settings.ALGORITHM)
    if provider != "firebase":
        raise ProviderConfigurationError(f"Unknown AUTH_PROVIDER '{settings.AUTH_PROVIDER}'")
    if (
        _firebase_verifier is None
        or _firebase_verifier.project_id != settings.FIREBASE_PROJECT_ID
    ):
        _firebase_verifier = FirebaseTokenVerifier(
            settings.FIREBASE_PROJECT_ID, settings.FIREBASE_JWKS_URL
        )
    return _firebase_verifier
