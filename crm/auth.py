"""Authentication, identity sync and profile routes and helpers."""

import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi_limiter.depends import RateLimiter
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from . import schemas, crud
from .database import get_db
from .errors import AuthError, NotFoundError
from .identity import IdentityClaims, IdentityVerifier, get_identity_verifier
from .models import User
from .core import get_settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)
router = APIRouter(prefix="/auth", tags=["auth"])


def rate_limit(times: int, seconds: int) -> list:
    """Route dependencies applying a rate limit when limiting is enabled."""
    if not get_settings().RATE_LIMIT_ENABLED:
        return []
    return [Depends(RateLimiter(times=times, seconds=seconds))]


class MemoryCache:
    """
    In-process stand-in for the Redis identity cache.

    Entries expire like Redis keys set with ``ex``.
    """

    def __init__(self, clock=time.monotonic):
        self.clock = clock
        self.store: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        """
        Return the value stored under ``key``.

        Args:
            key (str): Cache key.

        Returns:
            str | None: Cached value, or ``None`` when absent or expired.
        """
        entry = self.store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self.store[key]
            return None
        return value

    async def set(self, key: str, value: str, ex: int | None = None):
        """
        Store ``value`` under ``key``.

        Args:
            key (str): Cache key.
            value (str): Value to store.
            ex (int | None): Lifetime in seconds; ``None`` keeps it forever.
        """
        expires_at = self.clock() + ex if ex else None
        self.store[key] = (value, expires_at)

    async def delete(self, key: str):
        """Drop ``key`` if present."""
        self.store.pop(key, None)


_cache_client: Any | None = None


async def get_cache_client():
    """
    Return a Redis client or an in-memory fallback cache.

    Returns:
        Redis | MemoryCache: Cache backend instance.
    """
    global _cache_client
    if _cache_client is not None:
        return _cache_client
    settings = get_settings()
    try:
        client = redis.from_url(
            settings.REDIS_URL, encoding="utf-8", decode_responses=True
        )
        await client.ping()
        _cache_client = client
    except (RedisError, OSError) as exc:
        logger.warning("Redis unavailable (%s), using in-memory cache", exc)
        _cache_client = MemoryCache()
    return _cache_client


async def cache_identity(uid: str | None, user: User):
    """
    Remember which local user an identity-provider subject maps to.

    Args:
        uid (str | None): Subject id from the token.
        user (User): Local user record.
    """
    if not uid:
        return
    client = await get_cache_client()
    expires = get_settings().USER_CACHE_MINUTES
    await client.set(f"identity:{uid}", user.id, ex=expires * 60)


async def get_cached_user(db: Session, uid: str | None) -> User | None:
    """
    Resolve a subject id through the cache.

    Stale entries, pointing to a user that no longer carries the subject
    id, are ignored.
    """
    if not uid:
        return None
    client = await get_cache_client()
    user_id = await client.get(f"identity:{uid}")
    if not user_id:
        return None
    user = crud.get_user_by_id(db, user_id)
    if user is None or user.firebase_uid != uid:
        await client.delete(f"identity:{uid}")
        return None
    return user


async def get_identity_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> IdentityClaims:
    """Dependency verifying the bearer token of the request."""

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("Missing token")
    return await run_in_threadpool(verifier.verify, credentials.credentials)


async def get_current_user(
    claims: IdentityClaims = Depends(get_identity_claims),
    db: Session = Depends(get_db),
) -> User:
    """
    Dependency that returns the local user owning the request.

    Resolution goes through the identity cache, then the subject id, and
    finally identity sync, so a user is created on first sight.

    Raises:
        AuthError: If the token carries no usable subject id. Such an
            identity would become an unclaimed placeholder user.
    """

    uid = crud.normalize_uid(claims.uid)
    if uid is None:
        raise AuthError()
    user = await get_cached_user(db, uid)
    if user is not None:
        return user
    user = crud.get_user_by_uid(db, uid)
    if user is None:
        user, _ = crud.sync_user(db, claims)
    await cache_identity(user.firebase_uid, user)
    return user


def _require_local_user(db: Session, claims: IdentityClaims) -> User:
    user = crud.get_user_by_uid(db, claims.uid) if claims.uid else None
    if user is None:
        raise NotFoundError("User not found")
    return user


@router.post("/sync", response_model=schemas.SyncResult)
async def sync(
    response: Response,
    claims: IdentityClaims = Depends(get_identity_claims),
    db: Session = Depends(get_db),
):
    """Create or update the local user for the presented identity token."""

    user, outcome = crud.sync_user(db, claims)
    await cache_identity(user.firebase_uid, user)
    if outcome == "created":
        response.status_code = status.HTTP_201_CREATED
    return schemas.SyncResult(
        message=f"User {outcome}", user=schemas.UserOut.model_validate(user)
    )


@router.get(
    "/me",
    response_model=schemas.UserEnvelope,
    dependencies=rate_limit(times=30, seconds=60),
)
def read_me(
    claims: IdentityClaims = Depends(get_identity_claims),
    db: Session = Depends(get_db),
):
    """
    Retrieve the local record of the authenticated user.

    Raises:
        NotFoundError: If the identity was never synced.
    """
    user = _require_local_user(db, claims)
    return schemas.UserEnvelope(user=schemas.UserOut.model_validate(user))


@router.put("/profile", response_model=schemas.UserEnvelope)
def update_profile(
    changes: schemas.ProfileUpdate,
    claims: IdentityClaims = Depends(get_identity_claims),
    db: Session = Depends(get_db),
):
    """
    Update display name, photo URL or preferences of the current user.

    Only fields present in the request change.
    """
    user = _require_local_user(db, claims)
    user = crud.update_profile(db, user, changes.model_dump(exclude_unset=True))
    return schemas.UserEnvelope(user=schemas.UserOut.model_validate(user))
