"""Application configuration and settings management.

This module defines the application settings loaded from environment
variables and provides helpers for accessing cached settings and
configuring logging.
"""

import logging
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Attributes:
        DATABASE_URL: Database connection string.
        AUTH_PROVIDER: Identity token verifier, ``firebase`` or ``local``.
        FIREBASE_PROJECT_ID: Identity provider project expected in tokens.
        FIREBASE_JWKS_URL: Location of the provider's public signing keys.
        SECRET_KEY: Secret key used to sign local tokens.
        ALGORITHM: Algorithm used to encode local tokens.
        ACCESS_TOKEN_EXPIRE_MINUTES: Local token lifetime in minutes.
        ALLOWED_ORIGINS: Allowed origins for CORS.
        REDIS_URL: Redis connection URL for rate limiting and caching.
        RATE_LIMIT_ENABLED: Whether rate limited routes are guarded.
        USER_CACHE_MINUTES: Lifetime of cached identity to user mappings.
        ADMIN_KEY: Shared key for maintenance endpoints, disabled when unset.
        LOG_LEVEL: Root logging level.
    """

    DATABASE_URL: str = "sqlite:///./crm.db"
    AUTH_PROVIDER: str = "firebase"
    FIREBASE_PROJECT_ID: str | None = None
    FIREBASE_JWKS_URL: str = (
        "https://www.googleapis.com/service_accounts/v1/jwk/"
        "securetoken@system.gserviceaccount.com"
    )
    SECRET_KEY: str = "dev-secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    ALLOWED_ORIGINS: List[str] = ["*"]
    REDIS_URL: str = "redis://redis:6379"
    RATE_LIMIT_ENABLED: bool = True
    USER_CACHE_MINUTES: int = 30
    ADMIN_KEY: str | None = None
    LOG_LEVEL: str = "INFO"

    class Config:
        """Pydantic configuration for loading environment variables."""

        env_file = ".env"
        extra = "allow"


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings.

    The settings object is cached to prevent reloading environment
    variables multiple times during application lifetime.
    """

    return Settings()


def configure_logging() -> None:
    """Configure root logging from ``LOG_LEVEL``."""

    level = getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
