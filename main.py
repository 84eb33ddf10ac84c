"""
Main application entry point for the CRM API.

This module initializes the FastAPI application, configures logging and
CORS, creates the database schema, initializes the rate limiter with a
Redis backend, and includes routers for authentication, contacts, tags
and maintenance.

Modules:
- FastAPI: Web framework
- CORSMiddleware: Middleware for handling CORS
- FastAPILimiter: Rate limiting
- redis.asyncio: Async Redis client
- fakeredis: In-process Redis used when the server is unreachable
- crm.database: Database engine and schema setup
- crm.errors: Error taxonomy and handlers
- crm.auth, crm.contacts, crm.tags, crm.admin: Routers
- crm.core: Application settings
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi_limiter import FastAPILimiter
from fakeredis import FakeAsyncRedis
import redis.asyncio as redis
from redis.exceptions import RedisError

from crm.core import configure_logging, get_settings
from crm.database import init_db
from crm.errors import register_exception_handlers
from crm import admin, contacts, tags
from crm.auth import router as auth_router

configure_logging()
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Ensures the database schema and, when rate limiting is enabled,
    initializes the limiter. Falls back to an in-process fake Redis if the
    Redis server is unavailable.
    """
    init_db()
    limiter_redis = None
    if settings.RATE_LIMIT_ENABLED:
        limiter_redis = redis.from_url(
            settings.REDIS_URL, encoding="utf-8", decode_responses=True
        )
        try:
            await FastAPILimiter.init(limiter_redis)
        except (RedisError, OSError) as exc:
            logger.warning("Redis unavailable for rate limiting (%s), using fakeredis", exc)
            limiter_redis = FakeAsyncRedis(decode_responses=True)
            await FastAPILimiter.init(limiter_redis)
    logger.info("CRM API started")
    yield
    if limiter_redis is not None:
        await FastAPILimiter.close()


# Initialize FastAPI application
app = FastAPI(title="CRM API", lifespan=lifespan)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers for application areas
app.include_router(auth_router)
app.include_router(contacts.router)
app.include_router(tags.router)
app.include_router(admin.router)


@app.get("/")
def root():
    """
    Root endpoint for the API.

    Returns a simple JSON message directing users to the Swagger UI.

    Returns:
        dict: JSON message with information about the API
    """
    return {"msg": "CRM API. Visit /docs for Swagger UI"}
