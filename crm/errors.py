"""Domain errors and their HTTP rendering.

Service functions raise these exceptions; the handlers registered by
:func:`register_exception_handlers` turn them into JSON responses of the
form ``{"detail": message}``.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class CRMError(Exception):
    """Base class for errors with an HTTP status."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CRMError):
    """Missing or blank required field, or malformed input."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class InvalidTagReference(ValidationError):
    """A referenced tag does not belong to the owner."""

    default_message = "Some tags do not belong to your account"


class DuplicateError(CRMError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class NotFoundError(CRMError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class AuthError(CRMError):
    """Missing, malformed, or expired identity token."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Could not validate credentials"


class ProviderConfigurationError(AuthError):
    """The identity provider cannot be used with the current settings."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Identity provider is not configured"


class StorageError(CRMError):
    default_message = "Database error"


async def crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
    headers = None
    if type(exc) is AuthError:
        headers = {"WWW-Authenticate": "Bearer"}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message},
        headers=headers,
    )


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(
        "Storage failure on %s %s", request.method, request.url.path, exc_info=exc
    )
    return await crm_error_handler(request, StorageError())


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers for domain, storage and request errors."""

    app.add_exception_handler(CRMError, crm_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
