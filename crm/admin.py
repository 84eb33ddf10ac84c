"""Maintenance routes guarded by a shared admin key."""

import hmac
import logging

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from . import schemas, crud
from .core import get_settings
from .database import get_db
from .errors import AuthError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def require_admin_key(x_admin_key: str | None = Header(None)) -> None:
    """Reject requests whose ``x-admin-key`` does not match ``ADMIN_KEY``."""
    expected = get_settings().ADMIN_KEY
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise AuthError("Unauthorized")


@router.post(
    "/migrate",
    response_model=schemas.MigrationResult,
    dependencies=[Depends(require_admin_key)],
)
def migrate(db: Session = Depends(get_db)):
    """
    Repair the users table.

    Recreates its indexes and removes duplicate placeholder users,
    keeping the oldest one.
    """
    logger.info("Starting user identity migration")
    removed = crud.repair_user_identities(db)
    return schemas.MigrationResult(
        message="Migration completed successfully", removed_duplicates=removed
    )
