"""Tag routes for the CRM API."""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from . import schemas, crud
from .auth import get_current_user
from .database import get_db
from .models import User

router = APIRouter(prefix="/tags", tags=["tags"])


@router.get("", response_model=List[schemas.TagOut])
def list_tags(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Return the current user's tags, newest first."""
    return crud.get_tags(db, current_user)


@router.post("", response_model=schemas.TagOut, status_code=201)
def create_tag(
    tag_in: schemas.TagCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Create a tag for the current user.

    The color falls back to ``#3B82F6`` when omitted.

    Raises:
        ValidationError: If the name is blank.
        DuplicateError: If the user already has a tag with this name.
    """
    return crud.create_tag(db, current_user, tag_in)
