"""Contact management routes for the CRM API."""

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import schemas, crud, stats
from .auth import get_current_user, rate_limit
from .csv_import import decode_upload, parse_rows
from .database import get_db
from .models import User

router = APIRouter(prefix="/contacts", tags=["contacts"])


def _import_response(result: schemas.BulkImportResult) -> JSONResponse:
    status_code = 200 if result.failed_count == 0 and result.success_count > 0 else 207
    return JSONResponse(
        status_code=status_code,
        content=result.model_dump(mode="json", by_alias=True),
    )


@router.get("", response_model=schemas.ContactPage)
def list_contacts(
    page: int = 1,
    limit: int = crud.DEFAULT_PAGE_SIZE,
    search: str | None = Query(None),
    tags: str | None = Query(None, description="Comma separated tag ids"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Retrieve one page of the current user's contacts.

    Supports case-insensitive search over name, email and company, and
    filtering by any of several tags.

    Args:
        page (int): 1-based page number.
        limit (int): Page size, at most 100.
        search (str | None): Optional search text.
        tags (str | None): Comma separated tag ids.
        db (Session): Database session.
        current_user (User): Authenticated user.

    Returns:
        ContactPage: Contacts and pagination metadata.
    """
    tag_ids = tags.split(",") if tags else []
    return crud.get_contacts(
        db, current_user, page=page, limit=limit, search=search, tag_ids=tag_ids
    )


@router.post("", response_model=schemas.ContactOut, status_code=201)
def create_contact(
    contact_in: schemas.ContactCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Create a new contact owned by the current user.

    Args:
        contact_in (ContactCreate): Contact input data.
        db (Session): Database session.
        current_user (User): Authenticated user.

    Returns:
        ContactOut: Created contact with resolved tags.
    """
    return crud.create_contact(db, contact_in, current_user)


@router.get("/stats", response_model=schemas.DashboardOut)
def dashboard_stats(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Aggregate counts for the dashboard.

    Args:
        days (int): Length of the creation timeline in days.

    Returns:
        DashboardOut: Totals, tag distribution, top companies and timeline.
    """
    return stats.dashboard(db, current_user, days=days)


@router.post("/bulk-delete", response_model=schemas.BulkDeleteResult)
def bulk_delete(
    payload: schemas.BulkDeleteRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Delete several contacts; ids the user does not own are skipped."""

    deleted = crud.bulk_delete_contacts(db, payload.ids, current_user)
    return schemas.BulkDeleteResult(
        message=f"{deleted} contacts deleted successfully", deleted_count=deleted
    )


@router.post(
    "/bulk-import",
    response_model=schemas.BulkImportResult,
    responses={207: {"model": schemas.BulkImportResult}},
    dependencies=rate_limit(times=10, seconds=60),
)
def bulk_import(
    payload: schemas.BulkImportRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Import up to 5000 contact rows.

    Responds with 200 when every row was imported and 207 otherwise; row
    failures are listed in ``errors``.
    """
    result = crud.bulk_import_contacts(db, payload.contacts, current_user)
    return _import_response(result)


@router.post(
    "/import-csv",
    response_model=schemas.BulkImportResult,
    responses={207: {"model": schemas.BulkImportResult}},
    dependencies=rate_limit(times=10, seconds=60),
)
def import_csv(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Import contacts from an uploaded CSV file.

    The rows go through the same checks as ``/contacts/bulk-import``.
    """
    rows = parse_rows(decode_upload(file.file.read()))
    result = crud.bulk_import_contacts(db, rows, current_user)
    return _import_response(result)


@router.get("/{contact_id}", response_model=schemas.ContactOut)
def get_contact(
    contact_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Retrieve a single contact by ID for the current user.

    Raises:
        NotFoundError: If contact is not found.
    """
    return crud.require_contact(db, contact_id, current_user)


@router.put("/{contact_id}", response_model=schemas.ContactOut)
def update_contact(
    contact_id: str,
    changes: schemas.ContactUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Partially update an existing contact.

    Only fields provided in the request will be updated.

    Args:
        contact_id (str): Contact identifier.
        changes (ContactUpdate): Fields to update.
        db (Session): Database session.
        current_user (User): Authenticated user.

    Returns:
        ContactOut: Updated contact.
    """
    return crud.update_contact(
        db, contact_id, changes.model_dump(exclude_unset=True), current_user
    )


@router.delete("/{contact_id}")
def remove_contact(
    contact_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Delete a contact owned by the current user.

    Raises:
        NotFoundError: If contact is not found.

    Returns:
        dict: Deletion status.
    """
    crud.delete_contact(db, contact_id, current_user)
    return {"message": "Contact deleted successfully"}
