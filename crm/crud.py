"""CRUD operations for users, tags and contacts.

This module contains database interaction logic for the CRM entities,
isolated from FastAPI route handlers. Every tag and contact function is
scoped to the owning user passed in by the caller.
"""

import logging
import math

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, or_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .errors import (
    CRMError,
    DuplicateError,
    InvalidTagReference,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .identity import IdentityClaims

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 10
MAX_IMPORT_ROWS = 5000


# Users


def get_user_by_id(db: Session, user_id: str) -> models.User | None:
    """
    Retrieve a user by primary key.

    Args:
        db (Session): Database session.
        user_id (str): User identifier.

    Returns:
        User | None: User if found, otherwise ``None``.
    """
    return db.get(models.User, user_id)


def get_user_by_uid(db: Session, uid: str) -> models.User | None:
    """Retrieve a user by identity-provider subject id."""
    return db.execute(
        select(models.User).where(models.User.firebase_uid == uid)
    ).scalar_one_or_none()


def get_user_by_email(db: Session, email: str) -> models.User | None:
    """
    Retrieve the oldest user with the given email address.

    The comparison ignores case.
    """
    return db.execute(
        select(models.User)
        .where(func.lower(models.User.email) == email.strip().lower())
        .order_by(models.User.created_at, models.User.id)
        .limit(1)
    ).scalar_one_or_none()


def normalize_uid(uid: str | None) -> str | None:
    """Return the subject id, or ``None`` when it is empty or ``"undefined"``."""
    if uid is None:
        return None
    uid = str(uid).strip()
    if not uid or uid == "undefined":
        return None
    return uid


def _profile_fields(claims: IdentityClaims) -> dict:
    return {
        "email": claims.email,
        "display_name": claims.name or "",
        "photo_url": claims.picture or "",
        "provider": "google" if claims.sign_in_provider == "google.com" else "password",
    }


def _apply_sync(db: Session, claims: IdentityClaims) -> tuple[models.User, str]:
    uid = normalize_uid(claims.uid)
    fields = _profile_fields(claims)

    user = get_user_by_email(db, claims.email)
    outcome = "updated"
    if user is None and uid:
        user = get_user_by_uid(db, uid)
    if user is None:
        user = db.execute(
            select(models.User)
            .where(models.User.firebase_uid.is_(None))
            .order_by(models.User.created_at, models.User.id)
            .limit(1)
        ).scalar_one_or_none()
        outcome = "merged"
    if user is None:
        user = models.User()
        db.add(user)
        outcome = "created"

    for key, value in fields.items():
        setattr(user, key, value)
    if uid:
        user.firebase_uid = uid

    db.commit()
    db.refresh(user)
    return user, outcome


def sync_user(db: Session, claims: IdentityClaims) -> tuple[models.User, str]:
    """
    Map verified identity claims onto a local user record.

    Lookup order is email, then subject id, then the oldest placeholder
    (a user without subject id), and a new user is created only when none
    of these exists. An existing subject id is never cleared.

    A uniqueness violation on the subject id triggers
    :func:`repair_user_identities` and exactly one retry.

    Args:
        db (Session): Database session.
        claims (IdentityClaims): Verified token claims.

    Raises:
        ValidationError: If the token carries no email.
        StorageError: If the retry fails as well.

    Returns:
        tuple[User, str]: The user and one of ``updated``, ``merged``
        or ``created``.
    """
    if not claims.email:
        raise ValidationError("Email missing in token")

    try:
        user, outcome = _apply_sync(db, claims)
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Identity sync conflict for %s, repairing: %s", claims.email, exc.orig)
        repair_user_identities(db)
        try:
            user, outcome = _apply_sync(db, claims)
        except IntegrityError as retry_exc:
            db.rollback()
            raise StorageError("Could not synchronise user") from retry_exc

    logger.info("Identity sync %s user %s (%s)", outcome, user.id, user.email)
    return user, outcome


def repair_user_identities(db: Session) -> int:
    """
    Recreate user indexes and drop duplicate placeholder users.

    Of all users without a subject id the oldest is kept. Later ones are
    removed only when they own no contacts and no tags; the others stay
    so their data is never deleted as a side effect.

    Returns:
        int: Number of placeholder users removed.
    """
    connection = db.connection()
    for index in models.User.__table__.indexes:
        index.create(bind=connection, checkfirst=True)

    placeholders = db.scalars(
        select(models.User)
        .where(models.User.firebase_uid.is_(None))
        .order_by(models.User.created_at, models.User.id)
    ).all()
    removed = 0
    kept_with_data = 0
    for user in placeholders[1:]:
        if user.contacts or user.tags:
            kept_with_data += 1
            continue
        db.delete(user)
        removed += 1
    db.commit()
    if removed:
        logger.info("Removed %d duplicate placeholder users", removed)
    if kept_with_data:
        logger.warning(
            "Kept %d duplicate placeholder users that still own data", kept_with_data
        )
    return removed


def update_profile(db: Session, user: models.User, changes: dict) -> models.User:
    """
    Update profile fields of a user.

    Args:
        db (Session): Database session.
        user (User): Target user.
        changes (dict): Subset of ``display_name``, ``photo_url`` and
            ``preferences``.

    Returns:
        User: Updated user instance.
    """
    for key in ("display_name", "photo_url", "preferences"):
        if key in changes and changes[key] is not None:
            setattr(user, key, changes[key])
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# Tags


def create_tag(db: Session, user: models.User, tag_in: schemas.TagCreate) -> models.Tag:
    """
    Create a new tag owned by the given user.

    Raises:
        ValidationError: If the name is blank.
        DuplicateError: If the user already has a tag with this name.
    """
    name = (tag_in.name or "").strip()
    if not name:
        raise ValidationError("Tag name is required")

    existing = db.execute(
        select(models.Tag).where(
            models.Tag.owner_id == user.id, models.Tag.name == name
        )
    ).scalar_one_or_none()
    if existing:
        raise DuplicateError("Tag with this name already exists")

    tag = models.Tag(
        name=name,
        color=tag_in.color or models.DEFAULT_TAG_COLOR,
        owner_id=user.id,
    )
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def get_tags(db: Session, user: models.User) -> list[models.Tag]:
    """Return all tags of the user, newest first."""
    return db.scalars(
        select(models.Tag)
        .where(models.Tag.owner_id == user.id)
        .order_by(models.Tag.created_at.desc(), models.Tag.id.desc())
    ).all()


def _unique_ids(ids) -> list[str]:
    return [i for i in dict.fromkeys(str(i).strip() for i in ids or []) if i]


def _owned_tag_ids(db: Session, user: models.User, tag_ids: list[str]) -> list[str]:
    tag_ids = _unique_ids(tag_ids)
    if not tag_ids:
        return []
    owned = set(
        db.scalars(
            select(models.Tag.id).where(
                models.Tag.id.in_(tag_ids), models.Tag.owner_id == user.id
            )
        ).all()
    )
    if len(owned) != len(tag_ids):
        raise InvalidTagReference()
    return tag_ids


def refresh_tag_counts(db: Session, tag_ids) -> None:
    """Recompute the denormalized contact count of the given tags."""
    tag_ids = set(tag_ids)
    if not tag_ids:
        return
    db.flush()
    counts = dict(
        db.execute(
            select(
                models.ContactTag.tag_id,
                func.count(func.distinct(models.ContactTag.contact_id)),
            )
            .where(models.ContactTag.tag_id.in_(tag_ids))
            .group_by(models.ContactTag.tag_id)
        ).all()
    )
    for tag in db.scalars(select(models.Tag).where(models.Tag.id.in_(tag_ids))):
        tag.count = counts.get(tag.id, 0)


# Contacts


def get_contact(db: Session, contact_id: str, user: models.User):
    """
    Retrieve a single contact owned by the given user.

    Args:
        db (Session): Database session.
        contact_id (str): Contact identifier.
        user (User): Contact owner.

    Returns:
        Contact | None: Contact if found, otherwise ``None``.
    """
    return db.execute(
        select(models.Contact).where(
            models.Contact.id == contact_id,
            models.Contact.owner_id == user.id,
        )
    ).scalar_one_or_none()


def require_contact(db: Session, contact_id: str, user: models.User) -> models.Contact:
    contact = get_contact(db, contact_id, user)
    if contact is None:
        raise NotFoundError("Contact not found")
    return contact


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def get_contacts(
    db: Session,
    user: models.User,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    search: str | None = None,
    tag_ids: list[str] | None = None,
) -> dict:
    """
    Retrieve one page of the user's contacts.

    ``page`` and ``limit`` are clamped to at least 1 and ``limit`` to at
    most 100. ``search`` matches a case-insensitive substring of name,
    email or company. ``tag_ids`` keeps contacts carrying any of the tags.
    Results are ordered newest first.

    Returns:
        dict: ``data`` with the contacts and ``pagination`` with
        ``page``, ``limit``, ``total`` and ``total_pages``.
    """
    page = max(1, page or 1)
    limit = max(1, min(MAX_PAGE_SIZE, limit or DEFAULT_PAGE_SIZE))

    conditions = [models.Contact.owner_id == user.id]

    tag_ids = _unique_ids(tag_ids)
    if tag_ids:
        conditions.append(
            models.Contact.id.in_(
                select(models.ContactTag.contact_id).where(
                    models.ContactTag.tag_id.in_(tag_ids)
                )
            )
        )

    search = (search or "").strip()
    if search:
        pattern = _like_pattern(search)
        conditions.append(
            or_(
                models.Contact.name.ilike(pattern, escape="\\"),
                models.Contact.email.ilike(pattern, escape="\\"),
                models.Contact.company.ilike(pattern, escape="\\"),
            )
        )

    total = db.scalar(select(func.count(models.Contact.id)).where(*conditions))
    contacts = db.scalars(
        select(models.Contact)
        .where(*conditions)
        .order_by(models.Contact.created_at.desc(), models.Contact.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    return {
        "data": contacts,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }


def _email_taken(
    db: Session, user: models.User, email: str, exclude_id: str | None = None
) -> bool:
    stmt = select(models.Contact.id).where(
        models.Contact.owner_id == user.id,
        models.Contact.email == email,
    )
    if exclude_id is not None:
        stmt = stmt.where(models.Contact.id != exclude_id)
    return db.execute(stmt.limit(1)).first() is not None


def create_contact(
    db: Session, contact_in: schemas.ContactCreate, user: models.User
) -> models.Contact:
    """
    Create a new contact owned by the given user.

    Args:
        db (Session): Database session.
        contact_in (ContactCreate): Contact data.
        user (User): Owner of the contact.

    Raises:
        ValidationError: If the name is blank.
        DuplicateError: If a contact with the same email already exists.
        InvalidTagReference: If a tag does not belong to the user.

    Returns:
        Contact: Newly created contact.
    """
    name = contact_in.name.strip()
    if not name:
        raise ValidationError("Name is required")
    email = str(contact_in.email).strip().lower()

    if _email_taken(db, user, email):
        raise DuplicateError("A contact with this email already exists")

    tag_ids = _owned_tag_ids(db, user, contact_in.tags)

    contact = models.Contact(
        name=name,
        email=email,
        phone=(contact_in.phone or "").strip(),
        company=(contact_in.company or "").strip(),
        notes=(contact_in.notes or "").strip(),
        owner_id=user.id,
    )
    contact.set_tags(tag_ids)
    db.add(contact)
    refresh_tag_counts(db, tag_ids)
    db.commit()
    db.refresh(contact)
    return contact


def update_contact(
    db: Session, contact_id: str, changes: dict, user: models.User
) -> models.Contact:
    """
    Update the supplied fields of a contact.

    Fields absent from ``changes`` keep their value. A changed email is
    re-checked against the user's other contacts and supplied tags are
    re-validated.

    Raises:
        NotFoundError: If the contact does not exist or is not owned.
        ValidationError: If the name is set blank.
        DuplicateError: If the new email belongs to another contact.
        InvalidTagReference: If a tag does not belong to the user.
    """
    contact = require_contact(db, contact_id, user)

    if changes.get("name") is not None:
        name = changes["name"].strip()
        if not name:
            raise ValidationError("Name is required")
        contact.name = name

    if changes.get("email") is not None:
        email = str(changes["email"]).strip().lower()
        if _email_taken(db, user, email, exclude_id=contact.id):
            raise DuplicateError("A contact with this email already exists")
        contact.email = email

    for key in ("phone", "company", "notes"):
        if key in changes:
            setattr(contact, key, (changes[key] or "").strip())

    if changes.get("tags") is not None:
        tag_ids = _owned_tag_ids(db, user, changes["tags"])
        previous = {link.tag_id for link in contact.tag_links}
        contact.set_tags(tag_ids)
        refresh_tag_counts(db, previous | set(tag_ids))

    db.add(contact)
    db.commit()
    db.refresh(contact)
    return contact


def delete_contact(db: Session, contact_id: str, user: models.User) -> None:
    """
    Delete a contact owned by the user.

    Raises:
        NotFoundError: If the contact does not exist or is not owned.
    """
    contact = require_contact(db, contact_id, user)
    tag_ids = {link.tag_id for link in contact.tag_links}
    db.delete(contact)
    refresh_tag_counts(db, tag_ids)
    db.commit()


def bulk_delete_contacts(db: Session, contact_ids: list[str], user: models.User) -> int:
    """
    Delete every listed contact the user owns.

    Ids that are unknown or belong to somebody else are skipped.

    Returns:
        int: Number of deleted contacts.
    """
    contact_ids = _unique_ids(contact_ids)
    if not contact_ids:
        raise ValidationError("Invalid or empty IDs array")

    contacts = db.scalars(
        select(models.Contact).where(
            models.Contact.id.in_(contact_ids),
            models.Contact.owner_id == user.id,
        )
    ).all()
    tag_ids = {link.tag_id for contact in contacts for link in contact.tag_links}
    for contact in contacts:
        db.delete(contact)
    refresh_tag_counts(db, tag_ids)
    db.commit()
    logger.info("User %s bulk deleted %d contacts", user.id, len(contacts))
    return len(contacts)


def _load_row(raw) -> schemas.ImportRow:
    if isinstance(raw, schemas.ImportRow):
        return raw
    try:
        return schemas.ImportRow.model_validate(raw)
    except PydanticValidationError:
        raise ValidationError("Invalid contact data")


def _row_email(raw) -> str:
    email = raw.get("email") if isinstance(raw, dict) else getattr(raw, "email", None)
    if isinstance(email, (str, int, float)) and not isinstance(email, bool):
        email = str(email).strip()
        if email:
            return email
    return "Unknown"


def bulk_import_contacts(
    db: Session, rows: list, user: models.User
) -> schemas.BulkImportResult:
    """
    Insert a batch of raw contact rows, one at a time and in order.

    A failing row is reported and skipped; it never aborts the batch.
    Emails are checked against the user's contacts as loaded at the start
    of the batch plus every email accepted earlier in the same batch.

    Args:
        db (Session): Database session.
        rows (list): ``ImportRow`` objects or raw mappings, at most 5000.
            A raw row that does not fit ``ImportRow`` fails on its own.
        user (User): Owner of the new contacts.

    Raises:
        ValidationError: If the batch is empty or too large.

    Returns:
        BulkImportResult: Success and failure counts plus row errors with
        1-based row indexes.
    """
    if not rows:
        raise ValidationError("No contacts to import")
    if len(rows) > MAX_IMPORT_ROWS:
        raise ValidationError(f"Maximum {MAX_IMPORT_ROWS} contacts per import")

    owner_id = user.id

    seen_emails = {
        email.lower()
        for email in db.scalars(
            select(models.Contact.email).where(models.Contact.owner_id == owner_id)
        )
    }
    valid_tag_ids = set(
        db.scalars(select(models.Tag.id).where(models.Tag.owner_id == owner_id))
    )

    result = schemas.BulkImportResult()
    touched_tags: set[str] = set()

    for row_index, raw in enumerate(rows, start=1):
        try:
            row = _load_row(raw)
            name = (row.name or "").strip()
            if not name:
                raise ValidationError("Name is required")
            email = (row.email or "").strip().lower()
            if not email:
                raise ValidationError("Email is required")
            if email in seen_emails:
                raise DuplicateError("Email already exists")
            tag_ids = _unique_ids(row.tags)
            if not all(tag_id in valid_tag_ids for tag_id in tag_ids):
                raise InvalidTagReference("Invalid tag ID")

            contact = models.Contact(
                name=name,
                email=email,
                phone=(row.phone or "").strip(),
                company=(row.company or "").strip(),
                notes=(row.notes or "").strip(),
                owner_id=owner_id,
            )
            contact.set_tags(tag_ids)
            db.add(contact)
            db.commit()
        except CRMError as exc:
            message = exc.message
        except SQLAlchemyError as exc:
            db.rollback()
            message = str(getattr(exc, "orig", None) or exc)
        else:
            seen_emails.add(email)
            touched_tags.update(tag_ids)
            result.success_count += 1
            continue

        result.failed_count += 1
        result.errors.append(
            schemas.ImportRowError(
                row_index=row_index,
                email=_row_email(raw),
                error=message,
            )
        )

    refresh_tag_counts(db, touched_tags)
    db.commit()
    logger.info(
        "User %s imported %d contacts, %d failed",
        owner_id,
        result.success_count,
        result.failed_count,
    )
    return result
