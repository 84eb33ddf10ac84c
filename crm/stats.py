"""Dashboard aggregates over a user's contacts.

Each function is read-only and independent of the others.
"""

from datetime import date, datetime, timedelta

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from . import models

UNSPECIFIED_COMPANY = "Unspecified"
TOP_COMPANIES = 10


def count_contacts(db: Session, user: models.User) -> int:
    return db.scalar(
        select(func.count(models.Contact.id)).where(models.Contact.owner_id == user.id)
    )


def count_created_since(db: Session, user: models.User, since: datetime) -> int:
    """Count the user's contacts created at or after ``since``."""
    return db.scalar(
        select(func.count(models.Contact.id)).where(
            models.Contact.owner_id == user.id,
            models.Contact.created_at >= since,
        )
    )


def tag_distribution(db: Session, user: models.User) -> list[dict]:
    """
    Count the user's contacts per tag, most used first.

    Tags without contacts are left out.
    """
    usage = func.count(models.ContactTag.contact_id).label("count")
    rows = db.execute(
        select(models.Tag.id, models.Tag.name, models.Tag.color, usage)
        .join(models.ContactTag, models.ContactTag.tag_id == models.Tag.id)
        .join(models.Contact, models.Contact.id == models.ContactTag.contact_id)
        .where(models.Contact.owner_id == user.id, models.Tag.owner_id == user.id)
        .group_by(models.Tag.id, models.Tag.name, models.Tag.color)
        .order_by(usage.desc(), models.Tag.name)
    ).all()
    return [
        {"id": tag_id, "tag_name": name, "tag_color": color, "count": count}
        for tag_id, name, color, count in rows
    ]


def contacts_by_company(
    db: Session, user: models.User, limit: int = TOP_COMPANIES
) -> list[dict]:
    """
    Return the companies with the most contacts.

    Contacts without a company are grouped as ``Unspecified``.
    """
    company = models.Contact.company
    total = func.count(models.Contact.id).label("count")
    rows = db.execute(
        select(company, total)
        .where(models.Contact.owner_id == user.id)
        .group_by(company)
        .order_by(total.desc(), company)
        .limit(limit)
    ).all()
    return [
        {"company": name or UNSPECIFIED_COMPANY, "count": count} for name, count in rows
    ]


def _day_key(value) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)[:10]


def contacts_timeline(
    db: Session, user: models.User, days: int = 30, now: datetime | None = None
) -> list[dict]:
    """
    Count contacts created per calendar day over the trailing ``days``.

    Days without new contacts are omitted. Dates are ``YYYY-MM-DD`` in
    ascending order.
    """
    start = (now or models.utcnow()) - timedelta(days=days)
    day = func.date(models.Contact.created_at).label("day")
    rows = db.execute(
        select(day, func.count(models.Contact.id))
        .where(
            models.Contact.owner_id == user.id,
            models.Contact.created_at >= start,
        )
        .group_by(day)
        .order_by(day)
    ).all()
    return [{"date": _day_key(value), "contacts": count} for value, count in rows]


def dashboard(
    db: Session, user: models.User, days: int = 30, now: datetime | None = None
) -> dict:
    """Collect every dashboard aggregate for the user."""
    now = now or models.utcnow()
    return {
        "stats": {
            "total_contacts": count_contacts(db, user),
            "new_this_week": count_created_since(db, user, now - timedelta(days=7)),
            "tag_stats": tag_distribution(db, user),
        },
        "by_company": contacts_by_company(db, user),
        "timeline": contacts_timeline(db, user, days=days, now=now),
    }
