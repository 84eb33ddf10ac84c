"""Database models for the CRM API.

This module defines SQLAlchemy ORM models used by the application.
All timestamps are stored as naive UTC datetimes.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    JSON,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship

from .database import Base

DEFAULT_TAG_COLOR = "#3B82F6"


def utcnow() -> datetime:
    """Return the current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    """
    SQLAlchemy model representing an application user.

    Users are created by identity sync. A user without ``firebase_uid``
    is a placeholder waiting to be claimed by the first sync.
    """

    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=new_id)
    firebase_uid = Column(String(128), unique=True, index=True, nullable=True)
    email = Column(String(255), index=True, nullable=False)
    display_name = Column(String(255), default="", nullable=False)
    photo_url = Column(String(500), default="", nullable=False)
    provider = Column(String(20), default="password", nullable=False)
    preferences = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    #: Contacts owned by the user
    contacts = relationship(
        "Contact",
        back_populates="owner",
        cascade="all, delete",
    )

    tags = relationship("Tag", cascade="all, delete")


class Tag(Base):
    """
    SQLAlchemy model representing a colored label.

    Tag names are unique per owner. ``count`` holds the number of the
    owner's contacts carrying the tag.
    """

    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_tag_owner_name"),)

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    color = Column(String(50), default=DEFAULT_TAG_COLOR, nullable=False)
    count = Column(Integer, default=0, nullable=False)
    owner_id = Column(
        String(32),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ContactTag(Base):
    """Ordered link between a contact and one of its tags."""

    __tablename__ = "contact_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(
        String(32),
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tag_id = Column(
        String(32),
        ForeignKey("tags.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, default=0, nullable=False)

    tag = relationship("Tag", lazy="joined")


class Contact(Base):
    """
    SQLAlchemy model representing a contact entry.

    Each contact belongs to exactly one user and must have
    a unique email address per owner.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("owner_id", "email", name="uq_contact_owner_email"),
        Index("ix_contacts_owner_created", "owner_id", "created_at"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(50), default="", nullable=False)
    company = Column(String(255), default="", nullable=False)
    notes = Column(Text, default="", nullable=False)
    last_interaction = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    #: Identifier of the owning user
    owner_id = Column(
        String(32),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    #: Reference to the owning User object
    owner = relationship("User", back_populates="contacts")

    tag_links = relationship(
        "ContactTag",
        order_by=ContactTag.position,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def tags(self) -> list[Tag]:
        """Linked tags in assignment order."""
        return [link.tag for link in self.tag_links]

    def set_tags(self, tag_ids: list[str]) -> None:
        """Replace the linked tags, keeping the given order."""
        self.tag_links = [
            ContactTag(tag_id=tag_id, position=position)
            for position, tag_id in enumerate(tag_ids)
        ]
