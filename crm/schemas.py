from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema rendering field names in camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class TagRef(CamelModel):
    """Tag as embedded in contact responses."""

    id: str
    name: str
    color: str


class TagCreate(BaseModel):
    """Payload for creating a tag."""

    name: str
    color: Optional[str] = None


class TagOut(CamelModel):
    """Schema for returning a tag."""

    id: str
    name: str
    color: str
    count: int = 0
    owner_id: str = Field(alias="createdBy")
    created_at: datetime
    updated_at: datetime


class ContactBase(BaseModel):
    """Shared fields for contact schemas."""

    name: str
    email: EmailStr
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None


class ContactCreate(ContactBase):
    """Schema for creating new contact."""

    tags: list[str] = Field(default_factory=list)


class ContactUpdate(BaseModel):
    """Schema for updating contact (all fields optional)."""

    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[list[str]] = None


class ContactOut(CamelModel):
    """Schema for returning contact with resolved tags."""

    id: str
    name: str
    email: str
    phone: str = ""
    company: str = ""
    notes: str = ""
    tags: list[TagRef] = Field(default_factory=list)
    owner_id: str = Field(alias="createdBy")
    last_interaction: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ContactPage(CamelModel):
    """One page of contacts plus pagination metadata."""

    data: list[ContactOut]
    pagination: Pagination


class BulkDeleteRequest(BaseModel):
    ids: list[str] = Field(default_factory=list)


class BulkDeleteResult(CamelModel):
    message: str
    deleted_count: int


class ImportRow(BaseModel):
    """Raw contact row; every field is checked by the importer itself.

    Numbers are accepted where text is expected, as spreadsheets export
    phone numbers and ids that way.
    """

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None

    @field_validator("name", "email", "phone", "company", "notes", mode="before")
    @classmethod
    def number_to_text(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def tag_ids_to_text(cls, value):
        if value is None:
            return []
        if isinstance(value, list):
            return [
                str(item) if isinstance(item, int) and not isinstance(item, bool) else item
                for item in value
            ]
        return value


class BulkImportRequest(BaseModel):
    """Import payload; rows are validated one by one during the import."""

    contacts: list[Any]


class ImportRowError(CamelModel):
    row_index: int
    email: str
    error: str


class BulkImportResult(CamelModel):
    """Per-batch import report."""

    success_count: int = 0
    failed_count: int = 0
    errors: list[ImportRowError] = Field(default_factory=list)


class TagStat(CamelModel):
    id: str
    tag_name: str
    tag_color: str
    count: int


class DashboardStats(CamelModel):
    total_contacts: int
    new_this_week: int
    tag_stats: list[TagStat]


class CompanyCount(CamelModel):
    company: str
    count: int


class TimelinePoint(CamelModel):
    date: str
    contacts: int


class DashboardOut(CamelModel):
    """Aggregates shown on the dashboard."""

    stats: DashboardStats
    by_company: list[CompanyCount]
    timeline: list[TimelinePoint]


class UserOut(CamelModel):
    """Response schema for user data."""

    id: str
    firebase_uid: Optional[str] = None
    email: str
    display_name: str = ""
    photo_url: str = Field(default="", alias="photoURL")
    provider: str = "password"
    preferences: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class UserEnvelope(BaseModel):
    user: UserOut


class SyncResult(BaseModel):
    message: str
    user: UserOut


class ProfileUpdate(CamelModel):
    """Profile fields a user may change; omitted fields stay untouched."""

    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoURL")
    preferences: Optional[dict[str, Any]] = None


class MigrationResult(CamelModel):
    message: str
    removed_duplicates: int
