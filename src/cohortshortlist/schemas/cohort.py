"""Cohort, membership, form and field value records."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MemberStatus(str, Enum):
    APPLIED = "applied"
    SUBMITTED = "submitted"
    SHORTLISTED = "shortlisted"
    REJECTED = "rejected"
    DROPOUT = "dropout"
    ARCHIVED = "archived"
    INACTIVE = "inactive"
    ACTIVE = "active"


class CohortStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class FieldType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMERIC = "numeric"
    CALENDAR = "calendar"
    DATE = "date"
    DROPDOWN = "drop_down"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    JSON = "json"


class Cohort(BaseModel):
    """Administrative group of participants for an academic term."""

    cohort_id: str
    name: str = ""
    status: CohortStatus = CohortStatus.ACTIVE
    academic_year_id: str | None = None

    model_config = ConfigDict(extra="ignore")


class CohortDateValue(BaseModel):
    """A cohort paired with the raw value of one of its date custom fields."""

    cohort: Cohort
    value: Any = None


class CohortMember(BaseModel):
    """One participant's application record within a cohort."""

    membership_id: str
    user_id: str
    cohort_id: str
    cohort_academic_year_id: str | None = None
    status: MemberStatus = MemberStatus.APPLIED
    status_reason: str | None = None
    rejection_email_sent: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    model_config = ConfigDict(extra="ignore")

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or (self.email or self.user_id)


class FieldValueRow(BaseModel):
    """Raw custom field value row as stored, one typed column populated."""

    field_id: str
    item_id: str
    field_type: FieldType | None = None
    label: str | None = None
    text_value: str | None = None
    number_value: Decimal | float | int | None = None
    calendar_value: datetime | date | str | None = None
    dropdown_value: Any = None
    radio_value: str | None = None
    checkbox_value: bool | str | None = None
    textarea_value: str | None = None
    value: str | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("field_type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> Any:
        # Unknown field types fall back to the generic value column.
        if value is None or isinstance(value, FieldType):
            return value
        try:
            return FieldType(str(value).lower())
        except ValueError:
            return None


class ResolvedFieldValue(BaseModel):
    """Field value after typed column extraction."""

    field_id: str
    label: str | None = None
    value: Any = None


class Form(BaseModel):
    """Versioned form definition attached to a cohort context."""

    form_id: str
    title: str = ""
    context_id: str | None = None
    context_type: str | None = None
    status: str = "active"
    fields: Any = None
    rules: Any = None

    model_config = ConfigDict(extra="ignore")


class Course(BaseModel):
    """Published learning-management course mapped to a cohort."""

    course_id: str
    title: str | None = None


class NotificationReceipt(BaseModel):
    """Per-recipient delivery errors reported by the notification service."""

    errors: list[Any] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
