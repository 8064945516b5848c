"""Pydantic schema definitions for cohorts, members, forms and settings."""

from __future__ import annotations

from .cohort import (
    Cohort,
    CohortDateValue,
    CohortMember,
    CohortStatus,
    Course,
    FieldType,
    FieldValueRow,
    Form,
    MemberStatus,
    NotificationReceipt,
    ResolvedFieldValue,
)
from .config import EngineSettings, LmsSettings, NotificationSettings, SearchIndexSettings

__all__ = [
    "Cohort",
    "CohortDateValue",
    "CohortMember",
    "CohortStatus",
    "Course",
    "FieldType",
    "FieldValueRow",
    "Form",
    "MemberStatus",
    "NotificationReceipt",
    "ResolvedFieldValue",
    "EngineSettings",
    "LmsSettings",
    "NotificationSettings",
    "SearchIndexSettings",
]
