"""Pydantic configuration schema for the shortlisting engine."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from .cohort import MemberStatus


class LmsSettings(BaseModel):
    base_url: str = "http://localhost:4002/lms-service/v1"
    tenant_id: str | None = None
    organisation_id: str | None = None
    timeout_seconds: float = 10.0
    course_search_limit: int = 1000


class SearchIndexSettings(BaseModel):
    enabled: bool = True
    url: str = "http://localhost:9200"
    index: str = "users"
    timeout_seconds: float = 10.0


class NotificationSettings(BaseModel):
    base_url: str = "http://localhost:4000"
    context: str = "USER"
    template_keys: dict[MemberStatus, str] = Field(
        default_factory=lambda: {
            MemberStatus.SHORTLISTED: "onStudentShortlisted",
            MemberStatus.REJECTED: "onStudentRejected",
        }
    )
    interactive_statuses: list[MemberStatus] = Field(
        default_factory=lambda: [MemberStatus.SHORTLISTED, MemberStatus.REJECTED]
    )
    timeout_seconds: float = 10.0


class EngineSettings(BaseModel):
    """Read-only run configuration loaded once per invocation."""

    shortlist_date_field_id: str
    rejection_notification_date_field_id: str
    batch_size: int = Field(default=100, gt=0)
    max_concurrent_batches: int = Field(default=5, gt=0)
    backlog_limit: int = Field(default=100_000, gt=0)
    slow_batch_seconds: float = 30.0
    progress_every_groups: int = Field(default=10, gt=0)
    call_timeout_seconds: float | None = Field(default=30.0, gt=0)
    email_notifications_enabled: bool = True
    timezone: str = "UTC"
    database_url: str = "sqlite:///shortlisting.db"
    failure_log_path: str = "logs/shortlisting-failures.jsonl"
    form_context_type: str = "COHORTMEMBER"
    lms: LmsSettings = Field(default_factory=LmsSettings)
    search_index: SearchIndexSettings = Field(default_factory=SearchIndexSettings)
    notification: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("shortlist_date_field_id", "rejection_notification_date_field_id")
    @classmethod
    def _require_field_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field identifier must not be blank")
        return value.strip()
