from __future__ import annotations

import asyncio
import itertools
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

import pytest
import structlog
from sqlalchemy import insert

from cohortshortlist.schemas import Course, EngineSettings, NotificationReceipt
from cohortshortlist.stores import SqlCohortStore
from cohortshortlist.stores import sql as tables

SHORTLIST_FIELD = "f-shortlist-date"
REJECTION_FIELD = "f-rejection-date"


class FakeLms:
    def __init__(
        self,
        courses: list[Course] | None = None,
        *,
        failing_courses: tuple[str, ...] = (),
        fail_search: bool = False,
        enroll_delay: float = 0.0,
    ) -> None:
        self.courses = courses if courses is not None else [Course(course_id="course-1", title="Foundations")]
        self.failing_courses = set(failing_courses)
        self.fail_search = fail_search
        self.enroll_delay = enroll_delay
        self.searches: list[str] = []
        self.enrolled: list[tuple[str, str]] = []
        self.unenrolled: list[tuple[str, str]] = []

    async def search_published_courses(self, cohort_id: str) -> list[Course]:
        self.searches.append(cohort_id)
        if self.fail_search:
            raise RuntimeError("lms unavailable")
        return list(self.courses)

    async def enroll(self, course_id: str, learner_id: str) -> dict[str, Any]:
        if self.enroll_delay:
            await asyncio.sleep(self.enroll_delay)
        if course_id in self.failing_courses:
            raise RuntimeError(f"enroll rejected for {course_id}")
        self.enrolled.append((course_id, learner_id))
        return {}

    async def unenroll(self, course_id: str, user_id: str) -> dict[str, Any]:
        if course_id in self.failing_courses:
            raise RuntimeError(f"unenroll rejected for {course_id}")
        self.unenrolled.append((course_id, user_id))
        return {}


class FakeSearchIndex:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.patches: list[tuple[str, str, str, str | None]] = []

    async def get(self, user_id: str) -> dict[str, Any] | None:
        return None

    async def update(self, user_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return {"result": "updated"}

    async def patch_application_status(
        self,
        user_id: str,
        cohort_id: str,
        status: str,
        reason: str | None,
    ) -> dict[str, Any]:
        if self.fail:
            raise RuntimeError("index unavailable")
        self.patches.append((user_id, cohort_id, status, reason))
        return {"result": "updated"}


class FakeNotifier:
    def __init__(
        self,
        *,
        undeliverable: tuple[str, ...] = (),
        unreachable: tuple[str, ...] = (),
    ) -> None:
        self.undeliverable = set(undeliverable)
        self.unreachable = set(unreachable)
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        *,
        context: str,
        key: str,
        replacements: dict[str, Any],
        recipients: list[str],
    ) -> NotificationReceipt:
        if self.unreachable & set(recipients):
            raise RuntimeError("notification service unreachable")
        self.sent.append(
            {"context": context, "key": key, "replacements": replacements, "recipients": recipients}
        )
        return NotificationReceipt(
            errors=[f"{recipient}: mailbox unavailable" for recipient in recipients if recipient in self.undeliverable]
        )

    def keys_for(self, recipient: str) -> list[str]:
        return [item["key"] for item in self.sent if recipient in item["recipients"]]


class Seeder:
    """Insert fixture rows straight into the store's tables."""

    def __init__(self, store: SqlCohortStore) -> None:
        self._engine = store.engine
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, 9, 0, 0)
        self._insert(
            tables.fields,
            [
                {"field_id": SHORTLIST_FIELD, "name": "shortlist_date", "type": "calendar", "context_type": "COHORT"},
                {"field_id": REJECTION_FIELD, "name": "rejection_date", "type": "calendar", "context_type": "COHORT"},
            ],
        )

    def _insert(self, table, rows: list[dict[str, Any]]) -> None:
        with self._engine.begin() as conn:
            conn.execute(insert(table), rows)

    def cohort(
        self,
        cohort_id: str,
        *,
        name: str | None = None,
        status: str = "active",
        shortlist_date: date | str | None = None,
        rejection_date: date | str | None = None,
    ) -> None:
        self._insert(tables.cohorts, [{"cohort_id": cohort_id, "name": name or cohort_id, "status": status}])
        for field_id, scheduled in ((SHORTLIST_FIELD, shortlist_date), (REJECTION_FIELD, rejection_date)):
            if scheduled is None:
                continue
            if isinstance(scheduled, date):
                self.value(cohort_id, field_id, calendar_value=datetime(scheduled.year, scheduled.month, scheduled.day))
            else:
                self.value(cohort_id, field_id, value=scheduled)

    def field(self, field_id: str, *, name: str, field_type: str = "text", label: str | None = None) -> None:
        self._insert(
            tables.fields,
            [{"field_id": field_id, "name": name, "label": label, "type": field_type, "context_type": "COHORTMEMBER"}],
        )

    def form(
        self,
        form_id: str,
        cohort_id: str,
        *,
        field_ids: list[str],
        rules: Any,
        status: str = "active",
    ) -> None:
        self._insert(
            tables.forms,
            [
                {
                    "form_id": form_id,
                    "title": form_id,
                    "context_id": cohort_id,
                    "context_type": "COHORTMEMBER",
                    "status": status,
                    "fields": {"result": [{"fields": [{"fieldId": field_id} for field_id in field_ids]}]},
                    "rules": rules,
                }
            ],
        )

    def member(
        self,
        membership_id: str,
        user_id: str,
        cohort_id: str,
        *,
        status: str = "submitted",
        email: str | None = None,
        first_name: str = "Test",
        last_name: str = "Learner",
        rejection_email_sent: bool = False,
    ) -> None:
        self._clock += timedelta(minutes=1)
        self._insert(
            tables.users,
            [
                {
                    "user_id": user_id,
                    "email": email if email is not None else f"{user_id}@example.org",
                    "first_name": first_name,
                    "last_name": last_name,
                }
            ],
        )
        self._insert(
            tables.cohort_members,
            [
                {
                    "membership_id": membership_id,
                    "user_id": user_id,
                    "cohort_id": cohort_id,
                    "status": status,
                    "rejection_email_sent": rejection_email_sent,
                    "created_at": self._clock,
                    "updated_at": self._clock,
                }
            ],
        )

    def value(self, item_id: str, field_id: str, **columns: Any) -> None:
        row = {"field_values_id": f"fv-{next(self._ids)}", "field_id": field_id, "item_id": item_id}
        row.update(columns)
        self._insert(tables.field_values, [row])

    def member_row(self, membership_id: str) -> dict[str, Any]:
        with self._engine.connect() as conn:
            row = conn.execute(
                tables.cohort_members.select().where(tables.cohort_members.c.membership_id == membership_id)
            ).mappings().one()
        return dict(row)


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture
def store() -> Iterator[SqlCohortStore]:
    cohort_store = SqlCohortStore(database_url="sqlite://")
    cohort_store.create_schema()
    yield cohort_store
    cohort_store.dispose()


@pytest.fixture
def seed(store: SqlCohortStore) -> Seeder:
    return Seeder(store)


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    return EngineSettings(
        shortlist_date_field_id=SHORTLIST_FIELD,
        rejection_notification_date_field_id=REJECTION_FIELD,
        batch_size=2,
        max_concurrent_batches=2,
        database_url="sqlite://",
        failure_log_path=str(tmp_path / "failures.jsonl"),
    )
