"""SQLAlchemy Core implementation of the cohort store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Engine,
    ForeignKey,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
    select,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool

from ..schemas import (
    Cohort,
    CohortDateValue,
    CohortMember,
    CohortStatus,
    FieldValueRow,
    Form,
    MemberStatus,
)

T = TypeVar("T")

# Keeps IN-lists below SQLite's bound-parameter ceiling.
_IN_CHUNK = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


metadata = MetaData()

cohorts = Table(
    "cohorts",
    metadata,
    Column("cohort_id", String(64), primary_key=True),
    Column("name", String(255), nullable=False, default=""),
    Column("status", String(32), nullable=False, default=CohortStatus.ACTIVE.value),
    Column("academic_year_id", String(64), nullable=True),
)

users = Table(
    "users",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("email", String(255), nullable=True),
    Column("first_name", String(255), nullable=True),
    Column("last_name", String(255), nullable=True),
)

cohort_members = Table(
    "cohort_members",
    metadata,
    Column("membership_id", String(64), primary_key=True),
    Column("user_id", String(64), ForeignKey("users.user_id"), nullable=False, index=True),
    Column("cohort_id", String(64), ForeignKey("cohorts.cohort_id"), nullable=False, index=True),
    Column("cohort_academic_year_id", String(64), nullable=True),
    Column("status", String(32), nullable=False, default=MemberStatus.APPLIED.value),
    Column("status_reason", Text, nullable=True),
    Column("rejection_email_sent", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=_utcnow),
    Column("created_by", String(64), nullable=True),
    Column("updated_by", String(64), nullable=True),
)

fields = Table(
    "fields",
    metadata,
    Column("field_id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("label", String(255), nullable=True),
    Column("type", String(32), nullable=False),
    Column("context_type", String(64), nullable=True),
)

field_values = Table(
    "field_values",
    metadata,
    Column("field_values_id", String(64), primary_key=True),
    Column("field_id", String(64), ForeignKey("fields.field_id"), nullable=False),
    Column("item_id", String(64), nullable=False, index=True),
    Column("text_value", Text, nullable=True),
    Column("number_value", Numeric(18, 6, asdecimal=True), nullable=True),
    Column("calendar_value", DateTime(timezone=True), nullable=True),
    Column("dropdown_value", JSON, nullable=True),
    Column("radio_value", String(255), nullable=True),
    Column("checkbox_value", Boolean, nullable=True),
    Column("textarea_value", Text, nullable=True),
    Column("value", Text, nullable=True),
)

forms = Table(
    "forms",
    metadata,
    Column("form_id", String(64), primary_key=True),
    Column("title", String(255), nullable=False, default=""),
    Column("context_id", String(64), nullable=False, index=True),
    Column("context_type", String(64), nullable=False),
    Column("status", String(32), nullable=False, default="active"),
    Column("fields", JSON, nullable=True),
    Column("rules", JSON, nullable=True),
)


def build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


class SqlCohortStore:
    """Cohort store backed by a relational database.

    Blocking SQLAlchemy calls run in worker threads so the event loop keeps
    driving other batches. In-memory SQLite shares a single connection and is
    therefore queried inline.
    """

    def __init__(self, *, database_url: str | None = None, engine: Engine | None = None) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = build_engine(database_url)
        self._engine = engine
        self._inline = isinstance(engine.pool, StaticPool)

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        metadata.create_all(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        if self._inline:
            return func(*args)
        return await asyncio.to_thread(func, *args)

    async def list_active_cohorts_with_field(self, field_id: str) -> list[CohortDateValue]:
        return await self._run(self._list_active_cohorts_with_field, field_id)

    def _list_active_cohorts_with_field(self, field_id: str) -> list[CohortDateValue]:
        stmt = (
            select(
                cohorts,
                field_values.c.calendar_value,
                field_values.c.text_value,
                field_values.c.value,
            )
            .join(field_values, field_values.c.item_id == cohorts.c.cohort_id)
            .where(field_values.c.field_id == field_id)
            .where(cohorts.c.status == CohortStatus.ACTIVE.value)
            .order_by(cohorts.c.cohort_id)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        results = []
        for row in rows:
            raw = row["calendar_value"]
            if raw is None:
                raw = row["value"] or row["text_value"]
            results.append(
                CohortDateValue(
                    cohort=Cohort(
                        cohort_id=row["cohort_id"],
                        name=row["name"] or "",
                        status=row["status"],
                        academic_year_id=row["academic_year_id"],
                    ),
                    value=raw,
                )
            )
        return results

    async def get_active_forms(self, cohort_id: str, context_type: str) -> list[Form]:
        return await self._run(self._get_active_forms, cohort_id, context_type)

    def _get_active_forms(self, cohort_id: str, context_type: str) -> list[Form]:
        stmt = (
            select(forms)
            .where(forms.c.context_id == cohort_id)
            .where(forms.c.context_type == context_type)
            .where(forms.c.status == "active")
            .order_by(forms.c.form_id)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [Form.model_validate(dict(row)) for row in rows]

    async def list_members(
        self,
        cohort_id: str,
        *,
        status: MemberStatus,
        rejection_email_sent: bool | None = None,
        user_ids: Iterable[str] | None = None,
        limit: int,
    ) -> list[CohortMember]:
        return await self._run(
            self._list_members,
            cohort_id,
            status,
            rejection_email_sent,
            list(user_ids) if user_ids is not None else None,
            limit,
        )

    def _member_select(self):
        return select(
            cohort_members,
            users.c.email,
            users.c.first_name,
            users.c.last_name,
        ).outerjoin(users, users.c.user_id == cohort_members.c.user_id)

    def _list_members(
        self,
        cohort_id: str,
        status: MemberStatus,
        rejection_email_sent: bool | None,
        user_ids: list[str] | None,
        limit: int,
    ) -> list[CohortMember]:
        stmt = (
            self._member_select()
            .where(cohort_members.c.cohort_id == cohort_id)
            .where(cohort_members.c.status == status.value)
        )
        if rejection_email_sent is not None:
            stmt = stmt.where(cohort_members.c.rejection_email_sent.is_(rejection_email_sent))
        if user_ids is not None:
            if not user_ids:
                return []
            stmt = stmt.where(cohort_members.c.user_id.in_(user_ids))
        stmt = stmt.order_by(
            cohort_members.c.created_at.asc(),
            cohort_members.c.membership_id.asc(),
        ).limit(limit)
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [CohortMember.model_validate(dict(row)) for row in rows]

    async def get_member(self, membership_id: str) -> CohortMember | None:
        return await self._run(self._get_member, membership_id)

    def _get_member(self, membership_id: str) -> CohortMember | None:
        stmt = self._member_select().where(cohort_members.c.membership_id == membership_id)
        with self._engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return CohortMember.model_validate(dict(row)) if row else None

    async def fetch_field_values(self, item_ids: Iterable[str]) -> list[FieldValueRow]:
        return await self._run(self._fetch_field_values, list(dict.fromkeys(item_ids)))

    def _fetch_field_values(self, item_ids: list[str]) -> list[FieldValueRow]:
        if not item_ids:
            return []
        base = select(
            field_values,
            fields.c.type.label("field_type"),
            fields.c.label,
            fields.c.name,
        ).join(fields, fields.c.field_id == field_values.c.field_id)
        results: list[FieldValueRow] = []
        with self._engine.connect() as conn:
            for start in range(0, len(item_ids), _IN_CHUNK):
                chunk = item_ids[start:start + _IN_CHUNK]
                rows = conn.execute(base.where(field_values.c.item_id.in_(chunk))).mappings().all()
                for row in rows:
                    data = dict(row)
                    data["label"] = data.get("label") or data.get("name")
                    results.append(FieldValueRow.model_validate(data))
        return results

    async def update_member_status(
        self,
        membership_id: str,
        status: MemberStatus,
        reason: str,
        *,
        expected_status: MemberStatus | None = None,
        updated_by: str | None = None,
    ) -> int:
        return await self._run(
            self._update_member_status,
            membership_id,
            status,
            reason,
            expected_status,
            updated_by,
        )

    def _update_member_status(
        self,
        membership_id: str,
        status: MemberStatus,
        reason: str,
        expected_status: MemberStatus | None,
        updated_by: str | None,
    ) -> int:
        stmt = (
            update(cohort_members)
            .where(cohort_members.c.membership_id == membership_id)
            .values(
                status=status.value,
                status_reason=reason,
                updated_at=_utcnow(),
                updated_by=updated_by,
            )
        )
        if expected_status is not None:
            stmt = stmt.where(cohort_members.c.status == expected_status.value)
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount

    async def mark_rejection_email_sent(self, membership_id: str) -> int:
        return await self._run(self._mark_rejection_email_sent, membership_id)

    def _mark_rejection_email_sent(self, membership_id: str) -> int:
        stmt = (
            update(cohort_members)
            .where(cohort_members.c.membership_id == membership_id)
            .where(cohort_members.c.rejection_email_sent.is_(False))
            .values(rejection_email_sent=True, updated_at=_utcnow())
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount
