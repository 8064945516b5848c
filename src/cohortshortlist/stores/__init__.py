"""Relational store contract used by the shortlisting engine."""

from __future__ import annotations

from typing import Iterable, Protocol, runtime_checkable

from ..schemas import CohortDateValue, CohortMember, FieldValueRow, Form, MemberStatus
from .sql import SqlCohortStore


@runtime_checkable
class CohortStore(Protocol):
    """Read/write access to cohorts, members, forms and field values.

    Implementations must return members oldest-first and must honour
    ``expected_status`` as a compare-and-set when it is given.
    """

    async def list_active_cohorts_with_field(self, field_id: str) -> list[CohortDateValue]:
        """Return active cohorts paired with their value for ``field_id``."""

    async def get_active_forms(self, cohort_id: str, context_type: str) -> list[Form]:
        """Return the active forms attached to the cohort's membership context."""

    async def list_members(
        self,
        cohort_id: str,
        *,
        status: MemberStatus,
        rejection_email_sent: bool | None = None,
        user_ids: Iterable[str] | None = None,
        limit: int,
    ) -> list[CohortMember]:
        """Return members in ``status``, oldest first, at most ``limit``."""

    async def get_member(self, membership_id: str) -> CohortMember | None:
        """Return a single member with contact details, if present."""

    async def fetch_field_values(self, item_ids: Iterable[str]) -> list[FieldValueRow]:
        """Return every field value row owned by the given item ids."""

    async def update_member_status(
        self,
        membership_id: str,
        status: MemberStatus,
        reason: str,
        *,
        expected_status: MemberStatus | None = None,
        updated_by: str | None = None,
    ) -> int:
        """Persist a status transition and return the affected row count."""

    async def mark_rejection_email_sent(self, membership_id: str) -> int:
        """Flip the rejection-email flag and return the affected row count."""


__all__ = ["CohortStore", "SqlCohortStore"]
