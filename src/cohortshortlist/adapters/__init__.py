"""Clients for the external systems the engine drives."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from ..schemas import Course, NotificationReceipt
from .lms import HttpLmsClient
from .notifications import HttpNotifier
from .search_index import ElasticsearchUserIndex


@runtime_checkable
class LearningClient(Protocol):
    """Learning-management service contract."""

    async def search_published_courses(self, cohort_id: str) -> list[Course]:
        """Return the published courses mapped to a cohort."""

    async def enroll(self, course_id: str, learner_id: str) -> dict[str, Any]:
        """Enroll a learner into a course."""

    async def unenroll(self, course_id: str, user_id: str) -> dict[str, Any]:
        """Remove a learner from a course."""


@runtime_checkable
class SearchIndex(Protocol):
    """User search index contract.

    Status propagation must use a scripted partial update so fields owned by
    other writers (progress, form data) are preserved.
    """

    async def get(self, user_id: str) -> dict[str, Any] | None:
        """Return the indexed user document, or None."""

    async def update(self, user_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Apply a ``doc`` or ``script`` update to the user document."""

    async def patch_application_status(
        self,
        user_id: str,
        cohort_id: str,
        status: str,
        reason: str | None,
    ) -> dict[str, Any]:
        """Patch the status of the user's application for one cohort."""


@runtime_checkable
class Notifier(Protocol):
    """Notification service contract."""

    async def send(
        self,
        *,
        context: str,
        key: str,
        replacements: dict[str, Any],
        recipients: list[str],
    ) -> NotificationReceipt:
        """Send a templated notification and report per-recipient errors."""


__all__ = [
    "LearningClient",
    "SearchIndex",
    "Notifier",
    "HttpLmsClient",
    "HttpNotifier",
    "ElasticsearchUserIndex",
]
