"""HTTP client for the learning-management service."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from ..schemas import Course
from ..schemas.config import LmsSettings


class HttpLmsClient:
    """Course lookup and enrollment calls against the LMS REST API."""

    def __init__(self, settings: LmsSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
        )
        self._owns_client = client is None
        self._logger = structlog.get_logger(__name__)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.tenant_id:
            headers["tenantid"] = self._settings.tenant_id
        if self._settings.organisation_id:
            headers["organisationid"] = self._settings.organisation_id
        return headers

    async def search_published_courses(self, cohort_id: str) -> list[Course]:
        response = await self._client.get(
            "/courses/search",
            params={
                "status": "published",
                "cohortId": cohort_id,
                "limit": self._settings.course_search_limit,
                "offset": 0,
            },
            headers=self._headers(),
        )
        response.raise_for_status()
        payload = response.json() if response.content else {}
        courses: list[Course] = []
        for raw in _extract_courses(payload):
            course_id = raw.get("courseId") or raw.get("id")
            if not course_id:
                self._logger.warning("lms.course_without_id", cohort_id=cohort_id)
                continue
            courses.append(Course(course_id=str(course_id), title=raw.get("title")))
        return courses

    async def enroll(self, course_id: str, learner_id: str) -> dict[str, Any]:
        response = await self._client.post(
            "/enrollments",
            json={"courseId": course_id, "learnerId": learner_id},
            headers=self._headers(),
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    async def unenroll(self, course_id: str, user_id: str) -> dict[str, Any]:
        response = await self._client.request(
            "DELETE",
            "/enrollments",
            json={"courseId": course_id, "userId": user_id},
            headers=self._headers(),
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _extract_courses(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, dict):
        return []
    result = payload.get("result")
    if isinstance(result, dict) and isinstance(result.get("courses"), list):
        return [item for item in result["courses"] if isinstance(item, dict)]
    if isinstance(result, list):
        return [item for item in result if isinstance(item, dict)]
    courses = payload.get("courses")
    if isinstance(courses, list):
        return [item for item in courses if isinstance(item, dict)]
    return []
