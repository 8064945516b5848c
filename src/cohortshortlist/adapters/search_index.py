"""Elasticsearch user index client with scripted partial updates."""

from __future__ import annotations

from typing import Any

import httpx
import pendulum
import structlog

from ..schemas.config import SearchIndexSettings

# Updates only the status fields of the cohort's application entry, appending
# a minimal entry when the user has none for this cohort yet.
APPLICATION_STATUS_SCRIPT = """
if (ctx._source.applications == null) {
  ctx._source.applications = [];
}
boolean found = false;
for (int i = 0; i < ctx._source.applications.size(); i++) {
  if (ctx._source.applications[i].cohortId == params.cohortId) {
    ctx._source.applications[i].cohortmemberstatus = params.status;
    ctx._source.applications[i].statusReason = params.reason;
    ctx._source.applications[i].updatedAt = params.updatedAt;
    found = true;
    break;
  }
}
if (!found) {
  ctx._source.applications.add(params.application);
}
ctx._source.updatedAt = params.updatedAt;
""".strip()


class ElasticsearchUserIndex:
    """Read and patch user documents in the search index."""

    def __init__(
        self,
        settings: SearchIndexSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.url,
            timeout=settings.timeout_seconds,
        )
        self._owns_client = client is None
        self._logger = structlog.get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    async def get(self, user_id: str) -> dict[str, Any] | None:
        response = await self._client.get(f"/{self._settings.index}/_doc/{user_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json().get("_source")

    async def update(self, user_id: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(
            f"/{self._settings.index}/_update/{user_id}",
            params={"retry_on_conflict": 3},
            json=body,
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    async def patch_application_status(
        self,
        user_id: str,
        cohort_id: str,
        status: str,
        reason: str | None,
    ) -> dict[str, Any]:
        now = pendulum.now("UTC").to_iso8601_string()
        application = {
            "cohortId": cohort_id,
            "cohortmemberstatus": status,
            "statusReason": reason,
            "updatedAt": now,
        }
        body = {
            "script": {
                "source": APPLICATION_STATUS_SCRIPT,
                "lang": "painless",
                "params": {
                    "cohortId": cohort_id,
                    "status": status,
                    "reason": reason,
                    "updatedAt": now,
                    "application": application,
                },
            },
            "upsert": {
                "userId": user_id,
                "applications": [application],
                "courses": [],
                "createdAt": now,
                "updatedAt": now,
            },
        }
        result = await self.update(user_id, body)
        self._logger.debug(
            "search_index.application_patched",
            user_id=user_id,
            cohort_id=cohort_id,
            status=status,
            result=result.get("result"),
        )
        return result

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
