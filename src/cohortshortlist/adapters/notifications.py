"""HTTP client for the notification service."""

from __future__ import annotations

from typing import Any

import httpx

from ..schemas import NotificationReceipt
from ..schemas.config import NotificationSettings


class HttpNotifier:
    """Send templated notifications and surface per-recipient errors."""

    def __init__(
        self,
        settings: NotificationSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
        )
        self._owns_client = client is None

    async def send(
        self,
        *,
        context: str,
        key: str,
        replacements: dict[str, Any],
        recipients: list[str],
    ) -> NotificationReceipt:
        response = await self._client.post(
            "/notification/send",
            json={
                "isQueue": False,
                "context": context,
                "key": key,
                "replacements": replacements,
                "email": {"recipients": recipients},
            },
        )
        response.raise_for_status()
        payload = response.json() if response.content else {}
        return NotificationReceipt(errors=_collect_errors(payload))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _collect_errors(payload: Any) -> list[Any]:
    if not isinstance(payload, dict):
        return []
    result = payload.get("result")
    for container in (result, payload):
        if not isinstance(container, dict):
            continue
        email = container.get("email")
        if isinstance(email, dict) and isinstance(email.get("errors"), list):
            return email["errors"]
        if isinstance(container.get("errors"), list):
            return container["errors"]
    return []
