"""Configuration loading from YAML files and environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from ..schemas.config import EngineSettings

# Environment variable -> dotted settings path.
ENV_KEYS: dict[str, str] = {
    "SHORTLIST_DATE_FIELD_ID": "shortlist_date_field_id",
    "REJECTION_NOTIFICATION_DATE_FIELD_ID": "rejection_notification_date_field_id",
    "SHORTLISTING_BATCH_SIZE": "batch_size",
    "SHORTLISTING_MAX_CONCURRENT_BATCHES": "max_concurrent_batches",
    "SHORTLISTING_BACKLOG_LIMIT": "backlog_limit",
    "SHORTLISTING_SLOW_BATCH_SECONDS": "slow_batch_seconds",
    "SHORTLISTING_CALL_TIMEOUT_SECONDS": "call_timeout_seconds",
    "EMAIL_NOTIFICATIONS_ENABLED": "email_notifications_enabled",
    "SHORTLISTING_TIMEZONE": "timezone",
    "SHORTLISTING_FAILURE_LOG": "failure_log_path",
    "DATABASE_URL": "database_url",
    "LMS_SERVICE_URL": "lms.base_url",
    "TENANT_ID": "lms.tenant_id",
    "ORGANISATION_ID": "lms.organisation_id",
    "ELASTICSEARCH_URL": "search_index.url",
    "ELASTICSEARCH_USER_INDEX": "search_index.index",
    "SEARCH_INDEX_SYNC_ENABLED": "search_index.enabled",
    "NOTIFICATION_URL": "notification.base_url",
}

REQUIRED_FIELD_IDS: dict[str, str] = {
    "shortlist_date_field_id": "SHORTLIST_DATE_FIELD_ID",
    "rejection_notification_date_field_id": "REJECTION_NOTIFICATION_DATE_FIELD_ID",
}


def read_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML mapping; an empty file yields an empty mapping."""
    with Path(path).open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {path} must contain a YAML mapping")
    return loaded


def load_settings(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> EngineSettings:
    """Build settings from defaults, an optional YAML file and the environment.

    Raises ConfigurationError when either date-field identifier is unset, since
    there is no safe default for selecting which cohorts to process.
    """
    data: dict[str, Any] = read_yaml(path) if path else {}
    env = os.environ if environ is None else environ
    for env_key, dotted in ENV_KEYS.items():
        raw = env.get(env_key)
        if raw is not None and raw != "":
            _assign(data, dotted, raw)
    for dotted, value in (overrides or {}).items():
        if value is not None:
            _assign(data, dotted, value)

    missing = [
        env_key
        for key, env_key in REQUIRED_FIELD_IDS.items()
        if not str(data.get(key) or "").strip()
    ]
    if missing:
        raise ConfigurationError(
            f"Required configuration is not set: {', '.join(missing)}"
        )

    try:
        return EngineSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def _assign(data: dict[str, Any], dotted: str, value: Any) -> None:
    head, _, rest = dotted.partition(".")
    if not rest:
        data[head] = value
        return
    child = data.setdefault(head, {})
    if not isinstance(child, dict):
        raise ConfigurationError(f"Config section {head!r} must be a mapping")
    _assign(child, rest, value)


__all__ = ["ENV_KEYS", "load_settings", "read_yaml"]
