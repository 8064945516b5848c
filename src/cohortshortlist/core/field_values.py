"""Bulk loading and typed extraction of users' custom field values."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Iterable

import pendulum
import structlog

from ..schemas import FieldType, FieldValueRow, ResolvedFieldValue
from ..stores import CohortStore

_TYPED_COLUMNS: dict[FieldType, tuple[str, ...]] = {
    FieldType.TEXT: ("text_value",),
    FieldType.TEXTAREA: ("textarea_value", "text_value"),
    FieldType.NUMERIC: ("number_value",),
    FieldType.CALENDAR: ("calendar_value",),
    FieldType.DATE: ("calendar_value",),
    FieldType.DROPDOWN: ("dropdown_value",),
    FieldType.RADIO: ("radio_value",),
    FieldType.CHECKBOX: ("checkbox_value",),
    FieldType.JSON: (),
}


def extract_typed_value(row: FieldValueRow) -> Any:
    """Pick the typed column for the row's field type, else the generic value."""
    columns = _TYPED_COLUMNS.get(row.field_type, ()) if row.field_type else ()
    for column in columns:
        candidate = getattr(row, column)
        if candidate is None or candidate == "":
            continue
        if row.field_type in (FieldType.CALENDAR, FieldType.DATE):
            return _date_text(candidate)
        if row.field_type is FieldType.DROPDOWN:
            return _decode_options(candidate)
        return candidate

    if row.field_type in (FieldType.CALENDAR, FieldType.DATE) and row.value:
        return _date_text(row.value)
    if row.field_type is FieldType.DROPDOWN and row.value:
        return _decode_options(row.value)
    return row.value


def _date_text(value: Any) -> str:
    if isinstance(value, datetime):
        return pendulum.instance(value).to_date_string()
    if isinstance(value, date):
        return value.isoformat()
    try:
        parsed = pendulum.parse(str(value), strict=False)
    except ValueError:
        return str(value)
    if isinstance(parsed, (pendulum.DateTime, pendulum.Date)):
        return parsed.to_date_string()
    return str(value)


def _decode_options(value: Any) -> Any:
    # Dropdown selections may arrive as a JSON-encoded list.
    if isinstance(value, str) and value.lstrip().startswith("["):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def values_by_field_id(values: Iterable[ResolvedFieldValue]) -> dict[str, Any]:
    """Lookup map for rule evaluation; repeated rows for one field become a list."""
    lookup: dict[str, Any] = {}
    for item in values:
        if item.field_id not in lookup:
            lookup[item.field_id] = item.value
            continue
        existing = lookup[item.field_id]
        if isinstance(existing, list):
            lookup[item.field_id] = [*existing, item.value]
        else:
            lookup[item.field_id] = [existing, item.value]
    return lookup


class FieldValueResolver:
    """Fetch field values for a batch of users with a single store query."""

    def __init__(self, store: CohortStore) -> None:
        self._store = store
        self._logger = structlog.get_logger(__name__)

    async def resolve_batch(self, user_ids: Iterable[str]) -> dict[str, list[ResolvedFieldValue]]:
        unique_ids = list(dict.fromkeys(user_ids))
        resolved: dict[str, list[ResolvedFieldValue]] = {user_id: [] for user_id in unique_ids}
        if not unique_ids:
            return resolved

        rows = await self._store.fetch_field_values(unique_ids)
        for row in rows:
            bucket = resolved.get(row.item_id)
            if bucket is None:
                continue
            bucket.append(
                ResolvedFieldValue(
                    field_id=row.field_id,
                    label=row.label,
                    value=extract_typed_value(row),
                )
            )

        self._logger.debug(
            "field_values.resolved",
            users=len(unique_ids),
            rows=len(rows),
        )
        return resolved
