"""Durable failure log for manual review of skipped or failed members."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Literal

import pendulum
import structlog

FailureStage = Literal[
    "evaluation",
    "status_update",
    "lms_enrollment",
    "lms_unenrollment",
    "search_index",
    "notification",
    "rejection_email",
]
EmailStatus = Literal["SUCCESS", "FAILED", "NOT_ATTEMPTED"]


@dataclass(slots=True)
class FailureRecord:
    stage: FailureStage
    cohort_id: str
    user_id: str
    reason: str
    email_status: EmailStatus = "NOT_ATTEMPTED"
    membership_id: str | None = None
    timestamp: str = ""


class FailureLog:
    """Append-only failure log writing JSON lines."""

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._logger = structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, record: FailureRecord) -> None:
        if not record.timestamp:
            record.timestamp = pendulum.now("UTC").to_iso8601_string()
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(asdict(record), ensure_ascii=False))
                handle.write("\n")
        except OSError as exc:
            self._logger.error(
                "failure_log.write_failed",
                path=str(self._path),
                error=str(exc),
                stage=record.stage,
                cohort_id=record.cohort_id,
                user_id=record.user_id,
            )

    def read(self) -> list[dict]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]
