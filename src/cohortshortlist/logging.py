"""Logging utilities for the shortlisting engine."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

SERVICE_NAME = "cohort-shortlisting"


def _add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(level=log_level, format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )


@contextmanager
def run_context(run_id: str, kind: str) -> Iterator[None]:
    """Tag every log line emitted during a run, including batch worker tasks."""
    with structlog.contextvars.bound_contextvars(run_id=run_id, run_kind=kind):
        yield
