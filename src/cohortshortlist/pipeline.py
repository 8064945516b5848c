"""Shortlisting and rejection-email orchestration."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Iterable, Literal

import pendulum
import structlog

from . import __version__
from .adapters import LearningClient
from .core.batching import AggregateCounts, BatchRunner
from .core.field_values import FieldValueResolver, values_by_field_id
from .core.rules import FormRule, evaluate_member
from .core.scanner import CohortScanner
from .core.updater import MemberStatusUpdater, within_deadline
from .errors import CohortValidationError, MemberVanishedError, NotificationDeliveryError
from .failures import FailureLog, FailureRecord
from .logging import run_context
from .schemas import Cohort, CohortMember, Course, EngineSettings, MemberStatus, ResolvedFieldValue
from .stores import CohortStore

CohortRunStatus = Literal["processed", "skipped", "empty", "failed"]

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(slots=True)
class CohortReport:
    """Per-cohort counts and timing."""

    cohort_id: str
    cohort_name: str
    status: CohortRunStatus
    skip_reason: str | None = None
    detail: str | None = None
    backlog: int = 0
    backlog_truncated: bool = False
    processed: int = 0
    shortlisted: int = 0
    rejected: int = 0
    emails_sent: int = 0
    failed: int = 0
    slow_batches: int = 0
    duration_seconds: float = 0.0


@dataclass(slots=True)
class RunReport:
    """Run summary returned to the caller instead of raising."""

    run_id: str
    kind: str
    started_at: str
    finished_at: str = ""
    app_version: str = __version__
    cohorts_found: int = 0
    cohorts_processed: int = 0
    cohorts_skipped: int = 0
    processed: int = 0
    shortlisted: int = 0
    rejected: int = 0
    emails_sent: int = 0
    failed: int = 0
    emails_disabled: bool = False
    errors: list[str] = field(default_factory=list)
    cohorts: list[CohortReport] = field(default_factory=list)
    metrics: dict[str, float] = field(default_factory=dict)

    def add(self, cohort: CohortReport) -> None:
        self.cohorts.append(cohort)
        if cohort.status == "processed":
            self.cohorts_processed += 1
        elif cohort.status in ("skipped", "failed"):
            self.cohorts_skipped += 1
        self.processed += cohort.processed
        self.shortlisted += cohort.shortlisted
        self.rejected += cohort.rejected
        self.emails_sent += cohort.emails_sent
        self.failed += cohort.failed

    def finish(self, duration_seconds: float) -> None:
        self.finished_at = pendulum.now("UTC").to_iso8601_string()
        rate = self.processed / duration_seconds if duration_seconds > 0 else 0.0
        self.metrics = {
            "duration_seconds": round(duration_seconds, 3),
            "records_per_second": round(rate, 2),
            "projected_daily_capacity": float(int(rate * SECONDS_PER_DAY)),
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RunContext:
    """Per-invocation state threaded through a run."""

    run_id: str
    settings: EngineSettings
    today: date
    logger: Any
    failure_log: FailureLog | None = None
    started: float = field(default_factory=time.perf_counter)

    def record_failure(
        self,
        stage: str,
        member: CohortMember,
        reason: str,
        *,
        email_status: str = "NOT_ATTEMPTED",
    ) -> None:
        if self.failure_log is None:
            return
        self.failure_log.append(
            FailureRecord(
                stage=stage,  # type: ignore[arg-type]
                cohort_id=member.cohort_id,
                user_id=member.user_id,
                membership_id=member.membership_id,
                reason=reason,
                email_status=email_status,  # type: ignore[arg-type]
            )
        )


def _describe(member: CohortMember) -> dict[str, Any]:
    return {"user_id": member.user_id, "cohort_id": member.cohort_id}


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class _Orchestrator:
    kind = "run"

    def __init__(
        self,
        *,
        settings: EngineSettings,
        scanner: CohortScanner,
        runner: BatchRunner | None = None,
        failure_log: FailureLog | None = None,
    ) -> None:
        self._settings = settings
        self._scanner = scanner
        self._runner = runner or BatchRunner(
            batch_size=settings.batch_size,
            max_concurrency=settings.max_concurrent_batches,
            slow_batch_seconds=settings.slow_batch_seconds,
            progress_every_groups=settings.progress_every_groups,
        )
        self._failure_log = failure_log
        self._logger = structlog.get_logger(__name__)

    def _start(self, today: date | None) -> tuple[RunContext, RunReport]:
        run_id = uuid.uuid4().hex
        context = RunContext(
            run_id=run_id,
            settings=self._settings,
            today=today or self._scanner.today(),
            logger=self._logger.bind(run_id=run_id, run_kind=self.kind),
            failure_log=self._failure_log,
        )
        report = RunReport(
            run_id=run_id,
            kind=self.kind,
            started_at=pendulum.now("UTC").to_iso8601_string(),
        )
        context.logger.info("run.started", as_of=context.today.isoformat())
        return context, report

    def _finish(self, context: RunContext, report: RunReport) -> RunReport:
        report.finish(time.perf_counter() - context.started)
        context.logger.info(
            "run.completed",
            cohorts_found=report.cohorts_found,
            cohorts_processed=report.cohorts_processed,
            cohorts_skipped=report.cohorts_skipped,
            processed=report.processed,
            shortlisted=report.shortlisted,
            rejected=report.rejected,
            emails_sent=report.emails_sent,
            failed=report.failed,
            **report.metrics,
        )
        return report

    def _backlog_truncated(self, backlog: list[CohortMember], log: Any) -> bool:
        # Members past the cap stay pending until a later run.
        limit = self._scanner.backlog_limit
        if len(backlog) < limit:
            return False
        log.warning("cohort.backlog_truncated", backlog=len(backlog), limit=limit)
        return True

    async def _eligible(self, context: RunContext, report: RunReport, field_id: str) -> list[Cohort]:
        try:
            eligible = await self._scanner.find_eligible_cohorts(field_id, context.today)
        except Exception as exc:  # noqa: BLE001
            context.logger.error("cohorts.scan_failed", field_id=field_id, error=_error_text(exc))
            report.errors.append(f"cohort scan failed: {_error_text(exc)}")
            return []
        report.cohorts_found = len(eligible)
        return [entry.cohort for entry in eligible]


class ShortlistingOrchestrator(_Orchestrator):
    """Evaluate every submitted member of every cohort whose shortlist date arrived."""

    kind = "shortlisting"

    def __init__(
        self,
        *,
        settings: EngineSettings,
        scanner: CohortScanner,
        resolver: FieldValueResolver,
        updater: MemberStatusUpdater,
        lms: LearningClient | None = None,
        runner: BatchRunner | None = None,
        failure_log: FailureLog | None = None,
    ) -> None:
        super().__init__(settings=settings, scanner=scanner, runner=runner, failure_log=failure_log)
        self._resolver = resolver
        self._updater = updater
        self._lms = lms

    async def evaluate_shortlisting(
        self,
        *,
        user_ids: Iterable[str] | None = None,
        batch_size: int | None = None,
        today: date | None = None,
        updated_by: str | None = None,
    ) -> RunReport:
        context, report = self._start(today)
        user_filter = list(user_ids) if user_ids is not None else None
        with run_context(context.run_id, self.kind):
            await self._process_cohorts(context, report, user_filter, batch_size, updated_by)
        return self._finish(context, report)

    async def _process_cohorts(
        self,
        context: RunContext,
        report: RunReport,
        user_ids: list[str] | None,
        batch_size: int | None,
        updated_by: str | None,
    ) -> None:
        for cohort in await self._eligible(context, report, self._settings.shortlist_date_field_id):
            try:
                cohort_report = await self._process_cohort(
                    cohort,
                    context,
                    user_ids=user_ids,
                    batch_size=batch_size,
                    updated_by=updated_by,
                )
            except Exception as exc:  # noqa: BLE001
                context.logger.error(
                    "cohort.failed",
                    cohort_id=cohort.cohort_id,
                    error=_error_text(exc),
                )
                cohort_report = CohortReport(
                    cohort_id=cohort.cohort_id,
                    cohort_name=cohort.name,
                    status="failed",
                    detail=_error_text(exc),
                )
            report.add(cohort_report)

    async def _process_cohort(
        self,
        cohort: Cohort,
        context: RunContext,
        *,
        user_ids: list[str] | None,
        batch_size: int | None,
        updated_by: str | None,
    ) -> CohortReport:
        log = context.logger.bind(cohort_id=cohort.cohort_id)
        started = time.perf_counter()

        try:
            rule_set = await self._scanner.load_rule_set(cohort)
        except CohortValidationError as exc:
            log.warning(
                "cohort.skipped",
                reason=exc.reason,
                form_id=exc.form_id,
                field_ids=getattr(exc, "field_ids", None),
                error=str(exc),
            )
            return CohortReport(
                cohort_id=cohort.cohort_id,
                cohort_name=cohort.name,
                status="skipped",
                skip_reason=exc.reason,
                detail=str(exc),
            )

        backlog = await self._scanner.load_backlog(cohort, user_ids=user_ids)
        if not backlog:
            log.info("cohort.empty_backlog")
            return CohortReport(cohort_id=cohort.cohort_id, cohort_name=cohort.name, status="empty")

        truncated = self._backlog_truncated(backlog, log)
        log.info("cohort.processing", backlog=len(backlog), forms=len(rule_set))
        courses = await self._published_courses(cohort, log)
        counts = await self._runner.run(
            backlog,
            self._worker(cohort, rule_set, courses, updated_by),
            prepare=self._prefetch,
            on_failure=lambda member, exc: context.record_failure(
                "status_update" if isinstance(exc, MemberVanishedError) else "evaluation",
                member,
                _error_text(exc),
            ),
            describe=_describe,
            batch_size=batch_size,
        )
        duration = time.perf_counter() - started
        cohort_report = self._cohort_report(cohort, backlog, counts, duration, truncated=truncated)
        log.info(
            "cohort.completed",
            processed=cohort_report.processed,
            shortlisted=cohort_report.shortlisted,
            rejected=cohort_report.rejected,
            failed=cohort_report.failed,
            duration_seconds=round(cohort_report.duration_seconds, 3),
        )
        return cohort_report

    async def _published_courses(self, cohort: Cohort, log: Any) -> list[Course] | None:
        if self._lms is None:
            return None
        try:
            courses = await within_deadline(
                self._lms.search_published_courses(cohort.cohort_id),
                self._settings.call_timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            log.warning("lms.course_lookup_failed", error=_error_text(exc))
            return None
        log.info("lms.courses_loaded", courses=len(courses))
        return courses

    async def _prefetch(self, batch: list[CohortMember]) -> dict[str, list[ResolvedFieldValue]]:
        return await self._resolver.resolve_batch(member.user_id for member in batch)

    def _worker(
        self,
        cohort: Cohort,
        rule_set: list[FormRule],
        courses: list[Course] | None,
        updated_by: str | None,
    ):
        async def process(member: CohortMember, resolved: dict[str, list[ResolvedFieldValue]]) -> str:
            values = values_by_field_id(resolved.get(member.user_id, []))
            result = evaluate_member(
                rule_set,
                values,
                user_id=member.user_id,
                cohort_id=cohort.cohort_id,
            )
            await self._updater.apply(
                member,
                result,
                batch_mode=True,
                courses=courses,
                cohort_name=cohort.name,
                updated_by=updated_by,
            )
            return result.status.value

        return process

    @staticmethod
    def _cohort_report(
        cohort: Cohort,
        backlog: list[CohortMember],
        counts: AggregateCounts,
        duration: float,
        *,
        truncated: bool = False,
    ) -> CohortReport:
        return CohortReport(
            cohort_id=cohort.cohort_id,
            cohort_name=cohort.name,
            status="processed",
            backlog=len(backlog),
            backlog_truncated=truncated,
            processed=counts.processed,
            shortlisted=counts.count(MemberStatus.SHORTLISTED.value),
            rejected=counts.count(MemberStatus.REJECTED.value),
            failed=counts.failed,
            slow_batches=len(counts.slow_batches),
            duration_seconds=duration,
        )


class RejectionEmailOrchestrator(_Orchestrator):
    """Email rejected members once their cohort's notification date arrives."""

    kind = "rejection_email"

    def __init__(
        self,
        *,
        settings: EngineSettings,
        scanner: CohortScanner,
        store: CohortStore,
        updater: MemberStatusUpdater,
        runner: BatchRunner | None = None,
        failure_log: FailureLog | None = None,
    ) -> None:
        super().__init__(settings=settings, scanner=scanner, runner=runner, failure_log=failure_log)
        self._store = store
        self._updater = updater

    async def send_rejection_emails(
        self,
        *,
        user_ids: Iterable[str] | None = None,
        today: date | None = None,
    ) -> RunReport:
        context, report = self._start(today)
        if not self._settings.email_notifications_enabled:
            context.logger.info("rejection_email.disabled")
            report.emails_disabled = True
            return self._finish(context, report)

        user_filter = list(user_ids) if user_ids is not None else None
        with run_context(context.run_id, self.kind):
            await self._sweep_cohorts(context, report, user_filter)
        return self._finish(context, report)

    async def _sweep_cohorts(self, context: RunContext, report: RunReport, user_ids: list[str] | None) -> None:
        field_id = self._settings.rejection_notification_date_field_id
        for cohort in await self._eligible(context, report, field_id):
            try:
                cohort_report = await self._process_cohort(cohort, context, user_ids=user_ids)
            except Exception as exc:  # noqa: BLE001
                context.logger.error("cohort.failed", cohort_id=cohort.cohort_id, error=_error_text(exc))
                cohort_report = CohortReport(
                    cohort_id=cohort.cohort_id,
                    cohort_name=cohort.name,
                    status="failed",
                    detail=_error_text(exc),
                )
            report.add(cohort_report)

    async def _process_cohort(
        self,
        cohort: Cohort,
        context: RunContext,
        *,
        user_ids: list[str] | None,
    ) -> CohortReport:
        log = context.logger.bind(cohort_id=cohort.cohort_id)
        started = time.perf_counter()
        backlog = await self._scanner.load_backlog(cohort, kind="rejection_email", user_ids=user_ids)
        if not backlog:
            log.info("cohort.empty_backlog")
            return CohortReport(cohort_id=cohort.cohort_id, cohort_name=cohort.name, status="empty")

        truncated = self._backlog_truncated(backlog, log)
        log.info("cohort.processing", backlog=len(backlog))

        async def send(member: CohortMember, _: Any) -> str:
            receipt = await self._updater.send_status_email(
                member,
                MemberStatus.REJECTED,
                cohort_name=cohort.name,
            )
            if not receipt.ok:
                raise NotificationDeliveryError(receipt.errors)
            # The flag only flips after a clean delivery so failures are retried next run.
            await self._store.mark_rejection_email_sent(member.membership_id)
            return "sent"

        counts = await self._runner.run(
            backlog,
            send,
            on_failure=lambda member, exc: context.record_failure(
                "rejection_email",
                member,
                _error_text(exc),
                email_status="FAILED",
            ),
            describe=_describe,
        )
        duration = time.perf_counter() - started
        log.info(
            "cohort.completed",
            processed=counts.processed,
            emails_sent=counts.count("sent"),
            failed=counts.failed,
            duration_seconds=round(duration, 3),
        )
        return CohortReport(
            cohort_id=cohort.cohort_id,
            cohort_name=cohort.name,
            status="processed",
            backlog=len(backlog),
            backlog_truncated=truncated,
            processed=counts.processed,
            emails_sent=counts.count("sent"),
            failed=counts.failed,
            slow_batches=len(counts.slow_batches),
            duration_seconds=duration,
        )
