"""Member status transitions and their downstream side effects."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, TypeVar

import structlog

from ..adapters import LearningClient, Notifier, SearchIndex
from ..errors import MemberVanishedError, ShortlistingError
from ..failures import FailureLog, FailureRecord, FailureStage
from ..schemas import CohortMember, Course, EngineSettings, MemberStatus, NotificationReceipt
from ..stores import CohortStore
from .rules import EvaluationResult

R = TypeVar("R")


async def within_deadline(call: Awaitable[R], timeout: float | None) -> R:
    """Await one external call, cancelling it after ``timeout`` seconds."""
    if timeout is None:
        return await call
    return await asyncio.wait_for(call, timeout)


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


@dataclass(slots=True)
class StepResult:
    """Outcome of one best-effort side effect."""

    step: str
    attempted: bool = True
    ok: bool = True
    error: str | None = None


@dataclass(slots=True)
class UpdateOutcome:
    """Status write plus the side effects it triggered."""

    membership_id: str
    user_id: str
    cohort_id: str
    status: MemberStatus
    steps: list[StepResult] = field(default_factory=list)

    def step(self, name: str) -> StepResult | None:
        for result in self.steps:
            if result.step == name:
                return result
        return None

    @property
    def email_status(self) -> str:
        result = self.step("notification")
        if result is None or not result.attempted:
            return "NOT_ATTEMPTED"
        return "SUCCESS" if result.ok else "FAILED"


class MemberStatusUpdater:
    """Persist a member's new status, then enroll, index and notify.

    The status write is authoritative: its failure fails the member. Every
    later step is best-effort, logged on failure and never rolled back.
    Each external call gets its own deadline, so a slow service only fails
    that step.
    """

    def __init__(
        self,
        store: CohortStore,
        *,
        settings: EngineSettings,
        lms: LearningClient | None = None,
        search_index: SearchIndex | None = None,
        notifier: Notifier | None = None,
        failure_log: FailureLog | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._lms = lms
        self._search_index = search_index
        self._notifier = notifier
        self._failure_log = failure_log
        self._call_timeout = settings.call_timeout_seconds
        self._logger = structlog.get_logger(__name__)

    async def apply(
        self,
        member: CohortMember,
        result: EvaluationResult,
        *,
        batch_mode: bool = True,
        courses: list[Course] | None = None,
        cohort_name: str | None = None,
        updated_by: str | None = None,
    ) -> UpdateOutcome:
        # Batch writes only claim members still in ``submitted``.
        rows = await self._store.update_member_status(
            member.membership_id,
            result.status,
            result.status_reason,
            expected_status=MemberStatus.SUBMITTED if batch_mode else None,
            updated_by=updated_by,
        )
        if rows == 0:
            raise MemberVanishedError(member.membership_id)

        outcome = UpdateOutcome(
            membership_id=member.membership_id,
            user_id=member.user_id,
            cohort_id=member.cohort_id,
            status=result.status,
        )

        if result.status is MemberStatus.SHORTLISTED:
            outcome.steps.append(await self._enroll(member, courses))
        elif result.status is MemberStatus.REJECTED and not batch_mode:
            outcome.steps.append(await self._unenroll(member, courses))

        outcome.steps.append(await self._sync_search_index(member, result))

        if self._should_notify(result.status, batch_mode=batch_mode):
            outcome.steps.append(
                await self._notify(member, result.status, cohort_name=cohort_name, batch_mode=batch_mode)
            )
        else:
            outcome.steps.append(StepResult(step="notification", attempted=False))
        return outcome

    async def update_member(
        self,
        membership_id: str,
        status: MemberStatus,
        reason: str = "",
        *,
        cohort_name: str | None = None,
        updated_by: str | None = None,
    ) -> UpdateOutcome:
        """Interactive single-member status change."""
        member = await self._store.get_member(membership_id)
        if member is None:
            raise MemberVanishedError(membership_id)
        result = EvaluationResult(
            status=status,
            status_reason=reason,
            user_id=member.user_id,
            cohort_id=member.cohort_id,
        )
        return await self.apply(
            member,
            result,
            batch_mode=False,
            cohort_name=cohort_name,
            updated_by=updated_by,
        )

    def _should_notify(self, status: MemberStatus, *, batch_mode: bool) -> bool:
        if not self._settings.email_notifications_enabled or self._notifier is None:
            return False
        if batch_mode:
            # Rejection mail is sent by the separate rejection sweep.
            return status is MemberStatus.SHORTLISTED
        return status in self._settings.notification.interactive_statuses

    async def _courses_for(self, member: CohortMember, courses: list[Course] | None) -> list[Course]:
        if courses is not None:
            return courses
        lookup = self._lms.search_published_courses(member.cohort_id)
        return await within_deadline(lookup, self._call_timeout)

    async def _enroll(self, member: CohortMember, courses: list[Course] | None) -> StepResult:
        if self._lms is None:
            return StepResult(step="lms_enrollment", attempted=False)
        try:
            targets = await self._courses_for(member, courses)
        except Exception as exc:  # noqa: BLE001
            return self._side_effect_failed(
                member, "lms_enrollment", f"course lookup failed: {_error_text(exc)}"
            )

        failed: list[str] = []
        for course in targets:
            try:
                await within_deadline(self._lms.enroll(course.course_id, member.user_id), self._call_timeout)
            except Exception as exc:  # noqa: BLE001
                failed.append(course.course_id)
                self._logger.warning(
                    "lms.enroll_failed",
                    user_id=member.user_id,
                    cohort_id=member.cohort_id,
                    course_id=course.course_id,
                    error=_error_text(exc),
                )
                self._record(member, "lms_enrollment", f"course {course.course_id}: {_error_text(exc)}")

        self._logger.info(
            "lms.enrollment_completed",
            user_id=member.user_id,
            cohort_id=member.cohort_id,
            total_courses=len(targets),
            failed_courses=len(failed),
        )
        if failed:
            return StepResult(step="lms_enrollment", ok=False, error=f"failed courses: {', '.join(failed)}")
        return StepResult(step="lms_enrollment")

    async def _unenroll(self, member: CohortMember, courses: list[Course] | None) -> StepResult:
        if self._lms is None:
            return StepResult(step="lms_unenrollment", attempted=False)
        try:
            targets = await self._courses_for(member, courses)
        except Exception as exc:  # noqa: BLE001
            return self._side_effect_failed(
                member, "lms_unenrollment", f"course lookup failed: {_error_text(exc)}"
            )

        failed: list[str] = []
        for course in targets:
            try:
                await within_deadline(self._lms.unenroll(course.course_id, member.user_id), self._call_timeout)
            except Exception as exc:  # noqa: BLE001
                failed.append(course.course_id)
                self._logger.warning(
                    "lms.unenroll_failed",
                    user_id=member.user_id,
                    cohort_id=member.cohort_id,
                    course_id=course.course_id,
                    error=_error_text(exc),
                )
                self._record(member, "lms_unenrollment", f"course {course.course_id}: {_error_text(exc)}")
        if failed:
            return StepResult(step="lms_unenrollment", ok=False, error=f"failed courses: {', '.join(failed)}")
        return StepResult(step="lms_unenrollment")

    async def _sync_search_index(self, member: CohortMember, result: EvaluationResult) -> StepResult:
        if self._search_index is None or not self._settings.search_index.enabled:
            return StepResult(step="search_index", attempted=False)
        try:
            await within_deadline(
                self._search_index.patch_application_status(
                    member.user_id,
                    member.cohort_id,
                    result.status.value,
                    result.status_reason,
                ),
                self._call_timeout,
            )
        except Exception as exc:  # noqa: BLE001
            return self._side_effect_failed(member, "search_index", _error_text(exc))
        return StepResult(step="search_index")

    async def _notify(
        self,
        member: CohortMember,
        status: MemberStatus,
        *,
        cohort_name: str | None,
        batch_mode: bool,
    ) -> StepResult:
        try:
            receipt = await self.send_status_email(member, status, cohort_name=cohort_name)
        except Exception as exc:  # noqa: BLE001
            return self._side_effect_failed(member, "notification", _error_text(exc), email_status="FAILED")
        if not receipt.ok:
            return self._side_effect_failed(
                member,
                "notification",
                f"delivery errors: {receipt.errors}",
                email_status="FAILED",
            )

        self._logger.info(
            "notification.sent",
            user_id=member.user_id,
            cohort_id=member.cohort_id,
            status=status.value,
        )
        if status is MemberStatus.REJECTED and not batch_mode:
            try:
                await self._store.mark_rejection_email_sent(member.membership_id)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(
                    "rejection_email.flag_failed",
                    user_id=member.user_id,
                    cohort_id=member.cohort_id,
                    error=str(exc),
                )
        return StepResult(step="notification")

    async def send_status_email(
        self,
        member: CohortMember,
        status: MemberStatus,
        *,
        cohort_name: str | None = None,
    ) -> NotificationReceipt:
        """Send the status template to the member; raises when it cannot be sent."""
        if self._notifier is None:
            raise ShortlistingError("notification service is not configured")
        key = self._settings.notification.template_keys.get(status)
        if not key:
            raise ShortlistingError(f"no notification template configured for status {status.value}")
        if not member.email:
            raise ShortlistingError(f"user {member.user_id} has no email address")
        return await within_deadline(
            self._notifier.send(
                context=self._settings.notification.context,
                key=key,
                replacements=self._replacements(member, status, cohort_name),
                recipients=[member.email],
            ),
            self._call_timeout,
        )

    @staticmethod
    def _replacements(member: CohortMember, status: MemberStatus, cohort_name: str | None) -> dict[str, Any]:
        return {
            "{username}": member.display_name,
            "{firstName}": member.first_name or "",
            "{lastName}": member.last_name or "",
            "{programName}": cohort_name or member.cohort_id,
            "{status}": status.value,
        }

    def _side_effect_failed(
        self,
        member: CohortMember,
        stage: FailureStage,
        reason: str,
        *,
        email_status: str = "NOT_ATTEMPTED",
    ) -> StepResult:
        self._logger.warning(
            f"{stage}.failed",
            user_id=member.user_id,
            email=member.email,
            cohort_id=member.cohort_id,
            error=reason,
        )
        self._record(member, stage, reason, email_status=email_status)
        return StepResult(step=stage, ok=False, error=reason)

    def _record(
        self,
        member: CohortMember,
        stage: FailureStage,
        reason: str,
        *,
        email_status: str = "NOT_ATTEMPTED",
    ) -> None:
        if self._failure_log is None:
            return
        self._failure_log.append(
            FailureRecord(
                stage=stage,
                cohort_id=member.cohort_id,
                user_id=member.user_id,
                membership_id=member.membership_id,
                reason=reason,
                email_status=email_status,
            )
        )
