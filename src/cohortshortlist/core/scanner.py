"""Cohort discovery, rule set validation and backlog loading."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Literal

import pendulum
import structlog

from ..errors import (
    MissingRuleTreeError,
    NoActiveFormError,
    RuleTreeError,
    UndefinedFieldReferenceError,
)
from ..schemas import Cohort, CohortMember, Form, MemberStatus
from ..stores import CohortStore
from .rules import FormRule, has_rule_tree, parse_rule_tree, referenced_field_ids

BacklogKind = Literal["shortlisting", "rejection_email"]

_FIELD_ID_KEYS = ("fieldId", "field_id")


@dataclass(slots=True)
class EligibleCohort:
    """Active cohort whose scheduled date has arrived."""

    cohort: Cohort
    scheduled_for: date


def parse_scheduled_date(value: Any, *, tz: str = "UTC") -> date | None:
    """Coerce a stored date custom field value to a calendar date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return pendulum.instance(value).in_timezone(tz).date()
    if isinstance(value, date):
        return value
    try:
        parsed = pendulum.parse(str(value).strip(), tz=tz, strict=False)
    except ValueError:
        return None
    if isinstance(parsed, pendulum.DateTime):
        return parsed.in_timezone(tz).date()
    if isinstance(parsed, pendulum.Date):
        return parsed
    return None


def schema_field_ids(schema: Any) -> set[str]:
    """Collect field identifiers declared anywhere in a (nested) form schema."""
    found: set[str] = set()
    stack = [_decode_json(schema)]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            for key in _FIELD_ID_KEYS:
                value = node.get(key)
                if isinstance(value, str) and value:
                    found.add(value)
            stack.extend(node.values())
        elif isinstance(node, list):
            stack.extend(node)
    return found


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


class CohortScanner:
    """Find cohorts to process and load what each run needs about them."""

    def __init__(
        self,
        store: CohortStore,
        *,
        form_context_type: str = "COHORTMEMBER",
        backlog_limit: int = 100_000,
        timezone: str = "UTC",
    ) -> None:
        self._store = store
        self._form_context_type = form_context_type
        self._backlog_limit = backlog_limit
        self._timezone = timezone
        self._logger = structlog.get_logger(__name__)

    @property
    def backlog_limit(self) -> int:
        return self._backlog_limit

    def today(self) -> date:
        return pendulum.today(self._timezone).date()

    async def find_eligible_cohorts(
        self,
        date_field_id: str,
        today: date | None = None,
    ) -> list[EligibleCohort]:
        """Active cohorts whose date field is on or before ``today``.

        Earlier dates stay eligible so cohorts missed by a failed or skipped
        run are picked up by the next one.
        """
        as_of = today or self.today()
        eligible: list[EligibleCohort] = []
        for entry in await self._store.list_active_cohorts_with_field(date_field_id):
            scheduled = parse_scheduled_date(entry.value, tz=self._timezone)
            if scheduled is None:
                self._logger.warning(
                    "cohort.unparseable_date",
                    cohort_id=entry.cohort.cohort_id,
                    field_id=date_field_id,
                    value=str(entry.value),
                )
                continue
            if scheduled <= as_of:
                eligible.append(EligibleCohort(cohort=entry.cohort, scheduled_for=scheduled))
        self._logger.info(
            "cohorts.eligible",
            field_id=date_field_id,
            as_of=as_of.isoformat(),
            count=len(eligible),
        )
        return eligible

    async def load_rule_set(self, cohort: Cohort) -> list[FormRule]:
        """Load and validate the rule trees of the cohort's active forms.

        Raises a CohortValidationError subclass when the cohort must be skipped.
        """
        forms = await self._store.get_active_forms(cohort.cohort_id, self._form_context_type)
        if not forms:
            raise NoActiveFormError(cohort.cohort_id, f"Cohort {cohort.cohort_id} has no active form")

        rule_set = [
            form_rule
            for form_rule in (self._form_rule(cohort, form) for form in forms)
            if form_rule is not None
        ]
        if not rule_set:
            raise MissingRuleTreeError(
                cohort.cohort_id,
                f"No active form of cohort {cohort.cohort_id} defines a rule tree",
            )
        return rule_set

    def _form_rule(self, cohort: Cohort, form: Form) -> FormRule | None:
        raw_rules = _decode_json(form.rules)
        if not has_rule_tree(raw_rules):
            return None
        try:
            tree = parse_rule_tree(raw_rules)
        except ValueError as exc:
            raise RuleTreeError(
                cohort.cohort_id,
                f"Form {form.form_id} has a malformed rule tree: {exc}",
                form_id=form.form_id,
            ) from exc

        declared = schema_field_ids(form.fields)
        missing = sorted(referenced_field_ids(tree) - declared)
        if missing:
            raise UndefinedFieldReferenceError(cohort.cohort_id, form.form_id, missing)
        return FormRule(
            form_id=form.form_id,
            tree=tree,
            field_ids=frozenset(declared),
            title=form.title,
        )

    async def load_backlog(
        self,
        cohort: Cohort,
        *,
        kind: BacklogKind = "shortlisting",
        user_ids: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[CohortMember]:
        """Members awaiting evaluation, or rejected members not yet emailed."""
        if kind == "rejection_email":
            return await self._store.list_members(
                cohort.cohort_id,
                status=MemberStatus.REJECTED,
                rejection_email_sent=False,
                user_ids=user_ids,
                limit=limit or self._backlog_limit,
            )
        return await self._store.list_members(
            cohort.cohort_id,
            status=MemberStatus.SUBMITTED,
            user_ids=user_ids,
            limit=limit or self._backlog_limit,
        )
