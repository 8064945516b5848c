from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from cohortshortlist.core.scanner import CohortScanner, parse_scheduled_date, schema_field_ids
from cohortshortlist.errors import (
    MissingRuleTreeError,
    NoActiveFormError,
    RuleTreeError,
    UndefinedFieldReferenceError,
)
from cohortshortlist.schemas import Cohort, MemberStatus

TODAY = date(2024, 6, 10)

RULES = {"logic": "AND", "conditions": [{"fieldId": "f-a", "fieldName": "A", "value": "yes"}]}


def test_parse_scheduled_date_accepts_common_shapes():
    assert parse_scheduled_date("2024-06-09") == date(2024, 6, 9)
    assert parse_scheduled_date("2024-06-09T23:30:00Z") == date(2024, 6, 9)
    assert parse_scheduled_date(datetime(2024, 6, 9, 23, 30, tzinfo=timezone.utc), tz="Asia/Kolkata") == date(2024, 6, 10)
    assert parse_scheduled_date(date(2024, 6, 9)) == date(2024, 6, 9)
    assert parse_scheduled_date("") is None
    assert parse_scheduled_date("not a date") is None


def test_schema_field_ids_walks_nested_and_encoded_schemas():
    schema = '{"result": [{"fields": [{"fieldId": "a"}, {"field_id": "b", "options": [{"label": "x"}]}]}]}'

    assert schema_field_ids(schema) == {"a", "b"}
    assert schema_field_ids(None) == set()


@pytest.mark.asyncio
async def test_missed_dates_remain_eligible(store, seed, settings):
    seed.cohort("c-yesterday", shortlist_date=TODAY - timedelta(days=1))
    seed.cohort("c-today", shortlist_date=TODAY)
    seed.cohort("c-future", shortlist_date=TODAY + timedelta(days=1))
    seed.cohort("c-inactive", status="inactive", shortlist_date=TODAY)
    seed.cohort("c-garbled", shortlist_date="sometime soon")
    scanner = CohortScanner(store)

    eligible = await scanner.find_eligible_cohorts(settings.shortlist_date_field_id, TODAY)

    assert [entry.cohort.cohort_id for entry in eligible] == ["c-today", "c-yesterday"]
    assert {entry.scheduled_for for entry in eligible} == {TODAY, TODAY - timedelta(days=1)}


@pytest.mark.asyncio
async def test_cohort_without_active_form_is_rejected(store, seed):
    seed.cohort("c-1", shortlist_date=TODAY)
    seed.form("form-old", "c-1", field_ids=["f-a"], rules=RULES, status="inactive")

    with pytest.raises(NoActiveFormError) as excinfo:
        await CohortScanner(store).load_rule_set(Cohort(cohort_id="c-1"))

    assert excinfo.value.reason == "no_active_form"


@pytest.mark.asyncio
async def test_forms_without_rule_tree_are_rejected(store, seed):
    seed.cohort("c-1", shortlist_date=TODAY)
    seed.form("form-1", "c-1", field_ids=["f-a"], rules=None)
    seed.form("form-2", "c-1", field_ids=["f-a"], rules={"conditions": []})

    with pytest.raises(MissingRuleTreeError):
        await CohortScanner(store).load_rule_set(Cohort(cohort_id="c-1"))


@pytest.mark.asyncio
async def test_undefined_field_reference_names_form_and_fields(store, seed):
    seed.cohort("c-1", shortlist_date=TODAY)
    seed.form(
        "form-1",
        "c-1",
        field_ids=["f-a"],
        rules={
            "logic": "AND",
            "conditions": [
                {"fieldId": "f-a", "value": "yes"},
                {"logic": "OR", "conditions": [{"fieldId": "f-ghost", "value": "1"}]},
            ],
        },
    )

    with pytest.raises(UndefinedFieldReferenceError) as excinfo:
        await CohortScanner(store).load_rule_set(Cohort(cohort_id="c-1"))

    assert excinfo.value.form_id == "form-1"
    assert excinfo.value.field_ids == ["f-ghost"]


@pytest.mark.asyncio
async def test_malformed_rule_tree_is_rejected_at_load_time(store, seed):
    seed.cohort("c-1", shortlist_date=TODAY)
    seed.form("form-1", "c-1", field_ids=["f-a"], rules={"logic": "AND", "conditions": [{"value": "x"}]})

    with pytest.raises(RuleTreeError):
        await CohortScanner(store).load_rule_set(Cohort(cohort_id="c-1"))


@pytest.mark.asyncio
async def test_load_rule_set_returns_every_active_form(store, seed):
    seed.cohort("c-1", shortlist_date=TODAY)
    seed.form("form-1", "c-1", field_ids=["f-a"], rules=RULES)
    seed.form("form-2", "c-1", field_ids=["f-a", "f-b"], rules=RULES)

    rule_set = await CohortScanner(store).load_rule_set(Cohort(cohort_id="c-1"))

    assert [rule.form_id for rule in rule_set] == ["form-1", "form-2"]
    assert rule_set[1].field_ids == frozenset({"f-a", "f-b"})


@pytest.mark.asyncio
async def test_backlog_queries_by_kind(store, seed):
    seed.cohort("c-1", shortlist_date=TODAY)
    seed.member("m-1", "u-1", "c-1", status="submitted")
    seed.member("m-2", "u-2", "c-1", status="shortlisted")
    seed.member("m-3", "u-3", "c-1", status="rejected")
    seed.member("m-4", "u-4", "c-1", status="rejected", rejection_email_sent=True)
    seed.member("m-5", "u-5", "c-1", status="submitted")
    scanner = CohortScanner(store, backlog_limit=10)
    cohort = Cohort(cohort_id="c-1")

    submitted = await scanner.load_backlog(cohort)
    rejected = await scanner.load_backlog(cohort, kind="rejection_email")
    filtered = await scanner.load_backlog(cohort, user_ids=["u-5"])
    limited = await scanner.load_backlog(cohort, limit=1)

    assert [member.membership_id for member in submitted] == ["m-1", "m-5"]
    assert all(member.status is MemberStatus.SUBMITTED for member in submitted)
    assert [member.membership_id for member in rejected] == ["m-3"]
    assert [member.membership_id for member in filtered] == ["m-5"]
    assert [member.membership_id for member in limited] == ["m-1"]
