from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from cohortshortlist.schemas import CohortStatus, FieldType, MemberStatus
from cohortshortlist.stores import CohortStore, SqlCohortStore
from cohortshortlist.stores.sql import build_engine


def test_sql_store_satisfies_protocol(store):
    assert isinstance(store, CohortStore)


def test_in_memory_sqlite_uses_a_shared_connection():
    engine = build_engine("sqlite://")
    try:
        assert type(engine.pool).__name__ == "StaticPool"
    finally:
        engine.dispose()


def test_store_requires_url_or_engine():
    with pytest.raises(ValueError):
        SqlCohortStore()


@pytest.mark.asyncio
async def test_list_active_cohorts_with_field(store, seed, settings):
    seed.cohort("c-1", name="Alpha", shortlist_date=date(2024, 5, 1))
    seed.cohort("c-2", name="Beta", shortlist_date="2024-05-02")
    seed.cohort("c-3", status="archived", shortlist_date=date(2024, 5, 1))
    seed.cohort("c-4", rejection_date=date(2024, 5, 1))

    entries = await store.list_active_cohorts_with_field(settings.shortlist_date_field_id)

    assert [entry.cohort.cohort_id for entry in entries] == ["c-1", "c-2"]
    assert entries[0].cohort.name == "Alpha"
    assert entries[0].cohort.status is CohortStatus.ACTIVE
    assert entries[0].value.date() == date(2024, 5, 1)
    assert entries[1].value == "2024-05-02"


@pytest.mark.asyncio
async def test_get_active_forms_filters_context_and_status(store, seed):
    seed.cohort("c-1")
    seed.form("form-1", "c-1", field_ids=["a"], rules={"logic": "AND", "conditions": []})
    seed.form("form-2", "c-1", field_ids=["a"], rules=None, status="archived")

    forms = await store.get_active_forms("c-1", "COHORTMEMBER")

    assert [form.form_id for form in forms] == ["form-1"]
    assert forms[0].rules == {"logic": "AND", "conditions": []}
    assert await store.get_active_forms("c-1", "USER") == []


@pytest.mark.asyncio
async def test_list_members_joins_user_details(store, seed):
    seed.cohort("c-1")
    seed.member("m-1", "u-1", "c-1", email="asha@example.org", first_name="Asha", last_name="Rao")
    seed.member("m-2", "u-2", "c-1", status="applied")

    members = await store.list_members("c-1", status=MemberStatus.SUBMITTED, limit=10)

    assert len(members) == 1
    assert members[0].email == "asha@example.org"
    assert members[0].display_name == "Asha Rao"
    assert await store.list_members("c-1", status=MemberStatus.SUBMITTED, user_ids=[], limit=10) == []


@pytest.mark.asyncio
async def test_fetch_field_values_carries_field_metadata(store, seed):
    seed.field("f-age", name="age", field_type="numeric", label="Age")
    seed.field("f-city", name="city", field_type="text")
    seed.value("u-1", "f-age", number_value=Decimal("21"))
    seed.value("u-1", "f-city", text_value="Pune")
    seed.value("u-2", "f-city", text_value="Delhi")

    rows = await store.fetch_field_values(["u-1", "u-1"])

    by_field = {row.field_id: row for row in rows}
    assert set(by_field) == {"f-age", "f-city"}
    assert by_field["f-age"].field_type is FieldType.NUMERIC
    assert by_field["f-age"].label == "Age"
    assert by_field["f-city"].label == "city"
    assert by_field["f-city"].text_value == "Pune"
    assert await store.fetch_field_values([]) == []


@pytest.mark.asyncio
async def test_update_member_status_compare_and_set(store, seed):
    seed.cohort("c-1")
    seed.member("m-1", "u-1", "c-1")

    first = await store.update_member_status(
        "m-1", MemberStatus.SHORTLISTED, "ok", expected_status=MemberStatus.SUBMITTED, updated_by="system"
    )
    second = await store.update_member_status(
        "m-1", MemberStatus.REJECTED, "late", expected_status=MemberStatus.SUBMITTED
    )

    assert (first, second) == (1, 0)
    row = seed.member_row("m-1")
    assert row["status"] == "shortlisted"
    assert row["updated_by"] == "system"
    assert await store.update_member_status("missing", MemberStatus.REJECTED, "x") == 0


@pytest.mark.asyncio
async def test_mark_rejection_email_sent_flips_once(store, seed):
    seed.cohort("c-1")
    seed.member("m-1", "u-1", "c-1", status="rejected")

    assert await store.mark_rejection_email_sent("m-1") == 1
    assert await store.mark_rejection_email_sent("m-1") == 0
    assert seed.member_row("m-1")["rejection_email_sent"] is True


@pytest.mark.asyncio
async def test_file_backed_store_runs_in_worker_threads(tmp_path):
    file_store = SqlCohortStore(database_url=f"sqlite:///{tmp_path / 'store.db'}")
    file_store.create_schema()
    try:
        assert await file_store.get_member("nobody") is None
        assert await file_store.list_active_cohorts_with_field("f-x") == []
    finally:
        file_store.dispose()
