from __future__ import annotations

import json
from datetime import date, timedelta
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from cohortshortlist.cli import app
from cohortshortlist.config import ENV_KEYS
from cohortshortlist.stores import SqlCohortStore

from conftest import REJECTION_FIELD, SHORTLIST_FIELD, Seeder


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def write_config(tmp_path: Path, **extra) -> Path:
    payload = {
        "shortlist_date_field_id": SHORTLIST_FIELD,
        "rejection_notification_date_field_id": REJECTION_FIELD,
        "database_url": f"sqlite:///{tmp_path / 'cli.db'}",
        "failure_log_path": str(tmp_path / "failures.jsonl"),
        "email_notifications_enabled": False,
        "lms": {"base_url": "http://127.0.0.1:9", "timeout_seconds": 1},
        "search_index": {"enabled": False},
    }
    payload.update(extra)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


def seed_database(tmp_path: Path) -> tuple[SqlCohortStore, Seeder]:
    store = SqlCohortStore(database_url=f"sqlite:///{tmp_path / 'cli.db'}")
    store.create_schema()
    seed = Seeder(store)
    seed.field("f-track", name="track", label="Track")
    seed.cohort("c-1", name="CLI Cohort", shortlist_date=date.today() - timedelta(days=2))
    seed.form(
        "form-1",
        "c-1",
        field_ids=["f-track"],
        rules={"logic": "AND", "conditions": [{"fieldId": "f-track", "fieldName": "Track", "value": ["data", "web"]}]},
    )
    seed.member("m-1", "u-1", "c-1")
    seed.member("m-2", "u-2", "c-1")
    seed.value("u-1", "f-track", text_value="Web")
    seed.value("u-2", "f-track", text_value="design")
    return store, seed


def test_shortlist_command_writes_report(tmp_path: Path, runner: CliRunner) -> None:
    store, seed = seed_database(tmp_path)
    config = write_config(tmp_path)
    output = tmp_path / "reports" / "run.json"

    result = runner.invoke(app, ["shortlist", "--config", str(config), "--output", str(output)])

    assert result.exit_code == 0, result.output
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["kind"] == "shortlisting"
    assert (report["processed"], report["shortlisted"], report["rejected"]) == (2, 1, 1)
    assert report["cohorts"][0]["cohort_id"] == "c-1"

    assert seed.member_row("m-1")["status"] == "shortlisted"
    assert seed.member_row("m-2")["status"] == "rejected"
    store.dispose()


def test_shortlist_command_limits_to_requested_users(tmp_path: Path, runner: CliRunner) -> None:
    store, _ = seed_database(tmp_path)
    config = write_config(tmp_path)
    output = tmp_path / "run.json"

    result = runner.invoke(
        app,
        ["shortlist", "--config", str(config), "--user-id", "u-2", "--batch-size", "1", "--output", str(output)],
    )

    assert result.exit_code == 0, result.output
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["processed"] == 1
    assert report["rejected"] == 1
    store.dispose()


def test_rejection_emails_command_reports_disabled_email(tmp_path: Path, runner: CliRunner) -> None:
    store, _ = seed_database(tmp_path)
    store.dispose()
    config = write_config(tmp_path)
    output = tmp_path / "emails.json"

    result = runner.invoke(app, ["rejection-emails", "--config", str(config), "--output", str(output)])

    assert result.exit_code == 0, result.output
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["kind"] == "rejection_email"
    assert report["emails_disabled"] is True


def test_missing_required_configuration_exits_with_code_2(tmp_path: Path, runner: CliRunner) -> None:
    config = tmp_path / "partial.yaml"
    config.write_text(yaml.safe_dump({"batch_size": 10}), encoding="utf-8")

    result = runner.invoke(app, ["shortlist", "--config", str(config)])

    assert result.exit_code == 2
