"""Typer CLI entrypoint for the shortlisting jobs."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer

from .config import load_settings
from .container import EngineContainer, close_container, create_container
from .errors import ConfigurationError
from .logging import configure_logging
from .pipeline import RunReport
from .schemas import EngineSettings

app = typer.Typer(help="Cohort shortlisting and rejection email jobs.")


def _settings(config: Optional[Path], log_level: str) -> EngineSettings:
    configure_logging(log_level)
    try:
        return load_settings(config)
    except ConfigurationError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _emit(report: RunReport, output: Optional[Path]) -> None:
    rendered = json.dumps(report.to_dict(), ensure_ascii=False, indent=2, default=str)
    if output is None:
        typer.echo(rendered)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(rendered, encoding="utf-8")
    typer.echo(
        f"Processed {report.processed} members across {report.cohorts_processed} cohorts "
        f"({report.failed} failed). Report saved to {output}."
    )


async def _shortlist(
    container: EngineContainer,
    *,
    user_ids: Optional[List[str]],
    batch_size: Optional[int],
) -> RunReport:
    try:
        return await container.shortlisting().evaluate_shortlisting(
            user_ids=user_ids,
            batch_size=batch_size,
        )
    finally:
        await close_container(container)


async def _rejection_emails(container: EngineContainer) -> RunReport:
    try:
        return await container.rejection_emails().send_rejection_emails()
    finally:
        await close_container(container)


@app.command()
def shortlist(
    config: Optional[Path] = typer.Option(None, exists=True, readable=True, dir_okay=False, help="YAML config path."),
    log_level: str = typer.Option("INFO", help="Log level for structured logging."),
    batch_size: Optional[int] = typer.Option(None, min=1, help="Members per batch for this run."),
    user_id: Optional[List[str]] = typer.Option(None, "--user-id", help="Restrict the run to these users."),
    output: Optional[Path] = typer.Option(None, dir_okay=False, help="Write the run report (JSON) here."),
) -> None:
    """Evaluate submitted members of every cohort whose shortlist date has arrived."""
    settings = _settings(config, log_level)
    container = create_container(settings=settings)
    report = asyncio.run(_shortlist(container, user_ids=user_id or None, batch_size=batch_size))
    _emit(report, output)


@app.command("rejection-emails")
def rejection_emails(
    config: Optional[Path] = typer.Option(None, exists=True, readable=True, dir_okay=False, help="YAML config path."),
    log_level: str = typer.Option("INFO", help="Log level for structured logging."),
    output: Optional[Path] = typer.Option(None, dir_okay=False, help="Write the run report (JSON) here."),
) -> None:
    """Email rejected members whose cohort's notification date has arrived."""
    settings = _settings(config, log_level)
    container = create_container(settings=settings)
    report = asyncio.run(_rejection_emails(container))
    _emit(report, output)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
