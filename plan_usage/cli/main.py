"""
CLI interface for Plan Usage.

Administrative access to quotas and the usage ledger.
"""

import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from plan_usage.core.catalog import SubjectRef
from plan_usage.core.errors import StorageFailure, UnknownFeature
from plan_usage.core.periods import StatisticsBucket
from plan_usage.sdk.client import PlanUsage
from plan_usage.storage.db import DEFAULT_DB_PATH
from plan_usage.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_state = {"db": DEFAULT_DB_PATH, "catalog": "catalog.yaml", "config": None}


def _client() -> PlanUsage:
    """Build a client from the global options."""
    return PlanUsage.from_files(
        _state["catalog"],
        db_path=_state["db"],
        config_path=_state["config"]
    )


def _subject(subject_type: str, subject_id: str, plan: Optional[str]) -> SubjectRef:
    return SubjectRef(subject_type=subject_type, subject_id=subject_id, plan_ref=plan)


def _fmt(value) -> str:
    if value is None:
        return "unlimited"
    return f"{value.normalize():f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database file"),
    catalog: str = typer.Option("catalog.yaml", "--catalog", "-c", help="Feature/plan catalog YAML"),
    config: Optional[str] = typer.Option(None, "--config", help="Engine configuration YAML"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")
):
    """Plan Usage CLI."""
    _state.update(db=db, catalog=catalog, config=config)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)]
    )
    if ctx.invoked_subcommand is None:
        console.print("Plan Usage - Use --help to see available commands")


@app.command()
def init():
    """Initialize the Plan Usage database."""
    try:
        initialize_schema(_state["db"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except StorageFailure as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def quotas(
    subject_type: str = typer.Argument(..., help="Subject type, e.g. user"),
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Subject's current plan")
):
    """Show every quota held by a subject."""
    try:
        client = _client()
        statuses = client.quotas.quotas_status(_subject(subject_type, subject_id, plan))
    except (FileNotFoundError, ValueError, StorageFailure) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not statuses:
        console.print(f"\n[bold yellow]No quotas found for {subject_type}:{subject_id}[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Quotas for {subject_type}:{subject_id}")
    table.add_column("Feature")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Usage", justify="right")
    table.add_column("State")
    table.add_column("Resets")
    for status in statuses:
        table.add_row(
            status.feature,
            _fmt(status.limit),
            _fmt(status.used),
            _fmt(status.remaining),
            "-" if status.percentage is None else f"{status.percentage:.1f}%",
            f"[red]{status.state.value}[/]" if status.exceeded else status.state.value,
            status.reset_at.isoformat(sep=" ", timespec="minutes") if status.reset_at else "never"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    subject_type: str = typer.Argument(..., help="Subject type, e.g. user"),
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Filter to one feature"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum records to show")
):
    """Show recent usage records of a subject, newest first."""
    try:
        records = _client().usage.history(_subject(subject_type, subject_id, None), feature, limit)
    except (FileNotFoundError, ValueError, UnknownFeature, StorageFailure) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Usage for {subject_type}:{subject_id}")
    table.add_column("Recorded")
    table.add_column("Feature")
    table.add_column("Used", justify="right")
    table.add_column("Period")
    for record in records:
        table.add_row(
            record.created_at.isoformat(sep=" ", timespec="seconds"),
            record.feature,
            _fmt(record.used),
            f"{record.period_start.date()} → {record.period_end.date()}"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(
    subject_type: str = typer.Argument(..., help="Subject type, e.g. user"),
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    feature: str = typer.Option(..., "--feature", "-f", help="Feature to report on"),
    days: int = typer.Option(30, "--days", "-d", help="Days to look back"),
    bucket: StatisticsBucket = typer.Option(StatisticsBucket.DAY, "--bucket", "-b", help="Grouping")
):
    """Show usage statistics for one feature."""
    end = datetime.now()
    try:
        rows = _client().usage.statistics(
            _subject(subject_type, subject_id, None), feature,
            end - timedelta(days=days), end, bucket
        )
    except (FileNotFoundError, ValueError, UnknownFeature, StorageFailure) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"{feature} by {bucket.value}")
    for column in ("Period", "Total", "Count", "Average", "Max", "Min"):
        table.add_column(column, justify="left" if column == "Period" else "right")
    for row in rows:
        table.add_row(
            row.period, _fmt(row.total), str(row.count),
            _fmt(row.average), _fmt(row.maximum), _fmt(row.minimum)
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reset(
    subject_type: str = typer.Argument(..., help="Subject type, e.g. user"),
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Reset one feature only")
):
    """Reset a subject's quota usage to zero."""
    subject = _subject(subject_type, subject_id, None)
    try:
        client = _client()
        if feature:
            if client.quotas.reset(subject, feature) is None:
                console.print(f"[yellow]No quota for {feature}[/]")
                sys.exit(EXIT_CODE_FAIL)
            console.print(f"[green]✓[/] Reset {feature} for {subject_type}:{subject_id}")
        else:
            count = client.quotas.reset_all(subject)
            console.print(f"[green]✓[/] Reset {count} quotas for {subject_type}:{subject_id}")
    except (FileNotFoundError, ValueError, UnknownFeature, StorageFailure) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sync(
    subject_type: str = typer.Argument(..., help="Subject type, e.g. user"),
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    plan: str = typer.Option(..., "--plan", "-p", help="Subject's new plan"),
    prune: bool = typer.Option(False, "--prune", help="Delete quotas the plan no longer grants")
):
    """Align a subject's quotas with its plan after a plan change."""
    subject = _subject(subject_type, subject_id, plan)
    try:
        client = _client()
        result = client.quotas.sync_with_plan(subject)
        removed = client.quotas.remove_stale(subject, result) if prune else 0
    except (FileNotFoundError, ValueError, UnknownFeature, StorageFailure) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Synced {subject_type}:{subject_id} with plan {plan}[/bold]")
    console.print(f"Created: {', '.join(result.created) or '-'}")
    console.print(f"Updated: {', '.join(result.updated) or '-'}")
    if prune:
        console.print(f"Removed: {removed}")
    elif result.stale:
        console.print(f"[yellow]Stale:[/] {', '.join(result.stale)} (use --prune to delete)")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
