"""
CLI interface for Ingest Guard.

Administrative access to quotas, plans, the result cache and job locks.
"""

import sqlite3
import sys
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from ingest_guard.config.loader import IngestConfig, default_config, load_config
from ingest_guard.core.cache import ContentCache
from ingest_guard.core.errors import IngestError
from ingest_guard.core.locking import SqliteProcessingLock
from ingest_guard.core.permissions import PermissionGate
from ingest_guard.core.quota import QuotaLedger
from ingest_guard.core.sources import is_source_key, normalize_source
from ingest_guard.logging_config import configure_logging
from ingest_guard.storage.repository import initialize_schema, set_user_plan

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")
DbOption = typer.Option(None, "--db", help="Override the database path from configuration")


def _load(config_path: Optional[str], db: Optional[str]) -> Tuple[IngestConfig, str]:
    """Load configuration and resolve the database path."""
    config = load_config(config_path) if config_path else default_config()
    configure_logging(config.logging.level, config.logging.format.value)
    return config, db or config.database.path


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _format_limit(limit: int) -> str:
    return "unlimited" if limit == -1 else str(limit)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Ingest Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Ingest Guard - Use --help to see available commands")


@app.command()
def init(config_path: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """Initialize the Ingest Guard database."""
    try:
        _, db_path = _load(config_path, db)
        initialize_schema(db_path)
        console.print(f"[green]✓[/] Database initialized at {db_path}")
        sys.exit(EXIT_CODE_PASS)
    except (ValueError, OSError, sqlite3.Error) as e:
        _fail(f"initializing database: {e}")


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="User to report on"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Only show one feature"),
    config_path: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Show today's quota standing per feature. Read-only."""
    try:
        config, db_path = _load(config_path, db)
        gate = PermissionGate(QuotaLedger(db_path, config), config)
        features = [feature] if feature else sorted(config.features)

        table = Table(title=f"Usage for {user_id}")
        table.add_column("Feature")
        table.add_column("Used", justify="right")
        table.add_column("Limit", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_column("Allowed")
        plan_type = None
        for name in features:
            result = gate.check_feature_usage(user_id, name)
            plan_type = result.plan_type
            table.add_row(
                name,
                str(result.current),
                _format_limit(result.limit),
                _format_limit(result.remaining),
                "[green]yes[/]" if result.allowed else "[red]no[/]",
            )
        console.print(table)
        console.print(f"Plan: [bold]{plan_type}[/]")
        sys.exit(EXIT_CODE_PASS)
    except (IngestError, ValueError, OSError, sqlite3.Error) as e:
        _fail(str(e))


@app.command()
def history(
    user_id: str = typer.Argument(..., help="User to report on"),
    days: int = typer.Option(7, "--days", "-d", min=1, help="Number of days to include"),
    config_path: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Show per-day usage with warning/exceeded status."""
    try:
        config, db_path = _load(config_path, db)
        rows = QuotaLedger(db_path, config).usage_summary(user_id, days=days)
        if not rows:
            console.print(f"[dim]No usage recorded for {user_id} in the last {days} days.[/]")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title=f"Usage history for {user_id}")
        for column in ("Day", "Feature", "Count", "Limit", "Status"):
            table.add_column(column)
        colors = {"exceeded": "red", "warning": "yellow", "normal": "green", "unlimited": "cyan"}
        for row in rows:
            table.add_row(row.day, row.feature, str(row.count), _format_limit(row.limit),
                          f"[{colors[row.status]}]{row.status}[/]")
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except (ValueError, OSError, sqlite3.Error) as e:
        _fail(str(e))


@app.command("set-plan")
def set_plan(
    user_id: str = typer.Argument(..., help="User to update"),
    plan: str = typer.Argument(..., help="Plan name from configuration"),
    config_path: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Move a user onto a plan."""
    try:
        config, db_path = _load(config_path, db)
        if plan not in config.plans:
            _fail(f"unknown plan '{plan}'. Configured plans: {', '.join(sorted(config.plans))}")
        set_user_plan(user_id, plan, db_path)
        console.print(f"[green]✓[/] {user_id} is now on the {plan} plan")
        sys.exit(EXIT_CODE_PASS)
    except (ValueError, OSError, sqlite3.Error) as e:
        _fail(str(e))


@app.command("cache-invalidate")
def cache_invalidate(
    source_ref: str = typer.Argument(..., help="Source key, YouTube URL/video id or file path"),
    config_path: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Drop the cached result for a source so the next request recomputes it."""
    try:
        config, db_path = _load(config_path, db)
        # A raw key still works after the file behind it is gone or edited
        key = source_ref.strip()
        if not is_source_key(key):
            key = normalize_source(source_ref, config.processing.max_file_size_mb).key
        if ContentCache(db_path).invalidate(key):
            console.print(f"[green]✓[/] Invalidated {key}")
        else:
            console.print(f"[yellow]No cache entry for {key}[/]")
        sys.exit(EXIT_CODE_PASS)
    except (IngestError, ValueError, OSError, sqlite3.Error) as e:
        _fail(str(e))


@app.command()
def locks(config_path: Optional[str] = ConfigOption, db: Optional[str] = DbOption):
    """List in-flight jobs registered in the database."""
    try:
        config, db_path = _load(config_path, db)
        jobs = SqliteProcessingLock(db_path, config.processing.lock_stale_after_seconds).jobs()
        if not jobs:
            console.print("[dim]No jobs in flight.[/]")
            sys.exit(EXIT_CODE_PASS)
        table = Table(title="In-flight jobs")
        for column in ("Source key", "State", "Owner", "Started"):
            table.add_column(column)
        for job in jobs:
            table.add_row(job.source_key, job.state, job.owner, job.started_at.isoformat())
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except (ValueError, OSError, sqlite3.Error) as e:
        _fail(str(e))


@app.command("release-lock")
def release_lock(
    source_key: str = typer.Argument(..., help="Source key as shown by `locks`"),
    config_path: Optional[str] = ConfigOption,
    db: Optional[str] = DbOption,
):
    """Remove a job registration left behind by a crashed worker."""
    try:
        config, db_path = _load(config_path, db)
        if SqliteProcessingLock(db_path, config.processing.lock_stale_after_seconds).release(source_key):
            console.print(f"[green]✓[/] Released {source_key}")
        else:
            console.print(f"[yellow]No job registered for {source_key}[/]")
        sys.exit(EXIT_CODE_PASS)
    except (ValueError, OSError, sqlite3.Error) as e:
        _fail(str(e))


if __name__ == "__main__":
    app()
