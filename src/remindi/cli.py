#!/usr/bin/env python
"""
CLI management commands for the reminder engine.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

import click

from remindi.billing.cycles import compute_next_billing_date
from remindi.billing.exceptions import ReminderEngineError
from remindi.billing.models import BillingCycle
from remindi.db import check_database_health, init_db
from remindi.engine import ReminderEngine


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    engine_factory: Callable[[], ReminderEngine]
    init_db: Callable[[], None]
    subprocess_run: Callable[..., Any]
    check_database: Callable[[], Awaitable[bool]]
    check_redis: Callable[[], Awaitable[dict[str, Any]]]
    close_connections: Callable[[], Awaitable[None]]


async def _close_connections() -> None:
    from remindi.db import dispose_async_engine
    from remindi.redis_client import shutdown_redis

    await shutdown_redis()
    await dispose_async_engine()


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    import subprocess

    from remindi.redis_client import redis_manager

    return CLIDependencies(
        engine_factory=ReminderEngine.from_settings,
        init_db=init_db,
        subprocess_run=subprocess.run,
        check_database=check_database_health,
        check_redis=redis_manager.health_check,
        close_connections=_close_connections,
    )


def _parse_at(value: str | None) -> datetime | None:
    """ISO-8601 instant; naive values are taken as UTC."""
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise click.BadParameter(f"not an ISO-8601 datetime: {value}", param_hint="--at") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _run_engine(
    deps: CLIDependencies, call: Callable[[ReminderEngine], Awaitable[Any]]
) -> Any:
    async def _run() -> Any:
        try:
            return await call(deps.engine_factory())
        finally:
            await deps.close_connections()

    try:
        return asyncio.run(_run())
    except ReminderEngineError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}") from e


@click.group()
def cli() -> None:
    """Remindi billing and reminder engine CLI."""
    from remindi.logging import setup_logging

    setup_logging()


@cli.command()
def init_database() -> None:
    """Create the engine's tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    deps.init_db()
    click.echo("Database initialized successfully!")


@cli.command()
def run_migrations() -> None:
    """Run database migrations."""
    deps = _get_cli_dependencies()
    import sys

    click.echo("Running database migrations...")
    result = deps.subprocess_run(["alembic", "upgrade", "head"], capture_output=True, text=True)

    if result.returncode == 0:
        click.echo("Migrations completed successfully!")
        click.echo(result.stdout)
    else:
        click.echo("Migration failed!")
        click.echo(result.stderr)
        sys.exit(1)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Plan and filter without sending")
@click.option("--at", "at", default=None, help="Evaluate at this ISO-8601 instant")
@click.option("--user", "user_id", default=None, help="Only this user's subscriptions")
def dispatch(dry_run: bool, at: str | None, user_id: str | None) -> None:
    """Send every reminder that is due now."""
    deps = _get_cli_dependencies()
    now = _parse_at(at)

    result = _run_engine(
        deps,
        lambda engine: engine.dispatch_due_reminders(now, dry_run=dry_run, user_id=user_id),
    )

    if result.skipped:
        click.echo("Another dispatcher run holds the lease; skipped.")
        return

    if dry_run:
        click.echo(f"Dry run: {len(result.planned)} reminder(s) would be sent")
        for event in result.planned:
            click.echo(
                f"  {event.subscription_id}  {event.interval_days:>2}d before "
                f"{event.due_date.isoformat()}  (scheduled {event.scheduled_at.isoformat()})"
            )
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.command()
@click.option("--at", "at", default=None, help="Evaluate at this ISO-8601 instant")
def process_failed(at: str | None) -> None:
    """Retry reminders whose send failed."""
    deps = _get_cli_dependencies()
    now = _parse_at(at)

    result = _run_engine(deps, lambda engine: engine.process_failed(now))
    if result.skipped:
        click.echo("Another recovery run holds the lease; skipped.")
        return
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.command()
@click.option("--at", "at", default=None, help="Evaluate at this ISO-8601 instant")
def prune(at: str | None) -> None:
    """Delete delivery records older than the retention period."""
    deps = _get_cli_dependencies()
    now = _parse_at(at)

    deleted = _run_engine(deps, lambda engine: engine.prune_deliveries(now))
    click.echo(f"Deleted {deleted} delivery record(s)")


@cli.command()
@click.option("--dry-run", is_flag=True, help="Show who would receive a digest without sending")
@click.option("--at", "at", default=None, help="Evaluate at this ISO-8601 instant")
@click.option("--user", "user_id", default=None, help="Only this user")
def daily_digest(dry_run: bool, at: str | None, user_id: str | None) -> None:
    """Send the daily status digest to users whose notification time is now."""
    deps = _get_cli_dependencies()
    now = _parse_at(at)

    result = _run_engine(
        deps,
        lambda engine: engine.send_daily_digests(now, dry_run=dry_run, user_id=user_id),
    )

    if result.skipped:
        click.echo("Another digest run holds the lease; skipped.")
        return

    if dry_run:
        click.echo(f"Dry run: {len(result.planned)} digest(s) would be sent")
        for planned_user in result.planned:
            click.echo(f"  {planned_user}")
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.command()
@click.option(
    "--cycle",
    required=True,
    help=f"Billing cycle ({', '.join(c.value for c in BillingCycle)})",
)
@click.option("--interval", default=1, show_default=True, help="Every N cycles")
@click.option(
    "--first-billing-date",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="First charge date (YYYY-MM-DD)",
)
@click.option("--anchor-day", type=int, default=None, help="Billing cycle day (1-31)")
@click.option("--payments", default=0, show_default=True, help="Payments already logged")
@click.option("--count", default=6, show_default=True, help="Dates to show")
@click.option("--strict", is_flag=True, help="Reject unknown billing cycles")
def preview(
    cycle: str,
    interval: int,
    first_billing_date: datetime,
    anchor_day: int | None,
    payments: int,
    count: int,
    strict: bool,
) -> None:
    """Preview upcoming billing dates with the dispatcher's calculator."""
    first: date = first_billing_date.date()
    if anchor_day is None:
        anchor_day = first.day

    for period in range(payments, payments + count):
        try:
            due = compute_next_billing_date(
                first, cycle, interval, anchor_day, period, strict=strict
            )
        except ReminderEngineError as e:
            raise click.ClickException(f"{e.error_code}: {e.message}") from e
        if due is None:
            if period == payments:
                click.echo("No further billing dates.")
            break
        click.echo(f"{period:>4}  {due.isoformat()}")


async def _collect_service_statuses(deps: CLIDependencies) -> dict[str, str]:
    results: dict[str, str] = {}

    try:
        healthy = await deps.check_database()
        results["database"] = "✓ Connected" if healthy else "✗ Unreachable"
    except Exception as exc:  # pragma: no cover
        results["database"] = f"✗ Failed: {exc}"

    try:
        health = await deps.check_redis()
        if health.get("status") == "healthy":
            results["redis"] = "✓ Connected"
        else:
            results["redis"] = f"✗ {health.get('error', 'Unhealthy')}"
    except Exception as exc:  # pragma: no cover
        results["redis"] = f"✗ Failed: {exc}"

    return results


@cli.command()
def check_services() -> None:
    """Check connectivity to the database and the lease store."""
    deps = _get_cli_dependencies()

    async def _check_services() -> dict[str, str]:
        try:
            return await _collect_service_statuses(deps)
        finally:
            await deps.close_connections()

    results = asyncio.run(_check_services())

    click.echo("\nService Status:")
    click.echo("-" * 40)
    for service in ("database", "redis"):
        click.echo(f"{service:15} {results.get(service, '✗ Unknown')}")


if __name__ == "__main__":
    cli()
