"""Command-line entry point for operating an eventrelay database."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from functools import wraps
from typing import Any, TypeVar
from uuid import UUID

import click

from eventrelay import __version__
from eventrelay.admin import OutboxAdmin
from eventrelay.config import HousekeepingConfig
from eventrelay.exceptions import EventRelayError
from eventrelay.housekeeping import HousekeepingJob
from eventrelay.repositories.dlq import DeadLetterFilter
from eventrelay.stores.factory import RelayStores, open_stores
from eventrelay.stores.schema import get_schema, list_backends

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def coro(f: Callable[..., Awaitable[T]]) -> Callable[..., T]:
    """Run an async click command to completion."""

    @wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        return asyncio.run(f(*args, **kwargs))

    return wrapper


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


async def _open(ctx: click.Context) -> RelayStores:
    url = ctx.obj.get("database")
    if not url:
        raise click.UsageError("No database given. Use --database or EVENTRELAY_DATABASE_URL.")
    try:
        return await open_stores(url, enable_tracing=False)
    except EventRelayError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=__version__, prog_name="eventrelay")
@click.option(
    "--database",
    "-d",
    envvar="EVENTRELAY_DATABASE_URL",
    help="Database URL (sqlite:///path or postgresql+asyncpg://...).",
)
@click.option(
    "--log-level",
    envvar="EVENTRELAY_LOG_LEVEL",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, database: str | None, log_level: str) -> None:
    """Operate the outbox, inbox and dead-letter tables of an eventrelay database.

    \b
    Examples:
      eventrelay schema --backend sqlite
      eventrelay -d sqlite:///app.db init-db
      eventrelay -d sqlite:///app.db inspect --limit 10
      eventrelay -d sqlite:///app.db replay --type OrderPlaced
      eventrelay -d sqlite:///app.db cleanup
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["database"] = database


@cli.command()
@click.option(
    "--backend",
    type=click.Choice(list_backends()),
    default="postgresql",
    show_default=True,
)
def schema(backend: str) -> None:
    """Print the DDL of the relay tables."""
    click.echo(get_schema(backend))


@cli.command(name="init-db")
@click.pass_context
@coro
async def init_db(ctx: click.Context) -> None:
    """Create the relay tables if they do not exist."""
    stores = await _open(ctx)
    try:
        await stores.initialize()
    except EventRelayError as e:
        raise click.ClickException(str(e)) from e
    finally:
        await stores.close()
    click.secho(f"Initialized {stores.backend} schema", fg="green")


@cli.command()
@click.option("--limit", default=20, show_default=True, help="Entries listed per section.")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_context
@coro
async def inspect(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show the pending backlog and dead letters with their ages."""
    stores = await _open(ctx)
    try:
        admin = OutboxAdmin(
            stores.database, stores.outbox, stores.dead_letters, enable_tracing=False
        )
        report = await admin.inspect(limit=limit)
    except EventRelayError as e:
        raise click.ClickException(str(e)) from e
    finally:
        await stores.close()

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    stats = report.stats
    click.secho("Outbox", bold=True)
    click.echo(f"  pending:        {stats.pending_count}")
    click.echo(f"  claimed:        {stats.claimed_count}")
    click.echo(f"  published:      {stats.published_count}")
    click.echo(f"  dead-lettered:  {stats.dead_lettered_count}")
    if report.oldest_pending_age is not None:
        click.echo(f"  oldest pending: {report.oldest_pending_age:.1f}s")

    if report.pending:
        click.secho("\nOldest pending", bold=True)
        for p in report.pending:
            line = f"  {p.message_id}  {p.message_type:<30} age={p.age_seconds:.1f}s"
            line += f" attempts={p.attempts}"
            if p.last_error:
                line += f" last_error={p.last_error}"
            click.echo(line)

    click.secho(f"\nDead letters ({report.dead_letter_count})", bold=True)
    for message_type, count in sorted(report.dead_letters_by_type.items()):
        click.echo(f"  {message_type:<30} {count}")
    for d in report.dead_letters:
        click.echo(
            f"  {d.message_id}  {d.message_type:<30} age={d.age_seconds:.1f}s "
            f"attempts={d.attempts} error={d.final_error}"
        )


@cli.command()
@click.option("--type", "message_types", multiple=True, help="Replay only this message type.")
@click.option("--id", "message_ids", multiple=True, type=click.UUID, help="Replay only this id.")
@click.option("--failed-after", type=click.DateTime(), help="Only records that failed after.")
@click.option("--failed-before", type=click.DateTime(), help="Only records that failed before.")
@click.option("--batch-size", default=100, show_default=True)
@click.option("--dry-run", is_flag=True, help="Count matching records without replaying.")
@click.pass_context
@coro
async def replay(
    ctx: click.Context,
    message_types: tuple[str, ...],
    message_ids: tuple[UUID, ...],
    failed_after: datetime | None,
    failed_before: datetime | None,
    batch_size: int,
    dry_run: bool,
) -> None:
    """Move dead letters back into the outbox as new pending messages."""
    criteria = DeadLetterFilter(
        message_types=message_types,
        failed_after=_aware(failed_after),
        failed_before=_aware(failed_before),
        message_ids=message_ids,
    )
    stores = await _open(ctx)
    try:
        admin = OutboxAdmin(
            stores.database, stores.outbox, stores.dead_letters, enable_tracing=False
        )
        if dry_run:
            count = await admin.count_dead_letters(criteria)
            click.echo(f"{count} dead letter(s) match")
            return
        result = await admin.replay(criteria, batch_size=batch_size)
    except EventRelayError as e:
        raise click.ClickException(str(e)) from e
    finally:
        await stores.close()

    click.secho(f"Replayed {result.replayed} dead letter(s)", fg="green")
    if result.failed:
        for message_id, error in result.errors.items():
            click.secho(f"  {message_id}: {error}", fg="red", err=True)
        raise click.ClickException(f"{result.failed} dead letter(s) could not be replayed")


@cli.command()
@click.option(
    "--published-retention",
    type=float,
    help="Seconds published outbox rows are kept [env: EVENTRELAY_PUBLISHED_RETENTION].",
)
@click.option(
    "--inbox-retention",
    type=float,
    help="Seconds inbox records are kept [env: EVENTRELAY_INBOX_RETENTION].",
)
@click.option(
    "--purge-dead-letters",
    "dead_letter_days",
    type=float,
    help="Also delete dead letters older than this many days.",
)
@click.pass_context
@coro
async def cleanup(
    ctx: click.Context,
    published_retention: float | None,
    inbox_retention: float | None,
    dead_letter_days: float | None,
) -> None:
    """Delete expired outbox rows and inbox records."""
    try:
        defaults = HousekeepingConfig.from_env()
        config = HousekeepingConfig(
            published_retention=published_retention or defaults.published_retention,
            inbox_retention=inbox_retention or defaults.inbox_retention,
            interval=defaults.interval,
        )
    except EventRelayError as e:
        raise click.BadParameter(str(e)) from e

    stores = await _open(ctx)
    try:
        job = HousekeepingJob(stores.database, stores.outbox, stores.inbox, config)
        result = await job.run_once()
        purged = 0
        if dead_letter_days is not None:
            admin = OutboxAdmin(
                stores.database, stores.outbox, stores.dead_letters, enable_tracing=False
            )
            cutoff = datetime.now(UTC) - timedelta(days=dead_letter_days)
            purged = await admin.purge_dead_letters(cutoff)
    except EventRelayError as e:
        raise click.ClickException(str(e)) from e
    finally:
        await stores.close()

    click.echo(f"Deleted {result.outbox_deleted} outbox row(s)")
    click.echo(f"Deleted {result.inbox_deleted} inbox record(s)")
    if dead_letter_days is not None:
        click.echo(f"Purged {purged} dead letter(s)")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
