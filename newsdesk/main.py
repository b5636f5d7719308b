import asyncio
import json
import logging
from datetime import UTC, datetime

import click
import structlog

from newsdesk.config import Settings, get_settings
from newsdesk.errors import SourceNotFoundError
from newsdesk.pipeline.orchestrator import ScrapeRunReport
from newsdesk.pipeline.registry import SourceRegistry
from newsdesk.pipeline.scheduler import is_due
from newsdesk.pipeline.storage import SqliteStore, get_store
from newsdesk.pipeline.triggers import scrape_due, scrape_source

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level.upper())
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            level if isinstance(level, int) else logging.INFO
        ),
    )


def _prepare(settings: Settings) -> SqliteStore:
    store = get_store()
    SourceRegistry(store).sync(settings.sources)
    return store


def _echo_report(report: ScrapeRunReport) -> None:
    click.echo(json.dumps(report.to_dict(), indent=2, default=str))


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    settings = get_settings()
    configure_logging(settings)
    ctx.obj = settings


@cli.command()
@click.option("--force", is_flag=True, help="Re-scrape every source, ignoring staleness.")
@click.pass_obj
def scrape(settings: Settings, force: bool) -> None:
    """Scrape all sources that are due."""
    store = _prepare(settings)
    report = asyncio.run(scrape_due(force=force, store=store, settings=settings))
    _echo_report(report)


@cli.command("scrape-source")
@click.argument("source_id")
@click.pass_obj
def scrape_one(settings: Settings, source_id: str) -> None:
    """Scrape a single source now."""
    store = _prepare(settings)
    try:
        report = asyncio.run(scrape_source(source_id, store=store, settings=settings))
    except SourceNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_report(report)


@cli.command("sources")
@click.pass_obj
def list_sources(settings: Settings) -> None:
    """List configured sources and whether they are due."""
    store = _prepare(settings)
    now = datetime.now(tz=UTC)
    for source in SourceRegistry(store).list():
        last = source.last_scraped_at.isoformat() if source.last_scraped_at else "never"
        due = "due" if is_due(source, now, settings.min_scrape_interval) else "fresh"
        click.echo(f"{source.id:<12} {source.rule.kind:<5} {due:<6} {last}  {source.homepage_url}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
