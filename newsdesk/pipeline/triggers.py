import asyncio
from datetime import UTC, datetime

import structlog

from newsdesk.config import Settings, get_settings
from newsdesk.pipeline.orchestrator import ScrapeOrchestrator, ScrapeRunReport
from newsdesk.pipeline.registry import SourceRegistry
from newsdesk.pipeline.scheduler import partition, select_all
from newsdesk.pipeline.storage import SqliteStore, get_store

logger = structlog.get_logger()


def build_orchestrator(store: SqliteStore, settings: Settings | None = None) -> ScrapeOrchestrator:
    return ScrapeOrchestrator(store=store, settings=settings or get_settings())


async def scrape_source(
    source_id: str,
    store: SqliteStore | None = None,
    settings: Settings | None = None,
    orchestrator: ScrapeOrchestrator | None = None,
) -> ScrapeRunReport:
    """Re-scrape exactly one source now, regardless of staleness.

    Raises SourceNotFoundError for an unknown id.
    """
    settings = settings or get_settings()
    store = store or get_store()
    source = SourceRegistry(store).get(source_id)
    orchestrator = orchestrator or build_orchestrator(store, settings)
    logger.info("single_source_trigger", source_id=source_id)
    return await orchestrator.run([source])


async def scrape_due(
    force: bool = False,
    store: SqliteStore | None = None,
    settings: Settings | None = None,
    orchestrator: ScrapeOrchestrator | None = None,
    now: datetime | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ScrapeRunReport:
    """Scrape every stale source, or every source when ``force`` is set.

    Failing to list sources is fatal and propagates; everything after that is
    isolated per source inside the report.
    """
    settings = settings or get_settings()
    store = store or get_store()
    sources = SourceRegistry(store).list()
    now = now or datetime.now(tz=UTC)

    if force:
        due, not_due = select_all(sources), []
    else:
        due, not_due = partition(sources, now, settings.min_scrape_interval)
    logger.info("bulk_trigger", force=force, due=len(due), not_due=len(not_due))

    orchestrator = orchestrator or build_orchestrator(store, settings)
    return await orchestrator.run(due, skipped=not_due, cancel_event=cancel_event)
