import asyncio
from datetime import datetime, timedelta, timezone

from airflow.decorators import dag, task

DEFAULT_ARGS = {
    "owner": "newsdesk",
    "retries": 1,
    "retry_delay": timedelta(minutes=5),
}


@dag(
    dag_id="scrape_news_sources",
    default_args=DEFAULT_ARGS,
    description="Hourly re-scrape of stale news sources",
    schedule="0 * * * *",
    start_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
    catchup=False,
    max_active_runs=1,
    tags=["news", "scraping"],
)
def scrape_news_sources_dag() -> None:
    @task()
    def sync_sources() -> int:
        from newsdesk.config import get_settings
        from newsdesk.pipeline.registry import SourceRegistry
        from newsdesk.pipeline.storage import get_store

        return len(SourceRegistry(get_store()).sync(get_settings().sources))

    @task()
    def scrape_due_sources(sources_synced: int) -> dict:
        from newsdesk.pipeline.triggers import scrape_due

        report = asyncio.run(scrape_due())
        # partial failures still complete the task; they are in the report
        return {
            "run_id": report.run_id,
            "sources_synced": sources_synced,
            "status": report.status,
            "failed": [o.source_id for o in report.failed],
            "created": report.stories_created,
            "updated": report.stories_updated,
        }

    scrape_due_sources(sync_sources())


scrape_news_sources_dag()
