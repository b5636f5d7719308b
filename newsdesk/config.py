from datetime import timedelta
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Data
    sqlite_db_path: str = "/data/newsdesk.db"

    # Logging
    log_level: str = "INFO"

    # Fetcher
    fetch_timeout: float = 20.0
    fetch_max_retries: int = 2
    fetch_backoff_seconds: float = 1.0
    user_agent: str = (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )

    # Scheduling
    min_scrape_interval_minutes: int = 60
    max_concurrent_sources: int = 5

    # Normalizer
    summary_max_chars: int = 1000

    # Source catalog, seeded into the store before each CLI run
    sources: list[dict[str, Any]] = [
        {
            "id": "nytimes",
            "name": "The New York Times",
            "homepage_url": "https://www.nytimes.com",
            "kind": "html",
            "include_selector": "main#site-content",
            "exclude_selector": "aside, nav, [data-testid='ad']",
            "item_selector": "section.story-wrapper",
            "link_selector": "a[href]",
            "headline_selector": "h3, p.indicate-hover",
            "summary_selector": "p.summary-class",
            "author_selector": "[class*='byline'] span",
        },
        {
            "id": "npr",
            "name": "NPR",
            "homepage_url": "https://www.npr.org",
            "kind": "rss",
            "feed_url": "https://feeds.npr.org/1001/rss.xml",
        },
        {
            "id": "guardian",
            "name": "The Guardian",
            "homepage_url": "https://www.theguardian.com/international",
            "kind": "rss",
            "feed_url": "https://www.theguardian.com/international/rss",
        },
        {
            "id": "bbc",
            "name": "BBC News",
            "homepage_url": "https://www.bbc.com/news",
            "kind": "rss",
            "feed_url": "https://feeds.bbci.co.uk/news/rss.xml",
            "topic": "world politics",
        },
        {
            "id": "politico",
            "name": "Politico",
            "homepage_url": "https://www.politico.com",
            "kind": "rss",
            "feed_url": "https://rss.politico.com/politics-news.xml",
            "topic": "us politics",
        },
    ]

    @property
    def min_scrape_interval(self) -> timedelta:
        return timedelta(minutes=self.min_scrape_interval_minutes)


def get_settings() -> Settings:
    return Settings()
