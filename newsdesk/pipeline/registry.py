from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from newsdesk.errors import SourceNotFoundError
from newsdesk.pipeline.storage import SqliteStore
from newsdesk.scrapers.base import Source

logger = structlog.get_logger()


class SourceRegistry:
    """Catalog of configured sources, read through to the store on every call."""

    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def list(self) -> list[Source]:
        return self.store.list_sources()

    def get(self, source_id: str) -> Source:
        source = self.store.find_source_by_id(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    def sync(self, definitions: Iterable[dict[str, Any]]) -> list[Source]:
        """Seed or redefine sources from configuration, keeping scrape history."""
        synced: list[Source] = []
        for definition in definitions:
            source = Source.from_dict(definition)
            if source.needs_feed_discovery:
                # keep a feed found by an earlier probe
                existing = self.store.find_source_by_id(source.id)
                if existing is not None and existing.rule.feed_url:
                    source = source.with_feed(existing.rule.feed_url)
            self.store.save_source(source)
            synced.append(source)
        logger.info("sources_synced", count=len(synced))
        return synced
