from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import structlog

from newsdesk.errors import ErrorKind, StoreError
from newsdesk.pipeline.normalizer import StoryFields

logger = structlog.get_logger()


class StoryStore(Protocol):
    def insert_story(self, fields: StoryFields, scraped_at: datetime) -> None: ...

    def update_story(self, fields: StoryFields, scraped_at: datetime) -> bool: ...


@dataclass(frozen=True)
class UpsertResult:
    url: str
    created: bool


def upsert_story(store: StoryStore, fields: StoryFields, scraped_at: datetime) -> UpsertResult:
    """Create-or-update keyed by canonical article URL.

    Existing stories are refreshed in place. A uniqueness violation on insert
    means a concurrent writer created the row first, so it becomes an update.
    """
    if store.update_story(fields, scraped_at):
        return UpsertResult(url=fields.url, created=False)

    try:
        store.insert_story(fields, scraped_at)
    except StoreError as exc:
        if exc.kind != ErrorKind.CONSTRAINT_VIOLATION:
            raise
        logger.info("story_insert_raced", url=fields.url)
        if not store.update_story(fields, scraped_at):
            raise StoreError(f"story vanished during upsert: {fields.url}") from exc
        return UpsertResult(url=fields.url, created=False)
    return UpsertResult(url=fields.url, created=True)
