from collections.abc import Sequence
from datetime import datetime, timedelta

from newsdesk.scrapers.base import Source


def is_due(source: Source, now: datetime, min_interval: timedelta) -> bool:
    if source.last_scraped_at is None:
        return True
    return now - source.last_scraped_at >= min_interval


def partition(
    sources: Sequence[Source], now: datetime, min_interval: timedelta
) -> tuple[list[Source], list[Source]]:
    """Split sources into (due, not_due)."""
    due: list[Source] = []
    not_due: list[Source] = []
    for source in sources:
        (due if is_due(source, now, min_interval) else not_due).append(source)
    return due, not_due


def select_due(sources: Sequence[Source], now: datetime, min_interval: timedelta) -> list[Source]:
    return partition(sources, now, min_interval)[0]


def select_all(sources: Sequence[Source]) -> list[Source]:
    return list(sources)
