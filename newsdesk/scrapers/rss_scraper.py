from datetime import UTC, datetime
from typing import Any
from urllib.parse import urljoin

import feedparser
import structlog

from newsdesk.errors import ExtractionError
from newsdesk.scrapers.base import Listing, Source, StoryCandidate

logger = structlog.get_logger()


def extract_rss(source: Source, raw: str) -> Listing:
    """Map feed entries, in feed order, to candidates."""
    if not raw.strip():
        return Listing()

    feed = feedparser.parse(raw)
    if not feed.get("version") and not feed.entries:
        raise ExtractionError(f"no RSS/Atom feed found at {source.fetch_url}")

    candidates: list[StoryCandidate] = []
    seen_links: set[str] = set()
    for entry in feed.entries:
        link = entry.get("link", "").strip()
        headline = entry.get("title", "").strip()
        if not link or not headline:
            continue
        url = urljoin(source.fetch_url, link)
        if url in seen_links:
            continue
        seen_links.add(url)

        candidates.append(
            StoryCandidate(
                url=url,
                headline=headline,
                position=len(candidates),
                summary=_summary(entry),
                full_text=_full_text(entry),
                image_url=_image_url(entry),
                author_names=_authors(entry),
                published_at=_parse_published(entry),
            )
        )

    logger.debug("rss_extracted", source_id=source.id, count=len(candidates))
    return Listing(candidates=candidates, image_url=_feed_image_url(feed))


def _feed_image_url(feed: Any) -> str | None:
    image = feed.feed.get("image") or {}
    href = image.get("href") or feed.feed.get("logo")
    return href.strip() if href else None


def _parse_published(entry: Any) -> datetime | None:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        return datetime(*parsed[:6], tzinfo=UTC)
    return None


def _summary(entry: Any) -> str | None:
    summary = entry.get("summary", "")
    if summary:
        return summary
    for enclosure in entry.get("enclosures", []):
        media_type = enclosure.get("type", "")
        if media_type.startswith("audio/"):
            return "Audio recording"
        if media_type.startswith("video/"):
            return "Video recording"
    return None


def _full_text(entry: Any) -> str | None:
    for content in entry.get("content", []):
        value = content.get("value", "")
        if value:
            return value
    return None


def _image_url(entry: Any) -> str | None:
    media = list(entry.get("media_content", [])) + list(entry.get("media_thumbnail", []))
    for item in media:
        medium = item.get("medium", "")
        media_type = item.get("type", "")
        if item.get("url") and (medium == "image" or media_type.startswith("image/")):
            return item["url"]
    for item in media:
        if item.get("url"):
            return item["url"]
    for enclosure in entry.get("enclosures", []):
        if enclosure.get("type", "").startswith("image/") and enclosure.get("href"):
            return enclosure["href"]
    return None


def _authors(entry: Any) -> list[str]:
    names: list[str] = []
    for author in entry.get("authors", []):
        name = (author.get("name") or "").strip()
        if name and name not in names:
            names.append(name)
    if not names and entry.get("author"):
        names.append(entry["author"].strip())
    return names


def looks_like_feed(raw: str) -> bool:
    return bool(raw.strip()) and bool(feedparser.parse(raw).get("version"))
