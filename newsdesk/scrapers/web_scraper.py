from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup, Tag

from newsdesk.errors import ExtractionError
from newsdesk.scrapers.base import Source, StoryCandidate

logger = structlog.get_logger()

_SKIPPED_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:")


def extract_html(source: Source, raw: str) -> list[StoryCandidate]:
    """Walk the source's listing region top to bottom and emit one candidate per item."""
    if not raw.strip():
        return []

    rule = source.rule
    soup = BeautifulSoup(raw, "lxml")

    if rule.include_selector:
        regions = soup.select(rule.include_selector)
        if not regions:
            raise ExtractionError(
                f"listing region {rule.include_selector!r} not found on {source.fetch_url}"
            )
    else:
        regions = [soup.body or soup]

    if rule.exclude_selector:
        for region in regions:
            for excluded in region.select(rule.exclude_selector):
                excluded.decompose()

    candidates: list[StoryCandidate] = []
    seen_links: set[str] = set()
    for region in regions:
        for item in region.select(rule.item_selector):
            link = _find_link(item, rule.link_selector)
            if not link:
                continue
            url = urljoin(source.fetch_url, link)
            if url in seen_links:
                continue

            headline = _select_text(item, rule.headline_selector)
            if not headline:
                anchor = item if item.name == "a" else item.find("a", href=True)
                headline = anchor.get_text(" ", strip=True) if isinstance(anchor, Tag) else ""
            if not headline:
                continue

            seen_links.add(url)
            candidates.append(
                StoryCandidate(
                    url=url,
                    headline=headline,
                    position=len(candidates),
                    summary=_select_text(item, rule.summary_selector) or None,
                    image_url=_find_image(item, rule.image_selector, source.fetch_url),
                    author_names=_select_authors(item, rule.author_selector),
                )
            )

    logger.debug("html_extracted", source_id=source.id, count=len(candidates))
    return candidates


def _find_link(item: Tag, selector: str) -> str:
    if selector:
        el = item.select_one(selector)
    elif item.name == "a":
        el = item
    else:
        el = item.find("a", href=True)
    if not isinstance(el, Tag):
        return ""
    href = el.get("href", "")
    if isinstance(href, list):
        href = href[0] if href else ""
    href = str(href).strip()
    if not href or href.lower().startswith(_SKIPPED_HREF_PREFIXES):
        return ""
    return href


def _select_text(item: Tag, selector: str) -> str:
    if not selector:
        return ""
    el = item.select_one(selector)
    return el.get_text(" ", strip=True) if el else ""


def _find_image(item: Tag, selector: str, base_url: str) -> str | None:
    el = item.select_one(selector) if selector else item.find("img")
    if not isinstance(el, Tag):
        return None
    for attr in ("src", "data-src"):
        value = el.get(attr)
        if value and not str(value).startswith("data:"):
            return urljoin(base_url, str(value))
    srcset = el.get("srcset")
    if srcset:
        first = str(srcset).split(",")[0].strip().split(" ")[0]
        if first:
            return urljoin(base_url, first)
    return None


def _select_authors(item: Tag, selector: str) -> list[str]:
    if not selector:
        return []
    authors: list[str] = []
    for el in item.select(selector):
        name = el.get_text(" ", strip=True)
        if name.lower().startswith("by "):
            name = name[3:].strip()
        if name and name not in authors:
            authors.append(name)
    return authors
