from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from newsdesk.errors import NormalizationError
from newsdesk.pipeline.cleaner import clean_text
from newsdesk.scrapers.base import Section, Source, StoryCandidate, Topic

TRACKING_PARAMS = frozenset(
    {
        "fbclid",
        "gclid",
        "dclid",
        "msclkid",
        "mc_cid",
        "mc_eid",
        "ocid",
        "cmpid",
        "smid",
        "smtyp",
        "ref",
        "ref_src",
        "guccounter",
        "_ga",
        "igshid",
    }
)
TRACKING_PREFIXES = ("utm_", "at_", "pk_")
DEFAULT_PORTS = {"http": 80, "https": 443}

SECTION_KEYWORDS: dict[str, Section] = {
    "opinion": Section.OPINION,
    "opinions": Section.OPINION,
    "commentisfree": Section.OPINION,
    "editorials": Section.OPINION,
    "sport": Section.SPORTS,
    "sports": Section.SPORTS,
    "entertainment": Section.ENTERTAINMENT,
    "arts": Section.ENTERTAINMENT,
    "culture": Section.ENTERTAINMENT,
    "movies": Section.ENTERTAINMENT,
    "music": Section.ENTERTAINMENT,
    "lifestyle": Section.LIFESTYLE,
    "style": Section.LIFESTYLE,
    "food": Section.LIFESTYLE,
    "travel": Section.LIFESTYLE,
}

TOPIC_KEYWORDS: dict[str, Topic] = {
    "politics": Topic.US_POLITICS,
    "us-politics": Topic.US_POLITICS,
    "elections": Topic.US_POLITICS,
    "world": Topic.WORLD_POLITICS,
    "international": Topic.WORLD_POLITICS,
    "europe": Topic.WORLD_POLITICS,
    "asia": Topic.WORLD_POLITICS,
    "middleeast": Topic.WORLD_POLITICS,
    "economy": Topic.FINANCE_ECONOMICS,
    "markets": Topic.FINANCE_ECONOMICS,
    "finance": Topic.FINANCE_ECONOMICS,
    "money": Topic.FINANCE_ECONOMICS,
    "business": Topic.BUSINESS,
    "technology": Topic.SCIENCE_TECHNOLOGY,
    "tech": Topic.SCIENCE_TECHNOLOGY,
    "science": Topic.SCIENCE_TECHNOLOGY,
    "climate": Topic.SCIENCE_TECHNOLOGY,
    "health": Topic.HEALTH,
    "well": Topic.HEALTH,
}


@dataclass
class StoryFields:
    url: str
    source_id: str
    headline: str
    in_page_rank: int
    section: str
    topic: str | None = None
    summary: str | None = None
    full_text: str | None = None
    image_url: str | None = None
    author_names: list[str] | None = None
    published_at: datetime | None = None


def canonical_url(url: str) -> str:
    """Canonical identity of an article URL.

    Lower-cases scheme and host, drops default ports, fragments and tracking
    query parameters. Remaining parameters keep their order.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parts.hostname:
        raise NormalizationError(f"not an http(s) article URL: {url!r}")

    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    try:
        port = parts.port
    except ValueError as exc:
        raise NormalizationError(f"bad port in URL: {url!r}") from exc
    netloc = host if port in (None, DEFAULT_PORTS[scheme]) else f"{host}:{port}"

    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    return urlunsplit((scheme, netloc, parts.path or "/", urlencode(query), ""))


def _is_tracking_param(key: str) -> bool:
    key = key.lower()
    return key in TRACKING_PARAMS or key.startswith(TRACKING_PREFIXES)


def classify(url: str, source: Source, candidate: StoryCandidate) -> tuple[Section, Topic | None]:
    segments = [s.lower() for s in urlsplit(url).path.split("/") if s]

    section = source.rule.section or _as_enum(Section, candidate.section)
    if section is None:
        section = next(
            (SECTION_KEYWORDS[s] for s in segments if s in SECTION_KEYWORDS), Section.NEWS
        )

    topic = source.rule.topic or _as_enum(Topic, candidate.topic)
    if topic is None and section in (Section.NEWS, Section.OPINION):
        topic = next((TOPIC_KEYWORDS[s] for s in segments if s in TOPIC_KEYWORDS), None)
    return section, topic


def _as_enum(enum_cls: type[StrEnum], value: str | None) -> Any:
    if not value:
        return None
    try:
        return enum_cls(value.lower())
    except ValueError:
        return None


def normalize(
    candidate: StoryCandidate, source: Source, summary_max_chars: int = 1000
) -> StoryFields:
    url = canonical_url(candidate.url)
    headline = clean_text(candidate.headline)
    if not headline:
        raise NormalizationError(f"empty headline for {url}")
    if candidate.position < 0:
        raise NormalizationError(f"negative position {candidate.position} for {url}")

    section, topic = classify(url, source, candidate)
    image_url = candidate.image_url
    if image_url and not image_url.startswith(("http://", "https://")):
        image_url = None

    authors = [name for name in (clean_text(a) for a in candidate.author_names) if name]
    return StoryFields(
        url=url,
        source_id=source.id,
        headline=headline,
        in_page_rank=candidate.position,
        section=section.value,
        topic=topic.value if topic else None,
        summary=clean_text(candidate.summary, summary_max_chars),
        full_text=clean_text(candidate.full_text),
        image_url=image_url,
        author_names=authors or None,
        published_at=candidate.published_at,
    )
