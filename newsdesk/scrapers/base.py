from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any


class Section(StrEnum):
    NEWS = "news"
    OPINION = "opinion"
    SPORTS = "sports"
    ENTERTAINMENT = "entertainment"
    LIFESTYLE = "lifestyle"


# topics inside the news and opinion sections
class Topic(StrEnum):
    US_POLITICS = "us politics"
    WORLD_POLITICS = "world politics"
    FINANCE_ECONOMICS = "finance & economics"
    BUSINESS = "business"
    SCIENCE_TECHNOLOGY = "science & technology"
    HEALTH = "health"


class RuleKind(StrEnum):
    HTML = "html"
    RSS = "rss"


@dataclass(frozen=True)
class ExtractionRule:
    kind: RuleKind = RuleKind.HTML
    include_selector: str = ""
    exclude_selector: str = ""
    item_selector: str = "a[href]"
    link_selector: str = ""
    headline_selector: str = ""
    summary_selector: str = ""
    image_selector: str = ""
    author_selector: str = ""
    feed_url: str = ""
    section: Section | None = None
    topic: Topic | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionRule":
        kind = RuleKind(data.get("kind") or (RuleKind.RSS if data.get("feed_url") else RuleKind.HTML))
        section = data.get("section")
        topic = data.get("topic")
        return cls(
            kind=kind,
            include_selector=data.get("include_selector", ""),
            exclude_selector=data.get("exclude_selector", ""),
            item_selector=data.get("item_selector") or "a[href]",
            link_selector=data.get("link_selector", ""),
            headline_selector=data.get("headline_selector", ""),
            summary_selector=data.get("summary_selector", ""),
            image_selector=data.get("image_selector", ""),
            author_selector=data.get("author_selector", ""),
            feed_url=data.get("feed_url", ""),
            section=Section(section) if section else None,
            topic=Topic(topic) if topic else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "include_selector": self.include_selector,
            "exclude_selector": self.exclude_selector,
            "item_selector": self.item_selector,
            "link_selector": self.link_selector,
            "headline_selector": self.headline_selector,
            "summary_selector": self.summary_selector,
            "image_selector": self.image_selector,
            "author_selector": self.author_selector,
            "feed_url": self.feed_url,
            "section": self.section.value if self.section else None,
            "topic": self.topic.value if self.topic else None,
        }


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    homepage_url: str
    rule: ExtractionRule = field(default_factory=ExtractionRule)
    last_scraped_at: datetime | None = None
    image_url: str | None = None

    @property
    def fetch_url(self) -> str:
        if self.rule.kind == RuleKind.RSS and self.rule.feed_url:
            return self.rule.feed_url
        return self.homepage_url

    @property
    def needs_feed_discovery(self) -> bool:
        """An html rule without a listing region falls back to probing for a feed."""
        return (
            self.rule.kind == RuleKind.HTML
            and not self.rule.include_selector
            and not self.rule.feed_url
        )

    def with_feed(self, feed_url: str) -> "Source":
        return replace(self, rule=replace(self.rule, kind=RuleKind.RSS, feed_url=feed_url))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Source":
        rule_data = data.get("rule") or {
            k: v for k, v in data.items() if k not in {"id", "name", "homepage_url", "image_url"}
        }
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            homepage_url=data["homepage_url"],
            rule=ExtractionRule.from_dict(rule_data),
            image_url=data.get("image_url"),
        )


@dataclass
class StoryCandidate:
    url: str
    headline: str
    position: int
    summary: str | None = None
    full_text: str | None = None
    image_url: str | None = None
    author_names: list[str] = field(default_factory=list)
    section: str | None = None
    topic: str | None = None
    published_at: datetime | None = None


@dataclass
class Listing:
    """Candidates from one page or feed, plus source-level metadata found on it."""

    candidates: list[StoryCandidate] = field(default_factory=list)
    image_url: str | None = None
