import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from newsdesk.errors import ErrorKind, NormalizationError, SourceNotFoundError, StoreError
from newsdesk.pipeline.cleaner import clean_text, normalize_whitespace, strip_html, truncate_to_chars
from newsdesk.pipeline.normalizer import StoryFields, canonical_url, normalize
from newsdesk.pipeline.registry import SourceRegistry
from newsdesk.pipeline.scheduler import partition, select_all, select_due
from newsdesk.pipeline.storage import SqliteStore
from newsdesk.pipeline.writer import upsert_story
from newsdesk.scrapers.base import ExtractionRule, Section, Source, StoryCandidate, Topic

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _make_store() -> SqliteStore:
    return SqliteStore(sqlite3.connect(":memory:"))


def _source(source_id: str = "nytimes", last_scraped_at: datetime | None = None, **rule: str) -> Source:
    return Source(
        id=source_id,
        name=source_id.title(),
        homepage_url=f"https://www.{source_id}.com",
        rule=ExtractionRule.from_dict(rule),
        last_scraped_at=last_scraped_at,
    )


def _fields(url: str = "https://www.nytimes.com/a.html", rank: int = 0, **overrides: object) -> StoryFields:
    values: dict[str, object] = {
        "url": url,
        "source_id": "nytimes",
        "headline": "Headline",
        "in_page_rank": rank,
        "section": "news",
    }
    values.update(overrides)
    return StoryFields(**values)  # type: ignore[arg-type]


# ── Cleaner ──


def test_strip_html() -> None:
    assert strip_html("<p>Hello <b>world</b></p>") == "Hello world"
    assert strip_html("") == ""
    assert strip_html("Fish &amp; Chips") == "Fish & Chips"


def test_normalize_whitespace() -> None:
    assert normalize_whitespace("  hello   world  ") == "hello world"
    assert normalize_whitespace("a\n\nb\tc") == "a b c"


def test_truncate_to_chars() -> None:
    assert truncate_to_chars("one two three", 20) == "one two three"
    assert truncate_to_chars("one two three four", 10) == "one two…"


def test_clean_text_keeps_absence() -> None:
    assert clean_text(None) is None
    assert clean_text("<p>  </p>") is None


# ── Normalizer ──


def test_canonical_url_lowercases_scheme_and_host() -> None:
    assert canonical_url("HTTPS://WWW.NYTimes.com/2026/Story.html") == (
        "https://www.nytimes.com/2026/Story.html"
    )


def test_canonical_url_strips_tracking_and_fragment() -> None:
    url = "https://news.example.com:443/a?id=7&utm_source=tw&utm_medium=social&fbclid=x&smid=nytcore#comments"
    assert canonical_url(url) == "https://news.example.com/a?id=7"


def test_canonical_url_keeps_non_default_port_and_empty_path() -> None:
    assert canonical_url("http://Example.com:8080") == "http://example.com:8080/"


def test_canonical_url_keeps_ipv6_brackets() -> None:
    assert canonical_url("http://[::1]:8080/a#x") == "http://[::1]:8080/a"
    assert canonical_url("https://[2001:DB8::1]/a") == "https://[2001:db8::1]/a"


@pytest.mark.parametrize("url", ["mailto:desk@example.com", "ftp://example.com/file", "/relative/path"])
def test_canonical_url_rejects_non_http(url: str) -> None:
    with pytest.raises(NormalizationError) as exc_info:
        canonical_url(url)
    assert exc_info.value.kind == ErrorKind.INVALID_CANDIDATE


def test_normalize_maps_candidate_fields() -> None:
    candidate = StoryCandidate(
        url="https://www.nytimes.com/2026/10/19/us/politics/vote.html?smid=url-share",
        headline="  Vote &amp; <em>Count</em> ",
        position=3,
        summary="<p>Lawmakers   voted.</p>",
        image_url="https://static.nytimes.com/vote.jpg",
        author_names=["By Jo", " Kim Lee "],
    )
    fields = normalize(candidate, _source())

    assert fields.url == "https://www.nytimes.com/2026/10/19/us/politics/vote.html"
    assert fields.source_id == "nytimes"
    assert fields.headline == "Vote & Count"
    assert fields.summary == "Lawmakers voted."
    assert fields.in_page_rank == 3
    assert fields.section == Section.NEWS.value
    assert fields.topic == Topic.US_POLITICS.value
    assert fields.author_names == ["By Jo", "Kim Lee"]
    assert fields.full_text is None


def test_normalize_carries_publish_date() -> None:
    published = datetime(2026, 10, 19, 8, 30, tzinfo=UTC)
    candidate = StoryCandidate(
        url="https://www.nytimes.com/a.html", headline="H", position=0, published_at=published
    )
    assert normalize(candidate, _source()).published_at == published


def test_normalize_classifies_from_url_path() -> None:
    def classify(url: str) -> tuple[str, str | None]:
        fields = normalize(StoryCandidate(url=url, headline="H", position=0), _source())
        return fields.section, fields.topic

    assert classify("https://www.nytimes.com/2026/10/19/opinion/essay.html") == ("opinion", None)
    assert classify("https://www.nytimes.com/2026/10/19/sports/final.html") == ("sports", None)
    assert classify("https://www.nytimes.com/2026/10/19/world/europe/x.html") == (
        "news",
        "world politics",
    )
    assert classify("https://www.nytimes.com/2026/10/19/nyregion/x.html") == ("news", None)


def test_normalize_source_mapping_wins_over_heuristics() -> None:
    source = _source(section="opinion", topic="health")
    fields = normalize(
        StoryCandidate(url="https://www.nytimes.com/sports/x.html", headline="H", position=0), source
    )
    assert (fields.section, fields.topic) == ("opinion", "health")


def test_normalize_is_deterministic() -> None:
    candidate = StoryCandidate(url="https://www.nytimes.com/business/x.html", headline="H", position=1)
    assert normalize(candidate, _source()) == normalize(candidate, _source())


def test_normalize_rejects_empty_headline() -> None:
    with pytest.raises(NormalizationError):
        normalize(StoryCandidate(url="https://www.nytimes.com/x", headline="<b> </b>", position=0), _source())


# ── Storage and upsert ──


def test_upsert_creates_then_updates() -> None:
    store = _make_store()
    store.save_source(_source())

    first = upsert_story(store, _fields(rank=2, summary="Old"), NOW)
    later = NOW + timedelta(hours=1)
    second = upsert_story(store, _fields(rank=0, headline="New headline"), later)

    assert first.created is True
    assert second.created is False
    assert store.count_stories() == 1
    story = store.get_story("https://www.nytimes.com/a.html")
    assert story is not None
    assert story.headline == "New headline"
    assert story.summary == "Old"
    assert story.in_page_rank == 0
    assert story.last_scraped_at == later
    assert story.archived is False


def test_upsert_never_unarchives_or_blanks_full_text() -> None:
    store = _make_store()
    upsert_story(store, _fields(author_names=["Ana"]), NOW)
    store.archive_story("https://www.nytimes.com/a.html")
    store.backfill_full_text("https://www.nytimes.com/a.html", "Deep-fetched body")

    upsert_story(store, _fields(rank=5, full_text="Listing snippet"), NOW + timedelta(hours=1))

    story = store.get_story("https://www.nytimes.com/a.html")
    assert story is not None
    assert story.archived is True
    assert story.full_text == "Deep-fetched body"
    assert story.author_names == ["Ana"]
    assert story.in_page_rank == 5


def test_update_keeps_owner_and_classification() -> None:
    store = _make_store()
    upsert_story(store, _fields(section="news", topic="business"), NOW)
    upsert_story(store, _fields(source_id="other", section="opinion", topic=None), NOW)

    story = store.get_story("https://www.nytimes.com/a.html")
    assert story is not None
    assert story.source_id == "nytimes"
    assert (story.section, story.topic) == ("news", "business")


def test_other_source_sighting_leaves_owner_rank_and_headline() -> None:
    store = _make_store()
    wire = "https://wire.test/story.html"
    upsert_story(store, _fields(url=wire, rank=0, source_id="alpha", headline="Alpha headline"), NOW)

    later = NOW + timedelta(hours=1)
    result = upsert_story(
        store, _fields(url=wire, rank=5, source_id="bravo", headline="Bravo retitle"), later
    )

    assert result.created is False
    assert store.count_stories() == 1
    story = store.get_story(wire)
    assert story is not None
    assert story.source_id == "alpha"
    assert story.in_page_rank == 0
    assert story.headline == "Alpha headline"
    assert story.last_scraped_at == later


def test_publish_date_is_kept_when_listing_omits_it() -> None:
    store = _make_store()
    published = datetime(2026, 10, 18, 6, 0, tzinfo=UTC)
    upsert_story(store, _fields(published_at=published), NOW)
    upsert_story(store, _fields(rank=3), NOW + timedelta(hours=1))

    story = store.get_story("https://www.nytimes.com/a.html")
    assert story is not None
    assert story.published_at == published


def test_source_image_survives_redefinition() -> None:
    store = _make_store()
    store.save_source(_source())
    store.update_source_image("nytimes", "https://static.nytimes.com/logo.png")
    store.save_source(_source(include_selector="main"))

    source = store.find_source_by_id("nytimes")
    assert source is not None
    assert source.image_url == "https://static.nytimes.com/logo.png"


def test_insert_duplicate_url_is_constraint_violation() -> None:
    store = _make_store()
    store.insert_story(_fields(), NOW)
    with pytest.raises(StoreError) as exc_info:
        store.insert_story(_fields(), NOW)
    assert exc_info.value.kind == ErrorKind.CONSTRAINT_VIOLATION


class _RacingStore:
    """Store whose row appears between the update probe and the insert."""

    def __init__(self) -> None:
        self.rows: dict[str, StoryFields] = {}
        self.raced = False

    def update_story(self, fields: StoryFields, scraped_at: datetime) -> bool:
        if fields.url not in self.rows:
            return False
        self.rows[fields.url] = fields
        return True

    def insert_story(self, fields: StoryFields, scraped_at: datetime) -> None:
        self.raced = True
        self.rows[fields.url] = fields
        raise StoreError("duplicate", ErrorKind.CONSTRAINT_VIOLATION)


def test_upsert_falls_back_to_update_when_insert_races() -> None:
    store = _RacingStore()
    result = upsert_story(store, _fields(), NOW)
    assert store.raced is True
    assert result.created is False
    assert list(store.rows) == ["https://www.nytimes.com/a.html"]


def test_upsert_propagates_other_store_errors() -> None:
    class _BrokenStore(_RacingStore):
        def insert_story(self, fields: StoryFields, scraped_at: datetime) -> None:
            raise StoreError("disk full")

    with pytest.raises(StoreError) as exc_info:
        upsert_story(_BrokenStore(), _fields(), NOW)
    assert exc_info.value.kind == ErrorKind.WRITE_FAILED


def test_save_source_keeps_last_scraped_at() -> None:
    store = _make_store()
    store.save_source(_source(include_selector="main"))
    store.update_source_last_scraped("nytimes", NOW)
    store.save_source(_source(include_selector="div.new-layout"))

    source = store.find_source_by_id("nytimes")
    assert source is not None
    assert source.last_scraped_at == NOW
    assert source.rule.include_selector == "div.new-layout"


def test_run_log_round_trip() -> None:
    store = _make_store()
    store.create_run_log("run1", NOW)
    store.update_run_log("run1", status="partial", sources_failed=1, finished_at=NOW)
    record = store.get_run_log("run1")
    assert record is not None
    assert record.status == "partial"
    assert record.sources_failed == 1
    assert record.finished_at == NOW


# ── Registry ──


def test_registry_sync_list_and_get() -> None:
    registry = SourceRegistry(_make_store())
    registry.sync(
        [
            {"id": "npr", "homepage_url": "https://www.npr.org", "feed_url": "https://feeds.npr.org/1001/rss.xml"},
            {"id": "nytimes", "name": "NYT", "homepage_url": "https://www.nytimes.com", "include_selector": "main"},
        ]
    )

    assert [s.id for s in registry.list()] == ["npr", "nytimes"]
    npr = registry.get("npr")
    assert npr.rule.kind == "rss"
    assert npr.fetch_url == "https://feeds.npr.org/1001/rss.xml"
    with pytest.raises(SourceNotFoundError):
        registry.get("missing")


def test_registry_sync_keeps_discovered_feed() -> None:
    store = _make_store()
    registry = SourceRegistry(store)
    definition = {"id": "blog", "homepage_url": "https://blog.example.com"}
    registry.sync([definition])
    store.save_source(registry.get("blog").with_feed("https://blog.example.com/feed"))

    registry.sync([definition])

    blog = registry.get("blog")
    assert blog.rule.kind == "rss"
    assert blog.fetch_url == "https://blog.example.com/feed"
    assert not blog.needs_feed_discovery


# ── Scheduler ──


def test_select_due_respects_min_interval() -> None:
    interval = timedelta(hours=1)
    fresh = _source("fresh", NOW - timedelta(minutes=30))
    stale = _source("stale", NOW - timedelta(minutes=61))
    never = _source("never")

    due = select_due([fresh, stale, never], NOW, interval)
    assert {s.id for s in due} == {"stale", "never"}


def test_select_due_boundary_is_inclusive() -> None:
    exact = _source("exact", NOW - timedelta(hours=1))
    assert select_due([exact], NOW, timedelta(hours=1)) == [exact]


def test_partition_and_select_all() -> None:
    fresh = _source("fresh", NOW - timedelta(minutes=5))
    never = _source("never")
    due, not_due = partition([fresh, never], NOW, timedelta(hours=1))
    assert due == [never]
    assert not_due == [fresh]
    assert select_all([fresh, never]) == [fresh, never]
