from collections.abc import Callable

from newsdesk.scrapers.base import Listing, RuleKind, Source, StoryCandidate
from newsdesk.scrapers.rss_scraper import extract_rss
from newsdesk.scrapers.web_scraper import extract_html

ExtractFn = Callable[[Source, str], Listing]


def _html_listing(source: Source, raw: str) -> Listing:
    return Listing(candidates=extract_html(source, raw))


_EXTRACTORS: dict[RuleKind, ExtractFn] = {
    RuleKind.HTML: _html_listing,
    RuleKind.RSS: extract_rss,
}


class Extractor:
    """Interprets a source's declarative extraction rule.

    Positions start at 0 in document order. An empty listing is a valid result;
    ExtractionError means the listing region itself is gone.
    """

    def extract_listing(self, source: Source, raw: str) -> Listing:
        return _EXTRACTORS[source.rule.kind](source, raw)

    def extract(self, source: Source, raw: str) -> list[StoryCandidate]:
        return self.extract_listing(source, raw).candidates
