import asyncio
from urllib.parse import urlparse

import httpx
import structlog

from newsdesk.config import Settings, get_settings
from newsdesk.errors import ErrorKind, FetchError
from newsdesk.scrapers.base import RuleKind, Source
from newsdesk.scrapers.rss_scraper import looks_like_feed

logger = structlog.get_logger()


class Fetcher:
    """Retrieves a source's raw listing page or feed.

    Connection errors and 5xx responses are retried with exponential backoff;
    4xx responses and timeouts fail the attempt immediately.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.timeout = settings.fetch_timeout
        self.max_retries = settings.fetch_max_retries
        self.backoff = settings.fetch_backoff_seconds
        self.user_agent = settings.user_agent
        self._client = client

    async def fetch(self, source: Source) -> str:
        return await self._get_text(source.fetch_url, rss=source.rule.kind == RuleKind.RSS)

    async def discover_feed(self, source: Source) -> str | None:
        """Probe ``<homepage>/feed`` and return its URL when it serves RSS or Atom."""
        url = source.homepage_url.rstrip("/") + "/feed"
        try:
            raw = await self._get_text(url, rss=True)
        except FetchError as exc:
            logger.info("feed_probe_failed", source_id=source.id, url=url, error=str(exc))
            return None
        return url if looks_like_feed(raw) else None

    async def _get_text(self, url: str, rss: bool) -> str:
        headers = self._build_headers(url, rss=rss)
        if self._client is not None:
            return await self._fetch_with_retries(self._client, url, headers)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await self._fetch_with_retries(client, url, headers)

    async def _fetch_with_retries(
        self, client: httpx.AsyncClient, url: str, headers: dict[str, str]
    ) -> str:
        attempts = self.max_retries + 1
        last_error: FetchError | None = None
        for attempt in range(1, attempts + 1):
            try:
                # httpx timeouts are per operation; this bounds the whole request
                async with asyncio.timeout(self.timeout):
                    response = await client.get(url, headers=headers, timeout=self.timeout)
            except (httpx.TimeoutException, TimeoutError) as exc:
                raise FetchError.timeout(url) from exc
            except httpx.TransportError as exc:
                last_error = FetchError(f"{type(exc).__name__} fetching {url}: {exc}")
            else:
                if response.status_code < 400:
                    return response.text
                error = FetchError.http_status(url, response.status_code)
                if response.status_code < 500:
                    raise error
                last_error = error

            if attempt < attempts:
                backoff = self.backoff * (2 ** (attempt - 1))
                logger.warning(
                    "fetch_retry",
                    url=url,
                    attempt=attempt,
                    backoff=backoff,
                    error=str(last_error),
                )
                await asyncio.sleep(backoff)

        if last_error is not None and last_error.kind == ErrorKind.HTTP_STATUS:
            raise last_error
        raise FetchError(
            f"failed after {attempts} attempts: {last_error}", ErrorKind.CONNECTION_FAILED
        )

    def _build_headers(self, url: str, rss: bool = False) -> dict[str, str]:
        parsed = urlparse(url)
        accept = (
            "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"
            if rss
            else "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
        )
        return {
            "User-Agent": self.user_agent,
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": f"{parsed.scheme}://{parsed.netloc}/",
            "DNT": "1",
        }
