import asyncio
import uuid
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from newsdesk.config import Settings, get_settings
from newsdesk.errors import ErrorKind, NormalizationError, PipelineError, StoreError
from newsdesk.pipeline.normalizer import StoryFields, normalize
from newsdesk.pipeline.storage import SqliteStore
from newsdesk.pipeline.writer import upsert_story
from newsdesk.scrapers.base import Source, StoryCandidate
from newsdesk.scrapers.extractor import Extractor
from newsdesk.scrapers.fetcher import Fetcher

logger = structlog.get_logger()


class Stage(StrEnum):
    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    NORMALIZING = "normalizing"
    UPSERTING = "upserting"
    DONE = "done"


class SourceStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class SourceOutcome:
    source_id: str
    status: SourceStatus = SourceStatus.SUCCEEDED
    stage: Stage = Stage.PENDING
    error_kind: str | None = None
    reason: str | None = None
    candidates_seen: int = 0
    candidates_rejected: int = 0
    stories_created: int = 0
    stories_updated: int = 0


@dataclass
class ScrapeRunReport:
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list[SourceOutcome] = field(default_factory=list)

    def _with_status(self, status: SourceStatus) -> list[SourceOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[SourceOutcome]:
        return self._with_status(SourceStatus.SUCCEEDED)

    @property
    def failed(self) -> list[SourceOutcome]:
        return self._with_status(SourceStatus.FAILED)

    @property
    def skipped(self) -> list[SourceOutcome]:
        return self._with_status(SourceStatus.SKIPPED)

    @property
    def cancelled(self) -> list[SourceOutcome]:
        return self._with_status(SourceStatus.CANCELLED)

    @property
    def attempted(self) -> list[SourceOutcome]:
        return [o for o in self.outcomes if o.status != SourceStatus.SKIPPED]

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    @property
    def candidates_seen(self) -> int:
        return sum(o.candidates_seen for o in self.outcomes)

    @property
    def stories_created(self) -> int:
        return sum(o.stories_created for o in self.outcomes)

    @property
    def stories_updated(self) -> int:
        return sum(o.stories_updated for o in self.outcomes)

    @property
    def status(self) -> str:
        if not self.failed and not self.cancelled:
            return "success"
        if not self.failed and not self.succeeded:
            return "cancelled"
        if len(self.failed) == len(self.attempted):
            return "failed"
        return "partial"

    def outcome_for(self, source_id: str) -> SourceOutcome | None:
        return next((o for o in self.outcomes if o.source_id == source_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "candidates_seen": self.candidates_seen,
            "stories_created": self.stories_created,
            "stories_updated": self.stories_updated,
            "outcomes": [asdict(o) for o in self.outcomes],
        }


class _Cancelled(Exception):
    pass


class ScrapeOrchestrator:
    """Runs fetch → extract → normalize → upsert for many sources at once.

    Each source is an isolated unit of work: whatever goes wrong for one source
    ends up in its outcome and never reaches its siblings. A bounded pool of
    worker tasks pulls sources from a queue.
    """

    def __init__(
        self,
        store: SqliteStore,
        fetcher: Fetcher | None = None,
        extractor: Extractor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.fetcher = fetcher or Fetcher(self.settings)
        self.extractor = extractor or Extractor()
        self.max_concurrency = max(1, self.settings.max_concurrent_sources)

    async def run(
        self,
        sources: Sequence[Source],
        *,
        skipped: Sequence[Source] = (),
        cancel_event: asyncio.Event | None = None,
    ) -> ScrapeRunReport:
        cancel_event = cancel_event or asyncio.Event()
        report = ScrapeRunReport(run_id=uuid.uuid4().hex[:8], started_at=datetime.now(tz=UTC))
        log = logger.bind(run_id=report.run_id)
        log.info("scrape_run_start", sources=len(sources), skipped=len(skipped))
        self._start_run_log(report)

        queue: asyncio.Queue[Source] = asyncio.Queue()
        for source in sources:
            queue.put_nowait(source)

        worker_count = min(self.max_concurrency, len(sources))
        results = await asyncio.gather(
            *(self._worker(queue, report, cancel_event) for _ in range(worker_count))
        )
        for outcomes in results:
            report.outcomes.extend(outcomes)
        report.outcomes.extend(
            SourceOutcome(source_id=s.id, status=SourceStatus.SKIPPED) for s in skipped
        )
        report.finished_at = datetime.now(tz=UTC)

        self._finish_run_log(report)
        log.info(
            "scrape_run_complete",
            status=report.status,
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            skipped=len(report.skipped),
            cancelled=len(report.cancelled),
            created=report.stories_created,
            updated=report.stories_updated,
        )
        return report

    async def _worker(
        self,
        queue: "asyncio.Queue[Source]",
        report: ScrapeRunReport,
        cancel_event: asyncio.Event,
    ) -> list[SourceOutcome]:
        outcomes: list[SourceOutcome] = []
        while not cancel_event.is_set():
            try:
                source = queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            outcomes.append(await self.scrape_source(source, report.started_at, cancel_event))
            queue.task_done()
        return outcomes

    async def scrape_source(
        self,
        source: Source,
        run_started_at: datetime,
        cancel_event: asyncio.Event | None = None,
    ) -> SourceOutcome:
        outcome = SourceOutcome(source_id=source.id)
        log = logger.bind(source_id=source.id)

        def checkpoint() -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise _Cancelled

        try:
            outcome.stage = Stage.FETCHING
            if source.needs_feed_discovery:
                source = await self._discover_feed(source)
            raw = await self.fetcher.fetch(source)
            checkpoint()

            outcome.stage = Stage.EXTRACTING
            listing = await asyncio.to_thread(self.extractor.extract_listing, source, raw)
            candidates = listing.candidates
            outcome.candidates_seen = len(candidates)
            checkpoint()

            outcome.stage = Stage.NORMALIZING
            stories = self._normalize_all(source, candidates, outcome)
            checkpoint()

            outcome.stage = Stage.UPSERTING
            for fields in stories:
                result = upsert_story(self.store, fields, run_started_at)
                if result.created:
                    outcome.stories_created += 1
                else:
                    outcome.stories_updated += 1
            if listing.image_url and listing.image_url != source.image_url:
                self.store.update_source_image(source.id, listing.image_url)
            self.store.update_source_last_scraped(source.id, run_started_at)
            outcome.stage = Stage.DONE
        except _Cancelled:
            outcome.status = SourceStatus.CANCELLED
            log.warning("source_scrape_cancelled", stage=outcome.stage)
        except PipelineError as exc:
            outcome.status = SourceStatus.FAILED
            outcome.error_kind = exc.kind.value
            outcome.reason = str(exc)
            log.warning(
                "source_scrape_failed", stage=outcome.stage, kind=exc.kind.value, error=str(exc)
            )
        except Exception as exc:
            outcome.status = SourceStatus.FAILED
            outcome.error_kind = ErrorKind.UNEXPECTED.value
            outcome.reason = f"{type(exc).__name__}: {exc}"
            log.exception("source_scrape_error", stage=outcome.stage)
        else:
            log.info(
                "source_scraped",
                candidates=outcome.candidates_seen,
                rejected=outcome.candidates_rejected,
                created=outcome.stories_created,
                updated=outcome.stories_updated,
            )
        return outcome

    async def _discover_feed(self, source: Source) -> Source:
        feed_url = await self.fetcher.discover_feed(source)
        if feed_url is None:
            logger.info("feed_not_found", source_id=source.id)
            return source
        logger.info("feed_discovered", source_id=source.id, feed_url=feed_url)
        discovered = source.with_feed(feed_url)
        self.store.save_source(discovered)
        return discovered

    def _normalize_all(
        self, source: Source, candidates: list[StoryCandidate], outcome: SourceOutcome
    ) -> list[StoryFields]:
        stories: list[StoryFields] = []
        seen_urls: set[str] = set()
        for candidate in candidates:
            try:
                fields = normalize(candidate, source, self.settings.summary_max_chars)
            except NormalizationError as exc:
                outcome.candidates_rejected += 1
                logger.debug("candidate_rejected", source_id=source.id, error=str(exc))
                continue
            # first listing of a URL is the most prominent one
            if fields.url in seen_urls:
                continue
            seen_urls.add(fields.url)
            stories.append(fields)

        if candidates and outcome.candidates_rejected == len(candidates):
            raise NormalizationError(f"all {len(candidates)} candidates from {source.id} were invalid")
        return stories

    def _start_run_log(self, report: ScrapeRunReport) -> None:
        try:
            self.store.create_run_log(report.run_id, report.started_at)
        except StoreError:
            logger.exception("run_log_create_failed", run_id=report.run_id)

    def _finish_run_log(self, report: ScrapeRunReport) -> None:
        failures = "; ".join(f"{o.source_id}: {o.reason}" for o in report.failed)
        try:
            self.store.update_run_log(
                report.run_id,
                status=report.status,
                finished_at=report.finished_at,
                sources_attempted=len(report.attempted),
                sources_failed=len(report.failed),
                stories_created=report.stories_created,
                stories_updated=report.stories_updated,
                error_message=failures or None,
            )
        except StoreError:
            logger.exception("run_log_update_failed", run_id=report.run_id)
