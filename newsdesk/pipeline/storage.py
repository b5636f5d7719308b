import json
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from newsdesk.config import get_settings
from newsdesk.errors import ErrorKind, StoreError
from newsdesk.pipeline.normalizer import StoryFields
from newsdesk.scrapers.base import ExtractionRule, Source

logger = structlog.get_logger()

_CREATE_TABLES_SQL = """\
CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    homepage_url TEXT NOT NULL,
    rule_json TEXT NOT NULL DEFAULT '{}',
    image_url TEXT,
    last_scraped_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    source_id TEXT NOT NULL REFERENCES sources(id),
    headline TEXT NOT NULL,
    summary TEXT,
    full_text TEXT,
    section TEXT,
    topic TEXT,
    in_page_rank INTEGER,
    image_url TEXT,
    author_names TEXT NOT NULL DEFAULT '[]',
    published_at TEXT,
    archived INTEGER NOT NULL DEFAULT 0,
    last_scraped_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_stories_source_rank ON stories (source_id, in_page_rank);

CREATE TABLE IF NOT EXISTS run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL UNIQUE,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT DEFAULT 'running',
    sources_attempted INTEGER DEFAULT 0,
    sources_failed INTEGER DEFAULT 0,
    stories_created INTEGER DEFAULT 0,
    stories_updated INTEGER DEFAULT 0,
    error_message TEXT
);
"""


def _dt_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    return datetime.fromisoformat(s)


@dataclass
class StoryRecord:
    url: str
    source_id: str
    headline: str
    summary: str | None = None
    full_text: str | None = None
    section: str | None = None
    topic: str | None = None
    in_page_rank: int | None = None
    image_url: str | None = None
    author_names: list[str] = field(default_factory=list)
    published_at: datetime | None = None
    archived: bool = False
    last_scraped_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    id: int | None = None


@dataclass
class RunLogRecord:
    run_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    finished_at: datetime | None = None
    status: str = "running"
    sources_attempted: int = 0
    sources_failed: int = 0
    stories_created: int = 0
    stories_updated: int = 0
    error_message: str | None = None
    id: int | None = None


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        name=row["name"],
        homepage_url=row["homepage_url"],
        rule=ExtractionRule.from_dict(json.loads(row["rule_json"] or "{}")),
        last_scraped_at=_str_to_dt(row["last_scraped_at"]),
        image_url=row["image_url"],
    )


def _row_to_story(row: sqlite3.Row) -> StoryRecord:
    return StoryRecord(
        id=row["id"],
        url=row["url"],
        source_id=row["source_id"],
        headline=row["headline"],
        summary=row["summary"],
        full_text=row["full_text"],
        section=row["section"],
        topic=row["topic"],
        in_page_rank=row["in_page_rank"],
        image_url=row["image_url"],
        author_names=json.loads(row["author_names"] or "[]"),
        published_at=_str_to_dt(row["published_at"]),
        archived=bool(row["archived"]),
        last_scraped_at=_str_to_dt(row["last_scraped_at"]),
        created_at=_str_to_dt(row["created_at"]) or datetime.now(tz=UTC),
        updated_at=_str_to_dt(row["updated_at"]) or datetime.now(tz=UTC),
    )


def _row_to_run_log(row: sqlite3.Row) -> RunLogRecord:
    return RunLogRecord(
        id=row["id"],
        run_id=row["run_id"],
        started_at=_str_to_dt(row["started_at"]) or datetime.now(tz=UTC),
        finished_at=_str_to_dt(row["finished_at"]),
        status=row["status"],
        sources_attempted=row["sources_attempted"] or 0,
        sources_failed=row["sources_failed"] or 0,
        stories_created=row["stories_created"] or 0,
        stories_updated=row["stories_updated"] or 0,
        error_message=row["error_message"],
    )


class SqliteStore:
    """Story and source persistence.

    The UNIQUE constraint on ``stories.url`` is the only dedup guarantee;
    callers never lock around it.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(_CREATE_TABLES_SQL)

    @classmethod
    def connect(cls, path: str) -> "SqliteStore":
        store = cls(sqlite3.connect(path))
        logger.info("database_initialized", path=path)
        return store

    def close(self) -> None:
        self.conn.close()

    # ── Sources ──────────────────────────────────────────────────────

    def list_sources(self) -> list[Source]:
        try:
            rows = self.conn.execute("SELECT * FROM sources ORDER BY created_at, id").fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"could not list sources: {exc}") from exc
        return [_row_to_source(r) for r in rows]

    def find_source_by_id(self, source_id: str) -> Source | None:
        try:
            row = self.conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"could not load source {source_id}: {exc}") from exc
        if row is None:
            return None
        return _row_to_source(row)

    def save_source(self, source: Source) -> None:
        """Insert or redefine a source; never touches ``last_scraped_at``."""
        self._write(
            """INSERT INTO sources (id, name, homepage_url, rule_json, image_url, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   name = excluded.name,
                   homepage_url = excluded.homepage_url,
                   rule_json = excluded.rule_json,
                   image_url = COALESCE(excluded.image_url, sources.image_url)""",
            (
                source.id,
                source.name,
                source.homepage_url,
                json.dumps(source.rule.to_dict()),
                source.image_url,
                _dt_to_str(datetime.now(tz=UTC)),
            ),
        )

    def update_source_last_scraped(self, source_id: str, scraped_at: datetime) -> None:
        self._write(
            "UPDATE sources SET last_scraped_at = ? WHERE id = ?",
            (_dt_to_str(scraped_at), source_id),
        )

    def update_source_image(self, source_id: str, image_url: str) -> None:
        self._write("UPDATE sources SET image_url = ? WHERE id = ?", (image_url, source_id))

    # ── Stories ──────────────────────────────────────────────────────

    def insert_story(self, fields: StoryFields, scraped_at: datetime) -> None:
        now = _dt_to_str(datetime.now(tz=UTC))
        try:
            self.conn.execute(
                """INSERT INTO stories
                   (url, source_id, headline, summary, full_text, section, topic,
                    in_page_rank, image_url, author_names, published_at, archived,
                    last_scraped_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)""",
                (
                    fields.url,
                    fields.source_id,
                    fields.headline,
                    fields.summary,
                    fields.full_text,
                    fields.section,
                    fields.topic,
                    fields.in_page_rank,
                    fields.image_url,
                    json.dumps(fields.author_names or []),
                    _dt_to_str(fields.published_at),
                    _dt_to_str(scraped_at),
                    now,
                    now,
                ),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as exc:
            self.conn.rollback()
            raise StoreError(
                f"story already exists: {fields.url}", ErrorKind.CONSTRAINT_VIOLATION
            ) from exc
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise StoreError(f"insert failed for {fields.url}: {exc}") from exc

    def update_story(self, fields: StoryFields, scraped_at: datetime) -> bool:
        """Refresh listing-derived fields of an existing story.

        Optional fields the listing did not carry keep their stored values,
        ``full_text`` is only filled when empty, and ``archived``, ``source_id``,
        ``section`` and ``topic`` are left alone.

        Only the owning source rewrites the story. A sighting from any other
        source refreshes ``last_scraped_at`` and nothing else, so the owner's
        rank and headline survive.
        """
        now = _dt_to_str(datetime.now(tz=UTC))
        cursor = self._write(
            """UPDATE stories SET
                   headline = ?,
                   summary = COALESCE(?, summary),
                   image_url = COALESCE(?, image_url),
                   author_names = COALESCE(?, author_names),
                   published_at = COALESCE(?, published_at),
                   full_text = COALESCE(full_text, ?),
                   in_page_rank = ?,
                   last_scraped_at = ?,
                   updated_at = ?
               WHERE url = ? AND source_id = ?""",
            (
                fields.headline,
                fields.summary,
                fields.image_url,
                json.dumps(fields.author_names) if fields.author_names else None,
                _dt_to_str(fields.published_at),
                fields.full_text,
                fields.in_page_rank,
                _dt_to_str(scraped_at),
                now,
                fields.url,
                fields.source_id,
            ),
        )
        if cursor.rowcount > 0:
            return True

        cursor = self._write(
            "UPDATE stories SET last_scraped_at = ?, updated_at = ? WHERE url = ?",
            (_dt_to_str(scraped_at), now, fields.url),
        )
        if cursor.rowcount > 0:
            logger.debug("story_seen_by_other_source", url=fields.url, source_id=fields.source_id)
        return cursor.rowcount > 0

    def get_story(self, url: str) -> StoryRecord | None:
        row = self.conn.execute("SELECT * FROM stories WHERE url = ?", (url,)).fetchone()
        if row is None:
            return None
        return _row_to_story(row)

    def get_stories_by_source(self, source_id: str) -> list[StoryRecord]:
        rows = self.conn.execute(
            "SELECT * FROM stories WHERE source_id = ? ORDER BY in_page_rank, id",
            (source_id,),
        ).fetchall()
        return [_row_to_story(r) for r in rows]

    def count_stories(self, source_id: str | None = None) -> int:
        if source_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM stories").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM stories WHERE source_id = ?", (source_id,)
            ).fetchone()
        return int(row[0])

    # Hooks for the retention policy and the deep-fetch process, which live
    # outside the scrape pipeline.

    def archive_story(self, url: str) -> None:
        self._write("UPDATE stories SET archived = 1 WHERE url = ?", (url,))

    def backfill_full_text(self, url: str, full_text: str) -> None:
        self._write(
            "UPDATE stories SET full_text = ?, updated_at = ? WHERE url = ?",
            (full_text, _dt_to_str(datetime.now(tz=UTC)), url),
        )

    # ── Run logs ─────────────────────────────────────────────────────

    def create_run_log(self, run_id: str, started_at: datetime) -> RunLogRecord:
        record = RunLogRecord(run_id=run_id, started_at=started_at)
        cursor = self._write(
            "INSERT INTO run_logs (run_id, started_at, status) VALUES (?, ?, ?)",
            (record.run_id, _dt_to_str(record.started_at), record.status),
        )
        record.id = cursor.lastrowid
        return record

    def update_run_log(self, run_id: str, **kwargs: Any) -> None:
        if not kwargs:
            return
        set_clauses: list[str] = []
        values: list[Any] = []
        for key, value in kwargs.items():
            set_clauses.append(f"{key} = ?")
            if isinstance(value, datetime):
                values.append(_dt_to_str(value))
            elif isinstance(value, bool):
                values.append(int(value))
            else:
                values.append(value)
        values.append(run_id)
        self._write(
            f"UPDATE run_logs SET {', '.join(set_clauses)} WHERE run_id = ?",  # noqa: S608
            values,
        )

    def get_run_log(self, run_id: str) -> RunLogRecord | None:
        row = self.conn.execute("SELECT * FROM run_logs WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return _row_to_run_log(row)

    def _write(self, sql: str, params: Any) -> sqlite3.Cursor:
        try:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise StoreError(f"write failed: {exc}") from exc
        return cursor


_store: SqliteStore | None = None


def get_store() -> SqliteStore:
    global _store  # noqa: PLW0603
    if _store is None:
        _store = SqliteStore.connect(get_settings().sqlite_db_path)
    return _store


def reset_store() -> None:
    """Close and reset the cached store (useful for tests)."""
    global _store  # noqa: PLW0603
    if _store is not None:
        _store.close()
        _store = None
