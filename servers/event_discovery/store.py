"""
SQLite-backed durable store for the discovery pipeline.

Holds every piece of state jobs share with each other:
- jobs: the durable job table workers claim from
- events: stored records, with a UNIQUE index on fingerprint
- crawl_sources: crawl targets and their health counters
- markets, categories: read-mostly configuration
- call_logs: write-only audit of external provider calls

Jobs coordinate only through this store. All writes go through one
connection and commit statement by statement.
"""

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import aiosqlite
import structlog

from .errors import ConfigurationNotFound, JobNotFound, StorageConflict
from .models import (
    CallLog,
    Category,
    CrawlSource,
    Job,
    JobStatus,
    Market,
    StoredRecord,
    ValidationStatus,
    utcnow,
)

logger = structlog.get_logger()

MEMORY_DB = ":memory:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS markets (
    id TEXT PRIMARY KEY,
    is_active INTEGER NOT NULL,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    is_active INTEGER NOT NULL,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS crawl_sources (
    id TEXT PRIMARY KEY,
    market_id TEXT NOT NULL,
    url TEXT NOT NULL,
    name TEXT,
    content_selector TEXT,
    crawl_frequency TEXT NOT NULL,
    is_active INTEGER NOT NULL,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_crawled_at TEXT,
    last_crawl_status TEXT,
    last_crawl_error TEXT,
    last_events_found INTEGER NOT NULL DEFAULT 0,
    total_events_found INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_sources_market ON crawl_sources(market_id, is_active);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    market_id TEXT NOT NULL,
    category_id TEXT,
    source_id TEXT,
    method TEXT NOT NULL,
    status TEXT NOT NULL,
    window_start TEXT NOT NULL,
    window_end TEXT NOT NULL,
    events_found INTEGER NOT NULL DEFAULT 0,
    events_validated INTEGER NOT NULL DEFAULT 0,
    events_stored INTEGER NOT NULL DEFAULT 0,
    prompt_used TEXT,
    raw_response TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    claimed_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs(status, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_jobs_market ON jobs(market_id, created_at);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL UNIQUE,
    market_id TEXT NOT NULL,
    date_start TEXT,
    discovery_job_id TEXT,
    validation_status TEXT NOT NULL,
    is_duplicate INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_market_date ON events(market_id, date_start);
CREATE INDEX IF NOT EXISTS idx_events_job ON events(discovery_job_id);
CREATE INDEX IF NOT EXISTS idx_events_status ON events(market_id, validation_status);

CREATE TABLE IF NOT EXISTS call_logs (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    job_id TEXT,
    created_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_call_logs_job ON call_logs(job_id);
"""

JOB_COUNTERS = ("events_found", "events_validated", "events_stored")
TERMINAL_STATUSES = tuple(s.value for s in JobStatus if s.is_terminal)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class EventStore:
    """Async SQLite store shared by all jobs and workers.

    Use as an async context manager, or call connect()/close() explicitly.
    """

    def __init__(self, db_path: Union[str, Path] = MEMORY_DB):
        """Initialize store.

        Args:
            db_path: SQLite file path, or ":memory:" for a private database
        """
        self.db_path = str(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._claim_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def connect(self) -> "EventStore":
        if self._db is not None:
            return self

        if self.db_path != MEMORY_DB:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        if self.db_path != MEMORY_DB:
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.debug("store_connected", path=self.db_path)
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "EventStore":
        return await self.connect()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("EventStore is not connected")
        return self._db

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        async with self.db.execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self.db.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    async def _write(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run one write statement in its own transaction.

        Writers share a single connection, so a statement and its commit
        (or rollback) must not interleave with another task's.

        Returns:
            Number of rows changed
        """
        async with self._write_lock:
            try:
                cursor = await self.db.execute(sql, tuple(params))
                await self.db.commit()
            except sqlite3.Error:
                await self.db.rollback()
                raise
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Markets and categories
    # ------------------------------------------------------------------

    async def upsert_market(self, market: Market) -> Market:
        await self._write(
            "INSERT OR REPLACE INTO markets (id, is_active, payload) VALUES (?, ?, ?)",
            (market.id, int(market.is_active), market.model_dump_json()),
        )
        return market

    async def get_market(self, market_id: str) -> Market:
        row = await self._fetchone("SELECT payload FROM markets WHERE id = ?", (market_id,))
        if row is None:
            raise ConfigurationNotFound(f"Market {market_id} not found")
        return Market.model_validate_json(row["payload"])

    async def list_markets(self, active_only: bool = False) -> list[Market]:
        sql = "SELECT payload FROM markets"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = await self._fetchall(sql + " ORDER BY rowid")
        return [Market.model_validate_json(row["payload"]) for row in rows]

    async def upsert_category(self, category: Category) -> Category:
        await self._write(
            "INSERT OR REPLACE INTO categories (id, is_active, payload) VALUES (?, ?, ?)",
            (category.id, int(category.is_active), category.model_dump_json()),
        )
        return category

    async def get_category(self, category_id: str) -> Category:
        row = await self._fetchone("SELECT payload FROM categories WHERE id = ?", (category_id,))
        if row is None:
            raise ConfigurationNotFound(f"Category {category_id} not found")
        return Category.model_validate_json(row["payload"])

    async def list_categories(self, active_only: bool = False) -> list[Category]:
        sql = "SELECT payload FROM categories"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = await self._fetchall(sql + " ORDER BY rowid")
        return [Category.model_validate_json(row["payload"]) for row in rows]

    # ------------------------------------------------------------------
    # Crawl sources
    # ------------------------------------------------------------------

    async def save_source(self, source: CrawlSource) -> CrawlSource:
        """Insert or overwrite a crawl source row."""
        await self._write(
            """
            INSERT OR REPLACE INTO crawl_sources (
                id, market_id, url, name, content_selector, crawl_frequency,
                is_active, consecutive_failures, last_crawled_at, last_crawl_status,
                last_crawl_error, last_events_found, total_events_found
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source.id,
                source.market_id,
                source.url,
                source.name,
                source.content_selector,
                source.crawl_frequency.value,
                int(source.is_active),
                source.consecutive_failures,
                _ts(source.last_crawled_at),
                source.last_crawl_status.value if source.last_crawl_status else None,
                source.last_crawl_error,
                source.last_events_found,
                source.total_events_found,
            ),
        )
        return source

    @staticmethod
    def _source_from_row(row: aiosqlite.Row) -> CrawlSource:
        data = dict(row)
        data["is_active"] = bool(data["is_active"])
        return CrawlSource.model_validate(data)

    async def get_source(self, source_id: str) -> CrawlSource:
        row = await self._fetchone("SELECT * FROM crawl_sources WHERE id = ?", (source_id,))
        if row is None:
            raise ConfigurationNotFound(f"Crawl source {source_id} not found")
        return self._source_from_row(row)

    async def list_sources(
        self, market_id: Optional[str] = None, active_only: bool = False
    ) -> list[CrawlSource]:
        clauses, params = [], []
        if market_id:
            clauses.append("market_id = ?")
            params.append(market_id)
        if active_only:
            clauses.append("is_active = 1")

        sql = "SELECT * FROM crawl_sources"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        rows = await self._fetchall(sql + " ORDER BY rowid", params)
        return [self._source_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, job: Job) -> Job:
        await self._write(
            """
            INSERT INTO jobs (
                id, market_id, category_id, source_id, method, status,
                window_start, window_end, events_found, events_validated,
                events_stored, prompt_used, raw_response, error_message,
                created_at, scheduled_at, started_at, completed_at, claimed_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.market_id,
                job.category_id,
                job.source_id,
                job.method.value,
                job.status.value,
                job.window.start.isoformat(),
                job.window.end.isoformat(),
                job.events_found,
                job.events_validated,
                job.events_stored,
                job.prompt_used,
                job.raw_response,
                job.error_message,
                _ts(job.created_at),
                _ts(job.scheduled_at),
                _ts(job.started_at),
                _ts(job.completed_at),
                job.claimed_by,
            ),
        )
        return job

    @staticmethod
    def _job_from_row(row: aiosqlite.Row) -> Job:
        data = dict(row)
        data["window"] = {"start": data.pop("window_start"), "end": data.pop("window_end")}
        return Job.model_validate(data)

    async def get_job(self, job_id: str) -> Job:
        row = await self._fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        if row is None:
            raise JobNotFound(f"Job {job_id} not found")
        return self._job_from_row(row)

    async def list_jobs(
        self,
        market_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        """List jobs newest first."""
        clauses, params = [], []
        if market_id:
            clauses.append("market_id = ?")
            params.append(market_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)

        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._job_from_row(row) for row in await self._fetchall(sql, params)]

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Move a job to a new status unless it is already terminal.

        Returns:
            True if the row changed, False if the job was already
            completed or failed (terminal statuses are never overwritten)
        """
        now_ts = _ts(now or utcnow())
        assignments = ["status = ?", "started_at = COALESCE(started_at, ?)"]
        params: list[Any] = [status.value, now_ts]
        if error_message is not None:
            assignments.append("error_message = ?")
            params.append(error_message)
        if status.is_terminal:
            assignments.append("completed_at = ?")
            params.append(now_ts)

        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        rowcount = await self._write(
            f"UPDATE jobs SET {', '.join(assignments)} "
            f"WHERE id = ? AND status NOT IN ({placeholders})",
            (*params, job_id, *TERMINAL_STATUSES),
        )

        changed = rowcount == 1
        if not changed:
            logger.warning("job_status_write_ignored", job_id=job_id, status=status.value)
        return changed

    async def update_job_counts(self, job_id: str, **counts: Optional[int]) -> None:
        """Write any of events_found, events_validated, events_stored."""
        unknown = set(counts) - set(JOB_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown job counters: {sorted(unknown)}")

        updates = {k: v for k, v in counts.items() if v is not None}
        if not updates:
            return
        assignments = ", ".join(f"{name} = ?" for name in updates)
        await self._write(
            f"UPDATE jobs SET {assignments} WHERE id = ?",
            (*updates.values(), job_id),
        )

    async def save_job_audit(
        self,
        job_id: str,
        prompt_used: Optional[str] = None,
        raw_response: Optional[str] = None,
    ) -> None:
        """Keep the exact prompt and raw provider response on the job."""
        await self._write(
            "UPDATE jobs SET prompt_used = COALESCE(?, prompt_used), "
            "raw_response = COALESCE(?, raw_response) WHERE id = ?",
            (prompt_used, raw_response, job_id),
        )

    async def claim_next_job(self, worker_id: str, now: Optional[datetime] = None) -> Optional[Job]:
        """Claim the earliest due pending job for a worker.

        Returns:
            The claimed job, or None when nothing is due
        """
        async with self._claim_lock:
            row = await self._fetchone(
                """
                SELECT id FROM jobs
                WHERE status = ? AND claimed_by IS NULL AND scheduled_at <= ?
                ORDER BY scheduled_at, rowid
                LIMIT 1
                """,
                (JobStatus.PENDING.value, _ts(now or utcnow())),
            )
            if row is None:
                return None

            claimed = await self._write(
                "UPDATE jobs SET claimed_by = ? WHERE id = ? AND claimed_by IS NULL",
                (worker_id, row["id"]),
            )
            if claimed != 1:
                return None

        return await self.get_job(row["id"])

    async def fail_abandoned_jobs(
        self,
        error_message: str = "Abandoned by a stopped worker",
        now: Optional[datetime] = None,
    ) -> int:
        """Fail jobs a worker claimed but never finished.

        Only call this before any worker of the pool is running: every
        claimed job that is not yet terminal is treated as abandoned.

        Returns:
            Number of jobs marked failed
        """
        now_ts = _ts(now or utcnow())
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        failed = await self._write(
            "UPDATE jobs SET status = ?, error_message = ?, completed_at = ?, "
            "started_at = COALESCE(started_at, ?) "
            f"WHERE claimed_by IS NOT NULL AND status NOT IN ({placeholders})",
            (JobStatus.FAILED.value, error_message, now_ts, now_ts, *TERMINAL_STATUSES),
        )
        if failed:
            logger.warning("abandoned_jobs_failed", count=failed)
        return failed

    # ------------------------------------------------------------------
    # Stored events
    # ------------------------------------------------------------------

    async def insert_record(self, record: StoredRecord) -> StoredRecord:
        """Insert a stored event.

        Raises:
            StorageConflict: If an event with the same fingerprint exists
        """
        if not record.fingerprint:
            raise ValueError("Stored records require a fingerprint")
        try:
            await self._write(
                """
                INSERT INTO events (
                    id, fingerprint, market_id, date_start, discovery_job_id,
                    validation_status, is_duplicate, created_at, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.fingerprint,
                    record.market_id,
                    record.date_start,
                    record.discovery_job_id,
                    record.validation_status.value,
                    int(record.is_duplicate),
                    _ts(record.created_at),
                    record.model_dump_json(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise StorageConflict(record.fingerprint) from e
        return record

    async def find_record_by_fingerprint(self, fingerprint: str) -> Optional[StoredRecord]:
        row = await self._fetchone("SELECT payload FROM events WHERE fingerprint = ?", (fingerprint,))
        return StoredRecord.model_validate_json(row["payload"]) if row else None

    async def list_records_on_date(self, market_id: str, date_start: str) -> list[StoredRecord]:
        rows = await self._fetchall(
            "SELECT payload FROM events WHERE market_id = ? AND date_start = ? ORDER BY rowid",
            (market_id, date_start),
        )
        return [StoredRecord.model_validate_json(row["payload"]) for row in rows]

    async def list_records(
        self,
        job_id: Optional[str] = None,
        market_id: Optional[str] = None,
        status: Optional[ValidationStatus] = None,
        limit: Optional[int] = None,
    ) -> list[StoredRecord]:
        clauses, params = [], []
        if job_id:
            clauses.append("discovery_job_id = ?")
            params.append(job_id)
        if market_id:
            clauses.append("market_id = ?")
            params.append(market_id)
        if status:
            clauses.append("validation_status = ?")
            params.append(status.value)

        sql = "SELECT payload FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY rowid"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._fetchall(sql, params)
        return [StoredRecord.model_validate_json(row["payload"]) for row in rows]

    # ------------------------------------------------------------------
    # Call audit
    # ------------------------------------------------------------------

    async def insert_call_log(self, entry: CallLog) -> None:
        await self._write(
            """
            INSERT INTO call_logs (id, provider, action, status, job_id, created_at, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.provider,
                entry.action,
                entry.status,
                entry.job_id,
                _ts(entry.created_at),
                entry.model_dump_json(),
            ),
        )

    async def list_call_logs(
        self, job_id: Optional[str] = None, action: Optional[str] = None
    ) -> list[CallLog]:
        clauses, params = [], []
        if job_id:
            clauses.append("job_id = ?")
            params.append(job_id)
        if action:
            clauses.append("action = ?")
            params.append(action)

        sql = "SELECT payload FROM call_logs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        rows = await self._fetchall(sql + " ORDER BY rowid", params)
        return [CallLog.model_validate_json(row["payload"]) for row in rows]
