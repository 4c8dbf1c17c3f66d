"""Tests for the SQLite store."""

from datetime import timedelta

import pytest

from servers.event_discovery.errors import ConfigurationNotFound, JobNotFound, StorageConflict
from servers.event_discovery.models import (
    CallLog,
    CrawlOutcome,
    DiscoveryMethod,
    Job,
    JobStatus,
    StoredRecord,
    ValidationStatus,
)


def _job(window, now, **kwargs) -> Job:
    fields = dict(
        market_id="mkt-denver",
        category_id="cat-yoga",
        method=DiscoveryMethod.SEARCH,
        window=window,
        created_at=now,
        scheduled_at=now,
    )
    fields.update(kwargs)
    return Job(**fields)


class TestConfiguration:
    """Tests for markets, categories and sources."""

    @pytest.mark.asyncio
    async def test_market_round_trip(self, store, market):
        await store.upsert_market(market)
        loaded = await store.get_market(market.id)
        assert loaded == market

    @pytest.mark.asyncio
    async def test_missing_market(self, store):
        with pytest.raises(ConfigurationNotFound):
            await store.get_market("nope")

    @pytest.mark.asyncio
    async def test_active_categories_only(self, store, category):
        await store.upsert_category(category)
        await store.upsert_category(category.model_copy(update={"id": "cat-off", "is_active": False}))

        active = await store.list_categories(active_only=True)
        assert [c.id for c in active] == [category.id]
        assert len(await store.list_categories()) == 2

    @pytest.mark.asyncio
    async def test_source_round_trip(self, store, source, now):
        updated = source.model_copy(update={
            "last_crawled_at": now,
            "last_crawl_status": CrawlOutcome.ERROR,
            "consecutive_failures": 2,
        })
        await store.save_source(updated)

        loaded = await store.get_source(source.id)
        assert loaded.last_crawled_at == now
        assert loaded.last_crawl_status == CrawlOutcome.ERROR
        assert loaded.consecutive_failures == 2
        assert loaded.is_active is True


class TestJobs:
    """Tests for the durable job table."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store, window, now):
        job = await store.create_job(_job(window, now))
        loaded = await store.get_job(job.id)

        assert loaded.status == JobStatus.PENDING
        assert loaded.window == window
        assert loaded.scheduled_at == now

    @pytest.mark.asyncio
    async def test_missing_job(self, store):
        with pytest.raises(JobNotFound):
            await store.get_job("nope")

    @pytest.mark.asyncio
    async def test_status_sets_timestamps(self, store, window, now):
        job = await store.create_job(_job(window, now))

        assert await store.update_job_status(job.id, JobStatus.SEARCHING, now=now)
        started = await store.get_job(job.id)
        assert started.started_at == now
        assert started.completed_at is None

        later = now + timedelta(minutes=1)
        assert await store.update_job_status(job.id, JobStatus.COMPLETED, now=later)
        done = await store.get_job(job.id)
        assert done.started_at == now
        assert done.completed_at == later

    @pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.FAILED])
    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, store, window, now, terminal):
        job = await store.create_job(_job(window, now))
        await store.update_job_status(job.id, terminal, error_message="boom" if terminal == JobStatus.FAILED else None)

        for status in (JobStatus.SEARCHING, JobStatus.COMPLETED, JobStatus.FAILED):
            assert await store.update_job_status(job.id, status, error_message="late") is False

        loaded = await store.get_job(job.id)
        assert loaded.status == terminal
        assert loaded.error_message == ("boom" if terminal == JobStatus.FAILED else None)

    @pytest.mark.asyncio
    async def test_counts_and_audit(self, store, window, now):
        job = await store.create_job(_job(window, now))
        await store.update_job_counts(job.id, events_found=3)
        await store.update_job_counts(job.id, events_validated=2, events_stored=None)
        await store.save_job_audit(job.id, prompt_used="prompt", raw_response="[]")

        loaded = await store.get_job(job.id)
        assert (loaded.events_found, loaded.events_validated, loaded.events_stored) == (3, 2, 0)
        assert loaded.prompt_used == "prompt"
        assert loaded.raw_response == "[]"

    @pytest.mark.asyncio
    async def test_unknown_counter_rejected(self, store, window, now):
        job = await store.create_job(_job(window, now))
        with pytest.raises(ValueError):
            await store.update_job_counts(job.id, events_rejected=1)

    @pytest.mark.asyncio
    async def test_claim_respects_schedule(self, store, window, now):
        later = await store.create_job(_job(window, now, scheduled_at=now + timedelta(seconds=10)))
        due = await store.create_job(_job(window, now))

        claimed = await store.claim_next_job("w1", now=now)
        assert claimed.id == due.id
        assert claimed.claimed_by == "w1"

        assert await store.claim_next_job("w2", now=now) is None

        claimed_later = await store.claim_next_job("w2", now=now + timedelta(seconds=10))
        assert claimed_later.id == later.id

    @pytest.mark.asyncio
    async def test_fail_abandoned_jobs(self, store, window, now):
        running = await store.create_job(_job(window, now))
        finished = await store.create_job(_job(window, now))
        unclaimed = await store.create_job(_job(window, now + timedelta(seconds=10)))
        await store.claim_next_job("w1", now=now)
        await store.update_job_status(running.id, JobStatus.VALIDATING, now=now)
        await store.claim_next_job("w2", now=now)
        await store.update_job_status(finished.id, JobStatus.COMPLETED, now=now)

        later = now + timedelta(minutes=5)
        assert await store.fail_abandoned_jobs("worker stopped", now=later) == 1

        failed = await store.get_job(running.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_message == "worker stopped"
        assert failed.completed_at == later
        assert (await store.get_job(finished.id)).status == JobStatus.COMPLETED
        assert (await store.get_job(unclaimed.id)).status == JobStatus.PENDING
        assert await store.fail_abandoned_jobs(now=later) == 0

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first(self, store, window, now):
        first = await store.create_job(_job(window, now))
        second = await store.create_job(_job(window, now + timedelta(seconds=1)))
        await store.create_job(_job(window, now, market_id="mkt-other"))

        jobs = await store.list_jobs(market_id="mkt-denver")
        assert [j.id for j in jobs] == [second.id, first.id]


class TestRecords:
    """Tests for stored events."""

    def _record(self, **kwargs) -> StoredRecord:
        fields = dict(
            title="Sunset Yoga",
            date_start="2025-06-01",
            market_id="mkt-denver",
            fingerprint="fp-1",
            validation_status=ValidationStatus.VALIDATED,
            discovery_job_id="job-1",
        )
        fields.update(kwargs)
        return StoredRecord(**fields)

    @pytest.mark.asyncio
    async def test_unique_fingerprint(self, store):
        await store.insert_record(self._record())
        with pytest.raises(StorageConflict):
            await store.insert_record(self._record(title="Other"))

        assert len(await store.list_records()) == 1

    @pytest.mark.asyncio
    async def test_requires_fingerprint(self, store):
        with pytest.raises(ValueError):
            await store.insert_record(self._record(fingerprint=""))

    @pytest.mark.asyncio
    async def test_filters(self, store):
        await store.insert_record(self._record())
        await store.insert_record(self._record(
            fingerprint="fp-2", validation_status=ValidationStatus.NEEDS_REVIEW, discovery_job_id="job-2",
        ))
        await store.insert_record(self._record(fingerprint="fp-3", market_id="mkt-other"))

        assert len(await store.list_records(market_id="mkt-denver")) == 2
        assert len(await store.list_records(job_id="job-2")) == 1
        review = await store.list_records(market_id="mkt-denver", status=ValidationStatus.NEEDS_REVIEW)
        assert [r.fingerprint for r in review] == ["fp-2"]

    @pytest.mark.asyncio
    async def test_same_day_lookup(self, store):
        await store.insert_record(self._record())
        await store.insert_record(self._record(fingerprint="fp-2", date_start="2025-06-02"))

        same_day = await store.list_records_on_date("mkt-denver", "2025-06-01")
        assert [r.fingerprint for r in same_day] == ["fp-1"]
        assert (await store.find_record_by_fingerprint("fp-2")).date_start == "2025-06-02"
        assert await store.find_record_by_fingerprint("missing") is None


class TestCallLogs:
    """Tests for the call audit table."""

    @pytest.mark.asyncio
    async def test_insert_and_filter(self, store):
        await store.insert_call_log(CallLog(
            provider="openai", action="validation", prompt="p", response="r",
            duration_ms=10, status="success", job_id="job-1",
        ))
        await store.insert_call_log(CallLog(
            provider="perplexity", action="discovery", prompt="p", response="r",
            duration_ms=10, status="success", job_id="job-2",
        ))

        logs = await store.list_call_logs(job_id="job-1")
        assert [log.action for log in logs] == ["validation"]
        assert len(await store.list_call_logs(action="discovery")) == 1
