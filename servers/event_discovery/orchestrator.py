"""
Job orchestrator.

Runs one discovery job end to end as a single sequential unit:

    pending -> searching | crawling -> validating -> storing -> completed
    searching | crawling -> completed (nothing found)
    any step -> failed

Acquisition failures fail the job. Validation failures degrade single
items. Storage failures skip single items.
"""

import sqlite3
from typing import Optional, Union

import structlog

from .dedup import DeduplicationEngine
from .errors import DiscoveryError
from .models import (
    AcquisitionResult,
    DiscoveryMethod,
    InsertOutcome,
    Job,
    JobStatus,
    Market,
    Recommendation,
    StoredRecord,
    ValidationResult,
)
from .sources.crawl import CrawlStrategy
from .sources.search import SearchStrategy
from .store import EventStore
from .validation import ACCEPT_THRESHOLD, ValidationContext, ValidationStage, review_status

logger = structlog.get_logger()

# Crawled pages are not tied to a category
CRAWL_CATEGORY_NAME = "General"
CRAWL_PILLAR = "Discover"

NOTE_SEPARATOR = "; "


class JobOrchestrator:
    """Drive a job through acquisition, validation and storage."""

    def __init__(
        self,
        store: EventStore,
        search: SearchStrategy,
        crawl: CrawlStrategy,
        validation: ValidationStage,
        dedup: DeduplicationEngine,
        accept_threshold: float = ACCEPT_THRESHOLD,
    ):
        self.store = store
        self.search = search
        self.crawl = crawl
        self.validation = validation
        self.dedup = dedup
        self.accept_threshold = accept_threshold

    async def run(self, job: Union[Job, str]) -> Job:
        """
        Run a job to a terminal status.

        Never raises for pipeline failures: they end the job as failed with
        the error message recorded on it.

        Args:
            job: Job or job id

        Returns:
            The job as stored after the run
        """
        job_id = job if isinstance(job, str) else job.id
        job = await self.store.get_job(job_id)

        if job.status.is_terminal:
            logger.info("job_already_finished", job_id=job.id, status=job.status.value)
            return job

        log = logger.bind(job_id=job.id, market_id=job.market_id, method=job.method.value)
        log.info("job_started")

        try:
            await self._execute(job)
        except Exception as e:
            message = str(e) or type(e).__name__
            log.error("job_failed", error=message, error_type=type(e).__name__)
            await self.store.update_job_status(job.id, JobStatus.FAILED, error_message=message)

        finished = await self.store.get_job(job.id)
        log.info(
            "job_finished",
            status=finished.status.value,
            events_found=finished.events_found,
            events_validated=finished.events_validated,
            events_stored=finished.events_stored,
        )
        return finished

    async def _set_status(self, job: Job, status: JobStatus) -> None:
        if await self.store.update_job_status(job.id, status):
            logger.debug("job_status_changed", job_id=job.id, status=status.value)

    async def _execute(self, job: Job) -> None:
        market = await self.store.get_market(job.market_id)

        if job.method == DiscoveryMethod.SEARCH:
            category = await self.store.get_category(job.category_id)
            await self._set_status(job, JobStatus.SEARCHING)
            result = await self.search.acquire(market, category, job.window, job_id=job.id)
            context = ValidationContext(
                category_name=category.name,
                pillar=category.pillar,
                market=market,
                job_id=job.id,
            )
            category_id, pillar = category.id, category.pillar
        else:
            source = await self.store.get_source(job.source_id)
            await self._set_status(job, JobStatus.CRAWLING)
            result = await self.crawl.acquire(market, source, job.window, job_id=job.id)
            context = ValidationContext(
                category_name=CRAWL_CATEGORY_NAME,
                pillar=CRAWL_PILLAR,
                market=market,
                job_id=job.id,
            )
            category_id, pillar = None, None

        await self._record_acquisition(job, result)
        if not result.candidates:
            await self._set_status(job, JobStatus.COMPLETED)
            return

        await self._set_status(job, JobStatus.VALIDATING)
        verdicts = await self.validation.validate(result.candidates, context)
        validated = sum(1 for v in verdicts if v.recommendation != Recommendation.REJECT)
        await self.store.update_job_counts(job.id, events_validated=validated)

        await self._set_status(job, JobStatus.STORING)
        stored = await self._store_all(job, market, verdicts, category_id, pillar)
        await self.store.update_job_counts(job.id, events_stored=stored)

        await self._set_status(job, JobStatus.COMPLETED)

    async def _record_acquisition(self, job: Job, result: AcquisitionResult) -> None:
        await self.store.save_job_audit(job.id, prompt_used=result.prompt, raw_response=result.raw_response)
        await self.store.update_job_counts(job.id, events_found=len(result.candidates))

    def build_record(
        self,
        job: Job,
        market: Market,
        verdict: ValidationResult,
        category_id: Optional[str],
        pillar: Optional[str],
    ) -> Optional[StoredRecord]:
        """Stored form of a verdict's corrected record, or None if rejected."""
        status = review_status(verdict, self.accept_threshold)
        if status is None:
            return None

        data = verdict.corrected_record.model_dump()
        data.update(
            market_id=market.id,
            category_id=category_id,
            pillar=pillar,
            source=job.method,
            discovery_job_id=job.id,
            validation_status=status,
            validation_confidence=verdict.confidence,
            validation_notes=NOTE_SEPARATOR.join(verdict.issues) or None,
        )
        return StoredRecord.model_validate(data)

    async def _store_all(
        self,
        job: Job,
        market: Market,
        verdicts: list[ValidationResult],
        category_id: Optional[str],
        pillar: Optional[str],
    ) -> int:
        stored = 0
        for verdict in verdicts:
            record = self.build_record(job, market, verdict, category_id, pillar)
            if record is None:
                logger.debug("candidate_rejected", job_id=job.id, title=verdict.corrected_record.title)
                continue

            try:
                outcome = await self.dedup.insert(record)
            except (DiscoveryError, sqlite3.Error) as e:
                logger.error("record_store_failed", job_id=job.id, title=record.title, error=str(e))
                continue

            if outcome.outcome != InsertOutcome.EXACT_DUPLICATE:
                stored += 1
        return stored
