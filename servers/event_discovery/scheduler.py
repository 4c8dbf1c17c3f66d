"""
Batch scheduling of discovery jobs.

The scheduler never runs jobs itself. It inserts job rows whose
scheduled_at is spread out by a stagger delay, and the worker pool picks
them up when they come due:
- category batch: search jobs 10s apart
- market crawl: crawl jobs 8s apart, only for due active sources
- full sweep: each market's crawl batch offset by a further 2 minutes

SweepCron fires the full sweep on a cron expression (Monday and Thursday
at noon UTC by default).
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import PipelineSettings
from .models import DateWindow, DiscoveryMethod, Job, utcnow
from .resilience.health import SourceHealthTracker
from .store import EventStore

logger = structlog.get_logger()

SWEEP_JOB_ID = "crawl_sweep"


class BatchScheduler:
    """Create staggered job rows for batches of targets."""

    def __init__(
        self,
        store: EventStore,
        health: SourceHealthTracker,
        settings: Optional[PipelineSettings] = None,
    ):
        self.store = store
        self.health = health
        self.settings = settings or PipelineSettings()

    def default_window(self, now: Optional[datetime] = None) -> DateWindow:
        today = (now or utcnow()).date()
        return DateWindow.upcoming(self.settings.default_window_days, today=today)

    async def schedule_all(
        self,
        jobs: list[Job],
        stagger: float,
        offset: float = 0.0,
        now: Optional[datetime] = None,
    ) -> list[Job]:
        """
        Persist jobs with start times spread by a fixed stagger.

        Job i is scheduled at now + offset + i * stagger.

        Args:
            jobs: Unsaved jobs, in the order they should start
            stagger: Seconds between consecutive jobs
            offset: Seconds before the first job
            now: Reference time

        Returns:
            The stored jobs
        """
        now = now or utcnow()
        scheduled = []
        for index, job in enumerate(jobs):
            job = job.model_copy(update={
                "scheduled_at": now + timedelta(seconds=offset + index * stagger),
            })
            scheduled.append(await self.store.create_job(job))
        return scheduled

    async def create_search_job(
        self,
        market_id: str,
        category_id: str,
        window: Optional[DateWindow] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """Single search job for one market and category, due immediately."""
        await self.store.get_market(market_id)
        await self.store.get_category(category_id)

        job = Job(
            market_id=market_id,
            category_id=category_id,
            method=DiscoveryMethod.SEARCH,
            window=window or self.default_window(now),
        )
        [job] = await self.schedule_all([job], stagger=0, now=now)
        logger.info("search_job_created", job_id=job.id, market_id=market_id, category_id=category_id)
        return job

    async def schedule_category_batch(
        self,
        market_id: str,
        category_ids: Optional[list[str]] = None,
        window: Optional[DateWindow] = None,
        now: Optional[datetime] = None,
    ) -> list[Job]:
        """
        One search job per category for a market.

        Args:
            market_id: Market to search
            category_ids: Categories to search; all active ones when omitted
            window: Shared date window
            now: Reference time

        Returns:
            Created jobs in schedule order
        """
        await self.store.get_market(market_id)
        if category_ids is None:
            categories = await self.store.list_categories(active_only=True)
        else:
            categories = [await self.store.get_category(cid) for cid in category_ids]

        window = window or self.default_window(now)
        jobs = [
            Job(market_id=market_id, category_id=category.id, method=DiscoveryMethod.SEARCH, window=window)
            for category in categories
        ]
        created = await self.schedule_all(jobs, self.settings.discovery_stagger, now=now)
        logger.info("category_batch_scheduled", market_id=market_id, jobs=len(created))
        return created

    async def schedule_market_crawl(
        self,
        market_id: str,
        force_all: bool = False,
        offset: float = 0.0,
        window: Optional[DateWindow] = None,
        now: Optional[datetime] = None,
    ) -> list[Job]:
        """
        One crawl job per due, active source of a market.

        Args:
            market_id: Market whose sources to crawl
            force_all: Ignore crawl frequency
            offset: Seconds before the first job
            window: Shared date window
            now: Reference time

        Returns:
            Created jobs; empty when nothing is due
        """
        now = now or utcnow()
        await self.store.get_market(market_id)
        sources = await self.health.due_sources(market_id, now=now, force_all=force_all)

        window = window or self.default_window(now)
        jobs = [
            Job(market_id=market_id, source_id=source.id, method=DiscoveryMethod.CRAWL, window=window)
            for source in sources
        ]
        created = await self.schedule_all(jobs, self.settings.crawl_stagger, offset=offset, now=now)
        logger.info(
            "market_crawl_scheduled",
            market_id=market_id,
            jobs=len(created),
            force_all=force_all,
            offset_seconds=offset,
        )
        return created

    async def schedule_single_crawl(
        self,
        source_id: str,
        window: Optional[DateWindow] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """Crawl one source now, regardless of its frequency."""
        source = await self.store.get_source(source_id)
        job = Job(
            market_id=source.market_id,
            source_id=source.id,
            method=DiscoveryMethod.CRAWL,
            window=window or self.default_window(now),
        )
        [job] = await self.schedule_all([job], stagger=0, now=now)
        logger.info("crawl_job_created", job_id=job.id, source_id=source_id)
        return job

    async def run_sweep(self, now: Optional[datetime] = None) -> list[Job]:
        """Schedule due crawls for every active market, markets staggered apart."""
        now = now or utcnow()
        markets = await self.store.list_markets(active_only=True)

        created: list[Job] = []
        for index, market in enumerate(markets):
            created.extend(
                await self.schedule_market_crawl(
                    market.id,
                    offset=index * self.settings.market_stagger,
                    now=now,
                )
            )

        logger.info("crawl_sweep_scheduled", markets=len(markets), jobs=len(created))
        return created


class SweepCron:
    """Fire the crawl sweep on a cron schedule."""

    def __init__(
        self,
        sweep: Callable[[], Awaitable[object]],
        crontab: str = "0 12 * * mon,thu",
        timezone: str = "UTC",
    ):
        self.sweep = sweep
        self.trigger = CronTrigger.from_crontab(crontab, timezone=timezone)
        self.scheduler = AsyncIOScheduler(
            timezone=timezone,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        self.started = False

    def start(self) -> None:
        if self.started:
            return
        self.scheduler.add_job(
            self.sweep,
            trigger=self.trigger,
            id=SWEEP_JOB_ID,
            name="Crawl sweep",
            replace_existing=True,
        )
        self.scheduler.start()
        self.started = True
        logger.info("sweep_cron_started", next_run=str(self.next_run_time()))

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            logger.info("sweep_cron_stopped")

    def next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None
