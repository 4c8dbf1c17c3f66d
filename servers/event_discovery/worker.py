"""
Worker pool over the durable job table.

Each worker is an asyncio task that claims the earliest due pending job,
runs it to completion through the orchestrator, then claims the next one.
The pool size is a hard ceiling on concurrently running jobs; the stagger
applied by the scheduler still spaces out their starts.
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog

from .models import Job
from .orchestrator import JobOrchestrator
from .store import EventStore

logger = structlog.get_logger()


class JobWorkerPool:
    """Pull pending jobs from the store and run them."""

    def __init__(
        self,
        store: EventStore,
        orchestrator: JobOrchestrator,
        worker_count: int = 16,
        poll_interval: float = 1.0,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.store = store
        self.orchestrator = orchestrator
        self.worker_count = worker_count
        self.poll_interval = poll_interval
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Fail jobs left claimed by an earlier pool, then start the workers."""
        if self._tasks:
            return
        await self.store.fail_abandoned_jobs()
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._work(f"worker-{index}"), name=f"event-discovery-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("worker_pool_started", workers=self.worker_count)

    async def stop(self) -> None:
        """Stop claiming new jobs and wait for running ones to finish."""
        if not self._tasks:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks)
        self._tasks = []
        logger.info("worker_pool_stopped")

    async def run_next(self, worker_id: str = "inline", now: Optional[datetime] = None) -> Optional[Job]:
        """Claim and run one due job.

        Returns:
            The finished job, or None when nothing was due
        """
        job = await self.store.claim_next_job(worker_id, now=now)
        if job is None:
            return None
        logger.debug("job_claimed", job_id=job.id, worker=worker_id)
        return await self.orchestrator.run(job)

    async def drain(self, now: Optional[datetime] = None) -> list[Job]:
        """Run due jobs one after another until none are left."""
        finished = []
        while True:
            job = await self.run_next(now=now)
            if job is None:
                return finished
            finished.append(job)

    async def _work(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                job = await self.run_next(worker_id)
            except Exception:
                logger.exception("worker_job_crashed", worker=worker_id)
                job = None
            if job is not None:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
