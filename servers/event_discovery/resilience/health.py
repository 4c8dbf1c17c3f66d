"""Crawl source health: failure counting, auto-disable and due-ness."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

import structlog

from ..models import CrawlOutcome, CrawlSource, utcnow

if TYPE_CHECKING:
    from ..store import EventStore

logger = structlog.get_logger()

# Consecutive errors before a source is switched off
FAILURE_THRESHOLD = 5


def apply_outcome(
    source: CrawlSource,
    outcome: CrawlOutcome,
    events_found: int = 0,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
    failure_threshold: int = FAILURE_THRESHOLD,
) -> CrawlSource:
    """Return a copy of the source updated for one crawl outcome.

    Args:
        source: Current source state
        outcome: success, error or no_events
        events_found: Candidates kept from this crawl (success only)
        error: Error message (error only)
        now: Crawl time
        failure_threshold: Errors in a row that disable the source

    Returns:
        Updated source
    """
    update: dict = {
        "last_crawled_at": now or utcnow(),
        "last_crawl_status": outcome,
    }

    if outcome == CrawlOutcome.SUCCESS:
        update.update(
            consecutive_failures=0,
            last_events_found=events_found,
            total_events_found=source.total_events_found + events_found,
            last_crawl_error=None,
        )
    elif outcome == CrawlOutcome.ERROR:
        failures = source.consecutive_failures + 1
        update.update(
            consecutive_failures=failures,
            last_crawl_error=error,
            last_events_found=0,
        )
        if failures >= failure_threshold:
            # Stays off until reactivated by hand
            update["is_active"] = False
    else:
        update.update(consecutive_failures=0, last_events_found=0)

    return source.model_copy(update=update)


def is_due(source: CrawlSource, now: Optional[datetime] = None) -> bool:
    """True if never crawled or its frequency interval has elapsed."""
    if source.last_crawled_at is None:
        return True
    elapsed = (now or utcnow()) - source.last_crawled_at
    return elapsed >= source.crawl_frequency.interval


class SourceHealthTracker:
    """Record crawl outcomes against the durable source rows.

    Counters are re-read from the store before each update so that jobs
    crawling the same source never work from a stale copy.
    """

    def __init__(self, store: "EventStore", failure_threshold: int = FAILURE_THRESHOLD):
        self.store = store
        self.failure_threshold = failure_threshold

    async def record_outcome(
        self,
        source_id: str,
        outcome: CrawlOutcome,
        events_found: int = 0,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CrawlSource:
        current = await self.store.get_source(source_id)
        updated = apply_outcome(
            current,
            outcome,
            events_found=events_found,
            error=error,
            now=now,
            failure_threshold=self.failure_threshold,
        )
        await self.store.save_source(updated)

        if outcome == CrawlOutcome.ERROR:
            logger.warning(
                "source_crawl_failed",
                source_id=source_id,
                url=current.url,
                consecutive_failures=updated.consecutive_failures,
                error=error,
            )
            if current.is_active and not updated.is_active:
                logger.error(
                    "source_auto_disabled",
                    source_id=source_id,
                    url=current.url,
                    consecutive_failures=updated.consecutive_failures,
                )
        else:
            logger.debug(
                "source_crawl_recorded",
                source_id=source_id,
                outcome=outcome.value,
                events_found=events_found,
            )

        return updated

    async def reactivate(self, source_id: str) -> CrawlSource:
        """Turn a disabled source back on and clear its failure count."""
        current = await self.store.get_source(source_id)
        updated = current.model_copy(update={"is_active": True, "consecutive_failures": 0})
        await self.store.save_source(updated)
        logger.info("source_reactivated", source_id=source_id, url=current.url)
        return updated

    async def due_sources(
        self,
        market_id: str,
        now: Optional[datetime] = None,
        force_all: bool = False,
    ) -> list[CrawlSource]:
        """Active sources of a market that should be crawled now.

        Args:
            market_id: Market to check
            now: Reference time
            force_all: Ignore frequency and return every active source

        Returns:
            Sources in configuration order
        """
        active = await self.store.list_sources(market_id=market_id, active_only=True)
        if force_all:
            return active
        now = now or utcnow()
        return [source for source in active if is_due(source, now)]
