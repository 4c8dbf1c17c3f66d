"""
Crawl acquisition.

Fetches a configured source page, strips it down to readable text and asks
an extraction model for the events it contains. Every crawl is recorded
against the source's health, and fetch or provider failures fail the job.
"""

from typing import Optional

import httpx
import structlog

from ..errors import AcquisitionError, ProviderError, SourceUnreachable
from ..models import AcquisitionResult, CrawlOutcome, CrawlSource, DateWindow, Market
from ..prompts import PromptBuilder
from ..providers import ChatProvider
from ..resilience.health import SourceHealthTracker
from .candidates import extract_event_items, filter_candidates
from .html_extractor import MAX_TEXT_CHARS, extract_page_content
from .url_validator import UnsafeURLError, validate_source_url

logger = structlog.get_logger()

ACTION = "crawl_extraction"
USER_AGENT = "Mozilla/5.0 (compatible; EventDiscoveryBot/1.0; event-discovery)"
ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
EXTRACTION_MAX_TOKENS = 4000
# Pages with less text than this are treated as empty
MIN_PAGE_CHARS = 50


class CrawlStrategy:
    """Discover events from one crawl source page."""

    def __init__(
        self,
        provider: ChatProvider,
        health: SourceHealthTracker,
        prompts: Optional[PromptBuilder] = None,
        fetch_timeout: float = 15.0,
        max_page_chars: int = MAX_TEXT_CHARS,
        min_page_chars: int = MIN_PAGE_CHARS,
        verify_dns: bool = True,
        temperature: float = 0.1,
    ):
        """Initialize crawl strategy.

        Args:
            provider: Extraction model client
            health: Tracker that records each crawl outcome
            prompts: Prompt builder
            fetch_timeout: Page fetch timeout in seconds
            max_page_chars: Text budget passed to the extractor
            min_page_chars: Below this the page counts as having no events
            verify_dns: Resolve hosts and refuse private addresses
            temperature: Extraction temperature
        """
        self.provider = provider
        self.health = health
        self.prompts = prompts or PromptBuilder()
        self.fetch_timeout = fetch_timeout
        self.max_page_chars = max_page_chars
        self.min_page_chars = min_page_chars
        self.verify_dns = verify_dns
        self.temperature = temperature

    async def fetch(self, source: CrawlSource) -> str:
        """Fetch the source page HTML.

        Raises:
            SourceUnreachable: Unsafe URL, transport error, timeout or non-2xx
        """
        try:
            url = validate_source_url(source.url, resolve_dns=self.verify_dns)
        except UnsafeURLError as e:
            raise SourceUnreachable(source.id, f"URL validation failed: {e}") from e

        try:
            async with httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True) as client:
                response = await client.get(
                    url,
                    headers={"User-Agent": USER_AGENT, "Accept": ACCEPT},
                )
                response.raise_for_status()
                return response.text
        except httpx.HTTPStatusError as e:
            raise SourceUnreachable(
                source.id, f"HTTP {e.response.status_code} fetching {source.url}"
            ) from e
        except httpx.HTTPError as e:
            reason = str(e) or type(e).__name__
            raise SourceUnreachable(source.id, f"Fetch failed for {source.url}: {reason}") from e

    async def acquire(
        self,
        market: Market,
        source: CrawlSource,
        window: DateWindow,
        job_id: Optional[str] = None,
    ) -> AcquisitionResult:
        """
        Crawl a source and extract candidate events.

        Args:
            market: Market the source belongs to
            source: Source to crawl
            window: Date window events must fall in
            job_id: Job the call is audited under

        Returns:
            AcquisitionResult; candidates without a sourceUrl get the page URL

        Raises:
            SourceUnreachable: Page could not be fetched
            AcquisitionError: Extraction call failed
        """
        try:
            html = await self.fetch(source)
        except SourceUnreachable as e:
            await self.health.record_outcome(source.id, CrawlOutcome.ERROR, error=str(e))
            raise

        page = extract_page_content(html, source.content_selector, max_chars=self.max_page_chars)
        if len(page.text) < self.min_page_chars:
            logger.info("crawl_page_empty", source_id=source.id, url=source.url, chars=len(page.text))
            await self.health.record_outcome(source.id, CrawlOutcome.NO_EVENTS)
            return AcquisitionResult(candidates=[])

        prompt = self.prompts.crawl_extraction(page, source.url, market, window)
        try:
            reply = await self.provider.complete(
                prompt.system,
                prompt.user,
                action=ACTION,
                temperature=self.temperature,
                max_tokens=EXTRACTION_MAX_TOKENS,
                json_response=True,
                market_id=market.id,
                job_id=job_id,
            )
        except ProviderError as e:
            await self.health.record_outcome(source.id, CrawlOutcome.ERROR, error=str(e))
            raise AcquisitionError(str(e)) from e

        items = extract_event_items(reply.content)
        candidates, discarded = filter_candidates(items, window, default_source_url=source.url)

        outcome = CrawlOutcome.SUCCESS if candidates else CrawlOutcome.NO_EVENTS
        await self.health.record_outcome(source.id, outcome, events_found=len(candidates))

        logger.info(
            "crawl_completed",
            source_id=source.id,
            url=source.url,
            page_chars=len(page.text),
            kept=len(candidates),
            discarded=discarded,
            job_id=job_id,
        )

        return AcquisitionResult(
            candidates=candidates,
            prompt=prompt.combined,
            raw_response=reply.content,
            discarded=discarded,
        )
