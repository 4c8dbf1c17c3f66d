"""
Web-search acquisition.

Asks a web-grounded provider for upcoming events in a market and category
and parses the JSON array out of its free-text answer.
"""

from typing import Optional

import structlog

from ..errors import AcquisitionError, ProviderError
from ..models import AcquisitionResult, Category, DateWindow, Market
from ..prompts import PromptBuilder
from ..providers import ChatProvider
from .candidates import extract_event_items, filter_candidates

logger = structlog.get_logger()

ACTION = "discovery"


class SearchStrategy:
    """Discover events for one market and category via web search."""

    def __init__(
        self,
        provider: ChatProvider,
        prompts: Optional[PromptBuilder] = None,
        temperature: float = 0.1,
    ):
        self.provider = provider
        self.prompts = prompts or PromptBuilder()
        self.temperature = temperature

    async def acquire(
        self,
        market: Market,
        category: Category,
        window: DateWindow,
        job_id: Optional[str] = None,
    ) -> AcquisitionResult:
        """
        Search for candidate events.

        Args:
            market: Market geometry and source hints
            category: Category to search
            window: Date window events must fall in
            job_id: Job the call is audited under

        Returns:
            AcquisitionResult with filtered candidates, prompt and raw reply

        Raises:
            AcquisitionError: Provider call failed
        """
        prompt = self.prompts.search(market, category, window)

        try:
            reply = await self.provider.complete(
                prompt.system,
                prompt.user,
                action=ACTION,
                temperature=self.temperature,
                market_id=market.id,
                job_id=job_id,
            )
        except ProviderError as e:
            raise AcquisitionError(str(e)) from e

        items = extract_event_items(reply.content)
        candidates, discarded = filter_candidates(items, window)

        logger.info(
            "search_completed",
            market=market.name,
            category=category.name,
            returned=len(items),
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
