"""Shared pytest fixtures for event discovery tests."""

import json
import sys
from datetime import date, datetime, timezone
from typing import Any, Callable, Union

import pytest
import structlog

from servers.event_discovery import logging_conf
from servers.event_discovery.config import PipelineSettings
from servers.event_discovery.models import (
    CandidateRecord,
    Category,
    CrawlSource,
    DateWindow,
    Market,
)
from servers.event_discovery.pipeline import DiscoveryPipeline
from servers.event_discovery.providers import ProviderReply
from servers.event_discovery.store import EventStore

Reply = Union[str, Exception, Callable[[str], str]]


class FakeProvider:
    """Stands in for a ChatProvider; replies are consumed in order."""

    def __init__(self, replies: list[Reply] | None = None, name: str = "fake", default: str = "[]"):
        self.name = name
        self.replies = list(replies or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def complete(self, system: str, user: str, action: str, **kwargs: Any) -> ProviderReply:
        self.calls.append({"system": system, "user": user, "action": action, **kwargs})
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(user)
        return ProviderReply(content=reply, tokens_used=42, model="fake-model")


def verdict(
    recommendation: str = "accept",
    confidence: float = 0.9,
    issues: list[str] | None = None,
    corrections: dict | None = None,
) -> str:
    """JSON verdict as the validation model would return it."""
    return json.dumps({
        "isValid": recommendation != "reject",
        "confidence": confidence,
        "issues": issues or [],
        "corrections": corrections or {},
        "recommendation": recommendation,
    })


@pytest.fixture(autouse=True)
def _reset_logging():
    """Undo structlog configuration done by the CLI entry point between tests."""
    yield
    structlog.reset_defaults()
    logging_conf._CONFIGURED = False
    # cache_logger_on_first_use pins the finalized logger onto each module-level proxy
    for name, module in list(sys.modules.items()):
        if name.startswith("servers.event_discovery"):
            for value in vars(module).values():
                if isinstance(value, structlog._config.BoundLoggerLazyProxy):
                    value.__dict__.pop("bind", None)


@pytest.fixture
def now() -> datetime:
    """A fixed Monday morning."""
    return datetime(2025, 5, 19, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def window() -> DateWindow:
    """Window covering June 2025."""
    return DateWindow(start=date(2025, 5, 19), end=date(2025, 8, 17))


@pytest.fixture
def market() -> Market:
    """Provide a sample market."""
    return Market(
        id="mkt-denver",
        name="Denver",
        region_description="Denver metro, Colorado",
        latitude=39.7392,
        longitude=-104.9903,
        radius_miles=25,
        search_sources=["Westword events calendar", "Denver Parks & Recreation"],
        source_prompt_context="Many outdoor events move indoors after October.",
    )


@pytest.fixture
def category() -> Category:
    """Provide a sample category."""
    return Category(
        id="cat-yoga",
        name="Outdoor Yoga",
        pillar="Move",
        search_sub_prompt="Find outdoor yoga classes in parks, open to all levels.",
        exclusion_rules="Do NOT include hot yoga studio memberships.",
    )


@pytest.fixture
def source(market: Market) -> CrawlSource:
    """Provide a sample crawl source."""
    return CrawlSource(
        id="src-parks",
        market_id=market.id,
        url="https://parks.example.com/calendar",
        name="Parks calendar",
        content_selector="#events",
    )


@pytest.fixture
def candidate() -> CandidateRecord:
    """Sunset Yoga at City Park on 2025-06-01."""
    return CandidateRecord(
        title="Sunset Yoga",
        date_start="2025-06-01",
        location_name="City Park",
        source_url="https://parks.example.com/sunset-yoga",
    )


@pytest.fixture
def make_provider() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def make_verdict() -> Callable[..., str]:
    return verdict


@pytest.fixture
def settings() -> PipelineSettings:
    """Settings with no delays and no DNS lookups."""
    return PipelineSettings(
        database_path=":memory:",
        perplexity_api_key="test-perplexity",
        openai_api_key="test-openai",
        validation_delay=0,
        verify_source_dns=False,
    )


@pytest.fixture
async def store() -> EventStore:
    """Fresh in-memory store per test."""
    async with EventStore(":memory:") as db:
        yield db


@pytest.fixture
async def seeded_store(store: EventStore, market: Market, category: Category, source: CrawlSource) -> EventStore:
    """Store holding the sample market, category and source."""
    await store.upsert_market(market)
    await store.upsert_category(category)
    await store.save_source(source)
    return store


@pytest.fixture
def build_pipeline(seeded_store: EventStore, settings: PipelineSettings) -> Callable[..., DiscoveryPipeline]:
    """Build a pipeline over the seeded store with fake providers."""

    def _build(
        search: FakeProvider | None = None,
        extraction: FakeProvider | None = None,
        validation: FakeProvider | None = None,
    ) -> DiscoveryPipeline:
        return DiscoveryPipeline(
            settings,
            store=seeded_store,
            search_provider=search or FakeProvider(name="perplexity"),
            extraction_provider=extraction or FakeProvider(name="openai", default='{"events": []}'),
            validation_provider=validation or FakeProvider(name="openai", default=verdict()),
        )

    return _build
