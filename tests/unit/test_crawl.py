"""Tests for crawl acquisition."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from servers.event_discovery.errors import AcquisitionError, ProviderError, SourceUnreachable
from servers.event_discovery.models import CrawlOutcome
from servers.event_discovery.resilience import SourceHealthTracker
from servers.event_discovery.sources.crawl import EXTRACTION_MAX_TOKENS, USER_AGENT, CrawlStrategy

PAGE = """
<html>
<head><title>Parks Calendar</title></head>
<body>
  <nav>Home | About | Contact</nav>
  <div id="events">
    <h2>Sunset Yoga</h2>
    <p>Sunday June 1, 2025, 6:30 PM at City Park Pavilion. Free, bring a mat.</p>
    <h2>Lake Walk</h2>
    <p>Saturday June 7, 2025, 8:00 AM at Sloan's Lake. Free.</p>
  </div>
</body>
</html>
"""


def _page_response(html: str = PAGE) -> MagicMock:
    mock_response = MagicMock()
    mock_response.text = html
    mock_response.raise_for_status = MagicMock()
    return mock_response


def _mock_client(mock_client: MagicMock, get: AsyncMock) -> None:
    mock_client.return_value.__aenter__ = AsyncMock(return_value=mock_client.return_value)
    mock_client.return_value.__aexit__ = AsyncMock(return_value=None)
    mock_client.return_value.get = get


@pytest.fixture
def crawl_for(seeded_store):
    def _build(provider) -> CrawlStrategy:
        return CrawlStrategy(provider, SourceHealthTracker(seeded_store), verify_dns=False)
    return _build


class TestFetch:
    """Tests for CrawlStrategy.fetch."""

    @pytest.mark.asyncio
    async def test_fetch_headers(self, crawl_for, make_provider, source):
        with patch("httpx.AsyncClient") as mock_client:
            get = AsyncMock(return_value=_page_response())
            _mock_client(mock_client, get)

            html = await crawl_for(make_provider()).fetch(source)

        assert "Sunset Yoga" in html
        assert get.call_args.args[0] == source.url
        assert get.call_args.kwargs["headers"]["User-Agent"] == USER_AGENT
        assert mock_client.call_args.kwargs["follow_redirects"] is True

    @pytest.mark.asyncio
    async def test_http_status_error(self, crawl_for, make_provider, source):
        mock_response = _page_response()
        mock_response.raise_for_status = MagicMock(side_effect=httpx.HTTPStatusError(
            "500",
            request=httpx.Request("GET", source.url),
            response=httpx.Response(500),
        ))

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, AsyncMock(return_value=mock_response))
            with pytest.raises(SourceUnreachable) as exc:
                await crawl_for(make_provider()).fetch(source)

        assert str(exc.value) == f"HTTP 500 fetching {source.url}"
        assert exc.value.source_id == source.id

    @pytest.mark.asyncio
    async def test_timeout(self, crawl_for, make_provider, source):
        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, AsyncMock(side_effect=httpx.ReadTimeout("read timed out")))
            with pytest.raises(SourceUnreachable) as exc:
                await crawl_for(make_provider()).fetch(source)

        assert "Fetch failed" in str(exc.value)

    @pytest.mark.asyncio
    async def test_unsafe_url_never_fetched(self, crawl_for, make_provider, source):
        internal = source.model_copy(update={"url": "http://169.254.169.254/latest/meta-data"})

        with patch("httpx.AsyncClient") as mock_client:
            with pytest.raises(SourceUnreachable) as exc:
                await crawl_for(make_provider()).fetch(internal)

        mock_client.assert_not_called()
        assert "URL validation failed" in str(exc.value)


class TestAcquire:
    """Tests for CrawlStrategy.acquire."""

    @pytest.mark.asyncio
    async def test_success(self, crawl_for, make_provider, seeded_store, market, source, window):
        reply = json.dumps({"events": [
            {"title": "Sunset Yoga", "dateStart": "2025-06-01"},
            {"title": "Lake Walk", "dateStart": "2025-06-07", "sourceUrl": "https://lake.example.com/walk"},
            {"title": "Spring Cleanup", "dateStart": "2025-04-12"},
        ]})
        provider = make_provider([reply], name="openai")

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, AsyncMock(return_value=_page_response()))
            result = await crawl_for(provider).acquire(market, source, window, job_id="job-9")

        assert [c.title for c in result.candidates] == ["Sunset Yoga", "Lake Walk"]
        assert [c.source_url for c in result.candidates] == [source.url, "https://lake.example.com/walk"]
        assert result.discarded == 1

        call = provider.calls[0]
        assert call["action"] == "crawl_extraction"
        assert call["max_tokens"] == EXTRACTION_MAX_TOKENS
        assert call["json_response"] is True
        assert "City Park Pavilion" in call["user"]
        assert "Home | About" not in call["user"]

        stored = await seeded_store.get_source(source.id)
        assert stored.last_crawl_status == CrawlOutcome.SUCCESS
        assert stored.last_events_found == 2
        assert stored.total_events_found == 2

    @pytest.mark.asyncio
    async def test_short_page_skips_extraction(self, crawl_for, make_provider, seeded_store, market, source, window):
        provider = make_provider()

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, AsyncMock(return_value=_page_response('<div id="events">TBA</div>')))
            result = await crawl_for(provider).acquire(market, source, window)

        assert result.candidates == []
        assert provider.calls == []
        assert (await seeded_store.get_source(source.id)).last_crawl_status == CrawlOutcome.NO_EVENTS

    @pytest.mark.asyncio
    async def test_unparseable_reply_counts_as_no_events(
        self, crawl_for, make_provider, seeded_store, market, source, window
    ):
        provider = make_provider(["Sorry, I can't read this page."])

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, AsyncMock(return_value=_page_response()))
            result = await crawl_for(provider).acquire(market, source, window)

        assert result.candidates == []
        stored = await seeded_store.get_source(source.id)
        assert stored.last_crawl_status == CrawlOutcome.NO_EVENTS
        assert stored.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_fetch_error_recorded(self, crawl_for, make_provider, seeded_store, market, source, window):
        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, AsyncMock(side_effect=httpx.ConnectError("connection refused")))
            with pytest.raises(SourceUnreachable):
                await crawl_for(make_provider()).acquire(market, source, window)

        stored = await seeded_store.get_source(source.id)
        assert stored.last_crawl_status == CrawlOutcome.ERROR
        assert stored.consecutive_failures == 1
        assert "connection refused" in stored.last_crawl_error

    @pytest.mark.asyncio
    async def test_provider_error_recorded(self, crawl_for, make_provider, seeded_store, market, source, window):
        provider = make_provider([ProviderError("openai", "openai API error 500: oops", 500)])

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, AsyncMock(return_value=_page_response()))
            with pytest.raises(AcquisitionError) as exc:
                await crawl_for(provider).acquire(market, source, window)

        assert not isinstance(exc.value, SourceUnreachable)
        stored = await seeded_store.get_source(source.id)
        assert stored.last_crawl_status == CrawlOutcome.ERROR
        assert stored.consecutive_failures == 1
