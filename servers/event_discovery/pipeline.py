"""Wire every pipeline component from settings."""

from typing import Optional

from .audit import CallAuditLog
from .config import PipelineSettings
from .dedup import DeduplicationEngine
from .orchestrator import JobOrchestrator
from .prompts import PromptBuilder
from .providers import ChatProvider, openai_provider, perplexity_provider
from .resilience.health import SourceHealthTracker
from .scheduler import BatchScheduler, SweepCron
from .sources.crawl import CrawlStrategy
from .sources.search import SearchStrategy
from .store import EventStore
from .validation import ValidationStage
from .worker import JobWorkerPool


class DiscoveryPipeline:
    """All components sharing one store.

    Providers can be injected, which is how tests replace the network.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        store: Optional[EventStore] = None,
        search_provider: Optional[ChatProvider] = None,
        extraction_provider: Optional[ChatProvider] = None,
        validation_provider: Optional[ChatProvider] = None,
    ):
        self.settings = settings or PipelineSettings()
        s = self.settings

        self.store = store or EventStore(s.database_path)
        self.audit = CallAuditLog(self.store)
        self.prompts = PromptBuilder()

        self.search_provider = search_provider or perplexity_provider(s, audit=self.audit)
        self.extraction_provider = extraction_provider or openai_provider(
            s, model=s.extraction_model, audit=self.audit
        )
        self.validation_provider = validation_provider or openai_provider(
            s, model=s.validation_model, audit=self.audit
        )

        self.health = SourceHealthTracker(self.store, failure_threshold=s.failure_threshold)
        self.search = SearchStrategy(self.search_provider, self.prompts, temperature=s.temperature)
        self.crawl = CrawlStrategy(
            self.extraction_provider,
            self.health,
            self.prompts,
            fetch_timeout=s.fetch_timeout,
            max_page_chars=s.max_page_chars,
            min_page_chars=s.min_page_chars,
            verify_dns=s.verify_source_dns,
            temperature=s.temperature,
        )
        self.validation = ValidationStage(
            self.validation_provider,
            self.prompts,
            delay=s.validation_delay,
            temperature=s.temperature,
        )
        self.dedup = DeduplicationEngine(self.store, threshold=s.duplicate_threshold)
        self.orchestrator = JobOrchestrator(
            self.store,
            self.search,
            self.crawl,
            self.validation,
            self.dedup,
            accept_threshold=s.accept_threshold,
        )
        self.scheduler = BatchScheduler(self.store, self.health, s)
        self.workers = JobWorkerPool(
            self.store,
            self.orchestrator,
            worker_count=s.worker_count,
            poll_interval=s.poll_interval,
        )
        self.cron = SweepCron(self.scheduler.run_sweep, crontab=s.sweep_cron)

    async def __aenter__(self) -> "DiscoveryPipeline":
        await self.store.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.cron.shutdown()
        await self.workers.stop()
        await self.store.close()
