"""
Entry point for the event discovery pipeline.

The server exposes tools for:
- Managing markets, categories and crawl sources
- Creating discovery jobs (single, category batch, market crawl, single crawl, sweep)
- Reading jobs and stored events
- Reactivating auto-disabled crawl sources

Run with: python -m servers.event_discovery serve
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

import structlog

from .config import PipelineSettings
from .logging_conf import configure_logging
from .models import (
    Category,
    CrawlSource,
    DateWindow,
    JobStatus,
    Market,
    ValidationStatus,
)
from .pipeline import DiscoveryPipeline

logger = structlog.get_logger()


def _window(date_start: Optional[str], date_end: Optional[str]) -> Optional[DateWindow]:
    if not date_start and not date_end:
        return None
    if not (date_start and date_end):
        raise ValueError("date_start and date_end must be given together")
    return DateWindow(start=date_start, end=date_end)


def _dump(models: list) -> list[dict]:
    return [m.model_dump(mode="json") for m in models]


class DiscoveryServer:
    """Tool surface over a connected DiscoveryPipeline."""

    def __init__(self, pipeline: DiscoveryPipeline):
        self.pipeline = pipeline
        self.tools = {
            "upsert_market": self.upsert_market,
            "upsert_category": self.upsert_category,
            "upsert_source": self.upsert_source,
            "create_job": self.create_job,
            "create_batch": self.create_batch,
            "trigger_market_crawl": self.trigger_market_crawl,
            "trigger_single_crawl": self.trigger_single_crawl,
            "run_sweep": self.run_sweep,
            "get_job": self.get_job,
            "list_jobs": self.list_jobs,
            "list_events": self.list_events,
            "reactivate_source": self.reactivate_source,
        }

    async def call(self, name: str, arguments: Optional[dict[str, Any]] = None) -> Any:
        if name not in self.tools:
            raise KeyError(f"Unknown tool: {name}")
        return await self.tools[name](**(arguments or {}))

    async def upsert_market(self, **fields: Any) -> dict:
        market = await self.pipeline.store.upsert_market(Market.model_validate(fields))
        return market.model_dump(mode="json")

    async def upsert_category(self, **fields: Any) -> dict:
        category = await self.pipeline.store.upsert_category(Category.model_validate(fields))
        return category.model_dump(mode="json")

    async def upsert_source(self, **fields: Any) -> dict:
        await self.pipeline.store.get_market(fields.get("market_id", ""))
        source = await self.pipeline.store.save_source(CrawlSource.model_validate(fields))
        return source.model_dump(mode="json")

    async def create_job(
        self,
        market_id: str,
        category_id: str,
        date_start: Optional[str] = None,
        date_end: Optional[str] = None,
    ) -> dict:
        """
        Create one search job for a market and category.

        Args:
            market_id: Market to search
            category_id: Category to search
            date_start: Window start (YYYY-MM-DD), defaults to today
            date_end: Window end, exclusive
        """
        job = await self.pipeline.scheduler.create_search_job(
            market_id, category_id, window=_window(date_start, date_end)
        )
        return job.model_dump(mode="json")

    async def create_batch(
        self,
        market_id: str,
        category_ids: Optional[list[str]] = None,
        date_start: Optional[str] = None,
        date_end: Optional[str] = None,
    ) -> dict:
        """Create staggered search jobs for several (or all active) categories."""
        jobs = await self.pipeline.scheduler.schedule_category_batch(
            market_id, category_ids, window=_window(date_start, date_end)
        )
        return {"jobs": _dump(jobs), "total": len(jobs)}

    async def trigger_market_crawl(self, market_id: str, force_all: bool = False) -> dict:
        """Crawl a market's due sources, or every active source with force_all."""
        jobs = await self.pipeline.scheduler.schedule_market_crawl(market_id, force_all=force_all)
        return {"jobs": _dump(jobs), "total": len(jobs)}

    async def trigger_single_crawl(self, source_id: str) -> dict:
        job = await self.pipeline.scheduler.schedule_single_crawl(source_id)
        return job.model_dump(mode="json")

    async def run_sweep(self) -> dict:
        jobs = await self.pipeline.scheduler.run_sweep()
        return {"jobs": _dump(jobs), "total": len(jobs)}

    async def get_job(self, job_id: str) -> dict:
        job = await self.pipeline.store.get_job(job_id)
        return job.model_dump(mode="json")

    async def list_jobs(
        self,
        market_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> dict:
        jobs = await self.pipeline.store.list_jobs(
            market_id=market_id,
            status=JobStatus(status) if status else None,
            limit=limit,
        )
        return {"jobs": _dump(jobs), "total": len(jobs)}

    async def list_events(
        self,
        job_id: Optional[str] = None,
        market_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """List stored events filtered by job, market and validation status."""
        records = await self.pipeline.store.list_records(
            job_id=job_id,
            market_id=market_id,
            status=ValidationStatus(status) if status else None,
            limit=limit,
        )
        return {"events": _dump(records), "total": len(records)}

    async def reactivate_source(self, source_id: str) -> dict:
        source = await self.pipeline.health.reactivate(source_id)
        return source.model_dump(mode="json")


async def serve(pipeline: DiscoveryPipeline) -> None:
    """Run workers and the sweep cron until cancelled."""
    await pipeline.workers.start()
    pipeline.cron.start()
    logger.info("discovery_server_ready", workers=pipeline.settings.worker_count)
    try:
        await asyncio.Event().wait()
    finally:
        pipeline.cron.shutdown()
        await pipeline.workers.stop()


async def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="event-discovery", description="Local event discovery pipeline")
    parser.add_argument("--db", help="SQLite database path (overrides EVENT_DISCOVERY_DB)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Log JSON lines")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the worker pool and the crawl sweep cron")
    sub.add_parser("tools", help="List available tools")

    call = sub.add_parser("call", help="Call one tool and print its JSON result")
    call.add_argument("tool")
    call.add_argument("--args", default="{}", help="Tool arguments as a JSON object")
    call.add_argument("--drain", action="store_true", help="Run due jobs inline after the call")

    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, json_logs=args.json_logs)

    settings = PipelineSettings.from_env()
    if args.db:
        settings = settings.model_copy(update={"database_path": args.db})

    async with DiscoveryPipeline(settings) as pipeline:
        server = DiscoveryServer(pipeline)

        if args.command == "tools":
            print(json.dumps(sorted(server.tools), indent=2))
            return 0

        if args.command == "serve":
            await serve(pipeline)
            return 0

        result = await server.call(args.tool, json.loads(args.args))
        if args.drain:
            finished = await pipeline.workers.drain()
            result = {"result": result, "finished_jobs": _dump(finished)}
        print(json.dumps(result, indent=2, default=str))
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
