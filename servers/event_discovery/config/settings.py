"""
Pipeline settings.

Values come from environment variables so API keys never live in code.
Defaults keep external providers within their free-tier rate limits:
- one validation call every 0.3 seconds per job
- discovery jobs started 10 seconds apart, crawls 8 seconds apart
- markets in a full sweep started 2 minutes apart
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "EVENT_DISCOVERY_"


class PipelineSettings(BaseModel):
    """Runtime configuration for every pipeline component."""

    database_path: Path = Path("data/event_discovery.db")

    # Providers
    perplexity_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    search_model: str = "sonar"
    extraction_model: str = "gpt-4o-mini"
    validation_model: str = "gpt-4o-mini"
    temperature: float = 0.1
    search_recency_filter: str = "month"
    provider_timeout: float = 60.0

    # Crawling
    fetch_timeout: float = 15.0
    max_page_chars: int = 15000
    min_page_chars: int = 50
    verify_source_dns: bool = True

    # Rate limiting
    validation_delay: float = 0.3
    discovery_stagger: float = 10.0
    crawl_stagger: float = 8.0
    market_stagger: float = 120.0

    # Workers
    worker_count: int = Field(default=16, ge=1)
    poll_interval: float = 1.0
    # Use weekday names: APScheduler numbers weekdays from Monday=0
    sweep_cron: str = "0 12 * * mon,thu"

    # Policy
    default_window_days: int = 90
    failure_threshold: int = 5
    accept_threshold: float = 0.7
    duplicate_threshold: float = 0.85

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "PipelineSettings":
        """Build settings from the environment.

        Provider keys use their conventional names (PERPLEXITY_API_KEY,
        OPENAI_API_KEY). Every other field can be overridden with an
        EVENT_DISCOVERY_ prefixed variable, e.g. EVENT_DISCOVERY_WORKER_COUNT.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            Validated settings
        """
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}

        for name in cls.model_fields:
            key = f"{ENV_PREFIX}{name.upper()}"
            if key in env:
                values[name] = env[key]

        if "EVENT_DISCOVERY_DB" in env:
            values["database_path"] = env["EVENT_DISCOVERY_DB"]
        if env.get("PERPLEXITY_API_KEY"):
            values["perplexity_api_key"] = env["PERPLEXITY_API_KEY"]
        if env.get("OPENAI_API_KEY"):
            values["openai_api_key"] = env["OPENAI_API_KEY"]

        return cls.model_validate(values)
