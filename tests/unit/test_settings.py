"""Tests for pipeline settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from servers.event_discovery.config import PipelineSettings


class TestPipelineSettings:
    """Tests for defaults and environment loading."""

    def test_defaults(self):
        settings = PipelineSettings()
        assert settings.validation_delay == 0.3
        assert settings.discovery_stagger == 10.0
        assert settings.crawl_stagger == 8.0
        assert settings.market_stagger == 120.0
        assert settings.worker_count == 16
        assert settings.failure_threshold == 5
        assert settings.accept_threshold == 0.7
        assert settings.sweep_cron == "0 12 * * mon,thu"

    def test_from_env(self):
        settings = PipelineSettings.from_env({
            "PERPLEXITY_API_KEY": "pplx-123",
            "OPENAI_API_KEY": "sk-456",
            "EVENT_DISCOVERY_DB": "/tmp/events.db",
            "EVENT_DISCOVERY_WORKER_COUNT": "4",
            "EVENT_DISCOVERY_VERIFY_SOURCE_DNS": "false",
            "UNRELATED": "ignored",
        })

        assert settings.perplexity_api_key == "pplx-123"
        assert settings.openai_api_key == "sk-456"
        assert settings.database_path == Path("/tmp/events.db")
        assert settings.worker_count == 4
        assert settings.verify_source_dns is False

    def test_empty_keys_ignored(self):
        settings = PipelineSettings.from_env({"OPENAI_API_KEY": ""})
        assert settings.openai_api_key is None

    def test_invalid_value(self):
        with pytest.raises(ValidationError):
            PipelineSettings.from_env({"EVENT_DISCOVERY_WORKER_COUNT": "0"})
