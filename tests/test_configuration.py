"""
Configuration Validation Tests.
Tests YAML loading, defaults, environment overrides and the pipeline factory.

Run with: pytest tests/test_configuration.py -v
"""
import os
from unittest.mock import Mock, patch

import pytest

from src.llm.litellm_client import LiteLLMClient
from src.processing.factory import build_pipeline, build_store
from src.storage.memory_store import InMemoryStore
from src.utils.config import PipelineSettings, load_yaml_config


class TestPipelineSettings:
    """Test pipeline settings loading."""

    def test_repository_config_loads(self):
        settings = PipelineSettings.from_yaml("config/pipeline_config.yaml")

        assert settings.retry.max_attempts == 3
        assert settings.breaker.failure_threshold == 5
        assert settings.breaker.cooldown_seconds == 60
        assert settings.ledger.retention_days == 90
        assert settings.scheduler.medium_flush_cap == 5
        assert settings.scheduler.low_flush_cap == 10
        assert settings.scheduler.default_timezone == "Asia/Kolkata"

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = PipelineSettings.from_yaml(str(tmp_path / "absent.yaml"))

        assert settings.store_backend == "memory"
        assert settings.tracker.reporting_window_days == 365
        assert settings.scheduler.medium_flush_hours == 24

    def test_partial_sections_fill_defaults(self):
        settings = PipelineSettings.from_dict({"retry": {"max_attempts": 5}})

        assert settings.retry.max_attempts == 5
        assert settings.retry.base_interval_seconds == 1.0

    def test_short_ledger_retention_rejected(self):
        with pytest.raises(ValueError):
            PipelineSettings.from_dict({"ledger": {"retention_days": 30}})

    def test_unknown_key_rejected(self):
        with pytest.raises(TypeError):
            PipelineSettings.from_dict({"retry": {"max_retries": 5}})

    def test_store_backend_env_override(self):
        with patch.dict(os.environ, {"STORE_BACKEND": "dynamodb"}):
            settings = PipelineSettings.from_dict({"pipeline": {"store_backend": "memory"}})
        assert settings.store_backend == "dynamodb"


class TestYamlConfig:
    """Test plain YAML config loading."""

    def test_missing_file_is_empty(self, tmp_path):
        assert load_yaml_config(str(tmp_path / "absent.yaml")) == {}

    def test_model_config(self):
        config = load_yaml_config("config/model_config.yaml")
        assert config["app"]["version"] == "1.0.0"
        assert "extraction" in config["models"]

    def test_llm_model_env_override(self):
        with patch.dict(os.environ, {"LLM_MODEL": "openai/gpt-4o-mini"}):
            client = LiteLLMClient("config/model_config.yaml")
        assert client.model_name == "openai/gpt-4o-mini"


class TestFactory:
    """Test pipeline assembly."""

    def test_memory_store(self):
        assert isinstance(build_store("memory"), InMemoryStore)

    def test_unknown_store_backend(self):
        with pytest.raises(ValueError):
            build_store("redis")

    def test_build_pipeline(self):
        settings = PipelineSettings.from_dict({})
        with patch("src.processing.factory.build_default_senders", return_value={"email": Mock()}), \
                patch("src.processing.factory.create_event_logger") as create_event_logger:
            pipeline = build_pipeline(settings)

        assert isinstance(pipeline.store, InMemoryStore)
        assert pipeline.scheduler.alerts is create_event_logger.return_value
        assert set(pipeline.breakers.snapshot()) == {"extraction", "document-text"}

    def test_breaker_outage_raises_alert(self):
        settings = PipelineSettings.from_dict({"circuit_breaker": {"failure_threshold": 1, "outage_alert_cycles": 1}})
        with patch("src.processing.factory.build_default_senders", return_value={}), \
                patch("src.processing.factory.create_event_logger") as create_event_logger:
            pipeline = build_pipeline(settings)

        pipeline.breakers.get("extraction").record_failure()

        create_event_logger.return_value.log_alert.assert_called_once()
