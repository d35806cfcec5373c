"""
Configuration loading for the Compliance Notice Tracking System.
Reads YAML settings from config/ with environment variable overrides.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_PIPELINE_CONFIG = "config/pipeline_config.yaml"


@dataclass
class RetrySettings:
    base_interval_seconds: float = 1.0
    max_attempts: int = 3
    jitter_seconds: float = 0.5
    attempt_timeout_seconds: float = 1.0


@dataclass
class BreakerSettings:
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0
    outage_alert_cycles: int = 3


@dataclass
class LedgerSettings:
    retention_days: int = 90


@dataclass
class NormalizerSettings:
    min_confidence: float = 0.5
    default_currency: str = "INR"


@dataclass
class TrackerSettings:
    reporting_window_days: int = 365


@dataclass
class SchedulerSettings:
    medium_flush_hours: int = 24
    medium_flush_cap: int = 5
    low_flush_days: int = 7
    low_flush_cap: int = 10
    claim_lease_seconds: int = 300
    default_channels: List[Dict[str, str]] = field(default_factory=list)
    default_timezone: str = "UTC"
    default_reminder_hour: int = 9


@dataclass
class PipelineSettings:
    """Typed view over config/pipeline_config.yaml."""
    retry: RetrySettings = field(default_factory=RetrySettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    normalizer: NormalizerSettings = field(default_factory=NormalizerSettings)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    store_backend: str = "memory"
    tick_max_workers: int = 4

    @classmethod
    def from_yaml(cls, config_path: str = DEFAULT_PIPELINE_CONFIG) -> "PipelineSettings":
        """
        Load settings from YAML. Missing files or keys fall back to defaults.

        Args:
            config_path: Path to pipeline configuration YAML file

        Returns:
            PipelineSettings instance
        """
        raw: Dict[str, Any] = {}
        if Path(config_path).exists():
            with open(config_path, 'r') as f:
                raw = yaml.safe_load(f) or {}
        else:
            logger.warning(f"Pipeline config not found at {config_path}, using defaults")

        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PipelineSettings":
        pipeline = raw.get('pipeline', {}) or {}
        settings = cls(
            retry=RetrySettings(**(raw.get('retry') or {})),
            breaker=BreakerSettings(**(raw.get('circuit_breaker') or {})),
            ledger=LedgerSettings(**(raw.get('ledger') or {})),
            normalizer=NormalizerSettings(**(raw.get('normalizer') or {})),
            tracker=TrackerSettings(**(raw.get('tracker') or {})),
            scheduler=SchedulerSettings(**(raw.get('scheduler') or {})),
            store_backend=pipeline.get('store_backend', 'memory'),
            tick_max_workers=pipeline.get('tick_max_workers', 4),
        )

        # Environment overrides for deployment-specific values
        settings.store_backend = os.getenv("STORE_BACKEND", settings.store_backend)

        if settings.ledger.retention_days < 90:
            raise ValueError(
                f"ledger.retention_days must be at least 90, got {settings.ledger.retention_days}"
            )
        return settings


def load_yaml_config(config_path: str) -> Dict[str, Any]:
    """Load a YAML file into a dict, empty when the file is missing."""
    if not Path(config_path).exists():
        logger.warning(f"Config file not found: {config_path}")
        return {}
    with open(config_path, 'r') as f:
        return yaml.safe_load(f) or {}
