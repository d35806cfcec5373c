"""
Builds a fully wired NoticePipeline from configuration.
"""

import logging
from typing import Optional

from src.llm.litellm_client import LiteLLMClient
from src.notifications.channels import build_default_senders
from src.notifications.scheduler import NotificationScheduler
from src.processing.document_processor import DocumentProcessor
from src.processing.notice_extractor import NoticeExtractor
from src.processing.pipeline import NoticePipeline
from src.storage.base import MetadataStore
from src.storage.dynamodb_store import DynamoDBStore
from src.storage.memory_store import InMemoryStore
from src.utils.config import PipelineSettings, load_yaml_config
from src.utils.kafka import create_event_logger
from src.utils.resilience import BreakerRegistry

logger = logging.getLogger(__name__)


def build_store(backend: str) -> MetadataStore:
    if backend == "dynamodb":
        return DynamoDBStore()
    if backend == "memory":
        return InMemoryStore()
    raise ValueError(f"Unknown store backend: {backend}")


def build_pipeline(
    settings: Optional[PipelineSettings] = None,
    model_config_path: str = "config/model_config.yaml",
) -> NoticePipeline:
    """
    Assemble store, collaborators, breakers and scheduler.

    Args:
        settings: Pipeline settings, loaded from config/pipeline_config.yaml when omitted
        model_config_path: Path to the LLM model configuration

    Returns:
        Ready-to-use NoticePipeline
    """
    settings = settings or PipelineSettings.from_yaml()
    alerts = create_event_logger()

    breakers = BreakerRegistry(
        failure_threshold=settings.breaker.failure_threshold,
        cooldown_seconds=settings.breaker.cooldown_seconds,
        outage_alert_cycles=settings.breaker.outage_alert_cycles,
        on_outage=lambda name, cycles: alerts.log_alert(
            f"Collaborator '{name}' unavailable for {cycles} consecutive breaker cycles",
            {"collaborator": name, "cycles": cycles},
        ),
    )

    store = build_store(settings.store_backend)
    model_config = load_yaml_config(model_config_path)
    extraction_settings = model_config.get('extraction_settings', {})
    extractor = NoticeExtractor(
        LiteLLMClient(model_config_path),
        min_confidence=settings.normalizer.min_confidence,
        max_input_chars=extraction_settings.get('max_input_chars', 15000),
    )

    scheduler = NotificationScheduler(
        store,
        build_default_senders(),
        breakers,
        settings=settings.scheduler,
        retry=settings.retry,
        alerts=alerts,
    )

    logger.info(f"Pipeline built with '{settings.store_backend}' store")
    return NoticePipeline(
        store,
        extractor,
        DocumentProcessor(),
        scheduler,
        breakers,
        settings=settings,
        events=alerts,
    )
