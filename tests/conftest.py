"""
Pytest configuration and fixtures for test suite.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from src.core.models import (
    Category,
    ChannelTarget,
    Deadline,
    DeadlineKind,
    InboundMessage,
    Notice,
    Penalty,
    RiskAssessment,
    RiskLevel,
    UserSettings,
)
from src.notifications.scheduler import NotificationScheduler
from src.processing.document_processor import DocumentProcessor
from src.processing.notice_extractor import NoticeExtractor
from src.processing.pipeline import NoticePipeline
from src.storage.memory_store import InMemoryStore
from src.utils.config import PipelineSettings, RetrySettings, SchedulerSettings
from src.utils.resilience import BreakerRegistry

USER_ID = "user-1"
NOW = datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def retry_settings():
    """Retry budget of 3 without waiting or worker threads."""
    return RetrySettings(
        base_interval_seconds=0.0,
        max_attempts=3,
        jitter_seconds=0.0,
        attempt_timeout_seconds=0,
    )


@pytest.fixture
def pipeline_settings(retry_settings):
    settings = PipelineSettings()
    settings.retry = retry_settings
    settings.tick_max_workers = 2
    return settings


@pytest.fixture
def breakers(clock):
    return BreakerRegistry(clock=clock)


@pytest.fixture
def senders():
    """Mock channel senders keyed by channel name."""
    return {"email": Mock(name="email"), "sms": Mock(name="sms"), "in_app": Mock(name="in_app")}


@pytest.fixture
def alerts():
    return Mock(name="alerts")


@pytest.fixture
def scheduler(store, senders, breakers, retry_settings, alerts):
    return NotificationScheduler(
        store,
        senders,
        breakers,
        settings=SchedulerSettings(),
        retry=retry_settings,
        alerts=alerts,
        sleep=no_sleep,
    )


@pytest.fixture
def user_settings(store):
    settings = UserSettings(
        user_id=USER_ID,
        channels=[
            ChannelTarget("email", "owner@example.com"),
            ChannelTarget("sms", "+919800000000"),
        ],
    )
    store.save_user_settings(settings)
    return settings


@pytest.fixture
def mock_llm_client():
    """Mock LLM client returning a GST notice extraction."""
    client = Mock()
    client.generate = Mock(return_value=json.dumps({
        "is_compliance_notice": True,
        "category": "Tax",
        "issuing_authority": "GST Department",
        "reference_number": "GST/2025/001",
        "subject": "GSTR-3B filing reminder",
        "deadlines": [{"date": "20/01/2025", "kind": "filing", "description": "File GSTR-3B"}],
        "penalty": {"text": "Late fee of Rs. 50 per day", "amount": None},
        "required_actions": ["File GSTR-3B"],
    }))
    return client


@pytest.fixture
def document_processor():
    return DocumentProcessor()


@pytest.fixture
def pipeline(store, mock_llm_client, document_processor, scheduler, breakers, pipeline_settings, user_settings):
    return NoticePipeline(
        store,
        NoticeExtractor(mock_llm_client),
        document_processor,
        scheduler,
        breakers,
        settings=pipeline_settings,
        events=Mock(name="events"),
        sleep=no_sleep,
    )


@pytest.fixture
def make_notice():
    """Factory for notices with one deadline `days` after TODAY."""
    def _make(
        days=30,
        category=Category.TAX,
        amount=None,
        level=RiskLevel.LOW,
        user_id=USER_ID,
        kind=DeadlineKind.FILING,
    ):
        deadlines = [] if days is None else [Deadline(date=TODAY + timedelta(days=days), kind=kind)]
        return Notice(
            user_id=user_id,
            source_message_id=f"msg-{days}-{category.value}",
            category=category,
            subject="Test notice",
            deadlines=deadlines,
            penalty=Penalty(amount=amount, currency="INR") if amount is not None else None,
            required_actions=["Respond"],
            risk=RiskAssessment(level=level),
            created_at=NOW,
            updated_at=NOW,
        )
    return _make


@pytest.fixture
def message():
    return InboundMessage(
        message_id="msg-001",
        sender="notices@gst.gov.in",
        subject="GSTR-3B filing reminder",
        body="Please file GSTR-3B by 20/01/2025. Late fee of Rs. 50 per day applies.",
        received_at=NOW - timedelta(hours=1),
    )
