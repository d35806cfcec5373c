"""
Unit tests for notification channel senders, the Kafka event logger and
S3 URL handling.
"""
from unittest.mock import Mock, patch

import pytest

from src.notifications.channels import (
    EmailSender,
    InAppSender,
    NoticeSummary,
    NotificationPayload,
    SmsSender,
)
from src.utils.kafka import KafkaEventLogger
from src.utils.s3_utility import parse_s3_url


@pytest.fixture
def summary():
    return NoticeSummary(
        notice_id="n-1",
        compliance_type="Tax",
        risk_level="High",
        deadline_date="2025-01-20",
        required_actions=["File GSTR-3B", "Pay late fee"],
        subject="GSTR-3B filing reminder",
        reference_number="GST/2025/001",
    )


@pytest.fixture
def payload(summary):
    return NotificationPayload(user_id="user-1", trigger_reason="scheduled-reminder", notices=[summary])


class TestPayload:
    """Test suite for payload rendering."""

    def test_single_notice_title(self, payload):
        assert payload.is_digest is False
        assert payload.title == "High risk: Tax notice due 2025-01-20"

    def test_render_includes_mandatory_fields(self, payload):
        text = payload.render_text()
        assert "[High] Tax notice" in text
        assert "Deadline: 2025-01-20" in text
        assert "  - File GSTR-3B" in text
        assert "Reference: GST/2025/001" in text

    def test_missing_deadline_flags_manual_review(self):
        summary = NoticeSummary(notice_id="n-2", compliance_type="Other", risk_level="Low", deadline_date=None)
        assert "manual review needed" in summary.render()

    def test_digest_title(self, summary):
        digest = NotificationPayload(user_id="user-1", trigger_reason="scheduled-reminder", notices=[summary] * 3)
        assert digest.is_digest is True
        assert digest.title == "3 compliance notices need your attention"
        assert len(digest.to_dict()["notices"]) == 3


class TestSenders:
    """Test suite for the SES, SNS and in-app senders."""

    def test_email(self, payload):
        client = Mock()
        sender = EmailSender(client=client, sender_address="alerts@example.com")

        sender.send(payload, "owner@example.com")

        kwargs = client.send_email.call_args.kwargs
        assert kwargs["Source"] == "alerts@example.com"
        assert kwargs["Destination"] == {"ToAddresses": ["owner@example.com"]}
        assert kwargs["Message"]["Subject"]["Data"] == payload.title

    def test_email_failure_propagates(self, payload):
        client = Mock()
        client.send_email.side_effect = ConnectionError("SES unreachable")

        with pytest.raises(ConnectionError):
            EmailSender(client=client, sender_address="alerts@example.com").send(payload, "owner@example.com")

    def test_sms_truncated(self, summary):
        client = Mock()
        long_payload = NotificationPayload(
            user_id="user-1", trigger_reason="scheduled-reminder", notices=[summary] * 50
        )

        SmsSender(client=client).send(long_payload, "+919800000000")

        kwargs = client.publish.call_args.kwargs
        assert kwargs["PhoneNumber"] == "+919800000000"
        assert len(kwargs["Message"]) == SmsSender.MAX_LENGTH

    def test_in_app_waits_for_ack(self, payload):
        event_logger = Mock()

        InAppSender(event_logger=event_logger).send(payload, "user-1")

        event_logger.publish_sync.assert_called_once()
        args, kwargs = event_logger.publish_sync.call_args
        assert args[0] == "agent-event"
        assert kwargs["key"] == "user-1"
        assert kwargs["data"]["trigger_reason"] == "scheduled-reminder"


class TestKafkaEventLogger:
    """Test suite for the Kafka event logger without a broker."""

    def test_publish_without_broker_does_not_raise(self, monkeypatch):
        monkeypatch.delenv("KAFKA_BOOTSTRAP_SERVERS", raising=False)
        KafkaEventLogger(topic="test-topic").log_alert("extraction outage", {"collaborator": "extraction"})

    def test_publish_sync_without_broker_raises(self, monkeypatch):
        monkeypatch.delenv("KAFKA_BOOTSTRAP_SERVERS", raising=False)
        with pytest.raises(ConnectionError):
            KafkaEventLogger(topic="test-topic").publish_sync("agent-event", "hello")

    def test_publish_sync_waits_on_future(self, monkeypatch):
        monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "broker:9092")
        producer = Mock()
        with patch("src.utils.kafka.KafkaProducer", return_value=producer):
            KafkaEventLogger(topic="test-topic").publish_sync("agent-event", "hello", key="user-1")

        args, kwargs = producer.send.call_args
        assert args[0] == "test-topic"
        assert kwargs["key"] == "user-1"
        assert kwargs["value"]["message"] == "hello"
        producer.send.return_value.get.assert_called_once_with(timeout=10.0)


class TestS3Urls:
    """Test suite for S3 URL parsing."""

    @pytest.mark.parametrize("url, expected", [
        ("s3://notices/inbox/scan.pdf", ("notices", "inbox/scan.pdf")),
        ("https://notices.s3.ap-south-1.amazonaws.com/inbox/scan%20one.pdf", ("notices", "inbox/scan one.pdf")),
        ("https://s3.ap-south-1.amazonaws.com/notices/inbox/scan.pdf", ("notices", "inbox/scan.pdf")),
    ])
    def test_parse(self, url, expected):
        assert parse_s3_url(url) == expected

    @pytest.mark.parametrize("url", [
        "ftp://notices/scan.pdf",
        "https://example.com/scan.pdf",
        "s3://notices",
    ])
    def test_invalid(self, url):
        with pytest.raises(ValueError):
            parse_s3_url(url)
