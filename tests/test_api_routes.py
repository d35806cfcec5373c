"""
Unit tests for API routes - intake, tick, notice status and settings endpoints.
"""
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from app import app
from src.api.routes import get_message_source, get_pipeline
from src.core.models import NoticeStatus
from src.processing.pipeline import MessageSource

PREFIX = "/api/v1"
USER_ID = "user-1"


@pytest.fixture
def client(pipeline):
    """FastAPI test client wired to the in-memory test pipeline."""
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def message_payload():
    return {
        "user_id": USER_ID,
        "message_id": "msg-100",
        "sender": "notices@gst.gov.in",
        "subject": "GSTR-3B filing reminder",
        "body": "Please file GSTR-3B by 20/01/2025.",
        "attachments": [{"filename": "order.txt", "text": "Order under section 73"}],
    }


class TestHealthEndpoint:
    """Test suite for the health endpoint."""

    def test_health(self, client):
        response = client.get(f"{PREFIX}/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert data["breakers"] == {"extraction": "closed", "document-text": "closed"}


class TestMessageEndpoint:
    """Test suite for message intake."""

    def test_message_creates_notice(self, client, mock_llm_client, message_payload):
        response = client.post(f"{PREFIX}/messages", json=message_payload)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "created"
        assert data["notice"]["category"] == "Tax"
        assert data["notice"]["source_message_id"] == "msg-100"
        assert "Order under section 73" in mock_llm_client.generate.call_args.kwargs["prompt"]

    def test_redelivery_is_duplicate(self, client, message_payload):
        client.post(f"{PREFIX}/messages", json=message_payload)
        response = client.post(f"{PREFIX}/messages", json=message_payload)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert response.json()["notice"] is None

    def test_missing_message_id_rejected(self, client):
        response = client.post(f"{PREFIX}/messages", json={"user_id": USER_ID})
        assert response.status_code == 422

    def test_unexpected_failure_returns_500(self, client, pipeline, message_payload):
        pipeline.ledger.admit = Mock(side_effect=RuntimeError("store unavailable"))

        response = client.post(f"{PREFIX}/messages", json=message_payload)

        assert response.status_code == 500
        assert response.json()["detail"] == "Message processing failed"


class TestPollEndpoint:
    """Test suite for mailbox polling."""

    def test_poll_without_source(self, client):
        app.dependency_overrides[get_message_source] = lambda: None

        response = client.post(f"{PREFIX}/users/{USER_ID}/poll")

        assert response.status_code == 503

    def test_poll_processes_messages(self, client, message):
        source = Mock(spec=MessageSource)
        source.fetch_since.return_value = [message]
        app.dependency_overrides[get_message_source] = lambda: source

        response = client.post(f"{PREFIX}/users/{USER_ID}/poll")

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == USER_ID
        assert [p["message_id"] for p in data["processed"]] == ["msg-001"]
        source.fetch_since.assert_called_once_with(USER_ID, None)

    def test_poll_failure_hides_internal_error(self, client):
        source = Mock(spec=MessageSource)
        source.fetch_since.side_effect = ConnectionError("mailbox credentials rejected for owner@example.com")
        app.dependency_overrides[get_message_source] = lambda: source

        response = client.post(f"{PREFIX}/users/{USER_ID}/poll")

        assert response.status_code == 500
        assert response.json()["detail"] == "Polling failed"


class TestTickEndpoint:
    """Test suite for the maintenance tick."""

    def test_tick(self, client):
        response = client.post(f"{PREFIX}/tick")

        assert response.status_code == 200
        data = response.json()
        assert data["users"] == 1
        assert data["errors"] == []
        assert data["next_dispatch_at"] is None


class TestNoticeEndpoints:
    """Test suite for acknowledge and complete."""

    def test_acknowledge(self, client, store, make_notice):
        notice = make_notice()
        store.save_notice(notice)

        response = client.post(f"{PREFIX}/users/{USER_ID}/notices/{notice.notice_id}/acknowledge")

        assert response.status_code == 200
        assert response.json()["status"] == "acknowledged"
        assert store.get_notice(USER_ID, notice.notice_id).status == NoticeStatus.ACKNOWLEDGED

    def test_acknowledge_unknown_notice(self, client):
        response = client.post(f"{PREFIX}/users/{USER_ID}/notices/missing/acknowledge")
        assert response.status_code == 404

    def test_acknowledge_completed_notice_conflicts(self, client, store, make_notice):
        notice = make_notice()
        notice.status = NoticeStatus.COMPLETED
        store.save_notice(notice)

        response = client.post(f"{PREFIX}/users/{USER_ID}/notices/{notice.notice_id}/acknowledge")

        assert response.status_code == 409

    def test_complete(self, client, store, make_notice):
        notice = make_notice()
        store.save_notice(notice)

        response = client.post(f"{PREFIX}/users/{USER_ID}/notices/{notice.notice_id}/complete")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"


class TestSettingsEndpoint:
    """Test suite for notification settings."""

    def test_update_settings(self, client, store):
        payload = {
            "channels": [
                {"channel": "sms", "destination": "+919800000001"},
                {"channel": "email", "destination": "cfo@example.com"},
            ],
            "quiet_hours": {"start": "22:00", "end": "07:00"},
            "timezone": "Asia/Kolkata",
            "reminder_hour": 8,
        }

        response = client.put(f"{PREFIX}/users/{USER_ID}/settings", json=payload)

        assert response.status_code == 200
        saved = store.get_user_settings(USER_ID)
        assert [c.channel for c in saved.channels] == ["sms", "email"]
        assert saved.timezone == "Asia/Kolkata"
        assert saved.reminder_hour == 8
        assert saved.quiet_hours.start.hour == 22

    def test_unknown_timezone(self, client):
        response = client.put(f"{PREFIX}/users/{USER_ID}/settings", json={"timezone": "Mars/Olympus"})
        assert response.status_code == 400

    def test_unknown_channel(self, client):
        payload = {"channels": [{"channel": "pager", "destination": "42"}]}
        response = client.put(f"{PREFIX}/users/{USER_ID}/settings", json=payload)
        assert response.status_code == 400

    def test_invalid_quiet_hours(self, client):
        payload = {"quiet_hours": {"start": "25:00", "end": "07:00"}}
        response = client.put(f"{PREFIX}/users/{USER_ID}/settings", json=payload)
        assert response.status_code == 422
