"""
Unit tests for the DynamoDB store against a mocked table resource.
"""
import json
from datetime import timedelta
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from src.core.models import Category, ComplianceHistory, NotificationEvent, TriggerReason
from src.storage.dynamodb_store import DynamoDBStore


def client_error(code, operation="PutItem"):
    return ClientError({"Error": {"Code": code, "Message": "test"}}, operation)


@pytest.fixture
def table():
    table = Mock()
    table.name = "compliance-notices-test"
    table.query.return_value = {"Items": []}
    table.get_item.return_value = {}
    return table


@pytest.fixture
def dynamo_store(table):
    return DynamoDBStore(table=table)


@pytest.fixture
def event(now):
    return NotificationEvent(
        notice_id="n-1",
        user_id="user-1",
        trigger_reason=TriggerReason.SCHEDULED_REMINDER,
        scheduled_for=now,
    )


class TestLedger:
    """Test suite for conditional ledger writes."""

    def test_first_write_admitted(self, dynamo_store, table, now):
        assert dynamo_store.put_ledger_entry_if_absent("user-1", "msg-1", now, now + timedelta(days=90)) is True

        kwargs = table.put_item.call_args.kwargs
        assert kwargs["Item"]["pk"] == "USER#user-1"
        assert kwargs["Item"]["sk"] == "LEDGER#msg-1"
        assert "ConditionExpression" in kwargs

    def test_conditional_failure_means_present(self, dynamo_store, table, now):
        table.put_item.side_effect = client_error("ConditionalCheckFailedException")
        assert dynamo_store.put_ledger_entry_if_absent("user-1", "msg-1", now, now + timedelta(days=90)) is False

    def test_other_errors_propagate(self, dynamo_store, table, now):
        table.put_item.side_effect = client_error("ProvisionedThroughputExceededException")
        with pytest.raises(ClientError):
            dynamo_store.put_ledger_entry_if_absent("user-1", "msg-1", now, now + timedelta(days=90))

    def test_delete_entry(self, dynamo_store, table):
        dynamo_store.delete_ledger_entry("user-1", "msg-1")
        table.delete_item.assert_called_once_with(Key={"pk": "USER#user-1", "sk": "LEDGER#msg-1"})


class TestNotices:
    """Test suite for notice persistence."""

    def test_notice_round_trip(self, dynamo_store, table, make_notice):
        notice = make_notice(days=10, amount=25000.0)
        dynamo_store.save_notice(notice)

        item = table.put_item.call_args.kwargs["Item"]
        assert item["sk"] == f"NOTICE#{notice.notice_id}"
        assert item["status"] == "pending"
        table.get_item.return_value = {"Item": item}

        loaded = dynamo_store.get_notice("user-1", notice.notice_id)
        assert loaded.notice_id == notice.notice_id
        assert loaded.deadlines[0].date == notice.deadlines[0].date
        assert loaded.penalty.amount == 25000.0

    def test_missing_notice(self, dynamo_store):
        assert dynamo_store.get_notice("user-1", "missing") is None

    def test_query_follows_pagination(self, dynamo_store, table, make_notice):
        first, second = make_notice(days=5), make_notice(days=9)
        table.query.side_effect = [
            {"Items": [{"data": json.dumps(first.to_dict())}], "LastEvaluatedKey": {"pk": "x"}},
            {"Items": [{"data": json.dumps(second.to_dict())}]},
        ]

        notices = dynamo_store.list_notices("user-1")

        assert [n.notice_id for n in notices] == [first.notice_id, second.notice_id]
        assert table.query.call_args_list[1].kwargs["ExclusiveStartKey"] == {"pk": "x"}

    def test_list_user_ids(self, dynamo_store, table):
        table.scan.return_value = {"Items": [{"pk": "USER#b"}, {"pk": "USER#a"}, {"pk": "USER#b"}]}
        assert dynamo_store.list_user_ids() == ["a", "b"]

    def test_history_defaults(self, dynamo_store):
        history = dynamo_store.get_history("user-1", Category.LABOR)
        assert history == ComplianceHistory(user_id="user-1", category=Category.LABOR)


class TestEvents:
    """Test suite for idempotent event writes and claims."""

    def test_duplicate_event_not_added(self, dynamo_store, table, event):
        assert dynamo_store.add_event(event) is True
        table.put_item.side_effect = client_error("ConditionalCheckFailedException")
        assert dynamo_store.add_event(event) is False

    def test_claim_sets_lease(self, dynamo_store, table, event, now):
        lease = now + timedelta(minutes=5)

        assert dynamo_store.claim_event(event, now, lease) is True

        kwargs = table.update_item.call_args.kwargs
        assert kwargs["Key"] == {"pk": "USER#user-1", "sk": f"EVENT#{event.key}"}
        assert kwargs["ExpressionAttributeValues"] == {":lease": int(lease.timestamp())}
        assert event.claimed_until == lease

    def test_claim_lost_to_another_worker(self, dynamo_store, table, event, now):
        table.update_item.side_effect = client_error("ConditionalCheckFailedException", "UpdateItem")

        assert dynamo_store.claim_event(event, now, now + timedelta(minutes=5)) is False
        assert event.claimed_until is None

    def test_list_events_filters_pending(self, dynamo_store, table, event):
        delivered = NotificationEvent.from_dict(event.to_dict())
        delivered.trigger_reason = TriggerReason.RISK_ESCALATION
        delivered.delivered = True
        table.query.return_value = {"Items": [
            {"data": json.dumps(event.to_dict())},
            {"data": json.dumps(delivered.to_dict())},
        ]}

        assert [e.key for e in dynamo_store.list_events("user-1")] == [event.key]
        assert len(dynamo_store.list_events("user-1", pending_only=False)) == 2
