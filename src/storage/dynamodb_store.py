"""
DynamoDB-backed metadata store.

Single-table layout keyed by pk = USER#<user_id> and a typed sort key:

    LEDGER#<message_id>     dedup ledger entry (TTL attribute expires_at)
    NOTICE#<notice_id>      notice payload
    HISTORY#<category>      compliance history
    EVENT#<event key>       notification event
    DISPATCH                batching watermarks
    SETTINGS                user settings
    WATERMARK               message source watermark
    PENDING#<message_id>    parked extraction
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.client import Config
from botocore.exceptions import ClientError

from src.core.models import (
    Category,
    ComplianceHistory,
    DispatchState,
    Notice,
    NotificationEvent,
    PendingExtraction,
    UserSettings,
)
from src.storage.base import MetadataStore

logger = logging.getLogger(__name__)

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def get_dynamodb_table(table_name: Optional[str] = None):
    """Get the DynamoDB table resource using the shared retry configuration."""
    resource = boto3.resource(
        'dynamodb',
        region_name=os.getenv("AWS_REGION"),
        config=Config(
            region_name=os.getenv("AWS_REGION"),
            retries={'max_attempts': 3, 'mode': 'standard'},
            max_pool_connections=50
        )
    )
    return resource.Table(table_name or os.getenv("DYNAMODB_TABLE_NAME", "compliance-notices"))


def _pk(user_id: str) -> str:
    return f"USER#{user_id}"


def _epoch(value: datetime) -> int:
    return int(value.timestamp())


class DynamoDBStore(MetadataStore):

    def __init__(self, table=None):
        """
        Args:
            table: boto3 Table resource (default: built from DYNAMODB_TABLE_NAME)
        """
        self.table = table if table is not None else get_dynamodb_table()
        logger.info(f"DynamoDB store initialized with table {getattr(self.table, 'name', '?')}")

    def _query(self, user_id: str, prefix: str) -> Iterator[Dict[str, Any]]:
        kwargs = {
            "KeyConditionExpression": Key("pk").eq(_pk(user_id)) & Key("sk").begins_with(prefix)
        }
        while True:
            response = self.table.query(**kwargs)
            yield from response.get("Items", [])
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return
            kwargs["ExclusiveStartKey"] = last_key

    def _get(self, user_id: str, sk: str) -> Optional[Dict[str, Any]]:
        response = self.table.get_item(Key={"pk": _pk(user_id), "sk": sk})
        return response.get("Item")

    def _put_data(self, user_id: str, sk: str, data: Dict[str, Any], **attributes) -> None:
        item = {"pk": _pk(user_id), "sk": sk, "data": json.dumps(data, default=str)}
        item.update(attributes)
        self.table.put_item(Item=item)

    def put_ledger_entry_if_absent(
        self, user_id: str, message_id: str, recorded_at: datetime, expires_at: datetime
    ) -> bool:
        # TTL deletion is lazy, so an expired entry counts as absent
        try:
            self.table.put_item(
                Item={
                    "pk": _pk(user_id),
                    "sk": f"LEDGER#{message_id}",
                    "recorded_at": recorded_at.isoformat(),
                    "expires_at": _epoch(expires_at),
                },
                ConditionExpression=Attr("pk").not_exists() | Attr("expires_at").lt(_epoch(recorded_at)),
            )
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                return False
            raise

    def delete_ledger_entry(self, user_id: str, message_id: str) -> None:
        self.table.delete_item(Key={"pk": _pk(user_id), "sk": f"LEDGER#{message_id}"})

    def purge_ledger(self, now: datetime) -> int:
        # Table TTL on expires_at removes lapsed entries
        logger.debug("Ledger retention handled by DynamoDB TTL")
        return 0

    def save_notice(self, notice: Notice) -> None:
        self._put_data(
            notice.user_id,
            f"NOTICE#{notice.notice_id}",
            notice.to_dict(),
            risk_level=notice.risk.level.value,
            status=notice.status.value,
        )

    def get_notice(self, user_id: str, notice_id: str) -> Optional[Notice]:
        item = self._get(user_id, f"NOTICE#{notice_id}")
        return Notice.from_dict(json.loads(item["data"])) if item else None

    def list_notices(self, user_id: str) -> List[Notice]:
        return [Notice.from_dict(json.loads(i["data"])) for i in self._query(user_id, "NOTICE#")]

    def list_user_ids(self) -> List[str]:
        users = set()
        kwargs = {"ProjectionExpression": "pk"}
        while True:
            response = self.table.scan(**kwargs)
            for item in response.get("Items", []):
                users.add(item["pk"][len("USER#"):])
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return sorted(users)

    def get_history(self, user_id: str, category: Category) -> ComplianceHistory:
        item = self._get(user_id, f"HISTORY#{category.value}")
        if not item:
            return ComplianceHistory(user_id=user_id, category=category)
        return ComplianceHistory.from_dict(json.loads(item["data"]))

    def save_history(self, history: ComplianceHistory) -> None:
        self._put_data(history.user_id, f"HISTORY#{history.category.value}", history.to_dict())

    def _event_item(self, event: NotificationEvent) -> Dict[str, Any]:
        item = {
            "pk": _pk(event.user_id),
            "sk": f"EVENT#{event.key}",
            "data": json.dumps(event.to_dict(), default=str),
            "delivered": event.delivered,
            "cancelled": event.cancelled,
        }
        if event.claimed_until:
            item["claimed_until"] = _epoch(event.claimed_until)
        return item

    def _event_from_item(self, item: Dict[str, Any]) -> NotificationEvent:
        event = NotificationEvent.from_dict(json.loads(item["data"]))
        if "claimed_until" in item:
            event.claimed_until = datetime.fromtimestamp(int(item["claimed_until"]), tz=timezone.utc)
        return event

    def add_event(self, event: NotificationEvent) -> bool:
        try:
            self.table.put_item(
                Item=self._event_item(event),
                ConditionExpression=Attr("pk").not_exists(),
            )
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                return False
            raise

    def save_event(self, event: NotificationEvent) -> None:
        self.table.put_item(Item=self._event_item(event))

    def list_events(self, user_id: str, pending_only: bool = True) -> List[NotificationEvent]:
        events = [self._event_from_item(i) for i in self._query(user_id, "EVENT#")]
        return [e for e in events if e.is_pending or not pending_only]

    def claim_event(self, event: NotificationEvent, now: datetime, lease_until: datetime) -> bool:
        try:
            self.table.update_item(
                Key={"pk": _pk(event.user_id), "sk": f"EVENT#{event.key}"},
                UpdateExpression="SET claimed_until = :lease",
                ConditionExpression=(
                    Attr("pk").exists()
                    & Attr("delivered").eq(False)
                    & Attr("cancelled").eq(False)
                    & (Attr("claimed_until").not_exists() | Attr("claimed_until").lte(_epoch(now)))
                ),
                ExpressionAttributeValues={":lease": _epoch(lease_until)},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                return False
            raise
        event.claimed_until = lease_until
        return True

    def get_dispatch_state(self, user_id: str) -> DispatchState:
        item = self._get(user_id, "DISPATCH")
        if not item:
            return DispatchState(user_id=user_id)
        return DispatchState.from_dict(json.loads(item["data"]))

    def save_dispatch_state(self, state: DispatchState) -> None:
        self._put_data(state.user_id, "DISPATCH", state.to_dict())

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        item = self._get(user_id, "SETTINGS")
        return UserSettings.from_dict(json.loads(item["data"])) if item else None

    def save_user_settings(self, settings: UserSettings) -> None:
        self._put_data(settings.user_id, "SETTINGS", settings.to_dict())

    def get_watermark(self, user_id: str) -> Optional[datetime]:
        item = self._get(user_id, "WATERMARK")
        return datetime.fromisoformat(item["value"]) if item else None

    def set_watermark(self, user_id: str, watermark: datetime) -> None:
        self.table.put_item(
            Item={"pk": _pk(user_id), "sk": "WATERMARK", "value": watermark.isoformat()}
        )

    def enqueue_pending(self, pending: PendingExtraction) -> None:
        self._put_data(pending.user_id, f"PENDING#{pending.message.message_id}", pending.to_dict())

    def list_pending(self, user_id: str) -> List[PendingExtraction]:
        return [
            PendingExtraction.from_dict(json.loads(i["data"]))
            for i in self._query(user_id, "PENDING#")
        ]

    def remove_pending(self, user_id: str, message_id: str) -> None:
        self.table.delete_item(Key={"pk": _pk(user_id), "sk": f"PENDING#{message_id}"})
