"""
Metadata store interface.

The pipeline needs point lookups by (user_id, notice_id), range queries by
deadline date and risk level, and two atomic conditional writes: ledger
admission and notification claiming.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import List, Optional

from src.core.models import (
    Category,
    ComplianceHistory,
    DispatchState,
    Notice,
    NotificationEvent,
    PendingExtraction,
    RiskLevel,
    UserSettings,
)


class NoticeNotFoundError(KeyError):
    def __init__(self, user_id: str, notice_id: str):
        self.user_id = user_id
        self.notice_id = notice_id
        super().__init__(f"Notice {notice_id} not found for user {user_id}")


class MetadataStore(ABC):

    # Deduplication ledger

    @abstractmethod
    def put_ledger_entry_if_absent(
        self, user_id: str, message_id: str, recorded_at: datetime, expires_at: datetime
    ) -> bool:
        """Atomically record the message. False when an entry already exists."""

    @abstractmethod
    def delete_ledger_entry(self, user_id: str, message_id: str) -> None: ...

    @abstractmethod
    def purge_ledger(self, now: datetime) -> int:
        """Drop entries whose retention has lapsed. Returns the number removed."""

    # Notices

    @abstractmethod
    def save_notice(self, notice: Notice) -> None: ...

    @abstractmethod
    def get_notice(self, user_id: str, notice_id: str) -> Optional[Notice]: ...

    @abstractmethod
    def list_notices(self, user_id: str) -> List[Notice]: ...

    @abstractmethod
    def list_user_ids(self) -> List[str]: ...

    def require_notice(self, user_id: str, notice_id: str) -> Notice:
        notice = self.get_notice(user_id, notice_id)
        if notice is None:
            raise NoticeNotFoundError(user_id, notice_id)
        return notice

    def find_notices_by_deadline(self, user_id: str, start: date, end: date) -> List[Notice]:
        """Notices with at least one deadline dated within [start, end]."""
        return [
            n for n in self.list_notices(user_id)
            if any(start <= d.date <= end for d in n.deadlines)
        ]

    def find_notices_by_risk_level(self, user_id: str, level: RiskLevel) -> List[Notice]:
        return [n for n in self.list_notices(user_id) if n.risk.level == level]

    # Compliance history

    @abstractmethod
    def get_history(self, user_id: str, category: Category) -> ComplianceHistory: ...

    @abstractmethod
    def save_history(self, history: ComplianceHistory) -> None: ...

    # Notification events

    @abstractmethod
    def add_event(self, event: NotificationEvent) -> bool:
        """Insert unless an event with the same key exists. Returns True when inserted."""

    @abstractmethod
    def save_event(self, event: NotificationEvent) -> None: ...

    @abstractmethod
    def list_events(self, user_id: str, pending_only: bool = True) -> List[NotificationEvent]: ...

    @abstractmethod
    def claim_event(self, event: NotificationEvent, now: datetime, lease_until: datetime) -> bool:
        """
        Compare-and-set lease on a pending event. False when the event is
        delivered, cancelled, or leased by another dispatcher.
        """

    def list_events_for_notice(self, user_id: str, notice_id: str) -> List[NotificationEvent]:
        return [e for e in self.list_events(user_id, pending_only=False) if e.notice_id == notice_id]

    # Dispatch state, user settings, watermarks

    @abstractmethod
    def get_dispatch_state(self, user_id: str) -> DispatchState: ...

    @abstractmethod
    def save_dispatch_state(self, state: DispatchState) -> None: ...

    @abstractmethod
    def get_user_settings(self, user_id: str) -> Optional[UserSettings]: ...

    @abstractmethod
    def save_user_settings(self, settings: UserSettings) -> None: ...

    @abstractmethod
    def get_watermark(self, user_id: str) -> Optional[datetime]: ...

    @abstractmethod
    def set_watermark(self, user_id: str, watermark: datetime) -> None: ...

    # Extractions parked while a collaborator is down

    @abstractmethod
    def enqueue_pending(self, pending: PendingExtraction) -> None: ...

    @abstractmethod
    def list_pending(self, user_id: str) -> List[PendingExtraction]: ...

    @abstractmethod
    def remove_pending(self, user_id: str, message_id: str) -> None: ...
