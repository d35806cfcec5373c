"""
In-process metadata store.

Used for local runs and tests. Objects are deep-copied on the way in and out
so callers cannot mutate stored state without saving it, as with a real
database.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

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


class InMemoryStore(MetadataStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._ledger: Dict[Tuple[str, str], datetime] = {}
        self._notices: Dict[str, Dict[str, Notice]] = {}
        self._history: Dict[Tuple[str, Category], ComplianceHistory] = {}
        self._events: Dict[str, Dict[str, NotificationEvent]] = {}
        self._dispatch: Dict[str, DispatchState] = {}
        self._settings: Dict[str, UserSettings] = {}
        self._watermarks: Dict[str, datetime] = {}
        self._pending: Dict[str, Dict[str, PendingExtraction]] = {}

    def put_ledger_entry_if_absent(
        self, user_id: str, message_id: str, recorded_at: datetime, expires_at: datetime
    ) -> bool:
        key = (user_id, message_id)
        with self._lock:
            if key in self._ledger:
                return False
            self._ledger[key] = expires_at
            return True

    def delete_ledger_entry(self, user_id: str, message_id: str) -> None:
        with self._lock:
            self._ledger.pop((user_id, message_id), None)

    def purge_ledger(self, now: datetime) -> int:
        with self._lock:
            stale = [k for k, expires_at in self._ledger.items() if expires_at <= now]
            for key in stale:
                del self._ledger[key]
        if stale:
            logger.info(f"Purged {len(stale)} ledger entries past retention")
        return len(stale)

    def save_notice(self, notice: Notice) -> None:
        with self._lock:
            self._notices.setdefault(notice.user_id, {})[notice.notice_id] = copy.deepcopy(notice)

    def get_notice(self, user_id: str, notice_id: str) -> Optional[Notice]:
        with self._lock:
            notice = self._notices.get(user_id, {}).get(notice_id)
            return copy.deepcopy(notice) if notice else None

    def list_notices(self, user_id: str) -> List[Notice]:
        with self._lock:
            return [copy.deepcopy(n) for n in self._notices.get(user_id, {}).values()]

    def list_user_ids(self) -> List[str]:
        with self._lock:
            users = set(self._notices) | set(self._settings) | set(self._pending)
        return sorted(users)

    def get_history(self, user_id: str, category: Category) -> ComplianceHistory:
        with self._lock:
            history = self._history.get((user_id, category))
            if history is None:
                return ComplianceHistory(user_id=user_id, category=category)
            return copy.deepcopy(history)

    def save_history(self, history: ComplianceHistory) -> None:
        with self._lock:
            self._history[(history.user_id, history.category)] = copy.deepcopy(history)

    def add_event(self, event: NotificationEvent) -> bool:
        with self._lock:
            events = self._events.setdefault(event.user_id, {})
            if event.key in events:
                return False
            events[event.key] = copy.deepcopy(event)
            return True

    def save_event(self, event: NotificationEvent) -> None:
        with self._lock:
            self._events.setdefault(event.user_id, {})[event.key] = copy.deepcopy(event)

    def list_events(self, user_id: str, pending_only: bool = True) -> List[NotificationEvent]:
        with self._lock:
            events = self._events.get(user_id, {}).values()
            return [copy.deepcopy(e) for e in events if e.is_pending or not pending_only]

    def claim_event(self, event: NotificationEvent, now: datetime, lease_until: datetime) -> bool:
        with self._lock:
            stored = self._events.get(event.user_id, {}).get(event.key)
            if stored is None or not stored.is_pending:
                return False
            if stored.claimed_until and stored.claimed_until > now:
                return False
            stored.claimed_until = lease_until
            event.claimed_until = lease_until
            return True

    def get_dispatch_state(self, user_id: str) -> DispatchState:
        with self._lock:
            state = self._dispatch.get(user_id)
            return copy.deepcopy(state) if state else DispatchState(user_id=user_id)

    def save_dispatch_state(self, state: DispatchState) -> None:
        with self._lock:
            self._dispatch[state.user_id] = copy.deepcopy(state)

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        with self._lock:
            settings = self._settings.get(user_id)
            return copy.deepcopy(settings) if settings else None

    def save_user_settings(self, settings: UserSettings) -> None:
        with self._lock:
            self._settings[settings.user_id] = copy.deepcopy(settings)

    def get_watermark(self, user_id: str) -> Optional[datetime]:
        with self._lock:
            return self._watermarks.get(user_id)

    def set_watermark(self, user_id: str, watermark: datetime) -> None:
        with self._lock:
            self._watermarks[user_id] = watermark

    def enqueue_pending(self, pending: PendingExtraction) -> None:
        with self._lock:
            self._pending.setdefault(pending.user_id, {})[pending.message.message_id] = copy.deepcopy(pending)

    def list_pending(self, user_id: str) -> List[PendingExtraction]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._pending.get(user_id, {}).values()]

    def remove_pending(self, user_id: str, message_id: str) -> None:
        with self._lock:
            self._pending.get(user_id, {}).pop(message_id, None)
