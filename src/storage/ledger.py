"""
Deduplication ledger: records which inbound messages were already processed
per user so a redelivered message never creates a second notice.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from src.core.models import utcnow
from src.storage.base import MetadataStore

logger = logging.getLogger(__name__)

MIN_RETENTION_DAYS = 90


class AdmissionResult(str, Enum):
    ADMIT = "admit"
    ALREADY_PROCESSED = "already_processed"


class DeduplicationLedger:
    """
    Admission relies on the store's conditional write, so concurrent admits
    for the same (user_id, source_message_id) yield exactly one ADMIT.

    Entries may be purged after `retention_days`: providers do not redeliver
    messages older than that window.
    """

    def __init__(self, store: MetadataStore, retention_days: int = MIN_RETENTION_DAYS):
        if retention_days < MIN_RETENTION_DAYS:
            raise ValueError(
                f"Ledger retention must be at least {MIN_RETENTION_DAYS} days, got {retention_days}"
            )
        self.store = store
        self.retention = timedelta(days=retention_days)

    def admit(
        self, user_id: str, source_message_id: str, now: Optional[datetime] = None
    ) -> AdmissionResult:
        now = now or utcnow()
        recorded = self.store.put_ledger_entry_if_absent(
            user_id, source_message_id, recorded_at=now, expires_at=now + self.retention
        )
        if recorded:
            logger.info(f"Admitted message {source_message_id} for user {user_id}")
            return AdmissionResult.ADMIT
        logger.info(f"Message {source_message_id} already processed for user {user_id}")
        return AdmissionResult.ALREADY_PROCESSED

    def release(self, user_id: str, source_message_id: str) -> None:
        """Forget an admission so a redelivery of the message is processed again."""
        self.store.delete_ledger_entry(user_id, source_message_id)
        logger.warning(f"Released ledger entry for message {source_message_id} of user {user_id}")

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.purge_ledger(now or utcnow())
