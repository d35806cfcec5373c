"""
Notice processing pipeline.

Wires the ledger, extraction, normalization, scoring, deadline tracking and
notification scheduling into the two entry points the service exposes: the
per-message path and the periodic tick.
"""

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional

from src.core import risk_engine
from src.core.deadline_tracker import DeadlineTracker
from src.core.models import (
    InboundMessage,
    Notice,
    NoticeStatus,
    PendingExtraction,
    UserSettings,
    utcnow,
)
from src.notifications.scheduler import NotificationScheduler
from src.processing.document_processor import AttachmentError, DocumentProcessor
from src.processing.fact_normalizer import FactNormalizer, NotIdentified
from src.processing.notice_extractor import (
    ExtractionResponseError,
    FieldGuess,
    NoticeExtractor,
    RawExtraction,
)
from src.storage.base import MetadataStore
from src.storage.ledger import AdmissionResult, DeduplicationLedger
from src.utils.config import PipelineSettings
from src.utils.kafka import KafkaEventLogger
from src.utils.resilience import BreakerRegistry, CollaboratorUnavailable, ResilientCaller

logger = logging.getLogger(__name__)

EXTRACTION_COLLABORATOR = "extraction"
DOCUMENT_TEXT_COLLABORATOR = "document-text"


class InvalidStatusTransition(Exception):
    def __init__(self, notice_id: str, current: NoticeStatus, target: NoticeStatus):
        self.notice_id = notice_id
        self.current = current
        self.target = target
        super().__init__(f"Notice {notice_id} cannot move from {current.value} to {target.value}")


# Allowed user-driven transitions; expiry is driven by the tracker only
ALLOWED_TRANSITIONS = {
    NoticeStatus.ACKNOWLEDGED: {NoticeStatus.PENDING},
    NoticeStatus.COMPLETED: {NoticeStatus.PENDING, NoticeStatus.ACKNOWLEDGED, NoticeStatus.EXPIRED},
}


class MessageSource(ABC):
    """Mailbox boundary: yields messages received after the watermark."""

    @abstractmethod
    def fetch_since(self, user_id: str, watermark: Optional[datetime]) -> Iterable[InboundMessage]: ...


class OutcomeStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    NOT_A_NOTICE = "not_a_notice"
    QUEUED = "queued"


@dataclass
class ProcessingOutcome:
    message_id: str
    status: OutcomeStatus
    notice: Optional[Notice] = None
    detail: str = ""


@dataclass
class TickReport:
    users: int = 0
    ledger_purged: int = 0
    deadlines_expired: int = 0
    risk_changes: int = 0
    pending_retried: int = 0
    notifications_delivered: int = 0
    notifications_failed: int = 0
    # Earliest end of a quiet window holding back deferred digests
    next_dispatch_at: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)

    def defer_until(self, instant: Optional[datetime]) -> None:
        if instant and (self.next_dispatch_at is None or instant < self.next_dispatch_at):
            self.next_dispatch_at = instant


class NoticePipeline:

    def __init__(
        self,
        store: MetadataStore,
        extractor: NoticeExtractor,
        documents: DocumentProcessor,
        scheduler: NotificationScheduler,
        breakers: BreakerRegistry,
        settings: Optional[PipelineSettings] = None,
        events: Optional[KafkaEventLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.extractor = extractor
        self.documents = documents
        self.scheduler = scheduler
        self.breakers = breakers
        self.settings = settings or PipelineSettings()
        self.events = events

        self.ledger = DeduplicationLedger(store, self.settings.ledger.retention_days)
        self.normalizer = FactNormalizer(self.settings.normalizer.default_currency)
        self.tracker = DeadlineTracker(store, self.settings.tracker.reporting_window_days)

        retry = self.settings.retry
        self._extraction = ResilientCaller(
            EXTRACTION_COLLABORATOR,
            breakers.get(EXTRACTION_COLLABORATOR),
            base_interval=retry.base_interval_seconds,
            max_attempts=retry.max_attempts,
            jitter=retry.jitter_seconds,
            attempt_timeout=retry.attempt_timeout_seconds or None,
            sleep=sleep,
            passthrough=(ExtractionResponseError,),
        )
        self._document_text = ResilientCaller(
            DOCUMENT_TEXT_COLLABORATOR,
            breakers.get(DOCUMENT_TEXT_COLLABORATOR),
            base_interval=retry.base_interval_seconds,
            max_attempts=retry.max_attempts,
            jitter=retry.jitter_seconds,
            attempt_timeout=retry.attempt_timeout_seconds or None,
            sleep=sleep,
            passthrough=(AttachmentError,),
        )

    def _publish(self, message: str, data: dict) -> None:
        if self.events:
            self.events.log_event(message, data)

    # Per-message path

    def process_message(
        self, user_id: str, message: InboundMessage, now: Optional[datetime] = None
    ) -> ProcessingOutcome:
        """
        Run one inbound message through the pipeline.

        Args:
            user_id: Owner of the mailbox the message came from
            message: The inbound message
            now: Processing instant, defaults to the current UTC time

        Returns:
            ProcessingOutcome describing what happened to the message
        """
        now = now or utcnow()
        if self.ledger.admit(user_id, message.message_id, now) == AdmissionResult.ALREADY_PROCESSED:
            return ProcessingOutcome(message.message_id, OutcomeStatus.DUPLICATE)
        try:
            return self._process_admitted(user_id, message, now)
        except Exception as e:
            self._park_failed(user_id, message, now, e)
            raise

    def _park_failed(self, user_id: str, message: InboundMessage, now: datetime, error: Exception) -> None:
        """Keep an admitted message recoverable after an unexpected failure."""
        logger.error(f"Processing failed for message {message.message_id} of user {user_id}: {error}")
        try:
            self.store.enqueue_pending(PendingExtraction(
                user_id=user_id, message=message, reason=str(error), queued_at=now, attempts=1,
            ))
        except Exception as e:
            logger.error(f"Could not park message {message.message_id}, releasing its ledger entry: {e}")
            # A redelivery then reprocesses the message instead of reporting a duplicate
            self.ledger.release(user_id, message.message_id)
        else:
            logger.warning(f"Message {message.message_id} parked for retry after failure")

    def _message_text(self, message: InboundMessage) -> str:
        parts = [f"From: {message.sender}", f"Subject: {message.subject}", "", message.body or ""]
        for attachment in message.attachments:
            try:
                text = self._document_text.call(self.documents.attachment_text, attachment)
            except AttachmentError as e:
                logger.warning(f"Skipping unreadable attachment {attachment.filename}: {e}")
                continue
            except CollaboratorUnavailable as e:
                # Degrade to whatever text is already at hand
                logger.warning(f"Attachment {attachment.filename} of message {message.message_id} skipped: {e}")
                continue
            if text:
                parts.extend(["", f"--- Attachment: {attachment.filename} ---", text])
        return "\n".join(parts)

    def _process_admitted(
        self, user_id: str, message: InboundMessage, now: datetime, attempts: int = 0
    ) -> ProcessingOutcome:
        text = self._message_text(message)
        try:
            raw = self._extraction.call(self.extractor.extract, text, message.message_id)
        except ExtractionResponseError as e:
            logger.warning(f"Malformed extraction for message {message.message_id}, degrading: {e}")
            raw = RawExtraction(
                subject=FieldGuess.present(message.subject) if message.subject else FieldGuess.missing()
            )
        except CollaboratorUnavailable as e:
            self.store.enqueue_pending(PendingExtraction(
                user_id=user_id, message=message, reason=str(e), queued_at=now, attempts=attempts + 1,
            ))
            logger.warning(f"Extraction unavailable, message {message.message_id} queued for retry")
            return ProcessingOutcome(message.message_id, OutcomeStatus.QUEUED, detail=str(e))

        result = self.normalizer.normalize(raw, user_id, message.message_id, now)
        if isinstance(result, NotIdentified):
            return ProcessingOutcome(message.message_id, OutcomeStatus.NOT_A_NOTICE, detail=result.reason)

        notice = self._create_notice(result, now)
        return ProcessingOutcome(message.message_id, OutcomeStatus.CREATED, notice=notice)

    def _saved_notice_for(self, user_id: str, source_message_id: str) -> Optional[Notice]:
        for notice in self.store.list_notices(user_id):
            if notice.source_message_id == source_message_id:
                return notice
        return None

    def _create_notice(self, notice: Notice, now: datetime) -> Notice:
        saved = self._saved_notice_for(notice.user_id, notice.source_message_id)
        if saved:
            # An earlier attempt stored the notice but failed before scheduling finished
            logger.info(f"Resuming scheduling for notice {saved.notice_id} of message {saved.source_message_id}")
            self.scheduler.schedule_notice(saved, now)
            self.scheduler.dispatch_due(saved.user_id, now)
            return saved

        today = self.scheduler.local_today(notice.user_id, now)
        self.tracker.initialize(notice, today)
        history = self.store.get_history(notice.user_id, notice.category)
        notice.risk = risk_engine.score(notice, history, today)
        self.store.save_notice(notice)

        logger.info(
            f"Created notice {notice.notice_id} for user {notice.user_id}: {notice.category.value}, "
            f"risk {notice.risk.level.value} ({notice.risk.score})"
        )
        self._publish("Notice created", {
            "user_id": notice.user_id,
            "notice_id": notice.notice_id,
            "category": notice.category.value,
            "risk_level": notice.risk.level.value,
            "needs_manual_review": notice.needs_manual_review,
        })

        self.scheduler.schedule_notice(notice, now)
        self.scheduler.dispatch_due(notice.user_id, now)
        return notice

    def poll_user(
        self, user_id: str, source: MessageSource, now: Optional[datetime] = None
    ) -> List[ProcessingOutcome]:
        """Fetch new messages since the user's watermark and process them in order."""
        now = now or utcnow()
        watermark = self.store.get_watermark(user_id)
        messages = sorted(
            source.fetch_since(user_id, watermark),
            key=lambda m: m.received_at or now,
        )

        outcomes = []
        for message in messages:
            outcomes.append(self.process_message(user_id, message, now))
            if message.received_at and (watermark is None or message.received_at > watermark):
                watermark = message.received_at
                self.store.set_watermark(user_id, watermark)

        logger.info(f"Polled {len(messages)} messages for user {user_id}")
        return outcomes

    def retry_pending(self, user_id: str, now: Optional[datetime] = None) -> List[ProcessingOutcome]:
        """Re-run extraction for messages parked during an outage."""
        now = now or utcnow()
        outcomes = []
        for pending in self.store.list_pending(user_id):
            # A re-queued message overwrites its own entry with a bumped attempt count
            outcome = self._process_admitted(user_id, pending.message, now, attempts=pending.attempts)
            outcomes.append(outcome)
            if outcome.status == OutcomeStatus.QUEUED:
                # Still down; stop hammering the extraction service this tick
                break
            self.store.remove_pending(user_id, pending.message.message_id)
        return outcomes

    # Periodic tick

    def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Periodic maintenance across all users: ledger GC, deadline recompute
        and re-scoring, queued extraction retry and notification dispatch.
        Users are processed independently; one user's failure is isolated.
        """
        now = now or utcnow()
        report = TickReport()
        report.ledger_purged = self.ledger.purge_expired(now)

        user_ids = self.store.list_user_ids()
        report.users = len(user_ids)
        if not user_ids:
            return report

        with ThreadPoolExecutor(max_workers=self.settings.tick_max_workers) as executor:
            futures = {executor.submit(self._tick_user, user_id, now): user_id for user_id in user_ids}
            for future in as_completed(futures):
                user_id = futures[future]
                try:
                    user_report = future.result()
                except Exception as e:
                    logger.error(f"Tick failed for user {user_id}: {e}", exc_info=True)
                    report.errors.append(f"{user_id}: {e}")
                    continue
                report.deadlines_expired += user_report.deadlines_expired
                report.risk_changes += user_report.risk_changes
                report.pending_retried += user_report.pending_retried
                report.notifications_delivered += user_report.notifications_delivered
                report.notifications_failed += user_report.notifications_failed
                report.defer_until(user_report.next_dispatch_at)

        logger.info(
            f"Tick complete: {report.users} users, {report.deadlines_expired} deadlines expired, "
            f"{report.risk_changes} risk changes, {report.notifications_delivered} notifications delivered"
        )
        if report.next_dispatch_at:
            logger.info(f"Deferred notifications due for dispatch at {report.next_dispatch_at}")
        return report

    def _tick_user(self, user_id: str, now: datetime) -> TickReport:
        report = TickReport(users=1)
        today = self.scheduler.local_today(user_id, now)

        tracker_report = self.tracker.tick(user_id, today, now)
        report.deadlines_expired = tracker_report.deadlines_expired
        report.risk_changes = len(tracker_report.risk_changes)
        for change in tracker_report.risk_changes:
            self.scheduler.on_risk_change(change, now)

        for notice in self.store.list_notices(user_id):
            if notice.status == NoticeStatus.EXPIRED:
                self.scheduler.cancel_for_notice(notice)

        report.pending_retried = len(self.retry_pending(user_id, now))

        dispatch = self.scheduler.dispatch_due(user_id, now)
        report.notifications_delivered = dispatch.delivered
        report.notifications_failed = dispatch.failed
        report.defer_until(dispatch.deferred_until)
        return report

    # User actions

    def _transition(
        self, user_id: str, notice_id: str, target: NoticeStatus, now: Optional[datetime]
    ) -> Notice:
        notice = self.store.require_notice(user_id, notice_id)
        if notice.status == target:
            return notice
        if notice.status not in ALLOWED_TRANSITIONS[target]:
            raise InvalidStatusTransition(notice_id, notice.status, target)
        notice.status = target
        notice.touch(now)
        self.store.save_notice(notice)
        logger.info(f"Notice {notice_id} for user {user_id} marked {target.value}")
        return notice

    def acknowledge(self, user_id: str, notice_id: str, now: Optional[datetime] = None) -> Notice:
        """Acknowledged notices keep their reminders but no longer count as misses."""
        return self._transition(user_id, notice_id, NoticeStatus.ACKNOWLEDGED, now or utcnow())

    def complete(self, user_id: str, notice_id: str, now: Optional[datetime] = None) -> Notice:
        notice = self._transition(user_id, notice_id, NoticeStatus.COMPLETED, now or utcnow())
        self.scheduler.cancel_for_notice(notice)
        return notice

    def update_settings(self, settings: UserSettings) -> UserSettings:
        self.store.save_user_settings(settings)
        logger.info(f"Updated notification settings for user {settings.user_id}")
        return settings
