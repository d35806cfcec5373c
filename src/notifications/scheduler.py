"""
Notification Scheduler.

Plans reminder events from a notice's risk level and dispatches the ones that
are due. Critical and High events go out immediately; Medium and Low events
are batched into per-user digests and held back during quiet hours. Every
send walks the user's channels in priority order, moving on only once a
channel's retry budget is spent.
"""

import logging
import time as time_module
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.models import (
    ChannelTarget,
    Notice,
    NotificationEvent,
    RiskLevel,
    TriggerReason,
    UserSettings,
)
from src.core.deadline_tracker import RiskChange
from src.notifications.channels import ChannelSender, NoticeSummary, NotificationPayload
from src.storage.base import MetadataStore
from src.utils.config import RetrySettings, SchedulerSettings
from src.utils.kafka import KafkaEventLogger
from src.utils.resilience import BreakerRegistry, CollaboratorUnavailable, ResilientCaller

logger = logging.getLogger(__name__)

# Days before the nearest deadline at which reminders fire
REMINDER_OFFSETS = {
    RiskLevel.CRITICAL: [1],
    RiskLevel.HIGH: [7, 1],
    RiskLevel.MEDIUM: [14, 3],
    RiskLevel.LOW: [30],
}

# Levels that bypass batching and quiet hours
IMMEDIATE_LEVELS = {RiskLevel.CRITICAL, RiskLevel.HIGH}


class DeliveryStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    EXHAUSTED = "exhausted"


@dataclass
class DeliveryAttempt:
    """
    Channel fallback state machine: the index of the channel being tried and
    the number of bounded attempts made so far. DELIVERED and EXHAUSTED are
    terminal.
    """
    channels: List[ChannelTarget]
    index: int = 0
    attempts: int = 0
    status: DeliveryStatus = DeliveryStatus.IN_PROGRESS
    attempted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.channels:
            self.status = DeliveryStatus.EXHAUSTED
            self.errors.append("no channels configured")

    @property
    def current(self) -> Optional[ChannelTarget]:
        if self.status != DeliveryStatus.IN_PROGRESS:
            return None
        return self.channels[self.index]

    def record_success(self) -> None:
        self.attempts += 1
        self.attempted.append(self.channels[self.index].channel)
        self.status = DeliveryStatus.DELIVERED

    def record_failure(self, error: str) -> None:
        self.attempts += 1
        self.attempted.append(self.channels[self.index].channel)
        self.errors.append(error)
        self.index += 1
        if self.index >= len(self.channels):
            self.status = DeliveryStatus.EXHAUSTED


@dataclass
class DispatchReport:
    user_id: str
    delivered: int = 0
    failed: int = 0
    deferred: int = 0
    deferred_until: Optional[datetime] = None
    cancelled: int = 0


def _tz(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', falling back to UTC")
        return ZoneInfo("UTC")


class NotificationScheduler:

    def __init__(
        self,
        store: MetadataStore,
        senders: Dict[str, ChannelSender],
        breakers: BreakerRegistry,
        settings: Optional[SchedulerSettings] = None,
        retry: Optional[RetrySettings] = None,
        alerts: Optional[KafkaEventLogger] = None,
        sleep: Callable[[float], None] = time_module.sleep,
    ):
        self.store = store
        self.senders = senders
        self.breakers = breakers
        self.settings = settings or SchedulerSettings()
        self.retry = retry or RetrySettings()
        self.alerts = alerts
        self._sleep = sleep
        self._callers: Dict[str, ResilientCaller] = {}

    def _caller_for(self, channel: str) -> ResilientCaller:
        caller = self._callers.get(channel)
        if caller is None:
            name = f"channel:{channel}"
            caller = ResilientCaller(
                name,
                self.breakers.get(name),
                base_interval=self.retry.base_interval_seconds,
                max_attempts=self.retry.max_attempts,
                jitter=self.retry.jitter_seconds,
                attempt_timeout=self.retry.attempt_timeout_seconds or None,
                sleep=self._sleep,
            )
            self._callers[channel] = caller
        return caller

    def user_settings(self, user_id: str) -> UserSettings:
        stored = self.store.get_user_settings(user_id)
        if stored:
            return stored
        return UserSettings(
            user_id=user_id,
            channels=[ChannelTarget(c["channel"], c["destination"]) for c in self.settings.default_channels],
            timezone=self.settings.default_timezone,
            reminder_hour=self.settings.default_reminder_hour,
        )

    def local_today(self, user_id: str, now: datetime) -> date:
        """The calendar date at `now` in the user's timezone."""
        return now.astimezone(_tz(self.user_settings(user_id).timezone)).date()

    # Planning

    def plan_events(
        self,
        notice: Notice,
        settings: UserSettings,
        now: datetime,
        include_new_notice: bool = False,
    ) -> List[NotificationEvent]:
        """Events implied by the notice's current risk level."""
        level = notice.risk.level
        events = []

        def event(reason: TriggerReason, at: datetime) -> NotificationEvent:
            return NotificationEvent(
                notice_id=notice.notice_id,
                user_id=notice.user_id,
                trigger_reason=reason,
                scheduled_for=at,
            )

        if include_new_notice and level == RiskLevel.CRITICAL:
            # Keyed on creation so resuming an interrupted schedule adds no second alert
            events.append(event(TriggerReason.NEW_NOTICE, min(notice.created_at, now)))

        tz = _tz(settings.timezone)
        nearest = notice.nearest_deadline(now.astimezone(tz).date())
        if nearest is None:
            return events

        past_reminders = []
        for days_before in REMINDER_OFFSETS[level]:
            remind_on = nearest.date - timedelta(days=days_before)
            at = datetime.combine(remind_on, time(hour=settings.reminder_hour), tzinfo=tz)
            at = at.astimezone(timezone.utc)
            if at > now:
                events.append(event(TriggerReason.SCHEDULED_REMINDER, at))
            else:
                past_reminders.append(at)

        # Reminder slots already behind us collapse into one catch-up, keyed on
        # the latest missed slot so re-planning stays idempotent
        if past_reminders:
            events.append(event(TriggerReason.SCHEDULED_REMINDER, max(past_reminders)))
        return events

    def _apply_plan(self, notice: Notice, planned: List[NotificationEvent]) -> int:
        existing = {e.key: e for e in self.store.list_events_for_notice(notice.user_id, notice.notice_id)}
        planned_keys = {e.key for e in planned}

        for stale in existing.values():
            if (
                stale.trigger_reason == TriggerReason.SCHEDULED_REMINDER
                and stale.is_pending
                and stale.key not in planned_keys
            ):
                stale.cancelled = True
                self.store.save_event(stale)

        added = 0
        for event in planned:
            current = existing.get(event.key)
            if current is None:
                if self.store.add_event(event):
                    added += 1
            elif current.cancelled and not current.delivered:
                current.cancelled = False
                self.store.save_event(current)
                added += 1
        return added

    def schedule_notice(self, notice: Notice, now: datetime) -> int:
        """Plan the queue for a newly created notice. Returns events added."""
        if not notice.is_open:
            return 0
        settings = self.user_settings(notice.user_id)
        planned = self.plan_events(notice, settings, now, include_new_notice=True)
        added = self._apply_plan(notice, planned)
        logger.info(f"Scheduled {added} notifications for notice {notice.notice_id} ({notice.risk.level.value})")
        return added

    def on_risk_change(self, change: RiskChange, now: datetime) -> int:
        """Re-plan after the tracker reports a level change."""
        notice = change.notice
        if not notice.is_open:
            return self.cancel_for_notice(notice)

        settings = self.user_settings(notice.user_id)
        planned = self.plan_events(notice, settings, now)
        if change.escalated:
            # The escalation alert stands in for any catch-up reminder
            planned = [e for e in planned if e.scheduled_for > now]
            planned.append(NotificationEvent(
                notice_id=notice.notice_id,
                user_id=notice.user_id,
                trigger_reason=TriggerReason.RISK_ESCALATION,
                scheduled_for=now,
            ))
        added = self._apply_plan(notice, planned)
        logger.info(
            f"Re-planned notice {notice.notice_id} after {change.previous_level.value} -> "
            f"{change.new_level.value}: {added} events added"
        )
        return added

    def cancel_for_notice(self, notice: Notice) -> int:
        cancelled = 0
        for event in self.store.list_events_for_notice(notice.user_id, notice.notice_id):
            if event.is_pending:
                event.cancelled = True
                self.store.save_event(event)
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending notifications for notice {notice.notice_id}")
        return cancelled

    # Dispatch

    def quiet_window_end(self, settings: UserSettings, now: datetime) -> Optional[datetime]:
        """End of the quiet window containing `now`, or None when outside quiet hours."""
        if not settings.quiet_hours:
            return None
        tz = _tz(settings.timezone)
        local_now = now.astimezone(tz)
        if not settings.quiet_hours.contains(local_now.time()):
            return None
        end = datetime.combine(local_now.date(), settings.quiet_hours.end, tzinfo=tz)
        if end <= local_now:
            end += timedelta(days=1)
        return end.astimezone(timezone.utc)

    def dispatch_due(self, user_id: str, now: datetime) -> DispatchReport:
        """
        Send every due event for one user. Safe to invoke redundantly: delivered
        or claimed events are skipped.
        """
        report = DispatchReport(user_id=user_id)
        due = sorted(
            (e for e in self.store.list_events(user_id) if e.scheduled_for <= now),
            key=lambda e: e.scheduled_for,
        )
        if not due:
            return report

        settings = self.user_settings(user_id)
        notices: Dict[str, Optional[Notice]] = {}
        immediate, medium, low = [], [], []

        for event in due:
            if event.notice_id not in notices:
                notices[event.notice_id] = self.store.get_notice(user_id, event.notice_id)
            notice = notices[event.notice_id]
            if notice is None or not notice.is_open:
                event.cancelled = True
                self.store.save_event(event)
                report.cancelled += 1
                continue
            level = notice.risk.level
            if level in IMMEDIATE_LEVELS:
                immediate.append(event)
            elif level == RiskLevel.MEDIUM:
                medium.append(event)
            else:
                low.append(event)

        for event in immediate:
            self._deliver([event], notices, settings, now, report)

        if not (medium or low):
            return report

        state = self.store.get_dispatch_state(user_id)
        quiet_end = self.quiet_window_end(settings, now)
        if quiet_end:
            report.deferred += len(medium) + len(low)
            report.deferred_until = quiet_end
            state.deferred_until = quiet_end
            self.store.save_dispatch_state(state)
            logger.info(
                f"Quiet hours for user {user_id}: deferring {report.deferred} notifications until {quiet_end}"
            )
            return report

        state.deferred_until = None
        medium_window = timedelta(hours=self.settings.medium_flush_hours)
        low_window = timedelta(days=self.settings.low_flush_days)

        if medium:
            if state.last_medium_flush is None or now - state.last_medium_flush >= medium_window:
                batch = self._select_batch(medium, self.settings.medium_flush_cap)
                if self._deliver(batch, notices, settings, now, report):
                    state.last_medium_flush = now
                report.deferred += len(medium) - len(batch)
            else:
                report.deferred += len(medium)

        if low:
            if state.last_low_flush is None or now - state.last_low_flush >= low_window:
                batch = self._select_batch(low, self.settings.low_flush_cap)
                if self._deliver(batch, notices, settings, now, report):
                    state.last_low_flush = now
                report.deferred += len(low) - len(batch)
            else:
                report.deferred += len(low)

        self.store.save_dispatch_state(state)
        return report

    def _select_batch(self, events: List[NotificationEvent], cap: int) -> List[NotificationEvent]:
        """All due events of the first `cap` distinct notices, oldest first."""
        chosen_notices = []
        batch = []
        for event in events:
            if event.notice_id not in chosen_notices:
                if len(chosen_notices) >= cap:
                    continue
                chosen_notices.append(event.notice_id)
            batch.append(event)
        return batch

    def _build_payload(
        self, settings: UserSettings, events: List[NotificationEvent], notices: Dict[str, Optional[Notice]], now: datetime
    ) -> NotificationPayload:
        summaries = []
        seen = set()
        for event in events:
            if event.notice_id in seen:
                continue
            seen.add(event.notice_id)
            notice = notices[event.notice_id]
            nearest = notice.nearest_deadline(now.astimezone(_tz(settings.timezone)).date())
            summaries.append(NoticeSummary(
                notice_id=notice.notice_id,
                compliance_type=notice.category.value,
                risk_level=notice.risk.level.value,
                deadline_date=nearest.date.isoformat() if nearest else None,
                required_actions=list(notice.required_actions),
                subject=notice.subject,
                reference_number=notice.reference_number,
            ))
        return NotificationPayload(
            user_id=settings.user_id,
            trigger_reason=events[0].trigger_reason.value,
            notices=summaries,
        )

    def _deliver(
        self,
        events: List[NotificationEvent],
        notices: Dict[str, Optional[Notice]],
        settings: UserSettings,
        now: datetime,
        report: DispatchReport,
    ) -> bool:
        lease_until = now + timedelta(seconds=self.settings.claim_lease_seconds)
        claimed = [e for e in events if self.store.claim_event(e, now, lease_until)]
        if not claimed:
            return False

        payload = self._build_payload(settings, claimed, notices, now)
        attempt = DeliveryAttempt(channels=list(settings.channels))

        while attempt.status == DeliveryStatus.IN_PROGRESS:
            target = attempt.current
            sender = self.senders.get(target.channel)
            if sender is None:
                attempt.record_failure(f"no sender for channel '{target.channel}'")
                continue
            try:
                self._caller_for(target.channel).call(sender.send, payload, target.destination)
            except CollaboratorUnavailable as e:
                logger.warning(f"Channel '{target.channel}' failed for user {settings.user_id}: {e}")
                attempt.record_failure(str(e))
            else:
                attempt.record_success()

        delivered = attempt.status == DeliveryStatus.DELIVERED
        for event in claimed:
            event.channel_attempted.extend(attempt.attempted)
            event.attempts += attempt.attempts
            event.claimed_until = None
            if delivered:
                event.delivered = True
                event.delivered_at = now
            self.store.save_event(event)

        if delivered:
            report.delivered += len(claimed)
            logger.info(
                f"Delivered {len(claimed)} notifications to user {settings.user_id} "
                f"via {attempt.attempted[-1]}"
            )
        else:
            report.failed += len(claimed)
            message = (
                f"All channels exhausted for user {settings.user_id}; "
                f"{len(claimed)} notifications stay queued"
            )
            if self.alerts:
                self.alerts.log_alert(message, {"errors": attempt.errors, "user_id": settings.user_id})
            else:
                logger.error(message)
        return delivered
