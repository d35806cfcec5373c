"""
Deadline Tracker.

Recomputes days remaining for every open deadline, drives the one-way
Active -> Expired transition, maintains per-category compliance history, and
re-scores notices so risk level stays a derived property.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional

from src.core import risk_engine
from src.core.models import (
    Category,
    Notice,
    NoticeStatus,
    RiskLevel,
    utcnow,
)
from src.storage.base import MetadataStore

logger = logging.getLogger(__name__)


@dataclass
class RiskChange:
    notice: Notice
    previous_level: RiskLevel
    new_level: RiskLevel

    @property
    def escalated(self) -> bool:
        return self.new_level.rank > self.previous_level.rank


@dataclass
class TrackerReport:
    user_id: str
    notices_checked: int = 0
    deadlines_expired: int = 0
    misses_recorded: int = 0
    risk_changes: List[RiskChange] = field(default_factory=list)
    errors: int = 0


class DeadlineTracker:

    def __init__(self, store: MetadataStore, reporting_window_days: int = 365):
        self.store = store
        self.reporting_window = timedelta(days=reporting_window_days)

    def initialize(self, notice: Notice, today: date) -> Notice:
        """
        Initial deadline state for a new notice. Deadlines already past start
        expired without touching history: the miss predates tracking.
        """
        for deadline in notice.deadlines:
            deadline.days_remaining = deadline.compute_days_remaining(today)
            if deadline.days_remaining < 0:
                deadline.mark_expired()
        return notice

    def tick(self, user_id: str, today: date, now: Optional[datetime] = None) -> TrackerReport:
        """
        Advance every non-completed notice of one user to `today`.

        Every expiry and history update for the user lands before any notice
        is re-scored, so notices sharing a category see the same history.
        A failure on one notice is logged and does not stop the others.
        """
        now = now or utcnow()
        report = TrackerReport(user_id=user_id)

        advanced = []
        for notice in self.store.list_notices(user_id):
            if notice.status == NoticeStatus.COMPLETED:
                continue
            report.notices_checked += 1
            try:
                self._advance_deadlines(notice, today, now, report)
            except Exception as e:
                self._log_failure(notice, report, e)
                continue
            advanced.append(notice)

        for notice in advanced:
            try:
                change = self._rescore(notice, today, now)
            except Exception as e:
                self._log_failure(notice, report, e)
                continue
            if change:
                report.risk_changes.append(change)

        logger.info(
            f"Deadline tick for user {user_id}: {report.notices_checked} notices, "
            f"{report.deadlines_expired} expired, {len(report.risk_changes)} risk changes"
        )
        return report

    def _log_failure(self, notice: Notice, report: TrackerReport, error: Exception) -> None:
        report.errors += 1
        logger.error(
            f"Deadline tick failed for notice {notice.notice_id} (user {notice.user_id}): {error}",
            exc_info=True,
        )

    def _advance_deadlines(self, notice: Notice, today: date, now: datetime, report: TrackerReport) -> None:
        mutated = False
        newly_expired = 0

        for deadline in notice.deadlines:
            if deadline.expired:
                continue
            remaining = deadline.compute_days_remaining(today)
            if remaining != deadline.days_remaining:
                deadline.days_remaining = remaining
                mutated = True
            if remaining < 0 and deadline.mark_expired():
                newly_expired += 1
                mutated = True

        if newly_expired:
            report.deadlines_expired += newly_expired
            if notice.status not in (NoticeStatus.ACKNOWLEDGED, NoticeStatus.COMPLETED):
                for _ in range(newly_expired):
                    self._record_miss(notice.user_id, notice.category, today)
                    report.misses_recorded += 1

        if notice.is_open and notice.deadlines and all(d.expired for d in notice.deadlines):
            notice.status = NoticeStatus.EXPIRED
            mutated = True
            logger.info(f"Notice {notice.notice_id} expired: all deadlines have passed")

        if mutated:
            notice.touch(now)
            self.store.save_notice(notice)

    def _rescore(self, notice: Notice, today: date, now: datetime) -> Optional[RiskChange]:
        history = self.store.get_history(notice.user_id, notice.category)
        assessment = risk_engine.score(notice, history, today)
        previous_level = notice.risk.level

        if assessment.to_dict() == notice.risk.to_dict():
            return None

        notice.risk = assessment
        notice.touch(now)
        self.store.save_notice(notice)

        if assessment.level == previous_level:
            return None
        logger.info(
            f"Risk level for notice {notice.notice_id} changed {previous_level.value} -> "
            f"{assessment.level.value} (score {assessment.score})"
        )
        return RiskChange(notice=notice, previous_level=previous_level, new_level=assessment.level)

    def _record_miss(self, user_id: str, category: Category, today: date) -> None:
        history = self.store.get_history(user_id, category)
        in_window = (
            history.last_missed_on is not None
            and today - history.last_missed_on <= self.reporting_window
        )
        # A miss inside the window is a repeat; a miss after a clean window starts afresh
        history.repeat_violation = in_window
        history.missed_deadlines_count += 1
        history.last_missed_on = today
        self.store.save_history(history)
        logger.warning(
            f"Missed {category.value} deadline for user {user_id} "
            f"(total {history.missed_deadlines_count}, repeat={history.repeat_violation})"
        )
