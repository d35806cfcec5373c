"""
Domain models for the Compliance Notice Tracking System.
Notices, deadlines, compliance history, notification events and per-user settings.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Category(str, Enum):
    TAX = "Tax"
    LABOR = "Labor"
    ENVIRONMENTAL = "Environmental"
    CORPORATE = "Corporate"
    TRADE = "Trade"
    OTHER = "Other"


class DeadlineKind(str, Enum):
    FILING = "filing"
    PAYMENT = "payment"
    SUBMISSION = "submission"
    RESPONSE = "response"


class RiskLevel(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def rank(self) -> int:
        """Severity rank, higher is more urgent."""
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class NoticeStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    COMPLETED = "completed"
    EXPIRED = "expired"


class TriggerReason(str, Enum):
    NEW_NOTICE = "new-notice"
    SCHEDULED_REMINDER = "scheduled-reminder"
    RISK_ESCALATION = "risk-escalation"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_instant(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Deadline:
    """One date obligation within a notice."""
    date: date
    kind: DeadlineKind = DeadlineKind.RESPONSE
    description: str = ""
    days_remaining: Optional[int] = None
    expired: bool = False

    def compute_days_remaining(self, today: date) -> int:
        return (self.date - today).days

    def mark_expired(self) -> bool:
        """Flip to expired. Returns True only on the first transition."""
        if self.expired:
            return False
        self.expired = True
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "kind": self.kind.value,
            "description": self.description,
            "days_remaining": self.days_remaining,
            "expired": self.expired,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Deadline":
        return cls(
            date=date.fromisoformat(data["date"]),
            kind=DeadlineKind(data.get("kind", DeadlineKind.RESPONSE.value)),
            description=data.get("description", ""),
            days_remaining=data.get("days_remaining"),
            expired=bool(data.get("expired", False)),
        )


@dataclass
class Penalty:
    """Penalty clause. `amount` stays None when the text was ambiguous."""
    amount: Optional[float] = None
    currency: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "currency": self.currency, "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Penalty":
        return cls(
            amount=data.get("amount"),
            currency=data.get("currency"),
            description=data.get("description", ""),
        )


@dataclass
class RiskAssessment:
    level: RiskLevel = RiskLevel.LOW
    score: float = 0.0
    factors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level.value, "score": self.score, "factors": sorted(self.factors)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskAssessment":
        return cls(
            level=RiskLevel(data.get("level", RiskLevel.LOW.value)),
            score=float(data.get("score", 0.0)),
            factors=list(data.get("factors", [])),
        )


@dataclass
class Notice:
    """One normalized compliance communication derived from a message."""
    user_id: str
    source_message_id: str
    category: Category = Category.OTHER
    issuing_authority: str = ""
    reference_number: str = ""
    subject: str = ""
    deadlines: List[Deadline] = field(default_factory=list)
    penalty: Optional[Penalty] = None
    required_actions: List[str] = field(default_factory=list)
    needs_manual_review: bool = False
    risk: RiskAssessment = field(default_factory=RiskAssessment)
    status: NoticeStatus = NoticeStatus.PENDING
    notice_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    def active_deadlines(self) -> List[Deadline]:
        return [d for d in self.deadlines if not d.expired]

    def nearest_deadline(self, today: date) -> Optional[Deadline]:
        """Soonest deadline that is neither expired nor already past."""
        upcoming = [d for d in self.deadlines if not d.expired and d.date >= today]
        return min(upcoming, key=lambda d: d.date) if upcoming else None

    @property
    def is_open(self) -> bool:
        return self.status in (NoticeStatus.PENDING, NoticeStatus.ACKNOWLEDGED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notice_id": self.notice_id,
            "user_id": self.user_id,
            "source_message_id": self.source_message_id,
            "category": self.category.value,
            "issuing_authority": self.issuing_authority,
            "reference_number": self.reference_number,
            "subject": self.subject,
            "deadlines": [d.to_dict() for d in self.deadlines],
            "penalty": self.penalty.to_dict() if self.penalty else None,
            "required_actions": list(self.required_actions),
            "needs_manual_review": self.needs_manual_review,
            "risk": self.risk.to_dict(),
            "status": self.status.value,
            "created_at": _format_instant(self.created_at),
            "updated_at": _format_instant(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notice":
        penalty = data.get("penalty")
        return cls(
            notice_id=data["notice_id"],
            user_id=data["user_id"],
            source_message_id=data["source_message_id"],
            category=Category(data.get("category", Category.OTHER.value)),
            issuing_authority=data.get("issuing_authority", ""),
            reference_number=data.get("reference_number", ""),
            subject=data.get("subject", ""),
            deadlines=[Deadline.from_dict(d) for d in data.get("deadlines", [])],
            penalty=Penalty.from_dict(penalty) if penalty else None,
            required_actions=list(data.get("required_actions", [])),
            needs_manual_review=bool(data.get("needs_manual_review", False)),
            risk=RiskAssessment.from_dict(data.get("risk", {})),
            status=NoticeStatus(data.get("status", NoticeStatus.PENDING.value)),
            created_at=_parse_instant(data.get("created_at")) or utcnow(),
            updated_at=_parse_instant(data.get("updated_at")) or utcnow(),
        )


@dataclass
class ComplianceHistory:
    """Per user, per category aggregate fed into the risk engine."""
    user_id: str
    category: Category
    missed_deadlines_count: int = 0
    repeat_violation: bool = False
    last_missed_on: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "category": self.category.value,
            "missed_deadlines_count": self.missed_deadlines_count,
            "repeat_violation": self.repeat_violation,
            "last_missed_on": self.last_missed_on.isoformat() if self.last_missed_on else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComplianceHistory":
        last = data.get("last_missed_on")
        return cls(
            user_id=data["user_id"],
            category=Category(data["category"]),
            missed_deadlines_count=int(data.get("missed_deadlines_count", 0)),
            repeat_violation=bool(data.get("repeat_violation", False)),
            last_missed_on=date.fromisoformat(last) if last else None,
        )


@dataclass
class NotificationEvent:
    """One planned or sent reminder for a notice."""
    notice_id: str
    user_id: str
    trigger_reason: TriggerReason
    scheduled_for: datetime
    channel_attempted: List[str] = field(default_factory=list)
    delivered: bool = False
    attempts: int = 0
    delivered_at: Optional[datetime] = None
    cancelled: bool = False
    claimed_until: Optional[datetime] = None

    @property
    def key(self) -> str:
        """Idempotency key: (notice_id, trigger_reason, scheduled_for)."""
        return f"{self.notice_id}|{self.trigger_reason.value}|{self.scheduled_for.isoformat()}"

    @property
    def is_pending(self) -> bool:
        return not self.delivered and not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notice_id": self.notice_id,
            "user_id": self.user_id,
            "trigger_reason": self.trigger_reason.value,
            "scheduled_for": _format_instant(self.scheduled_for),
            "channel_attempted": list(self.channel_attempted),
            "delivered": self.delivered,
            "attempts": self.attempts,
            "delivered_at": _format_instant(self.delivered_at),
            "cancelled": self.cancelled,
            "claimed_until": _format_instant(self.claimed_until),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationEvent":
        return cls(
            notice_id=data["notice_id"],
            user_id=data["user_id"],
            trigger_reason=TriggerReason(data["trigger_reason"]),
            scheduled_for=_parse_instant(data["scheduled_for"]),
            channel_attempted=list(data.get("channel_attempted", [])),
            delivered=bool(data.get("delivered", False)),
            attempts=int(data.get("attempts", 0)),
            delivered_at=_parse_instant(data.get("delivered_at")),
            cancelled=bool(data.get("cancelled", False)),
            claimed_until=_parse_instant(data.get("claimed_until")),
        )


@dataclass
class ChannelTarget:
    channel: str
    destination: str

    def to_dict(self) -> Dict[str, Any]:
        return {"channel": self.channel, "destination": self.destination}


@dataclass
class QuietHours:
    """Local-time window; may wrap past midnight (e.g. 22:00-07:00)."""
    start: time
    end: time

    def contains(self, local_time: time) -> bool:
        if self.start == self.end:
            return False
        if self.start < self.end:
            return self.start <= local_time < self.end
        return local_time >= self.start or local_time < self.end


@dataclass
class UserSettings:
    user_id: str
    channels: List[ChannelTarget] = field(default_factory=list)
    quiet_hours: Optional[QuietHours] = None
    timezone: str = "UTC"
    reminder_hour: int = 9

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "channels": [c.to_dict() for c in self.channels],
            "quiet_hours": {
                "start": self.quiet_hours.start.strftime("%H:%M"),
                "end": self.quiet_hours.end.strftime("%H:%M"),
            } if self.quiet_hours else None,
            "timezone": self.timezone,
            "reminder_hour": self.reminder_hour,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserSettings":
        quiet = data.get("quiet_hours")
        return cls(
            user_id=data["user_id"],
            channels=[ChannelTarget(c["channel"], c["destination"]) for c in data.get("channels", [])],
            quiet_hours=QuietHours(
                start=time.fromisoformat(quiet["start"]),
                end=time.fromisoformat(quiet["end"]),
            ) if quiet else None,
            timezone=data.get("timezone", "UTC"),
            reminder_hour=int(data.get("reminder_hour", 9)),
        )


@dataclass
class DispatchState:
    """Per-user batching watermarks for Medium and Low digests."""
    user_id: str
    last_medium_flush: Optional[datetime] = None
    last_low_flush: Optional[datetime] = None
    # Earliest instant at which deferred digests may go out
    deferred_until: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "last_medium_flush": _format_instant(self.last_medium_flush),
            "last_low_flush": _format_instant(self.last_low_flush),
            "deferred_until": _format_instant(self.deferred_until),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispatchState":
        return cls(
            user_id=data["user_id"],
            last_medium_flush=_parse_instant(data.get("last_medium_flush")),
            last_low_flush=_parse_instant(data.get("last_low_flush")),
            deferred_until=_parse_instant(data.get("deferred_until")),
        )


@dataclass
class Attachment:
    filename: str
    content: Optional[bytes] = None
    s3_url: Optional[str] = None


@dataclass
class InboundMessage:
    """Raw message record handed over by the message source."""
    message_id: str
    sender: str = ""
    subject: str = ""
    body: str = ""
    received_at: Optional[datetime] = None
    attachments: List[Attachment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        # Inline attachment bytes are not persisted; only S3 references survive.
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "subject": self.subject,
            "body": self.body,
            "received_at": _format_instant(self.received_at),
            "attachments": [
                {"filename": a.filename, "s3_url": a.s3_url}
                for a in self.attachments if a.s3_url
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboundMessage":
        return cls(
            message_id=data["message_id"],
            sender=data.get("sender", ""),
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            received_at=_parse_instant(data.get("received_at")),
            attachments=[
                Attachment(filename=a["filename"], s3_url=a.get("s3_url"))
                for a in data.get("attachments", [])
            ],
        )


@dataclass
class PendingExtraction:
    """A message parked because extraction could not run; retried on the next tick."""
    user_id: str
    message: InboundMessage
    reason: str = ""
    queued_at: datetime = field(default_factory=utcnow)
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "message": self.message.to_dict(),
            "reason": self.reason,
            "queued_at": _format_instant(self.queued_at),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingExtraction":
        return cls(
            user_id=data["user_id"],
            message=InboundMessage.from_dict(data["message"]),
            reason=data.get("reason", ""),
            queued_at=_parse_instant(data.get("queued_at")) or utcnow(),
            attempts=int(data.get("attempts", 0)),
        )
