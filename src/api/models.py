"""
Pydantic Models for the Compliance Notice Tracking API.
Defines request and response schemas.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from src.core.models import (
    Attachment,
    ChannelTarget,
    InboundMessage,
    Notice,
    QuietHours,
    UserSettings,
)
from src.processing.pipeline import ProcessingOutcome, TickReport


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field("healthy", description="Service status")
    version: str = Field(..., description="API version")
    timestamp: str = Field(..., description="Current timestamp")
    breakers: dict = Field(default={}, description="Circuit breaker state per collaborator")


class AttachmentModel(BaseModel):
    filename: str = Field(..., description="Attachment file name")
    s3_url: Optional[str] = Field(None, description="S3 URL of the attachment")
    text: Optional[str] = Field(None, description="Inline plain-text content")


class MessageRequest(BaseModel):
    """Inbound message handed over by the mailbox integration."""
    user_id: str = Field(..., description="Owner of the mailbox")
    message_id: str = Field(..., description="Provider message id, used for deduplication")
    sender: str = Field("", description="Sender address")
    subject: str = Field("", description="Message subject")
    body: str = Field("", description="Plain-text body")
    received_at: Optional[datetime] = Field(None, description="When the provider received the message")
    attachments: List[AttachmentModel] = Field(default=[], description="Attachments")

    def to_message(self) -> InboundMessage:
        return InboundMessage(
            message_id=self.message_id,
            sender=self.sender,
            subject=self.subject,
            body=self.body,
            received_at=self.received_at,
            attachments=[
                Attachment(
                    filename=a.filename,
                    content=a.text.encode("utf-8") if a.text is not None else None,
                    s3_url=a.s3_url,
                )
                for a in self.attachments
            ],
        )


class NoticeResponse(BaseModel):
    notice_id: str
    user_id: str
    source_message_id: str
    category: str
    issuing_authority: str
    reference_number: str
    subject: str
    deadlines: List[dict]
    penalty: Optional[dict] = None
    required_actions: List[str]
    needs_manual_review: bool
    risk: dict
    status: str
    created_at: str
    updated_at: str

    @classmethod
    def from_notice(cls, notice: Notice) -> "NoticeResponse":
        return cls(**notice.to_dict())


class ProcessingResponse(BaseModel):
    """Result of processing one inbound message."""
    message_id: str
    status: str = Field(..., description="created, duplicate, not_a_notice or queued")
    notice: Optional[NoticeResponse] = None
    detail: str = ""

    @classmethod
    def from_outcome(cls, outcome: ProcessingOutcome) -> "ProcessingResponse":
        return cls(
            message_id=outcome.message_id,
            status=outcome.status.value,
            notice=NoticeResponse.from_notice(outcome.notice) if outcome.notice else None,
            detail=outcome.detail,
        )


class PollResponse(BaseModel):
    user_id: str
    processed: List[ProcessingResponse] = Field(default=[])


class TickResponse(BaseModel):
    users: int
    ledger_purged: int
    deadlines_expired: int
    risk_changes: int
    pending_retried: int
    notifications_delivered: int
    notifications_failed: int
    next_dispatch_at: Optional[datetime] = Field(
        default=None, description="When to run the next tick so deferred digests go out"
    )
    errors: List[str] = Field(default=[])

    @classmethod
    def from_report(cls, report: TickReport) -> "TickResponse":
        return cls(**report.__dict__)


class ChannelModel(BaseModel):
    channel: str = Field(..., description="email, sms or in_app")
    destination: str = Field(..., description="Address, phone number or in-app user key")


class QuietHoursModel(BaseModel):
    start: str = Field(..., description="Local start time, HH:MM")
    end: str = Field(..., description="Local end time, HH:MM")

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, value: str) -> str:
        datetime.strptime(value, "%H:%M")
        return value


class SettingsRequest(BaseModel):
    """Notification preferences. Channels are tried in the order given."""
    channels: List[ChannelModel] = Field(default=[])
    quiet_hours: Optional[QuietHoursModel] = None
    timezone: str = Field("UTC", description="IANA timezone name")
    reminder_hour: int = Field(9, ge=0, le=23, description="Local hour at which reminders fire")

    def to_settings(self, user_id: str) -> UserSettings:
        quiet = None
        if self.quiet_hours:
            quiet = QuietHours(
                start=datetime.strptime(self.quiet_hours.start, "%H:%M").time(),
                end=datetime.strptime(self.quiet_hours.end, "%H:%M").time(),
            )
        return UserSettings(
            user_id=user_id,
            channels=[ChannelTarget(c.channel, c.destination) for c in self.channels],
            quiet_hours=quiet,
            timezone=self.timezone,
            reminder_hour=self.reminder_hour,
        )


class SettingsResponse(BaseModel):
    user_id: str
    channels: List[dict]
    quiet_hours: Optional[dict] = None
    timezone: str
    reminder_hour: int
