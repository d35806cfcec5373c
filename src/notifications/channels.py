"""
Notification channel senders.

Each sender delivers one formatted payload to one destination and raises on
failure; retry and fallback are handled by the scheduler.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

import boto3
from botocore.client import Config

from src.utils.kafka import IN_APP_TOPIC, KafkaEventLogger

logger = logging.getLogger(__name__)


@dataclass
class NoticeSummary:
    """Mandatory notification fields for one notice."""
    notice_id: str
    compliance_type: str
    risk_level: str
    deadline_date: Optional[str]
    required_actions: List[str] = field(default_factory=list)
    subject: str = ""
    reference_number: str = ""

    def render(self) -> str:
        lines = [f"[{self.risk_level}] {self.compliance_type} notice"]
        if self.subject:
            lines.append(self.subject)
        if self.reference_number:
            lines.append(f"Reference: {self.reference_number}")
        lines.append(f"Deadline: {self.deadline_date or 'not identified - manual review needed'}")
        if self.required_actions:
            lines.append("Required actions:")
            lines.extend(f"  - {action}" for action in self.required_actions)
        return "\n".join(lines)


@dataclass
class NotificationPayload:
    """A single reminder or a digest of several notices."""
    user_id: str
    trigger_reason: str
    notices: List[NoticeSummary]

    @property
    def is_digest(self) -> bool:
        return len(self.notices) > 1

    @property
    def title(self) -> str:
        if self.is_digest:
            return f"{len(self.notices)} compliance notices need your attention"
        notice = self.notices[0]
        return f"{notice.risk_level} risk: {notice.compliance_type} notice due {notice.deadline_date or 'soon'}"

    def render_text(self) -> str:
        return "\n\n".join(n.render() for n in self.notices)

    def to_dict(self) -> Dict:
        return {
            "user_id": self.user_id,
            "trigger_reason": self.trigger_reason,
            "title": self.title,
            "notices": [asdict(n) for n in self.notices],
        }


class ChannelSender(ABC):
    """Delivers a payload to a destination. Raises on failure."""

    name: str = "channel"

    @abstractmethod
    def send(self, payload: NotificationPayload, destination: str) -> None: ...


def _aws_config() -> Config:
    return Config(
        region_name=os.getenv("AWS_REGION"),
        retries={'max_attempts': 1, 'mode': 'standard'},
    )


class EmailSender(ChannelSender):
    """Email through Amazon SES."""

    name = "email"

    def __init__(self, client=None, sender_address: Optional[str] = None):
        self.client = client or boto3.client('ses', region_name=os.getenv("AWS_REGION"), config=_aws_config())
        self.sender_address = sender_address or os.getenv("SES_SENDER_ADDRESS", "")

    def send(self, payload: NotificationPayload, destination: str) -> None:
        self.client.send_email(
            Source=self.sender_address,
            Destination={"ToAddresses": [destination]},
            Message={
                "Subject": {"Data": payload.title, "Charset": "UTF-8"},
                "Body": {"Text": {"Data": payload.render_text(), "Charset": "UTF-8"}},
            },
        )
        logger.info(f"Email sent to {destination} for user {payload.user_id}")


class SmsSender(ChannelSender):
    """SMS through Amazon SNS."""

    name = "sms"
    MAX_LENGTH = 1600

    def __init__(self, client=None):
        self.client = client or boto3.client('sns', region_name=os.getenv("AWS_REGION"), config=_aws_config())

    def send(self, payload: NotificationPayload, destination: str) -> None:
        message = f"{payload.title}\n{payload.render_text()}"[:self.MAX_LENGTH]
        self.client.publish(
            PhoneNumber=destination,
            Message=message,
            MessageAttributes={
                "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"}
            },
        )
        logger.info(f"SMS sent for user {payload.user_id}")


class InAppSender(ChannelSender):
    """In-app notification on the agent event topic."""

    name = "in_app"

    def __init__(self, event_logger: Optional[KafkaEventLogger] = None):
        self.event_logger = event_logger or KafkaEventLogger(topic=IN_APP_TOPIC)

    def send(self, payload: NotificationPayload, destination: str) -> None:
        self.event_logger.publish_sync(
            "agent-event",
            payload.title,
            data=payload.to_dict(),
            key=destination,
        )
        logger.info(f"In-app notification published for user {payload.user_id}")


def build_default_senders() -> Dict[str, ChannelSender]:
    """Senders keyed by channel name, as referenced in user settings."""
    return {
        EmailSender.name: EmailSender(),
        SmsSender.name: SmsSender(),
        InAppSender.name: InAppSender(),
    }
