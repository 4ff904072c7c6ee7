"""Message entity and its lifecycle transitions"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

from smsrelay.exceptions import InvalidStateTransition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MessageType(str, Enum):
    """Direction of travel relative to the phone."""
    MOBILE_ORIGINATED = "mobile-originated"  # Received by the phone
    MOBILE_TERMINATED = "mobile-terminated"  # Sent by the phone


class MessageStatus(str, Enum):
    """
    Message lifecycle state.

    Flow: pending → sending → sent → delivered
    sending or sent → failed
    received is terminal for inbound messages
    """
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RECEIVED = "received"


class MessageEventName(str, Enum):
    """Events a phone can report for an outbound message."""
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore", from_attributes=True, validate_assignment=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    owner: str
    contact: str
    content: str
    type: MessageType
    status: MessageStatus

    request_received_at: datetime
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    order_timestamp: datetime

    send_attempt_count: int = 0
    send_duration: Optional[timedelta] = None
    last_attempted_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @field_validator(
        "request_received_at", "created_at", "updated_at", "order_timestamp",
        "last_attempted_at", "sent_at", "received_at", "failed_at", "delivered_at",
    )
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        """SQLite drops timezone information so every timestamp is stored as UTC."""
        return as_utc(v)

    def is_sending(self) -> bool:
        return self.status == MessageStatus.SENDING

    def is_sent(self) -> bool:
        return self.status == MessageStatus.SENT

    def _guard(self, *expected: MessageStatus) -> None:
        if self.status not in expected:
            raise InvalidStateTransition(self.status.value, [status.value for status in expected])

    def add_send_attempt(self, timestamp: datetime) -> "Message":
        """Register an attempt by the phone to send a message which is already sending."""
        self._guard(MessageStatus.SENDING)
        self.last_attempted_at = timestamp
        self.send_attempt_count += 1
        self.updated_at = utc_now()
        return self

    def sent(self, timestamp: datetime) -> "Message":
        self._guard(MessageStatus.SENDING)
        self.status = MessageStatus.SENT
        self.sent_at = timestamp
        self.send_duration = self.sent_at - self.request_received_at
        self.updated_at = utc_now()
        return self

    def failed(self, timestamp: datetime) -> "Message":
        self._guard(MessageStatus.SENDING, MessageStatus.SENT)
        self.status = MessageStatus.FAILED
        self.failed_at = timestamp
        self.updated_at = utc_now()
        return self

    def delivered(self, timestamp: datetime) -> "Message":
        self._guard(MessageStatus.SENT)
        self.status = MessageStatus.DELIVERED
        self.delivered_at = timestamp
        self.updated_at = utc_now()
        return self
