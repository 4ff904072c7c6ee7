"""
Event envelope and typed event payloads.

Every lifecycle transition reported by a phone, and every message accepted
by the API, is published on the event bus as an ``Event``: a small envelope
carrying a generated id, a fixed type string, the source which produced it,
the UTC creation time and the JSON-encoded payload.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError
from pydantic_core import PydanticSerializationError

from smsrelay.entities import utc_now
from smsrelay.exceptions import EncodingFailure

logger = logging.getLogger(__name__)


# =============================================================================
# Event Types
# =============================================================================

EVENT_TYPE_MESSAGE_API_SENT = "message.api.sent"
EVENT_TYPE_MESSAGE_PHONE_RECEIVED = "message.phone.received"
EVENT_TYPE_MESSAGE_PHONE_SENDING = "message.phone.sending"
EVENT_TYPE_MESSAGE_PHONE_SENT = "message.phone.sent"
EVENT_TYPE_MESSAGE_PHONE_FAILED = "message.phone.failed"
EVENT_TYPE_MESSAGE_PHONE_DELIVERED = "message.phone.delivered"
EVENT_TYPE_HEARTBEAT_PHONE_OUTSTANDING = "heartbeat.phone.outstanding"

EVENT_TYPES = (
    EVENT_TYPE_MESSAGE_API_SENT,
    EVENT_TYPE_MESSAGE_PHONE_RECEIVED,
    EVENT_TYPE_MESSAGE_PHONE_SENDING,
    EVENT_TYPE_MESSAGE_PHONE_SENT,
    EVENT_TYPE_MESSAGE_PHONE_FAILED,
    EVENT_TYPE_MESSAGE_PHONE_DELIVERED,
    EVENT_TYPE_HEARTBEAT_PHONE_OUTSTANDING,
)

APPLICATION_JSON = "application/json"


# =============================================================================
# Payloads
# =============================================================================

class MessageAPISentPayload(BaseModel):
    """A message was accepted by the API and must be stored for sending."""
    id: uuid.UUID
    user_id: str
    owner: str
    contact: str
    request_received_at: datetime
    content: str


class MessagePhoneReceivedPayload(BaseModel):
    """A phone received an inbound message."""
    id: uuid.UUID
    user_id: str
    owner: str
    contact: str
    timestamp: datetime
    content: str


class MessagePhoneSendingPayload(BaseModel):
    """A message was handed to a phone for sending."""
    id: uuid.UUID
    user_id: str
    owner: str
    contact: str
    timestamp: datetime
    content: str


class MessagePhoneSentPayload(BaseModel):
    id: uuid.UUID
    user_id: str
    owner: str
    contact: str
    timestamp: datetime
    content: str


class MessagePhoneFailedPayload(BaseModel):
    id: uuid.UUID
    user_id: str
    owner: str
    contact: str
    timestamp: datetime
    content: str


class MessagePhoneDeliveredPayload(BaseModel):
    id: uuid.UUID
    user_id: str
    owner: str
    contact: str
    timestamp: datetime
    content: str


class HeartbeatPhoneOutstandingPayload(BaseModel):
    """A phone fetched its outstanding messages."""
    owner: str
    timestamp: datetime
    quantity: int


# =============================================================================
# Envelope
# =============================================================================

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class Event(BaseModel):
    """Envelope published on the event bus."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    source: str
    time: datetime = Field(default_factory=utc_now)
    data_content_type: Optional[str] = None
    data: Optional[str] = None

    def set_data(self, payload: Any) -> None:
        """
        Encode ``payload`` as JSON and attach it to the event.

        Raises:
            EncodingFailure: the payload cannot be serialized
        """
        try:
            if isinstance(payload, BaseModel):
                encoded = payload.model_dump_json()
            else:
                encoded = json.dumps(payload)
        except (TypeError, ValueError, PydanticSerializationError) as e:
            raise EncodingFailure(
                f"cannot encode {type(payload).__name__} [{payload!r}] as JSON"
            ) from e

        self.data_content_type = APPLICATION_JSON
        self.data = encoded

    def data_as(self, payload_type: Type[PayloadT]) -> PayloadT:
        """Decode the JSON data back into a payload model."""
        try:
            return payload_type.model_validate_json(self.data or "")
        except ValidationError as e:
            raise EncodingFailure(
                f"cannot decode data of event [{self.id}] as {payload_type.__name__}"
            ) from e


def create_event(event_type: str, source: str, payload: Any) -> Event:
    """
    Build an envelope for ``payload``.

    Raises:
        EncodingFailure: the payload cannot be encoded as JSON
    """
    event = Event(type=event_type, source=source)
    event.set_data(payload)
    logger.debug(f"created event [{event.type}] with id [{event.id}]")
    return event
