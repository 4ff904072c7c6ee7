"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime, timedelta
from typing import Optional

import phonenumbers
from pydantic import BaseModel, Field, field_validator

from smsrelay.entities import MessageEventName, MessageStatus, MessageType


def validate_e164(v: str, field_name: str) -> str:
    """Parse an international phone number and return it in E.164 format."""
    try:
        number = phonenumbers.parse(v, None)
    except phonenumbers.NumberParseException as e:
        raise ValueError(f"{field_name} must be an international phone number starting with '+': {e}") from e
    if not phonenumbers.is_possible_number(number):
        raise ValueError(f"{field_name} is not a possible phone number")
    return phonenumbers.format_number(number, phonenumbers.PhoneNumberFormat.E164)


def normalize_contact(v: str) -> str:
    """Format ``v`` as E.164 when it is a phone number, keep it as is otherwise."""
    try:
        return validate_e164(v, "from")
    except ValueError:
        return v


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MessageSendRequest(BaseModel):
    """
    A message which must be sent by the phone of ``from``.

    Validates:
    - from/to: international phone numbers, normalized to E.164
    - content: non-empty, max 2048 characters
    """
    # Note: 'from' is a reserved word in Python, so we use alias
    from_msisdn: str = Field(..., alias="from", description="Phone number of the sending gateway")
    to: str = Field(..., description="Recipient phone number in E.164 format")
    content: str = Field(..., min_length=1, max_length=2048, description="Message text")

    @field_validator("from_msisdn", "to")
    @classmethod
    def validate_e164_format(cls, v: str, info) -> str:
        return validate_e164(v, info.field_name)

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {"from": "+18005550199", "to": "+18005550100", "content": "This is a sample text message"}
            ]
        }
    }


class MessageReceiveRequest(BaseModel):
    """A message received by the phone of ``to``."""
    from_msisdn: str = Field(..., alias="from", description="Sender phone number")
    to: str = Field(..., description="Phone number of the receiving gateway")
    content: str = Field(..., max_length=2048)
    timestamp: datetime = Field(..., description="Time the phone received the message")

    @field_validator("to")
    @classmethod
    def validate_e164_format(cls, v: str, info) -> str:
        return validate_e164(v, info.field_name)

    @field_validator("from_msisdn")
    @classmethod
    def normalize_sender(cls, v: str) -> str:
        return normalize_contact(v)

    model_config = {"populate_by_name": True}


class MessageEventRequest(BaseModel):
    """An event reported by a phone for an outbound message."""
    event_name: MessageEventName = Field(..., description="sent, delivered or failed")
    timestamp: datetime = Field(..., description="Time the event happened on the phone")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """A message as exposed by the API."""
    id: str
    user_id: str
    owner: str
    contact: str
    content: str
    type: MessageType
    status: MessageStatus
    request_received_at: datetime
    created_at: datetime
    updated_at: datetime
    order_timestamp: datetime
    send_attempt_count: int = 0
    send_duration: Optional[timedelta] = None
    last_attempted_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v) -> str:
        return str(v)

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    data: list[MessageResponse] = Field(default_factory=list)
    count: int = Field(..., ge=0, description="Number of messages in data")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
