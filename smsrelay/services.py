"""
Message lifecycle service.

Operations follow the same pattern: load the message, check that its status
allows the transition, persist the new state and, for events reported by a
phone, publish the matching event on the bus.
"""

import contextvars
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from smsrelay.dispatcher import Dispatcher
from smsrelay.entities import Message, MessageEventName, MessageStatus, MessageType, utc_now
from smsrelay.events import (
    EVENT_TYPE_HEARTBEAT_PHONE_OUTSTANDING,
    EVENT_TYPE_MESSAGE_API_SENT,
    EVENT_TYPE_MESSAGE_PHONE_DELIVERED,
    EVENT_TYPE_MESSAGE_PHONE_FAILED,
    EVENT_TYPE_MESSAGE_PHONE_RECEIVED,
    EVENT_TYPE_MESSAGE_PHONE_SENT,
    HeartbeatPhoneOutstandingPayload,
    MessageAPISentPayload,
    MessagePhoneDeliveredPayload,
    MessagePhoneFailedPayload,
    MessagePhoneReceivedPayload,
    MessagePhoneSentPayload,
    create_event,
)
from smsrelay.exceptions import (
    InvalidEventName,
    InvalidStateTransition,
    MessageServiceError,
    wrap_error,
)
from smsrelay.outstanding import OutstandingDispatcher
from smsrelay.storage import IndexParams, MessageRepository

logger = logging.getLogger(__name__)


# =============================================================================
# Parameters
# =============================================================================

class MessageGetOutstandingParams(BaseModel):
    source: str
    owner: str
    user_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    limit: int = Field(default=10, ge=1)


class MessageGetParams(IndexParams):
    user_id: str
    owner: str
    contact: str


class MessageStorePhoneEventParams(BaseModel):
    message_id: uuid.UUID
    event_name: str
    timestamp: datetime
    source: str


class MessageReceiveParams(BaseModel):
    contact: str
    user_id: str
    owner: str
    content: str
    timestamp: datetime
    source: str


class MessageSendParams(BaseModel):
    owner: str
    contact: str
    content: str
    source: str
    user_id: str
    request_received_at: datetime = Field(default_factory=utc_now)


class MessageStoreParams(BaseModel):
    owner: str
    contact: str
    content: str
    user_id: str
    id: uuid.UUID
    timestamp: datetime


class HandleMessageParams(BaseModel):
    id: uuid.UUID
    user_id: str
    timestamp: datetime


# =============================================================================
# Service
# =============================================================================

class MessageService:
    """Handles message requests coming from the API and from phones."""

    def __init__(
        self,
        repository: MessageRepository,
        dispatcher: Dispatcher,
        outstanding_concurrency: int = 10,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.outstanding = OutstandingDispatcher(dispatcher, repository, max_workers=outstanding_concurrency)
        self._background: Optional[ThreadPoolExecutor] = None
        self._background_lock = threading.Lock()
        self._event_handlers: Dict[MessageEventName, Callable[[MessageStorePhoneEventParams, Message], None]] = {
            MessageEventName.SENT: self._handle_message_sent_event,
            MessageEventName.DELIVERED: self._handle_message_delivered_event,
            MessageEventName.FAILED: self._handle_message_failed_event,
        }

    def close(self) -> None:
        """Wait for background heartbeats to finish and release the worker thread."""
        with self._background_lock:
            background, self._background = self._background, None
        if background is not None:
            background.shutdown(wait=True)

    def _submit_background(self, fn, *args) -> None:
        with self._background_lock:
            if self._background is None:
                self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="heartbeat")
            self._background.submit(contextvars.copy_context().run, fn, *args)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_outstanding(self, params: MessageGetOutstandingParams) -> List[Message]:
        """
        Fetch the messages which still have to be sent by the phone.

        A heartbeat for the fetch is published in the background. Each
        fetched message is then dispatched to the phone; messages which
        cannot be dispatched are left out of the result.
        """
        try:
            messages = self.repository.get_outstanding(params.user_id, params.owner, params.limit)
        except MessageServiceError as e:
            raise wrap_error(e, f"could not fetch [{params.limit}] outstanding messages") from e

        self._submit_background(self._register_heartbeat_event, len(messages), params)

        logger.info(f"fetched [{len(messages)}] outstanding messages")
        return self.outstanding.dispatch(params.source, messages, params.timestamp)

    def get_messages(self, params: MessageGetParams) -> List[Message]:
        """Fetch messages sent between 2 phone numbers"""
        try:
            messages = self.repository.index(
                params.user_id,
                params.owner,
                params.contact,
                IndexParams(skip=params.skip, limit=params.limit, query=params.query),
            )
        except MessageServiceError as e:
            raise wrap_error(e, f"could not fetch messages with params [{params!r}]") from e

        logger.info(f"fetched [{len(messages)}] messages with params [{params!r}]")
        return messages

    def get_message(self, user_id: str, message_id: uuid.UUID) -> Message:
        try:
            return self.repository.load(user_id, message_id)
        except MessageServiceError as e:
            raise wrap_error(e, f"could not fetch message with ID [{message_id}]") from e

    # -------------------------------------------------------------------------
    # Phone events
    # -------------------------------------------------------------------------

    def store_event(self, message: Message, params: MessageStorePhoneEventParams) -> Message:
        """
        Handle an event generated by a mobile phone for ``message``.

        Raises:
            InvalidEventName: the event name is not sent, delivered or failed
            InvalidStateTransition: the message status does not allow the event
            MessageServiceError: the event cannot be built, published or the message reloaded
        """
        try:
            handler = self._event_handlers[MessageEventName(params.event_name)]
        except ValueError as e:
            raise InvalidEventName(f"cannot handle message event [{params.event_name}]") from e

        try:
            handler(params, message)
        except MessageServiceError as e:
            msg = f"could not handle phone event [{params.event_name}] for message with id [{message.id}]"
            raise wrap_error(e, msg) from e

        return self.get_message(message.user_id, params.message_id)

    def receive_message(self, params: MessageReceiveParams) -> Message:
        """
        Handle a message received by a mobile phone.

        The record is created by the subscriber of the received event, so
        the message is loaded right after the event is published.
        """
        payload = MessagePhoneReceivedPayload(
            id=uuid.uuid4(),
            user_id=params.user_id,
            owner=params.owner,
            contact=params.contact,
            timestamp=params.timestamp,
            content=params.content,
        )
        logger.info(f"creating event for received message with ID [{payload.id}]")

        self._publish(EVENT_TYPE_MESSAGE_PHONE_RECEIVED, params.source, payload)

        try:
            message = self.repository.load(params.user_id, payload.id)
        except MessageServiceError as e:
            raise wrap_error(e, f"cannot load message with ID [{payload.id}] in the repository") from e

        logger.info(f"fetched message with id [{message.id}] from the repository")
        return message

    def send_message(self, params: MessageSendParams) -> Message:
        """Accept a new message which must be sent by the phone of ``params.owner``."""
        payload = MessageAPISentPayload(
            id=uuid.uuid4(),
            user_id=params.user_id,
            owner=params.owner,
            contact=params.contact,
            request_received_at=params.request_received_at,
            content=params.content,
        )
        logger.info(f"creating event for message with ID [{payload.id}]")

        self._publish(EVENT_TYPE_MESSAGE_API_SENT, params.source, payload)

        try:
            message = self.repository.load(params.user_id, payload.id)
        except MessageServiceError as e:
            raise wrap_error(e, f"cannot load message with ID [{payload.id}] in the repository") from e

        logger.info(f"fetched message with id [{message.id}] from the repository")
        return message

    # -------------------------------------------------------------------------
    # Record creation
    # -------------------------------------------------------------------------

    def store_sent_message(self, params: MessageStoreParams) -> Message:
        now = utc_now()
        message = Message(
            id=params.id,
            user_id=params.user_id,
            owner=params.owner,
            contact=params.contact,
            content=params.content,
            type=MessageType.MOBILE_TERMINATED,
            status=MessageStatus.PENDING,
            request_received_at=params.timestamp,
            created_at=now,
            updated_at=now,
            order_timestamp=params.timestamp,
        )
        return self._store(message)

    def store_received_message(self, params: MessageStoreParams) -> Message:
        now = utc_now()
        message = Message(
            id=params.id,
            user_id=params.user_id,
            owner=params.owner,
            contact=params.contact,
            content=params.content,
            type=MessageType.MOBILE_ORIGINATED,
            status=MessageStatus.RECEIVED,
            request_received_at=params.timestamp,
            created_at=now,
            updated_at=now,
            order_timestamp=params.timestamp,
            received_at=params.timestamp,
        )
        return self._store(message)

    # -------------------------------------------------------------------------
    # Status mutators
    # -------------------------------------------------------------------------

    def handle_message_sending(self, params: HandleMessageParams) -> Message:
        """Register a send attempt for a message which is being sent."""
        return self._transition(params, lambda message: message.add_send_attempt(params.timestamp))

    def handle_message_sent(self, params: HandleMessageParams) -> Message:
        return self._transition(params, lambda message: message.sent(params.timestamp))

    def handle_message_failed(self, params: HandleMessageParams) -> Message:
        return self._transition(params, lambda message: message.failed(params.timestamp))

    def handle_message_delivered(self, params: HandleMessageParams) -> Message:
        return self._transition(params, lambda message: message.delivered(params.timestamp))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _transition(self, params: HandleMessageParams, apply: Callable[[Message], Message]) -> Message:
        try:
            message = self.repository.load(params.user_id, params.id)
        except MessageServiceError as e:
            raise wrap_error(e, f"cannot find message with id [{params.id}]") from e

        try:
            message = apply(message)
        except InvalidStateTransition as e:
            raise wrap_error(e, f"cannot update message with id [{params.id}]") from e

        try:
            self.repository.update(message)
        except MessageServiceError as e:
            raise wrap_error(e, f"cannot update message with id [{message.id}]") from e

        logger.info(f"message with id [{message.id}] has been updated to status [{message.status.value}]")
        return message

    def _store(self, message: Message) -> Message:
        try:
            self.repository.store(message)
        except MessageServiceError as e:
            raise wrap_error(e, f"cannot save message with id [{message.id}]") from e

        logger.info(f"message saved with id [{message.id}] in the repository")
        return message

    def _publish(self, event_type: str, source: str, payload: BaseModel) -> None:
        """Build the event for ``payload`` and dispatch it, nothing is dispatched if encoding fails."""
        try:
            event = create_event(event_type, source, payload)
        except MessageServiceError as e:
            raise wrap_error(e, f"cannot create event [{event_type}] from {type(payload).__name__}") from e

        try:
            self.dispatcher.dispatch(event)
        except MessageServiceError as e:
            raise wrap_error(e, f"cannot dispatch event type [{event.type}] and id [{event.id}]") from e

        logger.info(f"event [{event.type}] with id [{event.id}] dispatched successfully")

    def _handle_message_sent_event(self, params: MessageStorePhoneEventParams, message: Message) -> None:
        if not message.is_sending():
            raise InvalidStateTransition(message.status.value, [MessageStatus.SENDING.value])

        self._publish(EVENT_TYPE_MESSAGE_PHONE_SENT, params.source, MessagePhoneSentPayload(
            id=message.id,
            user_id=message.user_id,
            owner=message.owner,
            contact=message.contact,
            timestamp=params.timestamp,
            content=message.content,
        ))

    def _handle_message_delivered_event(self, params: MessageStorePhoneEventParams, message: Message) -> None:
        if not message.is_sent():
            raise InvalidStateTransition(message.status.value, [MessageStatus.SENT.value])

        self._publish(EVENT_TYPE_MESSAGE_PHONE_DELIVERED, params.source, MessagePhoneDeliveredPayload(
            id=message.id,
            user_id=message.user_id,
            owner=message.owner,
            contact=message.contact,
            timestamp=params.timestamp,
            content=message.content,
        ))

    def _handle_message_failed_event(self, params: MessageStorePhoneEventParams, message: Message) -> None:
        if not message.is_sending() and not message.is_sent():
            raise InvalidStateTransition(
                message.status.value, [MessageStatus.SENDING.value, MessageStatus.SENT.value]
            )

        self._publish(EVENT_TYPE_MESSAGE_PHONE_FAILED, params.source, MessagePhoneFailedPayload(
            id=message.id,
            user_id=message.user_id,
            owner=message.owner,
            contact=message.contact,
            timestamp=params.timestamp,
            content=message.content,
        ))

    def _register_heartbeat_event(self, quantity: int, params: MessageGetOutstandingParams) -> None:
        # runs on the background executor, errors never reach the caller
        try:
            self._publish(EVENT_TYPE_HEARTBEAT_PHONE_OUTSTANDING, params.source, HeartbeatPhoneOutstandingPayload(
                owner=params.owner,
                timestamp=params.timestamp,
                quantity=quantity,
            ))
        except MessageServiceError as e:
            logger.error(f"cannot register heartbeat for owner [{params.owner}]: {e}")
        except Exception:
            logger.exception(f"unexpected error while registering heartbeat for owner [{params.owner}]")
