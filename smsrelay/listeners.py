"""Bus subscribers which turn message events into repository changes"""
import logging

from smsrelay.dispatcher import EventDispatcher
from smsrelay.events import (
    EVENT_TYPE_MESSAGE_API_SENT,
    EVENT_TYPE_MESSAGE_PHONE_DELIVERED,
    EVENT_TYPE_MESSAGE_PHONE_FAILED,
    EVENT_TYPE_MESSAGE_PHONE_RECEIVED,
    EVENT_TYPE_MESSAGE_PHONE_SENDING,
    EVENT_TYPE_MESSAGE_PHONE_SENT,
    Event,
    MessageAPISentPayload,
    MessagePhoneDeliveredPayload,
    MessagePhoneFailedPayload,
    MessagePhoneReceivedPayload,
    MessagePhoneSendingPayload,
    MessagePhoneSentPayload,
)
from smsrelay.services import HandleMessageParams, MessageService, MessageStoreParams

logger = logging.getLogger(__name__)


class MessageListener:
    """Applies message events to the message service."""

    def __init__(self, service: MessageService):
        self.service = service

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe(EVENT_TYPE_MESSAGE_API_SENT, self.on_message_api_sent)
        dispatcher.subscribe(EVENT_TYPE_MESSAGE_PHONE_RECEIVED, self.on_message_phone_received)
        dispatcher.subscribe(EVENT_TYPE_MESSAGE_PHONE_SENDING, self.on_message_phone_sending)
        dispatcher.subscribe(EVENT_TYPE_MESSAGE_PHONE_SENT, self.on_message_phone_sent)
        dispatcher.subscribe(EVENT_TYPE_MESSAGE_PHONE_FAILED, self.on_message_phone_failed)
        dispatcher.subscribe(EVENT_TYPE_MESSAGE_PHONE_DELIVERED, self.on_message_phone_delivered)

    def on_message_api_sent(self, event: Event) -> None:
        payload = event.data_as(MessageAPISentPayload)
        logger.info(f"storing sent message [{payload.id}] from event [{event.id}]")
        self.service.store_sent_message(MessageStoreParams(
            id=payload.id,
            user_id=payload.user_id,
            owner=payload.owner,
            contact=payload.contact,
            content=payload.content,
            timestamp=payload.request_received_at,
        ))

    def on_message_phone_received(self, event: Event) -> None:
        payload = event.data_as(MessagePhoneReceivedPayload)
        logger.info(f"storing received message [{payload.id}] from event [{event.id}]")
        self.service.store_received_message(MessageStoreParams(
            id=payload.id,
            user_id=payload.user_id,
            owner=payload.owner,
            contact=payload.contact,
            content=payload.content,
            timestamp=payload.timestamp,
        ))

    def on_message_phone_sending(self, event: Event) -> None:
        payload = event.data_as(MessagePhoneSendingPayload)
        self.service.handle_message_sending(
            HandleMessageParams(id=payload.id, user_id=payload.user_id, timestamp=payload.timestamp)
        )

    def on_message_phone_sent(self, event: Event) -> None:
        payload = event.data_as(MessagePhoneSentPayload)
        self.service.handle_message_sent(
            HandleMessageParams(id=payload.id, user_id=payload.user_id, timestamp=payload.timestamp)
        )

    def on_message_phone_failed(self, event: Event) -> None:
        payload = event.data_as(MessagePhoneFailedPayload)
        self.service.handle_message_failed(
            HandleMessageParams(id=payload.id, user_id=payload.user_id, timestamp=payload.timestamp)
        )

    def on_message_phone_delivered(self, event: Event) -> None:
        payload = event.data_as(MessagePhoneDeliveredPayload)
        self.service.handle_message_delivered(
            HandleMessageParams(id=payload.id, user_id=payload.user_id, timestamp=payload.timestamp)
        )
