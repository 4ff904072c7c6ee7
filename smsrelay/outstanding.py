"""
Fan-out of outstanding messages to the phone.

Each message of a batch gets its own task on a bounded thread pool. A task
publishes a ``message.phone.sending`` event for its message and reloads the
message afterwards. A failing task only drops its own message from the
result; the batch as a whole never fails. A message whose sending event
could not be published goes back to pending so a later fetch picks it up.
Tasks run in a copy of the caller's context, so log lines keep the
request id.
"""

import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import List

from smsrelay.dispatcher import Dispatcher
from smsrelay.entities import Message
from smsrelay.events import EVENT_TYPE_MESSAGE_PHONE_SENDING, MessagePhoneSendingPayload, create_event
from smsrelay.exceptions import MessageServiceError
from smsrelay.metrics import record_outstanding
from smsrelay.storage import MessageRepository

logger = logging.getLogger(__name__)


class OutstandingDispatcher:
    """Publishes the sending event of every message in a batch concurrently."""

    def __init__(self, dispatcher: Dispatcher, repository: MessageRepository, max_workers: int = 10):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got [{max_workers}]")
        self.dispatcher = dispatcher
        self.repository = repository
        self.max_workers = max_workers

    def dispatch(self, source: str, messages: List[Message], timestamp: datetime) -> List[Message]:
        """
        Dispatch the sending event of each message and return the reloaded messages.

        Results are in completion order. Messages whose task failed are
        omitted. Blocks until every task has finished.
        """
        if not messages:
            return []

        results: List[Message] = []
        lock = threading.Lock()

        def handle(message: Message) -> None:
            result = self._handle_message(source, message, timestamp)
            if result is None:
                return
            with lock:
                results.append(result)

        workers = min(self.max_workers, len(messages))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="outstanding") as executor:
            futures = [executor.submit(contextvars.copy_context().run, handle, message) for message in messages]
            wait(futures)

        for future in futures:
            # errors other than MessageServiceError escape _handle_message
            if future.exception() is not None:
                logger.error(f"outstanding task crashed: {future.exception()!r}")

        record_outstanding(dispatched=len(results), dropped=len(messages) - len(results))
        logger.info(f"dispatched [{len(results)}] of [{len(messages)}] outstanding messages")
        return results

    def _handle_message(self, source: str, message: Message, timestamp: datetime):
        try:
            event = create_event(
                EVENT_TYPE_MESSAGE_PHONE_SENDING,
                source,
                MessagePhoneSendingPayload(
                    id=message.id,
                    user_id=message.user_id,
                    owner=message.owner,
                    contact=message.contact,
                    timestamp=timestamp,
                    content=message.content,
                ),
            )
        except MessageServiceError as e:
            logger.error(f"cannot create [{EVENT_TYPE_MESSAGE_PHONE_SENDING}] event for message with ID [{message.id}]: {e}")
            self._release(message)
            return None

        logger.info(f"created event [{event.type}] with id [{event.id}] for message [{message.id}]")

        try:
            self.dispatcher.dispatch(event)
        except MessageServiceError as e:
            logger.error(f"cannot dispatch event [{event.type}] with id [{event.id}] for message [{message.id}]: {e}")
            self._release(message)
            return None

        logger.info(f"dispatched event [{event.type}] with id [{event.id}] for message [{message.id}]")

        try:
            result = self.repository.load(message.user_id, message.id)
        except MessageServiceError as e:
            logger.error(f"cannot load message with id [{message.id}]: {e}")
            return None

        logger.info(f"loaded message [{message.id}]")
        return result

    def _release(self, message: Message) -> None:
        try:
            released = self.repository.release(message.user_id, message.id)
        except MessageServiceError as e:
            logger.error(f"cannot release message with id [{message.id}] back to pending: {e}")
            return

        if released:
            logger.info(f"released message [{message.id}] back to pending")
