"""
In-process event bus.

Listeners subscribe to an event type and are called synchronously, in
registration order, for each dispatched event of that type.
"""

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Protocol

from smsrelay.events import Event
from smsrelay.exceptions import DispatchFailure
from smsrelay.metrics import record_event_dispatch

logger = logging.getLogger(__name__)

Listener = Callable[[Event], None]


class Dispatcher(Protocol):
    """Anything able to publish an event."""

    def dispatch(self, event: Event) -> None:
        ...


class EventDispatcher:
    """Publishes events to the listeners subscribed to their type."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, listener: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(listener)
        logger.info(f"subscribed [{getattr(listener, '__qualname__', listener)}] to event [{event_type}]")

    def dispatch(self, event: Event) -> None:
        """
        Publish ``event`` to its subscribers.

        Raises:
            DispatchFailure: a listener raised; listeners after it are not called
        """
        with self._lock:
            listeners = list(self._listeners.get(event.type, []))

        logger.debug(f"dispatching event [{event.type}] with id [{event.id}] to [{len(listeners)}] listeners")

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                record_event_dispatch(event.type, "failed")
                raise DispatchFailure(
                    f"listener [{getattr(listener, '__qualname__', listener)}] cannot handle "
                    f"event [{event.type}] with id [{event.id}]: {e}"
                ) from e

        record_event_dispatch(event.type, "dispatched")
        logger.info(f"dispatched event [{event.type}] with id [{event.id}]")
