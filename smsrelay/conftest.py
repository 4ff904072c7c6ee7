"""
Pytest configuration and shared fixtures.

Settings are read from the environment when smsrelay.config is first
imported, so the test database is configured before any app import.
"""

import os
import tempfile
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.mkdtemp(prefix="smsrelay-"), "test.db"),
)
os.environ.setdefault("LOG_LEVEL", "DEBUG")

# Clear settings cache before any app imports to ensure test env vars are used
from smsrelay.config import get_settings  # noqa: E402
get_settings.cache_clear()

from smsrelay.dispatcher import EventDispatcher  # noqa: E402
from smsrelay.entities import Message, MessageStatus, MessageType  # noqa: E402
from smsrelay.exceptions import DispatchFailure, NotFound, PersistenceFailure  # noqa: E402
from smsrelay.listeners import MessageListener  # noqa: E402
from smsrelay.services import MessageService  # noqa: E402


USER_ID = "user-1"
OWNER = "+18005550199"
CONTACT = "+18005550100"
SOURCE = "/v1/test"
T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class InMemoryMessageRepository:
    """Thread-safe in-memory repository used by the service tests."""

    def __init__(self):
        self.messages = {}
        self.lock = threading.Lock()
        self.fail_loads = set()
        self.fail_outstanding = False

    def load(self, user_id, message_id):
        with self.lock:
            if message_id in self.fail_loads:
                raise PersistenceFailure(f"cannot load message [{message_id}]")
            message = self.messages.get(message_id)
            if message is None or message.user_id != user_id:
                raise NotFound(f"message with id [{message_id}] not found")
            return message.model_copy(deep=True)

    def store(self, message):
        with self.lock:
            self.messages[message.id] = message.model_copy(deep=True)

    def update(self, message):
        with self.lock:
            if message.id not in self.messages:
                raise NotFound(f"message with id [{message.id}] not found")
            self.messages[message.id] = message.model_copy(deep=True)

    def index(self, user_id, owner, contact, params):
        with self.lock:
            found = [
                m for m in self.messages.values()
                if m.user_id == user_id and m.owner == owner and m.contact == contact
            ]
        found.sort(key=lambda m: m.order_timestamp, reverse=True)
        return found[params.skip:params.skip + params.limit]

    def get_outstanding(self, user_id, owner, limit):
        if self.fail_outstanding:
            raise PersistenceFailure("database is down")
        with self.lock:
            pending = sorted(
                (
                    m for m in self.messages.values()
                    if m.user_id == user_id and m.owner == owner and m.status == MessageStatus.PENDING
                ),
                key=lambda m: m.order_timestamp,
            )[:limit]
            for message in pending:
                message.status = MessageStatus.SENDING
            return [m.model_copy(deep=True) for m in pending]

    def release(self, user_id, message_id):
        with self.lock:
            message = self.messages.get(message_id)
            if message is None or message.user_id != user_id:
                return False
            if message.status != MessageStatus.SENDING or message.send_attempt_count:
                return False
            message.status = MessageStatus.PENDING
            return True


class RecordingDispatcher(EventDispatcher):
    """Event bus which records every event and can reject chosen messages."""

    def __init__(self):
        super().__init__()
        self.events = []
        self.rejected_ids = set()
        self.rejected_types = set()
        self._record_lock = threading.Lock()

    def dispatch(self, event):
        with self._record_lock:
            self.events.append(event)
        if event.type in self.rejected_types:
            raise DispatchFailure(f"bus rejected event [{event.type}]")
        if self.rejected_ids and any(str(i) in (event.data or "") for i in self.rejected_ids):
            raise DispatchFailure(f"bus rejected event [{event.id}]")
        super().dispatch(event)

    def of_type(self, event_type):
        with self._record_lock:
            return [e for e in self.events if e.type == event_type]


def make_message(status=MessageStatus.PENDING, **overrides) -> Message:
    values = dict(
        id=uuid.uuid4(),
        user_id=USER_ID,
        owner=OWNER,
        contact=CONTACT,
        content="This is a sample text message",
        type=MessageType.MOBILE_TERMINATED,
        status=status,
        request_received_at=T0,
        order_timestamp=T0,
    )
    values.update(overrides)
    return Message(**values)


@pytest.fixture
def repository():
    return InMemoryMessageRepository()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def service(repository, dispatcher):
    """Message service wired to its own listeners, like the running app."""
    message_service = MessageService(repository, dispatcher, outstanding_concurrency=4)
    MessageListener(message_service).register(dispatcher)
    yield message_service
    message_service.close()


@pytest.fixture
def bare_service(repository, dispatcher):
    """Message service without listeners, events only get recorded."""
    message_service = MessageService(repository, dispatcher, outstanding_concurrency=4)
    yield message_service
    message_service.close()


@pytest.fixture
def later():
    return lambda seconds: T0 + timedelta(seconds=seconds)
