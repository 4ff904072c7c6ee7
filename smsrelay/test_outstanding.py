"""
Tests for the outstanding message fan-out.
"""

import threading
import time

import pytest

from smsrelay.conftest import SOURCE, T0, make_message
from smsrelay.entities import MessageStatus
from smsrelay.events import EVENT_TYPE_MESSAGE_PHONE_SENDING
from smsrelay.logging_utils import request_id_ctx
from smsrelay.outstanding import OutstandingDispatcher


class SlowDispatcher:
    """Dispatcher which tracks how many dispatches run at the same time."""

    def __init__(self, delay=0.1):
        self.delay = delay
        self.lock = threading.Lock()
        self.running = 0
        self.max_running = 0
        self.events = []

    def dispatch(self, event):
        with self.lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            self.events.append(event)
        time.sleep(self.delay)
        with self.lock:
            self.running -= 1


def store_sending(repository, count):
    messages = [make_message(MessageStatus.SENDING) for _ in range(count)]
    for message in messages:
        repository.store(message)
    return messages


class TestOutstandingDispatcher:
    """Test the coordinator on its own."""

    def test_empty_batch(self, repository, dispatcher):
        coordinator = OutstandingDispatcher(dispatcher, repository)

        assert coordinator.dispatch(SOURCE, [], T0) == []
        assert dispatcher.events == []

    def test_invalid_worker_count(self, repository, dispatcher):
        with pytest.raises(ValueError):
            OutstandingDispatcher(dispatcher, repository, max_workers=0)

    def test_one_sending_event_per_message(self, repository, dispatcher):
        messages = store_sending(repository, 4)
        coordinator = OutstandingDispatcher(dispatcher, repository)

        result = coordinator.dispatch(SOURCE, messages, T0)

        assert {m.id for m in result} == {m.id for m in messages}
        assert [e.type for e in dispatcher.events] == [EVENT_TYPE_MESSAGE_PHONE_SENDING] * 4
        assert all(e.source == SOURCE for e in dispatcher.events)

    def test_concurrency_is_capped(self, repository):
        messages = store_sending(repository, 8)
        slow = SlowDispatcher()
        coordinator = OutstandingDispatcher(slow, repository, max_workers=3)

        result = coordinator.dispatch(SOURCE, messages, T0)

        assert len(result) == 8
        assert 1 < slow.max_running <= 3

    def test_reload_failure_drops_message(self, repository, dispatcher):
        messages = store_sending(repository, 3)
        repository.fail_loads.add(messages[1].id)
        coordinator = OutstandingDispatcher(dispatcher, repository)

        result = coordinator.dispatch(SOURCE, messages, T0)

        assert {m.id for m in result} == {messages[0].id, messages[2].id}
        assert len(dispatcher.events) == 3

    def test_unexpected_error_drops_message(self, repository):
        messages = store_sending(repository, 3)

        class BrokenDispatcher:
            def dispatch(self, event):
                if str(messages[2].id) in event.data:
                    raise RuntimeError("connection reset")

        coordinator = OutstandingDispatcher(BrokenDispatcher(), repository)

        result = coordinator.dispatch(SOURCE, messages, T0)

        assert {m.id for m in result} == {messages[0].id, messages[1].id}

    def test_failed_dispatch_returns_message_to_pending(self, repository, dispatcher):
        messages = store_sending(repository, 3)
        dispatcher.rejected_ids.add(messages[1].id)
        coordinator = OutstandingDispatcher(dispatcher, repository)

        result = coordinator.dispatch(SOURCE, messages, T0)

        assert {m.id for m in result} == {messages[0].id, messages[2].id}
        assert repository.load(messages[1].user_id, messages[1].id).status == MessageStatus.PENDING

    def test_workers_keep_request_id(self, repository):
        messages = store_sending(repository, 3)
        seen = []

        class ContextDispatcher:
            def dispatch(self, event):
                seen.append(request_id_ctx.get())

        coordinator = OutstandingDispatcher(ContextDispatcher(), repository)

        token = request_id_ctx.set("req-123")
        try:
            coordinator.dispatch(SOURCE, messages, T0)
        finally:
            request_id_ctx.reset(token)

        assert seen == ["req-123"] * 3
