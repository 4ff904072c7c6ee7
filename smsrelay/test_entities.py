"""
Tests for the message entity transitions.

Tests cover:
- Legal transitions and their side timestamps
- Illegal transitions leave the message untouched
- Sent and delivered are not re-enterable
"""

from datetime import datetime, timedelta

import pytest

from smsrelay.conftest import T0, make_message
from smsrelay.entities import MessageStatus
from smsrelay.exceptions import InvalidStateTransition


class TestAddSendAttempt:
    """Test registering send attempts."""

    def test_sets_last_attempted_at(self):
        message = make_message(MessageStatus.SENDING)

        message.add_send_attempt(T0 + timedelta(seconds=5))

        assert message.status == MessageStatus.SENDING
        assert message.last_attempted_at == T0 + timedelta(seconds=5)
        assert message.send_attempt_count == 1

    def test_rejected_when_pending(self):
        message = make_message(MessageStatus.PENDING)

        with pytest.raises(InvalidStateTransition) as exc_info:
            message.add_send_attempt(T0)

        assert exc_info.value.actual == "pending"
        assert exc_info.value.expected == ("sending",)
        assert message.last_attempted_at is None
        assert message.send_attempt_count == 0


class TestSent:
    """Test the sending → sent transition."""

    def test_sets_sent_at_and_duration(self):
        message = make_message(MessageStatus.SENDING)

        message.sent(T0 + timedelta(seconds=30))

        assert message.status == MessageStatus.SENT
        assert message.sent_at == T0 + timedelta(seconds=30)
        assert message.send_duration == timedelta(seconds=30)

    @pytest.mark.parametrize("status", [
        MessageStatus.PENDING,
        MessageStatus.SENT,
        MessageStatus.DELIVERED,
        MessageStatus.FAILED,
        MessageStatus.RECEIVED,
    ])
    def test_rejected_unless_sending(self, status):
        message = make_message(status)
        before = message.model_dump()

        with pytest.raises(InvalidStateTransition):
            message.sent(T0)

        assert message.model_dump() == before

    def test_not_reenterable(self):
        message = make_message(MessageStatus.SENDING)
        message.sent(T0)

        with pytest.raises(InvalidStateTransition):
            message.sent(T0)


class TestFailed:
    """Test transitions into failed."""

    @pytest.mark.parametrize("status", [MessageStatus.SENDING, MessageStatus.SENT])
    def test_allowed_from_sending_and_sent(self, status):
        message = make_message(status)

        message.failed(T0)

        assert message.status == MessageStatus.FAILED
        assert message.failed_at == T0

    @pytest.mark.parametrize("status", [
        MessageStatus.PENDING,
        MessageStatus.DELIVERED,
        MessageStatus.RECEIVED,
    ])
    def test_rejected_from_other_statuses(self, status):
        message = make_message(status)

        with pytest.raises(InvalidStateTransition) as exc_info:
            message.failed(T0)

        assert exc_info.value.expected == ("sending", "sent")
        assert message.status == status


class TestDelivered:
    """Test the sent → delivered transition."""

    def test_full_lifecycle(self):
        message = make_message(MessageStatus.SENDING)

        message.add_send_attempt(T0)
        message.sent(T0 + timedelta(seconds=1))
        message.delivered(T0 + timedelta(seconds=2))

        assert message.status == MessageStatus.DELIVERED
        assert message.delivered_at == T0 + timedelta(seconds=2)

    def test_rejected_when_sending(self):
        message = make_message(MessageStatus.SENDING)

        with pytest.raises(InvalidStateTransition):
            message.delivered(T0)

        assert message.delivered_at is None


class TestTimestamps:
    """Test timestamp normalization."""

    def test_naive_timestamps_are_utc(self):
        message = make_message(request_received_at=datetime(2025, 1, 15, 10, 0, 0))

        assert message.request_received_at == T0
        assert message.request_received_at.tzinfo is not None

    def test_predicates(self):
        assert make_message(MessageStatus.SENDING).is_sending()
        assert not make_message(MessageStatus.SENDING).is_sent()
        assert make_message(MessageStatus.SENT).is_sent()
