"""Tests for the stream-addressed mailbox."""

from __future__ import annotations

import pytest

from conftest import FakeClock
from flight_recorder.db import Database
from flight_recorder.errors import NotFoundError, ValidationError
from flight_recorder.mailbox import Mailbox


@pytest.fixture()
def mailbox(db: Database, clock: FakeClock) -> Mailbox:
	return Mailbox(db, clock=clock)


class TestMailbox:
	def test_send_is_pending(self, mailbox: Mailbox) -> None:
		msg = mailbox.send("srt-1", {"text": "hello"}, sender_id="agent-1")
		assert msg.id.startswith("msg-")
		assert [m.id for m in mailbox.pending_for_streams(["srt-1"])] == [msg.id]
		assert mailbox.get(msg.id).payload == {"text": "hello"}

	def test_send_requires_stream(self, mailbox: Mailbox) -> None:
		with pytest.raises(ValidationError):
			mailbox.send("", {})

	def test_deliver_removes_from_pending(self, mailbox: Mailbox, clock: FakeClock) -> None:
		msg = mailbox.send("srt-1", {})
		clock.advance(seconds=2)
		delivered = mailbox.deliver(msg.id)
		assert delivered.delivered
		assert delivered.delivered_at is not None
		assert mailbox.pending_for_streams(["srt-1"]) == []
		again = mailbox.deliver(msg.id)
		assert again.delivered_at == delivered.delivered_at

	def test_requeue(self, mailbox: Mailbox) -> None:
		msg = mailbox.send("srt-1", {})
		assert mailbox.requeue(msg.id) is False
		mailbox.deliver(msg.id)
		assert mailbox.requeue(msg.id) is True
		requeued = mailbox.get(msg.id)
		assert not requeued.delivered
		assert requeued.delivered_at is None

	def test_pending_filters_streams(self, mailbox: Mailbox) -> None:
		mailbox.send("srt-1", {"n": 1})
		mailbox.send("srt-2", {"n": 2})
		mailbox.send("srt-3", {"n": 3})
		pending = mailbox.pending_for_streams(["srt-1", "srt-3"])
		assert sorted(m.payload["n"] for m in pending) == [1, 3]
		assert mailbox.pending_for_streams([]) == []

	def test_missing_message(self, mailbox: Mailbox) -> None:
		with pytest.raises(NotFoundError):
			mailbox.deliver("msg-missing")
