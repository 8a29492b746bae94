"""At-least-once message queue addressed by stream id."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from flight_recorder.db import Database
from flight_recorder.errors import NotFoundError, ValidationError
from flight_recorder.models import Clock, Message, format_ts, new_id, utc_now

logger = logging.getLogger(__name__)


class Mailbox:
	def __init__(self, db: Database, clock: Clock = utc_now) -> None:
		self.db = db
		self.clock = clock

	def send(self, stream_id: str, payload: dict[str, Any], sender_id: str = "") -> Message:
		if not stream_id:
			raise ValidationError("stream_id is required")
		message = Message(
			id=new_id("message"),
			stream_id=stream_id,
			sender_id=sender_id,
			payload=dict(payload),
			created_at=format_ts(self.clock()),
		)
		with self.db.transaction():
			self.db.insert_message(message)
		logger.debug("Queued message %s for %s", message.id, stream_id)
		return message

	def deliver(self, message_id: str) -> Message:
		"""Mark a message delivered. Delivering twice is harmless."""
		with self.db.transaction():
			message = self.get(message_id)
			if not message.delivered:
				self.db.set_message_delivered(message_id, True, format_ts(self.clock()))
		return self.get(message_id)

	def requeue(self, message_id: str) -> bool:
		"""Put a delivered message back on the queue.

		Returns True if the message changed state, False if it was still pending.
		"""
		with self.db.transaction():
			message = self.get(message_id)
			if not message.delivered:
				return False
			self.db.set_message_delivered(message_id, False, None)
		logger.info("Requeued message %s on %s", message_id, message.stream_id)
		return True

	def get(self, message_id: str) -> Message:
		message = self.db.get_message(message_id)
		if message is None:
			raise NotFoundError(f"Message not found: {message_id}")
		return message

	def pending_for_streams(self, stream_ids: Sequence[str]) -> list[Message]:
		return self.db.get_undelivered_messages(stream_ids)
