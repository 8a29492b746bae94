"""Append-only event log with per-stream optimistic concurrency."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from flight_recorder.constants import STREAM_MISSION, STREAM_SORTIE, STREAM_TYPES
from flight_recorder.db import Database
from flight_recorder.errors import ConcurrencyError, ValidationError
from flight_recorder.events import normalize, validate_for_stream
from flight_recorder.models import Clock, Event, EventMetadata, NewEvent, format_ts, new_id, parse_ts, utc_now
from flight_recorder.projections import Projector

logger = logging.getLogger(__name__)


class EventStore:
	"""Writes events and folds them into the projection tables atomically.

	A batch passed to :meth:`append` is validated in full before anything is
	written, then inserted and projected inside a single transaction. Sequence
	numbers come from an AUTOINCREMENT key, so they are never reused even when
	a batch rolls back.
	"""

	def __init__(self, db: Database, clock: Clock = utc_now) -> None:
		self.db = db
		self.clock = clock
		self.projector = Projector(db)

	def append(
		self,
		stream_type: str,
		stream_id: str,
		events: Sequence[NewEvent],
		expected_sequence: int | None = None,
	) -> list[Event]:
		"""Append a batch of events to one stream.

		Args:
			stream_type: One of ``mission``, ``sortie``, ``system``.
			stream_id: Aggregate id the events belong to.
			events: Events to append, in order.
			expected_sequence: If given, the caller's view of the stream head
				(0 for a new stream). A mismatch raises ConcurrencyError.

		Raises:
			ValidationError: Unknown stream or event type, or a malformed payload.
			ConcurrencyError: ``expected_sequence`` does not match the stream head.
		"""
		if stream_type not in STREAM_TYPES:
			raise ValidationError(f"Unknown stream type: {stream_type!r}")
		if not stream_id:
			raise ValidationError("stream_id is required")
		if not events:
			return []

		payloads = [
			normalize(validate_for_stream(e.event_type, e.payload, stream_type, stream_id))
			for e in events
		]
		occurred = [_occurred_at(e) for e in events]

		written: list[Event] = []
		with self.db.transaction():
			if expected_sequence is not None:
				head = self.db.get_stream_head(stream_type, stream_id)
				if head != expected_sequence:
					raise ConcurrencyError(stream_type, stream_id, expected_sequence, head)
			for new, payload, when in zip(events, payloads, occurred):
				event = Event(
					id=new_id("event"),
					stream_type=stream_type,
					stream_id=stream_id,
					event_type=new.event_type,
					payload=payload,
					metadata=EventMetadata(
						correlation_id=new.correlation_id,
						causation_id=new.causation_id,
					),
					occurred_at=when or format_ts(self.clock()),
				)
				event.sequence = self.db.insert_event(event)
				self.projector.apply(event)
				written.append(event)

		logger.info(
			"Appended %d event(s) to %s/%s (seq %d-%d)",
			len(written), stream_type, stream_id, written[0].sequence, written[-1].sequence,
		)
		return written

	def append_one(
		self,
		stream_type: str,
		stream_id: str,
		event_type: str,
		payload: dict | None = None,
		correlation_id: str | None = None,
		causation_id: str | None = None,
	) -> Event:
		"""Convenience wrapper around :meth:`append` for a single event."""
		new = NewEvent(
			event_type=event_type,
			payload=payload or {},
			correlation_id=correlation_id,
			causation_id=causation_id,
		)
		return self.append(stream_type, stream_id, [new])[0]

	def get(self, event_id: str) -> Event | None:
		return self.db.get_event(event_id)

	def get_by_stream(
		self, stream_type: str, stream_id: str, after_sequence: int | None = None,
	) -> list[Event]:
		return self.db.get_events_for_stream(stream_type, stream_id, after_sequence)

	def get_by_causation(self, causation_id: str) -> list[Event]:
		return self.db.get_events_by_causation(causation_id)

	def get_by_correlation(self, correlation_id: str) -> list[Event]:
		return self.db.get_events_by_correlation(correlation_id)

	def get_latest_sequence(self) -> int:
		return self.db.get_latest_sequence()

	def get_stream_head(self, stream_type: str, stream_id: str) -> int:
		return self.db.get_stream_head(stream_type, stream_id)

	def latest_activity(
		self, stream_ids: Sequence[str], exclude_types: Sequence[str] = (),
	) -> Event | None:
		"""Most recent mission or sortie event on any of *stream_ids*, by sequence.

		System streams never count, even when a note is scoped to a mission id.
		"""
		return self.db.get_latest_event_for_streams(
			stream_ids, exclude_types, stream_types=(STREAM_MISSION, STREAM_SORTIE),
		)

	def count(self, stream_type: str | None = None, stream_id: str | None = None) -> int:
		return self.db.count_events(stream_type, stream_id)

	def query(
		self,
		event_types: Sequence[str] | None = None,
		from_sequence: int | None = None,
		to_sequence: int | None = None,
		limit: int = 100,
	) -> list[Event]:
		if limit <= 0:
			raise ValidationError(f"limit must be positive, got {limit}")
		return self.db.query_events(event_types, from_sequence, to_sequence, limit)


def _occurred_at(event: NewEvent) -> str | None:
	"""Caller-supplied timestamp in stored form, or None to stamp from the clock."""
	if event.occurred_at is None:
		return None
	try:
		return format_ts(parse_ts(event.occurred_at))
	except (TypeError, ValueError, AttributeError) as exc:
		raise ValidationError(
			f"Invalid occurred_at for {event.event_type}: {event.occurred_at!r}",
		) from exc
