"""Tests for the append-only event store."""

from __future__ import annotations

import pytest

from conftest import FakeClock, make_mission, make_sortie, progress
from flight_recorder.errors import ConcurrencyError, ValidationError
from flight_recorder.models import NewEvent
from flight_recorder.recorder import FlightRecorder


class TestAppend:
	def test_assigns_increasing_sequences(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		events = recorder.events.get_by_stream("mission", mission_id)
		assert [e.event_type for e in events] == ["mission_created", "mission_started"]
		assert events[0].sequence < events[1].sequence
		assert all(e.id.startswith("evt-") for e in events)

	def test_latest_sequence_never_repeats(self, recorder: FlightRecorder) -> None:
		seen: list[int] = []
		mission_id = make_mission(recorder)
		seen.append(recorder.events.get_latest_sequence())
		for pct in (10, 20, 30):
			progress(recorder, mission_id, pct)
			seen.append(recorder.events.get_latest_sequence())
		with pytest.raises(ValidationError):
			recorder.events.append("mission", mission_id, [NewEvent("bogus", {})])
		seen.append(recorder.events.get_latest_sequence())
		progress(recorder, mission_id, 40)
		seen.append(recorder.events.get_latest_sequence())
		assert seen == sorted(seen)
		assert seen[-1] > seen[-2]
		assert len(set(seen[:-2])) == len(seen[:-2])

	def test_unknown_event_type(self, recorder: FlightRecorder) -> None:
		with pytest.raises(ValidationError, match="Unknown event type"):
			recorder.events.append("mission", "msn-1", [NewEvent("mission_exploded", {"mission_id": "msn-1"})])

	def test_unknown_stream_type(self, recorder: FlightRecorder) -> None:
		with pytest.raises(ValidationError, match="stream type"):
			recorder.events.append("fleet", "x", [NewEvent("mission_started", {"mission_id": "x"})])

	def test_batch_is_atomic(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		before = recorder.events.count()
		with pytest.raises(ValidationError):
			recorder.events.append("mission", mission_id, [
				NewEvent("mission_progressed", {"mission_id": mission_id, "progress_percent": 10}),
				NewEvent("mission_progressed", {"mission_id": mission_id, "progress_percent": 400}),
			])
		assert recorder.events.count() == before
		assert recorder.db.get_mission(mission_id).progress_percent == 0

	def test_projection_failure_rolls_back_batch(self, recorder: FlightRecorder) -> None:
		before = recorder.events.count()
		with pytest.raises(ValidationError, match="has not been created"):
			recorder.events.append("mission", "msn-ghost", [NewEvent("mission_started", {"mission_id": "msn-ghost"})])
		assert recorder.events.count() == before

	def test_duplicate_create_rejected(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		with pytest.raises(ValidationError, match="already exists"):
			recorder.events.append("mission", mission_id, [
				NewEvent("mission_created", {"mission_id": mission_id, "title": "Again"}),
			])

	def test_system_stream_has_no_projection(self, recorder: FlightRecorder) -> None:
		written = recorder.events.append("system", "ops", [
			NewEvent("system_note", {"scope": "ops", "message": "backup dir rotated", "level": "warning"}),
		])
		assert written[0].stream_type == "system"
		assert recorder.db.get_all_missions() == []
		assert recorder.events.count(stream_type="system") == 1

	def test_empty_batch(self, recorder: FlightRecorder) -> None:
		assert recorder.events.append("mission", "msn-1", []) == []

	def test_occurred_at_from_clock(self, recorder: FlightRecorder, clock: FakeClock) -> None:
		clock.advance(seconds=90)
		mission_id = make_mission(recorder)
		event = recorder.events.get_by_stream("mission", mission_id)[0]
		assert event.occurred_at.startswith("2025-06-01T12:01:30")

	def test_malformed_occurred_at_rejected(self, recorder: FlightRecorder, clock: FakeClock) -> None:
		mission_id = make_mission(recorder)
		before = recorder.events.count()
		with pytest.raises(ValidationError, match="Invalid occurred_at"):
			recorder.events.append("mission", mission_id, [
				NewEvent(
					"mission_progressed", {"mission_id": mission_id, "progress_percent": 10},
					occurred_at="yesterday",
				),
			])
		assert recorder.events.count() == before
		clock.advance(seconds=301)
		assert [c.mission_id for c in recorder.detector.find_stale()] == [mission_id]

	def test_supplied_occurred_at_is_normalized(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		written = recorder.events.append("mission", mission_id, [
			NewEvent("mission_paused", {"mission_id": mission_id}, occurred_at="2025-06-01T14:00:00+02:00"),
		])
		assert written[0].occurred_at == "2025-06-01T12:00:00.000000+00:00"
		stored = recorder.events.get(written[0].id)
		assert stored is not None
		assert stored.occurred_at == "2025-06-01T12:00:00.000000+00:00"

	def test_stored_payload_is_normalized(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		created = recorder.events.get_by_stream("mission", mission_id)[0]
		assert created.payload["description"] == ""
		assert "kind" not in created.payload


class TestOptimisticConcurrency:
	def test_expected_sequence_matches(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		head = recorder.events.get_stream_head("mission", mission_id)
		written = recorder.events.append("mission", mission_id, [
			NewEvent("mission_paused", {"mission_id": mission_id}),
		], expected_sequence=head)
		assert written[0].sequence > head

	def test_stale_expected_sequence(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		head = recorder.events.get_stream_head("mission", mission_id)
		progress(recorder, mission_id, 10)
		with pytest.raises(ConcurrencyError) as exc_info:
			recorder.events.append("mission", mission_id, [
				NewEvent("mission_paused", {"mission_id": mission_id}),
			], expected_sequence=head)
		assert exc_info.value.expected == head
		assert exc_info.value.actual > head

	def test_new_stream_expects_zero(self, recorder: FlightRecorder) -> None:
		written = recorder.events.append("mission", "msn-new", [
			NewEvent("mission_created", {"mission_id": "msn-new", "title": "Fresh"}),
		], expected_sequence=0)
		assert len(written) == 1


class TestQueries:
	def test_after_sequence(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		first = recorder.events.get_by_stream("mission", mission_id)[0]
		rest = recorder.events.get_by_stream("mission", mission_id, after_sequence=first.sequence)
		assert [e.event_type for e in rest] == ["mission_started"]

	def test_by_causation_and_correlation(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		cause = recorder.events.get_by_stream("mission", mission_id)[-1]
		recorder.events.append("mission", mission_id, [
			NewEvent(
				"mission_progressed", {"mission_id": mission_id, "progress_percent": 5},
				correlation_id="corr-1", causation_id=cause.id,
			),
		])
		caused = recorder.events.get_by_causation(cause.id)
		assert [e.event_type for e in caused] == ["mission_progressed"]
		assert caused[0].metadata.correlation_id == "corr-1"
		assert len(recorder.events.get_by_correlation("corr-1")) == 1

	def test_latest_activity_spans_sorties(self, recorder: FlightRecorder, clock: FakeClock) -> None:
		mission_id = make_mission(recorder)
		clock.advance(seconds=10)
		sortie_id = make_sortie(recorder, mission_id)
		latest = recorder.events.latest_activity([mission_id, sortie_id])
		assert latest is not None
		assert latest.stream_id == sortie_id

	def test_query_filters(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		progress(recorder, mission_id, 10)
		progress(recorder, mission_id, 20)
		hits = recorder.events.query(event_types=["mission_progressed"], limit=1)
		assert len(hits) == 1
		assert hits[0].payload["progress_percent"] == 10
		with pytest.raises(ValidationError):
			recorder.events.query(limit=0)

	def test_append_one_and_get(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		event = recorder.events.append_one(
			"mission", mission_id, "mission_paused", {"mission_id": mission_id, "reason": "lunch"},
			correlation_id="corr-9",
		)
		fetched = recorder.events.get(event.id)
		assert fetched is not None
		assert fetched.sequence == event.sequence
		assert fetched.payload["reason"] == "lunch"
		assert recorder.events.get("evt-missing") is None

	def test_count(self, recorder: FlightRecorder) -> None:
		mission_id = make_mission(recorder)
		make_sortie(recorder, mission_id)
		assert recorder.events.count() == 4
		assert recorder.events.count(stream_type="mission") == 2
		assert recorder.events.count(stream_id=mission_id) == 2
