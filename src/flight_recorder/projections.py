"""Mission and sortie projections: pure folds plus the table writer."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from typing import TYPE_CHECKING

from flight_recorder.constants import (
	EVENT_TO_STATUS,
	STATUS_PAUSED,
	STREAM_MISSION,
	STREAM_SORTIE,
	TERMINAL_STATUSES,
)
from flight_recorder.db import Database
from flight_recorder.errors import ValidationError
from flight_recorder.events import (
	MissionCreated,
	MissionProgressed,
	MissionStarted,
	Recovered,
	SortieBlocked,
	SortieCompleted,
	SortieCreated,
	SortieProgressed,
	SortieRestored,
	SortieResumed,
	SortieStarted,
	parse_payload,
)
from flight_recorder.models import Event, Mission, Sortie

if TYPE_CHECKING:
	from flight_recorder.event_store import EventStore

logger = logging.getLogger(__name__)


def apply_mission(mission: Mission | None, event: Event) -> Mission | None:
	"""Return the mission state after *event*. The input is not modified.

	Events other than mission_created on a missing mission are skipped.
	"""
	payload = parse_payload(event.event_type, event.payload)
	if isinstance(payload, MissionCreated):
		return Mission(
			id=payload.mission_id,
			title=payload.title,
			description=payload.description,
			tasks=list(payload.tasks),
			metadata=dict(payload.metadata),
			created_at=event.occurred_at,
			updated_at=event.occurred_at,
		)
	if mission is None:
		return None

	mission = replace(mission, updated_at=event.occurred_at)
	status = EVENT_TO_STATUS.get(event.event_type)
	if status is not None:
		mission.status = status
	if isinstance(payload, MissionStarted) and mission.started_at is None:
		mission.started_at = event.occurred_at
	elif isinstance(payload, (MissionProgressed, Recovered)):
		mission.progress_percent = payload.progress_percent
	if mission.status in TERMINAL_STATUSES:
		mission.completed_at = mission.completed_at or event.occurred_at
	else:
		mission.completed_at = None
	return mission


def apply_sortie(sortie: Sortie | None, event: Event) -> Sortie | None:
	"""Return the sortie state after *event*. The input is not modified."""
	payload = parse_payload(event.event_type, event.payload)
	if isinstance(payload, SortieCreated):
		return Sortie(
			id=payload.sortie_id,
			mission_id=payload.mission_id,
			title=payload.title,
			assigned_to=payload.assigned_to,
			files=list(payload.files),
			tasks=list(payload.tasks),
			metadata=dict(payload.metadata),
			created_at=event.occurred_at,
			updated_at=event.occurred_at,
		)
	if sortie is None:
		return None

	sortie = replace(sortie, updated_at=event.occurred_at, files=list(sortie.files))
	status = EVENT_TO_STATUS.get(event.event_type)
	if status is not None:
		sortie.status = status

	if isinstance(payload, SortieStarted):
		sortie.started_at = sortie.started_at or event.occurred_at
	elif isinstance(payload, SortieProgressed):
		sortie.progress_percent = payload.progress_percent
		if payload.notes:
			sortie.progress_notes = payload.notes
	elif isinstance(payload, SortieBlocked):
		sortie.blocked_reason = payload.reason
	elif isinstance(payload, SortieResumed):
		sortie.blocked_reason = ""
	elif isinstance(payload, SortieCompleted):
		if payload.result == "success":
			sortie.progress_percent = 100
		if payload.notes:
			sortie.progress_notes = payload.notes
	elif isinstance(payload, SortieRestored):
		sortie.status = payload.status
		sortie.progress_percent = payload.progress_percent
		sortie.assigned_to = payload.assigned_to
		sortie.files = list(payload.files)
		sortie.progress_notes = payload.progress_notes
		if payload.status != STATUS_PAUSED:
			sortie.blocked_reason = ""

	if sortie.status in TERMINAL_STATUSES:
		sortie.completed_at = sortie.completed_at or event.occurred_at
	else:
		sortie.completed_at = None
	return sortie


def fold_mission(events: Iterable[Event]) -> Mission | None:
	mission: Mission | None = None
	for event in events:
		mission = apply_mission(mission, event)
	return mission


def fold_sortie(events: Iterable[Event]) -> Sortie | None:
	sortie: Sortie | None = None
	for event in events:
		sortie = apply_sortie(sortie, event)
	return sortie


def replay_mission(store: EventStore, mission_id: str) -> Mission | None:
	"""Rebuild a mission from sequence 0 of its stream, ignoring the table."""
	return fold_mission(store.get_by_stream(STREAM_MISSION, mission_id))


def replay_sortie(store: EventStore, sortie_id: str) -> Sortie | None:
	return fold_sortie(store.get_by_stream(STREAM_SORTIE, sortie_id))


class Projector:
	"""Keeps the missions and sorties tables in step with appended events.

	Must be called inside the transaction that inserted the event so the
	projection and the log commit together.
	"""

	def __init__(self, db: Database) -> None:
		self.db = db

	def apply(self, event: Event) -> None:
		if event.stream_type == STREAM_MISSION:
			self._apply_mission(event)
		elif event.stream_type == STREAM_SORTIE:
			self._apply_sortie(event)

	def _apply_mission(self, event: Event) -> None:
		current = self.db.get_mission(event.stream_id)
		if current is not None and event.event_type == "mission_created":
			raise ValidationError(f"Mission {event.stream_id} already exists")
		updated = apply_mission(current, event)
		if updated is None:
			raise ValidationError(
				f"Cannot apply {event.event_type}: mission {event.stream_id} has not been created"
			)
		if current is None:
			self.db.insert_mission(updated, last_sequence=event.sequence)
		else:
			self.db.update_mission(updated, last_sequence=event.sequence)
			if current.status != updated.status:
				logger.info(
					"Mission %s: %s -> %s", updated.id, current.status, updated.status,
				)

	def _apply_sortie(self, event: Event) -> None:
		current = self.db.get_sortie(event.stream_id)
		if current is not None and event.event_type == "sortie_created":
			raise ValidationError(f"Sortie {event.stream_id} already exists")
		updated = apply_sortie(current, event)
		if updated is None:
			raise ValidationError(
				f"Cannot apply {event.event_type}: sortie {event.stream_id} has not been created"
			)
		if current is None:
			self.db.insert_sortie(updated, last_sequence=event.sequence)
		else:
			self.db.update_sortie(updated, last_sequence=event.sequence)
			if current.status != updated.status:
				logger.debug(
					"Sortie %s: %s -> %s", updated.id, current.status, updated.status,
				)
