"""Shared pytest fixtures and factory functions for flight-recorder tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from flight_recorder.backup import CheckpointBackup
from flight_recorder.config import RecorderConfig
from flight_recorder.db import Database
from flight_recorder.models import Lock, NewEvent, format_ts, new_id
from flight_recorder.recorder import FlightRecorder

START = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
	"""Manually advanced clock; call it to read the time."""

	def __init__(self, start: datetime = START) -> None:
		self.now = start

	def __call__(self) -> datetime:
		return self.now

	def advance(self, ms: int = 0, seconds: float = 0) -> None:
		self.now += timedelta(milliseconds=ms, seconds=seconds)


@pytest.fixture()
def db() -> Database:
	"""In-memory Database with schema initialized."""
	return Database(":memory:")


@pytest.fixture()
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture()
def config() -> RecorderConfig:
	return RecorderConfig()


@pytest.fixture()
def recorder(db: Database, clock: FakeClock, config: RecorderConfig, tmp_path: Path) -> FlightRecorder:
	"""FlightRecorder on an in-memory database with a tmp_path checkpoint mirror."""
	return FlightRecorder(
		db, config=config, clock=clock, backup=CheckpointBackup(tmp_path / "checkpoints"),
	)


def make_mission(rec: FlightRecorder, title: str = "Test mission", start: bool = True, **overrides: Any) -> str:
	"""Create (and by default start) a mission through the event store. Returns its id."""
	mission_id = overrides.pop("mission_id", None) or new_id("mission")
	payload: dict[str, Any] = {"mission_id": mission_id, "title": title}
	payload.update(overrides)
	events = [NewEvent("mission_created", payload)]
	if start:
		events.append(NewEvent("mission_started", {"mission_id": mission_id}))
	rec.events.append("mission", mission_id, events)
	return mission_id


def make_sortie(
	rec: FlightRecorder,
	mission_id: str,
	title: str = "Test sortie",
	start: bool = True,
	**overrides: Any,
) -> str:
	"""Create (and by default start) a sortie under *mission_id*. Returns its id."""
	sortie_id = overrides.pop("sortie_id", None) or new_id("sortie")
	payload: dict[str, Any] = {"sortie_id": sortie_id, "mission_id": mission_id, "title": title}
	payload.update(overrides)
	events = [NewEvent("sortie_created", payload)]
	if start:
		events.append(NewEvent("sortie_started", {"sortie_id": sortie_id}))
	rec.events.append("sortie", sortie_id, events)
	return sortie_id


def progress(rec: FlightRecorder, mission_id: str, percent: int, note: str = "") -> None:
	rec.events.append("mission", mission_id, [
		NewEvent("mission_progressed", {"mission_id": mission_id, "progress_percent": percent, "note": note}),
	])


def make_lock(**overrides: Any) -> Lock:
	"""Create a Lock with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "lock-00000001",
		"resource_key": "/a.txt",
		"holder_id": "h1",
		"acquired_at": format_ts(START),
		"expires_at": format_ts(START + timedelta(seconds=30)),
	}
	defaults.update(overrides)
	return Lock(**defaults)
