"""Data models for flight-recorder state."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from flight_recorder.constants import (
	CHECKPOINT_SCHEMA_VERSION,
	ID_PREFIXES,
	LOCK_ACTIVE,
	STATUS_PLANNED,
	TRIGGER_MANUAL,
)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
	return datetime.now(timezone.utc)


def format_ts(moment: datetime) -> str:
	"""Render a timestamp with fixed precision so stored values sort lexicographically."""
	if moment.tzinfo is None:
		moment = moment.replace(tzinfo=timezone.utc)
	return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: str) -> datetime:
	parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


def _now_iso() -> str:
	return format_ts(utc_now())


def new_id(kind: str) -> str:
	"""Short prefixed identifier, e.g. ``chk-1a2b3c4d``."""
	return f"{ID_PREFIXES[kind]}-{uuid4().hex[:8]}"


def elapsed_ms(start: str, end: datetime) -> int:
	return max(0, int((end - parse_ts(start)).total_seconds() * 1000))


# -- Events --


@dataclass
class EventMetadata:
	correlation_id: str | None = None
	causation_id: str | None = None


@dataclass
class NewEvent:
	"""An event submitted to the store, before a sequence is assigned."""

	event_type: str
	payload: dict[str, Any] = field(default_factory=dict)
	correlation_id: str | None = None
	causation_id: str | None = None
	occurred_at: str | None = None


@dataclass
class Event:
	"""An immutable, sequenced record in the event log."""

	id: str = field(default_factory=lambda: new_id("event"))
	stream_type: str = ""
	stream_id: str = ""
	event_type: str = ""
	payload: dict[str, Any] = field(default_factory=dict)
	metadata: EventMetadata = field(default_factory=EventMetadata)
	sequence: int = 0
	occurred_at: str = field(default_factory=_now_iso)


# -- Aggregates --


@dataclass
class Mission:
	"""Current-state view of a mission, derived by folding its events."""

	id: str = field(default_factory=lambda: new_id("mission"))
	title: str = ""
	description: str = ""
	status: str = STATUS_PLANNED
	progress_percent: int = 0
	tasks: list[str] = field(default_factory=list)
	metadata: dict[str, Any] = field(default_factory=dict)
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)
	started_at: str | None = None
	completed_at: str | None = None


@dataclass
class Sortie:
	"""A unit of work inside a mission; mission_id is a lookup-only reference."""

	id: str = field(default_factory=lambda: new_id("sortie"))
	mission_id: str | None = None
	title: str = ""
	status: str = STATUS_PLANNED
	progress_percent: int = 0
	assigned_to: str | None = None
	files: list[str] = field(default_factory=list)
	progress_notes: str = ""
	blocked_reason: str = ""
	tasks: list[str] = field(default_factory=list)
	metadata: dict[str, Any] = field(default_factory=dict)
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)
	started_at: str | None = None
	completed_at: str | None = None


# -- Locks and messages --


@dataclass
class Lock:
	"""Mutual-exclusion record over an externally identified resource."""

	id: str = field(default_factory=lambda: new_id("lock"))
	resource_key: str = ""
	holder_id: str = ""
	acquired_at: str = field(default_factory=_now_iso)
	released_at: str | None = None
	purpose: str = "edit"
	timeout_ms: int = 30_000
	expires_at: str = ""
	status: str = LOCK_ACTIVE

	def is_active(self, now: datetime) -> bool:
		if self.released_at is not None:
			return False
		return elapsed_ms(self.acquired_at, now) < self.timeout_ms


@dataclass
class Message:
	id: str = field(default_factory=lambda: new_id("message"))
	stream_id: str = ""
	sender_id: str = ""
	payload: dict[str, Any] = field(default_factory=dict)
	delivered: bool = False
	created_at: str = field(default_factory=_now_iso)
	delivered_at: str | None = None


# -- Checkpoints --


@dataclass
class SortieSnapshot:
	id: str = ""
	mission_id: str | None = None
	title: str = ""
	status: str = STATUS_PLANNED
	progress_percent: int = 0
	assigned_to: str | None = None
	files: list[str] = field(default_factory=list)
	progress_notes: str = ""

	@classmethod
	def of(cls, sortie: Sortie) -> SortieSnapshot:
		return cls(
			id=sortie.id,
			mission_id=sortie.mission_id,
			title=sortie.title,
			status=sortie.status,
			progress_percent=sortie.progress_percent,
			assigned_to=sortie.assigned_to,
			files=list(sortie.files),
			progress_notes=sortie.progress_notes,
		)


@dataclass
class LockSnapshot:
	id: str = ""
	resource_key: str = ""
	holder_id: str = ""
	acquired_at: str = ""
	purpose: str = "edit"
	timeout_ms: int = 30_000

	@classmethod
	def of(cls, lock: Lock) -> LockSnapshot:
		return cls(
			id=lock.id,
			resource_key=lock.resource_key,
			holder_id=lock.holder_id,
			acquired_at=lock.acquired_at,
			purpose=lock.purpose,
			timeout_ms=lock.timeout_ms,
		)


@dataclass
class MessageSnapshot:
	id: str = ""
	stream_id: str = ""
	sender_id: str = ""
	payload: dict[str, Any] = field(default_factory=dict)
	delivered: bool = False
	created_at: str = ""

	@classmethod
	def of(cls, message: Message) -> MessageSnapshot:
		return cls(
			id=message.id,
			stream_id=message.stream_id,
			sender_id=message.sender_id,
			payload=dict(message.payload),
			delivered=message.delivered,
			created_at=message.created_at,
		)


@dataclass
class RecoveryContext:
	"""Human-readable narrative stored with a checkpoint."""

	last_action: str = ""
	next_steps: list[str] = field(default_factory=list)
	blockers: list[str] = field(default_factory=list)
	files_modified: list[str] = field(default_factory=list)
	summary: str = ""
	elapsed_ms: int = 0
	last_activity_at: str | None = None


@dataclass
class Checkpoint:
	"""Point-in-time snapshot of a mission; immutable except consumed_at."""

	id: str = field(default_factory=lambda: new_id("checkpoint"))
	mission_id: str = ""
	created_at: str = field(default_factory=_now_iso)
	trigger: str = TRIGGER_MANUAL
	trigger_details: str | None = None
	progress_percent: int = 0
	sorties_snapshot: list[SortieSnapshot] = field(default_factory=list)
	active_locks_snapshot: list[LockSnapshot] = field(default_factory=list)
	pending_messages_snapshot: list[MessageSnapshot] = field(default_factory=list)
	recovery_context: RecoveryContext = field(default_factory=RecoveryContext)
	created_by: str = "system"
	schema_version: str = CHECKPOINT_SCHEMA_VERSION
	consumed_at: str | None = None
	metadata: dict[str, Any] = field(default_factory=dict)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


# -- Recovery --


@dataclass
class RecoveryCandidate:
	"""A mission that has gone silent, optionally paired with a restore point."""

	mission_id: str
	mission_title: str
	last_activity_at: str
	inactivity_duration_ms: int
	checkpoint_id: str | None = None
	checkpoint_progress: int | None = None
	checkpoint_timestamp: str | None = None

	@property
	def recoverable(self) -> bool:
		return self.checkpoint_id is not None


@dataclass
class RestoredCounts:
	sorties: int = 0
	locks: int = 0
	messages: int = 0


@dataclass
class RestoreResult:
	success: bool = False
	checkpoint_id: str = ""
	mission_id: str = ""
	dry_run: bool = False
	recovery_context: RecoveryContext = field(default_factory=RecoveryContext)
	restored: RestoredCounts = field(default_factory=RestoredCounts)
	errors: list[str] = field(default_factory=list)
	warnings: list[str] = field(default_factory=list)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)
