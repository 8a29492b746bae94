"""Centralized defaults, closed vocabularies, and status transitions."""

from __future__ import annotations

# Stream types accepted by the event store
STREAM_MISSION = "mission"
STREAM_SORTIE = "sortie"
STREAM_SYSTEM = "system"
STREAM_TYPES: frozenset[str] = frozenset({STREAM_MISSION, STREAM_SORTIE, STREAM_SYSTEM})

# Aggregate statuses
STATUS_PLANNED = "planned"
STATUS_IN_PROGRESS = "in_progress"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
AGGREGATE_STATUSES: tuple[str, ...] = (
	STATUS_PLANNED,
	STATUS_IN_PROGRESS,
	STATUS_PAUSED,
	STATUS_COMPLETED,
	STATUS_FAILED,
	STATUS_CANCELLED,
)
TERMINAL_STATUSES: frozenset[str] = frozenset({STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED})

# Event kind -> resulting aggregate status (kinds absent here leave status unchanged)
EVENT_TO_STATUS: dict[str, str] = {
	"mission_created": STATUS_PLANNED,
	"mission_started": STATUS_IN_PROGRESS,
	"mission_paused": STATUS_PAUSED,
	"mission_resumed": STATUS_IN_PROGRESS,
	"mission_completed": STATUS_COMPLETED,
	"mission_failed": STATUS_FAILED,
	"mission_cancelled": STATUS_CANCELLED,
	"recovered": STATUS_IN_PROGRESS,
	"sortie_created": STATUS_PLANNED,
	"sortie_started": STATUS_IN_PROGRESS,
	"sortie_blocked": STATUS_PAUSED,
	"sortie_resumed": STATUS_IN_PROGRESS,
	"sortie_completed": STATUS_COMPLETED,
	"sortie_failed": STATUS_FAILED,
}

# Checkpoint triggers
TRIGGER_MANUAL = "manual"
TRIGGER_PROGRESS = "progress"
TRIGGER_ERROR = "error"
CHECKPOINT_TRIGGERS: frozenset[str] = frozenset({TRIGGER_MANUAL, TRIGGER_PROGRESS, TRIGGER_ERROR})

CHECKPOINT_SCHEMA_VERSION = "1.0"
SUPPORTED_SCHEMA_VERSIONS: frozenset[str] = frozenset({CHECKPOINT_SCHEMA_VERSION})

# Lock statuses
LOCK_ACTIVE = "active"
LOCK_RELEASED = "released"
LOCK_EXPIRED = "expired"
LOCK_FORCE_RELEASED = "force_released"

# Identifier prefixes
ID_PREFIXES: dict[str, str] = {
	"mission": "msn",
	"sortie": "srt",
	"lock": "lock",
	"message": "msg",
	"event": "evt",
	"checkpoint": "chk",
}

DEFAULT_LIMITS: dict[str, int] = {
	"inactivity_threshold_ms": 300_000,
	"lock_timeout_ms": 30_000,
	"retention_days": 7,
	"keep_per_mission": 5,
	"scan_interval_seconds": 60,
	"list_limit": 20,
}

DEFAULT_PROGRESS_THRESHOLDS: tuple[int, ...] = (25, 50, 75)

# Event kinds written by housekeeping; they do not count as mission activity
HOUSEKEEPING_EVENTS: frozenset[str] = frozenset({"checkpoint_pruned"})
