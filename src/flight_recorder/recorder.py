"""Wires the recorder components around one database connection."""

from __future__ import annotations

import logging
from pathlib import Path

from flight_recorder.backup import CheckpointBackup
from flight_recorder.checkpoints import CheckpointService
from flight_recorder.config import RecorderConfig
from flight_recorder.db import Database
from flight_recorder.detector import RecoveryDetector, RecoveryMonitor
from flight_recorder.event_store import EventStore
from flight_recorder.locks import LockRegistry
from flight_recorder.mailbox import Mailbox
from flight_recorder.models import Clock, utc_now
from flight_recorder.restorer import StateRestorer
from flight_recorder.tracing import RecorderTracer

logger = logging.getLogger(__name__)


class FlightRecorder:
	"""Every component sharing one Database, clock and config.

	Components are plain attributes (``events``, ``locks``, ``mailbox``,
	``checkpoints``, ``detector``, ``restorer``) so callers use their
	methods directly.
	"""

	def __init__(
		self,
		db: Database,
		config: RecorderConfig | None = None,
		clock: Clock = utc_now,
		backup: CheckpointBackup | None = None,
		tracer: RecorderTracer | None = None,
	) -> None:
		self.db = db
		self.config = config or RecorderConfig()
		self.clock = clock
		self.tracer = tracer or RecorderTracer(self.config.tracing)
		self.backup = backup
		self.events = EventStore(db, clock=clock)
		self.locks = LockRegistry(db, clock=clock, default_timeout_ms=self.config.locks.default_timeout_ms)
		self.mailbox = Mailbox(db, clock=clock)
		self.checkpoints = CheckpointService(
			db, self.events, self.locks, self.mailbox,
			backup=backup, config=self.config, clock=clock, tracer=self.tracer,
		)
		self.detector = RecoveryDetector(
			db, self.events, config=self.config.recovery, clock=clock, tracer=self.tracer,
		)
		self.restorer = StateRestorer(
			db, self.events, self.locks, self.mailbox, self.checkpoints,
			config=self.config, clock=clock, tracer=self.tracer,
		)

	@classmethod
	def open(cls, config: RecorderConfig, clock: Clock = utc_now) -> FlightRecorder:
		"""Open the configured database file and backup directory."""
		db_path = config.storage.resolved_db_path
		db_path.parent.mkdir(parents=True, exist_ok=True)
		db = Database(db_path, busy_timeout_ms=config.storage.busy_timeout_ms)
		backup = CheckpointBackup(config.storage.resolved_backup_dir)
		logger.debug("Flight recorder opened at %s (backup %s)", db_path, backup.directory)
		return cls(db, config=config, clock=clock, backup=backup)

	@classmethod
	def in_memory(cls, config: RecorderConfig | None = None, clock: Clock = utc_now,
			backup_dir: str | Path | None = None) -> FlightRecorder:
		backup = CheckpointBackup(backup_dir) if backup_dir is not None else None
		return cls(Database(":memory:"), config=config, clock=clock, backup=backup)

	def monitor(self, interval: int | None = None) -> RecoveryMonitor:
		return RecoveryMonitor(
			self.detector,
			interval=self.config.recovery.scan_interval_seconds if interval is None else interval,
		)

	def close(self) -> None:
		self.db.close()

	def __enter__(self) -> FlightRecorder:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()
