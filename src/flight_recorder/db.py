"""SQLite storage for flight-recorder state."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Sequence
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Generator

from pydantic import TypeAdapter

from flight_recorder.constants import SUPPORTED_SCHEMA_VERSIONS
from flight_recorder.errors import TransactionError, UnsupportedSchemaError
from flight_recorder.models import (
	Checkpoint,
	Event,
	EventMetadata,
	Lock,
	LockSnapshot,
	Message,
	MessageSnapshot,
	Mission,
	RecoveryContext,
	Sortie,
	SortieSnapshot,
)

logger = logging.getLogger(__name__)

_SORTIE_SNAPSHOTS = TypeAdapter(list[SortieSnapshot])
_LOCK_SNAPSHOTS = TypeAdapter(list[LockSnapshot])
_MESSAGE_SNAPSHOTS = TypeAdapter(list[MessageSnapshot])
_RECOVERY_CONTEXT = TypeAdapter(RecoveryContext)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS events (
	sequence INTEGER PRIMARY KEY AUTOINCREMENT,
	id TEXT NOT NULL UNIQUE,
	stream_type TEXT NOT NULL,
	stream_id TEXT NOT NULL,
	event_type TEXT NOT NULL,
	payload TEXT NOT NULL DEFAULT '{}',
	correlation_id TEXT,
	causation_id TEXT,
	occurred_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_stream ON events(stream_type, stream_id, sequence);
CREATE INDEX IF NOT EXISTS idx_events_stream_id ON events(stream_id, sequence);
CREATE INDEX IF NOT EXISTS idx_events_causation ON events(causation_id);
CREATE INDEX IF NOT EXISTS idx_events_correlation ON events(correlation_id);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);

CREATE TABLE IF NOT EXISTS missions (
	id TEXT PRIMARY KEY,
	title TEXT NOT NULL DEFAULT '',
	description TEXT NOT NULL DEFAULT '',
	status TEXT NOT NULL DEFAULT 'planned',
	progress_percent INTEGER NOT NULL DEFAULT 0,
	tasks TEXT NOT NULL DEFAULT '[]',
	metadata TEXT NOT NULL DEFAULT '{}',
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL,
	started_at TEXT,
	completed_at TEXT,
	last_sequence INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_missions_status ON missions(status);

CREATE TABLE IF NOT EXISTS sorties (
	id TEXT PRIMARY KEY,
	mission_id TEXT,
	title TEXT NOT NULL DEFAULT '',
	status TEXT NOT NULL DEFAULT 'planned',
	progress_percent INTEGER NOT NULL DEFAULT 0,
	assigned_to TEXT,
	files TEXT NOT NULL DEFAULT '[]',
	progress_notes TEXT NOT NULL DEFAULT '',
	blocked_reason TEXT NOT NULL DEFAULT '',
	tasks TEXT NOT NULL DEFAULT '[]',
	metadata TEXT NOT NULL DEFAULT '{}',
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL,
	started_at TEXT,
	completed_at TEXT,
	last_sequence INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_sorties_mission ON sorties(mission_id);

CREATE TABLE IF NOT EXISTS locks (
	id TEXT PRIMARY KEY,
	resource_key TEXT NOT NULL,
	holder_id TEXT NOT NULL,
	acquired_at TEXT NOT NULL,
	released_at TEXT,
	purpose TEXT NOT NULL DEFAULT 'edit',
	timeout_ms INTEGER NOT NULL DEFAULT 30000,
	expires_at TEXT NOT NULL,
	status TEXT NOT NULL DEFAULT 'active'
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_locks_held ON locks(resource_key) WHERE released_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_locks_holder ON locks(holder_id);

CREATE TABLE IF NOT EXISTS messages (
	id TEXT PRIMARY KEY,
	stream_id TEXT NOT NULL,
	sender_id TEXT NOT NULL DEFAULT '',
	payload TEXT NOT NULL DEFAULT '{}',
	delivered INTEGER NOT NULL DEFAULT 0,
	created_at TEXT NOT NULL,
	delivered_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_messages_stream ON messages(stream_id, delivered);

CREATE TABLE IF NOT EXISTS checkpoints (
	id TEXT PRIMARY KEY,
	mission_id TEXT NOT NULL,
	created_at TEXT NOT NULL,
	trigger TEXT NOT NULL,
	trigger_details TEXT,
	progress_percent INTEGER NOT NULL DEFAULT 0,
	sorties_snapshot TEXT NOT NULL DEFAULT '[]',
	active_locks_snapshot TEXT NOT NULL DEFAULT '[]',
	pending_messages_snapshot TEXT NOT NULL DEFAULT '[]',
	recovery_context TEXT NOT NULL DEFAULT '{}',
	created_by TEXT NOT NULL DEFAULT 'system',
	schema_version TEXT NOT NULL,
	consumed_at TEXT,
	metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_mission ON checkpoints(mission_id, created_at);

CREATE TABLE IF NOT EXISTS checkpoint_thresholds (
	mission_id TEXT NOT NULL,
	threshold INTEGER NOT NULL,
	checkpoint_id TEXT NOT NULL,
	PRIMARY KEY (mission_id, threshold)
);
"""


class Database:
	"""SQLite database for flight-recorder state.

	The connection runs in autocommit mode; every write path goes through
	:meth:`transaction`, which issues ``BEGIN IMMEDIATE`` at the outermost
	level and a SAVEPOINT for nested calls.
	"""

	def __init__(self, path: str | Path = ":memory:", busy_timeout_ms: int = 5000) -> None:
		db_path = str(path)
		self.path = db_path
		self.conn = sqlite3.connect(db_path, isolation_level=None)
		self.conn.row_factory = sqlite3.Row
		self._depth = 0
		logger.debug("Opened database connection: %s", db_path)
		if db_path != ":memory:":
			self.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
			self.conn.execute("PRAGMA journal_mode=WAL")
			logger.debug("WAL mode activated for %s", db_path)
		self._create_tables()

	@staticmethod
	def _validate_identifier(name: str) -> None:
		"""Validate a SQL identifier to prevent injection in dynamic ALTER TABLE statements."""
		if not name or len(name) > 64 or not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", name):
			raise ValueError(f"Invalid SQL identifier: {name!r}")

	def _create_tables(self) -> None:
		self.conn.executescript(SCHEMA_SQL)
		self._migrate_status_columns()

	def _migrate_status_columns(self) -> None:
		"""Add lock status and checkpoint metadata columns to databases that predate them."""
		migrations = [
			("locks", "status", "TEXT NOT NULL DEFAULT 'active'"),
			("checkpoints", "metadata", "TEXT NOT NULL DEFAULT '{}'"),
		]
		for table, column, col_type in migrations:
			self._validate_identifier(table)
			self._validate_identifier(column)
			try:
				self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")  # noqa: S608
				logger.debug("Migration: added column %s.%s", table, column)
			except sqlite3.OperationalError as exc:
				if "duplicate column name" in str(exc):
					pass
				else:
					logger.warning("Migration failed for %s.%s: %s", table, column, exc)
					raise

	def close(self) -> None:
		logger.debug("Closing database connection")
		self.conn.close()

	def __enter__(self) -> Database:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	@property
	def in_transaction(self) -> bool:
		return self._depth > 0

	@contextmanager
	def transaction(self) -> Generator[sqlite3.Connection, None, None]:
		"""Context manager for explicit write transactions.

		Commits on success, rolls back on exception. Nested calls join the
		outer transaction through a savepoint, so an inner failure only undoes
		the inner work when the caller handles the exception. Storage errors
		surface as TransactionError.
		"""
		savepoint = f"sp_{self._depth}" if self._depth else ""
		try:
			self.conn.execute(f"SAVEPOINT {savepoint}" if savepoint else "BEGIN IMMEDIATE")
		except sqlite3.Error as exc:
			raise TransactionError(f"Could not open transaction: {exc}") from exc
		self._depth += 1
		try:
			yield self.conn
		except BaseException as exc:
			self._depth -= 1
			self._rollback(savepoint)
			if isinstance(exc, sqlite3.Error):
				raise TransactionError(f"Transaction rolled back: {exc}") from exc
			raise
		else:
			self._depth -= 1
			try:
				self.conn.execute(f"RELEASE {savepoint}" if savepoint else "COMMIT")
			except sqlite3.Error as exc:
				self._rollback(savepoint)
				raise TransactionError(f"Commit failed: {exc}") from exc

	def _rollback(self, savepoint: str) -> None:
		if savepoint:
			self.conn.execute(f"ROLLBACK TO {savepoint}")
			self.conn.execute(f"RELEASE {savepoint}")
		elif self.conn.in_transaction:
			self.conn.execute("ROLLBACK")

	# -- Events --

	def insert_event(self, event: Event) -> int:
		"""Insert an event row and return its assigned sequence."""
		cursor = self.conn.execute(
			"""INSERT INTO events
			(id, stream_type, stream_id, event_type, payload,
			 correlation_id, causation_id, occurred_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				event.id, event.stream_type, event.stream_id, event.event_type,
				json.dumps(event.payload), event.metadata.correlation_id,
				event.metadata.causation_id, event.occurred_at,
			),
		)
		return int(cursor.lastrowid or 0)

	def get_events_for_stream(
		self, stream_type: str, stream_id: str, after_sequence: int | None = None,
	) -> list[Event]:
		rows = self.conn.execute(
			"""SELECT * FROM events
			WHERE stream_type=? AND stream_id=? AND sequence > ?
			ORDER BY sequence ASC""",
			(stream_type, stream_id, after_sequence or 0),
		).fetchall()
		return [self._row_to_event(r) for r in rows]

	def get_events_by_causation(self, causation_id: str) -> list[Event]:
		rows = self.conn.execute(
			"SELECT * FROM events WHERE causation_id=? ORDER BY sequence ASC",
			(causation_id,),
		).fetchall()
		return [self._row_to_event(r) for r in rows]

	def get_events_by_correlation(self, correlation_id: str) -> list[Event]:
		rows = self.conn.execute(
			"SELECT * FROM events WHERE correlation_id=? ORDER BY sequence ASC",
			(correlation_id,),
		).fetchall()
		return [self._row_to_event(r) for r in rows]

	def get_event(self, event_id: str) -> Event | None:
		row = self.conn.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_event(row)

	def get_latest_sequence(self) -> int:
		row = self.conn.execute("SELECT COALESCE(MAX(sequence), 0) AS seq FROM events").fetchone()
		return int(row["seq"])

	def get_stream_head(self, stream_type: str, stream_id: str) -> int:
		row = self.conn.execute(
			"SELECT COALESCE(MAX(sequence), 0) AS seq FROM events WHERE stream_type=? AND stream_id=?",
			(stream_type, stream_id),
		).fetchone()
		return int(row["seq"])

	def get_latest_event_for_streams(
		self,
		stream_ids: Sequence[str],
		exclude_types: Sequence[str] = (),
		stream_types: Sequence[str] = (),
	) -> Event | None:
		"""Newest event across any of the given stream ids, optionally limited to *stream_types*."""
		if not stream_ids:
			return None
		sql = f"SELECT * FROM events WHERE stream_id IN ({', '.join('?' for _ in stream_ids)})"
		params: list[Any] = list(stream_ids)
		if stream_types:
			sql += f" AND stream_type IN ({', '.join('?' for _ in stream_types)})"
			params.extend(stream_types)
		if exclude_types:
			sql += f" AND event_type NOT IN ({', '.join('?' for _ in exclude_types)})"
			params.extend(exclude_types)
		row = self.conn.execute(
			sql + " ORDER BY sequence DESC LIMIT 1", tuple(params),
		).fetchone()
		if row is None:
			return None
		return self._row_to_event(row)

	def query_events(
		self,
		event_types: Sequence[str] | None = None,
		from_sequence: int | None = None,
		to_sequence: int | None = None,
		limit: int = 100,
		descending: bool = False,
	) -> list[Event]:
		clauses: list[str] = []
		params: list[Any] = []
		if event_types:
			clauses.append(f"event_type IN ({', '.join('?' for _ in event_types)})")
			params.extend(event_types)
		if from_sequence is not None:
			clauses.append("sequence >= ?")
			params.append(from_sequence)
		if to_sequence is not None:
			clauses.append("sequence <= ?")
			params.append(to_sequence)
		where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
		order = "DESC" if descending else "ASC"
		params.append(limit)
		rows = self.conn.execute(
			f"SELECT * FROM events {where} ORDER BY sequence {order} LIMIT ?",  # noqa: S608
			tuple(params),
		).fetchall()
		return [self._row_to_event(r) for r in rows]

	def count_events(self, stream_type: str | None = None, stream_id: str | None = None) -> int:
		clauses: list[str] = []
		params: list[Any] = []
		if stream_type is not None:
			clauses.append("stream_type = ?")
			params.append(stream_type)
		if stream_id is not None:
			clauses.append("stream_id = ?")
			params.append(stream_id)
		where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
		row = self.conn.execute(f"SELECT COUNT(*) AS cnt FROM events {where}", tuple(params)).fetchone()  # noqa: S608
		return int(row["cnt"])

	@staticmethod
	def _row_to_event(row: sqlite3.Row) -> Event:
		return Event(
			id=row["id"],
			stream_type=row["stream_type"],
			stream_id=row["stream_id"],
			event_type=row["event_type"],
			payload=json.loads(row["payload"]),
			metadata=EventMetadata(
				correlation_id=row["correlation_id"],
				causation_id=row["causation_id"],
			),
			sequence=row["sequence"],
			occurred_at=row["occurred_at"],
		)

	# -- Missions --

	def insert_mission(self, mission: Mission, last_sequence: int = 0) -> None:
		self.conn.execute(
			"""INSERT INTO missions
			(id, title, description, status, progress_percent, tasks, metadata,
			 created_at, updated_at, started_at, completed_at, last_sequence)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				mission.id, mission.title, mission.description, mission.status,
				mission.progress_percent, json.dumps(mission.tasks),
				json.dumps(mission.metadata), mission.created_at, mission.updated_at,
				mission.started_at, mission.completed_at, last_sequence,
			),
		)
		logger.info("Inserted mission %s (status=%s)", mission.id, mission.status)

	def update_mission(self, mission: Mission, last_sequence: int) -> None:
		self.conn.execute(
			"""UPDATE missions SET
			title=?, description=?, status=?, progress_percent=?, tasks=?,
			metadata=?, updated_at=?, started_at=?, completed_at=?, last_sequence=?
			WHERE id=?""",
			(
				mission.title, mission.description, mission.status,
				mission.progress_percent, json.dumps(mission.tasks),
				json.dumps(mission.metadata), mission.updated_at,
				mission.started_at, mission.completed_at, last_sequence,
				mission.id,
			),
		)

	def get_mission(self, mission_id: str) -> Mission | None:
		row = self.conn.execute("SELECT * FROM missions WHERE id=?", (mission_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_mission(row)

	def get_missions_by_status(self, status: str) -> list[Mission]:
		rows = self.conn.execute(
			"SELECT * FROM missions WHERE status=? ORDER BY created_at ASC", (status,),
		).fetchall()
		return [self._row_to_mission(r) for r in rows]

	def get_all_missions(self, limit: int = 20) -> list[Mission]:
		rows = self.conn.execute(
			"SELECT * FROM missions ORDER BY created_at DESC LIMIT ?", (limit,),
		).fetchall()
		return [self._row_to_mission(r) for r in rows]

	@staticmethod
	def _row_to_mission(row: sqlite3.Row) -> Mission:
		return Mission(
			id=row["id"],
			title=row["title"],
			description=row["description"],
			status=row["status"],
			progress_percent=row["progress_percent"],
			tasks=json.loads(row["tasks"]),
			metadata=json.loads(row["metadata"]),
			created_at=row["created_at"],
			updated_at=row["updated_at"],
			started_at=row["started_at"],
			completed_at=row["completed_at"],
		)

	# -- Sorties --

	def insert_sortie(self, sortie: Sortie, last_sequence: int = 0) -> None:
		self.conn.execute(
			"""INSERT INTO sorties
			(id, mission_id, title, status, progress_percent, assigned_to, files,
			 progress_notes, blocked_reason, tasks, metadata, created_at,
			 updated_at, started_at, completed_at, last_sequence)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				sortie.id, sortie.mission_id, sortie.title, sortie.status,
				sortie.progress_percent, sortie.assigned_to, json.dumps(sortie.files),
				sortie.progress_notes, sortie.blocked_reason, json.dumps(sortie.tasks),
				json.dumps(sortie.metadata), sortie.created_at, sortie.updated_at,
				sortie.started_at, sortie.completed_at, last_sequence,
			),
		)
		logger.info("Inserted sortie %s (mission=%s)", sortie.id, sortie.mission_id)

	def update_sortie(self, sortie: Sortie, last_sequence: int) -> None:
		self.conn.execute(
			"""UPDATE sorties SET
			mission_id=?, title=?, status=?, progress_percent=?, assigned_to=?,
			files=?, progress_notes=?, blocked_reason=?, tasks=?, metadata=?,
			updated_at=?, started_at=?, completed_at=?, last_sequence=?
			WHERE id=?""",
			(
				sortie.mission_id, sortie.title, sortie.status, sortie.progress_percent,
				sortie.assigned_to, json.dumps(sortie.files), sortie.progress_notes,
				sortie.blocked_reason, json.dumps(sortie.tasks),
				json.dumps(sortie.metadata), sortie.updated_at, sortie.started_at,
				sortie.completed_at, last_sequence, sortie.id,
			),
		)

	def get_sortie(self, sortie_id: str) -> Sortie | None:
		row = self.conn.execute("SELECT * FROM sorties WHERE id=?", (sortie_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_sortie(row)

	def get_sorties_for_mission(self, mission_id: str) -> list[Sortie]:
		rows = self.conn.execute(
			"SELECT * FROM sorties WHERE mission_id=? ORDER BY created_at ASC, id ASC",
			(mission_id,),
		).fetchall()
		return [self._row_to_sortie(r) for r in rows]

	@staticmethod
	def _row_to_sortie(row: sqlite3.Row) -> Sortie:
		return Sortie(
			id=row["id"],
			mission_id=row["mission_id"],
			title=row["title"],
			status=row["status"],
			progress_percent=row["progress_percent"],
			assigned_to=row["assigned_to"],
			files=json.loads(row["files"]),
			progress_notes=row["progress_notes"],
			blocked_reason=row["blocked_reason"],
			tasks=json.loads(row["tasks"]),
			metadata=json.loads(row["metadata"]),
			created_at=row["created_at"],
			updated_at=row["updated_at"],
			started_at=row["started_at"],
			completed_at=row["completed_at"],
		)

	# -- Locks --

	def insert_lock(self, lock: Lock) -> None:
		self.conn.execute(
			"""INSERT INTO locks
			(id, resource_key, holder_id, acquired_at, released_at, purpose,
			 timeout_ms, expires_at, status)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				lock.id, lock.resource_key, lock.holder_id, lock.acquired_at,
				lock.released_at, lock.purpose, lock.timeout_ms, lock.expires_at,
				lock.status,
			),
		)

	def get_lock(self, lock_id: str) -> Lock | None:
		row = self.conn.execute("SELECT * FROM locks WHERE id=?", (lock_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_lock(row)

	def get_unreleased_lock(self, resource_key: str) -> Lock | None:
		"""The lock on *resource_key* with no released_at, expired or not."""
		row = self.conn.execute(
			"SELECT * FROM locks WHERE resource_key=? AND released_at IS NULL",
			(resource_key,),
		).fetchone()
		if row is None:
			return None
		return self._row_to_lock(row)

	def get_live_locks(self, now: str) -> list[Lock]:
		rows = self.conn.execute(
			"""SELECT * FROM locks
			WHERE released_at IS NULL AND expires_at > ?
			ORDER BY acquired_at ASC""",
			(now,),
		).fetchall()
		return [self._row_to_lock(r) for r in rows]

	def mark_lock_released(self, lock_id: str, status: str, released_at: str) -> int:
		"""Release a lock if it is still held. Returns rows affected (0 or 1)."""
		cursor = self.conn.execute(
			"UPDATE locks SET released_at=?, status=? WHERE id=? AND released_at IS NULL",
			(released_at, status, lock_id),
		)
		return cursor.rowcount

	def release_expired_locks(self, now: str, status: str, resource_key: str | None = None) -> list[str]:
		"""Release every held lock whose expiry has passed; returns released ids."""
		sql = "UPDATE locks SET released_at=?, status=? WHERE released_at IS NULL AND expires_at <= ?"
		params: list[Any] = [now, status, now]
		if resource_key is not None:
			sql += " AND resource_key=?"
			params.append(resource_key)
		rows = self.conn.execute(sql + " RETURNING id", tuple(params)).fetchall()
		return [r["id"] for r in rows]

	@staticmethod
	def _row_to_lock(row: sqlite3.Row) -> Lock:
		return Lock(
			id=row["id"],
			resource_key=row["resource_key"],
			holder_id=row["holder_id"],
			acquired_at=row["acquired_at"],
			released_at=row["released_at"],
			purpose=row["purpose"],
			timeout_ms=row["timeout_ms"],
			expires_at=row["expires_at"],
			status=row["status"],
		)

	# -- Messages --

	def insert_message(self, message: Message) -> None:
		self.conn.execute(
			"""INSERT INTO messages
			(id, stream_id, sender_id, payload, delivered, created_at, delivered_at)
			VALUES (?, ?, ?, ?, ?, ?, ?)""",
			(
				message.id, message.stream_id, message.sender_id,
				json.dumps(message.payload), int(message.delivered),
				message.created_at, message.delivered_at,
			),
		)

	def get_message(self, message_id: str) -> Message | None:
		row = self.conn.execute("SELECT * FROM messages WHERE id=?", (message_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_message(row)

	def set_message_delivered(self, message_id: str, delivered: bool, delivered_at: str | None) -> int:
		cursor = self.conn.execute(
			"UPDATE messages SET delivered=?, delivered_at=? WHERE id=?",
			(int(delivered), delivered_at, message_id),
		)
		return cursor.rowcount

	def get_undelivered_messages(self, stream_ids: Sequence[str]) -> list[Message]:
		if not stream_ids:
			return []
		placeholders = ", ".join("?" for _ in stream_ids)
		rows = self.conn.execute(
			f"""SELECT * FROM messages
			WHERE delivered=0 AND stream_id IN ({placeholders})
			ORDER BY created_at ASC, id ASC""",  # noqa: S608
			tuple(stream_ids),
		).fetchall()
		return [self._row_to_message(r) for r in rows]

	@staticmethod
	def _row_to_message(row: sqlite3.Row) -> Message:
		return Message(
			id=row["id"],
			stream_id=row["stream_id"],
			sender_id=row["sender_id"],
			payload=json.loads(row["payload"]),
			delivered=bool(row["delivered"]),
			created_at=row["created_at"],
			delivered_at=row["delivered_at"],
		)

	# -- Checkpoints --

	def insert_checkpoint(self, checkpoint: Checkpoint) -> None:
		self.conn.execute(
			"""INSERT INTO checkpoints
			(id, mission_id, created_at, trigger, trigger_details, progress_percent,
			 sorties_snapshot, active_locks_snapshot, pending_messages_snapshot,
			 recovery_context, created_by, schema_version, consumed_at, metadata)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				checkpoint.id, checkpoint.mission_id, checkpoint.created_at,
				checkpoint.trigger, checkpoint.trigger_details,
				checkpoint.progress_percent,
				json.dumps([asdict(s) for s in checkpoint.sorties_snapshot]),
				json.dumps([asdict(lk) for lk in checkpoint.active_locks_snapshot]),
				json.dumps([asdict(m) for m in checkpoint.pending_messages_snapshot]),
				json.dumps(asdict(checkpoint.recovery_context)),
				checkpoint.created_by, checkpoint.schema_version,
				checkpoint.consumed_at, json.dumps(checkpoint.metadata),
			),
		)
		logger.info("Inserted checkpoint %s for mission %s", checkpoint.id, checkpoint.mission_id)

	def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
		row = self.conn.execute("SELECT * FROM checkpoints WHERE id=?", (checkpoint_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_checkpoint(row)

	def get_latest_checkpoint(self, mission_id: str, include_consumed: bool = False) -> Checkpoint | None:
		sql = "SELECT * FROM checkpoints WHERE mission_id=?"
		if not include_consumed:
			sql += " AND consumed_at IS NULL"
		row = self.conn.execute(
			sql + " ORDER BY created_at DESC, rowid DESC LIMIT 1", (mission_id,),
		).fetchone()
		if row is None:
			return None
		return self._row_to_checkpoint(row)

	def list_checkpoints(
		self, mission_id: str | None = None, limit: int = 20, offset: int = 0,
	) -> list[Checkpoint]:
		if mission_id is None:
			rows = self.conn.execute(
				"SELECT * FROM checkpoints ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
				(limit, offset),
			).fetchall()
		else:
			rows = self.conn.execute(
				"""SELECT * FROM checkpoints WHERE mission_id=?
				ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?""",
				(mission_id, limit, offset),
			).fetchall()
		return [self._row_to_checkpoint(r) for r in rows]

	def get_checkpoint_headers(self, mission_id: str | None = None) -> list[sqlite3.Row]:
		"""Lightweight (id, mission_id, created_at, consumed_at) rows, newest first."""
		sql = "SELECT id, mission_id, created_at, consumed_at FROM checkpoints"
		params: tuple[Any, ...] = ()
		if mission_id is not None:
			sql += " WHERE mission_id=?"
			params = (mission_id,)
		return self.conn.execute(sql + " ORDER BY created_at DESC, rowid DESC", params).fetchall()

	def mark_checkpoint_consumed(self, checkpoint_id: str, consumed_at: str, allow_reconsume: bool = False) -> int:
		sql = "UPDATE checkpoints SET consumed_at=? WHERE id=?"
		if not allow_reconsume:
			sql += " AND consumed_at IS NULL"
		return self.conn.execute(sql, (consumed_at, checkpoint_id)).rowcount

	def delete_checkpoint(self, checkpoint_id: str) -> int:
		return self.conn.execute("DELETE FROM checkpoints WHERE id=?", (checkpoint_id,)).rowcount

	def count_checkpoints(self, mission_id: str | None = None) -> int:
		if mission_id is None:
			row = self.conn.execute("SELECT COUNT(*) AS cnt FROM checkpoints").fetchone()
		else:
			row = self.conn.execute(
				"SELECT COUNT(*) AS cnt FROM checkpoints WHERE mission_id=?", (mission_id,),
			).fetchone()
		return int(row["cnt"])

	@staticmethod
	def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
		keys = row.keys()
		if row["schema_version"] not in SUPPORTED_SCHEMA_VERSIONS:
			raise UnsupportedSchemaError(row["id"], row["schema_version"])
		return Checkpoint(
			id=row["id"],
			mission_id=row["mission_id"],
			created_at=row["created_at"],
			trigger=row["trigger"],
			trigger_details=row["trigger_details"],
			progress_percent=row["progress_percent"],
			sorties_snapshot=_SORTIE_SNAPSHOTS.validate_json(row["sorties_snapshot"]),
			active_locks_snapshot=_LOCK_SNAPSHOTS.validate_json(row["active_locks_snapshot"]),
			pending_messages_snapshot=_MESSAGE_SNAPSHOTS.validate_json(row["pending_messages_snapshot"]),
			recovery_context=_RECOVERY_CONTEXT.validate_json(row["recovery_context"]),
			created_by=row["created_by"],
			schema_version=row["schema_version"],
			consumed_at=row["consumed_at"],
			metadata=json.loads(row["metadata"]) if "metadata" in keys else {},
		)

	# -- Progress thresholds --

	def claim_threshold(self, mission_id: str, threshold: int, checkpoint_id: str) -> bool:
		"""Record that *threshold* fired for a mission. False if it already had."""
		cursor = self.conn.execute(
			"INSERT OR IGNORE INTO checkpoint_thresholds (mission_id, threshold, checkpoint_id) VALUES (?, ?, ?)",
			(mission_id, threshold, checkpoint_id),
		)
		return cursor.rowcount == 1

	def get_claimed_thresholds(self, mission_id: str) -> set[int]:
		rows = self.conn.execute(
			"SELECT threshold FROM checkpoint_thresholds WHERE mission_id=?", (mission_id,),
		).fetchall()
		return {int(r["threshold"]) for r in rows}
