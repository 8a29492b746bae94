"""Checkpoint service: capture, look up and prune mission snapshots."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from flight_recorder.backup import CheckpointBackup
from flight_recorder.config import RecorderConfig
from flight_recorder.constants import (
	CHECKPOINT_TRIGGERS,
	HOUSEKEEPING_EVENTS,
	STATUS_COMPLETED,
	STATUS_IN_PROGRESS,
	STATUS_PAUSED,
	STATUS_PLANNED,
	STREAM_MISSION,
	TERMINAL_STATUSES,
	TRIGGER_MANUAL,
	TRIGGER_PROGRESS,
)
from flight_recorder.db import Database
from flight_recorder.errors import CheckpointConsumedError, NotFoundError, ValidationError
from flight_recorder.event_store import EventStore
from flight_recorder.events import describe_event
from flight_recorder.locks import LockRegistry
from flight_recorder.mailbox import Mailbox
from flight_recorder.models import (
	Checkpoint,
	Clock,
	Event,
	Lock,
	LockSnapshot,
	Message,
	MessageSnapshot,
	Mission,
	NewEvent,
	RecoveryContext,
	Sortie,
	SortieSnapshot,
	elapsed_ms,
	format_ts,
	new_id,
	utc_now,
)
from flight_recorder.tracing import RecorderTracer, get_current_trace_context

logger = logging.getLogger(__name__)

# Recorder bookkeeping that says nothing about where the work stands
_NARRATIVE_SKIP = ("checkpoint_created", *sorted(HOUSEKEEPING_EVENTS))


@dataclass
class PruneResult:
	deleted: list[str] = field(default_factory=list)
	protected: list[str] = field(default_factory=list)
	dry_run: bool = False


@dataclass
class CheckpointStats:
	total: int = 0
	mirrored: int = 0
	latest: Checkpoint | None = None


def build_recovery_context(
	mission: Mission,
	sorties: Sequence[Sortie],
	locks: Sequence[Lock],
	messages: Sequence[Message],
	latest: Event | None,
	blockers: Sequence[str],
	now_elapsed_ms: int,
) -> RecoveryContext:
	"""Assemble the narrative an agent needs to pick a mission back up."""
	all_blockers = list(blockers)
	next_steps: list[str] = []
	for sortie in sorties:
		if sortie.status == STATUS_PAUSED:
			reason = sortie.blocked_reason or "no reason recorded"
			all_blockers.append(f"Sortie {sortie.id} blocked: {reason}")
			next_steps.append(f"Unblock sortie {sortie.id} ({sortie.title}): {reason}")
		elif sortie.status == STATUS_IN_PROGRESS:
			next_steps.append(
				f"Continue sortie {sortie.id} ({sortie.title}) from {sortie.progress_percent}%"
			)
		elif sortie.status == STATUS_PLANNED:
			next_steps.append(f"Start sortie {sortie.id} ({sortie.title})")
	if messages:
		next_steps.append(f"Process {len(messages)} pending message(s)")
	if locks:
		next_steps.append(f"Re-acquire {len(locks)} lock(s) held at checkpoint time")
	if not next_steps and mission.status not in TERMINAL_STATUSES:
		next_steps.append("Review mission state and plan the next sortie")

	files = {f for s in sorties for f in s.files}
	files.update(lock.resource_key for lock in locks)

	done = sum(1 for s in sorties if s.status == STATUS_COMPLETED)
	summary = f"{mission.title}: {mission.progress_percent}% complete"
	if sorties:
		summary += f", {done}/{len(sorties)} sorties completed"

	return RecoveryContext(
		last_action=describe_event(latest.event_type, latest.payload) if latest else "No recorded activity",
		next_steps=next_steps,
		blockers=all_blockers,
		files_modified=sorted(files),
		summary=summary,
		elapsed_ms=now_elapsed_ms,
		last_activity_at=latest.occurred_at if latest else None,
	)


class CheckpointService:
	"""Creates checkpoints from live mission, lock and message state.

	Capture runs inside a single ``BEGIN IMMEDIATE`` transaction: no other
	connection can write between reading the mission and writing the
	checkpoint row, so the snapshot reflects one instant.
	"""

	def __init__(
		self,
		db: Database,
		store: EventStore,
		locks: LockRegistry,
		mailbox: Mailbox,
		backup: CheckpointBackup | None = None,
		config: RecorderConfig | None = None,
		clock: Clock = utc_now,
		tracer: RecorderTracer | None = None,
	) -> None:
		self.db = db
		self.store = store
		self.locks = locks
		self.mailbox = mailbox
		self.backup = backup
		self.config = config or RecorderConfig()
		self.clock = clock
		self.tracer = tracer or RecorderTracer()

	def create(
		self,
		mission_id: str,
		trigger: str = TRIGGER_MANUAL,
		trigger_details: str | None = None,
		blockers: Sequence[str] | None = None,
		created_by: str | None = None,
		metadata: dict[str, Any] | None = None,
	) -> Checkpoint:
		"""Snapshot a mission and persist the checkpoint.

		Raises:
			ValidationError: Unknown trigger.
			NotFoundError: The mission does not exist.
		"""
		if trigger not in CHECKPOINT_TRIGGERS:
			raise ValidationError(f"Unknown checkpoint trigger: {trigger!r}")
		with self.tracer.start_checkpoint_span(mission_id, trigger) as span:
			with self.db.transaction():
				checkpoint = self._write(
					mission_id, trigger, trigger_details, blockers or [], created_by, metadata,
				)
			span.set_attribute("checkpoint.id", checkpoint.id)
		self._mirror(checkpoint)
		logger.info(
			"Checkpoint %s created for mission %s (%s, %d%%)",
			checkpoint.id, mission_id, trigger, checkpoint.progress_percent,
		)
		return checkpoint

	def _write(
		self,
		mission_id: str,
		trigger: str,
		trigger_details: str | None,
		blockers: Sequence[str],
		created_by: str | None,
		metadata: dict[str, Any] | None,
	) -> Checkpoint:
		"""Capture and insert a checkpoint. Caller owns the transaction."""
		mission = self.db.get_mission(mission_id)
		if mission is None:
			raise NotFoundError(f"Mission not found: {mission_id}")
		now = self.clock()
		sorties = self.db.get_sorties_for_mission(mission_id)
		sortie_ids = [s.id for s in sorties]
		holders = {mission_id, *sortie_ids, *(s.assigned_to for s in sorties if s.assigned_to)}
		files = {f for s in sorties for f in s.files}
		locks = self.locks.active_for_holders(holders, files)
		streams = [mission_id, *sortie_ids]
		messages = self.mailbox.pending_for_streams(streams)
		latest = self.store.latest_activity(streams, exclude_types=_NARRATIVE_SKIP)

		extra = dict(metadata or {})
		trace_id, _ = get_current_trace_context()
		if trace_id:
			extra.setdefault("trace_id", trace_id)

		checkpoint = Checkpoint(
			id=new_id("checkpoint"),
			mission_id=mission_id,
			created_at=format_ts(now),
			trigger=trigger,
			trigger_details=trigger_details,
			progress_percent=mission.progress_percent,
			sorties_snapshot=[SortieSnapshot.of(s) for s in sorties],
			active_locks_snapshot=[LockSnapshot.of(lk) for lk in locks],
			pending_messages_snapshot=[MessageSnapshot.of(m) for m in messages],
			recovery_context=build_recovery_context(
				mission, sorties, locks, messages, latest, blockers,
				elapsed_ms(mission.started_at or mission.created_at, now),
			),
			created_by=created_by or self.config.checkpoints.created_by,
			metadata=extra,
		)
		self.db.insert_checkpoint(checkpoint)
		self.store.append(STREAM_MISSION, mission_id, [NewEvent(
			event_type="checkpoint_created",
			payload={
				"mission_id": mission_id,
				"checkpoint_id": checkpoint.id,
				"trigger": trigger,
				"progress_percent": checkpoint.progress_percent,
			},
		)])
		return checkpoint

	def _mirror(self, checkpoint: Checkpoint) -> None:
		if self.backup is None or not self.config.checkpoints.mirror_to_backup:
			return
		try:
			self.backup.write(checkpoint)
		except OSError as exc:
			logger.warning("Could not mirror checkpoint %s: %s", checkpoint.id, exc)

	def check_progress(self, mission_id: str) -> Checkpoint | None:
		"""Create a progress checkpoint if the mission crossed a new threshold.

		Every threshold crossed since the previous check is claimed by the
		same checkpoint, and a claimed threshold never fires again.
		"""
		thresholds = sorted(self.config.checkpoints.progress_thresholds)
		with self.db.transaction():
			mission = self.db.get_mission(mission_id)
			if mission is None:
				raise NotFoundError(f"Mission not found: {mission_id}")
			claimed = self.db.get_claimed_thresholds(mission_id)
			crossed = [t for t in thresholds if mission.progress_percent >= t and t not in claimed]
			if not crossed:
				return None
			details = "Progress crossed " + ", ".join(f"{t}%" for t in crossed)
			with self.tracer.start_checkpoint_span(mission_id, TRIGGER_PROGRESS):
				checkpoint = self._write(mission_id, TRIGGER_PROGRESS, details, [], None, None)
			for threshold in crossed:
				self.db.claim_threshold(mission_id, threshold, checkpoint.id)
		self._mirror(checkpoint)
		logger.info(
			"Progress checkpoint %s for mission %s at %d%% (%s)",
			checkpoint.id, mission_id, checkpoint.progress_percent, details,
		)
		return checkpoint

	def get(self, checkpoint_id: str) -> Checkpoint:
		"""Load a checkpoint, falling back to the file mirror.

		Raises:
			NotFoundError: Neither the database nor the mirror has it.
			UnsupportedSchemaError: The stored schema_version is not readable.
		"""
		checkpoint = self.db.get_checkpoint(checkpoint_id)
		if checkpoint is None and self.backup is not None:
			checkpoint = self.backup.read(checkpoint_id)
			if checkpoint is not None:
				logger.warning("Checkpoint %s served from file backup", checkpoint_id)
		if checkpoint is None:
			raise NotFoundError(f"Checkpoint not found: {checkpoint_id}")
		return checkpoint

	def latest_for_mission(self, mission_id: str, include_consumed: bool = False) -> Checkpoint | None:
		return self.db.get_latest_checkpoint(mission_id, include_consumed)

	def list_checkpoints(
		self, mission_id: str | None = None, limit: int = 20, offset: int = 0,
	) -> list[Checkpoint]:
		if limit <= 0 or offset < 0:
			raise ValidationError("limit must be positive and offset non-negative")
		return self.db.list_checkpoints(mission_id, limit, offset)

	def stats(self) -> CheckpointStats:
		"""Row count, mirror file count and the newest checkpoint overall."""
		newest = self.db.list_checkpoints(limit=1)
		return CheckpointStats(
			total=self.db.count_checkpoints(),
			mirrored=len(self.backup.list_ids()) if self.backup is not None else 0,
			latest=newest[0] if newest else None,
		)

	def mark_consumed(self, checkpoint_id: str) -> str:
		"""Stamp consumed_at. Returns the timestamp written.

		Raises:
			NotFoundError: No such checkpoint row.
			CheckpointConsumedError: Already consumed and re-consumption is off.
		"""
		allow = self.config.recovery.allow_reconsume
		consumed_at = format_ts(self.clock())
		with self.db.transaction():
			checkpoint = self.db.get_checkpoint(checkpoint_id)
			if checkpoint is None:
				raise NotFoundError(f"Checkpoint not found: {checkpoint_id}")
			if checkpoint.consumed_at is not None and not allow:
				raise CheckpointConsumedError(checkpoint_id, checkpoint.consumed_at)
			if self.db.mark_checkpoint_consumed(checkpoint_id, consumed_at, allow) == 0:
				current = self.db.get_checkpoint(checkpoint_id)
				raise CheckpointConsumedError(checkpoint_id, current.consumed_at if current else "")
		return consumed_at

	def prune(
		self,
		older_than_ms: int | None = None,
		keep_per_mission: int | None = None,
		mission_id: str | None = None,
		dry_run: bool = False,
	) -> PruneResult:
		"""Delete old checkpoints.

		A checkpoint goes if it is older than *older_than_ms* or ranks past
		*keep_per_mission* within its mission. With neither given, the
		configured retention policy applies. The newest checkpoint of an
		in-progress mission is never deleted.
		"""
		if older_than_ms is None and keep_per_mission is None:
			older_than_ms = self.config.retention.max_age_ms
			keep_per_mission = self.config.retention.keep_per_mission
		if keep_per_mission is not None and keep_per_mission < 0:
			raise ValidationError("keep_per_mission must not be negative")
		cutoff = (
			format_ts(self.clock() - timedelta(milliseconds=older_than_ms))
			if older_than_ms is not None else None
		)

		result = PruneResult(dry_run=dry_run)
		by_mission: dict[str, list[str]] = {}
		with self.db.transaction():
			rank: dict[str, int] = {}
			status_cache: dict[str, str | None] = {}
			for row in self.db.get_checkpoint_headers(mission_id):
				mid = row["mission_id"]
				index = rank.get(mid, 0)
				rank[mid] = index + 1
				if mid not in status_cache:
					mission = self.db.get_mission(mid)
					status_cache[mid] = mission.status if mission else None
				if index == 0 and status_cache[mid] == STATUS_IN_PROGRESS:
					result.protected.append(row["id"])
					continue
				too_many = keep_per_mission is not None and index >= keep_per_mission
				too_old = cutoff is not None and row["created_at"] < cutoff
				if too_many or too_old:
					result.deleted.append(row["id"])
					by_mission.setdefault(mid, []).append(row["id"])

			if not dry_run:
				for mid, ids in by_mission.items():
					for checkpoint_id in ids:
						self.db.delete_checkpoint(checkpoint_id)
					if status_cache.get(mid) is not None:
						self.store.append(STREAM_MISSION, mid, [NewEvent(
							event_type="checkpoint_pruned",
							payload={"mission_id": mid, "checkpoint_ids": ids, "reason": "cleanup"},
						)])

		if not dry_run and self.backup is not None:
			for checkpoint_id in result.deleted:
				self.backup.delete(checkpoint_id)
		if result.deleted:
			logger.info(
				"%s %d checkpoint(s); %d protected",
				"Would prune" if dry_run else "Pruned", len(result.deleted), len(result.protected),
			)
		return result
