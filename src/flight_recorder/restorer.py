"""Apply a checkpoint back onto live state in one transaction."""

from __future__ import annotations

import logging
from dataclasses import replace

from flight_recorder.checkpoints import CheckpointService
from flight_recorder.config import RecorderConfig
from flight_recorder.constants import STREAM_MISSION, STREAM_SORTIE
from flight_recorder.db import Database
from flight_recorder.errors import (
	CheckpointConsumedError,
	ConflictError,
	NotFoundError,
	RecorderError,
)
from flight_recorder.event_store import EventStore
from flight_recorder.locks import LockRegistry
from flight_recorder.mailbox import Mailbox
from flight_recorder.models import (
	Checkpoint,
	Clock,
	LockSnapshot,
	NewEvent,
	RestoredCounts,
	RestoreResult,
	utc_now,
)
from flight_recorder.tracing import RecorderTracer

logger = logging.getLogger(__name__)


class _DryRunRollback(Exception):
	"""Raised at the end of a dry run to discard every change."""


class StateRestorer:
	"""Restores sorties, locks and messages from a checkpoint.

	All steps share one transaction. Conditions that leave state consistent
	(a lock now held by someone else, a message that no longer exists) are
	reported as warnings; anything else rolls the whole restore back and the
	result comes back with ``success=False``.
	"""

	def __init__(
		self,
		db: Database,
		store: EventStore,
		locks: LockRegistry,
		mailbox: Mailbox,
		checkpoints: CheckpointService,
		config: RecorderConfig | None = None,
		clock: Clock = utc_now,
		tracer: RecorderTracer | None = None,
	) -> None:
		self.db = db
		self.store = store
		self.locks = locks
		self.mailbox = mailbox
		self.checkpoints = checkpoints
		self.config = config or RecorderConfig()
		self.clock = clock
		self.tracer = tracer or RecorderTracer()

	def restore(self, checkpoint_id: str, force_locks: bool = False, dry_run: bool = False) -> RestoreResult:
		"""Restore live state from *checkpoint_id*.

		Args:
			checkpoint_id: Checkpoint to apply.
			force_locks: Release conflicting locks held by others instead of
				reporting them as blockers. Callers are expected to have
				confirmed this with the user.
			dry_run: Run every step, then roll back.

		Raises:
			NotFoundError: The checkpoint does not exist.
			CheckpointConsumedError: It was already applied and re-consumption is off.
			UnsupportedSchemaError: Its schema_version cannot be read.
		"""
		checkpoint = self.checkpoints.get(checkpoint_id)
		if checkpoint.consumed_at is not None and not self.config.recovery.allow_reconsume:
			raise CheckpointConsumedError(checkpoint.id, checkpoint.consumed_at)

		result = RestoreResult(
			checkpoint_id=checkpoint.id,
			mission_id=checkpoint.mission_id,
			dry_run=dry_run,
			recovery_context=replace(
				checkpoint.recovery_context,
				blockers=list(checkpoint.recovery_context.blockers),
			),
		)
		with self.tracer.start_restore_span(checkpoint.id, dry_run) as span:
			try:
				with self.db.transaction():
					self._apply(checkpoint, result, force_locks)
					if dry_run:
						raise _DryRunRollback()
				result.success = True
			except _DryRunRollback:
				result.success = True
			except RecorderError as exc:
				result.success = False
				result.errors.append(str(exc))
				result.restored = RestoredCounts()
				span.record_exception(exc)
			span.set_attribute("restore.success", result.success)

		if not result.success:
			logger.error("Restore of %s failed and was rolled back: %s", checkpoint.id, "; ".join(result.errors))
		elif dry_run:
			logger.info(
				"Dry run of %s: would restore %d sorties, %d locks, %d messages",
				checkpoint.id, result.restored.sorties, result.restored.locks, result.restored.messages,
			)
		else:
			logger.info(
				"Restored mission %s from %s: %d sorties, %d locks, %d messages, %d warning(s)",
				checkpoint.mission_id, checkpoint.id, result.restored.sorties,
				result.restored.locks, result.restored.messages, len(result.warnings),
			)
		return result

	def restore_latest(self, mission_id: str, force_locks: bool = False, dry_run: bool = False) -> RestoreResult:
		checkpoint = self.checkpoints.latest_for_mission(mission_id)
		if checkpoint is None:
			raise NotFoundError(f"No unconsumed checkpoint for mission {mission_id}")
		return self.restore(checkpoint.id, force_locks=force_locks, dry_run=dry_run)

	def _apply(self, checkpoint: Checkpoint, result: RestoreResult, force_locks: bool) -> None:
		if self.db.get_mission(checkpoint.mission_id) is None:
			raise NotFoundError(f"Mission not found: {checkpoint.mission_id}")

		for snap in checkpoint.sorties_snapshot:
			if self.db.get_sortie(snap.id) is None:
				result.warnings.append(f"Sortie {snap.id} no longer exists; skipped")
				continue
			self.store.append(STREAM_SORTIE, snap.id, [NewEvent(
				event_type="sortie_restored",
				payload={
					"sortie_id": snap.id,
					"checkpoint_id": checkpoint.id,
					"status": snap.status,
					"progress_percent": snap.progress_percent,
					"assigned_to": snap.assigned_to,
					"files": snap.files,
					"progress_notes": snap.progress_notes,
				},
				correlation_id=checkpoint.id,
			)])
			result.restored.sorties += 1

		for lock in checkpoint.active_locks_snapshot:
			if self._restore_lock(lock, result, force_locks):
				result.restored.locks += 1

		for message in checkpoint.pending_messages_snapshot:
			if self.db.get_message(message.id) is None:
				result.warnings.append(f"Message {message.id} no longer exists; not requeued")
				continue
			self.mailbox.requeue(message.id)
			result.restored.messages += 1

		self.checkpoints.mark_consumed(checkpoint.id)

		self.store.append(STREAM_MISSION, checkpoint.mission_id, [NewEvent(
			event_type="recovered",
			payload={
				"mission_id": checkpoint.mission_id,
				"checkpoint_id": checkpoint.id,
				"progress_percent": checkpoint.progress_percent,
				"sorties_restored": result.restored.sorties,
				"locks_restored": result.restored.locks,
				"messages_requeued": result.restored.messages,
				"blockers": result.recovery_context.blockers,
				"warnings": result.warnings,
			},
			correlation_id=checkpoint.id,
		)])

	def _restore_lock(self, snap: LockSnapshot, result: RestoreResult, force_locks: bool) -> bool:
		"""Re-acquire one checkpointed lock. Returns True if the holder has it afterwards."""
		current = self.locks.active_for(snap.resource_key)
		if current is not None and current.holder_id != snap.holder_id:
			if not force_locks:
				blocker = (
					f"Lock conflict on {snap.resource_key}: held by {current.holder_id} "
					f"({current.id}); {snap.holder_id}'s lock {snap.id} not restored"
				)
				result.warnings.append(blocker)
				result.recovery_context.blockers.append(blocker)
				logger.warning("%s", blocker)
				return False
			self.locks.force_release(current.id)
			result.warnings.append(
				f"Force-released {current.id} on {snap.resource_key} (was held by {current.holder_id})"
			)
		try:
			self.locks.acquire(snap.resource_key, snap.holder_id, snap.purpose, snap.timeout_ms)
		except ConflictError as exc:
			blocker = f"Lock conflict on {snap.resource_key}: held by {exc.holder_id} ({exc.lock_id})"
			result.warnings.append(blocker)
			result.recovery_context.blockers.append(blocker)
			return False
		return True


def format_recovery_prompt(result: RestoreResult, mission_title: str = "") -> str:
	"""Render a restore result as a markdown briefing for the resuming agent."""
	ctx = result.recovery_context
	title = f"{mission_title} ({result.mission_id})" if mission_title else result.mission_id
	lines = [f"# Resuming mission {title}", ""]
	lines.append(f"Restored from checkpoint `{result.checkpoint_id}`.")
	if result.dry_run:
		lines.append("_Dry run: nothing was changed._")
	if not result.success:
		lines.append("**Recovery failed; no state was changed.**")
	lines.append("")
	if ctx.summary:
		lines += ["## Summary", ctx.summary, ""]
	if ctx.last_action:
		lines += ["## Last action", ctx.last_action, ""]

	sections = (
		("Next steps", ctx.next_steps),
		("Blockers", ctx.blockers),
		("Files in play", ctx.files_modified),
		("Warnings", result.warnings),
		("Errors", result.errors),
	)
	for heading, items in sections:
		if items:
			lines.append(f"## {heading}")
			lines += [f"- {item}" for item in items]
			lines.append("")

	r = result.restored
	lines.append(f"Restored: {r.sorties} sorties, {r.locks} locks, {r.messages} messages.")
	return "\n".join(lines).rstrip() + "\n"
