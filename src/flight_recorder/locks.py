"""Lock registry: mutual exclusion over externally identified resources."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import timedelta

from flight_recorder.constants import (
	DEFAULT_LIMITS,
	LOCK_EXPIRED,
	LOCK_FORCE_RELEASED,
	LOCK_RELEASED,
)
from flight_recorder.db import Database
from flight_recorder.errors import (
	AlreadyReleasedError,
	ConflictError,
	NotFoundError,
	NotOwnerError,
	ValidationError,
)
from flight_recorder.models import Clock, Lock, format_ts, new_id, utc_now

logger = logging.getLogger(__name__)


class LockRegistry:
	"""Acquire and release resource locks.

	The check-and-insert in :meth:`acquire` runs under ``BEGIN IMMEDIATE``,
	and a partial unique index on unreleased locks backs it up, so two
	connections racing for the same key cannot both succeed.
	"""

	def __init__(
		self,
		db: Database,
		clock: Clock = utc_now,
		default_timeout_ms: int = DEFAULT_LIMITS["lock_timeout_ms"],
	) -> None:
		self.db = db
		self.clock = clock
		self.default_timeout_ms = default_timeout_ms

	def acquire(
		self,
		resource_key: str,
		holder_id: str,
		purpose: str = "edit",
		timeout_ms: int | None = None,
	) -> Lock:
		"""Take the lock on *resource_key* for *holder_id*.

		A holder asking again for a lock it already holds gets the existing
		lock back unchanged.

		Raises:
			ValidationError: Empty key or holder, or a non-positive timeout.
			ConflictError: Another holder has an active lock on the key.
		"""
		if not resource_key or not holder_id:
			raise ValidationError("resource_key and holder_id are required")
		timeout = self.default_timeout_ms if timeout_ms is None else timeout_ms
		if timeout <= 0:
			raise ValidationError(f"timeout_ms must be positive, got {timeout}")

		now = self.clock()
		now_iso = format_ts(now)
		with self.db.transaction():
			self.db.release_expired_locks(now_iso, LOCK_EXPIRED, resource_key)
			existing = self.db.get_unreleased_lock(resource_key)
			if existing is not None:
				if existing.holder_id == holder_id:
					return existing
				raise ConflictError(resource_key, existing.holder_id, existing.id)
			lock = Lock(
				id=new_id("lock"),
				resource_key=resource_key,
				holder_id=holder_id,
				acquired_at=now_iso,
				purpose=purpose,
				timeout_ms=timeout,
				expires_at=format_ts(now + timedelta(milliseconds=timeout)),
			)
			try:
				self.db.insert_lock(lock)
			except sqlite3.IntegrityError:
				holder = self.db.get_unreleased_lock(resource_key)
				if holder is None:
					raise
				raise ConflictError(resource_key, holder.holder_id, holder.id) from None

		logger.info("Lock %s acquired on %s by %s", lock.id, resource_key, holder_id)
		return lock

	def release(self, lock_id: str, holder_id: str) -> Lock:
		"""Release a lock held by *holder_id*.

		Raises:
			NotFoundError: No lock with this id.
			NotOwnerError: The lock belongs to someone else.
			AlreadyReleasedError: The lock was already released or expired.
		"""
		now_iso = format_ts(self.clock())
		with self.db.transaction():
			lock = self.get(lock_id)
			if lock.holder_id != holder_id:
				raise NotOwnerError(f"Lock {lock_id} is held by {lock.holder_id}, not {holder_id}")
			if self.db.mark_lock_released(lock_id, LOCK_RELEASED, now_iso) == 0:
				raise AlreadyReleasedError(f"Lock {lock_id} was already released ({lock.status})")
		logger.info("Lock %s on %s released by %s", lock_id, lock.resource_key, holder_id)
		return self.get(lock_id)

	def force_release(self, lock_id: str) -> Lock:
		"""Release a lock regardless of holder."""
		now_iso = format_ts(self.clock())
		with self.db.transaction():
			lock = self.get(lock_id)
			if self.db.mark_lock_released(lock_id, LOCK_FORCE_RELEASED, now_iso) == 0:
				raise AlreadyReleasedError(f"Lock {lock_id} was already released ({lock.status})")
		logger.warning("Lock %s on %s force-released (was held by %s)", lock_id, lock.resource_key, lock.holder_id)
		return self.get(lock_id)

	def release_expired(self) -> int:
		"""Mark every lock past its timeout as expired. Returns how many were released."""
		with self.db.transaction():
			released = self.db.release_expired_locks(format_ts(self.clock()), LOCK_EXPIRED)
		if released:
			logger.info("Released %d expired lock(s): %s", len(released), ", ".join(released))
		return len(released)

	def get(self, lock_id: str) -> Lock:
		lock = self.db.get_lock(lock_id)
		if lock is None:
			raise NotFoundError(f"Lock not found: {lock_id}")
		return lock

	def list_active(self) -> list[Lock]:
		"""Locks that are unreleased and within their timeout."""
		return self.db.get_live_locks(format_ts(self.clock()))

	def active_for(self, resource_key: str) -> Lock | None:
		lock = self.db.get_unreleased_lock(resource_key)
		if lock is None or not lock.is_active(self.clock()):
			return None
		return lock

	def active_for_holders(
		self, holder_ids: Iterable[str], resource_keys: Iterable[str] = (),
	) -> list[Lock]:
		"""Active locks held by any of *holder_ids* or on any of *resource_keys*."""
		holders = set(holder_ids)
		keys = set(resource_keys)
		return [
			lock for lock in self.list_active()
			if lock.holder_id in holders or lock.resource_key in keys
		]
