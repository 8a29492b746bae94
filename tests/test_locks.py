"""Tests for the lock registry."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import FakeClock
from flight_recorder.db import Database
from flight_recorder.errors import (
	AlreadyReleasedError,
	ConflictError,
	NotFoundError,
	NotOwnerError,
	ValidationError,
)
from flight_recorder.locks import LockRegistry


@pytest.fixture()
def registry(db: Database, clock: FakeClock) -> LockRegistry:
	return LockRegistry(db, clock=clock)


class TestAcquire:
	def test_acquire_returns_lock(self, registry: LockRegistry) -> None:
		lock = registry.acquire("/a.txt", "h1", purpose="edit", timeout_ms=60_000)
		assert lock.id.startswith("lock-")
		assert lock.holder_id == "h1"
		assert lock.status == "active"
		assert lock.expires_at > lock.acquired_at

	def test_conflict_carries_holder(self, registry: LockRegistry) -> None:
		first = registry.acquire("/a.txt", "h1")
		with pytest.raises(ConflictError) as exc_info:
			registry.acquire("/a.txt", "h2")
		assert exc_info.value.holder_id == "h1"
		assert exc_info.value.lock_id == first.id
		assert exc_info.value.resource_key == "/a.txt"

	def test_same_holder_gets_existing_lock(self, registry: LockRegistry) -> None:
		first = registry.acquire("/a.txt", "h1")
		again = registry.acquire("/a.txt", "h1")
		assert again.id == first.id

	def test_expired_lock_can_be_taken(self, registry: LockRegistry, clock: FakeClock) -> None:
		first = registry.acquire("/a.txt", "h1", timeout_ms=1_000)
		clock.advance(ms=1_001)
		second = registry.acquire("/a.txt", "h2")
		assert second.holder_id == "h2"
		assert registry.get(first.id).status == "expired"

	def test_validation(self, registry: LockRegistry) -> None:
		with pytest.raises(ValidationError):
			registry.acquire("", "h1")
		with pytest.raises(ValidationError):
			registry.acquire("/a.txt", "h1", timeout_ms=0)

	def test_different_keys_independent(self, registry: LockRegistry) -> None:
		registry.acquire("/a.txt", "h1")
		registry.acquire("/b.txt", "h2")
		assert {lk.resource_key for lk in registry.list_active()} == {"/a.txt", "/b.txt"}


class TestRelease:
	def test_release(self, registry: LockRegistry) -> None:
		lock = registry.acquire("/a.txt", "h1")
		released = registry.release(lock.id, "h1")
		assert released.released_at is not None
		assert released.status == "released"
		registry.acquire("/a.txt", "h2")

	def test_not_owner(self, registry: LockRegistry) -> None:
		lock = registry.acquire("/a.txt", "h1")
		with pytest.raises(NotOwnerError):
			registry.release(lock.id, "h2")

	def test_already_released(self, registry: LockRegistry) -> None:
		lock = registry.acquire("/a.txt", "h1")
		registry.release(lock.id, "h1")
		with pytest.raises(AlreadyReleasedError):
			registry.release(lock.id, "h1")

	def test_missing_lock(self, registry: LockRegistry) -> None:
		with pytest.raises(NotFoundError):
			registry.release("lock-nope", "h1")

	def test_force_release(self, registry: LockRegistry) -> None:
		lock = registry.acquire("/a.txt", "h1")
		forced = registry.force_release(lock.id)
		assert forced.status == "force_released"
		with pytest.raises(AlreadyReleasedError):
			registry.force_release(lock.id)


class TestExpiry:
	def test_list_active_excludes_timed_out(self, registry: LockRegistry, clock: FakeClock) -> None:
		registry.acquire("/short", "h1", timeout_ms=1_000)
		registry.acquire("/long", "h1", timeout_ms=60_000)
		clock.advance(ms=5_000)
		assert [lk.resource_key for lk in registry.list_active()] == ["/long"]
		assert registry.active_for("/short") is None

	def test_release_expired_counts(self, registry: LockRegistry, clock: FakeClock) -> None:
		registry.acquire("/a", "h1", timeout_ms=1_000)
		registry.acquire("/b", "h1", timeout_ms=1_000)
		registry.acquire("/c", "h1", timeout_ms=60_000)
		clock.advance(ms=2_000)
		assert registry.release_expired() == 2
		assert registry.release_expired() == 0

	def test_active_for_holders(self, registry: LockRegistry) -> None:
		registry.acquire("/a", "agent-1")
		registry.acquire("/b", "agent-2")
		registry.acquire("/c", "agent-3")
		found = registry.active_for_holders({"agent-1"}, resource_keys={"/c"})
		assert sorted(lk.resource_key for lk in found) == ["/a", "/c"]


class TestMutualExclusion:
	def test_two_connections_cannot_both_acquire(self, tmp_path: Path) -> None:
		path = tmp_path / "locks.db"
		Database(path).close()
		barrier = threading.Barrier(8)
		winners: list[str] = []
		conflicts: list[str] = []
		errors: list[BaseException] = []
		guard = threading.Lock()

		def contend(holder: str) -> None:
			db = Database(path)
			try:
				registry = LockRegistry(db)
				barrier.wait()
				try:
					registry.acquire("/shared.txt", holder)
					with guard:
						winners.append(holder)
				except ConflictError:
					with guard:
						conflicts.append(holder)
			except BaseException as exc:  # noqa: BLE001
				with guard:
					errors.append(exc)
			finally:
				db.close()

		threads = [threading.Thread(target=contend, args=(f"h{i}",)) for i in range(8)]
		for t in threads:
			t.start()
		for t in threads:
			t.join()

		assert errors == []
		assert len(winners) == 1
		assert len(conflicts) == 7
