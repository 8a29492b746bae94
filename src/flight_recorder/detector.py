"""Stale-mission detection.

A mission is stale when it is in progress and nothing has been appended to
its own stream or any of its sorties' streams for longer than the inactivity
threshold. Scans only read, so they are safe to run on a timer alongside
writers.
"""

from __future__ import annotations

import logging
import time

from flight_recorder.config import RecoveryConfig
from flight_recorder.constants import HOUSEKEEPING_EVENTS, STATUS_IN_PROGRESS
from flight_recorder.db import Database
from flight_recorder.errors import ValidationError
from flight_recorder.event_store import EventStore
from flight_recorder.models import Clock, RecoveryCandidate, elapsed_ms, utc_now
from flight_recorder.tracing import RecorderTracer

logger = logging.getLogger(__name__)


class RecoveryDetector:
	def __init__(
		self,
		db: Database,
		store: EventStore,
		config: RecoveryConfig | None = None,
		clock: Clock = utc_now,
		tracer: RecorderTracer | None = None,
	) -> None:
		self.db = db
		self.store = store
		self.config = config or RecoveryConfig()
		self.clock = clock
		self.tracer = tracer or RecorderTracer()

	def find_stale(self, inactivity_threshold_ms: int | None = None) -> list[RecoveryCandidate]:
		"""Return every in-progress mission idle for longer than the threshold.

		Missions with no checkpoint are included with the checkpoint fields
		left empty. Results are ordered longest-idle first.
		"""
		threshold = (
			self.config.inactivity_threshold_ms
			if inactivity_threshold_ms is None else inactivity_threshold_ms
		)
		if threshold < 0:
			raise ValidationError(f"inactivity threshold must not be negative, got {threshold}")

		with self.tracer.start_scan_span(threshold) as span:
			now = self.clock()
			candidates: list[RecoveryCandidate] = []
			for mission in self.db.get_missions_by_status(STATUS_IN_PROGRESS):
				streams = [mission.id, *(s.id for s in self.db.get_sorties_for_mission(mission.id))]
				latest = self.store.latest_activity(streams, exclude_types=tuple(HOUSEKEEPING_EVENTS))
				last_activity_at = latest.occurred_at if latest else mission.updated_at
				idle_ms = elapsed_ms(last_activity_at, now)
				if idle_ms <= threshold:
					continue
				candidate = RecoveryCandidate(
					mission_id=mission.id,
					mission_title=mission.title,
					last_activity_at=last_activity_at,
					inactivity_duration_ms=idle_ms,
				)
				checkpoint = self.db.get_latest_checkpoint(mission.id)
				if checkpoint is not None:
					candidate.checkpoint_id = checkpoint.id
					candidate.checkpoint_progress = checkpoint.progress_percent
					candidate.checkpoint_timestamp = checkpoint.created_at
				candidates.append(candidate)
			candidates.sort(key=lambda c: c.inactivity_duration_ms, reverse=True)
			span.set_attribute("recovery.stale_count", len(candidates))

		for candidate in candidates:
			logger.warning(
				"Mission %s (%s) idle for %ds%s",
				candidate.mission_id, candidate.mission_title[:60],
				candidate.inactivity_duration_ms // 1000,
				f", checkpoint {candidate.checkpoint_id}" if candidate.recoverable else ", no checkpoint",
			)
		return candidates

	def check_for_recovery(self) -> list[RecoveryCandidate]:
		"""Stale missions that have a checkpoint to restore from."""
		return [c for c in self.find_stale() if c.recoverable]


class RecoveryMonitor:
	"""Interval-gated stale-mission scan.

	Every `interval` seconds, runs the detector. Consecutive scans that find
	stale missions are counted so callers can escalate after a few in a row.
	"""

	def __init__(self, detector: RecoveryDetector, interval: int = 60) -> None:
		self._detector = detector
		self._interval = interval
		self._last_check_time: float = 0.0
		self._consecutive_stale: int = 0
		self._last_candidates: list[RecoveryCandidate] = []

	def check(self, force: bool = False) -> list[RecoveryCandidate]:
		"""Run a scan if the interval has elapsed. Returns the latest candidates."""
		now = time.monotonic()
		if not force and self._last_check_time > 0 and now - self._last_check_time < self._interval:
			return self._last_candidates
		self._last_check_time = now

		candidates = self._detector.find_stale()
		self._last_candidates = candidates
		if candidates:
			self._consecutive_stale += 1
			logger.warning(
				"Recovery monitor: %d stale mission(s), %d recoverable (stale scans in a row: %d)",
				len(candidates), sum(1 for c in candidates if c.recoverable), self._consecutive_stale,
			)
		else:
			if self._consecutive_stale:
				logger.info("Recovery monitor: no stale missions")
			self._consecutive_stale = 0
		return candidates

	@property
	def consecutive_stale(self) -> int:
		return self._consecutive_stale
