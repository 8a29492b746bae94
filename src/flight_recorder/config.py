"""TOML configuration loader for flight-recorder."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flight_recorder.constants import DEFAULT_LIMITS, DEFAULT_PROGRESS_THRESHOLDS

DEFAULT_CONFIG_NAME = "flight-recorder.toml"


@dataclass
class StorageConfig:
	"""Database and checkpoint mirror locations."""

	db_path: str = ".flight-recorder/recorder.db"
	backup_dir: str = ".flight-recorder/checkpoints"
	busy_timeout_ms: int = 5000

	@property
	def resolved_db_path(self) -> Path:
		return Path(os.path.expanduser(self.db_path))

	@property
	def resolved_backup_dir(self) -> Path:
		return Path(os.path.expanduser(self.backup_dir))


@dataclass
class RecoveryConfig:
	"""Stale-mission detection and restore policy."""

	inactivity_threshold_ms: int = DEFAULT_LIMITS["inactivity_threshold_ms"]
	scan_interval_seconds: int = DEFAULT_LIMITS["scan_interval_seconds"]
	allow_reconsume: bool = False


@dataclass
class CheckpointsConfig:
	"""Automatic checkpoint settings."""

	progress_thresholds: list[int] = field(default_factory=lambda: list(DEFAULT_PROGRESS_THRESHOLDS))
	mirror_to_backup: bool = True
	created_by: str = "system"


@dataclass
class RetentionConfig:
	"""Checkpoint pruning policy."""

	retention_days: int = DEFAULT_LIMITS["retention_days"]
	keep_per_mission: int = DEFAULT_LIMITS["keep_per_mission"]

	@property
	def max_age_ms(self) -> int:
		return self.retention_days * 24 * 60 * 60 * 1000


@dataclass
class LocksConfig:
	default_timeout_ms: int = DEFAULT_LIMITS["lock_timeout_ms"]


@dataclass
class TracingConfig:
	"""OpenTelemetry tracing settings."""

	enabled: bool = False
	service_name: str = "flight-recorder"
	exporter: str = "console"  # console | otlp | none
	otlp_endpoint: str = "http://localhost:4317"


@dataclass
class RecorderConfig:
	"""Top-level flight-recorder configuration."""

	storage: StorageConfig = field(default_factory=StorageConfig)
	recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
	checkpoints: CheckpointsConfig = field(default_factory=CheckpointsConfig)
	retention: RetentionConfig = field(default_factory=RetentionConfig)
	locks: LocksConfig = field(default_factory=LocksConfig)
	tracing: TracingConfig = field(default_factory=TracingConfig)


def _build_storage(data: dict[str, Any]) -> StorageConfig:
	sc = StorageConfig()
	if "db_path" in data:
		sc.db_path = str(data["db_path"])
	if "backup_dir" in data:
		sc.backup_dir = str(data["backup_dir"])
	if "busy_timeout_ms" in data:
		sc.busy_timeout_ms = int(data["busy_timeout_ms"])
	return sc


def _build_recovery(data: dict[str, Any]) -> RecoveryConfig:
	rc = RecoveryConfig()
	if "inactivity_threshold_ms" in data:
		rc.inactivity_threshold_ms = int(data["inactivity_threshold_ms"])
	if "scan_interval_seconds" in data:
		rc.scan_interval_seconds = int(data["scan_interval_seconds"])
	if "allow_reconsume" in data:
		rc.allow_reconsume = bool(data["allow_reconsume"])
	return rc


def _build_checkpoints(data: dict[str, Any]) -> CheckpointsConfig:
	cc = CheckpointsConfig()
	if "progress_thresholds" in data:
		cc.progress_thresholds = sorted({int(t) for t in data["progress_thresholds"]})
	if "mirror_to_backup" in data:
		cc.mirror_to_backup = bool(data["mirror_to_backup"])
	if "created_by" in data:
		cc.created_by = str(data["created_by"])
	return cc


def _build_retention(data: dict[str, Any]) -> RetentionConfig:
	rc = RetentionConfig()
	if "retention_days" in data:
		rc.retention_days = int(data["retention_days"])
	if "keep_per_mission" in data:
		rc.keep_per_mission = int(data["keep_per_mission"])
	return rc


def _build_locks(data: dict[str, Any]) -> LocksConfig:
	lc = LocksConfig()
	if "default_timeout_ms" in data:
		lc.default_timeout_ms = int(data["default_timeout_ms"])
	return lc


def _build_tracing(data: dict[str, Any]) -> TracingConfig:
	tc = TracingConfig()
	if "enabled" in data:
		tc.enabled = bool(data["enabled"])
	if "service_name" in data:
		tc.service_name = str(data["service_name"])
	if "exporter" in data:
		tc.exporter = str(data["exporter"])
	if "otlp_endpoint" in data:
		tc.otlp_endpoint = str(data["otlp_endpoint"])
	return tc


def _apply_env_overrides(rc: RecorderConfig, env: dict[str, str]) -> None:
	"""Environment variables win over file values."""
	if env.get("FLIGHT_RECORDER_DB"):
		rc.storage.db_path = env["FLIGHT_RECORDER_DB"]
	if env.get("FLIGHT_RECORDER_BACKUP_DIR"):
		rc.storage.backup_dir = env["FLIGHT_RECORDER_BACKUP_DIR"]
	if env.get("FLIGHT_RECORDER_INACTIVITY_MS"):
		rc.recovery.inactivity_threshold_ms = int(env["FLIGHT_RECORDER_INACTIVITY_MS"])
	if env.get("FLIGHT_RECORDER_RETENTION_DAYS"):
		rc.retention.retention_days = int(env["FLIGHT_RECORDER_RETENTION_DAYS"])
	if env.get("FLIGHT_RECORDER_KEEP_PER_MISSION"):
		rc.retention.keep_per_mission = int(env["FLIGHT_RECORDER_KEEP_PER_MISSION"])


def load_config(path: str | Path | None = None, env: dict[str, str] | None = None) -> RecorderConfig:
	"""Load a flight-recorder.toml config file.

	Args:
		path: Path to the TOML config file. None means defaults only.
		env: Environment to read overrides from (defaults to os.environ).

	Returns:
		Parsed RecorderConfig.

	Raises:
		FileNotFoundError: If an explicit config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
		ValueError: If an environment override is not an integer.
	"""
	data: dict[str, Any] = {}
	if path is not None:
		config_path = Path(path)
		if not config_path.exists():
			raise FileNotFoundError(f"Config file not found: {config_path}")
		with open(config_path, "rb") as f:
			data = tomllib.load(f)

	rc = RecorderConfig()
	if "storage" in data:
		rc.storage = _build_storage(data["storage"])
	if "recovery" in data:
		rc.recovery = _build_recovery(data["recovery"])
	if "checkpoints" in data:
		rc.checkpoints = _build_checkpoints(data["checkpoints"])
	if "retention" in data:
		rc.retention = _build_retention(data["retention"])
	if "locks" in data:
		rc.locks = _build_locks(data["locks"])
	if "tracing" in data:
		rc.tracing = _build_tracing(data["tracing"])
	_apply_env_overrides(rc, dict(os.environ) if env is None else env)
	return rc


def validate_config(config: RecorderConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded RecorderConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	# 1. storage locations
	db_parent = config.storage.resolved_db_path.parent
	if db_parent.exists() and not os.access(db_parent, os.W_OK):
		issues.append(("error", f"database directory is not writable: {db_parent}"))
	backup_dir = config.storage.resolved_backup_dir
	if backup_dir.exists() and not backup_dir.is_dir():
		issues.append(("error", f"backup_dir is not a directory: {backup_dir}"))

	# 2. thresholds
	if config.recovery.inactivity_threshold_ms <= 0:
		issues.append(("error", "recovery.inactivity_threshold_ms must be positive"))
	elif config.recovery.inactivity_threshold_ms < 60_000:
		issues.append((
			"warning",
			f"inactivity_threshold_ms is very low: {config.recovery.inactivity_threshold_ms}ms",
		))
	bad = [t for t in config.checkpoints.progress_thresholds if not 0 < t < 100]
	if bad:
		issues.append(("error", f"progress_thresholds must be between 1 and 99: {bad}"))

	# 3. retention
	if config.retention.keep_per_mission < 1:
		issues.append(("error", "retention.keep_per_mission must be at least 1"))
	if config.retention.retention_days < 0:
		issues.append(("error", "retention.retention_days must not be negative"))

	# 4. locks and tracing
	if config.locks.default_timeout_ms <= 0:
		issues.append(("error", "locks.default_timeout_ms must be positive"))
	if config.tracing.exporter not in ("console", "otlp", "none"):
		issues.append(("warning", f"unknown tracing exporter: {config.tracing.exporter}"))
	if config.recovery.allow_reconsume:
		issues.append(("warning", "recovery.allow_reconsume is on; checkpoints can be applied twice"))

	return issues
