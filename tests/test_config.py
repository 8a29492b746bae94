"""Tests for config loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from flight_recorder.config import RecorderConfig, load_config, validate_config


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
	toml = tmp_path / "flight-recorder.toml"
	toml.write_text("""\
[storage]
db_path = "~/recorder/state.db"
backup_dir = "/var/tmp/checkpoints"
busy_timeout_ms = 2000

[recovery]
inactivity_threshold_ms = 600000
scan_interval_seconds = 30
allow_reconsume = true

[checkpoints]
progress_thresholds = [75, 25, 50, 25]
mirror_to_backup = false
created_by = "scheduler"

[retention]
retention_days = 14
keep_per_mission = 3

[locks]
default_timeout_ms = 45000

[tracing]
enabled = true
service_name = "recorder-test"
exporter = "otlp"
otlp_endpoint = "http://collector:4317"
""")
	return toml


class TestLoadConfig:
	def test_defaults_without_file(self) -> None:
		rc = load_config(None, env={})
		assert rc.storage.db_path == ".flight-recorder/recorder.db"
		assert rc.recovery.inactivity_threshold_ms == 300_000
		assert rc.recovery.allow_reconsume is False
		assert rc.checkpoints.progress_thresholds == [25, 50, 75]
		assert rc.retention.retention_days == 7
		assert rc.retention.keep_per_mission == 5
		assert rc.locks.default_timeout_ms == 30_000
		assert rc.tracing.enabled is False

	def test_full_file(self, full_config: Path) -> None:
		rc = load_config(full_config, env={})
		assert rc.storage.resolved_db_path == Path.home() / "recorder" / "state.db"
		assert rc.storage.busy_timeout_ms == 2000
		assert rc.recovery.inactivity_threshold_ms == 600_000
		assert rc.recovery.scan_interval_seconds == 30
		assert rc.recovery.allow_reconsume is True
		assert rc.checkpoints.progress_thresholds == [25, 50, 75]
		assert rc.checkpoints.mirror_to_backup is False
		assert rc.checkpoints.created_by == "scheduler"
		assert rc.retention.max_age_ms == 14 * 24 * 60 * 60 * 1000
		assert rc.locks.default_timeout_ms == 45_000
		assert rc.tracing.exporter == "otlp"
		assert rc.tracing.otlp_endpoint == "http://collector:4317"

	def test_partial_sections_keep_defaults(self, tmp_path: Path) -> None:
		toml = tmp_path / "flight-recorder.toml"
		toml.write_text("[retention]\nkeep_per_mission = 2\n")
		rc = load_config(toml, env={})
		assert rc.retention.keep_per_mission == 2
		assert rc.retention.retention_days == 7
		assert rc.recovery.inactivity_threshold_ms == 300_000

	def test_missing_file(self, tmp_path: Path) -> None:
		with pytest.raises(FileNotFoundError):
			load_config(tmp_path / "nope.toml")

	def test_env_overrides_file(self, full_config: Path) -> None:
		rc = load_config(full_config, env={
			"FLIGHT_RECORDER_DB": "/tmp/override.db",
			"FLIGHT_RECORDER_INACTIVITY_MS": "120000",
			"FLIGHT_RECORDER_KEEP_PER_MISSION": "9",
		})
		assert rc.storage.db_path == "/tmp/override.db"
		assert rc.recovery.inactivity_threshold_ms == 120_000
		assert rc.retention.keep_per_mission == 9
		assert rc.retention.retention_days == 14

	def test_bad_env_value(self) -> None:
		with pytest.raises(ValueError):
			load_config(None, env={"FLIGHT_RECORDER_RETENTION_DAYS": "a week"})


class TestValidateConfig:
	def test_defaults_are_clean(self, tmp_path: Path) -> None:
		rc = RecorderConfig()
		rc.storage.db_path = str(tmp_path / "rec.db")
		rc.storage.backup_dir = str(tmp_path / "cp")
		assert validate_config(rc) == []

	def test_errors(self, tmp_path: Path) -> None:
		rc = RecorderConfig()
		rc.storage.db_path = str(tmp_path / "rec.db")
		rc.recovery.inactivity_threshold_ms = 0
		rc.checkpoints.progress_thresholds = [0, 50, 100]
		rc.retention.keep_per_mission = 0
		rc.locks.default_timeout_ms = -5
		errors = [msg for level, msg in validate_config(rc) if level == "error"]
		assert any("inactivity_threshold_ms" in m for m in errors)
		assert any("[0, 100]" in m for m in errors)
		assert any("keep_per_mission" in m for m in errors)
		assert any("default_timeout_ms" in m for m in errors)

	def test_backup_dir_is_a_file(self, tmp_path: Path) -> None:
		blocker = tmp_path / "not-a-dir"
		blocker.write_text("")
		rc = RecorderConfig()
		rc.storage.db_path = str(tmp_path / "rec.db")
		rc.storage.backup_dir = str(blocker)
		assert ("error", f"backup_dir is not a directory: {blocker}") in validate_config(rc)

	def test_warnings(self, tmp_path: Path) -> None:
		rc = RecorderConfig()
		rc.storage.db_path = str(tmp_path / "rec.db")
		rc.recovery.inactivity_threshold_ms = 5_000
		rc.recovery.allow_reconsume = True
		rc.tracing.exporter = "zipkin"
		issues = validate_config(rc)
		assert all(level == "warning" for level, _ in issues)
		assert len(issues) == 3
