"""Tests for the flightrec command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import FakeClock, make_mission, make_sortie
from flight_recorder.cli import build_parser, main
from flight_recorder.db import Database
from flight_recorder.recorder import FlightRecorder


@pytest.fixture()
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
	"""Run commands from an empty directory so no stray config is picked up."""
	monkeypatch.chdir(tmp_path)
	return tmp_path


@pytest.fixture()
def db_path(workdir: Path) -> Path:
	return workdir / "rec.db"


def _seed(db_path: Path, missions: int = 1, checkpoint: bool = True) -> list[str]:
	"""Write missions in the past so they look stale to the real clock."""
	ids = []
	with FlightRecorder(Database(db_path), clock=FakeClock()) as rec:
		for i in range(missions):
			mission_id = make_mission(rec, title=f"Mission {i}")
			make_sortie(rec, mission_id, files=["/a.txt"], assigned_to="agent-1")
			if checkpoint:
				rec.checkpoints.create(mission_id)
			ids.append(mission_id)
	return ids


class TestParser:
	def test_no_command_returns_0(self) -> None:
		assert main([]) == 0

	def test_resume_targets_are_exclusive(self) -> None:
		with pytest.raises(SystemExit):
			build_parser().parse_args(["resume", "--checkpoint", "chk-1", "--mission", "msn-1"])

	def test_prune_flags(self) -> None:
		args = build_parser().parse_args(["checkpoints", "prune", "--keep", "2", "--dry-run"])
		assert args.keep == 2
		assert args.dry_run is True


class TestResume:
	def test_nothing_to_recover(self, db_path: Path) -> None:
		assert main(["resume", "--db", str(db_path)]) == 2

	def test_recovers_single_candidate(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		_seed(db_path)
		assert main(["resume", "--db", str(db_path)]) == 0
		out = capsys.readouterr().out
		assert "# Resuming mission Mission 0" in out
		assert main(["resume", "--db", str(db_path)]) == 2

	def test_json_output(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		(mission_id,) = _seed(db_path)
		assert main(["resume", "--db", str(db_path), "--mission", mission_id, "--json"]) == 0
		data = json.loads(capsys.readouterr().out)
		assert data["success"] is True
		assert data["mission_id"] == mission_id
		assert data["restored"]["sorties"] == 1

	def test_dry_run_leaves_checkpoint(self, db_path: Path) -> None:
		_seed(db_path)
		assert main(["resume", "--db", str(db_path), "--dry-run"]) == 0
		assert main(["resume", "--db", str(db_path)]) == 0

	def test_consumed_checkpoint(self, db_path: Path) -> None:
		_seed(db_path)
		with Database(db_path) as db:
			checkpoint_id = db.list_checkpoints()[0].id
		assert main(["resume", "--db", str(db_path), "--checkpoint", checkpoint_id]) == 0
		assert main(["resume", "--db", str(db_path), "--checkpoint", checkpoint_id]) == 2

	def test_mission_without_checkpoint(self, db_path: Path) -> None:
		(mission_id,) = _seed(db_path, checkpoint=False)
		assert main(["resume", "--db", str(db_path), "--mission", mission_id]) == 2

	def test_several_candidates_is_ambiguous(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		ids = _seed(db_path, missions=2)
		assert main(["resume", "--db", str(db_path)]) == 1
		out = capsys.readouterr().out
		assert all(mission_id in out for mission_id in ids)

	def test_force_locks_needs_confirmation(
		self, db_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str],
	) -> None:
		_seed(db_path)
		monkeypatch.setattr("builtins.input", lambda _prompt: "n")
		assert main(["resume", "--db", str(db_path), "--force-locks"]) == 1
		assert "Aborted." in capsys.readouterr().out

	def test_force_locks_with_yes(self, db_path: Path) -> None:
		_seed(db_path)
		assert main(["resume", "--db", str(db_path), "--force-locks", "--yes"]) == 0

	def test_missing_explicit_config(self, db_path: Path) -> None:
		assert main(["resume", "--db", str(db_path), "--config", "missing.toml"]) == 1


class TestCheckpointCommands:
	def test_create_and_list(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		(mission_id,) = _seed(db_path, checkpoint=False)
		assert main(["checkpoint", "create", "--db", str(db_path), "--mission", mission_id,
			"--blocker", "waiting on review"]) == 0
		capsys.readouterr()
		assert main(["checkpoints", "list", "--db", str(db_path), "--json"]) == 0
		listed = json.loads(capsys.readouterr().out)
		assert len(listed) == 1
		assert "waiting on review" in listed[0]["recovery_context"]["blockers"]

	def test_create_unknown_mission(self, db_path: Path) -> None:
		assert main(["checkpoint", "create", "--db", str(db_path), "--mission", "msn-nope"]) == 1

	def test_show(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		_seed(db_path)
		with Database(db_path) as db:
			checkpoint_id = db.list_checkpoints()[0].id
		assert main(["checkpoints", "show", "--db", str(db_path), checkpoint_id]) == 0
		out = capsys.readouterr().out
		assert f"Checkpoint {checkpoint_id} (schema 1.0)" in out
		assert main(["checkpoints", "show", "--db", str(db_path), "chk-missing"]) == 1

	def test_empty_list(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		assert main(["checkpoints", "list", "--db", str(db_path)]) == 0
		assert "No checkpoints." in capsys.readouterr().out

	def test_stats(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		(mission_id,) = _seed(db_path, checkpoint=False)
		assert main(["checkpoints", "stats", "--db", str(db_path)]) == 0
		assert "Checkpoints: 0 (mirrored files: 0)" in capsys.readouterr().out
		assert main(["checkpoint", "create", "--db", str(db_path), "--mission", mission_id]) == 0
		capsys.readouterr()
		assert main(["checkpoints", "stats", "--db", str(db_path), "--json"]) == 0
		data = json.loads(capsys.readouterr().out)
		assert data["total"] == 1
		assert data["mirrored"] == 1
		assert data["latest"]["mission_id"] == mission_id

	def test_prune_dry_run(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		_seed(db_path, missions=2)
		assert main(["checkpoints", "prune", "--db", str(db_path), "--older-than-days", "0", "--dry-run"]) == 0
		assert "Would delete 0 checkpoint(s); kept 2 protected" in capsys.readouterr().out


class TestInspectionCommands:
	def test_stale(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		(mission_id,) = _seed(db_path)
		assert main(["stale", "--db", str(db_path)]) == 0
		out = capsys.readouterr().out
		assert mission_id in out
		assert "checkpoint chk-" in out

	def test_locks(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		with FlightRecorder(Database(db_path), clock=FakeClock()) as rec:
			rec.locks.acquire("/a.txt", "agent-1")
		assert main(["locks", "list", "--db", str(db_path)]) == 0
		assert "No active locks." in capsys.readouterr().out
		assert main(["locks", "release-expired", "--db", str(db_path)]) == 0
		assert "Released 1 expired lock(s)" in capsys.readouterr().out

	def test_validate_config(self, workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
		bad = workdir / "bad.toml"
		bad.write_text("[retention]\nkeep_per_mission = 0\n")
		assert main(["validate-config", "--config", str(bad)]) == 1
		assert "keep_per_mission" in capsys.readouterr().out
		assert main(["validate-config"]) == 0
