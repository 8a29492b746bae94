"""CLI interface for flight-recorder."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable

from flight_recorder.config import DEFAULT_CONFIG_NAME, RecorderConfig, load_config, validate_config
from flight_recorder.constants import CHECKPOINT_TRIGGERS, TRIGGER_MANUAL
from flight_recorder.errors import NotFoundError, RecorderError
from flight_recorder.recorder import FlightRecorder
from flight_recorder.restorer import format_recovery_prompt

DEFAULT_CONFIG = DEFAULT_CONFIG_NAME


def _add_common(p: argparse.ArgumentParser, json_flag: bool = True) -> None:
	p.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")
	p.add_argument("--db", default=None, help="Database file (overrides config)")
	if json_flag:
		p.add_argument("--json", action="store_true", help="Print JSON instead of text")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="flightrec",
		description="Flight recorder - event log, checkpoints and recovery for agent missions",
	)
	sub = parser.add_subparsers(dest="command")

	# flightrec checkpoint create
	checkpoint = sub.add_parser("checkpoint", help="Create a checkpoint")
	checkpoint_sub = checkpoint.add_subparsers(dest="action")
	create = checkpoint_sub.add_parser("create", help="Snapshot a mission now")
	_add_common(create)
	create.add_argument("--mission", required=True, help="Mission id")
	create.add_argument("--trigger", default=TRIGGER_MANUAL, choices=sorted(CHECKPOINT_TRIGGERS))
	create.add_argument("--details", default=None, help="Free-text trigger details")
	create.add_argument("--blocker", action="append", default=[], help="Known blocker (repeatable)")
	create.add_argument("--by", default=None, help="Who is creating the checkpoint")

	# flightrec checkpoints list|show|prune|stats
	checkpoints = sub.add_parser("checkpoints", help="Inspect and prune checkpoints")
	checkpoints_sub = checkpoints.add_subparsers(dest="action")
	ls = checkpoints_sub.add_parser("list", help="List checkpoints, newest first")
	_add_common(ls)
	ls.add_argument("--mission", default=None, help="Only this mission")
	ls.add_argument("--limit", type=int, default=20)
	ls.add_argument("--offset", type=int, default=0)
	show = checkpoints_sub.add_parser("show", help="Show one checkpoint")
	_add_common(show)
	show.add_argument("checkpoint_id")
	prune = checkpoints_sub.add_parser("prune", help="Delete old checkpoints")
	_add_common(prune, json_flag=False)
	prune.add_argument("--older-than-days", type=int, default=None)
	prune.add_argument("--keep", type=int, default=None, help="Checkpoints to keep per mission")
	prune.add_argument("--mission", default=None, help="Only this mission")
	prune.add_argument("--dry-run", action="store_true", help="Report without deleting")
	_add_common(checkpoints_sub.add_parser("stats", help="Count checkpoints and mirror files"))

	# flightrec resume
	resume = sub.add_parser("resume", help="Restore a mission from a checkpoint")
	_add_common(resume)
	target = resume.add_mutually_exclusive_group()
	target.add_argument("--checkpoint", default=None, help="Checkpoint id to restore")
	target.add_argument("--mission", default=None, help="Restore the mission's latest checkpoint")
	resume.add_argument("--dry-run", action="store_true", help="Run the restore, then roll it back")
	resume.add_argument(
		"--force-locks", action="store_true",
		help="Release locks now held by others (asks for confirmation)",
	)
	resume.add_argument("--yes", action="store_true", help="Skip the --force-locks confirmation")

	# flightrec stale
	stale = sub.add_parser("stale", help="List in-progress missions that have gone quiet")
	_add_common(stale)
	stale.add_argument("--threshold-ms", type=int, default=None)

	# flightrec locks list|release-expired
	locks = sub.add_parser("locks", help="Inspect resource locks")
	locks_sub = locks.add_subparsers(dest="action")
	_add_common(locks_sub.add_parser("list", help="List active locks"))
	_add_common(locks_sub.add_parser("release-expired", help="Release timed-out locks"), json_flag=False)

	# flightrec validate-config
	vc = sub.add_parser("validate-config", help="Check the config for problems")
	vc.add_argument("--config", default=DEFAULT_CONFIG, help="Config file path")

	return parser


def _load(args: argparse.Namespace) -> RecorderConfig:
	"""Load the config file if present; the default name may be absent."""
	path = Path(args.config)
	if not path.exists() and args.config == DEFAULT_CONFIG:
		config = load_config(None)
	else:
		config = load_config(path)
	if getattr(args, "db", None):
		config.storage.db_path = args.db
	return config


def _open(args: argparse.Namespace) -> FlightRecorder:
	return FlightRecorder.open(_load(args))


def _print_json(data: Any) -> None:
	print(json.dumps(data, indent=2, sort_keys=True))


def cmd_checkpoint_create(args: argparse.Namespace) -> int:
	"""Snapshot a mission."""
	with _open(args) as rec:
		try:
			cp = rec.checkpoints.create(
				args.mission, args.trigger, args.details, args.blocker, args.by,
			)
		except RecorderError as exc:
			print(f"Error: {exc}")
			return 1
		if args.json:
			_print_json(cp.to_dict())
		else:
			print(f"Created {cp.id} for {cp.mission_id} at {cp.progress_percent}%")
			print(f"  sorties={len(cp.sorties_snapshot)} locks={len(cp.active_locks_snapshot)}"
				f" messages={len(cp.pending_messages_snapshot)}")
	return 0


def cmd_checkpoints_list(args: argparse.Namespace) -> int:
	with _open(args) as rec:
		try:
			items = rec.checkpoints.list_checkpoints(args.mission, args.limit, args.offset)
		except RecorderError as exc:
			print(f"Error: {exc}")
			return 1
		if args.json:
			_print_json([cp.to_dict() for cp in items])
			return 0
		if not items:
			print("No checkpoints.")
			return 0
		for cp in items:
			consumed = " (consumed)" if cp.consumed_at else ""
			print(f"{cp.id} | {cp.mission_id} | {cp.created_at} | {cp.trigger} | {cp.progress_percent}%{consumed}")
	return 0


def cmd_checkpoints_show(args: argparse.Namespace) -> int:
	with _open(args) as rec:
		try:
			cp = rec.checkpoints.get(args.checkpoint_id)
		except RecorderError as exc:
			print(f"Error: {exc}")
			return 1
		if args.json:
			_print_json(cp.to_dict())
			return 0
		ctx = cp.recovery_context
		print(f"Checkpoint {cp.id} (schema {cp.schema_version})")
		print(f"  mission:  {cp.mission_id}")
		print(f"  created:  {cp.created_at} by {cp.created_by}")
		print(f"  trigger:  {cp.trigger}{f' - {cp.trigger_details}' if cp.trigger_details else ''}")
		print(f"  progress: {cp.progress_percent}%")
		print(f"  consumed: {cp.consumed_at or 'no'}")
		print(f"  summary:  {ctx.summary}")
		print(f"  last:     {ctx.last_action}")
		for step in ctx.next_steps:
			print(f"  next:     {step}")
		for blocker in ctx.blockers:
			print(f"  blocker:  {blocker}")
		for s in cp.sorties_snapshot:
			print(f"  sortie {s.id} [{s.status}] {s.progress_percent}% {s.title}")
		for lk in cp.active_locks_snapshot:
			print(f"  lock {lk.id} {lk.resource_key} held by {lk.holder_id}")
		if cp.pending_messages_snapshot:
			print(f"  pending messages: {len(cp.pending_messages_snapshot)}")
	return 0


def cmd_checkpoints_prune(args: argparse.Namespace) -> int:
	older_than_ms = None
	if args.older_than_days is not None:
		older_than_ms = args.older_than_days * 24 * 60 * 60 * 1000
	with _open(args) as rec:
		try:
			result = rec.checkpoints.prune(older_than_ms, args.keep, args.mission, args.dry_run)
		except RecorderError as exc:
			print(f"Error: {exc}")
			return 1
	verb = "Would delete" if result.dry_run else "Deleted"
	print(f"{verb} {len(result.deleted)} checkpoint(s); kept {len(result.protected)} protected")
	for checkpoint_id in result.deleted:
		print(f"  - {checkpoint_id}")
	return 0


def cmd_checkpoints_stats(args: argparse.Namespace) -> int:
	with _open(args) as rec:
		stats = rec.checkpoints.stats()
	latest = stats.latest
	if args.json:
		_print_json({
			"total": stats.total,
			"mirrored": stats.mirrored,
			"latest": latest.to_dict() if latest else None,
		})
		return 0
	print(f"Checkpoints: {stats.total} (mirrored files: {stats.mirrored})")
	if latest is not None:
		print(f"Latest: {latest.id} | {latest.mission_id} | {latest.created_at} | {latest.progress_percent}%")
	return 0


def _confirm(prompt: str) -> bool:
	try:
		return input(f"{prompt} [y/N] ").strip().lower() in ("y", "yes")
	except EOFError:
		return False


def cmd_resume(args: argparse.Namespace) -> int:
	"""Restore a mission. Exit 2 when there is nothing to recover, 1 on failure."""
	if args.force_locks and not args.yes and not args.dry_run:
		if not _confirm("Force-release locks now held by other agents?"):
			print("Aborted.")
			return 1

	with _open(args) as rec:
		checkpoint_id = args.checkpoint
		if checkpoint_id is None and args.mission is None:
			candidates = rec.detector.check_for_recovery()
			if not candidates:
				print("Nothing to recover.")
				return 2
			if len(candidates) > 1:
				print("Several missions can be recovered; pick one with --mission:")
				for c in candidates:
					print(f"  {c.mission_id} ({c.mission_title}) idle {c.inactivity_duration_ms // 1000}s")
				return 1
			checkpoint_id = candidates[0].checkpoint_id

		try:
			if checkpoint_id is not None:
				result = rec.restorer.restore(checkpoint_id, args.force_locks, args.dry_run)
			else:
				result = rec.restorer.restore_latest(args.mission, args.force_locks, args.dry_run)
		except NotFoundError as exc:
			print(f"Nothing to recover: {exc}")
			return 2
		except RecorderError as exc:
			print(f"Recovery failed: {exc}")
			return 1

		if args.json:
			_print_json(asdict(result))
		else:
			mission = rec.db.get_mission(result.mission_id)
			print(format_recovery_prompt(result, mission.title if mission else ""))
	if not result.success:
		return 1
	if result.warnings and not args.json:
		print(f"Recovered with {len(result.warnings)} warning(s).")
	return 0


def cmd_stale(args: argparse.Namespace) -> int:
	with _open(args) as rec:
		candidates = rec.detector.find_stale(args.threshold_ms)
	if args.json:
		_print_json([asdict(c) for c in candidates])
		return 0
	if not candidates:
		print("No stale missions.")
		return 0
	for c in candidates:
		restore = f"checkpoint {c.checkpoint_id} ({c.checkpoint_progress}%)" if c.recoverable else "no checkpoint"
		print(f"{c.mission_id} | {c.mission_title} | idle {c.inactivity_duration_ms // 1000}s | {restore}")
	return 0


def cmd_locks_list(args: argparse.Namespace) -> int:
	with _open(args) as rec:
		active = rec.locks.list_active()
	if args.json:
		_print_json([asdict(lk) for lk in active])
		return 0
	if not active:
		print("No active locks.")
		return 0
	for lk in active:
		print(f"{lk.id} | {lk.resource_key} | {lk.holder_id} | {lk.purpose} | expires {lk.expires_at}")
	return 0


def cmd_locks_release_expired(args: argparse.Namespace) -> int:
	with _open(args) as rec:
		count = rec.locks.release_expired()
	print(f"Released {count} expired lock(s)")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = _load(args)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
	"checkpoint create": cmd_checkpoint_create,
	"checkpoints list": cmd_checkpoints_list,
	"checkpoints show": cmd_checkpoints_show,
	"checkpoints prune": cmd_checkpoints_prune,
	"checkpoints stats": cmd_checkpoints_stats,
	"resume": cmd_resume,
	"stale": cmd_stale,
	"locks list": cmd_locks_list,
	"locks release-expired": cmd_locks_release_expired,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	action = getattr(args, "action", None)
	key = f"{args.command} {action}" if action else args.command
	handler = COMMANDS.get(key)
	if handler is None:
		print(f"Unknown command: {key}")
		return 1

	try:
		return handler(args)
	except (FileNotFoundError, ValueError) as exc:
		print(f"Error: {exc}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
