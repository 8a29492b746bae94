"""JSON file mirror of checkpoints, one document per checkpoint."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from flight_recorder.constants import SUPPORTED_SCHEMA_VERSIONS
from flight_recorder.errors import UnsupportedSchemaError, ValidationError
from flight_recorder.models import Checkpoint

logger = logging.getLogger(__name__)

LATEST_NAME = "latest.json"

_CHECKPOINT = TypeAdapter(Checkpoint)


class CheckpointBackup:
	"""Mirrors checkpoints to ``<directory>/<id>.json``.

	Complements the database with an inspectable copy that can still be read
	when the row is gone. Writes go to a temp file that is renamed into place,
	so readers never see a half-written document.
	"""

	def __init__(self, directory: str | Path) -> None:
		self.directory = Path(directory)

	def path_for(self, checkpoint_id: str) -> Path:
		if not checkpoint_id or "/" in checkpoint_id or checkpoint_id.startswith("."):
			raise ValidationError(f"Invalid checkpoint id: {checkpoint_id!r}")
		return self.directory / f"{checkpoint_id}.json"

	def write(self, checkpoint: Checkpoint) -> Path:
		self.directory.mkdir(parents=True, exist_ok=True)
		document = json.dumps(checkpoint.to_dict(), indent=2, sort_keys=True)
		target = self.path_for(checkpoint.id)
		self._write_atomic(target, document)
		self._write_atomic(self.directory / LATEST_NAME, document)
		logger.debug("Mirrored checkpoint %s to %s", checkpoint.id, target)
		return target

	def _write_atomic(self, target: Path, text: str) -> None:
		tmp = target.with_name(f".{target.name}.tmp")
		with tmp.open("w", encoding="utf-8") as f:
			f.write(text)
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp, target)

	def read(self, checkpoint_id: str) -> Checkpoint | None:
		"""Load a mirrored checkpoint, or None if there is no file for it.

		Raises:
			ValidationError: The file exists but is not a valid checkpoint.
			UnsupportedSchemaError: The document declares an unknown schema_version.
		"""
		path = self.path_for(checkpoint_id)
		if not path.exists():
			return None
		return self._load(path)

	def read_latest(self) -> Checkpoint | None:
		path = self.directory / LATEST_NAME
		if not path.exists():
			return None
		return self._load(path)

	def _load(self, path: Path) -> Checkpoint:
		raw = path.read_text(encoding="utf-8")
		try:
			data = json.loads(raw)
		except json.JSONDecodeError as exc:
			raise ValidationError(f"Checkpoint file {path.name} is not valid JSON: {exc}") from exc
		if not isinstance(data, dict):
			raise ValidationError(f"Checkpoint file {path.name} does not hold an object")
		version = str(data.get("schema_version", ""))
		if version not in SUPPORTED_SCHEMA_VERSIONS:
			raise UnsupportedSchemaError(str(data.get("id", path.stem)), version)
		try:
			return _CHECKPOINT.validate_python(data)
		except PydanticValidationError as exc:
			raise ValidationError(f"Checkpoint file {path.name} is malformed: {exc}") from exc

	def list_ids(self) -> list[str]:
		if not self.directory.is_dir():
			return []
		return sorted(
			p.stem for p in self.directory.glob("*.json")
			if p.name != LATEST_NAME
		)

	def delete(self, checkpoint_id: str) -> bool:
		path = self.path_for(checkpoint_id)
		if not path.exists():
			return False
		path.unlink()
		latest = self.directory / LATEST_NAME
		if latest.exists():
			try:
				if json.loads(latest.read_text(encoding="utf-8")).get("id") == checkpoint_id:
					latest.unlink()
			except json.JSONDecodeError:
				logger.warning("Removing unreadable %s", latest)
				latest.unlink()
		logger.debug("Deleted mirrored checkpoint %s", checkpoint_id)
		return True
