"""Exception taxonomy for the flight recorder core."""

from __future__ import annotations


class RecorderError(Exception):
	"""Base class for every error raised by flight-recorder."""


class ValidationError(RecorderError):
	"""Malformed input: unknown event type, missing field, bad payload."""


class UnsupportedSchemaError(ValidationError):
	"""A stored checkpoint declares a schema_version this build cannot read."""

	def __init__(self, checkpoint_id: str, version: str) -> None:
		super().__init__(f"Checkpoint {checkpoint_id} has unsupported schema_version {version!r}")
		self.checkpoint_id = checkpoint_id
		self.version = version


class ConcurrencyError(RecorderError):
	"""Optimistic-concurrency mismatch on event append."""

	def __init__(self, stream_type: str, stream_id: str, expected: int, actual: int) -> None:
		super().__init__(
			f"Stream {stream_type}/{stream_id} is at sequence {actual}, expected {expected}"
		)
		self.stream_type = stream_type
		self.stream_id = stream_id
		self.expected = expected
		self.actual = actual


class ConflictError(RecorderError):
	"""A resource is already locked by another holder."""

	def __init__(self, resource_key: str, holder_id: str, lock_id: str) -> None:
		super().__init__(f"{resource_key} is locked by {holder_id} ({lock_id})")
		self.resource_key = resource_key
		self.holder_id = holder_id
		self.lock_id = lock_id


class NotFoundError(RecorderError):
	"""A checkpoint, lock, mission, sortie or message does not exist."""


class CheckpointConsumedError(NotFoundError):
	"""The checkpoint was already applied and re-consumption is disabled."""

	def __init__(self, checkpoint_id: str, consumed_at: str) -> None:
		super().__init__(f"Checkpoint {checkpoint_id} was already consumed at {consumed_at}")
		self.checkpoint_id = checkpoint_id
		self.consumed_at = consumed_at


class NotOwnerError(RecorderError):
	"""Lock release attempted by someone other than the holder."""


class AlreadyReleasedError(RecorderError):
	"""Lock release attempted on a lock that is no longer held."""


class TransactionError(RecorderError):
	"""Storage-layer failure inside a transaction; the transaction was rolled back."""
