"""Typed event payloads.

Every event kind the store accepts has its own pydantic model. The models are
combined into a discriminated union on ``kind`` so a payload is validated
against exactly one schema; anything outside the closed set is rejected with
ValidationError before it reaches storage.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from flight_recorder.constants import STREAM_MISSION, STREAM_SORTIE, STREAM_SYSTEM
from flight_recorder.errors import ValidationError

Percent = Annotated[int, Field(ge=0, le=100)]
Outcome = Literal["success", "partial", "failed"]
Status = Literal["planned", "in_progress", "paused", "completed", "failed", "cancelled"]


class _Payload(BaseModel, extra="forbid"):
	stream_type: ClassVar[str] = STREAM_MISSION

	@property
	def subject_id(self) -> str:
		raise NotImplementedError

	def describe(self) -> str:
		raise NotImplementedError


class _MissionPayload(_Payload):
	stream_type: ClassVar[str] = STREAM_MISSION

	mission_id: str = Field(min_length=1)

	@property
	def subject_id(self) -> str:
		return self.mission_id


class _SortiePayload(_Payload):
	stream_type: ClassVar[str] = STREAM_SORTIE

	sortie_id: str = Field(min_length=1)

	@property
	def subject_id(self) -> str:
		return self.sortie_id


class _SystemPayload(_Payload):
	stream_type: ClassVar[str] = STREAM_SYSTEM

	scope: str = Field(min_length=1)

	@property
	def subject_id(self) -> str:
		return self.scope


# -- Mission events --


class MissionCreated(_MissionPayload):
	kind: Literal["mission_created"] = "mission_created"
	title: str = Field(min_length=1, max_length=200)
	description: str = ""
	tasks: list[str] = []
	metadata: dict[str, Any] = {}
	created_by: str = ""

	def describe(self) -> str:
		return f"Mission created: {self.title}"


class MissionStarted(_MissionPayload):
	kind: Literal["mission_started"] = "mission_started"
	started_by: str = ""

	def describe(self) -> str:
		return f"Mission started{f' by {self.started_by}' if self.started_by else ''}"


class MissionProgressed(_MissionPayload):
	kind: Literal["mission_progressed"] = "mission_progressed"
	progress_percent: Percent
	note: str = ""

	def describe(self) -> str:
		suffix = f": {self.note}" if self.note else ""
		return f"Mission progress at {self.progress_percent}%{suffix}"


class MissionPaused(_MissionPayload):
	kind: Literal["mission_paused"] = "mission_paused"
	reason: str = ""

	def describe(self) -> str:
		return f"Mission paused{f': {self.reason}' if self.reason else ''}"


class MissionResumed(_MissionPayload):
	kind: Literal["mission_resumed"] = "mission_resumed"
	resumed_by: str = ""

	def describe(self) -> str:
		return "Mission resumed"


class MissionCompleted(_MissionPayload):
	kind: Literal["mission_completed"] = "mission_completed"
	result: Outcome = "success"
	summary: str = ""

	def describe(self) -> str:
		return f"Mission completed ({self.result})"


class MissionFailed(_MissionPayload):
	kind: Literal["mission_failed"] = "mission_failed"
	error: str = ""

	def describe(self) -> str:
		return f"Mission failed: {self.error}" if self.error else "Mission failed"


class MissionCancelled(_MissionPayload):
	kind: Literal["mission_cancelled"] = "mission_cancelled"
	reason: str = ""

	def describe(self) -> str:
		return "Mission cancelled"


class CheckpointCreated(_MissionPayload):
	kind: Literal["checkpoint_created"] = "checkpoint_created"
	checkpoint_id: str = Field(pattern=r"^chk-")
	trigger: Literal["manual", "progress", "error"]
	progress_percent: Percent = 0

	def describe(self) -> str:
		return f"Checkpoint {self.checkpoint_id} created ({self.trigger}, {self.progress_percent}%)"


class CheckpointPruned(_MissionPayload):
	kind: Literal["checkpoint_pruned"] = "checkpoint_pruned"
	checkpoint_ids: list[str] = Field(min_length=1)
	reason: Literal["expired", "manual", "cleanup"] = "cleanup"

	def describe(self) -> str:
		return f"Pruned {len(self.checkpoint_ids)} checkpoint(s)"


class Recovered(_MissionPayload):
	kind: Literal["recovered"] = "recovered"
	checkpoint_id: str = Field(pattern=r"^chk-")
	progress_percent: Percent = 0
	sorties_restored: int = Field(default=0, ge=0)
	locks_restored: int = Field(default=0, ge=0)
	messages_requeued: int = Field(default=0, ge=0)
	blockers: list[str] = []
	warnings: list[str] = []

	def describe(self) -> str:
		return (
			f"Recovered from {self.checkpoint_id}: {self.sorties_restored} sorties, "
			f"{self.locks_restored} locks, {self.messages_requeued} messages"
		)


# -- Sortie events --


class SortieCreated(_SortiePayload):
	kind: Literal["sortie_created"] = "sortie_created"
	mission_id: str | None = None
	title: str = Field(min_length=1, max_length=200)
	assigned_to: str | None = None
	files: list[str] = []
	tasks: list[str] = []
	metadata: dict[str, Any] = {}

	def describe(self) -> str:
		return f"Sortie created: {self.title}"


class SortieStarted(_SortiePayload):
	kind: Literal["sortie_started"] = "sortie_started"
	started_by: str = ""

	def describe(self) -> str:
		return f"Sortie {self.sortie_id} started"


class SortieProgressed(_SortiePayload):
	kind: Literal["sortie_progressed"] = "sortie_progressed"
	progress_percent: Percent
	notes: str = ""

	def describe(self) -> str:
		suffix = f": {self.notes}" if self.notes else ""
		return f"Sortie {self.sortie_id} at {self.progress_percent}%{suffix}"


class SortieBlocked(_SortiePayload):
	kind: Literal["sortie_blocked"] = "sortie_blocked"
	reason: str = Field(min_length=1)
	blocked_by: str = ""

	def describe(self) -> str:
		return f"Sortie {self.sortie_id} blocked: {self.reason}"


class SortieResumed(_SortiePayload):
	kind: Literal["sortie_resumed"] = "sortie_resumed"
	resumed_by: str = ""

	def describe(self) -> str:
		return f"Sortie {self.sortie_id} resumed"


class SortieCompleted(_SortiePayload):
	kind: Literal["sortie_completed"] = "sortie_completed"
	result: Outcome = "success"
	notes: str = ""

	def describe(self) -> str:
		return f"Sortie {self.sortie_id} completed ({self.result})"


class SortieFailed(_SortiePayload):
	kind: Literal["sortie_failed"] = "sortie_failed"
	error: str = ""

	def describe(self) -> str:
		return f"Sortie {self.sortie_id} failed"


class SortieRestored(_SortiePayload):
	kind: Literal["sortie_restored"] = "sortie_restored"
	checkpoint_id: str = Field(pattern=r"^chk-")
	status: Status
	progress_percent: Percent = 0
	assigned_to: str | None = None
	files: list[str] = []
	progress_notes: str = ""

	def describe(self) -> str:
		return f"Sortie {self.sortie_id} restored from {self.checkpoint_id}"


# -- System events --


class SystemNote(_SystemPayload):
	kind: Literal["system_note"] = "system_note"
	message: str = Field(min_length=1)
	level: Literal["info", "warning", "error"] = "info"

	def describe(self) -> str:
		return f"[{self.scope}] {self.message}"


EventPayload = Annotated[
	Union[
		MissionCreated,
		MissionStarted,
		MissionProgressed,
		MissionPaused,
		MissionResumed,
		MissionCompleted,
		MissionFailed,
		MissionCancelled,
		CheckpointCreated,
		CheckpointPruned,
		Recovered,
		SortieCreated,
		SortieStarted,
		SortieProgressed,
		SortieBlocked,
		SortieResumed,
		SortieCompleted,
		SortieFailed,
		SortieRestored,
		SystemNote,
	],
	Field(discriminator="kind"),
]

_ADAPTER: TypeAdapter[Any] = TypeAdapter(EventPayload)

PAYLOAD_TYPES: dict[str, type[_Payload]] = {
	cls.model_fields["kind"].default: cls
	for cls in (
		MissionCreated, MissionStarted, MissionProgressed, MissionPaused,
		MissionResumed, MissionCompleted, MissionFailed, MissionCancelled,
		CheckpointCreated, CheckpointPruned, Recovered,
		SortieCreated, SortieStarted, SortieProgressed, SortieBlocked,
		SortieResumed, SortieCompleted, SortieFailed, SortieRestored,
		SystemNote,
	)
}


def parse_payload(event_type: str, payload: dict[str, Any]) -> Any:
	"""Validate *payload* against the schema registered for *event_type*.

	Raises:
		ValidationError: If the type is unknown or the payload does not match.
	"""
	if event_type not in PAYLOAD_TYPES:
		raise ValidationError(f"Unknown event type: {event_type!r}")
	declared = payload.get("kind")
	if declared is not None and declared != event_type:
		raise ValidationError(f"Payload kind {declared!r} does not match event type {event_type!r}")
	try:
		return _ADAPTER.validate_python({**payload, "kind": event_type})
	except PydanticValidationError as exc:
		details = "; ".join(
			f"{'.'.join(str(p) for p in err['loc'][1:]) or '<root>'}: {err['msg']}"
			for err in exc.errors()
		)
		raise ValidationError(f"Invalid {event_type} payload: {details}") from exc


def validate_for_stream(event_type: str, payload: dict[str, Any], stream_type: str, stream_id: str) -> Any:
	"""Parse a payload and check it belongs on the given stream."""
	model = parse_payload(event_type, payload)
	if model.stream_type != stream_type:
		raise ValidationError(
			f"{event_type} belongs on a {model.stream_type} stream, not {stream_type}"
		)
	if model.subject_id != stream_id:
		raise ValidationError(
			f"{event_type} payload refers to {model.subject_id}, but stream is {stream_id}"
		)
	return model


def normalize(model: Any) -> dict[str, Any]:
	"""Stored form of a validated payload: defaults filled, discriminator dropped."""
	return model.model_dump(mode="json", exclude={"kind"})


def describe_event(event_type: str, payload: dict[str, Any]) -> str:
	"""One-line summary of a stored event, used as a checkpoint's last action."""
	try:
		return parse_payload(event_type, payload).describe()
	except ValidationError:
		return event_type
