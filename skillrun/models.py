"""Core records shared by the stores, executors and event publishers."""

from __future__ import annotations

import base64
import enum
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Union


class StoreError(Exception):
    """Raised when persisting, loading or publishing execution state fails."""


class InterpreterError(Exception):
    """Raised when an interpreter cannot compile, start or resume a program."""


def _require(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except (KeyError, TypeError) as error:
        raise StoreError(f"missing field '{key}'") from error


def _parse_id(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as error:
        raise StoreError(f"invalid id '{value}'") from error


def _optional_id(value: Any) -> uuid.UUID | None:
    return None if value is None else _parse_id(value)


class StatusKind(str, enum.Enum):
    RUNNING = "running"
    WAITING_FOR_ACTION = "waiting_for_action"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionStatus:
    """Where a run currently stands."""

    kind: StatusKind
    action_id: uuid.UUID | None = None
    value: Any = None
    message: str | None = None

    @staticmethod
    def running() -> ExecutionStatus:
        return ExecutionStatus(StatusKind.RUNNING)

    @staticmethod
    def waiting_for_action(action_id: uuid.UUID) -> ExecutionStatus:
        return ExecutionStatus(StatusKind.WAITING_FOR_ACTION, action_id=action_id)

    @staticmethod
    def completed(value: Any) -> ExecutionStatus:
        return ExecutionStatus(StatusKind.COMPLETED, value=value)

    @staticmethod
    def failed(message: str) -> ExecutionStatus:
        return ExecutionStatus(StatusKind.FAILED, message=message)

    def is_terminal(self) -> bool:
        return self.kind in (StatusKind.COMPLETED, StatusKind.FAILED)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"state": self.kind.value}
        if self.kind is StatusKind.WAITING_FOR_ACTION:
            data["action_id"] = str(self.action_id)
        elif self.kind is StatusKind.COMPLETED:
            data["value"] = self.value
        elif self.kind is StatusKind.FAILED:
            data["message"] = self.message
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ExecutionStatus:
        state = _require(data, "state")
        try:
            kind = StatusKind(state)
        except ValueError as error:
            raise StoreError(f"unknown execution status '{state}'") from error
        if kind is StatusKind.WAITING_FOR_ACTION:
            return ExecutionStatus.waiting_for_action(_parse_id(_require(data, "action_id")))
        if kind is StatusKind.COMPLETED:
            return ExecutionStatus.completed(_require(data, "value"))
        if kind is StatusKind.FAILED:
            return ExecutionStatus.failed(_require(data, "message"))
        return ExecutionStatus.running()


@dataclass(frozen=True)
class ExecutionSession:
    """A run and the interpreter snapshot it resumes from."""

    id: uuid.UUID
    status: ExecutionStatus
    snapshot: bytes | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "status": self.status.to_dict(),
            "snapshot": (
                None if self.snapshot is None else base64.b64encode(self.snapshot).decode("ascii")
            ),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ExecutionSession:
        raw_snapshot = data.get("snapshot") if isinstance(data, Mapping) else None
        try:
            snapshot = None if raw_snapshot is None else base64.b64decode(raw_snapshot)
        except ValueError as error:
            raise StoreError("invalid snapshot encoding") from error
        return ExecutionSession(
            id=_parse_id(_require(data, "id")),
            status=ExecutionStatus.from_dict(_require(data, "status")),
            snapshot=snapshot,
        )


@dataclass(frozen=True)
class ActionSkillRef:
    """Identifies the skill profile an action runs against."""

    skill_name: str
    skill_version: str | None = None
    profile_name: str | None = None

    def key(self) -> str:
        return f"{self.skill_name}::{self.skill_version or ''}::{self.profile_name or ''}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill_name": self.skill_name,
            "skill_version": self.skill_version,
            "profile_name": self.profile_name,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ActionSkillRef:
        return ActionSkillRef(
            skill_name=_require(data, "skill_name"),
            skill_version=data.get("skill_version"),
            profile_name=data.get("profile_name"),
        )


@dataclass(frozen=True)
class CanonicalInvocation:
    """A call to a skill function with canonical argument names."""

    action_name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"action_name": self.action_name, "arguments": dict(self.arguments)}

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> CanonicalInvocation:
        return CanonicalInvocation(
            action_name=_require(data, "action_name"),
            arguments=dict(data.get("arguments") or {}),
        )


@dataclass(frozen=True)
class ActionRequest:
    id: uuid.UUID
    run_id: uuid.UUID
    skill: ActionSkillRef
    invocation: CanonicalInvocation

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "run_id": str(self.run_id),
            "skill": self.skill.to_dict(),
            "invocation": self.invocation.to_dict(),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ActionRequest:
        return ActionRequest(
            id=_parse_id(_require(data, "id")),
            run_id=_parse_id(_require(data, "run_id")),
            skill=ActionSkillRef.from_dict(_require(data, "skill")),
            invocation=CanonicalInvocation.from_dict(_require(data, "invocation")),
        )


@dataclass(frozen=True)
class ActionResult:
    action_id: uuid.UUID
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"action_id": str(self.action_id), "value": self.value}

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ActionResult:
        return ActionResult(
            action_id=_parse_id(_require(data, "action_id")),
            value=_require(data, "value"),
        )


class ActionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ActionRecord:
    """An action request together with its progress."""

    request: ActionRequest
    status: ActionStatus = ActionStatus.PENDING
    result: ActionResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": self.request.to_dict(),
            "status": self.status.value,
            "result": None if self.result is None else self.result.to_dict(),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ActionRecord:
        raw_status = _require(data, "status")
        try:
            status = ActionStatus(raw_status)
        except ValueError as error:
            raise StoreError(f"unknown action status '{raw_status}'") from error
        raw_result = data.get("result")
        return ActionRecord(
            request=ActionRequest.from_dict(_require(data, "request")),
            status=status,
            result=None if raw_result is None else ActionResult.from_dict(raw_result),
        )


class EventKind(str, enum.Enum):
    RUN_SUBMITTED = "run_submitted"
    RUN_STARTED = "run_started"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    ACTION_ENQUEUED = "action_enqueued"
    ACTION_CLAIMED = "action_claimed"
    ACTION_COMPLETED = "action_completed"
    ACTION_FAILED = "action_failed"


_ACTION_EVENTS = frozenset(
    {
        EventKind.ACTION_ENQUEUED,
        EventKind.ACTION_CLAIMED,
        EventKind.ACTION_COMPLETED,
        EventKind.ACTION_FAILED,
    }
)
_MESSAGE_EVENTS = frozenset({EventKind.ACTION_FAILED, EventKind.RUN_FAILED})


@dataclass(frozen=True)
class ExecutionEvent:
    """Something that happened to a run; fields unused by a kind stay None."""

    kind: EventKind
    run_id: uuid.UUID
    action_id: uuid.UUID | None = None
    worker_id: str | None = None
    value: Any = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.kind.value, "run_id": str(self.run_id)}
        if self.kind in _ACTION_EVENTS:
            data["action_id"] = str(self.action_id)
        if self.kind is EventKind.ACTION_CLAIMED:
            data["worker_id"] = self.worker_id
        if self.kind in _MESSAGE_EVENTS:
            data["message"] = self.message
        if self.kind is EventKind.RUN_COMPLETED:
            data["value"] = self.value
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ExecutionEvent:
        raw_kind = _require(data, "type")
        try:
            kind = EventKind(raw_kind)
        except ValueError as error:
            raise StoreError(f"unknown event type '{raw_kind}'") from error
        return ExecutionEvent(
            kind=kind,
            run_id=_parse_id(_require(data, "run_id")),
            action_id=_parse_id(_require(data, "action_id")) if kind in _ACTION_EVENTS else None,
            worker_id=_require(data, "worker_id") if kind is EventKind.ACTION_CLAIMED else None,
            value=_require(data, "value") if kind is EventKind.RUN_COMPLETED else None,
            message=_require(data, "message") if kind in _MESSAGE_EVENTS else None,
        )


@dataclass
class CodeArtifact:
    id: uuid.UUID
    language: str
    script_name: str
    source: str
    inputs: list[str] = field(default_factory=list)


@dataclass
class StartExecutionRequest:
    code: CodeArtifact
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExternalCall:
    """A function call the interpreted program hands to the host."""

    action_name: str
    positional_arguments: list[Any] = field(default_factory=list)
    named_arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Suspension:
    """The program paused on an external call."""

    snapshot: bytes
    call: ExternalCall


@dataclass(frozen=True)
class Completion:
    """The program finished with a value."""

    value: Any


InterpreterStep = Union[Suspension, Completion]


class Interpreter(ABC):
    """Compiles and steps programs that may suspend on external calls."""

    @abstractmethod
    def compile(self, code: CodeArtifact) -> Any:
        """Turn a code artifact into a program for start()."""

    @abstractmethod
    def start(self, program: Any, inputs: Mapping[str, Any]) -> InterpreterStep:
        """Run a compiled program until it completes or suspends."""

    @abstractmethod
    def resume(self, snapshot: bytes, return_value: Any) -> InterpreterStep:
        """Continue a suspended program with the external call's result."""


class EventPublisher(ABC):
    @abstractmethod
    def publish(self, event: ExecutionEvent) -> None:
        """Deliver an event; raise StoreError on failure."""


class RunStore(ABC):
    @abstractmethod
    def create_run(self, session: ExecutionSession) -> None: ...

    @abstractmethod
    def save_run(self, session: ExecutionSession) -> None: ...

    @abstractmethod
    def load_run(self, run_id: uuid.UUID) -> ExecutionSession: ...

    @abstractmethod
    def list_runs(self) -> list[uuid.UUID]: ...

    @abstractmethod
    def save_action(self, action: ActionRecord) -> None: ...

    @abstractmethod
    def load_action(self, action_id: uuid.UUID) -> ActionRecord: ...

    @abstractmethod
    def list_actions(self) -> list[uuid.UUID]: ...