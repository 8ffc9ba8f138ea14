"""Drives interpreter steps and turns external calls into action requests."""

from __future__ import annotations

import dataclasses
import enum
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from skillrun.models import (
    ActionRecord,
    ActionRequest,
    ActionResult,
    ActionSkillRef,
    ActionStatus,
    CanonicalInvocation,
    Completion,
    ExecutionSession,
    ExecutionStatus,
    Interpreter,
    InterpreterError,
    InterpreterStep,
    StartExecutionRequest,
    Suspension,
)


class RunExecutorError(Exception):
    """Raised when a run cannot be started or advanced."""


class ActionResolutionError(RunExecutorError):
    """An external call could not be mapped onto a known action."""


class InvalidStateError(RunExecutorError):
    """The run is not in a state that allows the requested transition."""


@dataclass(frozen=True)
class ActionParam:
    """A parameter with its canonical name and the name programs use."""

    name: str
    model_name: str = ""

    def __post_init__(self) -> None:
        if not self.model_name:
            object.__setattr__(self, "model_name", self.name.replace("-", "_"))


@dataclass(frozen=True)
class ActionDefinition:
    """A skill function that programs may call by its model name."""

    skill: ActionSkillRef
    action_name: str
    params: tuple[ActionParam, ...] = ()
    model_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", tuple(self.params))
        if not self.model_name:
            object.__setattr__(self, "model_name", self.action_name.replace("-", "_"))

    @property
    def canonical_action_id(self) -> str:
        return f"{self.skill.skill_name}.{self.action_name}"


class TriggerKind(str, enum.Enum):
    STARTED = "started"
    RESUMED = "resumed"
    FAILED = "failed"


@dataclass(frozen=True)
class RunTransitionTrigger:
    kind: TriggerKind
    completed_action_id: uuid.UUID | None = None


@dataclass
class RunTransition:
    """The new session plus the records and work that a step produced."""

    trigger: RunTransitionTrigger
    session: ExecutionSession
    action_records: list[ActionRecord] = field(default_factory=list)
    action_to_enqueue: ActionRequest | None = None


@contextmanager
def _interpreter_errors() -> Iterator[None]:
    try:
        yield
    except InterpreterError as error:
        raise RunExecutorError(f"interpreter error: {error}") from error


class RunExecutor:
    """Starts, resumes and fails runs; holds no state besides its action catalog."""

    def __init__(self, interpreter: Interpreter, actions: Iterable[ActionDefinition] = ()) -> None:
        self._interpreter = interpreter
        self._by_model_name: dict[str, ActionDefinition] = {}
        self._by_canonical_id: dict[str, ActionDefinition] = {}
        for definition in actions:
            if definition.model_name in self._by_model_name:
                raise ValueError(f"duplicate action '{definition.model_name}'")
            self._by_model_name[definition.model_name] = definition
            self._by_canonical_id[definition.canonical_action_id] = definition

    def start_run(
        self,
        request: StartExecutionRequest,
        run_id: uuid.UUID,
        code_id: uuid.UUID,
        next_action_id: Callable[[], uuid.UUID],
    ) -> RunTransition:
        code = dataclasses.replace(request.code, id=code_id)
        with _interpreter_errors():
            program = self._interpreter.compile(code)
            step = self._interpreter.start(program, request.inputs)
        session = ExecutionSession(id=run_id, status=ExecutionStatus.running())
        return self._apply_step(
            session, step, next_action_id, RunTransitionTrigger(TriggerKind.STARTED)
        )

    def complete_action(
        self,
        session: ExecutionSession,
        action_request: ActionRequest,
        result: ActionResult,
        next_action_id: Callable[[], uuid.UUID],
    ) -> RunTransition:
        if session.snapshot is None:
            raise InvalidStateError("cannot resume a run without a snapshot")
        canonical_action_id = (
            f"{action_request.skill.skill_name}.{action_request.invocation.action_name}"
        )
        if canonical_action_id not in self._by_canonical_id:
            raise ActionResolutionError(f"unknown canonical action '{canonical_action_id}'")
        completed = ActionRecord(
            request=action_request, status=ActionStatus.COMPLETED, result=result
        )
        with _interpreter_errors():
            step = self._interpreter.resume(session.snapshot, result.value)
        transition = self._apply_step(
            session,
            step,
            next_action_id,
            RunTransitionTrigger(TriggerKind.RESUMED, completed_action_id=result.action_id),
        )
        transition.action_records.insert(0, completed)
        return transition

    def fail_run(self, session: ExecutionSession, message: str) -> RunTransition:
        failed = dataclasses.replace(
            session, snapshot=None, status=ExecutionStatus.failed(message)
        )
        return RunTransition(trigger=RunTransitionTrigger(TriggerKind.FAILED), session=failed)

    def _apply_step(
        self,
        session: ExecutionSession,
        step: InterpreterStep,
        next_action_id: Callable[[], uuid.UUID],
        trigger: RunTransitionTrigger,
    ) -> RunTransition:
        if isinstance(step, Completion):
            done = dataclasses.replace(
                session, snapshot=None, status=ExecutionStatus.completed(step.value)
            )
            return RunTransition(trigger=trigger, session=done)
        if not isinstance(step, Suspension):
            raise InvalidStateError(f"unexpected interpreter step {step!r}")

        action_id = next_action_id()
        call = step.call
        definition = self._by_model_name.get(call.action_name)
        if definition is None:
            raise ActionResolutionError(f"unknown external action '{call.action_name}'")
        action_ref = definition.canonical_action_id
        params = definition.params
        if len(call.positional_arguments) > len(params):
            raise ActionResolutionError(
                f"action '{action_ref}' expected at most {len(params)} positional argument(s) "
                f"but received {len(call.positional_arguments)}"
            )
        model_arguments: dict[str, Any] = {
            param.model_name: value for param, value in zip(params, call.positional_arguments)
        }
        model_names = {param.model_name for param in params}
        for name, value in call.named_arguments.items():
            if name not in model_names:
                raise ActionResolutionError(
                    f"action '{action_ref}' does not define a named argument '{name}'"
                )
            if name in model_arguments:
                raise ActionResolutionError(
                    f"action '{action_ref}' received duplicate argument '{name}'"
                )
            model_arguments[name] = value

        invocation = CanonicalInvocation(
            action_name=definition.action_name,
            arguments={
                param.name: model_arguments[param.model_name]
                for param in params
                if param.model_name in model_arguments
            },
        )
        action_request = ActionRequest(
            id=action_id, run_id=session.id, skill=definition.skill, invocation=invocation
        )
        waiting = dataclasses.replace(
            session,
            snapshot=step.snapshot,
            status=ExecutionStatus.waiting_for_action(action_id),
        )
        return RunTransition(
            trigger=trigger,
            session=waiting,
            action_records=[ActionRecord(request=action_request, status=ActionStatus.PENDING)],
            action_to_enqueue=action_request,
        )