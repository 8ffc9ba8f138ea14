"""An agent-facing environment that loads skills, calls tools and runs code."""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Union

import yaml

from skillrun.code_tools import CodeEnvironmentTool, default_code_environment_tools
from skillrun.models import (
    ActionRequest,
    ActionResult,
    ActionSkillRef,
    CanonicalInvocation,
    CodeArtifact,
    StartExecutionRequest,
    StatusKind,
)
from skillrun.run_executor import RunExecutor, RunExecutorError, RunTransition
from skillrun.skills import SkillManifest, SkillRegistryError

logger = logging.getLogger(__name__)

_MANIFEST_NAMES = ("manifest.yaml", "skill.yaml", "skill.yml")


class CodeEnvironmentError(Exception):
    """Raised when an environment action cannot be carried out."""


@dataclass(frozen=True)
class CatalogEntry:
    """A compiled skill profile installed under the runtime root."""

    skill_name: str
    skill_version: str | None = None
    profile_name: str | None = None
    python_stub: str = ""


@dataclass(frozen=True)
class CodeEnvironmentAvailableSkill:
    skill_name: str
    description: str


@dataclass(frozen=True)
class CodeEnvironmentActiveSkill:
    skill_name: str
    instructions: str
    python_stub: str


@dataclass(frozen=True)
class CodeEnvironmentObservation:
    available_tools: list[CodeEnvironmentTool] = field(default_factory=list)
    available_skills: list[CodeEnvironmentAvailableSkill] = field(default_factory=list)
    active_skills: list[CodeEnvironmentActiveSkill] = field(default_factory=list)


@dataclass(frozen=True)
class ExecuteCode:
    language: str
    source: str


@dataclass(frozen=True)
class LoadSkill:
    skill_name: str


@dataclass(frozen=True)
class UnloadSkill:
    skill_name: str


@dataclass(frozen=True)
class CallTool:
    skill: ActionSkillRef
    invocation: CanonicalInvocation


CodeEnvironmentAction = Union[ExecuteCode, LoadSkill, UnloadSkill, CallTool]


@dataclass(frozen=True)
class CodeExecuted:
    language: str
    result: Any


@dataclass(frozen=True)
class SkillLoaded:
    skill_name: str


@dataclass(frozen=True)
class SkillUnloaded:
    skill_name: str


@dataclass(frozen=True)
class ToolCall:
    skill: ActionSkillRef
    invocation: CanonicalInvocation
    value: Any


CodeEnvironmentOutcome = Union[CodeExecuted, SkillLoaded, SkillUnloaded, ToolCall]


@dataclass(frozen=True)
class ActionAccepted:
    actor: str
    action_id: uuid.UUID
    action: CodeEnvironmentAction


@dataclass(frozen=True)
class ActionCompleted:
    actor: str
    action_id: uuid.UUID
    outcome: CodeEnvironmentOutcome


@dataclass(frozen=True)
class ActionFailed:
    actor: str
    action_id: uuid.UUID
    error: str


@dataclass(frozen=True)
class Notification:
    actor: str
    message: str


CodeEnvironmentEvent = Union[ActionAccepted, ActionCompleted, ActionFailed, Notification]


@dataclass(frozen=True)
class SubmittedCodeAction:
    action_id: uuid.UUID


@dataclass(frozen=True)
class CodeEnvironmentSnapshot:
    """Environment state worth restoring; currently there is none."""


class CodeToolExecutor(ABC):
    """Executes a single skill function call and returns its canonical value."""

    @abstractmethod
    async def execute_tool(self, request: ActionRequest) -> Any:
        """Run the request; raise CodeEnvironmentError on failure."""


@dataclass
class _PendingAction:
    actor: str
    future: asyncio.Future


def _catalog_skills_root(runtime_root: Path) -> Path:
    return runtime_root / "catalog" / "skills"


class CodeEnvironment:
    """Tracks active skills and runs actions, directly or deferred for polling."""

    def __init__(
        self,
        workspace_root: str | Path,
        runtime_root: str | Path | None = None,
        catalog: Iterable[CatalogEntry] = (),
        tool_executor: CodeToolExecutor | None = None,
        run_executor: RunExecutor | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self.runtime_root = None if runtime_root is None else Path(runtime_root)
        self.catalog = list(catalog)
        self._tool_executor = tool_executor
        self._run_executor = run_executor
        self._pending: dict[uuid.UUID, _PendingAction] = {}
        self._active_skill_names: set[str] = set()

    def __repr__(self) -> str:
        return (
            f"CodeEnvironment(has_skill_runtime={self.runtime_root is not None}, "
            f"has_tool_executor={self._tool_executor is not None}, "
            f"pending_actions={len(self._pending)})"
        )

    async def reset(self) -> CodeEnvironmentObservation:
        for pending in self._pending.values():
            pending.future.cancel()
        self._pending.clear()
        return await self.observe()

    def activate_skill(self, skill_name: str) -> None:
        self._active_skill_names.add(skill_name)

    def deactivate_skill(self, skill_name: str) -> None:
        self._active_skill_names.discard(skill_name)

    async def observe(self) -> CodeEnvironmentObservation:
        available: list[CodeEnvironmentAvailableSkill] = []
        active: list[CodeEnvironmentActiveSkill] = []
        if self.runtime_root is not None:
            for entry in self.catalog:
                if entry.skill_name in self._active_skill_names:
                    instructions = await _active_skill_instructions(self.runtime_root, entry)
                    active.append(
                        CodeEnvironmentActiveSkill(
                            skill_name=entry.skill_name,
                            instructions=instructions,
                            python_stub=entry.python_stub,
                        )
                    )
                else:
                    available.append(
                        CodeEnvironmentAvailableSkill(
                            skill_name=entry.skill_name,
                            description=_available_skill_description(self.runtime_root, entry),
                        )
                    )
        logger.debug(
            "code environment observation prepared: runtime_root=%s available=%d active=%d names=%s",
            self.runtime_root if self.runtime_root is not None else "<none>",
            len(available),
            len(active),
            sorted(self._active_skill_names),
        )
        return CodeEnvironmentObservation(
            available_tools=default_code_environment_tools(),
            available_skills=available,
            active_skills=active,
        )

    async def snapshot(self) -> CodeEnvironmentSnapshot:
        return CodeEnvironmentSnapshot()

    async def restore(self, snapshot: CodeEnvironmentSnapshot) -> None:
        """Restore from a snapshot; snapshots carry no state, so only the type is checked."""
        if not isinstance(snapshot, CodeEnvironmentSnapshot):
            raise CodeEnvironmentError(
                f"cannot restore from {type(snapshot).__name__}; expected a snapshot"
            )

    async def step(self, action: CodeEnvironmentAction) -> CodeEnvironmentOutcome:
        return await self._run_action(action)

    async def submit(self, actor: str, action: CodeEnvironmentAction) -> SubmittedCodeAction:
        """Run the action now and hold its outcome until the next poll."""
        action_id = uuid.uuid4()
        outcome = await self._run_action(action)
        future = asyncio.get_running_loop().create_future()
        future.set_result(outcome)
        self._pending[action_id] = _PendingAction(actor=actor, future=future)
        return SubmittedCodeAction(action_id=action_id)

    async def poll_events(self) -> list[CodeEnvironmentEvent]:
        ready = sorted(
            action_id for action_id, pending in self._pending.items() if pending.future.done()
        )
        events: list[CodeEnvironmentEvent] = []
        for action_id in ready:
            pending = self._pending.pop(action_id)
            try:
                outcome = pending.future.result()
            except asyncio.CancelledError:
                events.append(ActionFailed(pending.actor, action_id, "action was cancelled"))
            except Exception as error:
                events.append(ActionFailed(pending.actor, action_id, str(error)))
            else:
                events.append(ActionCompleted(pending.actor, action_id, outcome))
        return events

    async def _run_action(self, action: CodeEnvironmentAction) -> CodeEnvironmentOutcome:
        if isinstance(action, ExecuteCode):
            return await self._execute_code(action.language, action.source)
        if isinstance(action, LoadSkill):
            return self._load_skill(action.skill_name)
        if isinstance(action, UnloadSkill):
            self._active_skill_names.discard(action.skill_name)
            return SkillUnloaded(action.skill_name)
        if isinstance(action, CallTool):
            return await self._call_tool(action.skill, action.invocation)
        raise CodeEnvironmentError(f"unsupported code environment action {action!r}")

    def _load_skill(self, skill_name: str) -> SkillLoaded:
        if not self._skill_exists(skill_name):
            raise CodeEnvironmentError(f"skill '{skill_name}' does not exist in the catalog")
        self._active_skill_names.add(skill_name)
        return SkillLoaded(skill_name)

    def _skill_exists(self, skill_name: str) -> bool:
        return self.runtime_root is not None and any(
            entry.skill_name == skill_name for entry in self.catalog
        )

    def _require_tool_executor(self) -> CodeToolExecutor:
        if self._tool_executor is None:
            raise CodeEnvironmentError("no tool executor is configured")
        return self._tool_executor

    async def _call_tool(
        self, skill: ActionSkillRef, invocation: CanonicalInvocation
    ) -> ToolCall:
        executor = self._require_tool_executor()
        value = await executor.execute_tool(
            ActionRequest(id=uuid.uuid4(), run_id=uuid.uuid4(), skill=skill, invocation=invocation)
        )
        return ToolCall(skill=skill, invocation=invocation, value=value)

    async def _execute_code(self, language: str, source: str) -> CodeExecuted:
        if self._run_executor is None:
            raise CodeEnvironmentError("execute_code requires an interpreter")
        executor = self._require_tool_executor()
        if language != "python":
            raise CodeEnvironmentError(f"unsupported execute_code language '{language}'")

        request = StartExecutionRequest(
            code=CodeArtifact(
                id=uuid.uuid4(), language="python", script_name="execute_code", source=source
            )
        )
        try:
            transition: RunTransition = self._run_executor.start_run(
                request, uuid.uuid4(), uuid.uuid4(), uuid.uuid4
            )
        except RunExecutorError as error:
            raise CodeEnvironmentError(str(error)) from error

        while transition.action_to_enqueue is not None:
            action_request = transition.action_to_enqueue
            value = await executor.execute_tool(action_request)
            try:
                transition = self._run_executor.complete_action(
                    transition.session,
                    action_request,
                    ActionResult(action_id=action_request.id, value=value),
                    uuid.uuid4,
                )
            except RunExecutorError as error:
                raise CodeEnvironmentError(str(error)) from error

        status = transition.session.status
        if status.kind is StatusKind.COMPLETED:
            return CodeExecuted(language=language, result=status.value)
        if status.kind is StatusKind.FAILED:
            raise CodeEnvironmentError(status.message or "")
        raise CodeEnvironmentError(
            f"unexpected execution status after execute_code: {status.kind.value}"
        )


async def _active_skill_instructions(runtime_root: Path, entry: CatalogEntry) -> str:
    profile_dir, manifest = _compiled_catalog_profile(runtime_root, entry)
    if manifest.instructions_source is None:
        return ""
    path = profile_dir / manifest.instructions_source
    try:
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
    except OSError as error:
        raise CodeEnvironmentError(str(error)) from error


def _available_skill_description(runtime_root: Path, entry: CatalogEntry) -> str:
    try:
        profile_dir, manifest = _compiled_catalog_profile(runtime_root, entry)
    except CodeEnvironmentError:
        return ""
    if manifest.instructions_source is None:
        return manifest.description
    try:
        source = (profile_dir / manifest.instructions_source).read_text(encoding="utf-8")
    except OSError:
        return manifest.description
    when_to_use = frontmatter_when_to_use(source)
    if when_to_use is None or not when_to_use.strip():
        return manifest.description
    return when_to_use


def _compiled_catalog_profile(
    runtime_root: Path, entry: CatalogEntry
) -> tuple[Path, SkillManifest]:
    if entry.skill_version is None:
        raise CodeEnvironmentError("catalog skill is missing skill_version")
    if entry.profile_name is None:
        raise CodeEnvironmentError("catalog skill is missing profile_name")
    profile_dir = (
        _catalog_skills_root(runtime_root)
        / entry.skill_name
        / entry.skill_version
        / entry.profile_name
    )
    manifest_path = next(
        (profile_dir / name for name in _MANIFEST_NAMES if (profile_dir / name).exists()),
        None,
    )
    if manifest_path is None:
        raise CodeEnvironmentError(f"no manifest found in {profile_dir}")
    try:
        data = yaml.safe_load(manifest_path.read_text(encoding="utf-8"))
        manifest = SkillManifest.from_dict(data)
    except (OSError, yaml.YAMLError, SkillRegistryError) as error:
        raise CodeEnvironmentError(str(error)) from error
    return profile_dir, manifest


def frontmatter_when_to_use(source: str) -> str | None:
    """Return the 'when_to_use' string from a leading '---' YAML block, if any."""
    lines = iter(source.splitlines())
    first = next(lines, None)
    if first is None or first.strip() != "---":
        return None
    collected = []
    for line in lines:
        if line.strip() == "---":
            break
        collected.append(line + "\n")
    try:
        value = yaml.safe_load("".join(collected))
    except yaml.YAMLError:
        return None
    if not isinstance(value, dict):
        return None
    when_to_use = value.get("when_to_use")
    return when_to_use if isinstance(when_to_use, str) else None