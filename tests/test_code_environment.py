import asyncio
import uuid
from pathlib import Path

import pytest

from skillrun.code_environment import (
    ActionCompleted,
    CallTool,
    CatalogEntry,
    CodeEnvironment,
    CodeEnvironmentActiveSkill,
    CodeEnvironmentAvailableSkill,
    CodeEnvironmentError,
    CodeExecuted,
    CodeEnvironmentSnapshot,
    CodeToolExecutor,
    ExecuteCode,
    LoadSkill,
    SkillLoaded,
    SkillUnloaded,
    ToolCall,
    UnloadSkill,
    frontmatter_when_to_use,
)
from skillrun.models import (
    ActionSkillRef,
    CanonicalInvocation,
    Completion,
    ExternalCall,
    Interpreter,
    InterpreterError,
    Suspension,
)
from skillrun.run_executor import ActionDefinition, ActionParam, RunExecutor


class FakeCodeToolExecutor(CodeToolExecutor):
    async def execute_tool(self, request):
        return request.invocation.arguments.get("value")


class FakeInterpreter(Interpreter):
    def compile(self, code):
        return code.source

    def start(self, program, inputs):
        if program.startswith("complete:"):
            return Completion(int(program.split(":", 1)[1]))
        parts = program.split(":")
        if len(parts) == 3 and parts[0] == "call":
            return Suspension(
                snapshot=b"resume",
                call=ExternalCall(action_name=parts[1], positional_arguments=[int(parts[2])]),
            )
        raise InterpreterError("unknown fake program")

    def resume(self, snapshot, return_value):
        return Completion(return_value)


def echo_call(value=17):
    return CallTool(
        skill=ActionSkillRef(skill_name="test-skill"),
        invocation=CanonicalInvocation(action_name="echo", arguments={"value": value}),
    )


SKILL_MD = """---
when_to_use: Use it to greet people.
---
# Greeter
Say hello.
"""

MANIFEST = """
schema_version: 1
skill:
  name: greeter
  version: 0.1.0
  description: Greets people.
defaults:
  instructions:
    source: SKILL.md
profiles:
  - name: default
    runtime:
      kind: wasm-component
"""


@pytest.fixture
def runtime_root(tmp_path: Path) -> Path:
    profile_dir = tmp_path / "catalog" / "skills" / "greeter" / "0.1.0" / "default"
    profile_dir.mkdir(parents=True)
    (profile_dir / "manifest.yaml").write_text(MANIFEST, encoding="utf-8")
    (profile_dir / "SKILL.md").write_text(SKILL_MD, encoding="utf-8")
    return tmp_path


def greeter_environment(runtime_root):
    return CodeEnvironment(
        runtime_root,
        runtime_root=runtime_root,
        catalog=[CatalogEntry("greeter", "0.1.0", "default", python_stub="def greet(): ...")],
        tool_executor=FakeCodeToolExecutor(),
    )


@pytest.mark.asyncio
async def test_executes_tools_through_async_executor(tmp_path):
    environment = CodeEnvironment(tmp_path, tool_executor=FakeCodeToolExecutor())
    observation = await environment.reset()
    assert len(observation.available_tools) == 3
    assert observation.available_skills == []
    assert observation.active_skills == []

    outcome = await environment.step(echo_call())
    assert isinstance(outcome, ToolCall)
    assert outcome.value == 17
    assert outcome.skill.skill_name == "test-skill"


@pytest.mark.asyncio
async def test_submits_and_polls_deferred_actions(tmp_path):
    environment = CodeEnvironment(tmp_path, tool_executor=FakeCodeToolExecutor())
    await environment.reset()
    submitted = await environment.submit("agent", echo_call())

    events = []
    for _ in range(200):
        events = await environment.poll_events()
        if events:
            break
        await asyncio.sleep(0)

    assert len(events) == 1
    event = events[0]
    assert isinstance(event, ActionCompleted)
    assert event.actor == "agent"
    assert event.action_id == submitted.action_id
    assert isinstance(event.outcome, ToolCall)
    assert event.outcome.value == 17
    assert await environment.poll_events() == []


@pytest.mark.asyncio
async def test_call_tool_without_executor_fails(tmp_path):
    environment = CodeEnvironment(tmp_path)
    with pytest.raises(CodeEnvironmentError, match="no tool executor is configured"):
        await environment.step(echo_call())


@pytest.mark.asyncio
async def test_observe_describes_available_skill_from_frontmatter(runtime_root):
    environment = greeter_environment(runtime_root)
    observation = await environment.observe()
    assert observation.available_skills == [
        CodeEnvironmentAvailableSkill("greeter", "Use it to greet people.")
    ]
    assert observation.active_skills == []


@pytest.mark.asyncio
async def test_observe_falls_back_to_manifest_description(runtime_root):
    skill_md = runtime_root / "catalog" / "skills" / "greeter" / "0.1.0" / "default" / "SKILL.md"
    skill_md.write_text("# Greeter\n", encoding="utf-8")
    environment = greeter_environment(runtime_root)
    observation = await environment.observe()
    assert observation.available_skills[0].description == "Greets people."


@pytest.mark.asyncio
async def test_observe_with_missing_profile_gives_empty_description(tmp_path):
    environment = CodeEnvironment(
        tmp_path, runtime_root=tmp_path, catalog=[CatalogEntry("ghost", "1.0", "default")]
    )
    observation = await environment.observe()
    assert observation.available_skills == [CodeEnvironmentAvailableSkill("ghost", "")]


@pytest.mark.asyncio
async def test_load_and_unload_skill(runtime_root):
    environment = greeter_environment(runtime_root)
    assert await environment.step(LoadSkill("greeter")) == SkillLoaded("greeter")
    observation = await environment.observe()
    assert observation.available_skills == []
    assert observation.active_skills == [
        CodeEnvironmentActiveSkill("greeter", SKILL_MD, "def greet(): ...")
    ]

    assert await environment.step(UnloadSkill("greeter")) == SkillUnloaded("greeter")
    observation = await environment.observe()
    assert [skill.skill_name for skill in observation.available_skills] == ["greeter"]
    assert observation.active_skills == []


@pytest.mark.asyncio
async def test_load_unknown_skill_fails(runtime_root):
    environment = greeter_environment(runtime_root)
    with pytest.raises(CodeEnvironmentError, match="skill 'missing' does not exist in the catalog"):
        await environment.step(LoadSkill("missing"))


@pytest.mark.asyncio
async def test_activate_and_deactivate_skill(runtime_root):
    environment = greeter_environment(runtime_root)
    environment.activate_skill("greeter")
    assert [s.skill_name for s in (await environment.observe()).active_skills] == ["greeter"]
    environment.deactivate_skill("greeter")
    assert (await environment.observe()).active_skills == []


@pytest.mark.asyncio
async def test_active_skill_without_version_fails(tmp_path):
    environment = CodeEnvironment(
        tmp_path, runtime_root=tmp_path, catalog=[CatalogEntry("greeter")]
    )
    environment.activate_skill("greeter")
    with pytest.raises(CodeEnvironmentError, match="missing skill_version"):
        await environment.observe()


def make_run_executor():
    definition = ActionDefinition(
        skill=ActionSkillRef("test-skill", profile_name="test-profile"),
        action_name="echo",
        params=(ActionParam("value"),),
    )
    return RunExecutor(FakeInterpreter(), [definition])


@pytest.mark.asyncio
async def test_execute_code_runs_through_tools(tmp_path):
    environment = CodeEnvironment(
        tmp_path, tool_executor=FakeCodeToolExecutor(), run_executor=make_run_executor()
    )
    outcome = await environment.step(ExecuteCode("python", "call:echo:9"))
    assert outcome == CodeExecuted(language="python", result=9)


@pytest.mark.asyncio
async def test_execute_code_completes_without_calls(tmp_path):
    environment = CodeEnvironment(
        tmp_path, tool_executor=FakeCodeToolExecutor(), run_executor=make_run_executor()
    )
    assert await environment.step(ExecuteCode("python", "complete:7")) == CodeExecuted("python", 7)


@pytest.mark.asyncio
async def test_execute_code_rejects_other_languages(tmp_path):
    environment = CodeEnvironment(
        tmp_path, tool_executor=FakeCodeToolExecutor(), run_executor=make_run_executor()
    )
    with pytest.raises(CodeEnvironmentError, match="unsupported execute_code language 'ruby'"):
        await environment.step(ExecuteCode("ruby", "complete:1"))


@pytest.mark.asyncio
async def test_execute_code_reports_unknown_action(tmp_path):
    environment = CodeEnvironment(
        tmp_path, tool_executor=FakeCodeToolExecutor(), run_executor=make_run_executor()
    )
    with pytest.raises(CodeEnvironmentError, match="unknown external action 'missing'"):
        await environment.step(ExecuteCode("python", "call:missing:9"))


@pytest.mark.asyncio
async def test_execute_code_without_interpreter_fails(tmp_path):
    environment = CodeEnvironment(tmp_path, tool_executor=FakeCodeToolExecutor())
    with pytest.raises(CodeEnvironmentError, match="requires an interpreter"):
        await environment.step(ExecuteCode("python", "complete:1"))


@pytest.mark.asyncio
async def test_snapshot_round_trip(tmp_path):
    environment = CodeEnvironment(tmp_path)
    snapshot = await environment.snapshot()
    assert snapshot == CodeEnvironmentSnapshot()
    assert await environment.restore(snapshot) is None


def test_frontmatter_when_to_use_extracts_value():
    assert frontmatter_when_to_use(SKILL_MD) == "Use it to greet people."


@pytest.mark.parametrize(
    "source",
    [
        "",
        "# no frontmatter\n",
        "---\ntitle: x\n---\n",
        "---\nwhen_to_use: 3\n---\n",
        "---\n- a\n- b\n---\n",
        "---\nwhen_to_use: [unclosed\n---\n",
    ],
)
def test_frontmatter_when_to_use_missing(source):
    assert frontmatter_when_to_use(source) is None


def test_frontmatter_without_closing_marker_reads_to_end():
    assert frontmatter_when_to_use("---\nwhen_to_use: always\n") == "always"


def test_repr_reports_state(tmp_path):
    environment = CodeEnvironment(tmp_path, tool_executor=FakeCodeToolExecutor())
    assert repr(environment) == (
        "CodeEnvironment(has_skill_runtime=False, has_tool_executor=True, pending_actions=0)"
    )


def test_submitted_action_id_is_uuid_type_and_unique():
    first = uuid.uuid4()
    assert ActionCompleted("a", first, SkillLoaded("x")).action_id == first