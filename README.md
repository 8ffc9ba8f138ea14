# skillrun

`skillrun` runs agent-generated programs one step at a time. A program runs until it calls an
external action. The run then waits while an executor carries out that action, and afterwards
it resumes with the action's result. Runs, actions and events can be kept in memory or written
to disk. After a restart, the engine can re-enqueue any action that a run was still waiting on.

## Installation

```
pip install skillrun
```

To install the test dependencies and run the tests:

```
pip install "skillrun[test]"
pytest
```

## Modules

- `skillrun.models` holds the shared records: `ExecutionStatus`, `ExecutionSession`,
  `ActionSkillRef`, `CanonicalInvocation`, `ActionRequest`, `ActionResult`, `ActionRecord`,
  `ExecutionEvent`, `CodeArtifact`, `StartExecutionRequest`, and the interpreter steps
  `Suspension` and `Completion`. Every persisted record has `to_dict()` and `from_dict()`.
  The module also defines the abstract interfaces `Interpreter`, `RunStore` and
  `EventPublisher`, and the exceptions `StoreError` and `InterpreterError`.
- `skillrun.run_executor` contains `RunExecutor`. It takes an `Interpreter` and a list of
  `ActionDefinition`s, and provides `start_run`, `complete_action` and `fail_run`. Each of these
  returns a `RunTransition`, which carries the new session, the action records to save and the
  action to enqueue.
  - When a program calls an action, `RunExecutor` resolves the call by the action's model name.
    Dashes in the name become underscores, so `resolve-mission` is called as
    `resolve_mission`.
  - It maps positional and named arguments onto canonical parameter names.
  - It raises `ActionResolutionError` for an unknown action, for too many positional arguments,
    for an unknown named argument and for a duplicate argument.
- `skillrun.engine` contains `ExecutionEngine`, an asyncio engine.
  - Run transitions are processed in one background task.
  - Actions are handed to your `ActionExecutor` in a second task, one at a time.
  - Every `ExecutionEvent` is published through your `EventPublisher`.
  - The engine can be used as an async context manager, or you can call `start()` and
    `close()` yourself.
  - `run_status(run_id)` and `has_active_runs()` report the state the engine has seen.
- `skillrun.events` provides the event publishers.
  - `EventHub` broadcasts events to any number of `EventSubscription`s. Each subscription
    buffers up to 1024 events. When it falls further behind, the next receive raises
    `StoreError`.
  - `TeeEventPublisher` publishes each event to two publishers.
  - `StdoutEventPublisher` prints each event as one line of JSON.
- `skillrun.in_memory` provides `InMemoryRunStore` and `RecordingEventPublisher`. The
  publisher exposes the events it has received as `events`.
- `skillrun.fs` provides `FileSystemRunStore` and `FileSystemEventLog`, which keep everything
  under a root directory laid out as follows:
  - `runs/<run-id>/run.json` holds the session. Its snapshot is stored as base64.
  - `runs/<run-id>/actions/<action-id>.json` and `system/actions/<action-id>.json` hold the
    action records.
  - `system/events.jsonl` and `runs/<run-id>/events.jsonl` hold the event log, one JSON object
    per line.
  - An empty `orchestration/runs` directory is also created.
- `skillrun.skills` provides `FileSystemSkillRegistry`, which reads skill bundles described by
  `skill.yaml` or `skill.yml`. `validate_manifest` checks each manifest, and the registry
  chooses a profile for the skill.
- `skillrun.code_environment` provides `CodeEnvironment`, the environment an agent works in.
  - It accepts the actions `LoadSkill`, `UnloadSkill`, `CallTool` and `ExecuteCode` through
    `step()`.
  - `submit()` runs an action straight away and keeps its outcome back. The next call to
    `poll_events()` returns it as an `ActionCompleted` or `ActionFailed` event.
  - `observe()` lists the available tools. It also lists the catalog skills, each either as
    available, with a description, or as active, with its instructions and Python stub.
- `skillrun.code_tools` contains `default_code_environment_tools()`, which returns the
  `load_skill`, `unload_skill` and `execute_code` tool descriptions with their JSON input
  schemas.

## Example

```python
import asyncio
import uuid

from skillrun.engine import ActionExecutionUpdate, ActionExecutor, ExecutionEngine
from skillrun.events import EventHub, TeeEventPublisher
from skillrun.in_memory import InMemoryRunStore, RecordingEventPublisher
from skillrun.models import (
    ActionResult, ActionSkillRef, CodeArtifact, Completion, EventKind, ExternalCall,
    Interpreter, StartExecutionRequest, Suspension,
)
from skillrun.run_executor import ActionDefinition, ActionParam, RunExecutor


class CallOnce(Interpreter):
    """Programs look like 'echo:41': call the action once, then return its result."""

    def compile(self, code):
        return code.source

    def start(self, program, inputs):
        name, argument = program.split(":")
        return Suspension(snapshot=b"resume", call=ExternalCall(name, [int(argument)]))

    def resume(self, snapshot, return_value):
        return Completion(return_value)


class Echo(ActionExecutor):
    async def execute(self, action):
        value = action.invocation.arguments["value"]
        return ActionExecutionUpdate.completed(ActionResult(action.id, value))


actions = [ActionDefinition(ActionSkillRef("test-skill"), "echo", (ActionParam("value"),))]


async def main():
    hub = EventHub()
    publisher = TeeEventPublisher(RecordingEventPublisher(), hub.publisher())
    engine = ExecutionEngine(
        RunExecutor(CallOnce(), actions), InMemoryRunStore(), publisher, Echo(), hub
    )
    async with engine:
        subscription = engine.subscribe()
        code = CodeArtifact(uuid.uuid4(), "python", "demo.py", "echo:41")
        run_id = await engine.submit(StartExecutionRequest(code))
        while True:
            event = await subscription.recv()
            if event.run_id == run_id and event.kind in (
                EventKind.RUN_COMPLETED,
                EventKind.RUN_FAILED,
            ):
                break
        print(engine.run_status(run_id))  # completed with value 41


asyncio.run(main())
```

`FileSystemRunStore(root)` and `FileSystemEventLog(root)` can replace the in-memory store and
publisher. After a restart, pass `FileSystemEventLog(root).read_events()` to
`engine.recover_from_events(...)`. This re-enqueues the pending action of every stored run
that was waiting for one and has no completed or failed event in the log.

## Skill bundles

A skill bundle is a directory under the registry root. It contains a manifest such as:

```yaml
schema_version: 1
skill:
  name: orchestration
  version: 0.1.0
  description: Build workflows.
defaults:
  instructions:
    source: SKILL.md
profiles:
  - name: orchestration-default
    default: true
    runtime:
      kind: wasm-component
      wasm:
        wit:
          path: world.wit
          world: orchestration-default
        artifacts:
          dir: build/orchestration-default
        build:
          tool: componentize-py
          module: app
    capabilities:
      - memory
```

`FileSystemSkillRegistry(root).load_profile("orchestration", None)` returns the profile marked
`default`. If no profile is marked, it returns the first one. All paths are resolved against the
bundle directory.

A manifest is rejected in these cases:

- its schema version is not 1;
- its skill name or a profile name is blank;
- it has no profiles;
- it has more than one default profile;
- a `wasm-component` profile has no `wasm` section.

`list_skills()` returns the skills sorted by name.

## What the package does not do

- It includes no interpreter. You provide an `Interpreter` that compiles programs, runs them and
  resumes them.
- It cannot execute skills. Compiled skill artifacts are not loaded or run. The engine's
  actions go to the `ActionExecutor` you supply, and `CodeEnvironment` tool calls go to the
  `CodeToolExecutor` you supply.
- `CodeEnvironment` does not discover skills by itself. You pass it a runtime root and a list of
  `CatalogEntry` values. It reads their manifests and instructions from
  `<runtime_root>/catalog/skills/<name>/<version>/<profile>/`.
- `ExecuteCode` needs a `RunExecutor` and a tool executor. The only language it accepts is
  `python`.
- `CodeEnvironmentSnapshot` carries no state.
- There is no command-line program.