"""The tools a code environment offers to an agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class CodeEnvironmentTool:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)


def _string_property(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def default_code_environment_tools() -> list[CodeEnvironmentTool]:
    """Return fresh copies of the built-in tools."""
    return [
        CodeEnvironmentTool(
            name="load_skill",
            description=(
                "Load a skill by name so you can use it while working on the current request."
            ),
            input_schema={
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "skill_name": _string_property("The name of the skill to load."),
                },
                "required": ["skill_name"],
            },
        ),
        CodeEnvironmentTool(
            name="unload_skill",
            description="Unload a previously loaded skill when you no longer need it.",
            input_schema={
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "skill_name": _string_property("The name of the skill to unload."),
                },
                "required": ["skill_name"],
            },
        ),
        CodeEnvironmentTool(
            name="execute_code",
            description="Execute code in the workspace and inspect the result before replying.",
            input_schema={
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "language": _string_property("The language of the code to run."),
                    "source": _string_property("The code to execute."),
                    "handoff_user_message": _string_property(
                        "A very short message telling the user what the code is about to do."
                    ),
                },
                "required": ["language", "source", "handoff_user_message"],
            },
        ),
    ]