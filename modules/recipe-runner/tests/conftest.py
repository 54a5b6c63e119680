"""Shared fixtures for recipe runner tests."""

from pathlib import Path
from typing import Any

import pytest

from recipe_runner.agents import AgentProfile
from recipe_runner.agents import AgentRegistry
from recipe_runner.config import RunContext
from recipe_runner.executor import ProcessResult
from recipe_runner.models import Recipe


class FakeLauncher:
    """Stands in for the agent CLI: records every call and replies from a script.

    `responses` may be a list (consumed in order, the last one repeats) or a
    callable taking (argv, stdin) and returning text or a ProcessResult.
    """

    def __init__(self, responses: Any = None):
        self.responses = responses if responses is not None else ["ok"]
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, argv, stdin, cwd, timeout):
        self.calls.append({"argv": list(argv), "stdin": stdin, "cwd": cwd, "timeout": timeout})
        if callable(self.responses):
            reply = self.responses(argv, stdin)
        else:
            index = min(len(self.calls) - 1, len(self.responses) - 1)
            reply = self.responses[index]
        if isinstance(reply, ProcessResult):
            return reply
        return ProcessResult(stdout=reply, stderr="", exit_code=0)

    def prompts(self) -> list[str]:
        """Prompt text of every call, however it reached the tool."""
        result = []
        for call in self.calls:
            if call["stdin"] is not None:
                result.append(call["stdin"])
            else:
                result.append(call["argv"][call["argv"].index("-p") + 1])
        return result


def make_recipe(**overrides: Any) -> Recipe:
    """Build a recipe from camelCase YAML-style keys with sensible defaults."""
    data = {
        "id": "test-recipe",
        "version": "1.0.0",
        "description": "Test recipe",
        "steps": [{"id": "step-1", "agent": "analyst", "task": "Do the thing"}],
    }
    data.update(overrides)
    return Recipe.from_dict(data)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Target project directory for a run."""
    return tmp_path


@pytest.fixture
def context(temp_dir: Path) -> RunContext:
    return RunContext.for_target(temp_dir)


@pytest.fixture
def agents() -> AgentRegistry:
    registry = AgentRegistry()
    registry.register(AgentProfile(id="analyst", persona="You analyze codebases.", rules=["Be concise"]))
    registry.register(AgentProfile(id="developer", persona="You write code."))
    registry.register(AgentProfile(id="reviewer", persona="You review changes."))
    return registry


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()
