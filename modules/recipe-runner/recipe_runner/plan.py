"""Execution plan shared by the live runner and the script emitter.

The plan is computed once, before anything runs: a flat list of
(step, iteration) entries with the loop body already expanded in place.
Both backends walk the same entries through the same CommandResolver and
only differ in whether they execute or print the result.
"""

import logging
from dataclasses import dataclass
from typing import Mapping

from .agents import AgentRegistry
from .commands import CommandBuilder
from .commands import Invocation
from .commands import get_command_builder
from .config import DEFAULT_MAX_LOOP_ITERATIONS
from .conversation import ConversationHandle
from .conversation import ConversationManager
from .errors import RecipeDefinitionError
from .models import VARIABLE_PATTERN
from .models import Recipe
from .models import Step

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanEntry:
    """One step execution in the expanded plan."""

    step: Step
    position: int
    iteration: int | None = None  # 1-based loop iteration, None outside the loop
    iterations: int | None = None
    closes_iteration: bool = False  # last loop step of its iteration

    @property
    def in_loop(self) -> bool:
        return self.iteration is not None

    @property
    def label(self) -> str:
        if self.in_loop:
            return f"{self.step.id} [iteration {self.iteration}/{self.iterations}]"
        return self.step.id


def loop_limit_errors(recipe: Recipe, max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS) -> list[str]:
    """Errors for a loop that asks for more iterations than max_loop_iterations."""
    if recipe.loop is None or not isinstance(recipe.loop.max_iterations, int):
        return []
    if recipe.loop.max_iterations > max_loop_iterations:
        return [
            f"loop.maxIterations {recipe.loop.max_iterations} exceeds the limit of {max_loop_iterations} "
            "(raise RECIPE_RUNNER_MAX_LOOP_ITERATIONS to allow it)"
        ]
    return []


def loop_iterations(recipe: Recipe) -> int:
    if recipe.loop is None:
        return 0
    return recipe.loop.max_iterations


def expand_plan(recipe: Recipe, max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS) -> list[PlanEntry]:
    """Expand the recipe into its flat execution order.

    Non-loop steps keep their file order. The loop body (steps named in
    loop.steps, in that order) replaces the first appearance of any loop
    step and is repeated maxIterations times; later appearances of loop
    steps are dropped.

    Raises:
        RecipeDefinitionError: the loop references unknown steps or
            exceeds max_loop_iterations
    """
    errors = loop_limit_errors(recipe, max_loop_iterations)
    if errors:
        raise RecipeDefinitionError(f"Recipe '{recipe.id}' is invalid:", errors, recipe_id=recipe.id)

    ordered: list[tuple[Step, int | None, bool]] = []

    if recipe.loop is None or not recipe.loop.steps:
        ordered = [(step, None, False) for step in recipe.steps]
    else:
        loop_ids = set(recipe.loop.steps)
        body = [recipe.get_step(sid) for sid in recipe.loop.steps]
        if any(step is None for step in body):
            raise RecipeDefinitionError("Loop references unknown steps", recipe_id=recipe.id)
        first_index = min(i for i, step in enumerate(recipe.steps) if step.id in loop_ids)
        iterations = loop_iterations(recipe)

        for index, step in enumerate(recipe.steps):
            if index == first_index:
                for iteration in range(1, iterations + 1):
                    for body_index, body_step in enumerate(body):
                        ordered.append((body_step, iteration, body_index == len(body) - 1))
            elif step.id not in loop_ids:
                ordered.append((step, None, False))

    iterations_total = loop_iterations(recipe) or None
    return [
        PlanEntry(
            step=step,
            position=position,
            iteration=iteration,
            iterations=iterations_total if iteration is not None else None,
            closes_iteration=closes,
        )
        for position, (step, iteration, closes) in enumerate(ordered)
    ]


def template_segments(template: str) -> list[tuple[str, str]]:
    """Split a template into ("text", literal) and ("var", name) segments."""
    segments = []
    last = 0
    for match in VARIABLE_PATTERN.finditer(template):
        if match.start() > last:
            segments.append(("text", template[last : match.start()]))
        segments.append(("var", match.group(1)))
        last = match.end()
    if last < len(template):
        segments.append(("text", template[last:]))
    return segments


def substitute_variables(template: str, values: Mapping[str, str]) -> str:
    """
    Replace {{variable}} references with values.

    Raises:
        ValueError if a variable is undefined
    """

    def replace(name: str) -> str:
        if name not in values:
            available = ", ".join(sorted(values))
            raise ValueError(f"Undefined variable: {{{{{name}}}}}. Available variables: {available}")
        return str(values[name])

    return "".join(text if kind == "text" else replace(text) for kind, text in template_segments(template))


def resolve_variables(recipe: Recipe, supplied: Mapping[str, str] | None = None) -> dict[str, str]:
    """Combine caller-supplied values with recipe defaults.

    Empty values count as unset. Defaults may reference other variables.
    Every variable the recipe declares or references must end up set,
    otherwise a RecipeDefinitionError is raised before any step runs.
    """
    supplied = supplied or {}
    values: dict[str, str] = {}
    missing: list[str] = []

    names = recipe.referenced_variables()
    for name in names:
        if supplied.get(name) not in (None, ""):
            values[name] = str(supplied[name])

    for name in names:
        if name in values:
            continue
        default = recipe.variables.get(name, "")
        if not default:
            missing.append(name)
            continue
        refs = [ref for ref in VARIABLE_PATTERN.findall(default) if ref not in values]
        unresolved = [ref for ref in refs if not recipe.variables.get(ref)]
        if unresolved:
            missing.append(name)
            continue
        lookup = {**{ref: recipe.variables[ref] for ref in refs}, **values}
        values[name] = substitute_variables(default, lookup)

    if missing:
        raise RecipeDefinitionError(
            f"Recipe '{recipe.id}': required variables are not set",
            [f"{name} (set the {name} environment variable or pass --var {name}=...)" for name in missing],
            recipe_id=recipe.id,
        )
    return values


def step_variables(step: Step, values: Mapping[str, str]) -> dict[str, str]:
    """Run variables overlaid with the step's own inputs."""
    return {**values, **{key: substitute_variables(value, values) for key, value in step.inputs.items()}}


def check_agents(recipe: Recipe, agents: AgentRegistry | None) -> list[str]:
    """Errors for steps whose agent is not in the registry."""
    if agents is None:
        return []
    return [f"Step '{step.id}': unknown agent '{step.agent}'" for step in recipe.steps if step.agent not in agents]


@dataclass(frozen=True)
class ResolvedCommand:
    entry: PlanEntry
    handle: ConversationHandle
    invocation: Invocation


class CommandResolver:
    """Turns plan entries into invocations, driving the conversation state as it goes."""

    def __init__(
        self,
        recipe: Recipe,
        tool: str,
        agents: AgentRegistry | None = None,
        executable: str | None = None,
    ):
        self.recipe = recipe
        self.agents = agents
        self.builder: CommandBuilder = get_command_builder(tool, executable)
        self.tool = self.builder.tool
        self.conversations = ConversationManager(recipe.conversation_strategy)

    def agent_text(self, agent_id: str) -> str:
        if self.agents is None:
            return ""
        return self.agents.resolve(agent_id).render()

    def system_prompt(self, entry: PlanEntry) -> str:
        """Agent text followed by the step's place in the recipe."""
        location = f"Recipe: {self.recipe.id}\nStep: {entry.position + 1} ({entry.label})"
        agent_text = self.agent_text(entry.step.agent)
        return f"{agent_text}\n\n---\n\n{location}" if agent_text else location

    def resolve(self, entry: PlanEntry) -> ResolvedCommand:
        step = entry.step
        handle = self.conversations.begin(self.tool, step.continue_conversation)
        invocation = self.builder.build(
            agent_id=step.agent,
            agent_text=self.system_prompt(entry),
            handle=handle,
            tool_options=self.recipe.tool_options,
            model=step.model or self.recipe.model,
        )
        return ResolvedCommand(entry=entry, handle=handle, invocation=invocation)
