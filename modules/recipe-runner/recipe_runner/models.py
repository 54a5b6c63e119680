"""Recipe data models and YAML parsing."""

import re
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from pathlib import PurePosixPath
from typing import Any
from typing import Literal

import yaml

from .errors import RecipeDefinitionError

# {{name}} placeholders in task text and variable defaults
VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")

# Recipe and step ids end up in file names and bash variable names
ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

CHECK_TYPES = ("contains", "regex", "command", "user-approval")
CONDITION_TYPES = ("always", "on-success", "on-failure", "user-decision", "file-exists", "file_exists")
LOOP_CONDITION_TYPES = ("contains", "regex", "command", "max-iterations", "user-decision")
CONVERSATION_STRATEGIES = ("separate", "continue")

DEFAULT_LOOP_ITERATIONS = 3

_STEP_FIELDS = {
    "id": "id",
    "agent": "agent",
    "task": "task",
    "outputDocument": "output_document",
    "includeDocuments": "include_documents",
    "continueConversation": "continue_conversation",
    "waitForConfirmation": "wait_for_confirmation",
    "condition": "condition",
    "inputs": "inputs",
    "model": "model",
    "requireDocuments": "require_documents",
    "timeout": "timeout",
}

_RECIPE_FIELDS = (
    "id",
    "version",
    "description",
    "tags",
    "tools",
    "conversationStrategy",
    "toolOptions",
    "variables",
    "model",
    "steps",
    "loop",
    "metadata",
)


def _document_path_errors(owner: str, path: Any) -> list[str]:
    """Document paths must be relative and stay inside the documents directory."""
    if not isinstance(path, str) or not path.strip():
        return [f"{owner}: document path must be a non-empty string"]
    pure = PurePosixPath(path)
    if pure.is_absolute() or ".." in pure.parts:
        return [f"{owner}: document path must be relative without '..', got '{path}'"]
    return []


def output_variable(step_id: str) -> str:
    """Bash variable that holds a step's latest output in generated scripts."""
    return "OUTPUT_" + step_id.replace("-", "_").upper()


@dataclass(frozen=True)
class Check:
    """A predicate evaluated against a step's captured output."""

    type: str
    value: str | None = None
    pattern: str | None = None
    cmd: str | None = None
    prompt: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "Check":
        if not isinstance(data, dict):
            raise ValueError("check must be a dictionary")
        return cls(
            type=str(data.get("type", "")),
            value=data.get("value"),
            pattern=data.get("pattern"),
            cmd=data.get("cmd"),
            prompt=data.get("prompt"),
        )

    def validate(self, owner: str) -> list[str]:
        errors = []
        if self.type not in CHECK_TYPES:
            errors.append(f"{owner}: unsupported check type '{self.type}' (expected one of {', '.join(CHECK_TYPES)})")
        elif self.type == "contains" and not self.value:
            errors.append(f"{owner}: 'contains' check requires 'value'")
        elif self.type == "regex":
            if not self.pattern:
                errors.append(f"{owner}: 'regex' check requires 'pattern'")
            else:
                try:
                    re.compile(self.pattern)
                except re.error as e:
                    errors.append(f"{owner}: invalid regex pattern '{self.pattern}': {e}")
        elif self.type == "command" and not (self.cmd and self.cmd.strip()):
            errors.append(f"{owner}: 'command' check requires 'cmd'")
        return errors

    def describe(self) -> str:
        """Human-readable summary used in logs and failure messages."""
        if self.type == "contains":
            return f"contains {self.value!r}"
        if self.type == "regex":
            return f"regex /{self.pattern}/"
        if self.type == "command":
            return f"command `{self.cmd}` exits 0"
        return self.type


@dataclass(frozen=True)
class StepCondition:
    """Condition attached to a step.

    - always: never fails
    - on-success: the check must pass
    - on-failure: the check must not pass
    - file-exists: the step is skipped when check.value exists
    - user-decision: interactive gate, bypassed in automated runs
    """

    type: str
    check: Check | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "StepCondition":
        if not isinstance(data, dict):
            raise ValueError("condition must be a dictionary")
        check_data = data.get("check")
        return cls(
            type=str(data.get("type", "")),
            check=Check.from_dict(check_data) if check_data is not None else None,
        )

    @property
    def is_file_guard(self) -> bool:
        return self.type in ("file-exists", "file_exists")

    def validate(self, owner: str) -> list[str]:
        errors = []
        if self.type not in CONDITION_TYPES:
            errors.append(
                f"{owner}: unsupported condition type '{self.type}' (expected one of {', '.join(CONDITION_TYPES)})"
            )
            return errors
        if self.is_file_guard:
            if self.check is None or not self.check.value:
                errors.append(f"{owner}: '{self.type}' condition requires check.value (the file path)")
            return errors
        if self.type == "on-failure" and self.check is None:
            errors.append(f"{owner}: 'on-failure' condition requires a check")
        if self.check is not None:
            errors.extend(self.check.validate(owner))
        return errors


@dataclass(frozen=True)
class LoopCondition:
    """Early-exit condition for a loop region, checked after each full iteration.

    When satisfied the loop stops. `step` selects which loop step's latest
    output is examined; by default the most recent step's output is used.
    """

    type: str
    value: str | None = None
    pattern: str | None = None
    cmd: str | None = None
    prompt: str | None = None
    step: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "LoopCondition":
        if not isinstance(data, dict):
            raise ValueError("loop.condition must be a dictionary")
        flat = dict(data)
        # Accept the step-condition shape too: {check: {type, value}}
        check = flat.pop("check", None)
        if isinstance(check, dict):
            for key in ("type", "value", "pattern", "cmd", "prompt"):
                if key in check and (key not in flat or key == "type"):
                    flat[key] = check[key]
        return cls(
            type=str(flat.get("type", "")),
            value=flat.get("value"),
            pattern=flat.get("pattern"),
            cmd=flat.get("cmd"),
            prompt=flat.get("prompt"),
            step=flat.get("step"),
        )

    @property
    def can_exit_early(self) -> bool:
        return self.type in ("contains", "regex", "command")

    def as_check(self) -> Check:
        return Check(type=self.type, value=self.value, pattern=self.pattern, cmd=self.cmd, prompt=self.prompt)

    def validate(self) -> list[str]:
        owner = "loop.condition"
        if self.type not in LOOP_CONDITION_TYPES:
            return [
                f"{owner}: unsupported type '{self.type}' (expected one of {', '.join(LOOP_CONDITION_TYPES)})"
            ]
        if self.can_exit_early:
            return self.as_check().validate(owner)
        return []


@dataclass(frozen=True)
class LoopConfig:
    """Names a subset of step ids to replay as one loop body."""

    steps: list[str] = field(default_factory=list)
    max_iterations: int = DEFAULT_LOOP_ITERATIONS
    condition: LoopCondition | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "LoopConfig":
        if not isinstance(data, dict):
            raise ValueError("loop must be a dictionary")
        steps = data.get("steps", [])
        if not isinstance(steps, list):
            raise ValueError("loop.steps must be a list")
        condition_data = data.get("condition")
        max_iterations = data.get("maxIterations")
        return cls(
            steps=[str(s) for s in steps],
            max_iterations=DEFAULT_LOOP_ITERATIONS if max_iterations is None else max_iterations,
            condition=LoopCondition.from_dict(condition_data) if condition_data is not None else None,
        )

    def validate(self, step_ids: list[str]) -> list[str]:
        errors = []
        if not self.steps:
            errors.append("loop.steps must name at least one step")
        if not isinstance(self.max_iterations, int) or isinstance(self.max_iterations, bool):
            errors.append(f"loop.maxIterations must be an integer, got {self.max_iterations!r}")
        elif self.max_iterations < 1:
            errors.append(f"loop.maxIterations must be >= 1, got {self.max_iterations}")
        duplicates = {sid for sid in self.steps if self.steps.count(sid) > 1}
        if duplicates:
            errors.append(f"loop.steps lists duplicate step IDs: {', '.join(sorted(duplicates))}")
        for sid in self.steps:
            if sid not in step_ids:
                errors.append(f"loop references unknown step '{sid}'")
        if self.condition:
            errors.extend(self.condition.validate())
            if self.condition.step and self.condition.step not in self.steps:
                errors.append(f"loop.condition.step '{self.condition.step}' is not part of the loop")
        return errors


@dataclass(frozen=True)
class Step:
    """A single unit of work: an agent, a task, optional document I/O and a condition."""

    id: str
    agent: str
    task: str
    output_document: str | None = None
    include_documents: list[str] = field(default_factory=list)
    continue_conversation: bool = True
    wait_for_confirmation: bool = False
    condition: StepCondition | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    model: str | None = None
    require_documents: bool = False
    timeout: float | None = None

    def validate(self) -> list[str]:
        """Validate step structure and constraints."""
        errors = []

        if not self.id:
            errors.append("Step missing required field: id")
        elif not ID_PATTERN.fullmatch(self.id):
            errors.append(f"Step '{self.id}': id must be alphanumeric with hyphens/underscores")
        owner = f"Step '{self.id}'"
        if not self.agent:
            errors.append(f"{owner}: missing required field 'agent'")
        elif not isinstance(self.agent, str) or not self.agent.isprintable():
            errors.append(f"{owner}: agent must be a single line of printable text")
        if not self.task or not str(self.task).strip():
            errors.append(f"{owner}: missing required field 'task'")

        if self.output_document is not None:
            errors.extend(_document_path_errors(owner, self.output_document))
        if not isinstance(self.include_documents, list):
            errors.append(f"{owner}: includeDocuments must be a list")
        else:
            for path in self.include_documents:
                errors.extend(_document_path_errors(owner, path))

        if not isinstance(self.continue_conversation, bool):
            errors.append(f"{owner}: continueConversation must be a boolean")
        if not isinstance(self.inputs, dict):
            errors.append(f"{owner}: inputs must be a mapping")
        if self.timeout is not None and (not isinstance(self.timeout, (int, float)) or self.timeout <= 0):
            errors.append(f"{owner}: timeout must be positive")

        if self.condition:
            errors.extend(self.condition.validate(owner))

        return errors


@dataclass(frozen=True)
class Recipe:
    """A validated, declarative multi-step workflow. Not mutated after loading."""

    id: str
    version: str
    description: str
    steps: list[Step] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    conversation_strategy: Literal["separate", "continue"] = "separate"
    tool_options: dict[str, dict[str, Any]] = field(default_factory=dict)
    variables: dict[str, str] = field(default_factory=dict)
    loop: LoopConfig | None = None
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _parse_step(cls, step_data: Any) -> Step:
        """Parse a single step from YAML data."""
        if not isinstance(step_data, dict):
            raise ValueError("Each step must be a dictionary")

        unknown = sorted(set(step_data) - set(_STEP_FIELDS))
        if unknown:
            raise ValueError(f"Step '{step_data.get('id', '?')}': unknown field(s): {', '.join(unknown)}")

        kwargs = {_STEP_FIELDS[key]: value for key, value in step_data.items()}
        if "condition" in kwargs and kwargs["condition"] is not None:
            kwargs["condition"] = StepCondition.from_dict(kwargs["condition"])
        if kwargs.get("include_documents") is None:
            kwargs.pop("include_documents", None)
        if kwargs.get("inputs") is None:
            kwargs.pop("inputs", None)
        elif isinstance(kwargs["inputs"], dict):
            kwargs["inputs"] = {str(k): str(v) for k, v in kwargs["inputs"].items()}
        kwargs["id"] = str(kwargs.get("id", ""))
        kwargs.setdefault("agent", "")
        kwargs.setdefault("task", "")
        return Step(**kwargs)

    @classmethod
    def from_dict(cls, data: Any) -> "Recipe":
        """Build a recipe from already-parsed YAML data."""
        if not isinstance(data, dict):
            raise ValueError("Recipe YAML must be a dictionary")

        unknown = sorted(set(data) - set(_RECIPE_FIELDS))
        if unknown:
            raise ValueError(f"Recipe has unknown field(s): {', '.join(unknown)}")

        steps_data = data.get("steps") or []
        if not isinstance(steps_data, list):
            raise ValueError("'steps' must be a list")
        steps = [cls._parse_step(sd) for sd in steps_data]

        loop_config = None
        if data.get("loop") is not None:
            loop_config = LoopConfig.from_dict(data["loop"])

        variables = data.get("variables") or {}
        if not isinstance(variables, dict):
            raise ValueError("'variables' must be a mapping")

        tool_options = data.get("toolOptions") or {}
        if not isinstance(tool_options, dict):
            raise ValueError("'toolOptions' must be a mapping")

        return cls(
            id=str(data.get("id", "")),
            version=str(data.get("version", "")),
            description=str(data.get("description", "")),
            steps=steps,
            tags=list(data.get("tags") or []),
            tools=[str(t) for t in data.get("tools") or []],
            conversation_strategy=data.get("conversationStrategy") or "separate",
            tool_options=tool_options,
            variables={str(k): "" if v is None else str(v) for k, v in variables.items()},
            loop=loop_config,
            model=data.get("model"),
            metadata=dict(data.get("metadata") or {}),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Recipe":
        """Load recipe from YAML file."""
        if not path.exists():
            raise FileNotFoundError(f"Recipe file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data)

    def validate(self) -> list[str]:
        """Validate recipe structure and constraints."""
        errors = []

        if not self.id:
            errors.append("Recipe missing required field: id")
        if not self.description:
            errors.append("Recipe missing required field: description")
        if not self.version:
            errors.append("Recipe missing required field: version")

        if self.id and not ID_PATTERN.fullmatch(self.id):
            errors.append("Recipe id must be alphanumeric with hyphens/underscores")

        if self.version:
            parts = self.version.split(".")
            if self.version.startswith("v"):
                errors.append("Recipe version must not have a 'v' prefix (use '1.0.0' not 'v1.0.0')")
            elif not 1 <= len(parts) <= 3 or not all(part.isdigit() for part in parts):
                errors.append(f"Recipe version must be numeric MAJOR[.MINOR[.PATCH]], got '{self.version}'")

        if self.conversation_strategy not in CONVERSATION_STRATEGIES:
            errors.append(
                f"conversationStrategy must be 'separate' or 'continue', got '{self.conversation_strategy}'"
            )

        for tool, options in self.tool_options.items():
            if not isinstance(options, dict):
                errors.append(f"toolOptions.{tool} must be a mapping")

        for name in self.variables:
            if not re.fullmatch(r"[A-Za-z_]\w*", name):
                errors.append(f"Variable name '{name}' must be a valid identifier")

        if not self.steps:
            errors.append("Recipe must have at least one step")

        for step in self.steps:
            errors.extend(step.validate())

        step_ids = [step.id for step in self.steps]
        duplicates = {sid for sid in step_ids if step_ids.count(sid) > 1}
        if duplicates:
            errors.append(f"Duplicate step IDs: {', '.join(sorted(duplicates))}")

        seen: dict[str, str] = {}
        for sid in dict.fromkeys(step_ids):
            other = seen.setdefault(output_variable(sid), sid)
            if other != sid:
                errors.append(f"Step IDs '{other}' and '{sid}' differ only in case or '-' versus '_'")

        if self.loop:
            errors.extend(self.loop.validate(step_ids))

        return errors

    def get_step(self, step_id: str) -> Step | None:
        """Get step by ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def referenced_variables(self) -> list[str]:
        """Names used as {{name}} in tasks or variable defaults, in first-seen order.

        Step `inputs` satisfy their own step's placeholders and are excluded.
        """
        names = list(self.variables)

        def add(template: str) -> None:
            for name in VARIABLE_PATTERN.findall(template or ""):
                if name not in names:
                    names.append(name)

        for default in self.variables.values():
            add(default)
        for step in self.steps:
            for name in VARIABLE_PATTERN.findall(step.task or ""):
                if name not in step.inputs and name not in names:
                    names.append(name)
            for value in step.inputs.values():
                add(value)
        return names


def load_recipe(path: Path) -> Recipe:
    """Load and validate a recipe, raising RecipeDefinitionError on any problem."""
    try:
        recipe = Recipe.from_yaml(path)
    except (ValueError, TypeError, yaml.YAMLError) as e:
        raise RecipeDefinitionError(f"Invalid recipe file {path}: {e}") from e

    errors = recipe.validate()
    if errors:
        raise RecipeDefinitionError(f"Recipe '{recipe.id or path}' is invalid:", errors, recipe_id=recipe.id)
    return recipe
