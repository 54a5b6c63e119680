"""Exceptions raised while loading, planning and running recipes."""

from typing import Any


class RecipeError(Exception):
    """Base class for all recipe runner errors."""

    pass


class RecipeDefinitionError(RecipeError):
    """Raised when a recipe cannot be run as written.

    Covers schema problems, loops referencing unknown steps, unsupported
    condition types, unknown agents or tools and unset required variables.
    Always raised before the first step executes.
    """

    def __init__(self, message: str, errors: list[str] | None = None, recipe_id: str | None = None):
        self.errors = errors or []
        self.recipe_id = recipe_id
        details = "".join(f"\n  - {err}" for err in self.errors)
        super().__init__(f"{message}{details}")


class StepExecutionError(RecipeError):
    """Raised when an invoked command fails, is missing, or times out."""

    def __init__(
        self,
        recipe_id: str,
        step_id: str,
        message: str,
        exit_code: int | None = None,
        output: str = "",
    ):
        self.recipe_id = recipe_id
        self.step_id = step_id
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Recipe '{recipe_id}', step '{step_id}': {message}")


class ConditionFailedError(RecipeError):
    """Raised when a step's captured output does not satisfy its condition."""

    def __init__(self, recipe_id: str, step_id: str, check: str, output: Any):
        self.recipe_id = recipe_id
        self.step_id = step_id
        self.check = check
        self.output = output
        super().__init__(f"Recipe '{recipe_id}', step '{step_id}': condition failed ({check})")


class DocumentNotFoundError(RecipeError):
    """Raised when a step requires a document that has not been written yet."""

    def __init__(self, recipe_id: str, step_id: str, path: str):
        self.recipe_id = recipe_id
        self.step_id = step_id
        self.path = path
        super().__init__(f"Recipe '{recipe_id}', step '{step_id}': required document not found: {path}")
