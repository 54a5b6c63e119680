"""Recipe runner: multi-step agent workflows for claude-code, copilot-cli and cursor.

A recipe is loaded once, expanded into a flat execution plan and then either
executed step by step (RecipeRunner) or rendered as a standalone bash
script (ScriptEmitter). Both walk the same plan through the same command
resolution.
"""

import logging

from .agents import AgentProfile
from .agents import AgentRegistry
from .catalog import RecipeCatalog
from .commands import CommandBuilder
from .commands import Invocation
from .commands import ToolFamily
from .commands import get_command_builder
from .conditions import ConditionEvaluator
from .config import RunContext
from .config import RunnerConfig
from .conversation import ConversationManager
from .documents import DocumentStore
from .errors import ConditionFailedError
from .errors import DocumentNotFoundError
from .errors import RecipeDefinitionError
from .errors import RecipeError
from .errors import StepExecutionError
from .executor import RecipeRunner
from .executor import RunResult
from .executor import StepExecutor
from .executor import StepResult
from .models import Recipe
from .models import Step
from .models import load_recipe
from .plan import expand_plan
from .script import ScriptEmitter

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "AgentProfile",
    "AgentRegistry",
    "CommandBuilder",
    "ConditionEvaluator",
    "ConditionFailedError",
    "ConversationManager",
    "DocumentNotFoundError",
    "DocumentStore",
    "Invocation",
    "Recipe",
    "RecipeCatalog",
    "RecipeDefinitionError",
    "RecipeError",
    "RecipeRunner",
    "RunContext",
    "RunResult",
    "RunnerConfig",
    "ScriptEmitter",
    "Step",
    "StepExecutionError",
    "StepExecutor",
    "StepResult",
    "ToolFamily",
    "expand_plan",
    "get_command_builder",
    "load_recipe",
]
