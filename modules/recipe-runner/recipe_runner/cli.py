"""Command-line entry point: run, generate, list and validate recipes."""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

from .agents import AgentRegistry
from .catalog import RecipeCatalog
from .commands import TOOL_ALIASES
from .commands import TOOL_BUILDERS
from .config import RunContext
from .config import RunnerConfig
from .errors import RecipeDefinitionError
from .executor import RecipeRunner
from .models import Recipe
from .plan import expand_plan
from .plan import loop_limit_errors
from .script import ScriptEmitter

logger = logging.getLogger("recipe_runner")

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_DEFINITION_ERROR = 2

TOOL_CHOICES = sorted([*TOOL_BUILDERS, *TOOL_ALIASES])

_console_handler: logging.Handler | None = None


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="recipe-runner",
        description="Run multi-step agent recipes against claude-code, copilot-cli or cursor.",
    )
    parser.add_argument(
        "--recipes-dir",
        default="",
        help="Recipe directory (default: env RECIPE_RUNNER_RECIPES_DIR or ./recipes).",
    )
    parser.add_argument(
        "--agents-dir",
        default="",
        help="Agent directory (default: env RECIPE_RUNNER_AGENTS_DIR or ./agents).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a recipe step by step.")
    run.add_argument("recipe", help="Recipe id or path to a recipe YAML file.")
    run.add_argument("tool", nargs="?", choices=TOOL_CHOICES, help="Target tool (default: claude-code).")
    run.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set a recipe variable (overrides the environment). Repeatable.",
    )
    run.add_argument("--target-dir", default=".", help="Project directory the agents work in (default: cwd).")

    generate = sub.add_parser("generate", help="Write a standalone bash script for a recipe.")
    generate.add_argument("recipe", help="Recipe id or path to a recipe YAML file.")
    generate.add_argument("tool", nargs="?", choices=TOOL_CHOICES, help="Target tool (default: claude-code).")
    generate.add_argument("output_path", nargs="?", help="Script path (default: <scripts_dir>/<id>-<tool>.sh).")

    sub.add_parser("list", help="List available recipes.")

    validate = sub.add_parser("validate", help="Check a recipe without running it.")
    validate.add_argument("recipe", help="Recipe id or path to a recipe YAML file.")

    return parser.parse_args(argv)


def _parse_vars(pairs: list[str]) -> dict[str, str]:
    values = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise SystemExit(f"--var expects NAME=VALUE, got {pair!r}")
        values[name.strip()] = value
    return values


def _configure_logging(verbose: bool) -> None:
    global _console_handler
    if _console_handler is not None:
        logger.removeHandler(_console_handler)
    _console_handler = logging.StreamHandler(sys.stdout)
    _console_handler.setFormatter(logging.Formatter("%(message)s"))
    _console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(_console_handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _attach_run_log(context: RunContext, recipe_id: str) -> logging.FileHandler:
    """Mirror all runner output into <log_root>/<recipe-id>-<timestamp>.log."""
    context.log_root.mkdir(parents=True, exist_ok=True)
    path = context.log_root / f"{recipe_id}-{datetime.now():%Y%m%d-%H%M%S}.log"
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.info("📝 Log file: %s", path)
    return handler


def _load_config(args: argparse.Namespace) -> RunnerConfig:
    config = RunnerConfig.from_env()
    if args.recipes_dir:
        config.recipes_dir = Path(args.recipes_dir).expanduser()
    if args.agents_dir:
        config.agents_dir = Path(args.agents_dir).expanduser()
    errors = config.validate()
    if errors:
        raise RecipeDefinitionError("Invalid configuration:", errors)
    return config


def _run_variables(recipe: Recipe, overrides: dict[str, str]) -> dict[str, str]:
    """Same-named environment variables first, then --var overrides."""
    values = {name: os.environ[name] for name in recipe.referenced_variables() if os.environ.get(name)}
    values.update(overrides)
    return values


def cmd_list(config: RunnerConfig) -> int:
    recipes = RecipeCatalog(config.recipes_dir).list()
    if not recipes:
        print(f"No recipes found in {config.recipes_dir}")
        return EXIT_OK
    print("📋 Available Recipes:\n")
    for recipe in recipes:
        print(f"  • {recipe.id} (v{recipe.version})")
        print(f"    {recipe.description}")
        print(f"    Tools: {', '.join(recipe.tools) or 'any'}")
        if loop_limit_errors(recipe, config.max_loop_iterations):
            loop_note = f", loop exceeds the limit of {config.max_loop_iterations} iterations"
        elif recipe.loop:
            loop_note = f", {len(expand_plan(recipe, config.max_loop_iterations))} with loops unrolled"
        else:
            loop_note = ""
        print(f"    Steps: {len(recipe.steps)}{loop_note}\n")
    return EXIT_OK


def cmd_validate(config: RunnerConfig, agents: AgentRegistry, ref: str) -> int:
    recipe = RecipeCatalog(config.recipes_dir).resolve(ref)
    missing = [step.agent for step in recipe.steps if step.agent not in agents]
    errors = loop_limit_errors(recipe, config.max_loop_iterations)
    if agents.ids():
        errors += [f"unknown agent '{agent}'" for agent in dict.fromkeys(missing)]
    if errors:
        raise RecipeDefinitionError(f"Recipe '{recipe.id}' is invalid:", errors, recipe_id=recipe.id)
    print(f"✅ {recipe.id} (v{recipe.version}) is valid: {len(recipe.steps)} steps")
    if missing:
        print(f"⚠️  No agents loaded from {config.agents_dir}; agent ids were not checked")
    return EXIT_OK


def cmd_generate(config: RunnerConfig, agents: AgentRegistry, args: argparse.Namespace) -> int:
    recipe = RecipeCatalog(config.recipes_dir).resolve(args.recipe)
    emitter = ScriptEmitter(agents=agents, config=config)
    path = emitter.write(recipe, args.tool or config.default_tool, Path(args.output_path) if args.output_path else None)
    print(f"\n✅ Generated executable script: {path}\n")
    print("Run with:")
    print(f"  {path}\n")
    return EXIT_OK


def cmd_run(config: RunnerConfig, agents: AgentRegistry, args: argparse.Namespace) -> int:
    recipe = RecipeCatalog(config.recipes_dir).resolve(args.recipe)
    context = RunContext.for_target(Path(args.target_dir), config)
    variables = _run_variables(recipe, _parse_vars(args.var))

    handler = _attach_run_log(context, recipe.id)
    try:
        runner = RecipeRunner(context, args.tool or config.default_tool, agents=agents)
        result = asyncio.run(runner.run(recipe, variables))
    finally:
        logger.removeHandler(handler)
        handler.close()

    if not result.success:
        print(f"\nRecipe '{recipe.id}' failed at step '{result.failed_step}'", file=sys.stderr)
        return EXIT_RUN_FAILED
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = _load_config(args)
        if args.command == "list":
            return cmd_list(config)

        # Agent ids are checked against the registry only when one is present
        agents = AgentRegistry.from_directory(config.agents_dir)
        registry = agents if agents.ids() else None

        if args.command == "validate":
            return cmd_validate(config, agents, args.recipe)
        if args.command == "generate":
            return cmd_generate(config, registry, args)
        if args.command == "run":
            return cmd_run(config, registry, args)
    except RecipeDefinitionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_DEFINITION_ERROR
    except KeyboardInterrupt:
        print("\nRecipe execution cancelled.", file=sys.stderr)
        return 130

    print(f"Unknown command: {args.command}", file=sys.stderr)
    return EXIT_DEFINITION_ERROR


if __name__ == "__main__":
    sys.exit(main())
