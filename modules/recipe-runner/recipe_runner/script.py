"""
Shell script emission.

The emitter walks the same expanded plan and CommandResolver as the live
runner and prints each resolved invocation instead of executing it.
Variables are read from the environment when the script runs, never
baked in at emission time.
"""

import logging
import re
import shlex
from datetime import datetime
from pathlib import Path

from .agents import AgentRegistry
from .commands import canonical_tool
from .conditions import OUTPUT_ENV_VAR
from .config import RunnerConfig
from .documents import REFERENCE_FOOTER
from .documents import REFERENCE_HEADER
from .documents import document_key
from .documents import output_instruction
from .errors import RecipeDefinitionError
from .models import VARIABLE_PATTERN
from .models import Check
from .models import Recipe
from .models import Step
from .models import output_variable
from .plan import CommandResolver
from .plan import ResolvedCommand
from .plan import check_agents
from .plan import expand_plan
from .plan import loop_limit_errors
from .plan import template_segments

logger = logging.getLogger(__name__)

INDENT = "  "


def ansi_c(text: str) -> str:
    """Quote text as a bash $'...' string (keeps newlines readable in the script)."""
    escaped = text.replace("\\", "\\\\").replace("'", "\\'").replace("\n", "\\n").replace("\t", "\\t")
    return f"$'{escaped}'"


def _dq(text: str) -> str:
    """Escape text for use inside a double-quoted bash word."""
    return re.sub(r'([\\$"`])', r"\\\1", text)


class ScriptEmitter:
    """Renders a recipe as a self-contained, re-runnable bash script."""

    def __init__(
        self,
        agents: AgentRegistry | None = None,
        config: RunnerConfig | None = None,
        executable: str | None = None,
    ):
        self.agents = agents
        self.config = config or RunnerConfig()
        self.executable = executable

    def resolved_commands(self, recipe: Recipe, tool: str) -> list[ResolvedCommand]:
        """Resolve every plan entry, in plan order."""
        errors = recipe.validate() + check_agents(recipe, self.agents)
        errors += loop_limit_errors(recipe, self.config.max_loop_iterations)
        if errors:
            raise RecipeDefinitionError(f"Recipe '{recipe.id}' is invalid:", errors, recipe_id=recipe.id)
        try:
            tool = canonical_tool(tool)
        except ValueError as e:
            raise RecipeDefinitionError(str(e), recipe_id=recipe.id) from e

        resolver = CommandResolver(recipe, tool, self.agents, self.executable)
        return [resolver.resolve(entry) for entry in expand_plan(recipe, self.config.max_loop_iterations)]

    def emit(self, recipe: Recipe, tool: str, generated_at: datetime | None = None) -> str:
        """Return the script text for running `recipe` against `tool`."""
        commands = self.resolved_commands(recipe, tool)
        tool = canonical_tool(tool)
        if recipe.tools and tool not in recipe.tools:
            logger.warning("Recipe '%s' does not declare support for %s", recipe.id, tool)

        lines = self._header(recipe, tool, commands, generated_at or datetime.now())
        lines += self._variables(recipe)
        lines += self._setup(recipe)

        total = len(commands)
        loop_open = False
        for resolved in commands:
            entry = resolved.entry
            if entry.in_loop and not loop_open:
                loop_steps = ", ".join(recipe.loop.steps)
                lines += ["", f"# ===== Loop: {loop_steps} (max {entry.iterations} iterations) =====", "LOOP_DONE=0"]
                loop_open = True
            if entry.in_loop and entry.step.id == recipe.loop.steps[0]:
                lines += [
                    "",
                    'if [ "$LOOP_DONE" -eq 0 ]; then',
                    f'{INDENT}echo "🔁 Loop iteration {entry.iteration}/{entry.iterations}"',
                ]

            block = self._step(recipe, resolved, total)
            lines += [INDENT + line if line else line for line in block] if entry.in_loop else block

            if entry.closes_iteration:
                lines += [INDENT + line for line in self._loop_exit(recipe, entry.iteration)]
                lines.append("fi")

        lines += ["", 'echo ""', f'echo "✅ Recipe completed: {_dq(recipe.id)}"', 'echo "Log file: $LOG_FILE"', ""]
        return "\n".join(lines)

    def write(self, recipe: Recipe, tool: str, output_path: Path | None = None) -> Path:
        """Emit the script to disk and mark it executable."""
        tool = canonical_tool(tool)
        path = Path(output_path) if output_path else self.config.scripts_dir / f"{recipe.id}-{tool}.sh"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.emit(recipe, tool), encoding="utf-8")
        path.chmod(0o755)
        logger.info("Wrote script for recipe '%s' (%s): %s", recipe.id, tool, path)
        return path

    def _header(self, recipe, tool, commands, generated_at):
        family = commands[0].invocation.family.value if commands else ""
        lines = [
            "#!/usr/bin/env bash",
            f"# Recipe: {recipe.id} (v{recipe.version})",
            *[f"# {line}".rstrip() for line in recipe.description.strip().splitlines()],
            f"# Tool: {tool} ({family})",
            f"# Steps: {len(commands)} (loops unrolled)",
            f"# Generated by recipe-runner on {generated_at:%Y-%m-%d %H:%M:%S}",
        ]
        names = recipe.referenced_variables()
        if names:
            lines += ["#", "# Variables (read from the environment):"]
            for name in names:
                default = " ".join(recipe.variables.get(name, "").splitlines())
                lines.append(f"#   {name}" + (f" (default: {default})" if default else " (required)"))
        lines += ["", "set -eo pipefail"]
        return lines

    def _variables(self, recipe: Recipe) -> list[str]:
        names = recipe.referenced_variables()
        if not names:
            return []
        lines = ["", "# ===== Variables ====="]
        required = [n for n in names if not recipe.variables.get(n)]
        plain = [n for n in names if recipe.variables.get(n) and not VARIABLE_PATTERN.search(recipe.variables[n])]
        derived = [n for n in names if n not in required and n not in plain]
        for name in required:
            lines.append(f': "${{{name}:?Required variable {name} is not set (export {name}=...)}}"')
        for name in plain + derived:
            word = "".join(
                _dq(text) if kind == "text" else f"${{{text}}}"
                for kind, text in template_segments(recipe.variables[name])
            )
            lines.append(f': "${{{name}:={word}}}"')
        return lines

    def _setup(self, recipe: Recipe) -> list[str]:
        header = ansi_c(REFERENCE_HEADER)
        footer = ansi_c(REFERENCE_FOOTER)
        return [
            "",
            "# ===== Directories and logging =====",
            f'RECIPE_DOCS_DIR="${{RECIPE_DOCS_DIR:-{_dq(self.config.docs_dir_name)}}}"',
            f'RECIPE_LOGS_DIR="${{RECIPE_LOGS_DIR:-{_dq(self.config.logs_dir_name)}}}"',
            'mkdir -p "$RECIPE_DOCS_DIR" "$RECIPE_LOGS_DIR"',
            f'LOG_FILE="$RECIPE_LOGS_DIR/{_dq(recipe.id)}-$(date +%Y%m%d-%H%M%S).log"',
            'exec > >(tee -a "$LOG_FILE") 2>&1',
            "",
            f'echo "🚀 Running recipe: {_dq(recipe.id)}"',
            'echo "📁 Documents: $RECIPE_DOCS_DIR"',
            'echo "📝 Log file: $LOG_FILE"',
            "",
            'LAST_RESPONSE=""',
            "",
            "# Appends a document to DOCS: $1 file under RECIPE_DOCS_DIR, $2 label, $3=1 if required",
            "include_document() {",
            f'{INDENT}local path="$RECIPE_DOCS_DIR/$1"',
            f'{INDENT}if [ -f "$path" ]; then',
            f"{INDENT * 2}DOCS+=$'\\n\\n### Document: `'\"$2\"$'`\\n\\n'\"$(cat \"$path\")\"$'\\n\\n---'",
            f'{INDENT}elif [ "${{3:-0}}" = "1" ]; then',
            f'{INDENT * 2}echo "❌ Required document not found: $2" >&2',
            f"{INDENT * 2}exit 1",
            f"{INDENT}else",
            f'{INDENT * 2}echo "⚠️  Document $2 does not exist yet and was omitted" >&2',
            f"{INDENT}fi",
            "}",
            "",
            "# Appends the collected documents to TASK",
            "append_documents() {",
            f'{INDENT}if [ -n "$DOCS" ]; then',
            f'{INDENT * 2}TASK+={header}"$DOCS"{footer}',
            f"{INDENT}fi",
            "}",
        ]

    def _task_word(self, step: Step) -> str:
        """TASK assignment value: quoted literals plus run-time variable expansions."""
        parts = []
        for kind, text in template_segments(step.task):
            if kind == "text":
                parts.append(shlex.quote(text))
            elif text in step.inputs:
                parts.extend(
                    shlex.quote(t) if k == "text" else f'"${{{t}}}"'
                    for k, t in template_segments(step.inputs[text])
                    if t
                )
            else:
                parts.append(f'"${{{text}}}"')
        return "".join(parts) or "''"

    def _step(self, recipe: Recipe, resolved: ResolvedCommand, total: int) -> list[str]:
        entry = resolved.entry
        step = entry.step
        invocation = resolved.invocation
        lines = [
            "",
            f"# ===== Step {entry.position + 1}/{total}: {entry.label} (agent: {step.agent}) =====",
            'echo ""',
            f'echo "▶️  [{entry.position + 1}/{total}] {_dq(entry.label)} ({_dq(step.agent)})"',
        ]
        if step.wait_for_confirmation:
            lines.append("# waitForConfirmation is bypassed in generated scripts")

        body = [f"TASK={self._task_word(step)}", 'DOCS=""']
        for path in step.include_documents:
            required = "1" if step.require_documents or self.config.missing_documents == "error" else "0"
            key = document_key(path, self.config.docs_dir_name)
            body.append(f"include_document {shlex.quote(key)} {shlex.quote(path)} {required}")
        if step.include_documents:
            body.append("append_documents")
        if step.output_document:
            body.append(f"TASK+={ansi_c(output_instruction(step.output_document))}")
        prefix = shlex.quote(invocation.prompt_prefix) if invocation.prompt_prefix else ""
        body.append(f'PROMPT={prefix}"$TASK"')

        if invocation.automated:
            body += self._invoke(step, invocation)
        else:
            body += self._manual(step, invocation)

        if step.condition and step.condition.is_file_guard:
            target = shlex.quote(step.condition.check.value)
            lines += [
                f"if [ -e {target} ]; then",
                f'{INDENT}echo "⏭️  Skipping {_dq(step.id)}: "{target}" already exists"',
                "else",
                *[INDENT + line for line in body],
                "fi",
            ]
        else:
            lines += body
        return lines

    def _invoke(self, step: Step, invocation) -> list[str]:
        if invocation.prompt_via == "stdin":
            command = f"RESPONSE=$(printf '%s' \"$PROMPT\" | {invocation.render()})"
        else:
            command = f'RESPONSE=$({invocation.render()} {invocation.prompt_flag} "$PROMPT")'
        lines = [
            f'echo "   ⚡ {_dq(invocation.render()[:120])}"',
            command,
            'echo "$RESPONSE"',
            'LAST_RESPONSE="$RESPONSE"',
            f'{output_variable(step.id)}="$RESPONSE"',
        ]
        if step.output_document:
            key = document_key(step.output_document, self.config.docs_dir_name)
            target = f'"$RECIPE_DOCS_DIR"/{shlex.quote(key)}'
            if "/" in key:
                lines.append(f'mkdir -p "$(dirname {target})"')
            lines += [f"printf '%s\\n' \"$RESPONSE\" > {target}", f'echo "   ✓ Document saved: $RECIPE_DOCS_DIR/{_dq(key)}"']
        lines += self._condition(step)
        return lines

    def _manual(self, step: Step, invocation) -> list[str]:
        lines = [
            f"# Manual step: open {invocation.tool} and run the prompt below as @{step.agent}",
            f'echo "📋 Manual step: open {invocation.tool} and run the following as @{_dq(step.agent)}"',
            f'printf \'%s\\n\' "{"-" * 60}" "$PROMPT" "{"-" * 60}"',
        ]
        if step.output_document:
            key = document_key(step.output_document, self.config.docs_dir_name)
            lines.append(f'echo "   Save the response to: $RECIPE_DOCS_DIR/{_dq(key)}"')
        if step.condition and not step.condition.is_file_guard:
            lines.append("# Condition is advisory for manual steps and is not checked")
        lines += [
            'if [ -t 0 ]; then read -r -p "Press Enter when the step is complete... " _; fi',
            'RESPONSE=""',
            'LAST_RESPONSE="$RESPONSE"',
            f'{output_variable(step.id)}="$RESPONSE"',
        ]
        return lines

    def _condition(self, step: Step) -> list[str]:
        condition = step.condition
        if condition is None or condition.type == "always" or condition.is_file_guard:
            return []
        if condition.type == "user-decision":
            return ["# user-decision condition is bypassed in generated scripts"]
        if condition.check is None:
            return []
        if condition.check.type == "user-approval":
            return ["# user-approval check is bypassed in generated scripts"]

        test = self._check_test(condition.check, '"$RESPONSE"')
        failed = test if condition.type == "on-failure" else f"! {test}"
        message = _dq(f"❌ Step '{step.id}': condition failed ({condition.type}: {condition.check.describe()})")
        return [
            f"if {failed}; then",
            f'{INDENT}echo "{message}" >&2',
            f"{INDENT}exit 1",
            "fi",
        ]

    def _loop_exit(self, recipe: Recipe, iteration: int) -> list[str]:
        condition = recipe.loop.condition
        if condition is None or not condition.can_exit_early:
            return []
        source = f'"${output_variable(condition.step)}"' if condition.step else '"$LAST_RESPONSE"'
        return [
            f"if {self._check_test(condition.as_check(), source)}; then",
            f'{INDENT}echo "✓ Loop condition met after iteration {iteration}, exiting loop"',
            f"{INDENT}LOOP_DONE=1",
            "fi",
        ]

    def _check_test(self, check: Check, source: str) -> str:
        """Bash test that succeeds when `check` passes against `source`."""
        if check.type == "contains":
            return f"[[ {source} == *{shlex.quote(check.value)}* ]]"
        if check.type == "regex":
            # bash matches a quoted right-hand side literally, so go through a variable
            return f"{{ CHECK_PATTERN={shlex.quote(check.pattern)}; [[ {source} =~ $CHECK_PATTERN ]]; }}"
        if check.type == "command":
            return f"{OUTPUT_ENV_VAR}={source} bash -c {shlex.quote(check.cmd)}"
        raise RecipeDefinitionError(f"Unsupported check type '{check.type}'")
