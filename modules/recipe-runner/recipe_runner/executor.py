"""Recipe execution engine."""

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Mapping

from .agents import AgentRegistry
from .commands import canonical_tool
from .conditions import ConditionEvaluator
from .config import RunContext
from .documents import DocumentStore
from .documents import output_instruction
from .documents import render_document
from .documents import render_reference_section
from .errors import ConditionFailedError
from .errors import DocumentNotFoundError
from .errors import RecipeDefinitionError
from .errors import StepExecutionError
from .models import Recipe
from .plan import CommandResolver
from .plan import PlanEntry
from .plan import check_agents
from .plan import expand_plan
from .plan import loop_limit_errors
from .plan import resolve_variables
from .plan import step_variables
from .plan import substitute_variables

logger = logging.getLogger(__name__)

# Cap on captured text quoted in logs and failure messages
MAX_OUTPUT_SIZE_BYTES = 10_000


def truncate_output(value: str, max_bytes: int = MAX_OUTPUT_SIZE_BYTES) -> str:
    """Truncate long captured output for logs and diagnostics."""
    if len(value) > max_bytes:
        return value[:max_bytes] + "\n\n[... truncated]"
    return value


@dataclass
class ProcessResult:
    """Result of an agent CLI invocation."""

    stdout: str
    stderr: str
    exit_code: int


Launcher = Callable[[list[str], str | None, Path, float | None], Awaitable[ProcessResult]]


async def run_process(argv: list[str], stdin: str | None, cwd: Path, timeout: float | None) -> ProcessResult:
    """
    Run one agent CLI invocation as a blocking child process.

    Args:
        argv: Executable and arguments
        stdin: Text piped to the process, or None for no input
        cwd: Working directory (the target project)
        timeout: Seconds before the process is killed (None for no limit)

    Raises:
        OSError: If the executable cannot be started
        TimeoutError: If the process exceeds the timeout
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(stdin.encode("utf-8") if stdin is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise TimeoutError(f"command timed out after {timeout}s") from None
    except asyncio.CancelledError:
        # Interrupting the run takes the in-flight child down with it
        process.kill()
        await process.wait()
        raise

    return ProcessResult(
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
        exit_code=process.returncode or 0,
    )


@dataclass
class StepResult:
    """Outcome of one plan entry."""

    step_id: str
    output: str = ""
    exit_code: int = 0
    iteration: int | None = None
    task: str = ""
    command: list[str] = field(default_factory=list)
    conversation: str | None = None
    continued: bool = False
    skipped: bool = False
    advisory: bool = False
    error: str | None = None


@dataclass
class RunResult:
    """Aggregate outcome of a recipe run."""

    recipe_id: str
    tool: str
    success: bool
    per_step_results: list[StepResult] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    loop_iterations: int = 0

    def outputs(self) -> dict[str, str]:
        """Latest output per step id."""
        return {r.step_id: r.output for r in self.per_step_results if not r.skipped}


class StepExecutor:
    """Runs one plan entry: task resolution, invocation, document capture, condition."""

    def __init__(
        self,
        recipe: Recipe,
        resolver: CommandResolver,
        documents: DocumentStore,
        evaluator: ConditionEvaluator,
        context: RunContext,
        launcher: Launcher = run_process,
        show_progress: Callable[[str, str], None] | None = None,
    ):
        self.recipe = recipe
        self.resolver = resolver
        self.documents = documents
        self.evaluator = evaluator
        self.context = context
        self.launcher = launcher
        self._show = show_progress or (lambda message, level="info": None)

    def resolve_task(self, step: Any, variables: Mapping[str, str]) -> str:
        """Interpolate variables, append every included document that exists, then the save instruction."""
        task = substitute_variables(step.task, step_variables(step, variables))

        blocks = []
        for path in step.include_documents:
            content = self.documents.read(path)
            if content is None:
                if step.require_documents or self.context.missing_documents == "error":
                    raise DocumentNotFoundError(self.recipe.id, step.id, path)
                logger.warning(
                    "Recipe '%s', step '%s': document %s does not exist yet and was omitted "
                    "(is an earlier step supposed to write it?)",
                    self.recipe.id,
                    step.id,
                    path,
                )
                continue
            blocks.append(render_document(path, content))
            self._show(f"     Included: {path}", "debug")

        task += render_reference_section(blocks)
        if step.output_document:
            task += output_instruction(step.output_document)
        return task

    async def execute(self, entry: PlanEntry, variables: Mapping[str, str]) -> StepResult:
        """
        Execute one step.

        Returns:
            StepResult with the captured output

        Raises:
            StepExecutionError: command missing, timed out or exited non-zero
            ConditionFailedError: output did not satisfy the step condition
            DocumentNotFoundError: a required document has not been written
        """
        step = entry.step
        # Resolved even when skipped so conversation state matches the emitted script
        resolved = self.resolver.resolve(entry)
        invocation = resolved.invocation

        if self.evaluator.should_skip(step.condition):
            self._show(f"  ⏭️  Skipping {entry.label}: {step.condition.check.value} already exists")
            return StepResult(step_id=step.id, iteration=entry.iteration, skipped=True)

        if step.wait_for_confirmation:
            logger.info("Step '%s': waitForConfirmation bypassed in automated run", step.id)

        task = self.resolve_task(step, variables)
        prompt = invocation.prompt_for(task)

        result = StepResult(
            step_id=step.id,
            iteration=entry.iteration,
            task=task,
            command=list(invocation.argv),
            conversation=resolved.handle.token,
            continued=resolved.handle.continuing,
        )

        if not invocation.automated:
            # Nothing to run: a human carries out the instruction
            self._show(invocation.instruction(prompt))
            if step.output_document:
                self._show(f"     Save the response to: {self.documents.path_for(step.output_document)}", "warning")
            if step.condition:
                logger.warning(
                    "Step '%s': condition is advisory for %s (no captured output)", step.id, invocation.tool
                )
            result.advisory = True
            return result

        self._show(f"     ⚡ {invocation.render()}", "debug")
        timeout = step.timeout or self.context.step_timeout
        stdin = prompt if invocation.prompt_via == "stdin" else None

        try:
            process = await self.launcher(invocation.command_line(prompt), stdin, self.context.target_dir, timeout)
        except FileNotFoundError as e:
            raise StepExecutionError(
                self.recipe.id, step.id, f"command not found: {invocation.argv[0]} ({e})", exit_code=127
            ) from e
        except TimeoutError as e:
            raise StepExecutionError(self.recipe.id, step.id, str(e), exit_code=124) from e
        except OSError as e:
            raise StepExecutionError(self.recipe.id, step.id, f"failed to execute command: {e}") from e

        result.output = process.stdout
        result.exit_code = process.exit_code

        if process.exit_code != 0:
            message = f"command failed with exit code {process.exit_code}"
            if process.stderr.strip():
                message += f"\nstderr: {truncate_output(process.stderr.strip())}"
            raise StepExecutionError(self.recipe.id, step.id, message, process.exit_code, process.stdout)

        if process.stderr.strip():
            logger.debug("Step '%s' stderr:\n%s", step.id, truncate_output(process.stderr))

        if step.output_document:
            path = self.documents.write(step.output_document, process.stdout)
            self._show(f"     ✓ Document saved: {path}")

        if step.condition:
            outcome = await self.evaluator.evaluate_step_condition(step.condition, process.stdout)
            if not outcome.passed:
                raise ConditionFailedError(
                    self.recipe.id, step.id, outcome.description, truncate_output(process.stdout)
                )
            logger.debug("Step '%s': condition passed (%s)", step.id, outcome.description)

        return result


class RecipeRunner:
    """Executes recipe workflows step by step against one target tool."""

    def __init__(
        self,
        context: RunContext,
        tool: str,
        agents: AgentRegistry | None = None,
        launcher: Launcher = run_process,
        display: Callable[[str, str], None] | None = None,
        executable: str | None = None,
    ):
        """
        Initialize runner.

        Args:
            context: Target, document and log locations for this run
            tool: Target tool name (claude-code, copilot-cli, cursor)
            agents: Registry used to resolve each step's agent
            launcher: Coroutine that runs one invocation (replaceable in tests)
            display: Optional callback receiving (message, level) progress updates
            executable: Override for the tool's executable path
        """
        self.context = context
        self.tool = tool
        self.agents = agents
        self.launcher = launcher
        self.display = display
        self.executable = executable

    def _show_progress(self, message: str, level: str = "info") -> None:
        """
        Report progress to the log and, when configured, the display.

        Args:
            message: Progress message
            level: Message level (debug, info, warning, error)
        """
        logger.log(logging.getLevelName(level.upper()), message)
        if self.display is not None and level != "debug":
            self.display(message, level)

    def prepare(self, recipe: Recipe, variables: Mapping[str, str] | None = None) -> tuple[str, dict[str, str]]:
        """Check everything that can be checked before the first step runs.

        Returns:
            Canonical tool name and the resolved run variables

        Raises:
            RecipeDefinitionError: recipe, agents, tool or variables are unusable
        """
        errors = recipe.validate() + check_agents(recipe, self.agents)
        errors += loop_limit_errors(recipe, self.context.max_loop_iterations)
        if errors:
            raise RecipeDefinitionError(f"Recipe '{recipe.id}' is invalid:", errors, recipe_id=recipe.id)

        try:
            tool = canonical_tool(self.tool)
        except ValueError as e:
            raise RecipeDefinitionError(str(e), recipe_id=recipe.id) from e

        if recipe.tools and tool not in recipe.tools:
            self._show_progress(
                f"⚠️  Recipe '{recipe.id}' does not declare support for {tool} "
                f"(supported: {', '.join(recipe.tools)}); continuing",
                "warning",
            )

        return tool, resolve_variables(recipe, variables)

    async def run(self, recipe: Recipe, variables: Mapping[str, str] | None = None) -> RunResult:
        """
        Execute recipe steps in plan order, halting on the first failure.

        Args:
            recipe: Recipe to execute
            variables: Run-time values for {{name}} placeholders

        Returns:
            RunResult with per-step results

        Raises:
            RecipeDefinitionError: before any step runs, if the recipe cannot run
        """
        tool, values = self.prepare(recipe, variables)
        plan = expand_plan(recipe, self.context.max_loop_iterations)

        self.context.document_root.mkdir(parents=True, exist_ok=True)
        documents = DocumentStore(self.context.document_root)
        evaluator = ConditionEvaluator(self.context.target_dir, timeout=self.context.step_timeout or 300)
        resolver = CommandResolver(recipe, tool, self.agents, self.executable)
        executor = StepExecutor(
            recipe, resolver, documents, evaluator, self.context, self.launcher, self._show_progress
        )

        self._show_progress(f"🚀 Running recipe: {recipe.id} ({len(plan)} step executions, tool: {tool})")
        self._show_progress(f"📁 Recipe documents directory: {self.context.document_root}", "debug")

        result = RunResult(recipe_id=recipe.id, tool=tool, success=False)
        outputs: dict[str, str] = {}
        last_output = ""
        loop_done = False

        for entry in plan:
            if entry.in_loop and loop_done:
                continue
            if entry.in_loop and entry.step.id == recipe.loop.steps[0]:
                result.loop_iterations = entry.iteration
                self._show_progress(f"🔁 Loop iteration {entry.iteration}/{entry.iterations}")

            self._show_progress(f"  ▶️  [{entry.position + 1}/{len(plan)}] {entry.label} ({entry.step.agent})")

            try:
                step_result = await executor.execute(entry, values)
            except (StepExecutionError, ConditionFailedError, DocumentNotFoundError) as e:
                self._report_failure(recipe, entry, e)
                result.per_step_results.append(
                    StepResult(
                        step_id=entry.step.id,
                        iteration=entry.iteration,
                        output=getattr(e, "output", "") or "",
                        exit_code=getattr(e, "exit_code", None) or 1,
                        error=str(e),
                    )
                )
                result.failed_step = entry.step.id
                result.error = str(e)
                return result

            result.per_step_results.append(step_result)
            if not step_result.skipped:
                outputs[entry.step.id] = step_result.output
                last_output = step_result.output
            if step_result.output:
                self._show_progress(step_result.output.rstrip("\n"))

            condition = recipe.loop.condition if recipe.loop else None
            if entry.closes_iteration and condition is not None:
                source = outputs.get(condition.step, "") if condition.step else last_output
                if await evaluator.loop_should_exit(condition, source):
                    self._show_progress(f"✓ Loop condition met after iteration {entry.iteration}, exiting loop")
                    loop_done = True

        result.success = True
        self._show_progress(f"✅ Recipe completed: {recipe.id}")
        return result

    def _report_failure(self, recipe: Recipe, entry: PlanEntry, error: Exception) -> None:
        if isinstance(error, ConditionFailedError):
            self._show_progress(
                f"❌ Recipe '{recipe.id}', step '{entry.step.id}': condition failed: {error.check}\n"
                f"   Captured output:\n{error.output}",
                "error",
            )
        else:
            self._show_progress(f"❌ {error}", "error")
