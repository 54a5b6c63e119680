"""Pass/fail predicates over captured step output."""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from .errors import RecipeDefinitionError
from .models import Check
from .models import LoopCondition
from .models import StepCondition

logger = logging.getLogger(__name__)

# Exposed to `command` checks so they can inspect what the step produced
OUTPUT_ENV_VAR = "RECIPE_STEP_OUTPUT"


@dataclass(frozen=True)
class CheckResult:
    passed: bool
    description: str


class ConditionEvaluator:
    """Evaluates step conditions and loop exit conditions.

    `command` checks run through the shell in the target directory; their
    exit code decides the outcome. Unknown check or condition types are
    configuration errors, never a silent pass.
    """

    def __init__(self, cwd: Path, timeout: float | None = 300):
        self.cwd = Path(cwd)
        self.timeout = timeout

    async def evaluate_check(self, check: Check, output: str) -> CheckResult:
        description = check.describe()
        if check.type == "contains":
            return CheckResult(passed=(check.value or "") in output, description=description)
        if check.type == "regex":
            matched = re.search(check.pattern or "", output, re.MULTILINE) is not None
            return CheckResult(passed=matched, description=description)
        if check.type == "command":
            exit_code = await self._run_command(check.cmd or "", output)
            return CheckResult(passed=exit_code == 0, description=f"{description} (exit code {exit_code})")
        if check.type == "user-approval":
            logger.warning("Bypassing user-approval check in automated run")
            return CheckResult(passed=True, description="user-approval (bypassed)")
        raise RecipeDefinitionError(f"Unsupported check type '{check.type}'")

    async def evaluate_step_condition(self, condition: StepCondition, output: str) -> CheckResult:
        """Judge a step's output against its condition."""
        if condition.type in ("always", "file-exists", "file_exists"):
            return CheckResult(passed=True, description=condition.type)
        if condition.type == "user-decision":
            logger.warning("Bypassing user-decision condition in automated run")
            return CheckResult(passed=True, description="user-decision (bypassed)")
        if condition.type == "on-success":
            if condition.check is None:
                return CheckResult(passed=True, description="on-success")
            return await self.evaluate_check(condition.check, output)
        if condition.type == "on-failure":
            if condition.check is None:
                raise RecipeDefinitionError("'on-failure' condition requires a check")
            result = await self.evaluate_check(condition.check, output)
            return CheckResult(passed=not result.passed, description=f"on-failure: not {result.description}")
        raise RecipeDefinitionError(f"Unsupported condition type '{condition.type}'")

    def should_skip(self, condition: StepCondition | None) -> bool:
        """True when a file-exists guard finds its file already present."""
        if condition is None or not condition.is_file_guard or condition.check is None:
            return False
        target = Path(condition.check.value or "")
        if not target.is_absolute():
            target = self.cwd / target
        return target.exists()

    async def loop_should_exit(self, condition: LoopCondition | None, output: str) -> bool:
        """True when the loop's exit condition is satisfied."""
        if condition is None or not condition.can_exit_early:
            return False
        result = await self.evaluate_check(condition.as_check(), output)
        return result.passed

    async def _run_command(self, cmd: str, output: str) -> int:
        env = os.environ.copy()
        env[OUTPUT_ENV_VAR] = output
        try:
            process = await asyncio.create_subprocess_shell(
                cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd),
                env=env,
            )
        except OSError as e:
            logger.error("Condition command could not start: %s (%s)", cmd, e)
            return 127

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error("Condition command timed out after %ss: %s", self.timeout, cmd)
            return 124
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            logger.debug("Condition command exited %s: %s%s", process.returncode, cmd, f"\n{stderr}" if stderr else "")
        return process.returncode or 0
