"""Tests for StepExecutor and RecipeRunner behavior."""

import logging
from pathlib import Path

import pytest
from conftest import FakeLauncher
from conftest import make_recipe

from recipe_runner.config import RunContext
from recipe_runner.config import RunnerConfig
from recipe_runner.errors import RecipeDefinitionError
from recipe_runner.executor import ProcessResult
from recipe_runner.executor import RecipeRunner
from recipe_runner.executor import truncate_output


def review_fix_recipe(max_iterations=3, condition=None):
    loop = {"steps": ["review", "fix"], "maxIterations": max_iterations}
    if condition is not None:
        loop["condition"] = condition
    return make_recipe(
        steps=[
            {"id": "review", "agent": "reviewer", "task": "Review the change", "outputDocument": "review.md"},
            {"id": "fix", "agent": "developer", "task": "Fix the findings", "includeDocuments": ["review.md"]},
        ],
        loop=loop,
    )


class TestDocumentFlow:
    """Document-first workflow between steps."""

    @pytest.mark.asyncio
    async def test_analyze_then_implement(self, context: RunContext, agents, temp_dir: Path):
        recipe = make_recipe(
            steps=[
                {"id": "analyze", "agent": "analyst", "task": "Analyze", "outputDocument": ".recipe-docs/a.md"},
                {
                    "id": "implement",
                    "agent": "developer",
                    "task": "Implement",
                    "includeDocuments": [".recipe-docs/a.md"],
                },
            ]
        )
        launcher = FakeLauncher(["The analysis: use a queue.\n", "implemented"])
        runner = RecipeRunner(context, "claude-code", agents=agents, launcher=launcher)

        result = await runner.run(recipe)

        assert result.success
        assert (temp_dir / ".recipe-docs" / "a.md").read_text() == "The analysis: use a queue.\n"
        implement = result.per_step_results[1]
        assert "The analysis: use a queue." in implement.task
        assert "### Document: `.recipe-docs/a.md`" in implement.task
        assert "The analysis: use a queue." in launcher.prompts()[1]

    @pytest.mark.asyncio
    async def test_missing_document_is_omitted_with_warning(self, context, launcher, caplog):
        recipe = make_recipe(
            steps=[{"id": "implement", "agent": "developer", "task": "Implement", "includeDocuments": ["plan.md"]}]
        )
        runner = RecipeRunner(context, "claude-code", launcher=launcher)

        with caplog.at_level(logging.WARNING):
            result = await runner.run(recipe)

        assert result.success
        task = result.per_step_results[0].task
        assert task == "Implement"
        assert "plan.md" not in task
        assert "{{" not in task
        assert any("plan.md" in r.message and "implement" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_missing_document_error_policy(self, temp_dir: Path, launcher):
        context = RunContext.for_target(temp_dir, RunnerConfig(missing_documents="error"))
        recipe = make_recipe(
            steps=[{"id": "implement", "agent": "developer", "task": "Implement", "includeDocuments": ["plan.md"]}]
        )

        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert not result.success
        assert result.failed_step == "implement"
        assert "plan.md" in result.error
        assert launcher.calls == []

    @pytest.mark.asyncio
    async def test_require_documents_on_step(self, context, launcher):
        recipe = make_recipe(
            steps=[
                {
                    "id": "implement",
                    "agent": "developer",
                    "task": "Implement",
                    "includeDocuments": ["plan.md"],
                    "requireDocuments": True,
                }
            ]
        )
        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)
        assert not result.success

    @pytest.mark.asyncio
    async def test_output_document_overwrites_previous_content(self, context, temp_dir: Path):
        (temp_dir / ".recipe-docs").mkdir()
        (temp_dir / ".recipe-docs" / "a.md").write_text("stale")
        recipe = make_recipe(steps=[{"id": "s", "agent": "analyst", "task": "t", "outputDocument": "a.md"}])

        await RecipeRunner(context, "claude", launcher=FakeLauncher(["fresh"])).run(recipe)

        assert (temp_dir / ".recipe-docs" / "a.md").read_text() == "fresh"

    @pytest.mark.asyncio
    async def test_output_document_named_at_end_of_task(self, context, launcher):
        recipe = make_recipe(
            steps=[{"id": "s", "agent": "analyst", "task": "Plan it", "outputDocument": ".recipe-docs/plan.md"}]
        )

        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert result.per_step_results[0].task == (
            "Plan it\n\n---\n\n**IMPORTANT**: Save your complete response to the file: `.recipe-docs/plan.md`"
        )
        assert launcher.prompts()[0] == result.per_step_results[0].task


class TestLoops:
    @pytest.mark.asyncio
    async def test_loop_without_condition_runs_max_iterations(self, context, launcher):
        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(review_fix_recipe(3))

        assert [r.step_id for r in result.per_step_results] == ["review", "fix"] * 3
        assert result.loop_iterations == 3

    @pytest.mark.asyncio
    async def test_loop_exits_when_review_approves(self, context):
        replies = iter(["Needs work", "fixed 1", "APPROVED", "fixed 2", "APPROVED", "fixed 3"])
        launcher = FakeLauncher(lambda argv, stdin: next(replies))
        recipe = review_fix_recipe(3, condition={"type": "contains", "value": "APPROVED", "step": "review"})

        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert result.success
        assert [r.step_id for r in result.per_step_results] == ["review", "fix", "review", "fix"]
        assert result.loop_iterations == 2
        assert len(launcher.calls) == 4

    @pytest.mark.asyncio
    async def test_loop_condition_defaults_to_latest_output(self, context):
        launcher = FakeLauncher(["review 1", "not yet", "review 2", "ALL FIXED"])
        recipe = review_fix_recipe(5, condition={"type": "contains", "value": "ALL FIXED"})

        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert len(result.per_step_results) == 4

    @pytest.mark.asyncio
    async def test_steps_after_loop_still_run(self, context, launcher):
        recipe = make_recipe(
            steps=[
                {"id": "plan", "agent": "analyst", "task": "Plan"},
                {"id": "build", "agent": "developer", "task": "Build"},
                {"id": "ship", "agent": "developer", "task": "Ship"},
            ],
            loop={"steps": ["build"], "maxIterations": 2},
        )
        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)
        assert [r.step_id for r in result.per_step_results] == ["plan", "build", "build", "ship"]

    @pytest.mark.asyncio
    async def test_loop_over_limit_rejected_before_any_step(self, context, launcher):
        recipe = make_recipe(steps=[{"id": "a", "agent": "x", "task": "t"}], loop={"steps": ["a"], "maxIterations": 25})

        with pytest.raises(RecipeDefinitionError, match="loop.maxIterations 25 exceeds the limit of 20"):
            await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)
        assert launcher.calls == []

    @pytest.mark.asyncio
    async def test_raised_limit_runs_every_iteration(self, temp_dir: Path, launcher):
        context = RunContext.for_target(temp_dir, RunnerConfig(max_loop_iterations=25))
        recipe = make_recipe(steps=[{"id": "a", "agent": "x", "task": "t"}], loop={"steps": ["a"], "maxIterations": 25})

        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert result.loop_iterations == 25
        assert len(launcher.calls) == 25


class TestFailures:
    """A failed command or condition halts the run."""

    @pytest.mark.asyncio
    async def test_non_zero_exit_halts(self, context):
        launcher = FakeLauncher([ProcessResult(stdout="", stderr="rate limited", exit_code=2), "never"])
        recipe = make_recipe(
            steps=[{"id": "a", "agent": "analyst", "task": "A"}, {"id": "b", "agent": "analyst", "task": "B"}]
        )

        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert not result.success
        assert result.failed_step == "a"
        assert len(launcher.calls) == 1
        assert "exit code 2" in result.error
        assert "test-recipe" in result.error
        assert result.per_step_results[-1].exit_code == 2

    @pytest.mark.asyncio
    async def test_condition_failure_halts(self, context, caplog):
        launcher = FakeLauncher(["tests failing", "never"])
        recipe = make_recipe(
            steps=[
                {
                    "id": "verify",
                    "agent": "developer",
                    "task": "Verify",
                    "condition": {"type": "on-success", "check": {"type": "contains", "value": "PASS"}},
                },
                {"id": "ship", "agent": "developer", "task": "Ship"},
            ]
        )

        with caplog.at_level(logging.ERROR):
            result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert not result.success
        assert result.failed_step == "verify"
        assert len(launcher.calls) == 1
        assert any("contains 'PASS'" in r.message and "tests failing" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_command_not_found(self, context):
        async def missing(argv, stdin, cwd, timeout):
            raise FileNotFoundError(argv[0])

        result = await RecipeRunner(context, "claude-code", launcher=missing).run(make_recipe())

        assert not result.success
        assert "command not found: claude" in result.error

    @pytest.mark.asyncio
    async def test_definition_errors_raise_before_any_step(self, context, launcher):
        recipe = make_recipe(steps=[{"id": "s", "agent": "analyst", "task": "{{feature}}"}])

        with pytest.raises(RecipeDefinitionError, match="feature"):
            await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)
        assert launcher.calls == []

    @pytest.mark.asyncio
    async def test_unknown_agent(self, context, agents, launcher):
        recipe = make_recipe(steps=[{"id": "s", "agent": "ghost", "task": "t"}])
        with pytest.raises(RecipeDefinitionError, match="unknown agent 'ghost'"):
            await RecipeRunner(context, "claude-code", agents=agents, launcher=launcher).run(recipe)

    @pytest.mark.asyncio
    async def test_unsupported_tool(self, context, launcher):
        with pytest.raises(RecipeDefinitionError, match="Unsupported tool"):
            await RecipeRunner(context, "emacs", launcher=launcher).run(make_recipe())


class TestInvocation:
    @pytest.mark.asyncio
    async def test_variables_and_inputs_substituted(self, context, launcher):
        recipe = make_recipe(
            variables={"feature": ""},
            steps=[
                {"id": "a", "agent": "analyst", "task": "Analyze {{feature}}"},
                {"id": "b", "agent": "analyst", "task": "Scope {{feature}} to {{area}}", "inputs": {"area": "api"}},
            ],
        )
        await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe, {"feature": "login"})

        assert launcher.prompts() == ["Analyze login", "Scope login to api"]

    @pytest.mark.asyncio
    async def test_copilot_gets_prompt_argument_and_flags(self, context, agents, launcher):
        recipe = make_recipe(toolOptions={"flag-rich-autonomous": {"allowAllTools": True}})
        await RecipeRunner(context, "copilot", agents=agents, launcher=launcher).run(recipe)

        argv = launcher.calls[0]["argv"]
        assert argv[:2] == ["copilot", "--allow-all-tools"]
        assert argv[-2] == "-p"
        assert argv[-1].endswith("Do the thing")
        assert "analyst" in argv[-1]
        assert launcher.calls[0]["stdin"] is None

    @pytest.mark.asyncio
    async def test_runs_in_target_dir_with_timeout(self, temp_dir: Path, launcher):
        context = RunContext.for_target(temp_dir, RunnerConfig(step_timeout=30))
        recipe = make_recipe(steps=[{"id": "s", "agent": "a", "task": "t", "timeout": 5}, {"id": "u", "agent": "a", "task": "t"}])

        await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert launcher.calls[0]["cwd"] == temp_dir.resolve()
        assert [c["timeout"] for c in launcher.calls] == [5, 30]

    @pytest.mark.asyncio
    async def test_manual_tool_is_advisory(self, context, launcher, temp_dir: Path):
        recipe = make_recipe(
            steps=[
                {
                    "id": "review",
                    "agent": "reviewer",
                    "task": "Review",
                    "outputDocument": "review.md",
                    "condition": {"type": "on-success", "check": {"type": "contains", "value": "APPROVED"}},
                }
            ]
        )
        messages = []
        runner = RecipeRunner(context, "cursor", launcher=launcher, display=lambda m, level: messages.append(m))

        result = await runner.run(recipe)

        assert result.success
        assert result.per_step_results[0].advisory
        assert launcher.calls == []
        assert not (temp_dir / ".recipe-docs" / "review.md").exists()
        assert any("@reviewer Review" in m for m in messages)

    @pytest.mark.asyncio
    async def test_file_guard_skips_step(self, context, launcher, temp_dir: Path):
        (temp_dir / "README.md").write_text("exists")
        recipe = make_recipe(
            steps=[
                {
                    "id": "docs",
                    "agent": "a",
                    "task": "Write README",
                    "condition": {"type": "file-exists", "check": {"value": "README.md"}},
                },
                {"id": "next", "agent": "a", "task": "Next"},
            ]
        )
        result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)

        assert result.per_step_results[0].skipped
        assert len(launcher.calls) == 1

    @pytest.mark.asyncio
    async def test_undeclared_tool_warns_and_proceeds(self, context, launcher, caplog):
        recipe = make_recipe(tools=["cursor"])
        with caplog.at_level(logging.WARNING):
            result = await RecipeRunner(context, "claude-code", launcher=launcher).run(recipe)
        assert result.success
        assert any("does not declare support" in r.message for r in caplog.records)


def test_truncate_output():
    assert truncate_output("short") == "short"
    long_text = "x" * 20_000
    truncated = truncate_output(long_text)
    assert len(truncated) < 11_000
    assert truncated.endswith("[... truncated]")
