"""Tests for recipe parsing and validation."""

from pathlib import Path

import pytest
from conftest import make_recipe

from recipe_runner.errors import RecipeDefinitionError
from recipe_runner.models import LoopCondition
from recipe_runner.models import Recipe
from recipe_runner.models import load_recipe

RECIPE_YAML = """
id: feature-flow
version: "1.2.0"
description: Analyze, plan and implement a feature
tags: [feature, workflow]
tools: [claude-code, copilot-cli]
conversationStrategy: continue
variables:
  feature: ""
  branch: main
toolOptions:
  copilot-cli:
    allowAllTools: true
steps:
  - id: analyze
    agent: analyst
    task: Analyze {{feature}} on {{branch}}
    outputDocument: .recipe-docs/analysis.md
  - id: implement
    agent: developer
    task: Implement {{feature}}
    includeDocuments: [.recipe-docs/analysis.md]
    continueConversation: false
    condition:
      type: on-success
      check:
        type: contains
        value: DONE
loop:
  steps: [implement]
  maxIterations: 2
metadata:
  author: platform-team
"""


class TestRecipeParsing:
    """Tests for Recipe.from_yaml and from_dict."""

    def test_from_yaml_maps_camel_case_fields(self, temp_dir: Path):
        path = temp_dir / "feature-flow.yaml"
        path.write_text(RECIPE_YAML)

        recipe = Recipe.from_yaml(path)

        assert recipe.id == "feature-flow"
        assert recipe.conversation_strategy == "continue"
        assert recipe.tools == ["claude-code", "copilot-cli"]
        assert recipe.tool_options["copilot-cli"] == {"allowAllTools": True}
        assert recipe.variables == {"feature": "", "branch": "main"}
        assert recipe.metadata == {"author": "platform-team"}

        analyze, implement = recipe.steps
        assert analyze.output_document == ".recipe-docs/analysis.md"
        assert implement.include_documents == [".recipe-docs/analysis.md"]
        assert implement.continue_conversation is False
        assert implement.condition.check.value == "DONE"
        assert recipe.loop.steps == ["implement"]
        assert recipe.loop.max_iterations == 2
        assert recipe.validate() == []

    def test_step_defaults(self):
        recipe = make_recipe()
        step = recipe.steps[0]
        assert step.continue_conversation is True
        assert step.include_documents == []
        assert step.output_document is None
        assert step.condition is None
        assert recipe.conversation_strategy == "separate"

    def test_loop_defaults_to_three_iterations(self):
        recipe = make_recipe(loop={"steps": ["step-1"]})
        assert recipe.loop.max_iterations == 3

    def test_unknown_step_field_rejected(self):
        with pytest.raises(ValueError, match="unknown field"):
            make_recipe(steps=[{"id": "s1", "agent": "a", "task": "t", "prompt": "x"}])

    def test_unknown_recipe_field_rejected(self):
        with pytest.raises(ValueError, match="unknown field"):
            make_recipe(stages=[])

    def test_missing_file(self, temp_dir: Path):
        with pytest.raises(FileNotFoundError):
            Recipe.from_yaml(temp_dir / "missing.yaml")

    def test_loop_condition_accepts_nested_check(self):
        condition = LoopCondition.from_dict({"check": {"type": "contains", "value": "APPROVED"}, "step": "review"})
        assert condition.type == "contains"
        assert condition.value == "APPROVED"
        assert condition.step == "review"


class TestRecipeValidation:
    """Tests for Recipe.validate."""

    def test_missing_required_fields(self):
        recipe = Recipe(id="", version="", description="", steps=[])
        errors = recipe.validate()
        assert "Recipe missing required field: id" in errors
        assert "Recipe missing required field: version" in errors
        assert "Recipe missing required field: description" in errors
        assert "Recipe must have at least one step" in errors

    @pytest.mark.parametrize("version", ["v1.0.0", "1.x", "1.0.0.0", "latest"])
    def test_invalid_versions(self, version):
        assert any("version" in e for e in make_recipe(version=version).validate())

    def test_loop_references_unknown_step(self):
        recipe = make_recipe(loop={"steps": ["step-1", "ghost"], "maxIterations": 2})
        assert "loop references unknown step 'ghost'" in recipe.validate()

    def test_loop_max_iterations_must_be_positive(self):
        recipe = make_recipe(loop={"steps": ["step-1"], "maxIterations": 0})
        assert any("maxIterations" in e for e in recipe.validate())

    def test_unsupported_check_type(self):
        recipe = make_recipe(
            steps=[
                {
                    "id": "s1",
                    "agent": "a",
                    "task": "t",
                    "condition": {"type": "on-success", "check": {"type": "json-path", "value": "$.ok"}},
                }
            ]
        )
        assert any("unsupported check type 'json-path'" in e for e in recipe.validate())

    def test_unsupported_condition_type(self):
        recipe = make_recipe(steps=[{"id": "s1", "agent": "a", "task": "t", "condition": {"type": "sometimes"}}])
        assert any("unsupported condition type" in e for e in recipe.validate())

    def test_invalid_regex_reported(self):
        recipe = make_recipe(
            steps=[
                {
                    "id": "s1",
                    "agent": "a",
                    "task": "t",
                    "condition": {"type": "on-success", "check": {"type": "regex", "pattern": "(unclosed"}},
                }
            ]
        )
        assert any("invalid regex" in e for e in recipe.validate())

    def test_document_paths_must_stay_relative(self):
        recipe = make_recipe(steps=[{"id": "s1", "agent": "a", "task": "t", "outputDocument": "../escape.md"}])
        assert any("document path" in e for e in recipe.validate())

    def test_duplicate_step_ids(self):
        recipe = make_recipe(
            steps=[
                {"id": "s1", "agent": "a", "task": "t"},
                {"id": "s1", "agent": "a", "task": "t"},
            ]
        )
        assert "Duplicate step IDs: s1" in recipe.validate()

    @pytest.mark.parametrize("step_id", ['say "hi"', "x$(touch injected)", "it's", "two words", "naïve"])
    def test_step_id_charset(self, step_id):
        recipe = make_recipe(steps=[{"id": step_id, "agent": "a", "task": "t"}])
        assert f"Step '{step_id}': id must be alphanumeric with hyphens/underscores" in recipe.validate()

    def test_step_ids_sharing_an_output_variable(self):
        recipe = make_recipe(
            steps=[
                {"id": "code-review", "agent": "a", "task": "t"},
                {"id": "code_review", "agent": "a", "task": "t"},
            ]
        )
        assert any("'code-review' and 'code_review'" in e for e in recipe.validate())

    def test_agent_must_be_single_line(self):
        recipe = make_recipe(steps=[{"id": "s1", "agent": "dev\necho hi", "task": "t"}])
        assert "Step 's1': agent must be a single line of printable text" in recipe.validate()

    def test_agent_may_contain_punctuation(self):
        recipe = make_recipe(steps=[{"id": "s1", "agent": "dev\"x'$(y)", "task": "t"}])
        assert recipe.validate() == []

    def test_file_exists_guard_requires_path(self):
        recipe = make_recipe(steps=[{"id": "s1", "agent": "a", "task": "t", "condition": {"type": "file_exists"}}])
        assert any("requires check.value" in e for e in recipe.validate())

    def test_loop_condition_step_must_be_in_loop(self):
        recipe = make_recipe(
            steps=[{"id": "a", "agent": "x", "task": "t"}, {"id": "b", "agent": "x", "task": "t"}],
            loop={"steps": ["a"], "condition": {"type": "contains", "value": "OK", "step": "b"}},
        )
        assert any("not part of the loop" in e for e in recipe.validate())


class TestReferencedVariables:
    def test_collects_declared_and_task_references(self):
        recipe = make_recipe(
            variables={"feature": "", "branch": "{{base}}-work"},
            steps=[
                {"id": "s1", "agent": "a", "task": "{{feature}} {{owner}}"},
                {"id": "s2", "agent": "a", "task": "{{scope}}", "inputs": {"scope": "{{module}}"}},
            ],
        )
        assert recipe.referenced_variables() == ["feature", "branch", "base", "owner", "module"]


class TestLoadRecipe:
    def test_invalid_recipe_raises_definition_error(self, temp_dir: Path):
        path = temp_dir / "bad.yaml"
        path.write_text("id: bad\nversion: '1.0'\ndescription: x\nsteps: []\n")
        with pytest.raises(RecipeDefinitionError) as exc_info:
            load_recipe(path)
        assert "Recipe must have at least one step" in exc_info.value.errors

    def test_malformed_yaml_raises_definition_error(self, temp_dir: Path):
        path = temp_dir / "broken.yaml"
        path.write_text("id: [unclosed\n")
        with pytest.raises(RecipeDefinitionError, match="Invalid recipe file"):
            load_recipe(path)
