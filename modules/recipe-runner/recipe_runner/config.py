"""Runner configuration and the explicit per-run context."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from typing import Literal
from typing import Mapping

MissingDocumentPolicy = Literal["omit", "error"]

ENV_PREFIX = "RECIPE_RUNNER_"

DEFAULT_TOOL = "claude-code"
DEFAULT_DOCS_DIR = ".recipe-docs"
DEFAULT_LOGS_DIR = ".recipe-logs"
DEFAULT_SCRIPTS_DIR = ".output/scripts"
DEFAULT_MAX_LOOP_ITERATIONS = 20


@dataclass
class RunnerConfig:
    """Settings shared by the CLI, the runner and the script emitter."""

    recipes_dir: Path = Path("recipes")
    agents_dir: Path = Path("agents")
    default_tool: str = DEFAULT_TOOL
    docs_dir_name: str = DEFAULT_DOCS_DIR
    logs_dir_name: str = DEFAULT_LOGS_DIR
    scripts_dir: Path = Path(DEFAULT_SCRIPTS_DIR)
    missing_documents: MissingDocumentPolicy = "omit"
    max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS
    step_timeout: float | None = None

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any] | None = None) -> "RunnerConfig":
        """Build config from a plain mapping, falling back to defaults for absent keys."""
        config = config or {}
        step_timeout = config.get("step_timeout")
        return cls(
            recipes_dir=Path(config.get("recipes_dir", "recipes")).expanduser(),
            agents_dir=Path(config.get("agents_dir", "agents")).expanduser(),
            default_tool=str(config.get("default_tool", DEFAULT_TOOL)),
            docs_dir_name=str(config.get("docs_dir_name", DEFAULT_DOCS_DIR)),
            logs_dir_name=str(config.get("logs_dir_name", DEFAULT_LOGS_DIR)),
            scripts_dir=Path(config.get("scripts_dir", DEFAULT_SCRIPTS_DIR)).expanduser(),
            missing_documents=config.get("missing_documents", "omit"),
            max_loop_iterations=int(config.get("max_loop_iterations", DEFAULT_MAX_LOOP_ITERATIONS)),
            step_timeout=float(step_timeout) if step_timeout not in (None, "") else None,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RunnerConfig":
        """Build config from RECIPE_RUNNER_* environment variables."""
        environ = os.environ if environ is None else environ
        keys = {
            "RECIPES_DIR": "recipes_dir",
            "AGENTS_DIR": "agents_dir",
            "DEFAULT_TOOL": "default_tool",
            "DOCS_DIR": "docs_dir_name",
            "LOGS_DIR": "logs_dir_name",
            "SCRIPTS_DIR": "scripts_dir",
            "MISSING_DOCUMENTS": "missing_documents",
            "MAX_LOOP_ITERATIONS": "max_loop_iterations",
            "STEP_TIMEOUT": "step_timeout",
        }
        mapping = {
            key: environ[ENV_PREFIX + suffix] for suffix, key in keys.items() if ENV_PREFIX + suffix in environ
        }
        return cls.from_mapping(mapping)

    def validate(self) -> list[str]:
        """Validate configuration values."""
        errors = []
        if self.missing_documents not in ("omit", "error"):
            errors.append(f"missing_documents must be 'omit' or 'error', got '{self.missing_documents}'")
        if self.max_loop_iterations < 1:
            errors.append(f"max_loop_iterations must be >= 1, got {self.max_loop_iterations}")
        if self.step_timeout is not None and self.step_timeout <= 0:
            errors.append(f"step_timeout must be positive, got {self.step_timeout}")
        for name in ("docs_dir_name", "logs_dir_name"):
            value = getattr(self, name)
            if not value or Path(value).is_absolute() or ".." in Path(value).parts:
                errors.append(f"{name} must be a relative directory name, got '{value}'")
        return errors


@dataclass
class RunContext:
    """Everything a run needs to know about where it happens.

    The runner never consults the process working directory; documents,
    logs and child processes are all rooted here.
    """

    target_dir: Path
    document_root: Path
    log_root: Path
    missing_documents: MissingDocumentPolicy = "omit"
    step_timeout: float | None = None
    max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS

    @classmethod
    def for_target(cls, target_dir: Path, config: RunnerConfig | None = None) -> "RunContext":
        """Derive the document and log roots for a target project directory."""
        config = config or RunnerConfig()
        target_dir = Path(target_dir).resolve()
        return cls(
            target_dir=target_dir,
            document_root=target_dir / config.docs_dir_name,
            log_root=target_dir / config.logs_dir_name,
            missing_documents=config.missing_documents,
            step_timeout=config.step_timeout,
            max_loop_iterations=config.max_loop_iterations,
        )
