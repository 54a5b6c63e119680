"""
Command builders for the supported agent CLI families.

Each target tool belongs to exactly one family:

- interactive-piped: the prompt is written to the tool's stdin
  (claude-code: ``claude --print``)
- flag-rich-autonomous: automation is driven by discrete CLI flags built
  from the recipe's toolOptions (copilot-cli: ``copilot -p``)
- manual-instruction: no non-interactive entry point; the builder produces
  an instruction block for a human (cursor)
"""

import logging
import shlex
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any
from typing import Literal

from .conversation import ConversationHandle

logger = logging.getLogger(__name__)


class ToolFamily(str, Enum):
    """Supported CLI automation surfaces"""

    INTERACTIVE_PIPED = "interactive-piped"
    FLAG_RICH_AUTONOMOUS = "flag-rich-autonomous"
    MANUAL_INSTRUCTION = "manual-instruction"


@dataclass(frozen=True)
class Invocation:
    """A concrete, backend-neutral tool invocation.

    `argv` holds the executable and every flag but never the prompt itself;
    how the prompt reaches the tool is described by `prompt_via`. This lets
    the live runner and the script emitter share one command line and differ
    only in how the prompt text is supplied.
    """

    tool: str
    family: ToolFamily
    agent_id: str
    argv: list[str] = field(default_factory=list)
    prompt_via: Literal["stdin", "argument", "none"] = "stdin"
    prompt_flag: str | None = None
    prompt_prefix: str = ""

    @property
    def automated(self) -> bool:
        return self.family != ToolFamily.MANUAL_INSTRUCTION

    def prompt_for(self, task: str) -> str:
        return self.prompt_prefix + task

    def command_line(self, prompt: str) -> list[str]:
        """Full argv for live execution."""
        if self.prompt_via == "argument" and self.prompt_flag:
            return [*self.argv, self.prompt_flag, prompt]
        return list(self.argv)

    def render(self) -> str:
        """Shell-quoted command line without the prompt, for logs and scripts."""
        return shlex.join(self.argv)

    def instruction(self, prompt: str) -> str:
        """Human-readable instruction block for the manual family."""
        return (
            f"Manual step: open {self.tool} and run the following as @{self.agent_id}\n"
            f"{'-' * 60}\n{prompt}\n{'-' * 60}"
        )


class CommandBuilder(ABC):
    """Maps an abstract agent request onto one tool's command line."""

    family: ToolFamily

    def __init__(self, tool: str, executable: str | None = None):
        self.tool = tool
        self.executable = executable

    def options_for(self, tool_options: dict[str, Any] | None) -> dict[str, Any]:
        """toolOptions for this tool, looked up by tool name then by family name."""
        tool_options = tool_options or {}
        options = tool_options.get(self.tool)
        if options is None:
            options = tool_options.get(self.family.value)
        return options or {}

    @abstractmethod
    def build(
        self,
        agent_id: str,
        agent_text: str,
        handle: ConversationHandle,
        tool_options: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> Invocation:
        """Invocation for one step of `agent_id` within the given conversation."""


class InteractivePipedBuilder(CommandBuilder):
    """Prompt piped to stdin; a continuation flag when the conversation is active.

    toolOptions map to claude's permission flags: allowedTools and
    disallowedTools become comma-joined --allowed-tools/--disallowed-tools,
    and a tool listed in both is only disallowed.
    """

    family = ToolFamily.INTERACTIVE_PIPED

    def permission_flags(self, options: dict[str, Any]) -> list[str]:
        flags = []
        disallowed = [str(t) for t in _as_list(options.get("disallowedTools"))]
        allowed = []
        for tool in _as_list(options.get("allowedTools")):
            if str(tool) in disallowed:
                logger.info("Omitting %s from --allowed-tools: also listed in disallowedTools", tool)
                continue
            allowed.append(str(tool))
        if allowed:
            flags.extend(["--allowed-tools", ",".join(allowed)])
        if disallowed:
            flags.extend(["--disallowed-tools", ",".join(disallowed)])
        if options.get("allowAllTools"):
            flags.append("--allow-all-tools")
        return flags

    def build(self, agent_id, agent_text, handle, tool_options=None, model=None):
        argv = [self.executable or "claude", "--print"]
        if handle.continuing:
            argv.append("--continue")
        if model:
            argv.extend(["--model", model])
        argv.extend(self.permission_flags(self.options_for(tool_options)))
        if agent_text:
            argv.extend(["--append-system-prompt", agent_text])
        return Invocation(
            tool=self.tool,
            family=self.family,
            agent_id=agent_id,
            argv=argv,
            prompt_via="stdin",
        )


class FlagRichAutonomousBuilder(CommandBuilder):
    """Translates toolOptions into discrete automation flags.

    Deny-list entries always win: a tool named in both allowTools and
    denyTools is never emitted as --allow-tool.
    """

    family = ToolFamily.FLAG_RICH_AUTONOMOUS

    def automation_flags(self, options: dict[str, Any]) -> list[str]:
        flags = []
        deny = [str(t) for t in _as_list(options.get("denyTools"))]
        if options.get("allowAllTools"):
            flags.append("--allow-all-tools")
        if options.get("allowAllPaths"):
            flags.append("--allow-all-paths")
        if options.get("disallowTempDir"):
            flags.append("--disallow-temp-dir")
        for directory in _as_list(options.get("addDirs")):
            flags.extend(["--add-dir", str(directory)])
        for allowed in _as_list(options.get("allowTools")):
            if str(allowed) in deny:
                logger.info("Omitting --allow-tool %s: also listed in denyTools", allowed)
                continue
            flags.extend(["--allow-tool", str(allowed)])
        for denied in deny:
            flags.extend(["--deny-tool", denied])
        return flags

    def build(self, agent_id, agent_text, handle, tool_options=None, model=None):
        argv = [self.executable or "copilot"]
        if handle.continuing:
            argv.append("--continue")
        if model:
            argv.extend(["--model", model])
        argv.extend(self.automation_flags(self.options_for(tool_options)))
        return Invocation(
            tool=self.tool,
            family=self.family,
            agent_id=agent_id,
            argv=argv,
            prompt_via="argument",
            prompt_flag="-p",
            prompt_prefix=f"{agent_text}\n\n---\n\n" if agent_text else "",
        )


class ManualInstructionBuilder(CommandBuilder):
    """No automation API: the invocation is an instruction for a human."""

    family = ToolFamily.MANUAL_INSTRUCTION

    def build(self, agent_id, agent_text, handle, tool_options=None, model=None):
        return Invocation(
            tool=self.tool,
            family=self.family,
            agent_id=agent_id,
            argv=[],
            prompt_via="none",
            prompt_prefix=f"@{agent_id} ",
        )


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


TOOL_BUILDERS: dict[str, type[CommandBuilder]] = {
    "claude-code": InteractivePipedBuilder,
    "copilot-cli": FlagRichAutonomousBuilder,
    "cursor": ManualInstructionBuilder,
}

TOOL_ALIASES = {
    "claude": "claude-code",
    "copilot": "copilot-cli",
}


def canonical_tool(tool: str) -> str:
    """Resolve aliases; raises ValueError for unsupported tools."""
    name = TOOL_ALIASES.get(tool, tool)
    if name not in TOOL_BUILDERS:
        supported = ", ".join(sorted(TOOL_BUILDERS))
        raise ValueError(f"Unsupported tool '{tool}' (supported: {supported})")
    return name


def get_command_builder(tool: str, executable: str | None = None) -> CommandBuilder:
    name = canonical_tool(tool)
    return TOOL_BUILDERS[name](name, executable)
