"""Agent registry: resolves a step's agent id to persona text and rules."""

import logging
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentProfile:
    """Resolved agent: persona text plus the merged rule list."""

    id: str
    persona: str = ""
    rules: list[str] = field(default_factory=list)

    def render(self) -> str:
        """Agent text handed to command builders."""
        parts = [f"You are acting as the `{self.id}` agent."]
        if self.persona.strip():
            parts.append(self.persona.strip())
        if self.rules:
            parts.append("## Rules\n" + "\n".join(f"- {rule}" for rule in self.rules))
        return "\n\n".join(parts)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentProfile":
        prompt = data.get("prompt")
        persona = data.get("persona")
        if not persona and isinstance(prompt, dict):
            persona = prompt.get("system")
        if not persona:
            persona = data.get("purpose", "")

        rules = []
        for rule in data.get("rules") or []:
            if isinstance(rule, dict):
                text = rule.get("description") or rule.get("rule") or rule.get("id")
                if text:
                    rules.append(str(text))
            elif rule:
                rules.append(str(rule))

        return cls(id=str(data["id"]), persona=str(persona or ""), rules=rules)


class AgentRegistry:
    """Lookup of agent profiles by id."""

    def __init__(self, agents: dict[str, AgentProfile] | None = None):
        self._agents: dict[str, AgentProfile] = dict(agents or {})

    @classmethod
    def from_directory(cls, agents_dir: Path) -> "AgentRegistry":
        """Load every agent YAML file (*.yml, *.yaml) that declares an id."""
        registry = cls()
        if not agents_dir.is_dir():
            logger.warning("Agents directory not found: %s", agents_dir)
            return registry

        for path in sorted([*agents_dir.rglob("*.yml"), *agents_dir.rglob("*.yaml")]):
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
            if not isinstance(data, dict) or "id" not in data:
                logger.debug("Skipping %s: not an agent definition", path)
                continue
            registry.register(AgentProfile.from_dict(data))
        return registry

    def register(self, profile: AgentProfile) -> None:
        self._agents[profile.id] = profile

    def resolve(self, agent_id: str) -> AgentProfile:
        """Return the agent profile, raising KeyError if the id is unknown."""
        try:
            return self._agents[agent_id]
        except KeyError:
            raise KeyError(f"Unknown agent: {agent_id}") from None

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def ids(self) -> list[str]:
        return sorted(self._agents)
