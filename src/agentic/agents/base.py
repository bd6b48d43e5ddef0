from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from agentic.backends.gateway import ModelGateway


@dataclass(slots=True)
class AgentResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class RoleAgent:
    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a command line assistant."

    def __init__(self, gateway: ModelGateway) -> None:
        self.gateway = gateway
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("agentic.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def render_prompt(self, instruction: str) -> str:
        return instruction

    async def run(
        self,
        instruction: str,
        *,
        role: str | None = None,
        timeout: float | None = None,
    ) -> AgentResponse:
        """Ask the bound model; ``role`` overrides the agent's own role binding."""
        target_role = role or self.role
        content = await self.gateway.complete(
            target_role,
            self.render_prompt(instruction),
            timeout,
            system_prompt=self.system_prompt,
        )
        return AgentResponse(
            role=target_role,
            content=content.strip(),
            metadata={"instruction": instruction, "agent": self.role},
        )
