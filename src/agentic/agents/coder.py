from __future__ import annotations

import re

from agentic.agents.base import RoleAgent
from agentic.templates import split_statements

FENCE_PATTERN = re.compile(r"```(?:[\w-]+)?\n(.*?)```", re.DOTALL)
PREFIX_PATTERN = re.compile(r"^(?:(?:command|shell)\s*:|\$)\s*", re.IGNORECASE)


class CoderAgent(RoleAgent):
    role = "coder"
    prompt_file = "coder.md"
    fallback_prompt = """
You are a coding agent. Translate the plan step into one shell command.
Output only the command.
""".strip()

    def render_prompt(self, instruction: str) -> str:
        return f"Plan: {instruction}\nCommand:"

    @staticmethod
    def extract_commands(content: str) -> list[str]:
        text = content.strip()
        fenced = FENCE_PATTERN.search(text)
        if fenced:
            text = fenced.group(1).strip()
        commands: list[str] = []
        for statement in split_statements(text):
            line = PREFIX_PATTERN.sub("", statement.strip(), count=1).strip()
            if len(line) >= 2 and line[0] == line[-1] == "`":
                line = line.strip("`").strip()
            if line:
                commands.append(line)
        return commands
