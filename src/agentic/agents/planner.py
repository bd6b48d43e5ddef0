from __future__ import annotations

import json
import re

from agentic.agents.base import RoleAgent

STEP_PATTERN = re.compile(r"^(?:[-*]|\d+[.)]|step\s+\d+[:.)])\s+(.+)$", re.IGNORECASE)
MAX_PLAN_STEPS = 24


class PlannerAgent(RoleAgent):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = """
You are a planning agent. Break the user's request into an ordered, numbered
list of plain-English actions, one per line. Do not write shell commands.
""".strip()

    def render_prompt(self, instruction: str) -> str:
        return f"User Request: {instruction}\nPlan:"

    @staticmethod
    def extract_steps(content: str) -> list[str]:
        text = content.strip()
        if text.startswith("```"):
            text = re.sub(r"^```[\w-]*\n?|```$", "", text, flags=re.MULTILINE).strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                steps = [str(item).strip() for item in parsed if str(item).strip()]
                return steps

        steps: list[str] = []
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            match = STEP_PATTERN.match(line)
            if match:
                steps.append(match.group(1).strip())
        if not steps and text:
            # Unstructured reply: treat each non-empty line as one action.
            steps = [
                line.strip()
                for line in text.splitlines()
                if line.strip() and not line.strip().lower().startswith("plan:")
            ]
        return steps
