from agentic.agents.base import AgentResponse, RoleAgent
from agentic.agents.coder import CoderAgent
from agentic.agents.planner import PlannerAgent

__all__ = ["AgentResponse", "CoderAgent", "PlannerAgent", "RoleAgent"]
