from __future__ import annotations

from collections.abc import Callable
from typing import Any

from agentic.agents import AgentResponse, CoderAgent, PlannerAgent, RoleAgent
from agentic.agents.planner import MAX_PLAN_STEPS
from agentic.backends.base import (
    ModelError,
    ModelTimeoutError,
    ModelUnreachableError,
)
from agentic.backends.gateway import ModelGateway
from agentic.plan import AD_HOC_ORIGIN, Plan, ResolvedCommand

PlanEventHook = Callable[[dict[str, Any]], None]
FALLBACK_ROLE = "fallback"


class PlanError(RuntimeError):
    """Raised when a natural-language query cannot be turned into a plan."""

    def __init__(
        self,
        message: str,
        *,
        query: str,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.query = query
        self.stage = stage


class EmptyPlanError(PlanError):
    """The planner produced no steps."""


class UnusablePlanError(PlanError):
    """A backend replied with something that cannot be used as a plan or command."""


class ExhaustedFallbackError(PlanError):
    """Both the primary role and the fallback role were unreachable or timed out."""


class PlanBuilder:
    """Two-stage synthesis: planner sub-intents, then one coder call per intent.

    An unreachable or timed-out role is retried exactly once against the
    fallback role. Malformed replies are never retried.
    """

    def __init__(
        self,
        planner: PlannerAgent,
        coder: CoderAgent,
        *,
        fallback_role: str = FALLBACK_ROLE,
        event_hook: PlanEventHook | None = None,
    ) -> None:
        self.planner = planner
        self.coder = coder
        self.fallback_role = fallback_role
        self.event_hook = event_hook

    @classmethod
    def from_gateway(
        cls,
        gateway: ModelGateway,
        event_hook: PlanEventHook | None = None,
    ) -> PlanBuilder:
        return cls(PlannerAgent(gateway), CoderAgent(gateway), event_hook=event_hook)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _ask(self, agent: RoleAgent, instruction: str, *, query: str) -> AgentResponse:
        stage = agent.role
        try:
            return await agent.run(instruction)
        except (ModelUnreachableError, ModelTimeoutError) as exc:
            self._emit(
                {
                    "event": "plan_fallback_start",
                    "stage": stage,
                    "fallback_role": self.fallback_role,
                    "error": str(exc),
                }
            )
            primary_error = exc
        except ModelError as exc:
            raise UnusablePlanError(
                f"The {stage} model returned an unusable response: {exc}",
                query=query,
                stage=stage,
            ) from exc

        try:
            response = await agent.run(instruction, role=self.fallback_role)
        except (ModelUnreachableError, ModelTimeoutError) as exc:
            self._emit(
                {
                    "event": "plan_fallback_failed",
                    "stage": stage,
                    "fallback_role": self.fallback_role,
                    "error": str(exc),
                }
            )
            raise ExhaustedFallbackError(
                f"The {stage} stage failed ({primary_error}) and the fallback model "
                f"failed as well ({exc}).",
                query=query,
                stage=stage,
            ) from exc
        except ModelError as exc:
            raise UnusablePlanError(
                f"The fallback model returned an unusable response for the {stage} stage: {exc}",
                query=query,
                stage=stage,
            ) from exc

        self._emit(
            {
                "event": "plan_fallback_success",
                "stage": stage,
                "fallback_role": self.fallback_role,
            }
        )
        return response

    async def plan_intents(self, query: str) -> list[str]:
        response = await self._ask(self.planner, query, query=query)
        intents = PlannerAgent.extract_steps(response.content)
        if not intents:
            raise EmptyPlanError(
                f"The planner produced no steps for: {query}", query=query, stage="planner"
            )
        if len(intents) > MAX_PLAN_STEPS:
            raise UnusablePlanError(
                f"The planner produced {len(intents)} steps; "
                f"at most {MAX_PLAN_STEPS} are accepted.",
                query=query,
                stage="planner",
            )
        return intents

    async def synthesize(self, intent: str, *, query: str) -> list[str]:
        response = await self._ask(self.coder, intent, query=query)
        commands = CoderAgent.extract_commands(response.content)
        if not commands:
            raise UnusablePlanError(
                f"The coder produced no shell command for step: {intent}",
                query=query,
                stage="coder",
            )
        return commands

    async def build_plan(self, query: str) -> Plan:
        if not query.strip():
            raise EmptyPlanError("The query is empty.", query=query, stage="planner")

        intents = await self.plan_intents(query)
        self._emit({"event": "plan_intents", "count": len(intents), "intents": intents})

        steps: list[ResolvedCommand] = []
        for intent in intents:
            for command in await self.synthesize(intent, query=query):
                steps.append(
                    ResolvedCommand(
                        command=command,
                        origin=AD_HOC_ORIGIN,
                        sequence=len(steps),
                        description=intent,
                    )
                )
        self._emit({"event": "plan_built", "steps": len(steps)})
        return Plan(steps=tuple(steps), source=query, kind="query", intents=tuple(intents))
