from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from agentic.backends.gateway import ModelRoleBinding
from agentic.cancel import CancelToken, RunCancelledError
from agentic.executor import (
    ExecutionOptions,
    ExecutionResult,
    ExecutionSupervisor,
    OutputChunk,
    PlanStatus,
)
from agentic.history import HistoryError, HistoryStore
from agentic.plan import Plan
from agentic.planner import PlanBuilder, PlanError
from agentic.safety import PlanVerdict, SafetyPolicy, VerdictKind, validate_plan
from agentic.templates import TemplateError, build_workflow_plan
from agentic.workflows import WorkflowNotFoundError, WorkflowStore

PipelineEventHook = Callable[[dict[str, Any]], None]
Confirmer = Callable[[Plan, PlanVerdict], Awaitable[bool]]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def safety_directories(execution: ExecutionOptions) -> tuple[str, str]:
    """Resolve the run's starting directory and home once, for the safety check."""
    working_directory = execution.working_directory or os.getcwd()
    return os.path.abspath(working_directory), os.path.expanduser("~")


class RunState(str, Enum):
    RECEIVED = "received"
    PLANNING = "planning"
    RESOLVING = "resolving"
    VALIDATING = "validating"
    CONFIRMATION_PENDING = "confirmation_pending"
    EXECUTING = "executing"
    RECORDED = "recorded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({RunState.RECORDED, RunState.FAILED, RunState.CANCELLED})

TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.RECEIVED: frozenset(
        {RunState.PLANNING, RunState.RESOLVING, RunState.FAILED, RunState.CANCELLED}
    ),
    RunState.PLANNING: frozenset({RunState.VALIDATING, RunState.FAILED, RunState.CANCELLED}),
    RunState.RESOLVING: frozenset({RunState.VALIDATING, RunState.FAILED, RunState.CANCELLED}),
    RunState.VALIDATING: frozenset(
        {
            RunState.CONFIRMATION_PENDING,
            RunState.EXECUTING,
            RunState.FAILED,
            RunState.CANCELLED,
        }
    ),
    RunState.CONFIRMATION_PENDING: frozenset(
        {RunState.EXECUTING, RunState.FAILED, RunState.CANCELLED}
    ),
    # A started execution is always recorded, whatever its outcome.
    RunState.EXECUTING: frozenset({RunState.RECORDED}),
    RunState.RECORDED: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.CANCELLED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class RunContext:
    """Everything a run reads, snapshotted when the run starts."""

    policy: SafetyPolicy = field(default_factory=SafetyPolicy)
    execution: ExecutionOptions = field(default_factory=ExecutionOptions)
    bindings: Mapping[str, ModelRoleBinding] = field(default_factory=dict)
    confirmation_timeout_seconds: float = 60.0


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    run_id: str
    kind: str
    source: str
    state: RunState
    reason: str = ""
    error: BaseException | None = None
    plan: Plan | None = None
    verdict: PlanVerdict | None = None
    result: ExecutionResult | None = None
    history_error: str | None = None
    started_at: str = ""
    ended_at: str = ""
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return (
            self.state is RunState.RECORDED
            and self.result is not None
            and self.result.succeeded
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "source": self.source,
            "state": self.state.value,
            "reason": self.reason,
            "error_type": type(self.error).__name__ if self.error else None,
            "commands": self.plan.commands if self.plan else [],
            "verdict": self.verdict.verdict.describe() if self.verdict else None,
            "result": self.result.to_dict() if self.result else None,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class PipelineStats:
    total_runs: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    total_duration_seconds: float = 0.0

    def record(self, outcome: PipelineOutcome) -> None:
        self.total_runs += 1
        self.total_duration_seconds += outcome.duration_seconds
        if outcome.succeeded:
            self.succeeded += 1
        elif outcome.state is RunState.CANCELLED or (
            outcome.result is not None and outcome.result.status is PlanStatus.CANCELLED
        ):
            self.cancelled += 1
        else:
            self.failed += 1

    @property
    def success_rate(self) -> float:
        if not self.total_runs:
            return 0.0
        return self.succeeded / self.total_runs

    @property
    def average_duration_seconds(self) -> float:
        if not self.total_runs:
            return 0.0
        return self.total_duration_seconds / self.total_runs

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_runs": self.total_runs,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "success_rate": round(self.success_rate, 3),
            "average_duration_seconds": round(self.average_duration_seconds, 3),
        }


class _Terminate(Exception):
    def __init__(self, state: RunState, reason: str, error: BaseException | None = None):
        super().__init__(reason)
        self.state = state
        self.reason = reason
        self.error = error


class PipelineRunHandle:
    """Caller-side view of one run: state, events, cancellation and the outcome."""

    def __init__(self, run_id: str, kind: str, source: str) -> None:
        self.run_id = run_id
        self.kind = kind
        self.source = source
        self.token = CancelToken()
        self._state = RunState.RECEIVED
        self._subscribers: list[Callable[[dict[str, Any]], None]] = []
        self._task: asyncio.Task[PipelineOutcome] | None = None
        self.on_subscriber_error: Callable[[dict[str, Any], Exception], None] | None = None

    @property
    def state(self) -> RunState:
        return self._state

    def cancel(self, reason: str = "cancelled by user") -> None:
        self.token.cancel(reason)

    def subscribe(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Receive ``state`` and ``output`` events published after this call."""
        self._subscribers.append(callback)

    async def await_result(self) -> PipelineOutcome:
        if self._task is None:
            raise RuntimeError(f"Run {self.run_id} was never started.")
        return await asyncio.shield(self._task)

    def _publish(self, event: dict[str, Any]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:
                if self.on_subscriber_error is not None:
                    self.on_subscriber_error(event, exc)

    def _publish_output(self, chunk: OutputChunk) -> None:
        self._publish(
            {
                "event": "output",
                "run_id": self.run_id,
                "step": chunk.step_index,
                "stream": chunk.stream,
                "data": chunk.data,
            }
        )

    def _transition(self, target: RunState, reason: str = "") -> None:
        if target not in TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal run transition {self._state.value} -> {target.value} for {self.run_id}"
            )
        previous = self._state
        self._state = target
        self._publish(
            {
                "event": "state",
                "run_id": self.run_id,
                "from": previous.value,
                "state": target.value,
                "reason": reason,
            }
        )


class PipelineController:
    """Drives queries and workflows from request to recorded result.

    Each run is a single asyncio task. Runs share nothing mutable except the
    history sink, and every run reads the context it was started with.
    """

    def __init__(
        self,
        context: RunContext,
        *,
        plan_builder: PlanBuilder | None = None,
        workflow_store: WorkflowStore | None = None,
        history: HistoryStore | None = None,
        confirmer: Confirmer | None = None,
        supervisor: ExecutionSupervisor | None = None,
        event_hook: PipelineEventHook | None = None,
    ) -> None:
        self.context = context
        self.plan_builder = plan_builder
        self.workflow_store = workflow_store
        self.history = history
        self.confirmer = confirmer
        self.supervisor = supervisor or ExecutionSupervisor(event_hook=event_hook)
        self.event_hook = event_hook
        self.stats = PipelineStats()

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def update_policy(self, policy: SafetyPolicy) -> None:
        """Swap the safety policy for runs started from now on."""
        self.context = replace(self.context, policy=policy)
        self._emit({"event": "policy_updated"})

    def run_query(self, text: str) -> PipelineRunHandle:
        handle = PipelineRunHandle(f"run-{uuid4().hex[:12]}", "query", text)
        return self._start(handle, lambda: self._plan_query(handle, text))

    def run_workflow(
        self,
        identifier: str,
        bindings: Mapping[str, Any] | None = None,
    ) -> PipelineRunHandle:
        handle = PipelineRunHandle(f"run-{uuid4().hex[:12]}", "workflow", identifier)
        return self._start(
            handle, lambda: self._resolve_workflow(handle, identifier, dict(bindings or {}))
        )

    def _start(
        self,
        handle: PipelineRunHandle,
        prepare: Callable[[], Awaitable[Plan]],
    ) -> PipelineRunHandle:
        context = self.context

        def _subscriber_failed(event: dict[str, Any], exc: Exception) -> None:
            self._emit(
                {
                    "event": "subscriber_failed",
                    "run_id": handle.run_id,
                    "for_event": event.get("event"),
                    "error": str(exc),
                }
            )

        handle.on_subscriber_error = _subscriber_failed
        handle._task = asyncio.get_running_loop().create_task(
            self._drive(handle, context, prepare)
        )
        return handle

    async def _plan_query(self, handle: PipelineRunHandle, text: str) -> Plan:
        handle._transition(RunState.PLANNING)
        if self.plan_builder is None:
            raise _Terminate(RunState.FAILED, "no planner is configured")
        return await handle.token.guard(self.plan_builder.build_plan(text))

    async def _resolve_workflow(
        self,
        handle: PipelineRunHandle,
        identifier: str,
        bindings: dict[str, Any],
    ) -> Plan:
        handle._transition(RunState.RESOLVING)
        if self.workflow_store is None:
            raise _Terminate(RunState.FAILED, "no workflow store is configured")
        template = self.workflow_store.get(identifier)
        return build_workflow_plan(template, bindings)

    @staticmethod
    def needs_confirmation(verdict: PlanVerdict, policy: SafetyPolicy) -> bool:
        if verdict.kind is VerdictKind.ALLOWED:
            return False
        # Only an explicit auto-confirm with confirmation switched off skips the prompt.
        return policy.require_confirmation or not policy.auto_confirm

    async def _confirm(
        self,
        handle: PipelineRunHandle,
        plan: Plan,
        verdict: PlanVerdict,
        context: RunContext,
    ) -> None:
        handle._transition(RunState.CONFIRMATION_PENDING, verdict.reason)
        if self.confirmer is None:
            raise _Terminate(RunState.CANCELLED, "confirmation required but no confirmer available")
        try:
            approved = await handle.token.guard(
                asyncio.wait_for(
                    self.confirmer(plan, verdict),
                    timeout=context.confirmation_timeout_seconds,
                )
            )
        except TimeoutError as exc:
            raise _Terminate(RunState.CANCELLED, "confirmation timed out") from exc
        if not approved:
            raise _Terminate(RunState.CANCELLED, "declined by user")

    async def _drive(
        self,
        handle: PipelineRunHandle,
        context: RunContext,
        prepare: Callable[[], Awaitable[Plan]],
    ) -> PipelineOutcome:
        started_at = _utcnow_iso()
        started = time.monotonic()
        plan: Plan | None = None
        verdict: PlanVerdict | None = None
        self._emit({"event": "run_start", "run_id": handle.run_id, "kind": handle.kind})

        def _finish(state: RunState, reason: str = "", **extra: Any) -> PipelineOutcome:
            if handle.state is not state:
                handle._transition(state, reason)
            outcome = PipelineOutcome(
                run_id=handle.run_id,
                kind=handle.kind,
                source=handle.source,
                state=state,
                reason=reason,
                plan=plan,
                verdict=verdict,
                started_at=started_at,
                ended_at=_utcnow_iso(),
                duration_seconds=time.monotonic() - started,
                **extra,
            )
            self.stats.record(outcome)
            self._emit(
                {
                    "event": "run_finish",
                    "run_id": handle.run_id,
                    "state": state.value,
                    "reason": reason,
                }
            )
            return outcome

        try:
            plan = await prepare()
            handle.token.raise_if_cancelled()

            handle._transition(RunState.VALIDATING)
            working_directory, home = safety_directories(context.execution)
            verdict = validate_plan(plan, context.policy, working_directory, home=home)
            if verdict.kind is VerdictKind.BLOCKED:
                raise _Terminate(RunState.FAILED, f"blocked: {verdict.reason} ({verdict.command})")
            if self.needs_confirmation(verdict, context.policy):
                await self._confirm(handle, plan, verdict, context)
            handle.token.raise_if_cancelled()
        except _Terminate as exc:
            return _finish(exc.state, exc.reason, error=exc.error)
        except RunCancelledError as exc:
            return _finish(RunState.CANCELLED, exc.reason, error=exc)
        except (PlanError, TemplateError, WorkflowNotFoundError) as exc:
            return _finish(RunState.FAILED, str(exc), error=exc)
        except Exception as exc:
            return _finish(RunState.FAILED, f"unexpected error: {exc}", error=exc)

        handle._transition(RunState.EXECUTING)
        try:
            result = await self.supervisor.run(
                plan,
                context.execution,
                cancel_token=handle.token,
                on_output=handle._publish_output,
            )
        except Exception as exc:
            self._emit(
                {"event": "execution_error", "run_id": handle.run_id, "error": str(exc)}
            )
            outcome = _finish(RunState.RECORDED, f"execution error: {exc}", error=exc)
            return await self._record(outcome)
        handle._transition(RunState.RECORDED, result.status.value)
        outcome = _finish(RunState.RECORDED, result.status.value, result=result)
        return await self._record(outcome)

    async def _record(self, outcome: PipelineOutcome) -> PipelineOutcome:
        if self.history is None:
            return outcome
        try:
            # The lock wait sleeps, so keep it off the event loop.
            await asyncio.to_thread(self.history.append, outcome.to_dict())
        except (HistoryError, OSError) as exc:
            self._emit(
                {"event": "history_failed", "run_id": outcome.run_id, "error": str(exc)}
            )
            return replace(outcome, history_error=str(exc))
        return outcome
