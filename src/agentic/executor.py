from __future__ import annotations

import asyncio
import os
import signal
import sys
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from agentic.cancel import CancelToken
from agentic.plan import Plan, ResolvedCommand

ExecutorEventHook = Callable[[dict[str, Any]], None]
READ_CHUNK_BYTES = 4096
DRAIN_TIMEOUT_SECONDS = 2.0
CWD_FILE_ENV = "AGENTIC_CWD_FILE"
NON_POSIX_SHELLS = {"powershell", "pwsh", "cmd"}
PLAN_SLACK_SECONDS = 0.05


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def default_shell() -> str:
    if sys.platform.startswith("win"):
        return "powershell"
    return "bash"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class PlanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class OutputChunk:
    step_index: int
    stream: str
    data: bytes

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class ExecutionOptions:
    max_execution_time: float = 300.0
    streaming: bool = True
    continue_on_error: bool = False
    working_directory: str | None = None
    shell: str = field(default_factory=default_shell)
    env: Mapping[str, str] | None = None
    track_directory: bool = True


@dataclass(frozen=True, slots=True)
class StepResult:
    sequence: int
    command: str
    status: StepStatus
    exit_code: int | None = None
    stdout: bytes = b""
    stderr: bytes = b""
    started_at: str | None = None
    ended_at: str | None = None
    duration_seconds: float = 0.0
    started: bool = True
    reason: str = ""

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "command": self.command,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout_text,
            "stderr": self.stderr_text,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "started": self.started,
            "reason": self.reason,
        }


class ExecutionError(RuntimeError):
    """Describes why a plan did not complete, keeping the output captured so far."""

    def __init__(self, message: str, *, step: StepResult) -> None:
        super().__init__(message)
        self.step_index = step.sequence
        self.command = step.command
        self.stdout = step.stdout
        self.stderr = step.stderr


class NonZeroExitError(ExecutionError):
    def __init__(self, message: str, *, step: StepResult) -> None:
        super().__init__(message, step=step)
        self.exit_code = step.exit_code


class StepTimeoutError(ExecutionError):
    pass


class PlanTimeoutError(ExecutionError):
    pass


class ExecutionCancelledError(ExecutionError):
    pass


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    status: PlanStatus
    steps: tuple[StepResult, ...]
    started_at: str
    ended_at: str
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is PlanStatus.COMPLETED

    @property
    def executed_steps(self) -> list[StepResult]:
        return [step for step in self.steps if step.started]

    @property
    def stdout(self) -> bytes:
        return b"".join(step.stdout for step in self.steps)

    def error(self) -> ExecutionError | None:
        for step in self.steps:
            if step.status is StepStatus.COMPLETED:
                continue
            if step.status is StepStatus.FAILED:
                return NonZeroExitError(
                    f"Step {step.sequence} failed with exit code {step.exit_code}: {step.command}",
                    step=step,
                )
            if step.status is StepStatus.TIMED_OUT:
                error_cls = PlanTimeoutError if step.reason == "plan timeout" else StepTimeoutError
                return error_cls(
                    f"Step {step.sequence} timed out ({step.reason}): {step.command}", step=step
                )
            return ExecutionCancelledError(
                f"Step {step.sequence} was cancelled ({step.reason}): {step.command}", step=step
            )
        return None

    def raise_for_status(self) -> None:
        error = self.error()
        if error is not None:
            raise error

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "steps": [step.to_dict() for step in self.steps],
        }


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (AttributeError, PermissionError, ProcessLookupError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


class ExecutionSupervisor:
    """Runs plan steps one at a time as child processes."""

    def __init__(self, event_hook: ExecutorEventHook | None = None) -> None:
        self.event_hook = event_hook
        self.status = PlanStatus.PENDING

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _build_script(self, command: str, options: ExecutionOptions) -> str:
        if not options.track_directory or Path(options.shell).stem.lower() in NON_POSIX_SHELLS:
            return command
        # Record the final directory so a later step starts where this one left off.
        return f"trap 'pwd > \"${CWD_FILE_ENV}\"' EXIT\n{command}"

    def _not_started(self, step: ResolvedCommand, status: StepStatus, reason: str) -> StepResult:
        return StepResult(
            sequence=step.sequence,
            command=step.command,
            status=status,
            started=False,
            reason=reason,
        )

    async def run(
        self,
        plan: Plan,
        options: ExecutionOptions | None = None,
        *,
        cancel_token: CancelToken | None = None,
        on_output: Callable[[OutputChunk], None] | None = None,
    ) -> ExecutionResult:
        options = options or ExecutionOptions()
        token = cancel_token or CancelToken()
        loop = asyncio.get_running_loop()
        started_at = _utcnow_iso()
        started = time.monotonic()
        plan_deadline = loop.time() + options.max_execution_time * len(plan.steps)
        working_directory = options.working_directory

        self.status = PlanStatus.RUNNING
        self._emit({"event": "plan_start", "source": plan.source, "steps": len(plan.steps)})

        results: list[StepResult] = []
        halt: tuple[StepStatus, str] | None = None
        for step in plan.steps:
            if halt is None and token.cancelled:
                halt = (StepStatus.CANCELLED, token.reason or "cancelled")
            if halt is not None:
                results.append(self._not_started(step, StepStatus.CANCELLED, halt[1]))
                continue

            remaining = plan_deadline - loop.time()
            if remaining <= 0:
                results.append(self._not_started(step, StepStatus.TIMED_OUT, "plan timeout"))
                halt = (StepStatus.CANCELLED, "plan timeout")
                continue

            step_timeout = min(options.max_execution_time, remaining)
            timeout_reason = (
                "plan timeout"
                if remaining < options.max_execution_time - PLAN_SLACK_SECONDS
                else "step timeout"
            )
            result, working_directory = await self._run_step(
                step,
                options,
                timeout=step_timeout,
                timeout_reason=timeout_reason,
                working_directory=working_directory,
                token=token,
                on_output=on_output,
            )
            results.append(result)

            if result.status is StepStatus.CANCELLED:
                halt = (StepStatus.CANCELLED, result.reason)
            elif result.status is not StepStatus.COMPLETED and not options.continue_on_error:
                halt = (StepStatus.CANCELLED, f"step {result.sequence} {result.status.value}")

        status = self._overall_status(results)
        self.status = status
        result = ExecutionResult(
            status=status,
            steps=tuple(results),
            started_at=started_at,
            ended_at=_utcnow_iso(),
            duration_seconds=time.monotonic() - started,
        )
        self._emit(
            {
                "event": "plan_finish",
                "source": plan.source,
                "status": status.value,
                "executed": len(result.executed_steps),
            }
        )
        return result

    @staticmethod
    def _overall_status(results: list[StepResult]) -> PlanStatus:
        statuses = {step.status for step in results}
        if any(step.status is StepStatus.CANCELLED and step.started for step in results):
            return PlanStatus.CANCELLED
        if StepStatus.TIMED_OUT in statuses:
            return PlanStatus.TIMED_OUT
        if StepStatus.FAILED in statuses:
            return PlanStatus.FAILED
        if StepStatus.CANCELLED in statuses:
            return PlanStatus.CANCELLED
        return PlanStatus.COMPLETED

    async def _run_step(
        self,
        step: ResolvedCommand,
        options: ExecutionOptions,
        *,
        timeout: float,
        timeout_reason: str,
        working_directory: str | None,
        token: CancelToken,
        on_output: Callable[[OutputChunk], None] | None,
    ) -> tuple[StepResult, str | None]:
        started_at = _utcnow_iso()
        started = time.monotonic()
        env = dict(os.environ)
        if options.env:
            env.update(options.env)

        with tempfile.TemporaryDirectory(prefix="agentic-step-") as scratch:
            cwd_file = Path(scratch) / "cwd"
            env[CWD_FILE_ENV] = str(cwd_file)
            self._emit(
                {
                    "event": "step_start",
                    "sequence": step.sequence,
                    "command": step.command,
                    "cwd": working_directory,
                    "timeout_seconds": round(timeout, 3),
                }
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    options.shell,
                    "-c",
                    self._build_script(step.command, options),
                    cwd=working_directory,
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as exc:
                result = StepResult(
                    sequence=step.sequence,
                    command=step.command,
                    status=StepStatus.FAILED,
                    stderr=f"Failed to spawn '{options.shell}': {exc}".encode(),
                    started_at=started_at,
                    ended_at=_utcnow_iso(),
                    duration_seconds=time.monotonic() - started,
                    reason="spawn failed",
                )
                self._emit_step_finish(result)
                return result, working_directory

            stdout = bytearray()
            stderr = bytearray()

            async def _pump(reader: asyncio.StreamReader | None, name: str, sink: bytearray) -> None:
                if reader is None:
                    return
                while True:
                    chunk = await reader.read(READ_CHUNK_BYTES)
                    if not chunk:
                        return
                    sink.extend(chunk)
                    if options.streaming and on_output is not None:
                        on_output(OutputChunk(step.sequence, name, chunk))

            completion = asyncio.gather(
                _pump(process.stdout, "stdout", stdout),
                _pump(process.stderr, "stderr", stderr),
                process.wait(),
            )
            cancel_waiter = asyncio.ensure_future(token.wait())
            status = StepStatus.COMPLETED
            reason = ""
            try:
                done, _pending = await asyncio.wait(
                    {completion, cancel_waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if completion in done:
                    completion.result()
                    if process.returncode != 0:
                        status = StepStatus.FAILED
                        reason = f"exit code {process.returncode}"
                else:
                    _terminate(process)
                    if cancel_waiter in done:
                        status = StepStatus.CANCELLED
                        reason = token.reason or "cancelled"
                    else:
                        status = StepStatus.TIMED_OUT
                        reason = timeout_reason
                    await self._drain(completion)
            finally:
                cancel_waiter.cancel()
                _terminate(process)

            if not options.streaming and on_output is not None:
                if stdout:
                    on_output(OutputChunk(step.sequence, "stdout", bytes(stdout)))
                if stderr:
                    on_output(OutputChunk(step.sequence, "stderr", bytes(stderr)))

            next_directory = working_directory
            if options.track_directory and cwd_file.exists():
                recorded = cwd_file.read_text(encoding="utf-8", errors="replace").strip()
                if recorded:
                    next_directory = recorded

        result = StepResult(
            sequence=step.sequence,
            command=step.command,
            status=status,
            exit_code=process.returncode,
            stdout=bytes(stdout),
            stderr=bytes(stderr),
            started_at=started_at,
            ended_at=_utcnow_iso(),
            duration_seconds=time.monotonic() - started,
            reason=reason,
        )
        self._emit_step_finish(result)
        return result, next_directory

    @staticmethod
    async def _drain(completion: asyncio.Future[Any]) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(completion), timeout=DRAIN_TIMEOUT_SECONDS)
        except TimeoutError:
            # A detached grandchild still holds the pipes open.
            completion.cancel()

    def _emit_step_finish(self, result: StepResult) -> None:
        self._emit(
            {
                "event": "step_finish",
                "sequence": result.sequence,
                "status": result.status.value,
                "exit_code": result.exit_code,
                "duration_seconds": round(result.duration_seconds, 3),
                "reason": result.reason,
            }
        )
