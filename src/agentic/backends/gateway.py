from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from agentic.backends.base import ModelBackend, ModelError, ModelTimeoutError

ModelEventHook = Callable[[dict[str, Any]], None]
ROLES = ("planner", "coder", "fallback")


@dataclass(frozen=True, slots=True)
class ModelRoleBinding:
    role: str
    backend: str
    model: str
    timeout_seconds: float = 30.0


class ModelGateway:
    """Routes role-addressed completions to configured backends.

    One call is one request/response exchange bounded by the role's timeout.
    Retry and fallback belong to the caller.
    """

    def __init__(
        self,
        bindings: Mapping[str, ModelRoleBinding],
        backends: Mapping[str, ModelBackend],
        event_hook: ModelEventHook | None = None,
    ) -> None:
        missing = sorted(
            {binding.backend for binding in bindings.values()} - set(backends.keys())
        )
        if missing:
            raise ValueError("No backend registered for: " + ", ".join(missing))
        self.bindings = dict(bindings)
        self.backends = dict(backends)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def binding(self, role: str) -> ModelRoleBinding:
        try:
            return self.bindings[role]
        except KeyError as exc:
            raise ModelError(
                f"No model is bound to role '{role}'.", role=role, retriable=False
            ) from exc

    def endpoint(self, role: str) -> str:
        binding = self.binding(role)
        return self.backends[binding.backend].endpoint

    async def complete(
        self,
        role: str,
        prompt: str,
        timeout: float | None = None,
        *,
        system_prompt: str | None = None,
    ) -> str:
        binding = self.binding(role)
        backend = self.backends[binding.backend]
        deadline = binding.timeout_seconds if timeout is None else timeout
        self._emit(
            {
                "event": "model_call_start",
                "role": role,
                "backend": binding.backend,
                "model": binding.model,
                "timeout_seconds": deadline,
            }
        )
        started = time.monotonic()
        try:
            text = await asyncio.wait_for(
                backend.complete(prompt, model=binding.model, system_prompt=system_prompt),
                timeout=deadline,
            )
        except TimeoutError as exc:
            error = ModelTimeoutError(
                f"Model call for role '{role}' timed out after {deadline:.1f}s",
                backend=binding.backend,
                role=role,
            )
            self._emit_failure(role, binding, error)
            raise error from exc
        except ModelError as exc:
            exc.role = exc.role or role
            self._emit_failure(role, binding, exc)
            raise
        self._emit(
            {
                "event": "model_call_success",
                "role": role,
                "backend": binding.backend,
                "model": binding.model,
                "elapsed_seconds": round(time.monotonic() - started, 3),
                "chars": len(text),
            }
        )
        return text

    def _emit_failure(self, role: str, binding: ModelRoleBinding, error: ModelError) -> None:
        self._emit(
            {
                "event": "model_call_failed",
                "role": role,
                "backend": binding.backend,
                "model": binding.model,
                "error": str(error),
                "error_type": type(error).__name__,
                "retriable": error.retriable,
            }
        )

    async def aclose(self) -> None:
        for backend in self.backends.values():
            await backend.aclose()
