from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ModelError(RuntimeError):
    """Raised when a model backend call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        role: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.role = role
        self.status_code = status_code
        self.retriable = retriable


class ModelUnreachableError(ModelError):
    """Raised when the backend cannot be reached or refuses the request."""


class ModelTimeoutError(ModelError):
    """Raised when a backend call exceeds its configured timeout."""


class MalformedResponseError(ModelError):
    """Raised when the backend replied with a payload that holds no usable text."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


class ModelBackend(ABC):
    name: str = "backend"

    @property
    def endpoint(self) -> str:
        return self.name

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str | None = None,
    ) -> str:
        """Send one prompt and return the generated text."""

    async def aclose(self) -> None:
        return None

    async def health_check(self) -> bool:
        """Report whether the backend answers; backends without a health endpoint say yes."""
        return True
