from __future__ import annotations

from typing import Any

import httpx

from agentic.backends.base import (
    MalformedResponseError,
    ModelBackend,
    ModelTimeoutError,
    ModelUnreachableError,
)

DEFAULT_OLLAMA_HOST = "http://localhost:11434"


class OllamaBackend(ModelBackend):
    """Local inference server speaking the Ollama ``/api/generate`` protocol."""

    name = "ollama"

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_HOST,
        *,
        temperature: float | None = 0.7,
        max_tokens: int | None = 2048,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client
        self._owns_client = client is None

    @property
    def endpoint(self) -> str:
        return f"{self.name}:{self.base_url}"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Per-call deadlines are enforced by the gateway.
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    def build_payload(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if system_prompt:
            payload["system"] = system_prompt
        options: dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.max_tokens is not None:
            options["num_predict"] = self.max_tokens
        if options:
            payload["options"] = options
        return payload

    async def complete(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str | None = None,
    ) -> str:
        payload = self.build_payload(prompt, model=model, system_prompt=system_prompt)
        try:
            response = await self.client.post(f"{self.base_url}/api/generate", json=payload)
        except httpx.TimeoutException as exc:
            raise ModelTimeoutError(
                f"Ollama request to {self.base_url} timed out.", backend=self.name
            ) from exc
        except httpx.TransportError as exc:
            raise ModelUnreachableError(
                f"Ollama server at {self.base_url} is unreachable: {exc}", backend=self.name
            ) from exc

        if response.status_code >= 400:
            raise ModelUnreachableError(
                f"Ollama API error {response.status_code}: {response.text[:400]}",
                backend=self.name,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "Ollama response is not valid JSON.", backend=self.name
            ) from exc
        text = body.get("response") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise MalformedResponseError(
                "Ollama response has no 'response' text field.", backend=self.name
            )
        return text

    async def health_check(self) -> bool:
        try:
            response = await self.client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError:
            return False
        return response.is_success

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
