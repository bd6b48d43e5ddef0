from __future__ import annotations

from typing import Any

import httpx

from agentic.backends.base import (
    MalformedResponseError,
    ModelBackend,
    ModelTimeoutError,
    ModelUnreachableError,
)


class HostedChatBackend(ModelBackend):
    """Hosted API backend using the OpenAI-compatible chat completions endpoint."""

    name = "openai"

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        *,
        api_key: str | None = None,
        temperature: float | None = 0.2,
        max_tokens: int | None = 1024,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
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
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    def build_payload(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload: dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        return payload

    @staticmethod
    def _extract_content(body: Any) -> str | None:
        if not isinstance(body, dict):
            return None
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        first = choices[0]
        if not isinstance(first, dict):
            return None
        message = first.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        text = first.get("text")
        return text if isinstance(text, str) else None

    async def complete(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str | None = None,
    ) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = self.build_payload(prompt, model=model, system_prompt=system_prompt)
        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions", json=payload, headers=headers
            )
        except httpx.TimeoutException as exc:
            raise ModelTimeoutError(
                f"Request to {self.base_url} timed out.", backend=self.name
            ) from exc
        except httpx.TransportError as exc:
            raise ModelUnreachableError(
                f"Hosted API at {self.base_url} is unreachable: {exc}", backend=self.name
            ) from exc

        if response.status_code >= 400:
            raise ModelUnreachableError(
                f"Hosted API error {response.status_code}: {response.text[:400]}",
                backend=self.name,
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "Hosted API response is not valid JSON.", backend=self.name
            ) from exc
        content = self._extract_content(body)
        if content is None:
            raise MalformedResponseError(
                "Hosted API response has no choices[0].message.content.", backend=self.name
            )
        return content

    async def health_check(self) -> bool:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = await self.client.get(f"{self.base_url}/models", headers=headers)
        except httpx.HTTPError:
            return False
        return response.is_success

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
