import asyncio
import json
from typing import Any

import httpx
import pytest
import respx

from agentic.backends import (
    HostedChatBackend,
    MalformedResponseError,
    ModelBackend,
    ModelError,
    ModelGateway,
    ModelRoleBinding,
    ModelTimeoutError,
    ModelUnreachableError,
    OllamaBackend,
)

OLLAMA = "http://ollama.test:11434"
HOSTED = "http://hosted.test/v1"


class SlowBackend(ModelBackend):
    name = "slow"

    async def complete(self, prompt: str, *, model: str, system_prompt: str | None = None) -> str:
        _ = prompt, model, system_prompt
        await asyncio.sleep(5)
        return "late"


class EchoBackend(ModelBackend):
    name = "echo"

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def complete(self, prompt: str, *, model: str, system_prompt: str | None = None) -> str:
        self.calls.append({"prompt": prompt, "model": model, "system_prompt": system_prompt})
        return f"{model}: {prompt}"


async def _complete(backend: ModelBackend, prompt: str = "hi", **kwargs: Any) -> str:
    try:
        return await backend.complete(prompt, model="m", **kwargs)
    finally:
        await backend.aclose()


def test_ollama_payload_and_response_field() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["json"] = json.loads(request.content.decode("utf-8"))
        return httpx.Response(200, json={"response": "ls -la", "done": True})

    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post(f"{OLLAMA}/api/generate").mock(side_effect=handler)
        text = asyncio.run(_complete(OllamaBackend(OLLAMA), "list files", system_prompt="sys"))

    assert text == "ls -la"
    payload = captured["json"]
    assert payload["model"] == "m"
    assert payload["prompt"] == "list files"
    assert payload["stream"] is False
    assert payload["system"] == "sys"
    assert payload["options"]["num_predict"] == 2048


def test_ollama_error_status_is_unreachable() -> None:
    with respx.mock() as respx_mock:
        respx_mock.post(f"{OLLAMA}/api/generate").mock(
            return_value=httpx.Response(503, text="loading model")
        )
        with pytest.raises(ModelUnreachableError) as excinfo:
            asyncio.run(_complete(OllamaBackend(OLLAMA)))

    assert excinfo.value.status_code == 503
    assert excinfo.value.retriable is True


def test_ollama_connection_failure_is_unreachable() -> None:
    with respx.mock() as respx_mock:
        respx_mock.post(f"{OLLAMA}/api/generate").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ModelUnreachableError):
            asyncio.run(_complete(OllamaBackend(OLLAMA)))


def test_ollama_read_timeout_is_timeout() -> None:
    with respx.mock() as respx_mock:
        respx_mock.post(f"{OLLAMA}/api/generate").mock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(ModelTimeoutError):
            asyncio.run(_complete(OllamaBackend(OLLAMA)))


def test_ollama_missing_response_field_is_malformed() -> None:
    with respx.mock() as respx_mock:
        respx_mock.post(f"{OLLAMA}/api/generate").mock(
            return_value=httpx.Response(200, json={"done": True})
        )
        with pytest.raises(MalformedResponseError) as excinfo:
            asyncio.run(_complete(OllamaBackend(OLLAMA)))

    assert excinfo.value.retriable is False


def test_ollama_health_check() -> None:
    async def _check_health(backend: OllamaBackend) -> bool:
        try:
            return await backend.health_check()
        finally:
            await backend.aclose()

    with respx.mock() as respx_mock:
        respx_mock.get(f"{OLLAMA}/api/tags").mock(return_value=httpx.Response(200, json={}))
        assert asyncio.run(_check_health(OllamaBackend(OLLAMA))) is True

    with respx.mock() as respx_mock:
        respx_mock.get(f"{OLLAMA}/api/tags").mock(side_effect=httpx.ConnectError("down"))
        assert asyncio.run(_check_health(OllamaBackend(OLLAMA))) is False


def test_hosted_chat_payload_auth_and_content() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("authorization")
        captured["json"] = json.loads(request.content.decode("utf-8"))
        return httpx.Response(200, json={"choices": [{"message": {"content": "pwd"}}]})

    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post(f"{HOSTED}/chat/completions").mock(side_effect=handler)
        backend = HostedChatBackend(HOSTED, api_key="secret")
        text = asyncio.run(_complete(backend, "where am i", system_prompt="sys"))

    assert text == "pwd"
    assert captured["auth"] == "Bearer secret"
    assert captured["json"]["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "where am i"},
    ]


def test_hosted_chat_without_choices_is_malformed() -> None:
    with respx.mock() as respx_mock:
        respx_mock.post(f"{HOSTED}/chat/completions").mock(
            return_value=httpx.Response(200, json={"choices": []})
        )
        with pytest.raises(MalformedResponseError):
            asyncio.run(_complete(HostedChatBackend(HOSTED)))


def test_gateway_routes_role_to_bound_model() -> None:
    backend = EchoBackend()
    events: list[dict[str, Any]] = []
    gateway = ModelGateway(
        {"coder": ModelRoleBinding("coder", "echo", "coder-model", 1.0)},
        {"echo": backend},
        event_hook=events.append,
    )

    text = asyncio.run(gateway.complete("coder", "list files", system_prompt="sys"))

    assert text == "coder-model: list files"
    assert backend.calls[0]["system_prompt"] == "sys"
    assert [event["event"] for event in events] == ["model_call_start", "model_call_success"]


def test_gateway_timeout_raises_model_timeout() -> None:
    events: list[dict[str, Any]] = []
    gateway = ModelGateway(
        {"planner": ModelRoleBinding("planner", "slow", "m", 0.05)},
        {"slow": SlowBackend()},
        event_hook=events.append,
    )

    with pytest.raises(ModelTimeoutError) as excinfo:
        asyncio.run(gateway.complete("planner", "anything"))

    assert excinfo.value.role == "planner"
    assert events[-1]["event"] == "model_call_failed"
    assert events[-1]["error_type"] == "ModelTimeoutError"


def test_gateway_explicit_timeout_overrides_binding() -> None:
    gateway = ModelGateway(
        {"planner": ModelRoleBinding("planner", "slow", "m", 30.0)},
        {"slow": SlowBackend()},
    )

    with pytest.raises(ModelTimeoutError):
        asyncio.run(gateway.complete("planner", "anything", 0.05))


def test_gateway_unknown_role_and_unregistered_backend() -> None:
    gateway = ModelGateway({}, {"echo": EchoBackend()})

    with pytest.raises(ModelError) as excinfo:
        asyncio.run(gateway.complete("coder", "x"))
    assert excinfo.value.retriable is False

    with pytest.raises(ValueError):
        ModelGateway({"coder": ModelRoleBinding("coder", "missing", "m")}, {})
