import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from agentic.backends import (
    MalformedResponseError,
    ModelBackend,
    ModelGateway,
    ModelRoleBinding,
    ModelTimeoutError,
    ModelUnreachableError,
)
from agentic.plan import AD_HOC_ORIGIN
from agentic.planner import (
    EmptyPlanError,
    ExhaustedFallbackError,
    PlanBuilder,
    PlanError,
    UnusablePlanError,
)

COMMANDS = {
    "List files in the current directory": "ls -la",
    "Show disk usage": "df -h",
}


def scripted_reply(prompt: str) -> str:
    if prompt.startswith("User Request:"):
        return "1. List files in the current directory\n2. Show disk usage"
    intent = prompt.removeprefix("Plan: ").removesuffix("\nCommand:")
    return f"Command: {COMMANDS[intent]}"


class ScriptedBackend(ModelBackend):
    def __init__(self, name: str, reply: Callable[[str], str] | Exception) -> None:
        self.name = name
        self.reply = reply
        self.prompts: list[str] = []

    async def complete(self, prompt: str, *, model: str, system_prompt: str | None = None) -> str:
        _ = model, system_prompt
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply(prompt)


def _builder(
    primary: ScriptedBackend,
    backup: ScriptedBackend,
    events: list[dict[str, Any]] | None = None,
) -> PlanBuilder:
    gateway = ModelGateway(
        {
            "planner": ModelRoleBinding("planner", "primary", "planner-model", 1.0),
            "coder": ModelRoleBinding("coder", "primary", "coder-model", 1.0),
            "fallback": ModelRoleBinding("fallback", "backup", "fallback-model", 1.0),
        },
        {"primary": primary, "backup": backup},
    )
    return PlanBuilder.from_gateway(gateway, event_hook=events.append if events is not None else None)


def test_build_plan_runs_planner_then_one_coder_call_per_intent() -> None:
    primary = ScriptedBackend("primary", scripted_reply)
    backup = ScriptedBackend("backup", AssertionError("fallback must not be used"))

    plan = asyncio.run(_builder(primary, backup).build_plan("show files and disk usage"))

    assert plan.kind == "query"
    assert plan.source == "show files and disk usage"
    assert plan.commands == ["ls -la", "df -h"]
    assert plan.intents == ("List files in the current directory", "Show disk usage")
    assert [step.sequence for step in plan.steps] == [0, 1]
    assert all(step.origin == AD_HOC_ORIGIN for step in plan.steps)
    assert plan.steps[1].description == "Show disk usage"
    assert len(primary.prompts) == 3
    assert backup.prompts == []


@pytest.mark.parametrize(
    "failure",
    [
        ModelUnreachableError("connection refused", backend="primary"),
        ModelTimeoutError("too slow", backend="primary"),
    ],
)
def test_unreachable_or_slow_primary_falls_back_exactly_once_per_call(failure: Exception) -> None:
    events: list[dict[str, Any]] = []
    primary = ScriptedBackend("primary", failure)
    backup = ScriptedBackend("backup", scripted_reply)

    plan = asyncio.run(_builder(primary, backup, events).build_plan("show files"))

    assert plan.commands == ["ls -la", "df -h"]
    assert len(primary.prompts) == 3
    assert len(backup.prompts) == 3
    assert [event["event"] for event in events].count("plan_fallback_start") == 3
    assert [event["event"] for event in events].count("plan_fallback_success") == 3


def test_fallback_failure_raises_exhausted_after_single_retry() -> None:
    events: list[dict[str, Any]] = []
    primary = ScriptedBackend("primary", ModelUnreachableError("down", backend="primary"))
    backup = ScriptedBackend("backup", ModelTimeoutError("also down", backend="backup"))

    with pytest.raises(ExhaustedFallbackError) as excinfo:
        asyncio.run(_builder(primary, backup, events).build_plan("list files"))

    assert excinfo.value.query == "list files"
    assert excinfo.value.stage == "planner"
    assert len(primary.prompts) == 1
    assert len(backup.prompts) == 1
    assert events[-1]["event"] == "plan_fallback_failed"


def test_malformed_reply_is_unusable_and_never_retried() -> None:
    primary = ScriptedBackend("primary", MalformedResponseError("no text", backend="primary"))
    backup = ScriptedBackend("backup", scripted_reply)

    with pytest.raises(UnusablePlanError) as excinfo:
        asyncio.run(_builder(primary, backup).build_plan("list files"))

    assert isinstance(excinfo.value, PlanError)
    assert backup.prompts == []


def test_malformed_fallback_reply_is_unusable() -> None:
    primary = ScriptedBackend("primary", ModelUnreachableError("down", backend="primary"))
    backup = ScriptedBackend("backup", MalformedResponseError("garbled", backend="backup"))

    with pytest.raises(UnusablePlanError):
        asyncio.run(_builder(primary, backup).build_plan("list files"))


def test_planner_without_steps_raises_empty_plan() -> None:
    primary = ScriptedBackend("primary", lambda prompt: "   ")
    backup = ScriptedBackend("backup", scripted_reply)

    with pytest.raises(EmptyPlanError):
        asyncio.run(_builder(primary, backup).build_plan("do nothing"))


def test_oversized_plan_is_rejected_instead_of_truncated() -> None:
    long_plan = "\n".join(f"{index}. Step number {index}" for index in range(1, 31))
    primary = ScriptedBackend("primary", lambda prompt: long_plan)
    backup = ScriptedBackend("backup", scripted_reply)

    with pytest.raises(UnusablePlanError) as excinfo:
        asyncio.run(_builder(primary, backup).build_plan("do thirty things"))

    assert excinfo.value.stage == "planner"
    assert "30 steps" in str(excinfo.value)
    assert len(primary.prompts) == 1


def test_coder_without_command_raises_unusable() -> None:
    def reply(prompt: str) -> str:
        if prompt.startswith("User Request:"):
            return "1. List files"
        return "```bash\n```"

    primary = ScriptedBackend("primary", reply)
    backup = ScriptedBackend("backup", scripted_reply)

    with pytest.raises(UnusablePlanError) as excinfo:
        asyncio.run(_builder(primary, backup).build_plan("list files"))

    assert excinfo.value.stage == "coder"


def test_blank_query_is_rejected_without_model_calls() -> None:
    primary = ScriptedBackend("primary", scripted_reply)
    backup = ScriptedBackend("backup", scripted_reply)

    with pytest.raises(EmptyPlanError):
        asyncio.run(_builder(primary, backup).build_plan("   "))

    assert primary.prompts == []


def test_multi_line_coder_reply_becomes_several_steps() -> None:
    def reply(prompt: str) -> str:
        if prompt.startswith("User Request:"):
            return "1. Create and enter a folder"
        return "mkdir -p demo\ncd demo"

    primary = ScriptedBackend("primary", reply)
    backup = ScriptedBackend("backup", reply)

    plan = asyncio.run(_builder(primary, backup).build_plan("make a demo folder"))

    assert plan.commands == ["mkdir -p demo", "cd demo"]
    assert [step.sequence for step in plan.steps] == [0, 1]
