from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from agentic.backends import HostedChatBackend, ModelBackend, ModelGateway, OllamaBackend
from agentic.backends.ollama import DEFAULT_OLLAMA_HOST
from agentic.config import AgenticConfig, load_config, save_config
from agentic.history import HistoryError, HistoryStore
from agentic.pipeline import (
    Confirmer,
    PipelineController,
    PipelineOutcome,
    PipelineRunHandle,
    RunState,
    safety_directories,
)
from agentic.plan import Plan
from agentic.planner import PlanBuilder, PlanError
from agentic.safety import PlanVerdict, VerdictKind, validate_plan
from agentic.templates import TemplateError, build_workflow_plan
from agentic.workflows import WorkflowNotFoundError, WorkflowStore

DEFAULT_CONFIG = "agentic.toml"


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: AgenticConfig
    gateway: ModelGateway
    history: HistoryStore
    workflows: WorkflowStore
    controller: PipelineController


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value).expanduser()
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _build_backend(config: AgenticConfig) -> ModelBackend:
    if config.models.provider == "openai":
        host = config.models.host
        if host.rstrip("/") == DEFAULT_OLLAMA_HOST:
            return HostedChatBackend(api_key=config.api_key())
        return HostedChatBackend(host, api_key=config.api_key())
    return OllamaBackend(config.models.host)


def _build_gateway(
    config: AgenticConfig, event_hook: Callable[[dict[str, Any]], None] | None = None
) -> ModelGateway:
    backend = _build_backend(config)
    return ModelGateway(
        config.role_bindings(),
        {config.models.provider: backend},
        event_hook=event_hook,
    )


def _record_event(history: HistoryStore, event: dict[str, Any]) -> None:
    if event.get("event") == "step_start":
        click.secho(f"$ {event.get('command')}", fg="cyan", err=True)
    try:
        history.record_event(event)
    except HistoryError as exc:
        click.secho(f"warning: {exc}", fg="yellow", err=True)


def _echo_plan(plan: Plan, verdict: PlanVerdict | None = None) -> None:
    click.echo(f"Plan for: {plan.source}")
    for step in plan.steps:
        click.echo(f"  {step.sequence + 1}. {step.command}")
        if step.description and step.description != step.command:
            click.echo(f"     # {step.description}")
    if verdict is not None:
        color = {
            VerdictKind.ALLOWED: "green",
            VerdictKind.NEEDS_CONFIRMATION: "yellow",
            VerdictKind.BLOCKED: "red",
        }[verdict.kind]
        click.secho(f"Safety: {verdict.verdict.describe()}", fg=color)


def _make_confirmer(assume_yes: bool) -> Confirmer:
    async def _confirm(plan: Plan, verdict: PlanVerdict) -> bool:
        _echo_plan(plan, verdict)
        if assume_yes:
            return True
        return await asyncio.to_thread(click.confirm, "Execute these commands?", default=False)

    return _confirm


def _load_runtime(config_path: Path, *, assume_yes: bool = False) -> Runtime:
    config = load_config(config_path)
    history = HistoryStore(config.history_path())

    def hook(event: dict[str, Any]) -> None:
        _record_event(history, event)

    gateway = _build_gateway(config, hook)
    workflows = WorkflowStore(config.workflow_paths(config_path.parent), event_hook=hook)
    controller = PipelineController(
        config.run_context(),
        plan_builder=PlanBuilder.from_gateway(gateway, event_hook=hook),
        workflow_store=workflows,
        history=history,
        confirmer=_make_confirmer(assume_yes),
        event_hook=hook,
    )
    return Runtime(
        config_path=config_path,
        config=config,
        gateway=gateway,
        history=history,
        workflows=workflows,
        controller=controller,
    )


def _print_run_event(event: dict[str, Any]) -> None:
    if event.get("event") != "output":
        return
    data = event["data"]
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else str(data)
    click.echo(text, nl=False, err=event.get("stream") == "stderr")


async def _drive(
    runtime: Runtime, start: Callable[[PipelineController], PipelineRunHandle]
) -> PipelineOutcome:
    try:
        handle = start(runtime.controller)
        handle.subscribe(_print_run_event)
        return await handle.await_result()
    finally:
        await runtime.gateway.aclose()


def _report(outcome: PipelineOutcome) -> None:
    if outcome.history_error:
        click.secho(
            f"warning: history not recorded: {outcome.history_error}", fg="yellow", err=True
        )
    if outcome.state is RunState.FAILED:
        raise click.ClickException(f"{outcome.reason}\n  source: {outcome.source}")
    if outcome.state is RunState.CANCELLED:
        click.secho(f"Cancelled: {outcome.reason}", fg="yellow", err=True)
        raise click.exceptions.Exit(1)

    result = outcome.result
    if result is None:
        return
    error = result.error()
    if error is not None:
        raise click.ClickException(f"{error} (step index {error.step_index})")
    click.secho(f"Completed {len(result.executed_steps)} step(s).", fg="green", err=True)


def _parse_bindings(values: tuple[str, ...]) -> dict[str, str]:
    bindings: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got '{item}'", param_hint="--arg")
        bindings[key.strip()] = value
    return bindings


@click.group()
@click.version_option(package_name="agentic-cli")
def cli() -> None:
    """Agentic CLI: plan, check and run shell commands from plain language."""


@cli.command("init")
@click.option("--provider", type=click.Choice(["ollama", "openai"]), default=None)
@click.option("--host", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(provider: str | None, host: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if provider:
        config.models.provider = provider  # type: ignore[assignment]
    if host:
        config.models.host = host
    save_config(config_path, config)
    for path in config.workflow_paths(config_path.parent):
        path.mkdir(parents=True, exist_ok=True)

    click.echo(f"Config: {config_path}")
    click.echo(f"Provider: {config.models.provider} ({config.models.host})")
    click.echo(f"History: {config.history_path()}")


@cli.command("run")
@click.argument("query")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(query: str, assume_yes: bool, config_value: str) -> None:
    runtime = _load_runtime(
        _resolve_config_path(Path.cwd(), config_value), assume_yes=assume_yes
    )
    outcome = asyncio.run(_drive(runtime, lambda controller: controller.run_query(query)))
    _report(outcome)


@cli.command("plan")
@click.argument("query")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def plan_command(query: str, config_value: str) -> None:
    """Build and check a plan without running it."""
    runtime = _load_runtime(_resolve_config_path(Path.cwd(), config_value))
    builder = PlanBuilder.from_gateway(runtime.gateway)

    async def _build() -> Plan:
        try:
            return await builder.build_plan(query)
        finally:
            await runtime.gateway.aclose()

    try:
        plan = asyncio.run(_build())
    except PlanError as exc:
        raise click.ClickException(f"{exc}\n  query: {exc.query}") from exc
    context = runtime.controller.context
    working_directory, home = safety_directories(context.execution)
    _echo_plan(plan, validate_plan(plan, context.policy, working_directory, home=home))


@cli.command("check")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def check_command(config_value: str) -> None:
    """Report model bindings and whether their backend answers."""
    config_path = _resolve_config_path(Path.cwd(), config_value)
    config = load_config(config_path)
    gateway = _build_gateway(config)

    async def _check_health() -> dict[str, bool]:
        try:
            return {
                name: await backend.health_check() for name, backend in gateway.backends.items()
            }
        finally:
            await gateway.aclose()

    health = asyncio.run(_check_health())
    for role, binding in gateway.bindings.items():
        click.echo(f"{role}: {binding.model} @ {gateway.endpoint(role)}")
    failures = [name for name, ok in health.items() if not ok]
    for name, ok in health.items():
        click.secho(f"{name}: {'ok' if ok else 'unreachable'}", fg="green" if ok else "red")
    if failures:
        raise click.ClickException("Unreachable backend(s): " + ", ".join(failures))


@cli.group("workflow")
def workflow_group() -> None:
    """Browse and run stored workflows."""


def _load_store(config_value: str) -> WorkflowStore:
    config_path = _resolve_config_path(Path.cwd(), config_value)
    config = load_config(config_path)
    return WorkflowStore(config.workflow_paths(config_path.parent))


@workflow_group.command("list")
@click.option("--tag", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def workflow_list_command(tag: str | None, config_value: str) -> None:
    store = _load_store(config_value)
    templates = store.by_tag(tag) if tag else store.list()
    if not templates:
        click.echo("No workflows found.")
        return
    for template in templates:
        click.echo(f"{template.identifier}  {template.name}")


@workflow_group.command("search")
@click.argument("text")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def workflow_search_command(text: str, config_value: str) -> None:
    matches = _load_store(config_value).search(text)
    if not matches:
        click.echo(f"No workflows match '{text}'.")
        return
    for template in matches:
        click.echo(f"{template.identifier}  {template.name}")


@workflow_group.command("show")
@click.argument("identifier")
@click.option("--arg", "arg_values", multiple=True, help="Argument binding as key=value.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def workflow_show_command(identifier: str, arg_values: tuple[str, ...], config_value: str) -> None:
    store = _load_store(config_value)
    try:
        template = store.get(identifier)
        plan = build_workflow_plan(template, _parse_bindings(arg_values))
    except (WorkflowNotFoundError, TemplateError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"{template.name} ({template.identifier})")
    if template.description:
        click.echo(template.description)
    if template.tags:
        click.echo("Tags: " + ", ".join(template.tags))
    for argument in template.arguments:
        default = "" if argument.default_value is None else f" [default: {argument.default_value}]"
        required = " (required)" if argument.required else ""
        click.echo(f"  --arg {argument.name}=...{required}{default}  {argument.description}")
    _echo_plan(plan)


@workflow_group.command("run")
@click.argument("identifier")
@click.option("--arg", "arg_values", multiple=True, help="Argument binding as key=value.")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def workflow_run_command(
    identifier: str, arg_values: tuple[str, ...], assume_yes: bool, config_value: str
) -> None:
    bindings = _parse_bindings(arg_values)
    runtime = _load_runtime(
        _resolve_config_path(Path.cwd(), config_value), assume_yes=assume_yes
    )
    outcome = asyncio.run(
        _drive(runtime, lambda controller: controller.run_workflow(identifier, bindings))
    )
    _report(outcome)


@cli.command("history")
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def history_command(limit: int, as_json: bool, config_value: str) -> None:
    config = load_config(_resolve_config_path(Path.cwd(), config_value))
    try:
        entries = HistoryStore(config.history_path()).entries(limit)
    except HistoryError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        click.echo(json.dumps(entries, ensure_ascii=False, indent=2))
        return
    if not entries:
        click.echo("No history yet.")
        return
    for entry in entries:
        result = entry.get("result") or {}
        status = str(result.get("status") or entry.get("state") or "?")
        click.echo(f"{entry.get('recorded_at', '?')}  {status:<10}  {entry.get('source')}")
