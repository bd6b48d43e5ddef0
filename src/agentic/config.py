from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from agentic.backends.gateway import ROLES, ModelRoleBinding
from agentic.executor import ExecutionOptions, default_shell
from agentic.pipeline import RunContext
from agentic.safety import DEFAULT_ALLOWED_DIRECTORIES, DEFAULT_DANGEROUS_COMMANDS, SafetyPolicy

ProviderName = Literal["ollama", "openai"]
CONFIG_FILENAMES = ("agentic.toml", ".agentic.toml")
DEFAULT_HISTORY_PATH = "~/.agentic/history.jsonl"
LEGACY_MODEL_KEYS = {
    "ollama_host": "host",
    "planner_model": "planner",
    "coder_model": "coder",
    "fallback_model": "fallback",
}


def _known(section_cls: type, data: Any) -> dict[str, Any]:
    """Keep only the keys a section understands."""
    if not isinstance(data, dict):
        return {}
    names = {item.name for item in fields(section_cls)}
    return {key: value for key, value in data.items() if key in names}


def _legacy_models(data: Any) -> Any:
    """Rename the older model keys; a current key wins over its old spelling."""
    if not isinstance(data, dict):
        return data
    renamed = dict(data)
    for old, new in LEGACY_MODEL_KEYS.items():
        if old in renamed:
            value = renamed.pop(old)
            renamed.setdefault(new, value)
    return renamed


@dataclass(slots=True)
class ModelsConfig:
    planner: str = "llama3.2:3b"
    coder: str = "qwen2.5-coder:7b"
    fallback: str = "llama3.2:3b"
    provider: ProviderName = "ollama"
    host: str = "http://localhost:11434"
    api_key_env: str = "OPENAI_API_KEY"
    timeout_seconds: float = 30.0
    role_timeouts: dict[str, float] = field(default_factory=dict)

    def model_for(self, role: str) -> str:
        return str(getattr(self, role))

    def timeout_for(self, role: str) -> float:
        return float(self.role_timeouts.get(role, self.timeout_seconds))


@dataclass(slots=True)
class ExecutionConfig:
    streaming: bool = True
    auto_confirm: bool = False
    max_execution_time: float = 300.0
    working_directory: str = ""
    continue_on_error: bool = False
    confirmation_timeout_seconds: float = 60.0
    shell: str = field(default_factory=default_shell)


@dataclass(slots=True)
class SafetyConfig:
    enable_safety_checks: bool = True
    require_confirmation: bool = True
    dangerous_commands: list[str] = field(
        default_factory=lambda: list(DEFAULT_DANGEROUS_COMMANDS)
    )
    allowed_directories: list[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_DIRECTORIES)
    )


@dataclass(slots=True)
class WorkflowsConfig:
    search_paths: list[str] = field(default_factory=lambda: ["workflows"])


@dataclass(slots=True)
class HistoryConfig:
    path: str = DEFAULT_HISTORY_PATH


@dataclass(slots=True)
class AgenticConfig:
    models: ModelsConfig = field(default_factory=ModelsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    workflows: WorkflowsConfig = field(default_factory=WorkflowsConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)

    @classmethod
    def default(cls) -> AgenticConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AgenticConfig:
        # Older files nest every section under a top-level [warp] table.
        if isinstance(data.get("warp"), dict):
            data = {**data["warp"], **{k: v for k, v in data.items() if k != "warp"}}
        return cls(
            models=ModelsConfig(**_known(ModelsConfig, _legacy_models(data.get("models")))),
            execution=ExecutionConfig(**_known(ExecutionConfig, data.get("execution"))),
            safety=SafetyConfig(**_known(SafetyConfig, data.get("safety"))),
            workflows=WorkflowsConfig(**_known(WorkflowsConfig, data.get("workflows"))),
            history=HistoryConfig(**_known(HistoryConfig, data.get("history"))),
        )

    def to_dict(self) -> dict:
        return {
            "models": {
                "planner": self.models.planner,
                "coder": self.models.coder,
                "fallback": self.models.fallback,
                "provider": self.models.provider,
                "host": self.models.host,
                "api_key_env": self.models.api_key_env,
                "timeout_seconds": self.models.timeout_seconds,
                "role_timeouts": dict(self.models.role_timeouts),
            },
            "execution": {
                "streaming": self.execution.streaming,
                "auto_confirm": self.execution.auto_confirm,
                "max_execution_time": self.execution.max_execution_time,
                "working_directory": self.execution.working_directory,
                "continue_on_error": self.execution.continue_on_error,
                "confirmation_timeout_seconds": self.execution.confirmation_timeout_seconds,
                "shell": self.execution.shell,
            },
            "safety": {
                "enable_safety_checks": self.safety.enable_safety_checks,
                "require_confirmation": self.safety.require_confirmation,
                "dangerous_commands": list(self.safety.dangerous_commands),
                "allowed_directories": list(self.safety.allowed_directories),
            },
            "workflows": {
                "search_paths": list(self.workflows.search_paths),
            },
            "history": {
                "path": self.history.path,
            },
        }

    def role_bindings(self) -> dict[str, ModelRoleBinding]:
        return {
            role: ModelRoleBinding(
                role=role,
                backend=self.models.provider,
                model=self.models.model_for(role),
                timeout_seconds=self.models.timeout_for(role),
            )
            for role in ROLES
        }

    def safety_policy(self) -> SafetyPolicy:
        return SafetyPolicy(
            dangerous_commands=tuple(self.safety.dangerous_commands),
            allowed_directories=tuple(self.safety.allowed_directories),
            require_confirmation=self.safety.require_confirmation,
            auto_confirm=self.execution.auto_confirm,
            enable_safety_checks=self.safety.enable_safety_checks,
        )

    def execution_options(self) -> ExecutionOptions:
        return ExecutionOptions(
            max_execution_time=self.execution.max_execution_time,
            streaming=self.execution.streaming,
            continue_on_error=self.execution.continue_on_error,
            working_directory=self.execution.working_directory or None,
            shell=self.execution.shell,
        )

    def run_context(self) -> RunContext:
        return RunContext(
            policy=self.safety_policy(),
            execution=self.execution_options(),
            bindings=self.role_bindings(),
            confirmation_timeout_seconds=self.execution.confirmation_timeout_seconds,
        )

    def api_key(self) -> str | None:
        return os.environ.get(self.models.api_key_env) or None

    def history_path(self) -> Path:
        return Path(self.history.path).expanduser()

    def workflow_paths(self, base: Path | None = None) -> list[Path]:
        root = base or Path.cwd()
        paths = []
        for entry in self.workflows.search_paths:
            path = Path(entry).expanduser()
            paths.append(path if path.is_absolute() else root / path)
        return paths


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AgenticConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["models", "execution", "safety", "workflows", "history"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def find_config(start: Path | None = None) -> Path:
    """Return the first config file found in ``start``, or the default name there."""
    root = start or Path.cwd()
    for name in CONFIG_FILENAMES:
        candidate = root / name
        if candidate.exists():
            return candidate
    return root / CONFIG_FILENAMES[0]


def load_config(path: Path) -> AgenticConfig:
    if not path.exists():
        return AgenticConfig.default()
    return AgenticConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AgenticConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
