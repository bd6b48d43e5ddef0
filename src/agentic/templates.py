from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from agentic.plan import Plan, ResolvedCommand

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.-]*)\s*\}\}")
ANY_PLACEHOLDER = re.compile(r"\{\{.*?\}\}", re.DOTALL)
LINE_CONTINUATION = "\\"


class TemplateError(ValueError):
    """Raised when a command template cannot be resolved."""

    def __init__(self, message: str, *, template: str | None = None, name: str | None = None):
        super().__init__(message)
        self.template = template
        self.name = name


class MissingArgumentError(TemplateError):
    """A required argument has neither a binding nor a default value."""


class UnknownPlaceholderError(TemplateError):
    """The template body references a placeholder with no argument specification."""


@dataclass(frozen=True, slots=True)
class ArgumentSpec:
    name: str
    description: str = ""
    default_value: str | None = None
    required: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ArgumentSpec:
        default = data.get("default_value")
        return cls(
            name=str(data["name"]),
            description=str(data.get("description") or ""),
            default_value=None if default is None else str(default),
            required=bool(data.get("required", False)),
        )


@dataclass(frozen=True, slots=True)
class CommandTemplate:
    identifier: str
    name: str
    command: str
    description: str = ""
    arguments: tuple[ArgumentSpec, ...] = ()
    shells: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    author: str | None = None
    author_url: str | None = None
    source_url: str | None = None

    def __post_init__(self) -> None:
        names = [argument.name for argument in self.arguments]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise TemplateError(
                f"Template '{self.identifier}' declares duplicate arguments: "
                + ", ".join(duplicates),
                template=self.identifier,
            )

    @classmethod
    def from_dict(cls, identifier: str, data: Mapping[str, Any]) -> CommandTemplate:
        raw_arguments = data.get("arguments") or []
        if not isinstance(raw_arguments, list):
            raise TemplateError(
                f"Template '{identifier}' has a non-list 'arguments' field.",
                template=identifier,
            )
        command = data.get("command")
        if not isinstance(command, str) or not command.strip():
            raise TemplateError(
                f"Template '{identifier}' has no command body.", template=identifier
            )
        return cls(
            identifier=identifier,
            name=str(data.get("name") or identifier),
            command=command,
            description=str(data.get("description") or ""),
            arguments=tuple(ArgumentSpec.from_dict(item) for item in raw_arguments),
            shells=tuple(str(item) for item in data.get("shells") or []),
            tags=tuple(str(item) for item in data.get("tags") or []),
            author=data.get("author"),
            author_url=data.get("author_url"),
            source_url=data.get("source_url"),
        )

    @property
    def placeholders(self) -> list[str]:
        seen: list[str] = []
        for match in PLACEHOLDER_PATTERN.finditer(self.command):
            name = match.group(1)
            if name not in seen:
                seen.append(name)
        return seen

    def argument(self, name: str) -> ArgumentSpec | None:
        for argument in self.arguments:
            if argument.name == name:
                return argument
        return None


def split_statements(body: str) -> list[str]:
    """Split a command body into logical shell statements, one per line.

    A line ending in a backslash continues onto the next line. Blank lines and
    full-line ``#`` comments are dropped.
    """
    statements: list[str] = []
    pending: list[str] = []
    for raw_line in body.splitlines():
        line = raw_line.rstrip()
        if not pending and (not line.strip() or line.lstrip().startswith("#")):
            continue
        if line.endswith(LINE_CONTINUATION):
            pending.append(line[: -len(LINE_CONTINUATION)].rstrip())
            continue
        pending.append(line.strip() if pending else line)
        statement = " ".join(part.strip() for part in pending if part.strip())
        pending = []
        if statement:
            statements.append(statement)
    if pending:
        statement = " ".join(part.strip() for part in pending if part.strip())
        if statement:
            statements.append(statement)
    return statements


def effective_values(template: CommandTemplate, bindings: Mapping[str, Any]) -> dict[str, str]:
    values: dict[str, str] = {}
    for argument in template.arguments:
        if argument.name in bindings and bindings[argument.name] is not None:
            values[argument.name] = str(bindings[argument.name])
        elif argument.default_value is not None:
            values[argument.name] = argument.default_value
        elif argument.required:
            raise MissingArgumentError(
                f"Required argument '{argument.name}' not provided for template "
                f"'{template.identifier}'.",
                template=template.identifier,
                name=argument.name,
            )
        else:
            values[argument.name] = ""
    return values


def _check_placeholders(template: CommandTemplate, text: str, values: Mapping[str, str]) -> None:
    for token in ANY_PLACEHOLDER.finditer(text):
        if not PLACEHOLDER_PATTERN.fullmatch(token.group(0)):
            name = token.group(0)[2:-2].strip()
            raise UnknownPlaceholderError(
                f"Template '{template.identifier}' has malformed placeholder "
                f"'{token.group(0)}'.",
                template=template.identifier,
                name=name,
            )
    for match in PLACEHOLDER_PATTERN.finditer(text):
        name = match.group(1)
        if name not in values:
            raise UnknownPlaceholderError(
                f"Template '{template.identifier}' references unknown placeholder "
                f"'{{{{{name}}}}}'.",
                template=template.identifier,
                name=name,
            )


def _substitute(text: str, values: Mapping[str, str]) -> str:
    # One pass over the body; inserted values are never rescanned.
    return PLACEHOLDER_PATTERN.sub(lambda match: values[match.group(1)], text)


def resolve(
    template: CommandTemplate,
    bindings: Mapping[str, Any] | None = None,
    *,
    sequence: int = 0,
) -> ResolvedCommand:
    values = effective_values(template, bindings or {})
    _check_placeholders(template, template.command, values)
    return ResolvedCommand(
        command=_substitute(template.command, values),
        origin=template.identifier,
        sequence=sequence,
        description=template.name,
    )


def expand(
    template: CommandTemplate,
    bindings: Mapping[str, Any] | None = None,
) -> list[ResolvedCommand]:
    """Resolve a template into one command per logical statement.

    Every statement is validated before any substitution happens, so a failure
    never yields partial output.
    """
    values = effective_values(template, bindings or {})
    statements = split_statements(template.command)
    for statement in statements:
        _check_placeholders(template, statement, values)
    return [
        ResolvedCommand(
            command=_substitute(statement, values),
            origin=template.identifier,
            sequence=index,
            description=template.name,
        )
        for index, statement in enumerate(statements)
    ]


def build_workflow_plan(
    template: CommandTemplate,
    bindings: Mapping[str, Any] | None = None,
) -> Plan:
    steps = expand(template, bindings)
    if not steps:
        raise TemplateError(
            f"Template '{template.identifier}' has no executable statements.",
            template=template.identifier,
        )
    return Plan(steps=tuple(steps), source=template.identifier, kind="workflow")
