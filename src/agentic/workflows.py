from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import yaml

from agentic.templates import CommandTemplate, TemplateError

WorkflowEventHook = Callable[[dict[str, Any]], None]
WORKFLOW_SUFFIXES = (".yaml", ".yml")


class WorkflowNotFoundError(KeyError):
    """Raised when no workflow is registered under an identifier."""

    def __init__(self, identifier: str) -> None:
        super().__init__(identifier)
        self.identifier = identifier

    def __str__(self) -> str:
        return f"Unknown workflow: {self.identifier}"


class WorkflowStore:
    """Discovers command templates stored as YAML files under search paths.

    The identifier of a workflow is its path relative to the search root,
    without the extension, e.g. ``docker/build_and_run_app``. The first search
    path that defines an identifier wins.
    """

    def __init__(
        self,
        search_paths: Iterable[Path | str],
        event_hook: WorkflowEventHook | None = None,
    ) -> None:
        self.search_paths = [Path(path) for path in search_paths]
        self.event_hook = event_hook
        self._templates: dict[str, CommandTemplate] | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def templates(self) -> dict[str, CommandTemplate]:
        if self._templates is None:
            self._templates = self._load()
        return self._templates

    def reload(self) -> int:
        self._templates = self._load()
        return len(self._templates)

    def _load(self) -> dict[str, CommandTemplate]:
        templates: dict[str, CommandTemplate] = {}
        for root in self.search_paths:
            if not root.is_dir():
                continue
            files = sorted(
                path for path in root.rglob("*") if path.suffix in WORKFLOW_SUFFIXES
            )
            for path in files:
                identifier = path.relative_to(root).with_suffix("").as_posix()
                if identifier in templates:
                    continue
                template = self._load_file(identifier, path)
                if template is not None:
                    templates[identifier] = template
        self._emit({"event": "workflows_loaded", "count": len(templates)})
        return templates

    def _load_file(self, identifier: str, path: Path) -> CommandTemplate | None:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise TemplateError(
                    f"Workflow file {path} does not contain a mapping.", template=identifier
                )
            return CommandTemplate.from_dict(identifier, data)
        except (OSError, yaml.YAMLError, TemplateError, KeyError, TypeError) as exc:
            self._emit(
                {
                    "event": "workflow_invalid",
                    "identifier": identifier,
                    "path": str(path),
                    "error": str(exc),
                }
            )
            return None

    def get(self, identifier: str) -> CommandTemplate:
        try:
            return self.templates[identifier]
        except KeyError as exc:
            raise WorkflowNotFoundError(identifier) from exc

    def list(self) -> list[CommandTemplate]:
        return [self.templates[key] for key in sorted(self.templates)]

    def search(self, text: str) -> list[CommandTemplate]:
        needle = text.strip().lower()
        if not needle:
            return self.list()
        matches = []
        for template in self.list():
            haystack = [template.identifier, template.name, template.description, *template.tags]
            if any(needle in item.lower() for item in haystack):
                matches.append(template)
        return matches

    def by_tag(self, tag: str) -> list[CommandTemplate]:
        wanted = tag.strip().lower()
        return [
            template
            for template in self.list()
            if wanted in (item.lower() for item in template.tags)
        ]
