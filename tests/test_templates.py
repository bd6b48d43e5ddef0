from pathlib import Path

import pytest
import yaml

from agentic.plan import Plan
from agentic.templates import (
    ArgumentSpec,
    CommandTemplate,
    MissingArgumentError,
    TemplateError,
    UnknownPlaceholderError,
    build_workflow_plan,
    expand,
    resolve,
    split_statements,
)

WORKFLOWS = Path(__file__).resolve().parents[1] / "workflows"


def _load(identifier: str) -> CommandTemplate:
    data = yaml.safe_load((WORKFLOWS / f"{identifier}.yaml").read_text(encoding="utf-8"))
    return CommandTemplate.from_dict(identifier, data)


def _template(command: str, *arguments: ArgumentSpec) -> CommandTemplate:
    return CommandTemplate(identifier="test/template", name="Test", command=command, arguments=arguments)


def test_docker_workflow_defaults_expand_to_four_steps() -> None:
    template = _load("docker/build_and_run_app")

    plan = build_workflow_plan(template, {})

    assert plan.kind == "workflow"
    assert plan.source == "docker/build_and_run_app"
    assert plan.commands == [
        "docker build -t my-app:latest .",
        "docker run -d --name my-app-container -p 8080:8080 my-app:latest",
        'echo "Container my-app-container is running on port 8080"',
        "docker ps | grep my-app-container",
    ]
    assert [step.sequence for step in plan.steps] == [0, 1, 2, 3]
    assert all(step.origin == "docker/build_and_run_app" for step in plan.steps)


def test_bindings_override_defaults_and_extras_are_ignored() -> None:
    template = _load("docker/build_and_run_app")

    steps = expand(template, {"imageName": "api", "tag": "v2", "unused": "x"})

    assert steps[0].command == "docker build -t api:v2 ."
    assert "{{" not in " ".join(step.command for step in steps)


def test_required_argument_without_binding_raises_before_substitution() -> None:
    template = _template(
        "git clone {{repo}} {{dir}}",
        ArgumentSpec("repo", required=True),
        ArgumentSpec("dir", default_value="."),
    )

    with pytest.raises(MissingArgumentError) as excinfo:
        resolve(template, {})

    assert excinfo.value.name == "repo"
    assert isinstance(excinfo.value, TemplateError)


def test_unknown_placeholder_is_reported_by_name() -> None:
    template = _template("echo {{greeting}} {{name}}", ArgumentSpec("greeting", default_value="hi"))

    with pytest.raises(UnknownPlaceholderError) as excinfo:
        expand(template, {"name": "bound but undeclared"})

    assert excinfo.value.name == "name"


@pytest.mark.parametrize("command", ["echo {{ my var }}", "echo {{1x}}", "echo {{}}"])
def test_malformed_placeholders_are_rejected(command: str) -> None:
    template = _template(command, ArgumentSpec("x", default_value="1"))

    with pytest.raises(UnknownPlaceholderError):
        resolve(template)
    with pytest.raises(UnknownPlaceholderError):
        expand(template)


def test_substituted_values_are_not_rescanned() -> None:
    template = _template("echo {{a}}", ArgumentSpec("a"), ArgumentSpec("b", default_value="B"))

    resolved = resolve(template, {"a": "{{b}}"})

    assert resolved.command == "echo {{b}}"


def test_resolution_is_idempotent() -> None:
    template = _load("rust/create_new_project")

    first = expand(template, {"projectName": "demo"})
    second = expand(template, {"projectName": "demo"})

    assert first == second


def test_optional_argument_without_default_resolves_to_empty() -> None:
    template = _template("ls {{flags}} /tmp", ArgumentSpec("flags"))

    assert resolve(template, {}).command == "ls  /tmp"


def test_split_statements_handles_continuations_comments_and_blanks() -> None:
    body = "\n".join(
        [
            "# build first",
            "cargo build \\",
            "  --release",
            "",
            "cargo test",
            "   ",
        ]
    )

    assert split_statements(body) == ["cargo build --release", "cargo test"]


def test_duplicate_argument_names_are_rejected() -> None:
    with pytest.raises(TemplateError):
        _template("echo {{x}}", ArgumentSpec("x"), ArgumentSpec("x"))


def test_template_without_command_body_is_rejected() -> None:
    with pytest.raises(TemplateError):
        CommandTemplate.from_dict("broken", {"name": "broken", "command": "   "})


def test_plan_requires_steps_and_increasing_sequences() -> None:
    with pytest.raises(ValueError):
        Plan(steps=(), source="nothing")

    step = resolve(_template("true"))
    with pytest.raises(ValueError):
        Plan(steps=(step, step), source="dupes")
