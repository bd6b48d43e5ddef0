from pathlib import Path
from typing import Any

import pytest

from agentic.workflows import WorkflowNotFoundError, WorkflowStore

SHIPPED = Path(__file__).resolve().parents[1] / "workflows"


def test_shipped_workflows_are_discovered_by_relative_identifier() -> None:
    store = WorkflowStore([SHIPPED])

    identifiers = [template.identifier for template in store.list()]

    assert identifiers == [
        "docker/build_and_run_app",
        "git/clone_with_ssh",
        "rust/create_new_project",
    ]
    docker = store.get("docker/build_and_run_app")
    assert docker.name == "Build and run Docker application"
    assert docker.argument("hostPort") is not None
    assert docker.argument("hostPort").default_value == "8080"
    assert docker.author == "Agentic CLI Team"
    assert "pwsh" in docker.shells


def test_search_matches_identifier_name_description_and_tags() -> None:
    store = WorkflowStore([SHIPPED])

    assert [t.identifier for t in store.search("SSH")] == ["git/clone_with_ssh"]
    assert [t.identifier for t in store.search("cargo")] == ["rust/create_new_project"]
    assert [t.identifier for t in store.search("port mapping")] == ["docker/build_and_run_app"]
    assert len(store.search("")) == 3


def test_by_tag_is_case_insensitive() -> None:
    store = WorkflowStore([SHIPPED])

    assert [t.identifier for t in store.by_tag("Container")] == ["docker/build_and_run_app"]
    assert store.by_tag("nothing") == []


def test_unknown_identifier_raises() -> None:
    with pytest.raises(WorkflowNotFoundError) as excinfo:
        WorkflowStore([SHIPPED]).get("docker/missing")

    assert "docker/missing" in str(excinfo.value)


def test_malformed_files_are_skipped_and_reported(tmp_path: Path) -> None:
    (tmp_path / "good.yml").write_text("name: Good\ncommand: echo ok\n", encoding="utf-8")
    (tmp_path / "broken.yaml").write_text("name: [unclosed\n", encoding="utf-8")
    (tmp_path / "empty.yaml").write_text("", encoding="utf-8")
    (tmp_path / "nocommand.yaml").write_text("name: Missing\n", encoding="utf-8")
    events: list[dict[str, Any]] = []

    store = WorkflowStore([tmp_path], event_hook=events.append)

    assert [t.identifier for t in store.list()] == ["good"]
    invalid = sorted(e["identifier"] for e in events if e["event"] == "workflow_invalid")
    assert invalid == ["broken", "empty", "nocommand"]


def test_first_search_path_wins_and_reload_picks_up_new_files(tmp_path: Path) -> None:
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    (first / "build.yaml").write_text("name: First\ncommand: make\n", encoding="utf-8")
    (second / "build.yaml").write_text("name: Second\ncommand: ninja\n", encoding="utf-8")
    store = WorkflowStore([first, second, tmp_path / "absent"])

    assert store.get("build").name == "First"

    (second / "test.yaml").write_text("name: Test\ncommand: make test\n", encoding="utf-8")
    assert store.reload() == 2
    assert store.get("test").command == "make test"
