import os
from pathlib import Path

import pytest

from agentic.history import HistoryError, HistoryStore


def test_append_and_read_back_in_order(tmp_path: Path) -> None:
    store = HistoryStore(tmp_path / "nested" / "history.jsonl")

    store.append({"source": "list files", "state": "recorded"})
    store.append({"source": "show disk", "state": "failed"})

    entries = store.entries()
    assert [entry["source"] for entry in entries] == ["list files", "show disk"]
    assert "recorded_at" in entries[0]
    assert [entry["source"] for entry in store.entries(limit=1)] == ["show disk"]
    assert store.entries(limit=0) == []
    assert not store.lock_file.exists()


def test_missing_log_reads_as_empty(tmp_path: Path) -> None:
    assert HistoryStore(tmp_path / "history.jsonl").entries() == []


def test_corrupt_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "history.jsonl"
    path.write_text('{"source": "a"}\nnot json\n\n[1, 2]\n{"source": "b"}\n', encoding="utf-8")
    events: list[dict] = []

    entries = HistoryStore(path, event_hook=events.append).entries()

    assert [entry["source"] for entry in entries] == ["a", "b"]
    assert events == [{"event": "history_line_invalid", "path": str(path), "line": 2}]


def test_held_lock_times_out(tmp_path: Path) -> None:
    store = HistoryStore(tmp_path / "history.jsonl", lock_timeout_seconds=0.1)
    fd = os.open(store.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    os.close(fd)

    with pytest.raises(HistoryError):
        store.append({"source": "blocked"})

    store.lock_file.unlink()
    store.append({"source": "free"})
    assert [entry["source"] for entry in store.entries()] == ["free"]


def test_events_go_to_a_sibling_file(tmp_path: Path) -> None:
    store = HistoryStore(tmp_path / "history.jsonl")

    store.record_event({"event": "model_call_start", "role": "planner"})

    assert store.events_path == tmp_path / "history.events.jsonl"
    assert "model_call_start" in store.events_path.read_text(encoding="utf-8")
    assert store.entries() == []
