from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

HistoryEventHook = Callable[[dict[str, Any]], None]


class HistoryError(RuntimeError):
    """Raised when the history log cannot be read or written."""


class HistoryStore:
    """Append-only JSON-lines log of pipeline outcomes.

    Writers are serialised through an exclusive lock file next to the log.
    Events go to a sibling ``.events.jsonl`` file.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_timeout_seconds: float = 3.0,
        event_hook: HistoryEventHook | None = None,
    ) -> None:
        self.path = Path(path)
        self.lock_file = self.path.with_name(self.path.name + ".lock")
        self.events_path = self.path.with_name(self.path.stem + ".events.jsonl")
        self.lock_timeout_seconds = lock_timeout_seconds
        self.event_hook = event_hook

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @contextmanager
    def _lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise HistoryError(
                        f"Timed out waiting for history lock {self.lock_file}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _append_line(self, path: Path, record: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(record, ensure_ascii=False, default=str)
            with self._lock():
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            raise HistoryError(f"Could not write to {path}: {exc}") from exc

    def append(self, entry: dict[str, Any]) -> dict[str, Any]:
        record = {"recorded_at": self._utcnow_iso(), **entry}
        self._append_line(self.path, record)
        self._emit({"event": "history_appended", "path": str(self.path)})
        return record

    def record_event(self, event: dict[str, Any]) -> None:
        self._append_line(self.events_path, {"at": self._utcnow_iso(), **event})

    def entries(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Return recorded entries, oldest first; ``limit`` keeps the newest ones."""
        if not self.path.exists():
            return []
        records: list[dict[str, Any]] = []
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise HistoryError(f"Could not read {self.path}: {exc}") from exc
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                self._emit(
                    {"event": "history_line_invalid", "path": str(self.path), "line": number}
                )
                continue
            if isinstance(record, dict):
                records.append(record)
        if limit is not None:
            return records[-limit:] if limit > 0 else []
        return records
