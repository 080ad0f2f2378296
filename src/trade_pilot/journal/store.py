"""JSONL journal store for bot events."""

from __future__ import annotations

import json
import threading
from datetime import date
from pathlib import Path
from typing import Any

from trade_pilot.utils.clock import Clock, SystemClock

_ALLOWED_EVENT_TYPES = {
    "scan",
    "decision",
    "trade",
    "order",
    "exit_target",
    "state_change",
    "error",
}


class JournalStore:
    """Append-only JSONL event store, one file per day."""

    def __init__(self, journal_dir: Path, *, clock: Clock | None = None) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        """Append one event line to the daily JSONL file."""
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = self._clock.now()
        record = {
            "timestamp": now.isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        line = json.dumps(record, ensure_ascii=True, default=str) + "\n"
        with self._lock:
            with self._file_path_for_day(now.date()).open("a", encoding="utf-8") as f:
                f.write(line)

    def load_recent(self, limit: int, *, event_type: str | None = None) -> list[dict[str, Any]]:
        """Load recent events (oldest first) from the most recent journal files."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        files = sorted(self._journal_dir.glob("*.jsonl"), reverse=True)
        for file in files:
            lines = file.read_text(encoding="utf-8").splitlines()
            for line in reversed(lines):
                if not line.strip():
                    continue
                row = json.loads(line)
                if event_type is not None and row.get("event_type") != event_type:
                    continue
                rows.append(row)
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def load_day(self, day: date) -> list[dict[str, Any]]:
        """All events written on ``day``, oldest first."""
        path = self._file_path_for_day(day)
        if not path.exists():
            return []
        return [
            json.loads(line)
            for line in path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
