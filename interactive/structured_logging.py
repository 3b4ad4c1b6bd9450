"""JSONL log of step state changes for a walkthrough run."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .state import EventChannel, StepStateChanged


@dataclass(slots=True)
class LogPaths:
    base: Path
    events: Path


class StepEventLog:
    """Writes one JSON line per step state change published on the channel."""

    def __init__(self, run_id: str, paths: LogPaths) -> None:
        self.run_id = run_id
        self.paths = paths
        self._seq = 0
        self._events_file = paths.events.open("a", encoding="utf-8")
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, channel: EventChannel) -> "StepEventLog":
        self._unsubscribe = channel.subscribe(self.record)
        return self

    def record(self, event: StepStateChanged) -> int:
        self._seq += 1
        payload = {
            "ts": time.time(),
            "run_id": self.run_id,
            "seq": self._seq,
            "step_id": event.step_id,
            "previous": event.previous.value,
            "status": event.status.value,
            "error": event.error,
            "current_index": event.current_index,
        }
        self._events_file.write(json.dumps(payload, ensure_ascii=False) + "\n")
        self._events_file.flush()
        return self._seq

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if not self._events_file.closed:
            self._events_file.close()


def prepare_log_paths(run_id: str, base_dir: Path) -> LogPaths:
    base_dir.mkdir(parents=True, exist_ok=True)
    return LogPaths(base=base_dir, events=base_dir / "events.jsonl")
