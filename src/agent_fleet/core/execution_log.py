"""Append-only execution log and chain-of-thought recorder.

Entries are immutable and kept per task. When a logs directory is given,
every entry is also appended to ``{logs_dir}/executions/{task_id}.jsonl``
and flushed immediately so the trail survives crashes; a new instance
pointed at the same directory replays those files.
"""

import itertools
import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .task import utcnow
from ..utils.error_handling import log_and_ignore

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class LogEntry(BaseModel):
    """Timestamped execution record for one task."""

    model_config = ConfigDict(frozen=True)

    kind: str = "log"
    task_id: str
    level: LogLevel
    message: str
    source: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    sequence: int = 0
    milestone: bool = False


class ChainOfThoughtEntry(BaseModel):
    """One line of agent reasoning for one task."""

    model_config = ConfigDict(frozen=True)

    kind: str = "cot"
    task_id: str
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    sequence: int = 0
    milestone: bool = False


Entry = Union[LogEntry, ChainOfThoughtEntry]
Subscriber = Callable[[Entry], None]


class ExecutionLog:
    """Per-task audit trail; ``append`` never mutates or drops prior entries."""

    def __init__(self, logs_dir: Optional[Path] = None):
        self._logs: Dict[str, List[LogEntry]] = {}
        self._thoughts: Dict[str, List[ChainOfThoughtEntry]] = {}
        # next() on itertools.count is atomic under the GIL: arrival order
        # without a lock
        self._arrival = itertools.count(1)
        self._subscribers: List[Subscriber] = []
        self._dir = Path(logs_dir) / "executions" if logs_dir else None
        if self._dir is not None:
            self._replay()

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def append(self, entry: Entry) -> Entry:
        """Stamp arrival order and store the entry."""
        entry = entry.model_copy(update={"sequence": next(self._arrival)})
        if isinstance(entry, ChainOfThoughtEntry):
            self._thoughts.setdefault(entry.task_id, []).append(entry)
            logger.debug(entry.content, extra={"task_id": entry.task_id, "phase": "thinking"})
        else:
            self._logs.setdefault(entry.task_id, []).append(entry)
            extra = {"task_id": entry.task_id}
            if entry.source:
                extra["source"] = entry.source
            logger.log(_PY_LEVELS[LogLevel(entry.level)], entry.message, extra=extra)

        self._persist(entry)
        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception as e:
                log_and_ignore(e, "Execution log subscriber failed", logger_instance=logger)
        return entry

    def log(
        self,
        task_id: str,
        level: LogLevel,
        message: str,
        source: Optional[str] = None,
        milestone: bool = False,
    ) -> LogEntry:
        return self.append(LogEntry(
            task_id=task_id,
            level=level,
            message=message,
            source=source,
            milestone=milestone,
        ))

    def think(self, task_id: str, content: str, milestone: bool = False) -> ChainOfThoughtEntry:
        return self.append(ChainOfThoughtEntry(task_id=task_id, content=content, milestone=milestone))

    def entries(self, task_id: str) -> Iterator[LogEntry]:
        """Log entries for a task in chronological order."""
        yield from sorted(self._logs.get(task_id, ()), key=_chronological)

    def thoughts(self, task_id: str) -> Iterator[ChainOfThoughtEntry]:
        yield from sorted(self._thoughts.get(task_id, ()), key=_chronological)

    def timeline(self, task_id: str) -> Iterator[Entry]:
        """Logs and reasoning interleaved chronologically."""
        merged: List[Entry] = [*self._logs.get(task_id, ()), *self._thoughts.get(task_id, ())]
        yield from sorted(merged, key=_chronological)

    def count(self, task_id: Optional[str] = None, level: Optional[LogLevel] = None) -> int:
        if task_id is not None:
            buckets = [self._logs.get(task_id, [])]
        else:
            buckets = list(self._logs.values())
        return sum(
            1 for bucket in buckets for e in bucket
            if level is None or e.level == level
        )

    def _persist(self, entry: Entry) -> None:
        if self._dir is None:
            return
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            with open(self._dir / f"{entry.task_id}.jsonl", "a") as f:
                f.write(entry.model_dump_json() + "\n")
                f.flush()
        except OSError as e:
            log_and_ignore(e, f"Execution log write failed for {entry.task_id}", logger_instance=logger)

    def _replay(self) -> None:
        if not self._dir.exists():
            return
        last_sequence = 0
        for path in sorted(self._dir.glob("*.jsonl")):
            with open(path) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                        if data.get("kind") == "cot":
                            entry = ChainOfThoughtEntry(**data)
                            self._thoughts.setdefault(entry.task_id, []).append(entry)
                        else:
                            entry = LogEntry(**data)
                            self._logs.setdefault(entry.task_id, []).append(entry)
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning(f"Skipping malformed log line in {path.name}: {e}")
                        continue
                    last_sequence = max(last_sequence, entry.sequence)
        self._arrival = itertools.count(last_sequence + 1)


def _chronological(entry: Entry) -> tuple:
    return (entry.timestamp, entry.sequence)
