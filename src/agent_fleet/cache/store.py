"""Backends for the context cache: ``get(fingerprint)`` / ``put(fingerprint, outcome)``."""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from ..core.task import TaskOutcome
from ..utils.atomic_io import atomic_write_model

logger = logging.getLogger(__name__)


class ContextStore(Protocol):
    """Context store boundary."""

    def get(self, fingerprint: str) -> Optional[TaskOutcome]:
        ...

    def put(self, fingerprint: str, outcome: TaskOutcome) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryContextStore:
    """Process-local store; lost on restart."""

    def __init__(self):
        self._data: Dict[str, TaskOutcome] = {}
        self._lock = threading.Lock()

    def get(self, fingerprint: str) -> Optional[TaskOutcome]:
        with self._lock:
            return self._data.get(fingerprint)

    def put(self, fingerprint: str, outcome: TaskOutcome) -> None:
        with self._lock:
            self._data[fingerprint] = outcome

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class FileContextStore:
    """One JSON file per fingerprint, with optional time-to-live.

    Expired entries are deleted on read and reported as a miss.
    """

    def __init__(self, cache_dir: Path, ttl_seconds: Optional[int] = None):
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_seconds
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, fingerprint: str) -> Path:
        return self.cache_dir / f"{fingerprint}.json"

    def get(self, fingerprint: str) -> Optional[TaskOutcome]:
        path = self._path(fingerprint)
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return None

        if self.ttl_seconds is not None and age > self.ttl_seconds:
            logger.debug(f"Context cache entry {fingerprint[:12]} expired ({age:.0f}s old)")
            path.unlink(missing_ok=True)
            return None

        try:
            return TaskOutcome(**json.loads(path.read_text()))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Discarding unreadable context cache entry {path.name}: {e}")
            path.unlink(missing_ok=True)
            return None

    def put(self, fingerprint: str, outcome: TaskOutcome) -> None:
        atomic_write_model(self._path(fingerprint), outcome)

    def clear(self) -> int:
        removed = 0
        for path in self.cache_dir.glob("*.json"):
            path.unlink(missing_ok=True)
            removed += 1
        return removed
