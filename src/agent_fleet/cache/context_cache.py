"""Content-addressed cache of task outcomes with in-flight coordination.

A fingerprint is a SHA-256 over the canonical JSON of a task's inputs.
Recorded outcomes let the scheduler complete an identical task without an
agent. While one task executes a fingerprint, other tasks carrying the
same fingerprint are parked as waiters instead of being dispatched again.
"""

import asyncio
import hashlib
import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Set

from ..core.task import TaskInputs, TaskOutcome
from .store import ContextStore, MemoryContextStore

logger = logging.getLogger(__name__)


def compute_fingerprint(inputs: TaskInputs) -> str:
    """Deterministic hash of a task's semantically relevant inputs."""
    canonical = json.dumps(
        inputs.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class _InFlight:
    owner: str
    waiters: Set[str] = field(default_factory=set)
    done: threading.Event = field(default_factory=threading.Event)
    outcome: Optional[TaskOutcome] = None


@dataclass
class _FingerprintLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class ContextCache:
    """Idempotent outcome cache keyed by fingerprint."""

    def __init__(self, store: Optional[ContextStore] = None):
        self.store = store if store is not None else MemoryContextStore()
        self._in_flight: Dict[str, _InFlight] = {}
        # Entries live only while some thread uses them
        self._locks: Dict[str, _FingerprintLock] = {}
        self._locks_guard = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def compute_fingerprint(inputs: TaskInputs) -> str:
        return compute_fingerprint(inputs)

    @contextmanager
    def _locked(self, fingerprint: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(fingerprint)
            if entry is None:
                entry = self._locks[fingerprint] = _FingerprintLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[fingerprint]

    def lookup(self, fingerprint: str) -> Optional[TaskOutcome]:
        """Return the recorded outcome, or None on a miss."""
        outcome = self.store.get(fingerprint)
        if outcome is None:
            self.misses += 1
            return None
        self.hits += 1
        return outcome.model_copy(update={"from_cache": True})

    def record(self, fingerprint: str, outcome: TaskOutcome) -> None:
        """Store an outcome; recording the same fingerprint again overwrites."""
        self.store.put(fingerprint, outcome.model_copy(update={"from_cache": False}))
        logger.debug(f"Recorded context cache entry {fingerprint[:12]}")

    def begin(self, fingerprint: str, task_id: str) -> bool:
        """Claim execution of a fingerprint.

        Returns True when ``task_id`` owns the execution. Returns False when
        another task already runs it; ``task_id`` is then parked as a waiter.
        """
        with self._locked(fingerprint):
            flight = self._in_flight.get(fingerprint)
            if flight is None:
                self._in_flight[fingerprint] = _InFlight(owner=task_id)
                return True
            if flight.owner == task_id:
                return True
            if task_id not in flight.waiters:
                logger.info(
                    f"Task {task_id} waits for in-flight fingerprint "
                    f"{fingerprint[:12]} owned by {flight.owner}"
                )
            flight.waiters.add(task_id)
            return False

    def finish(self, fingerprint: str, task_id: str, outcome: TaskOutcome) -> Set[str]:
        """Release the in-flight slot and return the parked waiters.

        Successful, non-cancelled outcomes are recorded first so waiters find
        them on their next lookup. After a failure the waiters become
        dispatchable again and one of them takes over execution.
        """
        with self._locked(fingerprint):
            flight = self._in_flight.get(fingerprint)
            if flight is None or flight.owner != task_id:
                return set()
            if outcome.success and not outcome.cancelled:
                self.record(fingerprint, outcome)
            del self._in_flight[fingerprint]
            flight.outcome = outcome
            flight.done.set()
            return set(flight.waiters)

    def is_in_flight(self, fingerprint: str) -> bool:
        return fingerprint in self._in_flight

    def owner_of(self, fingerprint: str) -> Optional[str]:
        flight = self._in_flight.get(fingerprint)
        return flight.owner if flight else None

    async def wait(self, fingerprint: str, timeout: Optional[float] = None) -> Optional[TaskOutcome]:
        """Await the in-flight execution of ``fingerprint``.

        Returns the owner's outcome, the recorded outcome when nothing is in
        flight, or None on timeout.
        """
        flight = self._in_flight.get(fingerprint)
        if flight is None:
            return self.lookup(fingerprint)
        finished = await asyncio.to_thread(flight.done.wait, timeout)
        return flight.outcome if finished else None

    def clear(self) -> None:
        self.store.clear()
