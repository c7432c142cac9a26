"""Mirror task lifecycle to the external issue tracker.

The core never waits on the tracker. Status changes and milestone log
entries are queued as ``SyncEvent``s and drained by an async worker that
runs tracker calls in a thread, retrying transient failures with bounded
exponential backoff. Each status event pushes the task's *current* state,
so once the tracker comes back the next event (or ``reconcile()`` after a
restart) catches up with anything that was missed. Internal task state is
always the source of truth.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ..core.context import OrchestrationContext
from ..core.execution_log import ChainOfThoughtEntry, Entry, LogLevel
from ..core.task import Task, TaskStatus, utcnow
from ..errors import SyncDegraded, TrackerUnavailable
from ..integrations.tracker import IssueState, IssueTracker
from ..safeguards.retry_handler import RetryHandler
from ..utils.error_handling import log_and_ignore

logger = logging.getLogger(__name__)

SOURCE = "issue-sync"

TRANSIENT_ERRORS = (TrackerUnavailable, ConnectionError, TimeoutError)


class SyncEventType(str, Enum):
    STATUS = "status"
    COMMENT = "comment"


class SyncEvent(BaseModel):
    type: SyncEventType
    task_id: str
    status: Optional[TaskStatus] = None
    body: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


def issue_state_for(task: Task) -> IssueState:
    return IssueState.CLOSED if task.status == TaskStatus.COMPLETED else IssueState.OPEN


def labels_for(task: Task) -> List[str]:
    return [
        f"status:{TaskStatus(task.status).value}",
        f"persona:{task.persona.value.lower()}",
        f"priority:{task.priority.value}",
    ]


def issue_body(task: Task) -> str:
    deps = ", ".join(task.depends_on) if task.depends_on else "none"
    return (
        f"{task.description}\n\n"
        f"---\n"
        f"Task: `{task.id}` | Workflow: `{task.workflow_id}` | Dependencies: {deps}\n"
        f"<!-- agent-fleet:task:{task.id} -->"
    )


class IssueSynchronizer:
    """Best-effort, eventually consistent mirror of task state."""

    def __init__(
        self,
        ctx: OrchestrationContext,
        tracker: IssueTracker,
        retry: Optional[RetryHandler] = None,
        latency_window: int = 50,
        poll_interval: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ctx = ctx
        self.tracker = tracker
        self.retry = retry or RetryHandler()
        self.poll_interval = poll_interval
        self._sleep = sleep
        # deque appends/pops are thread-safe; producers never block
        self._pending: Deque[SyncEvent] = deque()
        self._latencies: Deque[float] = deque(maxlen=latency_window)
        # Tasks whose last status push degraded; pushed again once the tracker answers
        self._stale: Set[str] = set()
        self._running = False
        self.degraded = False
        self.degraded_events = 0
        self.synced_events = 0

        ctx.add_status_listener(self.on_status_change)
        ctx.execution_log.subscribe(self.on_log_entry)

    # -- producers (called from the core, must not block) ------------------

    def on_status_change(self, task: Task, previous: Optional[TaskStatus]) -> None:
        if task.issue_ref is None and task.status == TaskStatus.PENDING:
            return
        self.enqueue(SyncEvent(type=SyncEventType.STATUS, task_id=task.id, status=task.status))

    def on_log_entry(self, entry: Entry) -> None:
        if not entry.milestone:
            return
        if isinstance(entry, ChainOfThoughtEntry):
            body = f"Agent reasoning: {entry.content}"
        else:
            source = f" [{entry.source}]" if entry.source else ""
            body = f"{LogLevel(entry.level).value.upper()}{source}: {entry.message}"
        self.enqueue(SyncEvent(type=SyncEventType.COMMENT, task_id=entry.task_id, body=body))

    def enqueue(self, event: SyncEvent) -> None:
        self._pending.append(event)

    @property
    def pending(self) -> int:
        return len(self._pending)

    # -- worker --------------------------------------------------------------

    async def run(self) -> None:
        """Drain events until stop() is called."""
        self._running = True
        logger.info(f"Issue synchronizer started ({type(self.tracker).__name__})")
        while self._running:
            if not await self.process_next():
                await asyncio.sleep(self.poll_interval)
        logger.info("Issue synchronizer stopped")

    def stop(self) -> None:
        self._running = False

    async def drain(self) -> int:
        """Process everything queued right now; returns the number of events handled."""
        handled = 0
        while await self.process_next():
            handled += 1
        return handled

    async def process_next(self) -> bool:
        try:
            event = self._pending.popleft()
        except IndexError:
            return False
        await self._process(event)
        return True

    async def _process(self, event: SyncEvent) -> None:
        task = self.ctx.tasks.get(event.task_id)
        if task is None:
            logger.warning(f"Dropping sync event for unknown task {event.task_id}")
            return
        try:
            if event.type == SyncEventType.STATUS:
                await self._sync_status(task)
            else:
                await self._sync_comment(task, event.body or "")
            self.synced_events += 1
        except SyncDegraded as e:
            self.degraded = True
            self.degraded_events += 1
            if event.type == SyncEventType.STATUS:
                self._stale.add(task.id)
            logger.error(str(e))
            self.ctx.execution_log.log(task.id, LogLevel.ERROR, f"SyncDegraded: {e}", source=SOURCE)
        except Exception as e:
            # Permanent tracker errors must not leak into task progress
            log_and_ignore(e, f"Issue sync failed for task {task.id}", logger_instance=logger, level=logging.ERROR)
            self.ctx.execution_log.log(task.id, LogLevel.WARN, f"Issue sync failed: {e}", source=SOURCE)

    async def _ensure_issue(self, task: Task) -> Optional[str]:
        """Create the remote issue once; the reference is persisted immediately."""
        if task.issue_ref is not None:
            return task.issue_ref
        if task.status == TaskStatus.PENDING:
            return None
        title = f"[{task.persona.value}] {task.title}"
        ref = await self._call(task.id, "create_issue", self.tracker.create_issue, title, issue_body(task))
        with self.ctx.lock:
            if task.issue_ref is None:
                task.issue_ref = str(ref)
                self.ctx.persist(task)
        logger.info(f"Linked task {task.id} to issue {task.issue_ref}")
        return task.issue_ref

    async def _sync_status(self, task: Task) -> None:
        ref = await self._ensure_issue(task)
        if ref is None:
            return
        await self._call(
            task.id, "update_issue", self.tracker.update_issue,
            ref, issue_state_for(task), labels_for(task),
        )

    async def _sync_comment(self, task: Task, body: str) -> None:
        ref = task.issue_ref
        if ref is None:
            ref = await self._ensure_issue(task)
        if ref is None:
            logger.debug(f"No issue for pending task {task.id}; dropping comment")
            return
        await self._call(task.id, "add_comment", self.tracker.add_comment, ref, body)

    async def _call(self, task_id: str, operation: str, fn: Callable, *args):
        failures = 0
        while True:
            started = time.monotonic()
            try:
                result = await asyncio.to_thread(fn, *args)
            except TRANSIENT_ERRORS as e:
                self._latencies.append((time.monotonic() - started) * 1000)
                failures += 1
                if not self.retry.should_retry(failures):
                    raise SyncDegraded(task_id, failures, str(e)) from e
                delay = self.retry.calculate_backoff(failures)
                logger.warning(
                    f"{operation} for task {task_id} failed (attempt {failures}/"
                    f"{self.retry.max_attempts}): {e}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                continue
            self._latencies.append((time.monotonic() - started) * 1000)
            if self.degraded:
                logger.info("Issue tracker reachable again; sync resumed")
                self.degraded = False
                self._requeue_stale()
            return result

    def _requeue_stale(self) -> None:
        for task_id in sorted(self._stale):
            task = self.ctx.tasks.get(task_id)
            if task is not None:
                self.enqueue(SyncEvent(type=SyncEventType.STATUS, task_id=task_id, status=task.status))
        self._stale.clear()

    # -- startup reconciliation -------------------------------------------

    async def reconcile(self) -> Dict[str, int]:
        """Align remote issues with persisted task state after a restart.

        Every task with a reference gets its current state and labels pushed,
        since transitions made while no synchronizer ran (a crash with queued
        events, CLI commands) never reached the tracker. ``updated`` counts the
        issues whose open/closed state had drifted. Tasks past pending without
        a reference get their issue created. References are never recreated.
        """
        counts = {"checked": 0, "updated": 0, "created": 0, "failed": 0}
        for task in sorted(self.ctx.tasks.values(), key=lambda t: t.sequence):
            if task.archived:
                continue
            try:
                if task.issue_ref is None:
                    if task.status == TaskStatus.PENDING:
                        continue
                    await self._sync_status(task)
                    counts["created"] += 1
                    continue
                counts["checked"] += 1
                remote = await self._call(task.id, "get_issue", self.tracker.get_issue, task.issue_ref)
                await self._sync_status(task)
                self._stale.discard(task.id)
                if IssueState(remote) != issue_state_for(task):
                    counts["updated"] += 1
            except SyncDegraded as e:
                self.degraded = True
                self._stale.add(task.id)
                counts["failed"] += 1
                self.ctx.execution_log.log(task.id, LogLevel.ERROR, f"SyncDegraded: {e}", source=SOURCE)
            except Exception as e:
                log_and_ignore(e, f"Reconcile failed for task {task.id}", logger_instance=logger, level=logging.ERROR)
                counts["failed"] += 1
                self.ctx.execution_log.log(task.id, LogLevel.WARN, f"Issue sync failed: {e}", source=SOURCE)
        logger.info(f"Reconciled issues: {counts}")
        return counts

    # -- metrics -------------------------------------------------------------

    @property
    def average_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)
