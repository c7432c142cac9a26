"""Dependency scheduler: keeps the task DAG and decides what may run."""

import logging
from collections import deque
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .context import OrchestrationContext
from .execution_log import LogLevel
from .task import REQUEUEABLE_STATUSES, Task, TaskOutcome, TaskStatus
from ..errors import (
    CycleDetected,
    InvalidTransition,
    TaskAlreadyRegistered,
    UnknownDependency,
)

logger = logging.getLogger(__name__)

SOURCE = "scheduler"

# Statuses a failing ancestor no longer affects
_SETTLED = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


def find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one cycle (first node repeated at the end) or None.

    ``graph`` maps task id -> dependency ids. Depth-first traversal marks
    nodes in progress (GRAY) and finished (BLACK); reaching a GRAY node is
    a back edge.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GRAY
        path.append(node)
        for dep in graph.get(node, ()):
            state = color.get(dep, BLACK)  # unknown ids are checked elsewhere
            if state == GRAY:
                return path[path.index(dep):] + [dep]
            if state == WHITE:
                cycle = visit(dep)
                if cycle:
                    return cycle
        path.pop()
        color[node] = BLACK
        return None

    for node in graph:
        if color[node] == WHITE:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


class ReadyTasks:
    """Restartable view of the tasks eligible to run.

    Every iteration recomputes from current state, highest priority first,
    then oldest first. Iterating has no side effects.
    """

    def __init__(self, scheduler: "DependencyScheduler"):
        self._scheduler = scheduler

    def __iter__(self) -> Iterator[Task]:
        eligible = [t for t in self._scheduler.ctx.tasks.values() if self._scheduler.is_eligible(t)]
        yield from sorted(eligible, key=lambda t: t.sort_key)

    def __len__(self) -> int:
        return sum(1 for t in self._scheduler.ctx.tasks.values() if self._scheduler.is_eligible(t))

    def ids(self) -> List[str]:
        return [t.id for t in self]


class DependencyScheduler:
    """Maintains the dependency DAG and the task lifecycle transitions."""

    def __init__(self, ctx: OrchestrationContext):
        self.ctx = ctx
        self._dependents: Dict[str, Set[str]] = {}
        self.rebuild_index()

    # -- graph construction -------------------------------------------------

    def rebuild_index(self) -> None:
        """Recompute reverse edges, e.g. after restoring persisted tasks."""
        self._dependents = {task_id: set() for task_id in self.ctx.tasks}
        for task in self.ctx.tasks.values():
            for dep in task.depends_on:
                self._dependents.setdefault(dep, set()).add(task.id)

    def _graph(self) -> Dict[str, List[str]]:
        return {task_id: list(task.depends_on) for task_id, task in self.ctx.tasks.items()}

    def register_task(self, task: Task) -> Task:
        """Add a task to the graph.

        Raises:
            TaskAlreadyRegistered: the id is taken
            UnknownDependency: a dependency id is not registered
            CycleDetected: the task's edges would close a cycle
        """
        return self.register_tasks([task])[0]

    def register_tasks(self, tasks: Iterable[Task]) -> List[Task]:
        """Register a batch atomically; members may depend on each other in any order."""
        batch = list(tasks)
        with self.ctx.lock:
            incoming: Dict[str, Task] = {}
            for task in batch:
                if task.id in self.ctx.tasks or task.id in incoming:
                    raise TaskAlreadyRegistered(task.id)
                if task.status != TaskStatus.PENDING:
                    raise InvalidTransition(task.id, TaskStatus(task.status).value, TaskStatus.PENDING.value)
                incoming[task.id] = task

            for task in batch:
                for dep in task.depends_on:
                    if dep not in self.ctx.tasks and dep not in incoming:
                        raise UnknownDependency(task.id, dep)

            candidate = self._graph()
            candidate.update({task.id: list(task.depends_on) for task in batch})
            cycle = find_cycle(candidate)
            if cycle:
                raise CycleDetected(cycle)

            for task in batch:
                task.sequence = self.ctx.next_sequence()
                self.ctx.tasks[task.id] = task
                self._dependents.setdefault(task.id, set())
                for dep in task.depends_on:
                    self._dependents.setdefault(dep, set()).add(task.id)
                self.ctx.task_changed(task, None)
                logger.info(f"Registered task {task.id} ({task.persona.value}, deps={task.depends_on})")

            self.promote_ready()
        return batch

    def add_dependency(self, task_id: str, dependency_id: str) -> None:
        """Add one edge to a task that has not started yet; graph unchanged on failure."""
        with self.ctx.lock:
            task = self.ctx.get_task(task_id)
            if dependency_id not in self.ctx.tasks:
                raise UnknownDependency(task_id, dependency_id)
            if task.status not in (TaskStatus.PENDING, TaskStatus.READY):
                raise InvalidTransition(task_id, TaskStatus(task.status).value, "pending")
            if dependency_id in task.depends_on:
                return

            candidate = self._graph()
            candidate[task_id] = candidate[task_id] + [dependency_id]
            cycle = find_cycle(candidate)
            if cycle:
                raise CycleDetected(cycle)

            task.depends_on.append(dependency_id)
            self._dependents.setdefault(dependency_id, set()).add(task_id)
            previous = TaskStatus(task.status)
            if previous == TaskStatus.READY and not self.dependencies_met(task):
                task.mark_waiting()
            self.ctx.task_changed(task, previous)

    # -- readiness ----------------------------------------------------------

    def dependencies_met(self, task: Task) -> bool:
        return all(
            self.ctx.tasks[dep].status == TaskStatus.COMPLETED
            for dep in task.depends_on
        )

    def is_eligible(self, task: Task) -> bool:
        return (
            task.status in (TaskStatus.PENDING, TaskStatus.READY)
            and not task.archived
            and not task.cancel_requested
            and self.dependencies_met(task)
        )

    def ready_tasks(self) -> ReadyTasks:
        return ReadyTasks(self)

    def promote_ready(self) -> List[str]:
        """Move every eligible pending task to ready."""
        promoted = []
        with self.ctx.lock:
            for task in self.ready_tasks():
                if task.status == TaskStatus.PENDING:
                    task.mark_ready()
                    self.ctx.task_changed(task, TaskStatus.PENDING)
                    promoted.append(task.id)
        if promoted:
            logger.debug(f"Promoted to ready: {promoted}")
        return promoted

    # -- context cache ------------------------------------------------------

    def fingerprint_for(self, task: Task) -> str:
        outputs = [list(self.ctx.tasks[dep].artifacts) for dep in task.depends_on]
        return self.ctx.cache.compute_fingerprint(task.inputs(outputs))

    def apply_cache(self) -> List[str]:
        """Complete ready tasks whose fingerprint already has a recorded outcome.

        Repeats until stable because fast-pathed tasks can make their
        dependents ready, and those may hit the cache as well.
        """
        completed: List[str] = []
        with self.ctx.lock:
            progressed = True
            while progressed:
                progressed = False
                for task in list(self.ready_tasks()):
                    if task.status != TaskStatus.READY:
                        continue
                    fingerprint = self.fingerprint_for(task)
                    if self.ctx.cache.is_in_flight(fingerprint):
                        continue
                    outcome = self.ctx.cache.lookup(fingerprint)
                    if outcome is None:
                        continue
                    task.fingerprint = fingerprint
                    self.ctx.execution_log.log(
                        task.id, LogLevel.INFO,
                        f"Inputs unchanged (fingerprint {fingerprint[:12]}); reusing cached outcome",
                        source=SOURCE,
                    )
                    self.on_task_completed(task.id, outcome)
                    completed.append(task.id)
                    progressed = True
        return completed

    # -- lifecycle transitions ---------------------------------------------

    def on_task_completed(self, task_id: str, outcome: TaskOutcome) -> List[str]:
        """Apply a terminal outcome; returns the ids of dependents it blocked.

        Outcomes apply to in-progress tasks. Only a cached outcome may
        complete a ready task directly.
        """
        with self.ctx.lock:
            task = self.ctx.get_task(task_id)
            previous = TaskStatus(task.status)
            if previous == TaskStatus.READY and not outcome.from_cache:
                target = TaskStatus.COMPLETED if outcome.success else TaskStatus.FAILED
                raise InvalidTransition(task_id, previous.value, target.value)

            if outcome.cancelled or (task.cancel_requested and not outcome.success):
                task.mark_cancelled(outcome.error)
                self.ctx.task_changed(task, previous)
                self.ctx.execution_log.log(task_id, LogLevel.WARN, "Task cancelled", source=SOURCE)
                return self._block_dependents(task_id, f"dependency {task_id} cancelled")

            if outcome.success:
                task.mark_completed(outcome)
                self.ctx.task_changed(task, previous)
                via = " from cache" if outcome.from_cache else ""
                self.ctx.execution_log.log(
                    task_id, LogLevel.INFO, f"Task completed{via}", source=SOURCE, milestone=True,
                )
                self.promote_ready()
                return []

            task.mark_failed(outcome.error)
            self.ctx.task_changed(task, previous)
            self.ctx.execution_log.log(
                task_id, LogLevel.ERROR, f"Task failed: {outcome.error or 'unknown error'}",
                source=SOURCE, milestone=True,
            )
            return self._block_dependents(task_id, f"dependency {task_id} failed")

    def block(self, task_id: str, reason: str) -> List[str]:
        """Block a task and everything downstream of it."""
        with self.ctx.lock:
            task = self.ctx.get_task(task_id)
            previous = TaskStatus(task.status)
            task.mark_blocked(reason)
            self.ctx.task_changed(task, previous)
            self.ctx.execution_log.log(task_id, LogLevel.WARN, f"Blocked: {reason}", source=SOURCE)
            return [task_id] + self._block_dependents(task_id, f"dependency {task_id} blocked")

    def _block_dependents(self, root_id: str, reason: str) -> List[str]:
        blocked = []
        for dependent_id in self.dependents_closure(root_id):
            dependent = self.ctx.tasks[dependent_id]
            if dependent.status in _SETTLED:
                continue
            previous = TaskStatus(dependent.status)
            dependent.mark_blocked(reason)
            self.ctx.task_changed(dependent, previous)
            blocked.append(dependent_id)
        if blocked:
            logger.warning(f"{reason}: blocked {len(blocked)} dependent task(s) {blocked}")
            for dependent_id in blocked:
                self.ctx.execution_log.log(dependent_id, LogLevel.WARN, f"Blocked: {reason}", source=SOURCE)
        return blocked

    def cancel(self, task_id: str, reason: Optional[str] = None) -> bool:
        """Cancel a task.

        Pending and ready tasks are cancelled immediately (returns True) and
        their dependents blocked. For an in-progress task only a cooperative
        stop is requested (returns False); the task becomes cancelled when
        its agent releases it.
        """
        with self.ctx.lock:
            task = self.ctx.get_task(task_id)
            previous = TaskStatus(task.status)
            if previous in (TaskStatus.PENDING, TaskStatus.READY):
                task.mark_cancelled(reason)
                self.ctx.task_changed(task, previous)
                self.ctx.execution_log.log(task_id, LogLevel.WARN, "Task cancelled by operator", source=SOURCE)
                self._block_dependents(task_id, f"dependency {task_id} cancelled")
                return True
            if previous == TaskStatus.IN_PROGRESS:
                task.cancel_requested = True
                self.ctx.persist(task)
                self.ctx.execution_log.log(
                    task_id, LogLevel.WARN,
                    f"Cancellation requested; waiting for agent {task.assigned_agent} to stop",
                    source=SOURCE,
                )
                return False
            raise InvalidTransition(task_id, previous.value, TaskStatus.CANCELLED.value)

    def requeue(self, task_id: str) -> List[str]:
        """Operator re-queue after remediation.

        Returns the task and every dependent that no longer has a blocker.
        """
        with self.ctx.lock:
            task = self.ctx.get_task(task_id)
            previous = TaskStatus(task.status)
            if previous not in REQUEUEABLE_STATUSES:
                raise InvalidTransition(task_id, previous.value, TaskStatus.PENDING.value)
            task.reset_to_pending()
            self.ctx.task_changed(task, previous)
            requeued = [task_id]

            prefix = f"dependency {task_id} "
            for dependent_id in self.dependents_closure(task_id):
                dependent = self.ctx.tasks[dependent_id]
                if dependent.status != TaskStatus.BLOCKED:
                    continue
                dependent.blockers = [b for b in dependent.blockers if not b.startswith(prefix)]
                if dependent.blockers:
                    self.ctx.persist(dependent)
                    continue
                dependent.reset_to_pending()
                self.ctx.task_changed(dependent, TaskStatus.BLOCKED)
                requeued.append(dependent_id)

            self.ctx.execution_log.log(
                task_id, LogLevel.INFO, f"Re-queued by operator ({len(requeued)} task(s))", source=SOURCE,
            )
            self.promote_ready()
        return requeued

    def archive(self, task_id: str) -> None:
        with self.ctx.lock:
            task = self.ctx.get_task(task_id)
            if not task.is_terminal:
                raise InvalidTransition(task_id, TaskStatus(task.status).value, "archived")
            task.archived = True
            if self.ctx.task_store is not None:
                self.ctx.task_store.archive(task)

    # -- queries ------------------------------------------------------------

    def dependents_closure(self, task_id: str) -> List[str]:
        """Every transitive dependent of ``task_id`` in breadth-first order."""
        seen: Set[str] = set()
        order: List[str] = []
        queue = deque(sorted(self._dependents.get(task_id, ())))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            queue.extend(sorted(self._dependents.get(current, ())))
        return order

    def execution_order(self) -> List[List[str]]:
        """Topological layers of the live graph; tasks in a layer can run in parallel."""
        tasks = {tid: t for tid, t in self.ctx.tasks.items() if not t.archived}
        remaining = {
            tid: {d for d in t.depends_on if d in tasks}
            for tid, t in tasks.items()
        }
        layers: List[List[str]] = []
        while remaining:
            layer = [tid for tid, deps in remaining.items() if not deps]
            if not layer:
                # Unreachable for a validated graph
                raise CycleDetected(sorted(remaining))
            layer.sort(key=lambda tid: tasks[tid].sort_key)
            layers.append(layer)
            for tid in layer:
                del remaining[tid]
            for deps in remaining.values():
                deps.difference_update(layer)
        return layers
