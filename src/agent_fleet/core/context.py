"""Explicitly owned orchestration state shared by every core component."""

import logging
import threading
from typing import Callable, Dict, List, Optional

from .agent import Agent
from .execution_log import ExecutionLog
from .task import Task, TaskStatus
from ..cache.context_cache import ContextCache
from ..errors import UnknownAgent, UnknownTask
from ..utils.error_handling import log_and_ignore

logger = logging.getLogger(__name__)

# (task, previous status) -> None
StatusListener = Callable[[Task, Optional[TaskStatus]], None]


class OrchestrationContext:
    """Tasks, agents and the single serialization point guarding them.

    Mutations of the task/agent graph (assign, release, completion,
    cancellation, re-queue, timeout reaping) run while holding ``lock``.
    Nothing awaits while the lock is held.
    """

    def __init__(
        self,
        execution_log: Optional[ExecutionLog] = None,
        cache: Optional[ContextCache] = None,
        task_store=None,
    ):
        self.lock = threading.RLock()
        self.tasks: Dict[str, Task] = {}
        self.agents: Dict[str, Agent] = {}
        self.execution_log = execution_log or ExecutionLog()
        self.cache = cache or ContextCache()
        self.task_store = task_store
        self._listeners: List[StatusListener] = []
        self._sequence = 0

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def get_task(self, task_id: str) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise UnknownTask(task_id) from None

    def get_agent(self, agent_id: str) -> Agent:
        try:
            return self.agents[agent_id]
        except KeyError:
            raise UnknownAgent(agent_id) from None

    def persist(self, task: Task) -> None:
        if self.task_store is not None:
            self.task_store.save(task)

    def task_changed(self, task: Task, previous: Optional[TaskStatus]) -> None:
        """Persist a mutated task and fan out its status change.

        Listeners are fire-and-forget: a failing listener never aborts the
        core operation that produced the change.
        """
        self.persist(task)
        if previous is not None and previous == task.status:
            return
        for listener in list(self._listeners):
            try:
                listener(task, previous)
            except Exception as e:
                log_and_ignore(e, f"Status listener failed for task {task.id}", logger_instance=logger)

    def restore(self, tasks: List[Task]) -> None:
        """Load previously persisted tasks without re-validating the graph."""
        with self.lock:
            for task in tasks:
                self.tasks[task.id] = task
                self._sequence = max(self._sequence, task.sequence)
