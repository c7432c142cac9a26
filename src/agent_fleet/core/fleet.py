"""Async runner: assigns ready tasks, executes them on agent workers, releases."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from .agent import Agent, Assignment
from .assignment import AgentAssignmentManager
from .context import OrchestrationContext
from .execution_log import LogLevel
from .scheduler import DependencyScheduler
from .task import Task, TaskInputs, TaskOutcome
from ..utils.rich_logging import ContextLogger

logger = logging.getLogger(__name__)


class ExecutionContext:
    """What a worker may touch while it runs a task.

    Workers never mutate tasks or agents directly; they report through the
    execution log and hand a ``TaskOutcome`` back to the runner.
    """

    def __init__(self, ctx: OrchestrationContext, agent: Agent, task: Task, inputs: TaskInputs):
        self._ctx = ctx
        self.agent_id = agent.id
        self.task_id = task.id
        self.inputs = inputs
        self.cancel_event = asyncio.Event()
        self.logger = ContextLogger(logging.getLogger(f"{__name__}.worker"), agent.id)
        self.logger.set_task_context(task_id=task.id)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def log(self, message: str, level: LogLevel = LogLevel.INFO, milestone: bool = False) -> None:
        self._ctx.execution_log.log(self.task_id, level, message, source=self.agent_id, milestone=milestone)

    def think(self, content: str, milestone: bool = False) -> None:
        self._ctx.execution_log.think(self.task_id, content, milestone=milestone)

    def report_action(self, description: str) -> None:
        with self._ctx.lock:
            self._ctx.get_agent(self.agent_id).report_action(description)


class AgentWorker(Protocol):
    async def execute(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        ...


WorkerFactory = Callable[[Agent], AgentWorker]


class Fleet:
    """Drives assign -> execute -> release until the graph settles."""

    def __init__(
        self,
        ctx: OrchestrationContext,
        scheduler: DependencyScheduler,
        assignments: AgentAssignmentManager,
        worker_factory: WorkerFactory,
        synchronizer=None,
        poll_interval: float = 1.0,
    ):
        self.ctx = ctx
        self.scheduler = scheduler
        self.assignments = assignments
        self.worker_factory = worker_factory
        self.synchronizer = synchronizer
        self.poll_interval = poll_interval
        self._workers: Dict[str, AgentWorker] = {}
        self._running_tasks: Dict[str, asyncio.Task] = {}
        self._contexts: Dict[str, ExecutionContext] = {}
        self._running = False

    @property
    def in_flight(self) -> List[str]:
        return sorted(self._running_tasks)

    def _worker_for(self, agent: Agent) -> AgentWorker:
        worker = self._workers.get(agent.id)
        if worker is None:
            worker = self.worker_factory(agent)
            self._workers[agent.id] = worker
        return worker

    def tick(self, now: Optional[datetime] = None) -> List[Assignment]:
        """Reap timed-out agents, then start every assignment that is possible now."""
        for timeout in self.assignments.reap_timeouts(now):
            context = self._contexts.get(timeout.task_id)
            if context is not None:
                context.cancel_event.set()

        assignments = self.assignments.assign(now)
        for assignment in assignments:
            self._spawn(assignment)
        return assignments

    def _spawn(self, assignment: Assignment) -> None:
        with self.ctx.lock:
            agent = self.ctx.get_agent(assignment.agent_id)
            task = self.ctx.get_task(assignment.task_id)
            outputs = [list(self.ctx.tasks[dep].artifacts) for dep in task.depends_on]
            context = ExecutionContext(self.ctx, agent, task, task.inputs(outputs))
            snapshot = task.model_copy(deep=True)
        worker = self._worker_for(agent)
        self._contexts[task.id] = context
        self._running_tasks[task.id] = asyncio.create_task(
            self._execute(worker, snapshot, context), name=f"fleet-{task.id}",
        )

    async def _execute(self, worker: AgentWorker, task: Task, context: ExecutionContext) -> None:
        context.logger.task_started(task.id, task.title)
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            outcome = await worker.execute(task, context)
        except asyncio.CancelledError:
            self.assignments.release(
                context.agent_id, TaskOutcome(success=False, cancelled=True, error="runner shut down"),
                task_id=task.id,
            )
            raise
        except Exception as e:
            logger.exception(f"Worker for agent {context.agent_id} crashed on task {task.id}")
            outcome = TaskOutcome.failed(f"{type(e).__name__}: {e}")
        finally:
            self._running_tasks.pop(task.id, None)
            self._contexts.pop(task.id, None)
        if outcome.success:
            context.logger.task_completed(loop.time() - started, len(outcome.artifacts))
        else:
            context.logger.task_failed(outcome.error or "no error reported")
        self.assignments.release(context.agent_id, outcome, task_id=task.id)

    def cancel(self, task_id: str, reason: Optional[str] = None) -> bool:
        """Cancel a task; running tasks get a cooperative stop signal."""
        immediate = self.scheduler.cancel(task_id, reason)
        if not immediate:
            context = self._contexts.get(task_id)
            if context is not None:
                context.cancel_event.set()
        return immediate

    async def run_until_idle(self, timeout: Optional[float] = None) -> None:
        """Run until no task is executing and nothing more can be assigned."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            started = self.tick()
            if not started and not self._running_tasks:
                break
            if deadline is not None and loop.time() >= deadline:
                raise asyncio.TimeoutError(f"Fleet still busy with {self.in_flight}")
            if self._running_tasks:
                await asyncio.wait(
                    list(self._running_tasks.values()),
                    timeout=self.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            if self.synchronizer is not None:
                await self.synchronizer.drain()
        if self.synchronizer is not None:
            await self.synchronizer.drain()

    async def run(self) -> None:
        """Main polling loop; the synchronizer runs alongside it."""
        self._running = True
        logger.info(f"Starting fleet with {len(self.ctx.agents)} agent(s)")
        sync_task = asyncio.create_task(self.synchronizer.run()) if self.synchronizer else None
        try:
            while self._running:
                self.tick()
                await asyncio.sleep(self.poll_interval)
        finally:
            if sync_task is not None:
                self.synchronizer.stop()
                await sync_task

    async def stop(self) -> None:
        """Stop polling and cancel whatever is still executing."""
        logger.info("Stopping fleet")
        self._running = False
        pending = list(self._running_tasks.values())
        for running in pending:
            running.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
