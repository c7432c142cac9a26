"""Wire the components for one workspace from a FleetConfig."""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .agent import Agent
from .assignment import AgentAssignmentManager
from .config import FleetConfig, WorkflowDefinition
from .context import OrchestrationContext
from .execution_log import ExecutionLog
from .fleet import Fleet, WorkerFactory
from .scheduler import DependencyScheduler
from .task import Task, TaskStatus
from ..cache.context_cache import ContextCache
from ..cache.store import FileContextStore, MemoryContextStore
from ..health.aggregator import HealthAggregator
from ..integrations.tracker import IssueTracker, build_tracker
from ..safeguards.retry_handler import RetryHandler
from ..store.task_store import TaskStore
from ..sync.issue_sync import IssueSynchronizer

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: FleetConfig
    ctx: OrchestrationContext
    scheduler: DependencyScheduler
    assignments: AgentAssignmentManager
    task_store: TaskStore
    health: HealthAggregator
    synchronizer: Optional[IssueSynchronizer] = None

    def load_workflow(self, workflow: WorkflowDefinition) -> List[Task]:
        """Register a workflow's tasks, skipping ids already known from a previous run."""
        fresh = [t for t in workflow.to_tasks() if t.id not in self.ctx.tasks]
        if not fresh:
            logger.info(f"Workflow '{workflow.id}' already registered")
            return []
        return self.scheduler.register_tasks(fresh)

    def recover_interrupted(self) -> List[str]:
        """Block tasks left in progress by a process that is gone.

        Only call this from the process that is about to run the fleet; an
        inspecting CLI must not touch tasks a live runner still owns.
        """
        blocked = []
        for task in sorted(self.ctx.tasks.values(), key=lambda t: t.sequence):
            if task.status == TaskStatus.IN_PROGRESS and self.assignments.binding_of(task.id) is None:
                blocked.extend(self.scheduler.block(task.id, "interrupted by restart"))
        if blocked:
            logger.warning(f"Blocked {len(blocked)} task(s) interrupted by restart: {blocked}")
        return blocked

    def fleet(self, worker_factory: WorkerFactory) -> Fleet:
        return Fleet(
            self.ctx,
            self.scheduler,
            self.assignments,
            worker_factory,
            synchronizer=self.synchronizer,
            poll_interval=self.config.assignment.poll_interval,
        )


def build_cache(config: FleetConfig) -> ContextCache:
    if config.cache.backend == "file":
        return ContextCache(FileContextStore(config.cache_path, ttl_seconds=config.cache.ttl_seconds))
    return ContextCache(MemoryContextStore())


def build_runtime(
    config: FleetConfig,
    tracker: Optional[IssueTracker] = None,
    with_sync: Optional[bool] = None,
) -> Runtime:
    """Restore persisted tasks and register configured agents.

    ``tracker`` overrides the configured provider (tests, dry runs).
    """
    task_store = TaskStore(config.tasks_path)
    ctx = OrchestrationContext(
        execution_log=ExecutionLog(config.logs_path),
        cache=build_cache(config),
        task_store=task_store,
    )

    # Archived tasks stay in the graph so their dependents resolve
    ctx.restore(task_store.load_all(include_archived=True))
    scheduler = DependencyScheduler(ctx)
    assignments = AgentAssignmentManager(
        ctx, scheduler, agent_timeout_seconds=config.assignment.agent_timeout_seconds,
    )

    for definition in config.agents:
        if not definition.enabled:
            continue
        for agent_id in definition.agent_ids():
            assignments.register_agent(Agent(id=agent_id, persona=definition.persona))

    synchronizer = None
    if with_sync is None:
        with_sync = config.sync.enabled
    if with_sync:
        synchronizer = IssueSynchronizer(
            ctx,
            tracker if tracker is not None else build_tracker(config.tracker),
            retry=RetryHandler(
                initial_backoff=config.sync.backoff_initial,
                max_backoff=config.sync.backoff_max,
                multiplier=config.sync.backoff_multiplier,
                max_retries=config.sync.max_retries,
            ),
            latency_window=config.sync.latency_window,
            poll_interval=config.sync.poll_interval,
        )

    logger.info(
        f"Runtime ready: {len(ctx.tasks)} task(s) restored, {len(ctx.agents)} agent(s), "
        f"sync {'on' if synchronizer else 'off'}"
    )
    return Runtime(
        config=config,
        ctx=ctx,
        scheduler=scheduler,
        assignments=assignments,
        task_store=task_store,
        health=HealthAggregator(ctx, assignments, synchronizer),
        synchronizer=synchronizer,
    )
