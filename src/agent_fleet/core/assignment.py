"""Agent assignment manager: pairs ready tasks with idle agents by persona."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from .agent import Agent, AgentStatus, Assignment
from .context import OrchestrationContext
from .execution_log import LogLevel
from .scheduler import DependencyScheduler
from .task import Persona, Task, TaskOutcome, TaskStatus, utcnow
from ..errors import AgentTimeout, AssignmentRace

logger = logging.getLogger(__name__)

SOURCE = "assignment"


class AgentAssignmentManager:
    """Binds tasks to agents so that bindings stay a partial bijection.

    Every read-modify-write of agent and task state happens under the
    context lock, so two idle agents can never claim the same task.
    """

    def __init__(
        self,
        ctx: OrchestrationContext,
        scheduler: DependencyScheduler,
        agent_timeout_seconds: Optional[float] = None,
    ):
        self.ctx = ctx
        self.scheduler = scheduler
        self.agent_timeout_seconds = agent_timeout_seconds

    def register_agent(self, agent: Agent) -> Agent:
        with self.ctx.lock:
            if agent.id in self.ctx.agents:
                raise ValueError(f"Agent '{agent.id}' is already registered")
            self.ctx.agents[agent.id] = agent
        logger.info(f"Registered agent {agent.id} ({agent.persona.value})")
        return agent

    def set_offline(self, agent_id: str) -> None:
        """Take an agent out of rotation; a bound task is kept until release."""
        with self.ctx.lock:
            self.ctx.get_agent(agent_id).status = AgentStatus.OFFLINE

    def set_online(self, agent_id: str) -> None:
        with self.ctx.lock:
            agent = self.ctx.get_agent(agent_id)
            agent.status = AgentStatus.BUSY if agent.current_task_id else AgentStatus.IDLE

    def idle_agents(self) -> Dict[Persona, List[Agent]]:
        pools: Dict[Persona, List[Agent]] = {}
        for agent in sorted(self.ctx.agents.values(), key=lambda a: a.id):
            if agent.is_idle:
                pools.setdefault(agent.persona, []).append(agent)
        return pools

    def binding_of(self, task_id: str) -> Optional[str]:
        for agent in self.ctx.agents.values():
            if agent.current_task_id == task_id:
                return agent.id
        return None

    def assign(self, now: Optional[datetime] = None) -> List[Assignment]:
        """Bind ready tasks to idle agents of the matching persona.

        Tasks are taken in ready order (priority, then creation time). Tasks
        whose fingerprint is already executing elsewhere are parked instead
        of dispatched. Tasks without a matching idle agent stay ready and
        are retried on the next call.
        """
        now = now or utcnow()
        assignments: List[Assignment] = []
        with self.ctx.lock:
            self.scheduler.promote_ready()
            self.scheduler.apply_cache()
            pools = self.idle_agents()

            for task in list(self.scheduler.ready_tasks()):
                if task.status != TaskStatus.READY:
                    continue
                pool = pools.get(task.persona)
                if not pool:
                    continue
                agent = pool[0]
                self._check_unbound(agent, task)
                fingerprint = self.scheduler.fingerprint_for(task)
                if not self.ctx.cache.begin(fingerprint, task.id):
                    continue
                pool.pop(0)
                assignments.append(self._bind(agent, task, fingerprint, now))

        if assignments:
            logger.info(
                "Assigned " + ", ".join(f"{a.task_id}->{a.agent_id}" for a in assignments)
            )
        return assignments

    def _check_unbound(self, agent: Agent, task: Task) -> None:
        owner = self.binding_of(task.id)
        if agent.current_task_id is not None or owner is not None or task.assigned_agent is not None:
            detail = (
                f"agent holds {agent.current_task_id!r}, task held by {owner or task.assigned_agent!r}"
            )
            error = AssignmentRace(agent.id, task.id, detail)
            logger.critical(str(error))
            raise error

    def _bind(self, agent: Agent, task: Task, fingerprint: str, now: datetime) -> Assignment:
        previous = TaskStatus(task.status)
        task.mark_in_progress(agent.id)
        task.started_at = now
        task.fingerprint = fingerprint
        agent.bind(task.id, now)
        self.ctx.task_changed(task, previous)
        self.ctx.execution_log.log(
            task.id, LogLevel.INFO, f"Assigned to agent {agent.id}", source=SOURCE, milestone=True,
        )
        return Assignment(
            agent_id=agent.id,
            task_id=task.id,
            persona=task.persona,
            fingerprint=fingerprint,
            assigned_at=now,
        )

    def release(
        self,
        agent_id: str,
        outcome: TaskOutcome,
        task_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Task]:
        """Unbind an agent and forward its outcome to the scheduler.

        ``task_id`` guards against stale releases: an agent reaped for a
        timeout and since re-bound must not release its new task. Stale
        releases are ignored and return None.
        """
        with self.ctx.lock:
            agent = self.ctx.get_agent(agent_id)
            bound = agent.current_task_id
            if bound is None or (task_id is not None and bound != task_id):
                logger.warning(
                    f"Ignoring release from agent {agent_id} for task {task_id or bound}: "
                    f"agent is bound to {bound!r}"
                )
                return None

            task = self.ctx.get_task(bound)
            held = agent.unbind(now)
            task.accumulate_elapsed(held)
            waiters = set()
            if task.fingerprint:
                waiters = self.ctx.cache.finish(task.fingerprint, task.id, outcome)

            self.scheduler.on_task_completed(task.id, outcome)
            agent.report_action(
                f"Released task {task.id} ({'success' if outcome.success else 'failure'})"
            )

            if waiters:
                logger.info(f"Fingerprint of {task.id} released {len(waiters)} waiting task(s)")
                self.scheduler.apply_cache()
            return task

    def reap_timeouts(self, now: Optional[datetime] = None) -> List[AgentTimeout]:
        """Reclaim agents that held a task past the timeout window.

        The task is blocked with a timeout blocker (cascading to its
        dependents) and the agent goes back to idle.
        """
        if self.agent_timeout_seconds is None:
            return []
        now = now or utcnow()
        reaped: List[AgentTimeout] = []
        with self.ctx.lock:
            for agent in sorted(self.ctx.agents.values(), key=lambda a: a.id):
                if agent.current_task_id is None or agent.bound_at is None:
                    continue
                held = (now - agent.bound_at).total_seconds()
                if held <= self.agent_timeout_seconds:
                    continue

                task = self.ctx.get_task(agent.current_task_id)
                error = AgentTimeout(agent.id, task.id, held)
                agent.unbind(now)
                task.accumulate_elapsed(held)
                if task.fingerprint:
                    self.ctx.cache.finish(task.fingerprint, task.id, TaskOutcome.failed(str(error)))
                logger.error(str(error))
                self.ctx.execution_log.log(task.id, LogLevel.ERROR, str(error), source=SOURCE, milestone=True)
                self.scheduler.block(task.id, f"agent {agent.id} timed out after {held:.0f}s")
                agent.report_action(f"Reclaimed after timeout on task {task.id}")
                reaped.append(error)
        return reaped

    def backlog(self) -> int:
        """Ready tasks not yet bound to an agent."""
        return sum(1 for t in self.scheduler.ready_tasks() if t.status == TaskStatus.READY)

    def capacity(self) -> int:
        return sum(1 for a in self.ctx.agents.values() if a.status != AgentStatus.OFFLINE)
