"""Fleet-wide health metrics, recomputed on every read."""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from ..core.agent import AgentStatus
from ..core.assignment import AgentAssignmentManager
from ..core.context import OrchestrationContext
from ..core.task import TERMINAL_STATUSES, TaskStatus, utcnow

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    READY = "ready"
    DEGRADED = "degraded"
    DISABLED = "disabled"


class SystemHealth(BaseModel):
    """Derived snapshot; never stored."""

    api_latency_ms: float = 0.0
    queue_usage: float = 0.0  # percent, 0-100
    active_workflows: int = 0
    completed_today: int = 0
    sync_status: SyncStatus = SyncStatus.DISABLED
    ready_backlog: int = 0
    busy_agents: int = 0
    total_agents: int = 0
    computed_at: datetime


def local_midnight(now: datetime) -> datetime:
    local = now.astimezone()
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def queue_usage(backlog: int, capacity: int) -> float:
    """Ready-but-unassigned tasks per available agent, as a capped percentage."""
    if backlog <= 0:
        return 0.0
    if capacity <= 0:
        return 100.0
    return min(100.0, backlog / capacity * 100.0)


class HealthAggregator:
    def __init__(
        self,
        ctx: OrchestrationContext,
        assignments: AgentAssignmentManager,
        synchronizer=None,
    ):
        self.ctx = ctx
        self.assignments = assignments
        self.synchronizer = synchronizer

    def snapshot(self, now: Optional[datetime] = None) -> SystemHealth:
        now = now or utcnow()
        midnight = local_midnight(now)

        with self.ctx.lock:
            tasks = [t for t in self.ctx.tasks.values() if not t.archived]
            agents = list(self.ctx.agents.values())
            backlog = self.assignments.backlog()
            capacity = self.assignments.capacity()

        active_workflows = {t.workflow_id for t in tasks if t.status not in TERMINAL_STATUSES}
        completed_today = sum(
            1 for t in tasks
            if t.status == TaskStatus.COMPLETED and t.completed_at is not None and t.completed_at >= midnight
        )

        if self.synchronizer is None:
            sync_status, latency = SyncStatus.DISABLED, 0.0
        else:
            sync_status = SyncStatus.DEGRADED if self.synchronizer.degraded else SyncStatus.READY
            latency = self.synchronizer.average_latency_ms

        health = SystemHealth(
            api_latency_ms=round(latency, 2),
            queue_usage=round(queue_usage(backlog, capacity), 2),
            active_workflows=len(active_workflows),
            completed_today=completed_today,
            sync_status=sync_status,
            ready_backlog=backlog,
            busy_agents=sum(1 for a in agents if a.status == AgentStatus.BUSY),
            total_agents=len(agents),
            computed_at=now,
        )
        logger.debug(f"Health snapshot: {health.model_dump(mode='json')}")
        return health
