"""Persona-bound agents and their bindings to tasks."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .task import Persona, utcnow


class AgentStatus(str, Enum):
    """Agent operational status."""
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"


class Agent(BaseModel):
    """A worker that executes one task at a time for a single persona."""

    id: str
    persona: Persona
    status: AgentStatus = AgentStatus.IDLE
    current_task_id: Optional[str] = None
    bound_at: Optional[datetime] = None
    active_seconds: float = 0.0
    last_action: Optional[str] = None
    last_action_at: Optional[datetime] = None

    @property
    def is_idle(self) -> bool:
        return self.status == AgentStatus.IDLE and self.current_task_id is None

    def bind(self, task_id: str, now: Optional[datetime] = None) -> None:
        self.status = AgentStatus.BUSY
        self.current_task_id = task_id
        self.bound_at = now or utcnow()
        self.report_action(f"Started task {task_id}")

    def unbind(self, now: Optional[datetime] = None) -> float:
        """Return to idle and return the seconds spent on the released task."""
        now = now or utcnow()
        held = (now - self.bound_at).total_seconds() if self.bound_at else 0.0
        held = max(held, 0.0)
        self.active_seconds += held
        self.current_task_id = None
        self.bound_at = None
        if self.status != AgentStatus.OFFLINE:
            self.status = AgentStatus.IDLE
        return held

    def report_action(self, description: str) -> None:
        """Self-reported last action, surfaced on dashboards."""
        self.last_action = description
        self.last_action_at = utcnow()


class Assignment(BaseModel):
    """A single (agent, task) binding produced by assign()."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    task_id: str
    persona: Persona
    fingerprint: Optional[str] = None
    assigned_at: datetime
