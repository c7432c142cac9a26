"""Task model and its lifecycle."""

from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ..errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(UTC)


class Persona(str, Enum):
    """Capability tag an agent carries and a task requires."""
    PM = "PM"
    ARCHITECT = "ARCHITECT"
    DEVELOPER = "DEVELOPER"
    QA = "QA"
    SECURITY = "SECURITY"
    DEVOPS = "DEVOPS"
    RELEASE_MANAGER = "RELEASEMANAGER"
    RECOVERY = "RECOVERY"


class TaskStatus(str, Enum):
    """Task status values."""
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"  # An ancestor failed, was cancelled, or the agent timed out
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.BLOCKED,
    TaskStatus.CANCELLED,
})

# Statuses an operator may re-queue after remediation
REQUEUEABLE_STATUSES = frozenset({
    TaskStatus.BLOCKED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

_ALLOWED_TRANSITIONS: Dict[TaskStatus, frozenset] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY, TaskStatus.BLOCKED, TaskStatus.CANCELLED}),
    TaskStatus.READY: frozenset({
        TaskStatus.PENDING,  # a new, unfinished dependency was added
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,  # context-cache fast path
        TaskStatus.BLOCKED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.BLOCKED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
}


class TaskPriority(str, Enum):
    """Ordering hint; higher rank is scheduled first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.CRITICAL: 3,
}


class ArtifactType(str, Enum):
    FILE = "file"
    DOCUMENT = "document"
    REPORT = "report"


class Artifact(BaseModel):
    """Output produced by a task. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: ArtifactType
    name: str
    path: str
    size: int = Field(ge=0)  # bytes
    lines_of_code: Optional[int] = None


class TaskOutcome(BaseModel):
    """Terminal result an agent reports when it releases a task."""

    success: bool
    artifacts: List[Artifact] = Field(default_factory=list)
    summary: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    from_cache: bool = False

    @classmethod
    def succeeded(cls, artifacts: Optional[List[Artifact]] = None, summary: Optional[str] = None) -> "TaskOutcome":
        return cls(success=True, artifacts=list(artifacts or []), summary=summary)

    @classmethod
    def failed(cls, error: str) -> "TaskOutcome":
        return cls(success=False, error=error)


class TaskInputs(BaseModel):
    """Semantically relevant inputs that determine a task's fingerprint."""

    title: str
    description: str
    persona: Persona
    # Artifacts each dependency produced, in depends_on order. Dependency ids
    # are left out so identical work registered under new ids still hits.
    dependency_outputs: List[List[Artifact]] = Field(default_factory=list)


class Task(BaseModel):
    """Unit of work scheduled onto a persona-bound agent."""

    id: str
    title: str
    description: str = ""
    persona: Persona
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    workflow_id: str = "default"

    assigned_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0

    depends_on: List[str] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)

    # External issue tracker reference (GitHub issue number, JIRA key, ...)
    issue_ref: Optional[str] = None

    # Set when the task is dispatched; used for in-flight coordination
    fingerprint: Optional[str] = None
    cancel_requested: bool = False
    archived: bool = False
    result_summary: Optional[str] = None
    last_error: Optional[str] = None

    # Registration order, tie-break after created_at
    sequence: int = 0

    @field_validator("depends_on")
    @classmethod
    def dedupe_dependencies(cls, v: List[str]) -> List[str]:
        """Keep first occurrence order, drop duplicates."""
        return list(dict.fromkeys(v))

    @field_serializer("created_at", "updated_at", "started_at", "completed_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def sort_key(self) -> tuple:
        """Descending priority, then ascending creation."""
        return (-self.priority.rank, self.created_at, self.sequence)

    def inputs(self, dependency_outputs: Optional[List[List[Artifact]]] = None) -> TaskInputs:
        return TaskInputs(
            title=self.title,
            description=self.description,
            persona=self.persona,
            dependency_outputs=dependency_outputs or [],
        )

    def _transition(self, target: TaskStatus) -> None:
        current = TaskStatus(self.status)
        if target not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(self.id, current.value, target.value)
        self.status = target
        self.updated_at = utcnow()

    def mark_ready(self) -> None:
        self._transition(TaskStatus.READY)

    def mark_waiting(self) -> None:
        """Ready task gained an unfinished dependency."""
        self._transition(TaskStatus.PENDING)

    def mark_in_progress(self, agent_id: str) -> None:
        """Mark task as in progress."""
        self._transition(TaskStatus.IN_PROGRESS)
        self.assigned_agent = agent_id
        self.started_at = utcnow()

    def mark_completed(self, outcome: TaskOutcome) -> None:
        """Mark task as completed and append produced artifacts."""
        self._transition(TaskStatus.COMPLETED)
        self.completed_at = utcnow()
        self.artifacts.extend(outcome.artifacts)
        self.result_summary = outcome.summary
        self.assigned_agent = None

    def mark_failed(self, error: Optional[str] = None) -> None:
        self._transition(TaskStatus.FAILED)
        self.last_error = error
        self.assigned_agent = None

    def mark_blocked(self, reason: str) -> None:
        """Block the task, or add another blocker if it is already blocked."""
        if self.status != TaskStatus.BLOCKED:
            self._transition(TaskStatus.BLOCKED)
        if reason not in self.blockers:
            self.blockers.append(reason)
        self.assigned_agent = None
        self.updated_at = utcnow()

    def mark_cancelled(self, reason: Optional[str] = None) -> None:
        self._transition(TaskStatus.CANCELLED)
        self.last_error = f"Cancelled: {reason}" if reason else "Cancelled"
        self.cancel_requested = False
        self.assigned_agent = None

    def reset_to_pending(self) -> None:
        """Operator re-queue after remediation."""
        self._transition(TaskStatus.PENDING)
        self.blockers.clear()
        self.started_at = None
        self.completed_at = None
        self.fingerprint = None
        self.cancel_requested = False
        self.last_error = None

    def accumulate_elapsed(self, seconds: float) -> None:
        self.elapsed_seconds += max(seconds, 0.0)
