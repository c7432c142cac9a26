"""Exception hierarchy for the orchestration core.

Graph and assignment errors abort the single offending operation and are
raised to the caller. Boundary errors (tracker transport failures) are
absorbed by the synchronizer and only surface as a degraded health signal.
"""

from typing import List, Optional


class FleetError(Exception):
    """Base class for all orchestration errors."""


class SchedulingError(FleetError):
    """Errors raised while building or mutating the task graph."""


class CycleDetected(SchedulingError):
    """Registering a dependency edge would close a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class UnknownDependency(SchedulingError):
    """A task lists a dependency id that is not registered."""

    def __init__(self, task_id: str, dependency_id: str):
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(f"Task '{task_id}' depends on unknown task '{dependency_id}'")


class TaskAlreadyRegistered(SchedulingError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' is already registered")


class UnknownTask(SchedulingError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Unknown task '{task_id}'")


class InvalidTransition(SchedulingError):
    """A status change the task lifecycle does not allow."""

    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task '{task_id}' cannot move from '{current}' to '{target}'")


class AssignmentRace(FleetError):
    """Internal invariant violation: an agent or task would be double-bound.

    Never surfaces while assignment runs under the context lock.
    """

    def __init__(self, agent_id: str, task_id: str, detail: str):
        self.agent_id = agent_id
        self.task_id = task_id
        super().__init__(f"Assignment race on agent '{agent_id}' / task '{task_id}': {detail}")


class UnknownAgent(FleetError):
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Unknown agent '{agent_id}'")


class AgentTimeout(FleetError):
    """An agent held a task past the configured window."""

    def __init__(self, agent_id: str, task_id: str, held_seconds: float):
        self.agent_id = agent_id
        self.task_id = task_id
        self.held_seconds = held_seconds
        super().__init__(
            f"Agent '{agent_id}' did not release task '{task_id}' "
            f"after {held_seconds:.0f}s"
        )


class TrackerUnavailable(FleetError):
    """Transient transport failure talking to the issue tracker."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class SyncDegraded(FleetError):
    """Issue sync gave up after exhausting retries."""

    def __init__(self, task_id: str, attempts: int, last_error: str):
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Issue sync for task '{task_id}' degraded after {attempts} attempts: {last_error}"
        )


class InvalidSprintTransition(FleetError):
    def __init__(self, sprint_id: str, current: str, target: str):
        self.sprint_id = sprint_id
        super().__init__(f"Sprint '{sprint_id}' cannot move from '{current}' to '{target}'")
