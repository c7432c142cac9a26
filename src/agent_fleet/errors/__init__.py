"""Error taxonomy for the orchestration core."""

from .exceptions import (
    AgentTimeout,
    AssignmentRace,
    CycleDetected,
    FleetError,
    InvalidSprintTransition,
    InvalidTransition,
    SchedulingError,
    SyncDegraded,
    TaskAlreadyRegistered,
    TrackerUnavailable,
    UnknownAgent,
    UnknownDependency,
    UnknownTask,
)

__all__ = [
    "AgentTimeout",
    "AssignmentRace",
    "CycleDetected",
    "FleetError",
    "InvalidSprintTransition",
    "InvalidTransition",
    "SchedulingError",
    "SyncDegraded",
    "TaskAlreadyRegistered",
    "TrackerUnavailable",
    "UnknownAgent",
    "UnknownDependency",
    "UnknownTask",
]
