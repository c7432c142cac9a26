"""Sprints: time-boxed task groupings used for reporting only."""

from datetime import date
from enum import Enum
from typing import Dict, Iterable, List

from pydantic import BaseModel, Field

from .task import Task, TaskStatus
from ..errors import InvalidSprintTransition


class SprintStatus(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    COMPLETED = "completed"


class Sprint(BaseModel):
    """Its lifecycle is independent of task state; scheduling never reads it."""

    id: str
    name: str
    start_date: date
    end_date: date
    status: SprintStatus = SprintStatus.PLANNED
    task_ids: List[str] = Field(default_factory=list)

    def start(self) -> None:
        if self.status != SprintStatus.PLANNED:
            raise InvalidSprintTransition(self.id, self.status.value, SprintStatus.ACTIVE.value)
        self.status = SprintStatus.ACTIVE

    def complete(self) -> None:
        if self.status != SprintStatus.ACTIVE:
            raise InvalidSprintTransition(self.id, self.status.value, SprintStatus.COMPLETED.value)
        self.status = SprintStatus.COMPLETED

    @property
    def task_count(self) -> int:
        return len(self.task_ids)

    def tasks_in(self, tasks: Iterable[Task]) -> List[Task]:
        members = set(self.task_ids)
        return [t for t in tasks if t.id in members]

    def report(self, tasks: Iterable[Task]) -> Dict[str, object]:
        """Status counts and completion ratio for the sprint's tasks."""
        members = self.tasks_in(tasks)
        counts = {status.value: 0 for status in TaskStatus}
        for task in members:
            counts[TaskStatus(task.status).value] += 1
        total = len(members)
        return {
            "sprint": self.id,
            "status": self.status.value,
            "tasks": total,
            "by_status": counts,
            "completion": counts[TaskStatus.COMPLETED.value] / total if total else 0.0,
        }
