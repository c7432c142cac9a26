"""Core models: tasks, agents and the execution log."""

from .task import Artifact, Persona, Task, TaskOutcome, TaskPriority, TaskStatus
from .agent import Agent, AgentStatus, Assignment
from .execution_log import ChainOfThoughtEntry, ExecutionLog, LogEntry, LogLevel

__all__ = [
    "Artifact",
    "Persona",
    "Task",
    "TaskOutcome",
    "TaskPriority",
    "TaskStatus",
    "Agent",
    "AgentStatus",
    "Assignment",
    "ChainOfThoughtEntry",
    "ExecutionLog",
    "LogEntry",
    "LogLevel",
]
