"""Issue tracker synchronization."""

from .issue_sync import IssueSynchronizer, SyncEvent, SyncEventType

__all__ = ["IssueSynchronizer", "SyncEvent", "SyncEventType"]
