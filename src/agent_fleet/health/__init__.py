"""Fleet health metrics."""

from .aggregator import HealthAggregator, SyncStatus, SystemHealth

__all__ = ["HealthAggregator", "SyncStatus", "SystemHealth"]
