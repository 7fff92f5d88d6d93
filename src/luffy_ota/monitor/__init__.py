"""
Service health monitoring.

- HealthRegistry: per-service status and version table
- HealthListener: queue-backed consumer of health reports and update triggers
"""

from luffy_ota.monitor.listener import HealthListener, topic_matches
from luffy_ota.monitor.registry import (
    STALENESS_WINDOW,
    HealthRegistry,
    ReadWriteLock,
    ServiceRecord,
    ServiceStatus,
)

__all__ = [
    "HealthRegistry",
    "ServiceRecord",
    "ServiceStatus",
    "STALENESS_WINDOW",
    "ReadWriteLock",
    "HealthListener",
    "topic_matches",
]
