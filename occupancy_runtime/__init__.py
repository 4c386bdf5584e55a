"""
Occupancy Runtime — Persistence Layer v1

sqlite-backed stores around the Occupancy Kernel v1.0.

Compare-and-swap writes, idempotency keys, notification log, observability.
"""

from .directory_repository import SqliteDirectoryRepository
from .notification_repository import NotificationRepository
from .idempotency_repository import IdempotencyRecord, IdempotencyRepository
from .session import AllocationSession
from .observability import SessionMetrics, collect_metrics

__all__ = [
    "SqliteDirectoryRepository",
    "NotificationRepository",
    "IdempotencyRecord",
    "IdempotencyRepository",
    "AllocationSession",
    "SessionMetrics",
    "collect_metrics",
]
