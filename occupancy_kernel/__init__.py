"""
Occupancy Kernel v1.0
Block-scoped room allocation with capacity, single-allocation and
block-match invariants, plus best-effort notification fan-out.
"""

from .domain_types import (
    Resident, Space, Occupancy, MAX_SUPERVISED_BLOCKS,
    ROLE_ADMINISTRATOR, ROLE_SUPERVISOR, ROLE_OCCUPANT,
    create_resident, create_space, validate_block_id,
)
from .errors import (
    DomainDenial,
    AuthorizationDenied,
    DenialReason,
    NotFoundError,
    InfrastructureError,
    StoreError,
)
from .events import AllocationEvent, ALLOCATED, DEALLOCATED
from .scope import Scope, Decision, authorize, authorize_administration, resolve_scope
from .invariants import InvariantViolationError, validate_directory, validate_space
from .store import (
    DirectoryStore,
    NotificationStore,
    NotificationRecord,
    InMemoryDirectory,
    InMemoryNotificationLog,
    StoreGuard,
)
from .locking import EntityLocks
from .fanout import DispatchResult, NotificationDispatcher, compute_recipients
from .engine import AllocationEngine
from .diagnostics import compute_occupancy_stats

__all__ = [
    "Resident",
    "Space",
    "Occupancy",
    "MAX_SUPERVISED_BLOCKS",
    "ROLE_ADMINISTRATOR",
    "ROLE_SUPERVISOR",
    "ROLE_OCCUPANT",
    "create_resident",
    "create_space",
    "validate_block_id",
    "DomainDenial",
    "AuthorizationDenied",
    "DenialReason",
    "NotFoundError",
    "InfrastructureError",
    "StoreError",
    "AllocationEvent",
    "ALLOCATED",
    "DEALLOCATED",
    "Scope",
    "Decision",
    "authorize",
    "authorize_administration",
    "resolve_scope",
    "InvariantViolationError",
    "validate_directory",
    "validate_space",
    "DirectoryStore",
    "NotificationStore",
    "NotificationRecord",
    "InMemoryDirectory",
    "InMemoryNotificationLog",
    "StoreGuard",
    "EntityLocks",
    "DispatchResult",
    "NotificationDispatcher",
    "compute_recipients",
    "AllocationEngine",
    "compute_occupancy_stats",
]
