"""
Occupancy Kernel — Error Taxonomy v1.0

Three families, kept distinct so callers can map them without parsing text:

  DomainDenial          expected, user-facing, never retried automatically
  NotFoundError         a referenced space/resident does not exist
  InfrastructureError   store unavailable, timeout, lost CAS race

Notification failures are NOT exceptions; see fanout.DispatchResult.
"""

from __future__ import annotations

from enum import Enum


# ── Domain denial codes ───────────────────────────────────────
BLOCK_MISMATCH = "BlockMismatch"
NO_PREFERRED_BLOCK = "NoPreferredBlock"
SPACE_FULL = "SpaceFull"
ALREADY_ALLOCATED = "AlreadyAllocated"
NOT_ALLOCATED_HERE = "NotAllocatedHere"
OCCUPIED_SPACE = "OccupiedSpace"
NOT_AN_OCCUPANT = "NotAnOccupant"
NOT_A_SUPERVISOR = "NotASupervisor"
OCCUPANT_INACTIVE = "OccupantInactive"
HOME_BLOCK_LOCKED = "HomeBlockLocked"
TOO_MANY_BLOCKS = "TooManyBlocks"
IDEMPOTENCY_CONFLICT = "IdempotencyConflict"
DENIED = "Denied"


class DenialReason(Enum):
    """Structured reason attached to an authorization denial."""

    UNKNOWN_ACTOR = "unknown_actor"
    ACTOR_INACTIVE = "actor_inactive"
    NOT_SUPERVISOR = "not_supervisor"
    NOT_ADMINISTRATOR = "not_administrator"
    SPACE_OUT_OF_SCOPE = "space_out_of_scope"
    OCCUPANT_OUT_OF_SCOPE = "occupant_out_of_scope"
    CROSS_BLOCK = "cross_block"


class DomainDenial(Exception):
    """Raised when an operation is refused for a domain reason."""

    def __init__(self, code: str, detail: str = "") -> None:
        self.code = code
        self.detail = detail
        super().__init__(f"[{code}] {detail}" if detail else f"[{code}]")

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.detail}


class AuthorizationDenied(DomainDenial):
    """Raised when the authorization gate refuses an operation."""

    def __init__(self, reason: DenialReason, detail: str = "") -> None:
        self.reason = reason
        super().__init__(DENIED, detail or reason.value)

    def to_dict(self) -> dict:
        return {"code": self.code, "reason": self.reason.value, "detail": self.detail}


class NotFoundError(LookupError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id!r} not found")


class StoreError(Exception):
    """Raised by a store implementation when its backend fails."""


class InfrastructureError(Exception):
    """
    Raised when a store call fails or times out.

    Never a domain decision: callers may retry idempotent reads, but must
    not blindly retry allocate/deallocate without an idempotency key.
    """

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Infrastructure failure during {operation}: {detail}")
