"""
Occupancy Kernel — Authorization Gate v1.0

Derives the block scope an actor may act within and checks a requested
allocate/deallocate against it. Side-effect free: every check runs before
any mutation.

Denials are returned as structured data (``Decision``), never free text;
the engine turns a denied Decision into ``AuthorizationDenied``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional

from .domain_types import Resident, Space
from .errors import DenialReason

OP_ALLOCATE = "allocate"
OP_DEALLOCATE = "deallocate"

OPERATIONS = frozenset({OP_ALLOCATE, OP_DEALLOCATE})


@dataclass(frozen=True)
class Scope:
    """A set of blocks, or the universal set."""

    blocks: FrozenSet[str] = frozenset()
    unrestricted: bool = False

    @classmethod
    def unrestricted_scope(cls) -> "Scope":
        return cls(blocks=frozenset(), unrestricted=True)

    @classmethod
    def of(cls, *blocks: str) -> "Scope":
        return cls(blocks=frozenset(b for b in blocks if b))

    def includes(self, block: Optional[str]) -> bool:
        if self.unrestricted:
            return True
        return block is not None and block in self.blocks

    def is_empty(self) -> bool:
        return not self.unrestricted and not self.blocks


@dataclass(frozen=True)
class Decision:
    """Outcome of ``authorize``."""

    allowed: bool
    reason: Optional[DenialReason] = None
    detail: str = ""

    @classmethod
    def ok(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def denied(cls, reason: DenialReason, detail: str = "") -> "Decision":
        return cls(allowed=False, reason=reason, detail=detail)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def resolve_scope(actor: Resident) -> Scope:
    """
    Blocks the actor may operate on.

      administrator → unrestricted
      supervisor    → supervised_blocks (legacy field already folded in)
      occupant      → {home_block} or empty
    """
    if actor.is_administrator:
        return Scope.unrestricted_scope()
    if actor.is_supervisor:
        return Scope(blocks=frozenset(actor.supervised_blocks))
    if actor.home_block:
        return Scope.of(actor.home_block)
    return Scope()


def authorize(
    actor: Resident,
    operation: str,
    space: Space,
    occupant: Optional[Resident] = None,
) -> Decision:
    """
    Check ``operation`` by ``actor`` on ``space`` (and ``occupant``).

    Only supervisors allocate or deallocate. For allocate the occupant's
    home block must also be in scope, and must equal the space's block even
    when both are individually in scope.
    """
    if operation not in OPERATIONS:
        raise ValueError(f"Unknown operation {operation!r}")

    if not actor.active:
        return Decision.denied(
            DenialReason.ACTOR_INACTIVE,
            f"Actor {actor.id!r} is deactivated",
        )

    if not actor.is_supervisor:
        return Decision.denied(
            DenialReason.NOT_SUPERVISOR,
            f"Only supervisors can {operation} spaces",
        )

    scope = resolve_scope(actor)

    if not scope.includes(space.block):
        return Decision.denied(
            DenialReason.SPACE_OUT_OF_SCOPE,
            f"You can only {operation} spaces in your assigned blocks "
            f"(space is in block {space.block})",
        )

    if operation == OP_ALLOCATE:
        home_block = occupant.home_block if occupant is not None else None
        if not scope.includes(home_block):
            return Decision.denied(
                DenialReason.OCCUPANT_OUT_OF_SCOPE,
                "You can only allocate spaces to occupants in your assigned blocks",
            )
        if home_block != space.block:
            return Decision.denied(
                DenialReason.CROSS_BLOCK,
                f"Cross-block assignment forbidden: space block {space.block}, "
                f"occupant block {home_block}",
            )

    return Decision.ok()


def authorize_administration(actor: Resident) -> Decision:
    """Directory-management operations (delete space, reconfigure residents)."""
    if not actor.active:
        return Decision.denied(
            DenialReason.ACTOR_INACTIVE,
            f"Actor {actor.id!r} is deactivated",
        )
    if not actor.is_administrator:
        return Decision.denied(
            DenialReason.NOT_ADMINISTRATOR,
            "Only administrators can reconfigure spaces and residents",
        )
    return Decision.ok()
