"""
Occupancy Kernel — Allocation Event Definitions v1.0

Events are **pure data**. They carry what happened and to whom.
They contain ZERO notification logic; the fan-out dispatcher alone
decides who hears about them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Tuple

from .domain_types import Resident, Space

ALLOCATED = "allocated"
DEALLOCATED = "deallocated"

CAUSE_REQUESTED = "requested"
CAUSE_OCCUPANT_DELETED = "occupant_deleted"


@dataclass(frozen=True)
class SpaceRef:
    """Snapshot of the space fields a notification needs."""

    id: str
    block: str
    number: str

    @classmethod
    def of(cls, space: Space) -> "SpaceRef":
        return cls(id=space.id, block=space.block, number=space.number)


@dataclass(frozen=True)
class ResidentRef:
    """Snapshot of the occupant fields a notification needs."""

    id: str
    name: str

    @classmethod
    def of(cls, resident: Resident) -> "ResidentRef":
        return cls(id=resident.id, name=resident.name)


@dataclass(frozen=True)
class AllocationEvent:
    """
    Produced once per committed allocate/deallocate, consumed by the
    dispatcher, then discarded.

    cotenant_ids:
        allocated   → occupants present BEFORE the new occupant joined
        deallocated → occupants REMAINING after the occupant left
    """

    kind: str
    space: SpaceRef
    occupant: ResidentRef
    actor_id: str
    cotenant_ids: Tuple[str, ...] = field(default_factory=tuple)
    occurred_at: datetime | None = None
    cause: str = CAUSE_REQUESTED

    def __post_init__(self) -> None:
        if self.kind not in (ALLOCATED, DEALLOCATED):
            raise ValueError(f"Unknown allocation event kind: {self.kind!r}")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "space": {
                "id": self.space.id,
                "block": self.space.block,
                "number": self.space.number,
            },
            "occupant": {"id": self.occupant.id, "name": self.occupant.name},
            "actor_id": self.actor_id,
            "cotenant_ids": list(self.cotenant_ids),
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "cause": self.cause,
        }
