"""
Occupancy Kernel — Core Domain Types v1.0

Pure data. No allocation logic, no authorization logic.

────────────────────────────────────────────────
DOMAIN GLOSSARY
────────────────────────────────────────────────

Space:
    A physical unit of housing capacity (a room), partitioned into blocks.

Block:
    A named partition of Spaces and the supervisors/occupants tied to it.

Occupant:
    A resident eligible to hold exactly one active Occupancy.

Supervisor:
    Allocates/deallocates within at most two blocks (a warden).

Administrator:
    Unrestricted scope. Configures, does not allocate.

Occupancy:
    The join record linking one Occupant to one Space.

────────────────────────────────────────────────
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)


# ── Roles ─────────────────────────────────────────────────────
ROLE_ADMINISTRATOR: str = "administrator"
ROLE_SUPERVISOR: str = "supervisor"
ROLE_OCCUPANT: str = "occupant"

ROLES: FrozenSet[str] = frozenset({ROLE_ADMINISTRATOR, ROLE_SUPERVISOR, ROLE_OCCUPANT})

# Source-system role names accepted at the directory boundary.
_LEGACY_ROLE_NAMES: Dict[str, str] = {
    "admin": ROLE_ADMINISTRATOR,
    "warden": ROLE_SUPERVISOR,
    "student": ROLE_OCCUPANT,
}

MAX_SUPERVISED_BLOCKS: int = 2

# ── Block ID Validation ───────────────────────────────────────
BLOCK_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


def validate_block_id(block: str) -> None:
    """Validate that a block id contains only ASCII [a-zA-Z0-9_-]. Hard fail."""
    if not isinstance(block, str) or not BLOCK_ID_PATTERN.match(block):
        raise ValueError(
            f"Invalid block ID {block!r}: must match [a-zA-Z0-9_-]+"
        )


def normalize_role(role: str) -> str:
    """Map a role name (current or legacy) onto one of ROLES."""
    normalized = _LEGACY_ROLE_NAMES.get(role, role)
    if normalized not in ROLES:
        raise ValueError(f"Unknown role {role!r}. Known roles: {sorted(ROLES)}")
    return normalized


def normalize_supervised_blocks(
    assigned_blocks: Optional[Iterable[str]],
    assigned_block: Optional[str] = None,
) -> FrozenSet[str]:
    """
    Fold the legacy single ``assigned_block`` into the block set.

    Union of both forms, deduplicated. This is the only place the
    dual representation is understood; everything downstream sees
    ``Resident.supervised_blocks``.
    """
    blocks = set(assigned_blocks or ())
    if assigned_block:
        blocks.add(assigned_block)
    for block in blocks:
        validate_block_id(block)
    return frozenset(blocks)


# ── Core Domain Types ─────────────────────────────────────────

@dataclass
class Resident:
    """A person known to the directory: administrator, supervisor or occupant."""

    id: str
    name: str
    role: str = ROLE_OCCUPANT
    home_block: Optional[str] = None
    supervised_blocks: FrozenSet[str] = field(default_factory=frozenset)
    active: bool = True
    version: int = 0

    @property
    def is_administrator(self) -> bool:
        return self.role == ROLE_ADMINISTRATOR

    @property
    def is_supervisor(self) -> bool:
        return self.role == ROLE_SUPERVISOR

    @property
    def is_occupant(self) -> bool:
        return self.role == ROLE_OCCUPANT

    def copy(self) -> "Resident":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "home_block": self.home_block,
            "supervised_blocks": sorted(self.supervised_blocks),
            "active": self.active,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resident":
        """
        Build a Resident from a directory record.

        Accepts the source system's field names (``preferred_block``,
        ``assigned_block``, ``assigned_blocks``, ``is_active``) next to the
        current ones.
        """
        blocks = normalize_supervised_blocks(
            data.get("supervised_blocks", data.get("assigned_blocks")),
            data.get("assigned_block"),
        )
        if len(blocks) > MAX_SUPERVISED_BLOCKS:
            logger.warning(
                f"Resident {data.get('id')!r} resolves to {len(blocks)} supervised "
                f"blocks after merging the legacy field: {sorted(blocks)}"
            )
        home_block = data.get("home_block", data.get("preferred_block")) or None
        if home_block is not None:
            validate_block_id(home_block)
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            role=normalize_role(data.get("role", ROLE_OCCUPANT)),
            home_block=home_block,
            supervised_blocks=blocks,
            active=bool(data.get("active", data.get("is_active", True))),
            version=int(data.get("version", 0)),
        )


@dataclass(frozen=True)
class Occupancy:
    """Value object owned by a Space: who joined, and when."""

    occupant_id: str
    joined_at: datetime


@dataclass
class Space:
    """
    A room with a fixed capacity inside one block.

    ``is_available`` is derived from the occupancy list on every read;
    there is no stored flag to go stale.
    """

    id: str
    number: str
    block: str
    capacity: int
    occupants: List[Occupancy] = field(default_factory=list)
    version: int = 0

    @property
    def occupant_count(self) -> int:
        return len(self.occupants)

    @property
    def is_available(self) -> bool:
        return len(self.occupants) < self.capacity

    @property
    def available_spots(self) -> int:
        return self.capacity - len(self.occupants)

    @property
    def occupant_ids(self) -> List[str]:
        return [o.occupant_id for o in self.occupants]

    def holds(self, occupant_id: str) -> bool:
        return any(o.occupant_id == occupant_id for o in self.occupants)

    def copy(self) -> "Space":
        """Deep-copy the space so mutations never touch the stored record."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "block": self.block,
            "capacity": self.capacity,
            "occupants": [
                {
                    "occupant_id": o.occupant_id,
                    "joined_at": o.joined_at.isoformat(),
                }
                for o in self.occupants
            ],
            "occupant_count": self.occupant_count,
            "available_spots": self.available_spots,
            "is_available": self.is_available,
            "version": self.version,
        }


def create_space(
    space_id: str,
    number: str,
    block: str,
    capacity: int,
) -> Space:
    """Create an empty Space. Hard fail on a bad block or capacity."""
    validate_block_id(block)
    if not isinstance(capacity, int) or capacity < 1:
        raise ValueError(f"Space capacity must be a positive integer, got {capacity!r}")
    return Space(id=space_id, number=number, block=block, capacity=capacity)


def create_resident(
    resident_id: str,
    name: str,
    role: str = ROLE_OCCUPANT,
    home_block: str | None = None,
    supervised_blocks: Iterable[str] | None = None,
    active: bool = True,
    assigned_block: str | None = None,
) -> Resident:
    """
    Create a Resident with sensible defaults. Enforces the block limit.

    ``assigned_block`` is the legacy single-block field; it is merged into
    ``supervised_blocks`` before the limit is checked.
    """
    blocks = normalize_supervised_blocks(supervised_blocks, assigned_block)
    if len(blocks) > MAX_SUPERVISED_BLOCKS:
        raise ValueError(
            f"A supervisor can be assigned to at most {MAX_SUPERVISED_BLOCKS} "
            f"blocks, got {sorted(blocks)}"
        )
    if home_block is not None:
        validate_block_id(home_block)
    return Resident(
        id=resident_id,
        name=name,
        role=normalize_role(role),
        home_block=home_block,
        supervised_blocks=blocks,
        active=active,
    )
