"""
Occupancy Kernel — Invariant Checks v1.0

Hard-fail validation. Every check raises InvariantViolationError on failure.
The engine runs these on the candidate state BEFORE committing it, so a
violation means a bug in the engine, not a user error.
"""

from __future__ import annotations

from typing import Dict, Iterable

from .domain_types import MAX_SUPERVISED_BLOCKS, Resident, Space


class InvariantViolationError(Exception):
    """Raised when an occupancy invariant is violated."""

    def __init__(self, rule: str, detail: str) -> None:
        self.rule = rule
        self.detail = detail
        super().__init__(f"[INVARIANT:{rule}] {detail}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_space(space: Space) -> None:
    """Run the per-space checks. Raises on the first failure."""
    _check_positive_capacity(space)
    _check_capacity(space)
    _check_unique_occupants(space)


def validate_resident(resident: Resident) -> None:
    """Run the per-resident checks."""
    _check_supervised_block_limit(resident)


def validate_directory(spaces: Iterable[Space], residents: Dict[str, Resident]) -> None:
    """
    Whole-directory checks: every space valid, nobody in two spaces,
    every occupancy points at an existing occupant in the space's block.
    """
    seen: Dict[str, str] = {}
    for space in spaces:
        validate_space(space)
        for occupant_id in space.occupant_ids:
            if occupant_id in seen:
                raise InvariantViolationError(
                    "single_allocation",
                    f"Occupant {occupant_id!r} holds spaces {seen[occupant_id]!r} "
                    f"and {space.id!r}",
                )
            seen[occupant_id] = space.id
            resident = residents.get(occupant_id)
            if resident is None:
                raise InvariantViolationError(
                    "dangling_occupancy",
                    f"Space {space.id!r} references missing occupant {occupant_id!r}",
                )
            if resident.home_block != space.block:
                raise InvariantViolationError(
                    "block_match",
                    f"Occupant {occupant_id!r} (block {resident.home_block}) "
                    f"sits in space {space.id!r} (block {space.block})",
                )
    for resident in residents.values():
        validate_resident(resident)


# ---------------------------------------------------------------------------
# Individual checks (private)
# ---------------------------------------------------------------------------

def _check_positive_capacity(space: Space) -> None:
    if space.capacity < 1:
        raise InvariantViolationError(
            "positive_capacity",
            f"Space {space.id!r} has capacity {space.capacity}",
        )


def _check_capacity(space: Space) -> None:
    if len(space.occupants) > space.capacity:
        raise InvariantViolationError(
            "capacity",
            f"Space {space.id!r} holds {len(space.occupants)} occupants "
            f"but capacity is {space.capacity}",
        )


def _check_unique_occupants(space: Space) -> None:
    ids = space.occupant_ids
    if len(ids) != len(set(ids)):
        raise InvariantViolationError(
            "duplicate_occupancy",
            f"Space {space.id!r} lists the same occupant twice: {ids}",
        )


def _check_supervised_block_limit(resident: Resident) -> None:
    if resident.is_supervisor and len(resident.supervised_blocks) > MAX_SUPERVISED_BLOCKS:
        raise InvariantViolationError(
            "supervised_block_limit",
            f"Supervisor {resident.id!r} has {len(resident.supervised_blocks)} blocks",
        )
