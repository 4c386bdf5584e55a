"""
Occupancy Kernel — Diagnostics v1.0

Compute an occupancy snapshot over a set of spaces.
occupancy_rate is an integer percentage (occupants / capacity, rounded).
"""

from __future__ import annotations

from typing import Iterable, Optional

from .domain_types import Space
from .scope import Scope

# Warn when the filtered set is this full (percent)
HIGH_OCCUPANCY_RATE = 90


def compute_occupancy_stats(spaces: Iterable[Space], scope: Optional[Scope] = None) -> dict:
    """
    Return a stats dict for ``spaces``, restricted to ``scope`` when given.
    An empty scope yields all-zero stats.
    """
    if scope is not None:
        spaces = [s for s in spaces if scope.includes(s.block)]
    spaces = list(spaces)

    total_capacity = sum(s.capacity for s in spaces)
    total_occupants = sum(s.occupant_count for s in spaces)
    occupied = sum(1 for s in spaces if s.occupant_count > 0)
    fully_occupied = sum(1 for s in spaces if s.occupant_count >= s.capacity)

    by_block: dict[str, dict] = {}
    for space in spaces:
        entry = by_block.setdefault(
            space.block, {"spaces": 0, "capacity": 0, "occupants": 0},
        )
        entry["spaces"] += 1
        entry["capacity"] += space.capacity
        entry["occupants"] += space.occupant_count

    rate = round(total_occupants * 100 / total_capacity) if total_capacity > 0 else 0

    warnings: list[str] = []
    if spaces and rate >= HIGH_OCCUPANCY_RATE:
        warnings.append(f"High occupancy ({rate}%): {total_capacity - total_occupants} spot(s) left")
    if spaces and fully_occupied == len(spaces):
        warnings.append("Every space in scope is full")

    return {
        "total": len(spaces),
        "available": sum(1 for s in spaces if s.is_available),
        "occupied": occupied,
        "fully_occupied": fully_occupied,
        "vacant": len(spaces) - occupied,
        "occupancy_rate": rate,
        "by_block": {block: by_block[block] for block in sorted(by_block)},
        "capacity": {
            "total": total_capacity,
            "occupied": total_occupants,
            "available": total_capacity - total_occupants,
        },
        "warnings": warnings,
    }
