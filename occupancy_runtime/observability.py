# file: occupancy_runtime/observability.py
"""
Observability — In-process metrics collection.

No external dependencies. Uses compute_occupancy_stats + session counters.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from occupancy_kernel.diagnostics import compute_occupancy_stats

if TYPE_CHECKING:
    from .session import AllocationSession


@dataclass(frozen=True)
class SessionMetrics:
    """Snapshot of observable session metrics."""

    scan_latency_ms: float
    operation_counts: dict
    denial_counts: dict
    dispatch_failures: int
    notifications_delivered: int
    idempotent_replays: int
    space_count: int
    occupant_count: int
    occupancy_rate: int       # percent
    warnings: list

    def to_dict(self) -> dict:
        return {
            "scan_latency_ms": self.scan_latency_ms,
            "operation_counts": dict(self.operation_counts),
            "denial_counts": dict(self.denial_counts),
            "dispatch_failures": self.dispatch_failures,
            "notifications_delivered": self.notifications_delivered,
            "idempotent_replays": self.idempotent_replays,
            "space_count": self.space_count,
            "occupant_count": self.occupant_count,
            "occupancy_rate": self.occupancy_rate,
            "warnings": list(self.warnings),
        }


def collect_metrics(session: "AllocationSession") -> SessionMetrics:
    """
    Collect metrics from a live session.

    Scans every space to measure directory read latency.
    """
    start = time.perf_counter()
    spaces = session.directory.list_spaces()
    elapsed_ms = (time.perf_counter() - start) * 1000.0

    stats = compute_occupancy_stats(spaces)
    counters = session.counters()

    warnings = list(stats["warnings"])
    if counters["dispatch_failures"]:
        warnings.append(
            f"{counters['dispatch_failures']} notification(s) failed to deliver"
        )

    return SessionMetrics(
        scan_latency_ms=round(elapsed_ms, 2),
        operation_counts=counters["operations"],
        denial_counts=counters["denials"],
        dispatch_failures=counters["dispatch_failures"],
        notifications_delivered=counters["notifications_delivered"],
        idempotent_replays=counters["idempotent_replays"],
        space_count=stats["total"],
        occupant_count=stats["capacity"]["occupied"],
        occupancy_rate=stats["occupancy_rate"],
        warnings=warnings,
    )
