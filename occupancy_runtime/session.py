# file: occupancy_runtime/session.py
"""
Allocation Session — wires the kernel to durable stores.

Owns the sqlite repositories, the store timeout guard, the notification
worker pool and the engine. Adds what a host needs around the kernel:

  1. idempotency keys on allocate/deallocate (stored after success only)
  2. operation / denial / dispatch counters for observability
  3. dict-shaped results ready for JSON

Mutation order per keyed call:
  1. look up the key         — replay the stored response if present
  2. engine operation        — may raise DomainDenial / NotFoundError
  3. store the key           — only if step 2 succeeded
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional

from occupancy_kernel.domain_types import MAX_SUPERVISED_BLOCKS, Resident, create_resident, create_space
from occupancy_kernel.engine import AllocationEngine
from occupancy_kernel.errors import (
    IDEMPOTENCY_CONFLICT,
    AuthorizationDenied,
    DomainDenial,
)
from occupancy_kernel.fanout import DispatchResult, NotificationDispatcher
from occupancy_kernel.locking import EntityLocks
from occupancy_kernel.store import StoreGuard

from .directory_repository import SqliteDirectoryRepository
from .idempotency_repository import IdempotencyRepository
from .notification_repository import NotificationRepository

logger = logging.getLogger(__name__)


class AllocationSession:
    """
    One process-wide handle on the allocation engine and its stores.

    ``dispatch_workers=0`` runs notification fan-out inline, which makes
    notifications visible as soon as the mutation returns (handy in tests).
    """

    def __init__(
        self,
        db_path: str | Path,
        store_timeout: Optional[float] = 5.0,
        dispatch_workers: int = 2,
    ) -> None:
        self._db_path = str(db_path)
        self.directory = SqliteDirectoryRepository(self._db_path)
        self.notifications = NotificationRepository(self._db_path)
        self._idempotency = IdempotencyRepository(self._db_path)

        self._guard = StoreGuard(timeout=store_timeout)
        self._executor: Optional[ThreadPoolExecutor] = None
        if dispatch_workers > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=dispatch_workers, thread_name_prefix="notify",
            )

        self._stats_lock = threading.Lock()
        self._operations: Counter = Counter()
        self._denials: Counter = Counter()
        self._dispatch_failures = 0
        self._notifications_delivered = 0
        self._idempotent_replays = 0

        self._key_locks = EntityLocks()

        dispatcher = NotificationDispatcher(
            self.directory, self.notifications, executor=self._executor,
        )
        self.engine = AllocationEngine(
            self.directory,
            dispatcher=dispatcher,
            guard=self._guard,
            on_dispatch=self._record_dispatch,
        )
        logger.info(
            f"Allocation session opened on {self._db_path} "
            f"(store timeout={store_timeout}s, dispatch workers={dispatch_workers})"
        )

    # ------------------------------------------------------------------
    # Core mutations
    # ------------------------------------------------------------------

    def allocate(
        self, space_id: str, occupant_id: str, actor_id: str, idempotency_key: str = "",
    ) -> dict:
        request = {"space_id": space_id, "occupant_id": occupant_id, "actor_id": actor_id}
        return self._idempotent(
            "allocate", request, idempotency_key,
            lambda: self.engine.allocate(space_id, occupant_id, actor_id).to_dict(),
        )

    def deallocate(
        self, space_id: str, occupant_id: str, actor_id: str, idempotency_key: str = "",
    ) -> dict:
        request = {"space_id": space_id, "occupant_id": occupant_id, "actor_id": actor_id}
        return self._idempotent(
            "deallocate", request, idempotency_key,
            lambda: self.engine.deallocate(space_id, occupant_id, actor_id).to_dict(),
        )

    def delete_space(self, space_id: str, actor_id: str) -> None:
        self._run("delete_space", lambda: self.engine.delete_space(space_id, actor_id))

    def delete_occupant(self, occupant_id: str, actor_id: str) -> Optional[dict]:
        released = self._run(
            "delete_occupant", lambda: self.engine.delete_occupant(occupant_id, actor_id),
        )
        return released.to_dict() if released is not None else None

    def change_home_block(self, occupant_id: str, block: str, actor_id: str) -> dict:
        return self._run(
            "change_home_block",
            lambda: self.engine.change_home_block(occupant_id, block, actor_id).to_dict(),
        )

    def set_supervised_blocks(
        self, supervisor_id: str, blocks: Iterable[str], actor_id: str,
    ) -> dict:
        return self._run(
            "set_supervised_blocks",
            lambda: self.engine.set_supervised_blocks(supervisor_id, blocks, actor_id).to_dict(),
        )

    # ------------------------------------------------------------------
    # Directory seeding
    # ------------------------------------------------------------------

    def add_space(self, space_id: str, number: str, block: str, capacity: int) -> dict:
        return self.directory.add_space(create_space(space_id, number, block, capacity)).to_dict()

    def add_resident(self, resident_id: str, name: str, **fields: Any) -> dict:
        return self.directory.add_resident(create_resident(resident_id, name, **fields)).to_dict()

    def import_resident(self, record: Mapping[str, Any]) -> dict:
        """Add a resident from a directory record that may use legacy field names."""
        resident = Resident.from_dict(dict(record))
        if len(resident.supervised_blocks) > MAX_SUPERVISED_BLOCKS:
            raise ValueError(
                f"A supervisor can be assigned to at most {MAX_SUPERVISED_BLOCKS} "
                f"blocks, got {sorted(resident.supervised_blocks)}"
            )
        return self.directory.add_resident(resident).to_dict()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_space(self, space_id: str) -> dict:
        return self.engine.get_space(space_id).to_dict()

    def space_of(self, occupant_id: str) -> Optional[dict]:
        space = self.engine.space_of(occupant_id)
        return space.to_dict() if space is not None else None

    def unallocated_occupants(self, actor_id: str) -> List[dict]:
        return [r.to_dict() for r in self._run(
            "unallocated_occupants", lambda: self.engine.unallocated_occupants(actor_id),
        )]

    def occupancy_stats(self, actor_id: str) -> dict:
        return self.engine.occupancy_stats(actor_id)

    def notifications_for(self, recipient_id: str, unread_only: bool = False) -> List[dict]:
        return [
            r.to_dict()
            for r in self._guard.call(
                "list_notifications", self.notifications.list_for_recipient,
                recipient_id, unread_only,
            )
        ]

    def mark_notification_read(self, recipient_id: str, notification_id: int) -> bool:
        return self._guard.call(
            "mark_read", self.notifications.mark_read, recipient_id, notification_id,
        )

    # ------------------------------------------------------------------
    # Counters (read by observability.collect_metrics)
    # ------------------------------------------------------------------

    def counters(self) -> dict:
        with self._stats_lock:
            return {
                "operations": dict(self._operations),
                "denials": dict(self._denials),
                "dispatch_failures": self._dispatch_failures,
                "notifications_delivered": self._notifications_delivered,
                "idempotent_replays": self._idempotent_replays,
            }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            result = fn()
        except DomainDenial as exc:
            key = exc.code
            if isinstance(exc, AuthorizationDenied):
                key = f"{exc.code}:{exc.reason.value}"
            with self._stats_lock:
                self._denials[key] += 1
            raise
        with self._stats_lock:
            self._operations[operation] += 1
        return result

    def _idempotent(
        self, operation: str, request: dict, key: str, fn: Callable[[], Any],
    ) -> Any:
        if not key:
            return self._run(operation, fn)

        with self._key_locks.hold_keys([key]):
            stored = self._guard.call("find_idempotency_key", self._idempotency.find, key)
            if stored is not None:
                if not stored.matches(operation, request):
                    with self._stats_lock:
                        self._denials[IDEMPOTENCY_CONFLICT] += 1
                    raise DomainDenial(
                        IDEMPOTENCY_CONFLICT,
                        f"Idempotency-Key {key!r} was already used for a different request",
                    )
                logger.info(f"Replaying stored {operation} result for key {key!r}")
                with self._stats_lock:
                    self._idempotent_replays += 1
                return stored.response

            response = self._run(operation, fn)
            self._guard.call(
                "save_idempotency_key", self._idempotency.save,
                key, operation, request, response,
            )
            return response

    def _record_dispatch(self, result: DispatchResult) -> None:
        with self._stats_lock:
            self._notifications_delivered += len(result.delivered)
            self._dispatch_failures += len(result.failed)

    def close(self) -> None:
        """Drain pending notifications, then release every resource."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._guard.shutdown()
        self.directory.close()
        self.notifications.close()
        self._idempotency.close()
        logger.info(f"Allocation session on {self._db_path} closed")
