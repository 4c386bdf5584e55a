"""
Occupancy Kernel — Store Interfaces v1.0

The directory (residents + spaces) and the notification log are external
collaborators. The kernel talks to them only through the protocols below.

In-memory implementations live here too; they back the kernel tests and
any host that does not need durability. The sqlite-backed versions live in
``occupancy_runtime``.

Every directory call made by the engine goes through ``StoreGuard`` so a
slow or broken backend surfaces as ``InfrastructureError`` instead of
hanging the caller or leaking a backend exception.
"""

from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set, TypeVar

from .domain_types import Resident, Space
from .errors import InfrastructureError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class DirectoryStore(Protocol):
    """Residents and spaces, with compare-and-swap updates keyed on ``version``."""

    def get_space(self, space_id: str) -> Optional[Space]: ...

    def get_resident(self, resident_id: str) -> Optional[Resident]: ...

    def find_space_by_occupant(self, occupant_id: str) -> Optional[Space]: ...

    def list_spaces(self, blocks: Optional[Iterable[str]] = None) -> List[Space]: ...

    def list_residents(
        self, role: Optional[str] = None, active_only: bool = False,
    ) -> List[Resident]: ...

    def allocated_occupant_ids(self) -> Set[str]: ...

    def add_space(self, space: Space) -> Space: ...

    def add_resident(self, resident: Resident) -> Resident: ...

    def compare_and_swap_space(self, space: Space, expected_version: int) -> bool: ...

    def compare_and_swap_resident(self, resident: Resident, expected_version: int) -> bool: ...

    def delete_space(self, space_id: str, expected_version: int) -> bool: ...

    def delete_resident(self, resident_id: str, expected_version: int) -> bool: ...


@dataclass
class NotificationRecord:
    """One durable notification for one recipient."""

    recipient_id: str
    recipient_role: str
    type: str
    title: str
    message: str
    priority: str = "medium"
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    is_read: bool = False
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "recipient_role": self.recipient_role,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "data": dict(self.data),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "is_read": self.is_read,
        }

    def copy(self) -> "NotificationRecord":
        return copy.deepcopy(self)


class NotificationStore(Protocol):
    """Append-only notification log. The engine only ever appends."""

    def append(self, record: NotificationRecord) -> int: ...

    def list_for_recipient(
        self, recipient_id: str, unread_only: bool = False,
    ) -> List[NotificationRecord]: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryDirectory:
    """
    Thread-safe in-memory directory.

    Reads hand out deep copies taken under the store lock, so a reader never
    sees an occupancy list halfway through a write.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._spaces: Dict[str, Space] = {}
        self._residents: Dict[str, Resident] = {}

    # -- Reads --------------------------------------------------------------

    def get_space(self, space_id: str) -> Optional[Space]:
        with self._lock:
            space = self._spaces.get(space_id)
            return space.copy() if space else None

    def get_resident(self, resident_id: str) -> Optional[Resident]:
        with self._lock:
            resident = self._residents.get(resident_id)
            return resident.copy() if resident else None

    def find_space_by_occupant(self, occupant_id: str) -> Optional[Space]:
        with self._lock:
            for space in self._spaces.values():
                if space.holds(occupant_id):
                    return space.copy()
            return None

    def list_spaces(self, blocks: Optional[Iterable[str]] = None) -> List[Space]:
        wanted = set(blocks) if blocks is not None else None
        with self._lock:
            return [
                s.copy()
                for _, s in sorted(self._spaces.items())
                if wanted is None or s.block in wanted
            ]

    def list_residents(
        self, role: Optional[str] = None, active_only: bool = False,
    ) -> List[Resident]:
        with self._lock:
            return [
                r.copy()
                for _, r in sorted(self._residents.items())
                if (role is None or r.role == role) and (r.active or not active_only)
            ]

    def allocated_occupant_ids(self) -> Set[str]:
        with self._lock:
            return {
                occupant_id
                for space in self._spaces.values()
                for occupant_id in space.occupant_ids
            }

    # -- Writes -------------------------------------------------------------

    def add_space(self, space: Space) -> Space:
        with self._lock:
            if space.id in self._spaces:
                raise ValueError(f"Space with id {space.id!r} already exists")
            self._spaces[space.id] = space.copy()
            logger.debug(f"Added space {space.id} (block {space.block})")
            return space.copy()

    def add_resident(self, resident: Resident) -> Resident:
        with self._lock:
            if resident.id in self._residents:
                raise ValueError(f"Resident with id {resident.id!r} already exists")
            self._residents[resident.id] = resident.copy()
            logger.debug(f"Added resident {resident.id} ({resident.role})")
            return resident.copy()

    def compare_and_swap_space(self, space: Space, expected_version: int) -> bool:
        with self._lock:
            current = self._spaces.get(space.id)
            if current is None or current.version != expected_version:
                return False
            stored = space.copy()
            stored.version = expected_version + 1
            self._spaces[space.id] = stored
            space.version = stored.version
            return True

    def compare_and_swap_resident(self, resident: Resident, expected_version: int) -> bool:
        with self._lock:
            current = self._residents.get(resident.id)
            if current is None or current.version != expected_version:
                return False
            stored = resident.copy()
            stored.version = expected_version + 1
            self._residents[resident.id] = stored
            resident.version = stored.version
            return True

    def delete_space(self, space_id: str, expected_version: int) -> bool:
        with self._lock:
            current = self._spaces.get(space_id)
            if current is None or current.version != expected_version:
                return False
            del self._spaces[space_id]
            return True

    def delete_resident(self, resident_id: str, expected_version: int) -> bool:
        with self._lock:
            current = self._residents.get(resident_id)
            if current is None or current.version != expected_version:
                return False
            del self._residents[resident_id]
            return True


class InMemoryNotificationLog:
    """List-backed notification store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[NotificationRecord] = []

    def append(self, record: NotificationRecord) -> int:
        with self._lock:
            record.id = len(self._records) + 1
            self._records.append(record.copy())
            return record.id

    def list_for_recipient(
        self, recipient_id: str, unread_only: bool = False,
    ) -> List[NotificationRecord]:
        with self._lock:
            return [
                r.copy() for r in reversed(self._records)
                if r.recipient_id == recipient_id and (not unread_only or not r.is_read)
            ]

    def all_records(self) -> List[NotificationRecord]:
        with self._lock:
            return [r.copy() for r in self._records]


# ---------------------------------------------------------------------------
# Timeout guard
# ---------------------------------------------------------------------------

class StoreGuard:
    """
    Runs store calls with a bounded timeout.

    ``timeout=None`` calls inline (in-memory stores never block on I/O).
    Otherwise the call runs on a small private pool and the caller waits at
    most ``timeout`` seconds.
    """

    def __init__(self, timeout: Optional[float] = None, max_workers: int = 4) -> None:
        self._timeout = timeout
        self._executor: Optional[ThreadPoolExecutor] = None
        if timeout is not None:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="store-guard",
            )

    @property
    def timeout(self) -> Optional[float]:
        return self._timeout

    def call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            if self._executor is None:
                return fn(*args)
            future = self._executor.submit(fn, *args)
            return future.result(timeout=self._timeout)
        except FutureTimeout:
            logger.error(f"Store call {operation} timed out after {self._timeout}s")
            raise InfrastructureError(operation, f"timed out after {self._timeout}s")
        except (StoreError, OSError, TimeoutError) as exc:
            logger.error(f"Store call {operation} failed: {exc}")
            raise InfrastructureError(operation, str(exc)) from exc

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
