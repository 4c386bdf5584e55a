"""
Occupancy Kernel — Per-Entity Locks

Every mutating operation holds the lock of each Space and each Occupant it
touches. Locks are always taken in one global order (all space keys, then
all resident keys, each sorted by id) so two operations can never wait on
each other in a cycle.

Registry entries are reference-counted and dropped once no thread holds or
waits on them, so the registry only ever contains keys in use.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterable, Iterator, List, Tuple

logger = logging.getLogger(__name__)

_SPACE = 0
_RESIDENT = 1


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class EntityLocks:
    """Lazily-created ``threading.Lock`` per key, released from the registry when idle."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)

    def _checkout(self, key: Hashable) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable) -> None:
        with self._registry_lock:
            entry = self._entries[key]
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    @staticmethod
    def ordered_keys(
        space_ids: Iterable[str] = (),
        resident_ids: Iterable[str] = (),
    ) -> List[Tuple[int, str]]:
        keys = {(_SPACE, sid) for sid in space_ids if sid}
        keys |= {(_RESIDENT, rid) for rid in resident_ids if rid}
        return sorted(keys)

    @contextmanager
    def hold(
        self,
        space_ids: Iterable[str] = (),
        resident_ids: Iterable[str] = (),
    ) -> Iterator[None]:
        """Acquire the locks for the given entities in global order."""
        with self.hold_keys(self.ordered_keys(space_ids, resident_ids)):
            yield

    @contextmanager
    def hold_keys(self, keys: List[Hashable]) -> Iterator[None]:
        """Acquire locks for already-ordered ``keys``."""
        checked_out: List[Hashable] = []
        acquired: List[threading.Lock] = []
        try:
            for key in keys:
                entry = self._checkout(key)
                checked_out.append(key)
                entry.lock.acquire()
                acquired.append(entry.lock)
            logger.debug(f"Holding locks {keys}")
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in reversed(checked_out):
                self._checkin(key)
