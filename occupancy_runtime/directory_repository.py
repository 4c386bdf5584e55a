# file: occupancy_runtime/directory_repository.py
"""
Directory Repository — sqlite3-backed residents and spaces.

Implements occupancy_kernel.store.DirectoryStore:
  - compare-and-swap on ``version`` (UPDATE ... WHERE version = ?)
  - UNIQUE(occupant_id) on occupancies backs single allocation even
    across processes; a violation is reported as a lost CAS so the engine
    re-reads and answers AlreadyAllocated
  - a space and its occupancies are read in one JOIN (no torn reads)

All writes are transaction-wrapped. Backend failures surface as StoreError.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set

from occupancy_kernel.domain_types import Occupancy, Resident, Space
from occupancy_kernel.errors import StoreError

logger = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_SPACE_SELECT = """
    SELECT s.id, s.number, s.block, s.capacity, s.version,
           o.occupant_id, o.joined_at
    FROM spaces s
    LEFT JOIN occupancies o ON o.space_id = s.id
"""

_RESIDENT_SELECT = """
    SELECT id, name, role, home_block, supervised_blocks_json, active, version
    FROM residents
"""


class _VersionConflict(Exception):
    """Rolls back a write whose expected version no longer matches."""


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open a WAL-mode connection and apply the schema."""
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(_SCHEMA_PATH.read_text(encoding="utf-8"))
    return conn


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        logger.error(f"sqlite failure during {operation}: {exc}")
        raise StoreError(f"{operation}: {exc}") from exc


class SqliteDirectoryRepository:
    """
    Directory store backed by sqlite3.

    One connection shared across threads, serialized by an RLock; the
    engine's StoreGuard may call in from its worker pool.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._lock = threading.RLock()
        with translate_errors("connect"):
            self._conn = connect(self._db_path)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_space(self, space_id: str) -> Optional[Space]:
        spaces = self._select_spaces("WHERE s.id = ?", (space_id,))
        return spaces[0] if spaces else None

    def find_space_by_occupant(self, occupant_id: str) -> Optional[Space]:
        spaces = self._select_spaces(
            "WHERE s.id = (SELECT space_id FROM occupancies WHERE occupant_id = ?)",
            (occupant_id,),
        )
        return spaces[0] if spaces else None

    def list_spaces(self, blocks: Optional[Iterable[str]] = None) -> List[Space]:
        if blocks is None:
            return self._select_spaces("", ())
        wanted = sorted(set(blocks))
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        return self._select_spaces(f"WHERE s.block IN ({placeholders})", tuple(wanted))

    def get_resident(self, resident_id: str) -> Optional[Resident]:
        with self._lock, translate_errors("get_resident"):
            row = self._conn.execute(
                _RESIDENT_SELECT + " WHERE id = ?", (resident_id,),
            ).fetchone()
        return _row_to_resident(row) if row else None

    def list_residents(
        self, role: Optional[str] = None, active_only: bool = False,
    ) -> List[Resident]:
        clauses, params = [], []
        if role is not None:
            clauses.append("role = ?")
            params.append(role)
        if active_only:
            clauses.append("active = 1")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock, translate_errors("list_residents"):
            rows = self._conn.execute(
                _RESIDENT_SELECT + where + " ORDER BY id", tuple(params),
            ).fetchall()
        return [_row_to_resident(row) for row in rows]

    def allocated_occupant_ids(self) -> Set[str]:
        with self._lock, translate_errors("allocated_occupant_ids"):
            rows = self._conn.execute("SELECT occupant_id FROM occupancies").fetchall()
        return {row[0] for row in rows}

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def add_space(self, space: Space) -> Space:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO spaces (id, number, block, capacity, version) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (space.id, space.number, space.block, space.capacity, space.version),
                    )
                    self._insert_occupancies(space)
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Space with id {space.id!r} already exists") from exc
            except sqlite3.Error as exc:
                raise StoreError(f"add_space: {exc}") from exc
        logger.debug(f"Added space {space.id} (block {space.block})")
        return space.copy()

    def add_resident(self, resident: Resident) -> Resident:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO residents "
                        "(id, name, role, home_block, supervised_blocks_json, active, version) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        _resident_params(resident) + (resident.version,),
                    )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Resident with id {resident.id!r} already exists") from exc
            except sqlite3.Error as exc:
                raise StoreError(f"add_resident: {exc}") from exc
        logger.debug(f"Added resident {resident.id} ({resident.role})")
        return resident.copy()

    def compare_and_swap_space(self, space: Space, expected_version: int) -> bool:
        """
        Replace the space row and its occupancy list if the stored version
        still equals ``expected_version``. On success ``space.version`` is
        advanced to the stored value.
        """
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "UPDATE spaces SET number = ?, block = ?, capacity = ?, version = ? "
                        "WHERE id = ? AND version = ?",
                        (
                            space.number, space.block, space.capacity,
                            expected_version + 1, space.id, expected_version,
                        ),
                    )
                    if cursor.rowcount == 0:
                        raise _VersionConflict()
                    self._conn.execute("DELETE FROM occupancies WHERE space_id = ?", (space.id,))
                    self._insert_occupancies(space)
            except _VersionConflict:
                return False
            except sqlite3.IntegrityError as exc:
                logger.warning(f"Occupancy constraint rejected write to space {space.id}: {exc}")
                return False
            except sqlite3.Error as exc:
                raise StoreError(f"compare_and_swap_space: {exc}") from exc
        space.version = expected_version + 1
        return True

    def compare_and_swap_resident(self, resident: Resident, expected_version: int) -> bool:
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "UPDATE residents SET name = ?, role = ?, home_block = ?, "
                        "supervised_blocks_json = ?, active = ?, version = ? "
                        "WHERE id = ? AND version = ?",
                        _resident_params(resident)[1:]
                        + (expected_version + 1, resident.id, expected_version),
                    )
                    if cursor.rowcount == 0:
                        raise _VersionConflict()
            except _VersionConflict:
                return False
            except sqlite3.Error as exc:
                raise StoreError(f"compare_and_swap_resident: {exc}") from exc
        resident.version = expected_version + 1
        return True

    def delete_space(self, space_id: str, expected_version: int) -> bool:
        with self._lock:
            try:
                with self._conn:
                    held = self._conn.execute(
                        "SELECT COUNT(*) FROM occupancies WHERE space_id = ?", (space_id,),
                    ).fetchone()[0]
                    if held:
                        raise _VersionConflict()
                    cursor = self._conn.execute(
                        "DELETE FROM spaces WHERE id = ? AND version = ?",
                        (space_id, expected_version),
                    )
                    if cursor.rowcount == 0:
                        raise _VersionConflict()
            except _VersionConflict:
                return False
            except sqlite3.Error as exc:
                raise StoreError(f"delete_space: {exc}") from exc
        return True

    def delete_resident(self, resident_id: str, expected_version: int) -> bool:
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "DELETE FROM residents WHERE id = ? AND version = ?",
                        (resident_id, expected_version),
                    )
                    if cursor.rowcount == 0:
                        raise _VersionConflict()
            except _VersionConflict:
                return False
            except sqlite3.Error as exc:
                raise StoreError(f"delete_resident: {exc}") from exc
        return True

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _select_spaces(self, where: str, params: tuple) -> List[Space]:
        with self._lock, translate_errors("select_spaces"):
            rows = self._conn.execute(
                _SPACE_SELECT + where + " ORDER BY s.id, o.position", params,
            ).fetchall()

        spaces: List[Space] = []
        for space_id, number, block, capacity, version, occupant_id, joined_at in rows:
            if not spaces or spaces[-1].id != space_id:
                spaces.append(Space(
                    id=space_id, number=number, block=block,
                    capacity=capacity, version=version,
                ))
            if occupant_id is not None:
                spaces[-1].occupants.append(Occupancy(
                    occupant_id=occupant_id,
                    joined_at=datetime.fromisoformat(joined_at),
                ))
        return spaces

    def _insert_occupancies(self, space: Space) -> None:
        """MUST be called inside a transaction."""
        self._conn.executemany(
            "INSERT INTO occupancies (space_id, occupant_id, position, joined_at) "
            "VALUES (?, ?, ?, ?)",
            [
                (space.id, o.occupant_id, position, o.joined_at.isoformat())
                for position, o in enumerate(space.occupants)
            ],
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _resident_params(resident: Resident) -> tuple:
    return (
        resident.id,
        resident.name,
        resident.role,
        resident.home_block,
        json.dumps(sorted(resident.supervised_blocks)),
        1 if resident.active else 0,
    )


def _row_to_resident(row: tuple) -> Resident:
    resident_id, name, role, home_block, blocks_json, active, version = row
    return Resident(
        id=resident_id,
        name=name,
        role=role,
        home_block=home_block,
        supervised_blocks=frozenset(json.loads(blocks_json)),
        active=bool(active),
        version=version,
    )
