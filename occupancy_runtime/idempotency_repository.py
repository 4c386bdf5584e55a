# file: occupancy_runtime/idempotency_repository.py
"""
Idempotency Repository — remembers the outcome of keyed mutations.

A client retrying allocate/deallocate after a timeout sends the same
Idempotency-Key; the stored response is returned instead of running the
operation twice. Only successful outcomes are stored.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .directory_repository import connect, translate_errors


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    operation: str
    request: dict
    response: Any

    def matches(self, operation: str, request: dict) -> bool:
        return self.operation == operation and self.request == request


class IdempotencyRepository:
    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.Lock()
        with translate_errors("connect"):
            self._conn = connect(db_path)

    def find(self, key: str) -> Optional[IdempotencyRecord]:
        with self._lock, translate_errors("find_idempotency_key"):
            row = self._conn.execute(
                "SELECT key, operation, request_json, response_json "
                "FROM idempotency_keys WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return IdempotencyRecord(
            key=row[0],
            operation=row[1],
            request=json.loads(row[2]),
            response=json.loads(row[3]),
        )

    def save(self, key: str, operation: str, request: dict, response: Any) -> None:
        """Store the outcome. A key stored concurrently elsewhere is kept as is."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock, translate_errors("save_idempotency_key"):
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO idempotency_keys
                        (key, operation, request_json, response_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        key,
                        operation,
                        json.dumps(request, sort_keys=True),
                        json.dumps(response, ensure_ascii=False, sort_keys=True),
                        now,
                    ),
                )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
