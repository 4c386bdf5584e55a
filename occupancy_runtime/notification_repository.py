# file: occupancy_runtime/notification_repository.py
"""
Notification Repository — sqlite3-backed notification log.

Implements occupancy_kernel.store.NotificationStore. The engine only ever
appends; reading and read-marking serve the recipient-facing endpoints.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import List

from occupancy_kernel.store import NotificationRecord

from .directory_repository import connect, translate_errors


class NotificationRepository:
    """Append-only (plus read flag) notification store."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.Lock()
        with translate_errors("connect"):
            self._conn = connect(db_path)

    def append(self, record: NotificationRecord) -> int:
        with self._lock, translate_errors("append_notification"):
            with self._conn:
                cursor = self._conn.execute(
                    """
                    INSERT INTO notifications
                        (recipient_id, recipient_role, type, title, message,
                         priority, data_json, created_at, is_read)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.recipient_id,
                        record.recipient_role,
                        record.type,
                        record.title,
                        record.message,
                        record.priority,
                        json.dumps(record.data, ensure_ascii=False, sort_keys=True),
                        record.created_at.isoformat() if record.created_at else None,
                        1 if record.is_read else 0,
                    ),
                )
        record.id = cursor.lastrowid
        return record.id

    def list_for_recipient(
        self, recipient_id: str, unread_only: bool = False,
    ) -> List[NotificationRecord]:
        """Newest first."""
        query = (
            "SELECT id, recipient_id, recipient_role, type, title, message, "
            "priority, data_json, created_at, is_read "
            "FROM notifications WHERE recipient_id = ?"
        )
        if unread_only:
            query += " AND is_read = 0"
        with self._lock, translate_errors("list_notifications"):
            rows = self._conn.execute(query + " ORDER BY id DESC", (recipient_id,)).fetchall()
        return [
            NotificationRecord(
                id=row[0],
                recipient_id=row[1],
                recipient_role=row[2],
                type=row[3],
                title=row[4],
                message=row[5],
                priority=row[6],
                data=json.loads(row[7]),
                created_at=datetime.fromisoformat(row[8]) if row[8] else None,
                is_read=bool(row[9]),
            )
            for row in rows
        ]

    def mark_read(self, recipient_id: str, notification_id: int) -> bool:
        """Mark one notification read. False if it is not the recipient's."""
        with self._lock, translate_errors("mark_read"):
            with self._conn:
                cursor = self._conn.execute(
                    "UPDATE notifications SET is_read = 1 WHERE id = ? AND recipient_id = ?",
                    (notification_id, recipient_id),
                )
        return cursor.rowcount > 0

    def count_unread(self, recipient_id: str) -> int:
        with self._lock, translate_errors("count_unread"):
            row = self._conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE recipient_id = ? AND is_read = 0",
                (recipient_id,),
            ).fetchone()
        return row[0]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
