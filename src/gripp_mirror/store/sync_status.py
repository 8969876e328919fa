"""Per-entity sync bookkeeping."""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from ..config import DEFAULT_SYNC_INTERVAL
from .database import Database

__all__ = [
    "SyncStatus",
    "SyncStatusStore",
    "STATUS_PENDING",
    "STATUS_IN_PROGRESS",
    "STATUS_SUCCESS",
    "STATUS_ERROR",
]

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncStatus:
    """Bookkeeping row for one entity."""

    entity: str
    last_sync_time: Optional[datetime] = None
    last_incremental_sync_time: Optional[datetime] = None
    last_full_sync_time: Optional[datetime] = None
    sync_interval: int = DEFAULT_SYNC_INTERVAL
    last_sync_count: int = 0
    last_sync_status: str = STATUS_PENDING
    last_sync_error: Optional[str] = None
    last_partial_failures: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncStatus":
        """Create from database row."""
        return cls(
            entity=row["entity"],
            last_sync_time=_parse_time(row["last_sync_time"]),
            last_incremental_sync_time=_parse_time(row["last_incremental_sync_time"]),
            last_full_sync_time=_parse_time(row["last_full_sync_time"]),
            sync_interval=row["sync_interval"],
            last_sync_count=row["last_sync_count"],
            last_sync_status=row["last_sync_status"],
            last_sync_error=row["last_sync_error"],
            last_partial_failures=row["last_partial_failures"],
            updated_at=_parse_time(row["updated_at"]),
        )

    def to_dict(self) -> dict:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "entity": self.entity,
            "last_sync_time": iso(self.last_sync_time),
            "last_incremental_sync_time": iso(self.last_incremental_sync_time),
            "last_full_sync_time": iso(self.last_full_sync_time),
            "sync_interval": self.sync_interval,
            "last_sync_count": self.last_sync_count,
            "last_sync_status": self.last_sync_status,
            "last_sync_error": self.last_sync_error,
            "last_partial_failures": self.last_partial_failures,
        }


class SyncStatusStore:
    """Reads and writes the ``sync_status`` table.

    Writes run on the caller's connection, so inside an open transaction
    they commit or roll back together with the mirrored rows.
    """

    def __init__(self, db: Database):
        self.db = db

    def ensure_entities(
        self, entities: Iterable[str], sync_interval: int = DEFAULT_SYNC_INTERVAL
    ) -> None:
        """Create a pending row for every entity that has none yet."""
        now = _now().isoformat()
        with self.db.cursor() as cursor:
            cursor.executemany(
                """
                INSERT OR IGNORE INTO sync_status
                    (entity, sync_interval, last_sync_status, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                [(entity, sync_interval, STATUS_PENDING, now) for entity in entities],
            )

    def get(self, entity: str) -> Optional[SyncStatus]:
        with self.db.cursor() as cursor:
            cursor.execute("SELECT * FROM sync_status WHERE entity = ?", (entity,))
            row = cursor.fetchone()
            return SyncStatus.from_row(row) if row else None

    def all(self) -> list[SyncStatus]:
        with self.db.cursor() as cursor:
            cursor.execute("SELECT * FROM sync_status ORDER BY entity")
            return [SyncStatus.from_row(row) for row in cursor.fetchall()]

    def mark_in_progress(self, entity: str) -> None:
        self._update(entity, last_sync_status=STATUS_IN_PROGRESS)

    def mark_success(
        self,
        entity: str,
        sync_time: datetime,
        incremental: bool,
        count: int,
        partial_failures: int = 0,
    ) -> datetime:
        """Record a successful run and advance the watermark.

        ``last_sync_time`` never moves backwards or stays put: a ``sync_time``
        not after the stored one is bumped to one microsecond past it.

        Returns:
            The stored sync time
        """
        previous = self.get(entity)
        if previous and previous.last_sync_time and sync_time <= previous.last_sync_time:
            sync_time = previous.last_sync_time + timedelta(microseconds=1)

        stamp = sync_time.isoformat()
        mode_column = "last_incremental_sync_time" if incremental else "last_full_sync_time"
        self._update(
            entity,
            last_sync_time=stamp,
            last_sync_count=count,
            last_sync_status=STATUS_SUCCESS,
            last_sync_error=None,
            last_partial_failures=partial_failures,
            **{mode_column: stamp},
        )
        return sync_time

    def mark_error(self, entity: str, message: str) -> None:
        """Record a failed run. The watermark stays where it was."""
        self._update(entity, last_sync_status=STATUS_ERROR, last_sync_error=message)

    def set_interval(self, entity: str, seconds: int) -> None:
        self._update(entity, sync_interval=seconds)

    def is_due(self, entity: str, now: Optional[datetime] = None) -> bool:
        """Whether the entity's sync interval elapsed since its last success."""
        status = self.get(entity)
        if status is None or status.last_sync_time is None:
            return True
        if status.last_sync_status != STATUS_SUCCESS:
            return True
        now = now or _now()
        return now - status.last_sync_time >= timedelta(seconds=status.sync_interval)

    def _update(self, entity: str, **fields) -> None:
        fields["updated_at"] = _now().isoformat()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self.db.cursor() as cursor:
            cursor.execute(
                f"UPDATE sync_status SET {assignments} WHERE entity = ?",
                (*fields.values(), entity),
            )
            if cursor.rowcount == 0:
                # Entity never bootstrapped
                cursor.execute(
                    "INSERT INTO sync_status (entity, last_sync_status) VALUES (?, ?)",
                    (entity, STATUS_PENDING),
                )
                cursor.execute(
                    f"UPDATE sync_status SET {assignments} WHERE entity = ?",
                    (*fields.values(), entity),
                )
