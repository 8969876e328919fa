"""Store module - SQLite mirror tables and sync bookkeeping."""

from .database import Database
from .repositories import ChildRepository, MirrorRepository
from .sync_status import SyncStatus, SyncStatusStore
from .unit_of_work import UnitOfWork

__all__ = [
    "Database",
    "MirrorRepository",
    "ChildRepository",
    "SyncStatus",
    "SyncStatusStore",
    "UnitOfWork",
]
