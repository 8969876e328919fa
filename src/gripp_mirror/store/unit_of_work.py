"""Transactional envelope over the mirror repositories."""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from ..sync.errors import TransactionError
from .database import Database
from .repositories import (
    AbsenceRequestLineRepository,
    AbsenceRequestRepository,
    EmployeeRepository,
    HourRepository,
    InvoiceLineRepository,
    InvoiceRepository,
    ProjectRepository,
)
from .sync_status import SyncStatusStore

__all__ = ["UnitOfWork"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UnitOfWork:
    """One transaction scope over every repository of a database.

    Only one transaction may be open at a time. ``with_transaction`` and
    ``transaction()`` join an already-open transaction instead of opening
    a second one; the outermost scope commits or rolls back.
    """

    def __init__(self, db: Database):
        self.db = db
        self.projects = ProjectRepository(db)
        self.employees = EmployeeRepository(db)
        self.hours = HourRepository(db)
        self.invoices = InvoiceRepository(db)
        self.invoice_lines = InvoiceLineRepository(db)
        self.absence_requests = AbsenceRequestRepository(db)
        self.absence_request_lines = AbsenceRequestLineRepository(db)
        self.sync_status = SyncStatusStore(db)

        self._active = False
        self._failed = False

    @property
    def in_transaction(self) -> bool:
        return self._active

    @property
    def needs_rollback(self) -> bool:
        """True after a failed commit until ``rollback_transaction`` is called."""
        return self._failed

    def begin_transaction(self) -> None:
        if self._failed:
            raise TransactionError("Previous commit failed; rollback required before reuse")
        if self._active:
            raise TransactionError("Transaction already in progress")
        try:
            # Take the write lock up front
            self.db.connection().execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise TransactionError(f"Failed to begin transaction: {e}") from e
        self._active = True

    def commit_transaction(self) -> None:
        if not self._active:
            raise TransactionError("No transaction in progress")
        try:
            self.db.connection().execute("COMMIT")
        except sqlite3.Error as e:
            self._failed = True
            raise TransactionError(f"Failed to commit transaction: {e}") from e
        self._active = False

    def rollback_transaction(self) -> None:
        if not self._active and not self._failed:
            raise TransactionError("No transaction in progress")
        conn = self.db.connection()
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise TransactionError(f"Failed to rollback transaction: {e}") from e
        finally:
            self._active = False
            self._failed = False

    def with_transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` in a transaction: commit on return, rollback on raise."""
        if self._active:
            return fn()

        self.begin_transaction()
        try:
            result = fn()
        except BaseException:
            self.rollback_transaction()
            raise
        try:
            self.commit_transaction()
        except TransactionError:
            self.rollback_transaction()
            raise
        return result

    @contextmanager
    def transaction(self) -> Iterator["UnitOfWork"]:
        """Context manager form of ``with_transaction``."""
        if self._active:
            yield self
            return

        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback_transaction()
            raise
        try:
            self.commit_transaction()
        except TransactionError:
            self.rollback_transaction()
            raise
