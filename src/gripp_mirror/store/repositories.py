"""Repositories for the mirror tables.

Every mirror row is matched on its ``remote_id``; local ids are only used
for foreign keys between mirror tables.
"""

import logging
import sqlite3
from typing import Any, Optional

from .database import Database

__all__ = [
    "MirrorRepository",
    "ChildRepository",
    "ProjectRepository",
    "EmployeeRepository",
    "HourRepository",
    "InvoiceRepository",
    "InvoiceLineRepository",
    "AbsenceRequestRepository",
    "AbsenceRequestLineRepository",
]

logger = logging.getLogger(__name__)


class MirrorRepository:
    """Upsert-by-remote-id access to one mirror table.

    Subclasses set ``table`` and ``columns``. ``links`` maps a local foreign
    key column to ``(remote id column, parent table)``; the local id is
    resolved from the parent table on every upsert.
    """

    table: str = ""
    columns: tuple[str, ...] = ()
    links: dict[str, tuple[str, str]] = {}

    def __init__(self, db: Database):
        self.db = db

    def find_by_remote_id(self, remote_id: int) -> Optional[sqlite3.Row]:
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT * FROM {self.table} WHERE remote_id = ?", (remote_id,))
            return cursor.fetchone()

    def find_by_id(self, local_id: int) -> Optional[sqlite3.Row]:
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT * FROM {self.table} WHERE id = ?", (local_id,))
            return cursor.fetchone()

    def local_id_for(self, remote_id: Optional[int]) -> Optional[int]:
        """Local id of the row mirroring ``remote_id``, if any."""
        if remote_id is None:
            return None
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT id FROM {self.table} WHERE remote_id = ?", (remote_id,))
            row = cursor.fetchone()
            return row["id"] if row else None

    def _resolve_links(self, row: dict) -> dict:
        resolved = {}
        with self.db.cursor() as cursor:
            for fk_column, (remote_column, parent_table) in self.links.items():
                remote_id = row.get(remote_column)
                local_id = None
                if remote_id is not None:
                    cursor.execute(
                        f"SELECT id FROM {parent_table} WHERE remote_id = ?", (remote_id,)
                    )
                    found = cursor.fetchone()
                    local_id = found["id"] if found else None
                resolved[fk_column] = local_id
        return resolved

    def upsert(self, row: dict, synced_at: str) -> tuple[int, bool]:
        """Insert or update the row keyed by ``row["remote_id"]``.

        Returns:
            ``(local_id, created)``
        """
        remote_id = row["remote_id"]
        values: dict[str, Any] = {column: row[column] for column in self.columns if column in row}
        values.update(self._resolve_links(row))
        values["synced_at"] = synced_at

        existing = self.local_id_for(remote_id)
        with self.db.cursor() as cursor:
            if existing is not None:
                assignments = ", ".join(f"{column} = ?" for column in values)
                cursor.execute(
                    f"UPDATE {self.table} SET {assignments} WHERE id = ?",
                    (*values.values(), existing),
                )
                return existing, False

            names = ["remote_id", *values]
            placeholders = ", ".join("?" * len(names))
            cursor.execute(
                f"INSERT INTO {self.table} ({', '.join(names)}) VALUES ({placeholders})",
                (remote_id, *values.values()),
            )
            return cursor.lastrowid, True

    def count(self) -> int:
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM {self.table}")
            return cursor.fetchone()[0]

    def all(self) -> list[sqlite3.Row]:
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT * FROM {self.table} ORDER BY id")
            return cursor.fetchall()


class ChildRepository:
    """Child rows that are replaced wholesale whenever their parent syncs."""

    table: str = ""
    parent_column: str = ""
    columns: tuple[str, ...] = ()

    def __init__(self, db: Database):
        self.db = db

    def replace_for_parent(self, parent_id: int, rows: list[dict], synced_at: str) -> int:
        """Delete every child of ``parent_id`` and insert ``rows``.

        Returns:
            Number of rows inserted
        """
        self.delete_by_parent(parent_id)
        if not rows:
            return 0

        with self.db.cursor() as cursor:
            for row in rows:
                values = {column: row[column] for column in self.columns if column in row}
                names = ["remote_id", self.parent_column, *values, "synced_at"]
                placeholders = ", ".join("?" * len(names))
                # A line that moved to another parent replaces its old row
                cursor.execute(
                    f"INSERT OR REPLACE INTO {self.table} ({', '.join(names)}) "
                    f"VALUES ({placeholders})",
                    (row.get("remote_id"), parent_id, *values.values(), synced_at),
                )
        return len(rows)

    def delete_by_parent(self, parent_id: int) -> int:
        with self.db.cursor() as cursor:
            cursor.execute(
                f"DELETE FROM {self.table} WHERE {self.parent_column} = ?", (parent_id,)
            )
            return cursor.rowcount

    def find_by_parent(self, parent_id: int) -> list[sqlite3.Row]:
        with self.db.cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {self.table} WHERE {self.parent_column} = ? ORDER BY id",
                (parent_id,),
            )
            return cursor.fetchall()

    def count(self) -> int:
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM {self.table}")
            return cursor.fetchone()[0]


class ProjectRepository(MirrorRepository):
    table = "projects"
    columns = (
        "number",
        "name",
        "description",
        "company_remote_id",
        "company_name",
        "phase_id",
        "phase_name",
        "accountmanager_remote_id",
        "archived",
        "start_date",
        "deadline",
        "end_date",
        "total_excl_vat",
        "total_incl_vat",
        "tags",
        "project_lines",
        "remote_created_at",
        "remote_updated_at",
    )


class EmployeeRepository(MirrorRepository):
    table = "employees"
    columns = (
        "firstname",
        "lastname",
        "email",
        "function",
        "department",
        "active",
        "remote_created_at",
        "remote_updated_at",
    )


class HourRepository(MirrorRepository):
    table = "hours"
    columns = (
        "employee_remote_id",
        "project_remote_id",
        "projectline_remote_id",
        "date",
        "amount",
        "description",
        "status_id",
        "status_name",
        "remote_created_at",
        "remote_updated_at",
    )
    links = {
        "employee_id": ("employee_remote_id", "employees"),
        "project_id": ("project_remote_id", "projects"),
    }


class InvoiceRepository(MirrorRepository):
    table = "invoices"
    columns = (
        "number",
        "date",
        "due_date",
        "company_remote_id",
        "company_name",
        "total_incl_vat",
        "total_excl_vat",
        "total_paid",
        "total_open",
        "is_paid",
        "is_overdue",
        "status",
        "subject",
        "remote_created_at",
        "remote_updated_at",
    )


class InvoiceLineRepository(ChildRepository):
    table = "invoice_lines"
    parent_column = "invoice_id"
    columns = ("description", "amount", "price", "tax_percentage")


class AbsenceRequestRepository(MirrorRepository):
    table = "absence_requests"
    columns = (
        "employee_remote_id",
        "absencetype_id",
        "absencetype_name",
        "description",
        "comment",
        "status_id",
        "status_name",
        "remote_created_at",
        "remote_updated_at",
    )
    links = {"employee_id": ("employee_remote_id", "employees")}


class AbsenceRequestLineRepository(ChildRepository):
    table = "absence_request_lines"
    parent_column = "absence_request_id"
    columns = ("date", "amount", "description", "start_time", "status_id", "status_name")
