"""SQLite mirror database: schema and connection handling."""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ..config import Config

__all__ = ["Database", "SCHEMA"]

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id INTEGER NOT NULL UNIQUE,
    number TEXT,
    name TEXT NOT NULL,
    description TEXT,
    company_remote_id INTEGER,
    company_name TEXT,
    phase_id INTEGER,
    phase_name TEXT,
    accountmanager_remote_id INTEGER,
    archived INTEGER NOT NULL DEFAULT 0,
    start_date TEXT,
    deadline TEXT,
    end_date TEXT,
    total_excl_vat REAL,
    total_incl_vat REAL,
    tags TEXT,
    project_lines TEXT,
    remote_created_at TEXT,
    remote_updated_at TEXT,
    synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS employees (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id INTEGER NOT NULL UNIQUE,
    firstname TEXT,
    lastname TEXT,
    email TEXT,
    function TEXT,
    department TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    remote_created_at TEXT,
    remote_updated_at TEXT,
    synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS hours (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id INTEGER NOT NULL UNIQUE,
    employee_remote_id INTEGER,
    employee_id INTEGER REFERENCES employees (id) ON DELETE SET NULL,
    project_remote_id INTEGER,
    project_id INTEGER REFERENCES projects (id) ON DELETE CASCADE,
    projectline_remote_id INTEGER,
    date TEXT NOT NULL,
    amount REAL NOT NULL DEFAULT 0,
    description TEXT,
    status_id INTEGER,
    status_name TEXT,
    remote_created_at TEXT,
    remote_updated_at TEXT,
    synced_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_hours_employee_id ON hours (employee_id);
CREATE INDEX IF NOT EXISTS idx_hours_project_id ON hours (project_id);
CREATE INDEX IF NOT EXISTS idx_hours_date ON hours (date);

CREATE TABLE IF NOT EXISTS invoices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id INTEGER NOT NULL UNIQUE,
    number TEXT NOT NULL,
    date TEXT,
    due_date TEXT,
    company_remote_id INTEGER,
    company_name TEXT,
    total_incl_vat REAL NOT NULL DEFAULT 0,
    total_excl_vat REAL NOT NULL DEFAULT 0,
    total_paid REAL NOT NULL DEFAULT 0,
    total_open REAL NOT NULL DEFAULT 0,
    is_paid INTEGER NOT NULL DEFAULT 0,
    is_overdue INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    subject TEXT,
    remote_created_at TEXT,
    remote_updated_at TEXT,
    synced_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices (status);

CREATE TABLE IF NOT EXISTS invoice_lines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id INTEGER UNIQUE,
    invoice_id INTEGER NOT NULL REFERENCES invoices (id) ON DELETE CASCADE,
    description TEXT,
    amount REAL NOT NULL DEFAULT 0,
    price REAL NOT NULL DEFAULT 0,
    tax_percentage REAL,
    synced_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_invoice_lines_invoice_id ON invoice_lines (invoice_id);

CREATE TABLE IF NOT EXISTS absence_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id INTEGER NOT NULL UNIQUE,
    employee_remote_id INTEGER,
    employee_id INTEGER REFERENCES employees (id) ON DELETE SET NULL,
    absencetype_id INTEGER,
    absencetype_name TEXT,
    description TEXT,
    comment TEXT,
    status_id INTEGER,
    status_name TEXT,
    remote_created_at TEXT,
    remote_updated_at TEXT,
    synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS absence_request_lines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    remote_id INTEGER UNIQUE,
    absence_request_id INTEGER NOT NULL
        REFERENCES absence_requests (id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    amount REAL NOT NULL DEFAULT 0,
    description TEXT,
    start_time TEXT,
    status_id INTEGER,
    status_name TEXT,
    synced_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_absence_request_lines_request
    ON absence_request_lines (absence_request_id);
CREATE INDEX IF NOT EXISTS idx_absence_request_lines_date
    ON absence_request_lines (date);

CREATE TABLE IF NOT EXISTS sync_status (
    entity TEXT PRIMARY KEY,
    last_sync_time TEXT,
    last_incremental_sync_time TEXT,
    last_full_sync_time TEXT,
    sync_interval INTEGER NOT NULL DEFAULT 3600,
    last_sync_count INTEGER NOT NULL DEFAULT 0,
    last_sync_status TEXT NOT NULL DEFAULT 'pending',
    last_sync_error TEXT,
    last_partial_failures INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);
"""


class Database:
    """SQLite database holding the mirror tables.

    Connections are thread-local and run in autocommit mode; callers that
    need atomicity open explicit transactions (see ``UnitOfWork``).
    """

    def __init__(self, db_path: Optional[Path] = None, timeout: float = 30.0):
        """Initialize the database.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a competing writer's lock
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "mirror.db"

        self.db_path = Path(db_path)
        self.timeout = timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._lock = threading.Lock()

    def connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.connection = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for a cursor on the thread-local connection."""
        cursor = self.connection().cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.connection().executescript(SCHEMA)
        logger.debug(f"Mirror database ready at {self.db_path}")

    def close(self) -> None:
        """Close every connection opened through this instance."""
        with self._lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()
