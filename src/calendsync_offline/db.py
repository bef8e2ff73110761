"""
SQLite persistence for local entries, the pending operation queue and
push channel positions.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from calendsync_offline.models import EntryPayload
from calendsync_offline.models import LocalEntry
from calendsync_offline.models import OperationKind
from calendsync_offline.models import PendingOperation
from calendsync_offline.models import StoreError
from calendsync_offline.models import SyncState
from calendsync_offline.models import SyncStatus

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = (
    "id",
    "calendar_id",
    "kind",
    "completed",
    "is_multi_day",
    "is_all_day",
    "is_timed",
    "is_task",
    "title",
    "description",
    "location",
    "color",
    "start_date",
    "end_date",
    "start_time",
    "end_time",
    "sync_status",
    "local_updated_at",
    "pending_operation",
    "last_sync_error",
    "conflict_operation",
)

_BOOL_COLUMNS = {"completed", "is_multi_day", "is_all_day", "is_timed", "is_task"}


class EntryDatabase:
    """Manages the SQLite database backing the offline calendar."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the database."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path))
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Cannot open database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        """Create the tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS entries (
                id TEXT PRIMARY KEY,
                calendar_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                is_multi_day INTEGER NOT NULL DEFAULT 0,
                is_all_day INTEGER NOT NULL DEFAULT 0,
                is_timed INTEGER NOT NULL DEFAULT 0,
                is_task INTEGER NOT NULL DEFAULT 0,
                title TEXT NOT NULL,
                description TEXT,
                location TEXT,
                color TEXT,
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                sync_status TEXT NOT NULL,
                local_updated_at TEXT NOT NULL,
                pending_operation TEXT,
                last_sync_error TEXT,
                conflict_operation TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_entries_calendar_date
                ON entries (calendar_id, start_date);
            CREATE INDEX IF NOT EXISTS idx_entries_sync_status
                ON entries (sync_status);

            CREATE TABLE IF NOT EXISTS pending_operations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                entry_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload TEXT,
                created_at TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_pending_entry
                ON pending_operations (entry_id);

            CREATE TABLE IF NOT EXISTS sync_state (
                calendar_id TEXT PRIMARY KEY,
                last_event_id TEXT,
                last_full_sync TEXT
            );
        """)
        self.conn.commit()
        self.migrate_if_needed()

    def migrate_if_needed(self):
        """Add columns introduced after a database file was first created."""
        cursor = self.conn.execute("PRAGMA table_info(sync_state)")
        columns = {row["name"] for row in cursor.fetchall()}
        if "last_full_sync" in columns:
            return

        logger.info("Migrating local database (adding sync_state.last_full_sync)...")
        self.conn.execute("ALTER TABLE sync_state ADD COLUMN last_full_sync TEXT")
        self.conn.commit()

    def _write(self, sql: str, params: tuple = ()) -> int:
        """Execute one statement in its own transaction; return rows touched."""
        try:
            with self.conn:
                return self.conn.execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise StoreError(f"Database write failed: {e}") from e

    # ------------------------------------------------------------------ #
    # Entries                                                              #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> LocalEntry:
        values: dict[str, Any] = {col: row[col] for col in _ENTRY_COLUMNS}
        for col in _BOOL_COLUMNS:
            values[col] = bool(values[col])
        values["sync_status"] = SyncStatus(values["sync_status"])
        for col in ("pending_operation", "conflict_operation"):
            if values[col] is not None:
                values[col] = OperationKind(values[col])
        return LocalEntry(**values)

    @staticmethod
    def _entry_params(entry: LocalEntry) -> tuple:
        params = []
        for col in _ENTRY_COLUMNS:
            value = getattr(entry, col)
            if col in _BOOL_COLUMNS:
                value = int(bool(value))
            elif isinstance(value, (SyncStatus, OperationKind)):
                value = value.value
            params.append(value)
        return tuple(params)

    def get_entry(self, entry_id: str) -> LocalEntry | None:
        """Get an entry by id, or None when absent."""
        row = self.conn.execute("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone()
        return self._entry_from_row(row) if row else None

    def put_entry(self, entry: LocalEntry):
        """Insert or replace an entry (upsert keyed on id)."""
        placeholders = ", ".join("?" for _ in _ENTRY_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in _ENTRY_COLUMNS if col != "id")
        self._write(
            f"INSERT INTO entries ({', '.join(_ENTRY_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            self._entry_params(entry),
        )

    def update_entry(self, entry_id: str, **changes) -> bool:
        """Update selected fields of an existing entry.

        Returns False (and writes nothing) when the entry does not exist.
        """
        existing = self.get_entry(entry_id)
        if existing is None:
            return False
        for name, value in changes.items():
            if name not in _ENTRY_COLUMNS or name == "id":
                raise ValueError(f"Unknown entry field: {name}")
            setattr(existing, name, value)
        self.put_entry(existing)
        return True

    def delete_entry(self, entry_id: str):
        """Delete an entry; deleting an absent id is a no-op."""
        self._write("DELETE FROM entries WHERE id = ?", (entry_id,))

    def entries_for_calendar(self, calendar_id: str) -> list[LocalEntry]:
        """All entries of a calendar, ordered by start date."""
        cursor = self.conn.execute(
            "SELECT * FROM entries WHERE calendar_id = ? ORDER BY start_date, start_time, title",
            (calendar_id,),
        )
        return [self._entry_from_row(row) for row in cursor.fetchall()]

    def count_entries(self, calendar_id: str) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM entries WHERE calendar_id = ?", (calendar_id,)
        ).fetchone()[0]

    def entries_by_status(self, status: SyncStatus) -> list[LocalEntry]:
        cursor = self.conn.execute(
            "SELECT * FROM entries WHERE sync_status = ? ORDER BY local_updated_at",
            (status.value,),
        )
        return [self._entry_from_row(row) for row in cursor.fetchall()]

    def count_entries_by_status(self) -> dict[str, int]:
        cursor = self.conn.execute(
            "SELECT sync_status, COUNT(*) FROM entries GROUP BY sync_status"
        )
        return {row[0]: row[1] for row in cursor.fetchall()}

    def rename_entry(self, old_id: str, new_id: str):
        """Re-key an entry and its queued operations to a server-assigned id."""
        try:
            with self.conn:
                self.conn.execute("DELETE FROM entries WHERE id = ?", (new_id,))
                self.conn.execute("UPDATE entries SET id = ? WHERE id = ?", (new_id, old_id))
                self.conn.execute(
                    "UPDATE pending_operations SET entry_id = ? WHERE entry_id = ?",
                    (new_id, old_id),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Database write failed: {e}") from e

    # ------------------------------------------------------------------ #
    # Pending operation queue                                              #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _operation_from_row(row: sqlite3.Row) -> PendingOperation:
        payload = None
        if row["payload"] is not None:
            payload = EntryPayload.from_dict(json.loads(row["payload"]))
        return PendingOperation(
            id=row["id"],
            entry_id=row["entry_id"],
            operation=OperationKind(row["operation"]),
            payload=payload,
            created_at=row["created_at"],
            retry_count=row["retry_count"],
            last_error=row["last_error"],
        )

    @staticmethod
    def _operation_params(op: PendingOperation) -> tuple:
        payload = json.dumps(op.payload.to_dict()) if op.payload is not None else None
        return (
            op.id,
            op.entry_id,
            op.operation.value,
            payload,
            op.created_at,
            op.retry_count,
            op.last_error,
        )

    def add_operation(self, op: PendingOperation):
        """Append an operation to the queue."""
        self._write(
            "INSERT INTO pending_operations "
            "(id, entry_id, operation, payload, created_at, retry_count, last_error) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            self._operation_params(op),
        )

    def put_operation(self, op: PendingOperation):
        """Insert or update an operation, keeping its queue position."""
        self._write(
            "INSERT INTO pending_operations "
            "(id, entry_id, operation, payload, created_at, retry_count, last_error) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET "
            "entry_id = excluded.entry_id, operation = excluded.operation, "
            "payload = excluded.payload, retry_count = excluded.retry_count, "
            "last_error = excluded.last_error",
            self._operation_params(op),
        )

    def get_operation(self, op_id: str) -> PendingOperation | None:
        row = self.conn.execute(
            "SELECT * FROM pending_operations WHERE id = ?", (op_id,)
        ).fetchone()
        return self._operation_from_row(row) if row else None

    def delete_operation(self, op_id: str):
        self._write("DELETE FROM pending_operations WHERE id = ?", (op_id,))

    def delete_operations_for_entry(self, entry_id: str) -> int:
        """Drop every queued operation targeting entry_id; return how many."""
        return self._write("DELETE FROM pending_operations WHERE entry_id = ?", (entry_id,))

    def all_operations(self) -> list[PendingOperation]:
        """The whole queue in insertion order."""
        cursor = self.conn.execute("SELECT * FROM pending_operations ORDER BY seq")
        return [self._operation_from_row(row) for row in cursor.fetchall()]

    def operations_for_entry(self, entry_id: str) -> list[PendingOperation]:
        cursor = self.conn.execute(
            "SELECT * FROM pending_operations WHERE entry_id = ? ORDER BY seq", (entry_id,)
        )
        return [self._operation_from_row(row) for row in cursor.fetchall()]

    def count_operations(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM pending_operations").fetchone()[0]

    # ------------------------------------------------------------------ #
    # Push channel and full sync state                                     #
    # ------------------------------------------------------------------ #

    def get_sync_state(self, calendar_id: str) -> SyncState | None:
        row = self.conn.execute(
            "SELECT * FROM sync_state WHERE calendar_id = ?", (calendar_id,)
        ).fetchone()
        if row is None:
            return None
        return SyncState(
            calendar_id=row["calendar_id"],
            last_event_id=row["last_event_id"],
            last_full_sync=row["last_full_sync"],
        )

    def set_last_event_id(self, calendar_id: str, event_id: str):
        self._write(
            "INSERT INTO sync_state (calendar_id, last_event_id) VALUES (?, ?) "
            "ON CONFLICT(calendar_id) DO UPDATE SET last_event_id = excluded.last_event_id",
            (calendar_id, event_id),
        )

    def init_sync_state(self, calendar_id: str):
        """Create an empty sync_state row unless one exists."""
        self._write(
            "INSERT INTO sync_state (calendar_id) VALUES (?) ON CONFLICT(calendar_id) DO NOTHING",
            (calendar_id,),
        )

    def replace_synced_entries(
        self, calendar_id: str, entries: list[LocalEntry], fetched_at: str
    ) -> int:
        """
        Swap a calendar's synced rows for a fresh server listing.

        Rows that are pending or in conflict, and ids that still have queued
        operations, are left untouched; the listing never overwrites them.
        The push position is cleared and last_full_sync set to fetched_at,
        all in one transaction.  Returns the number of rows written.
        """
        placeholders = ", ".join("?" for _ in _ENTRY_COLUMNS)
        written = 0
        try:
            with self.conn:
                self.conn.execute(
                    "DELETE FROM entries WHERE calendar_id = ? AND sync_status = ? "
                    "AND id NOT IN (SELECT entry_id FROM pending_operations)",
                    (calendar_id, SyncStatus.SYNCED.value),
                )
                for entry in entries:
                    cursor = self.conn.execute(
                        f"INSERT INTO entries ({', '.join(_ENTRY_COLUMNS)}) VALUES ({placeholders}) "
                        "ON CONFLICT(id) DO NOTHING",
                        self._entry_params(entry),
                    )
                    written += cursor.rowcount
                self.conn.execute(
                    "INSERT INTO sync_state (calendar_id, last_event_id, last_full_sync) "
                    "VALUES (?, NULL, ?) ON CONFLICT(calendar_id) DO UPDATE SET "
                    "last_event_id = NULL, last_full_sync = excluded.last_full_sync",
                    (calendar_id, fetched_at),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Database write failed: {e}") from e
        return written

    def insert_missing_entries(self, entries: list[LocalEntry]) -> int:
        """Insert entries whose id is not stored yet; existing rows win."""
        placeholders = ", ".join("?" for _ in _ENTRY_COLUMNS)
        written = 0
        try:
            with self.conn:
                for entry in entries:
                    cursor = self.conn.execute(
                        f"INSERT INTO entries ({', '.join(_ENTRY_COLUMNS)}) VALUES ({placeholders}) "
                        "ON CONFLICT(id) DO NOTHING",
                        self._entry_params(entry),
                    )
                    written += cursor.rowcount
        except sqlite3.Error as e:
            raise StoreError(f"Database write failed: {e}") from e
        return written

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
