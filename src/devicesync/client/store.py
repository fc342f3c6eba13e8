"""Local datastore adapter for the sync engine.

This module provides:
- LocalStore: Interface the engine consumes (idempotency ledger,
  snapshot, entity mutations)
- SQLiteLocalStore: SQLite-based implementation

Architecture:
    Entities (tasks, projects, progress logs, transactions) are stored as
    JSON documents keyed by their natural id. Upserts merge the incoming
    fields into the stored document, so the last applied write wins per
    field and a replayed write leaves the row unchanged.

    The applied_events table is the idempotency ledger. Its primary key
    guarantees at most one record per event id; rows are never pruned.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from devicesync.client.types import AppliedEventRecord, OutboundSnapshot

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for local store errors."""


class LedgerWriteError(StoreError):
    """Failed to record an applied event."""


class EntityNotFoundError(StoreError):
    """Referenced entity does not exist."""


class LocalStore(Protocol):
    """Interface of the local store consumed by the engine."""

    def ledger_has(self, event_id: str) -> bool:
        """Return True if the event has already been applied."""
        ...

    def ledger_write(self, record: AppliedEventRecord) -> None:
        """Record an applied event. Raises LedgerWriteError on failure."""
        ...

    def snapshot(self) -> OutboundSnapshot:
        """Serialize current local domain state."""
        ...

    def upsert_task(self, task_id: str, fields: Mapping[str, Any]) -> None: ...

    def delete_task(self, task_id: str) -> None: ...

    def upsert_project(self, project_id: str, fields: Mapping[str, Any]) -> None: ...

    def log_progress(
        self, log_id: str, project_id: str, fields: Mapping[str, Any]
    ) -> None: ...

    def upsert_transaction(self, transaction_id: str, fields: Mapping[str, Any]) -> None: ...

    def delete_transaction(self, transaction_id: str) -> None: ...


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SQLiteLocalStore:
    """SQLite-based local store.

    Thread-safe: the engine thread applies events while the application
    thread reads and mutates.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize local store database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode, explicit BEGIN for multi-statement writes
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS progress_logs (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- Idempotency ledger, never pruned
            CREATE TABLE IF NOT EXISTS applied_events (
                event_id TEXT PRIMARY KEY,
                event_type TEXT NOT NULL,
                applied_at TEXT NOT NULL,
                source TEXT NOT NULL
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # === Idempotency ledger ===

    def ledger_has(self, event_id: str) -> bool:
        """Check if an event has already been applied."""
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM applied_events WHERE event_id = ?",
                (event_id,),
            ).fetchone()
        return row is not None

    def ledger_write(self, record: AppliedEventRecord) -> None:
        """Record an applied event.

        Raises:
            LedgerWriteError: If the row cannot be written (including a
                record that already exists for this event id).
        """
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO applied_events (event_id, event_type, applied_at, source)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        record.event_id,
                        record.event_type,
                        record.applied_at.isoformat(),
                        record.source,
                    ),
                )
        except sqlite3.Error as e:
            raise LedgerWriteError(f"Failed to record event {record.event_id}: {e}") from e

    def get_applied_event(self, event_id: str) -> AppliedEventRecord | None:
        """Get the ledger record for an event."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM applied_events WHERE event_id = ?",
                (event_id,),
            ).fetchone()
        if row is None:
            return None
        return AppliedEventRecord(
            event_id=row["event_id"],
            event_type=row["event_type"],
            applied_at=datetime.fromisoformat(row["applied_at"]),
            source=row["source"],
        )

    def count_applied_events(self) -> int:
        """Number of rows in the ledger."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM applied_events").fetchone()
        return int(row[0])

    # === Entities ===

    def _get(self, table: str, entity_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT data FROM {table} WHERE id = ?",
                (entity_id,),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def _list(self, table: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data FROM {table} ORDER BY created_at, id"
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def _upsert(
        self,
        table: str,
        entity_id: str,
        fields: Mapping[str, Any],
        extra_columns: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Merge fields into the stored document (last write wins per field)."""
        now = _now()
        with self._lock:
            existing = self._get(table, entity_id)
            document = dict(existing or {})
            document.update(fields)
            document["id"] = entity_id
            document.setdefault("createdAt", now)
            document["updatedAt"] = now

            columns = dict(extra_columns or {})
            if existing is None:
                names = ["id", "data", "created_at", "updated_at", *columns]
                placeholders = ", ".join("?" for _ in names)
                self._conn.execute(
                    f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                    (entity_id, json.dumps(document), document["createdAt"], now, *columns.values()),
                )
            else:
                assignments = ", ".join(f"{name} = ?" for name in ["data", "updated_at", *columns])
                self._conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",
                    (json.dumps(document), now, *columns.values(), entity_id),
                )
        return document

    def _delete(self, table: str, entity_id: str) -> None:
        with self._lock:
            self._conn.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Get a task document by id."""
        return self._get("tasks", task_id)

    def list_tasks(self) -> list[dict[str, Any]]:
        """List all task documents."""
        return self._list("tasks")

    def upsert_task(self, task_id: str, fields: Mapping[str, Any]) -> None:
        """Create or update a task."""
        self._upsert("tasks", task_id, fields)

    def delete_task(self, task_id: str) -> None:
        """Delete a task (no-op if it does not exist)."""
        self._delete("tasks", task_id)

    def get_project(self, project_id: str) -> dict[str, Any] | None:
        """Get a project document by id."""
        return self._get("projects", project_id)

    def list_projects(self) -> list[dict[str, Any]]:
        """List all project documents."""
        return self._list("projects")

    def upsert_project(self, project_id: str, fields: Mapping[str, Any]) -> None:
        """Create or update a project."""
        self._upsert("projects", project_id, fields)

    def list_progress_logs(self, project_id: str | None = None) -> list[dict[str, Any]]:
        """List progress logs, optionally for a single project."""
        logs = self._list("progress_logs")
        if project_id is None:
            return logs
        return [log for log in logs if log.get("projectId") == project_id]

    def log_progress(
        self, log_id: str, project_id: str, fields: Mapping[str, Any]
    ) -> None:
        """Record a progress log and roll its progress/status into the project.

        Writes both rows in one SQLite transaction.

        Raises:
            EntityNotFoundError: If the project does not exist.
        """
        with self._lock:
            project = self.get_project(project_id)
            if project is None:
                raise EntityNotFoundError(f"Project {project_id} not found")

            log_fields = dict(fields)
            log_fields["projectId"] = project_id
            log_fields.setdefault("progressBefore", project.get("totalProgress", 0))

            project_fields: dict[str, Any] = {}
            if "progress" in fields:
                project_fields["totalProgress"] = fields["progress"]
                log_fields.setdefault("progressAfter", fields["progress"])
            if fields.get("status"):
                project_fields["status"] = fields["status"]
            project_fields["lastSessionDate"] = fields.get("loggedAt") or _now()

            self._conn.execute("BEGIN")
            try:
                self._upsert(
                    "progress_logs", log_id, log_fields, extra_columns={"project_id": project_id}
                )
                self._upsert("projects", project_id, project_fields)
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        """Get a transaction document by id."""
        return self._get("transactions", transaction_id)

    def list_transactions(self) -> list[dict[str, Any]]:
        """List all transaction documents."""
        return self._list("transactions")

    def upsert_transaction(self, transaction_id: str, fields: Mapping[str, Any]) -> None:
        """Create or update a financial transaction."""
        self._upsert("transactions", transaction_id, fields)

    def delete_transaction(self, transaction_id: str) -> None:
        """Delete a transaction (no-op if it does not exist)."""
        self._delete("transactions", transaction_id)

    # === Snapshot ===

    def snapshot(self) -> OutboundSnapshot:
        """Serialize all entities for an outbound push."""
        with self._lock:
            data = {
                "tasks": self.list_tasks(),
                "projects": self.list_projects(),
                "progressLogs": self.list_progress_logs(),
                "transactions": self.list_transactions(),
            }
        return OutboundSnapshot(data=data)

