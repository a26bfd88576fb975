"""SQLite-backed task storage with an append-only status history."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from campfire_service.core.exceptions import ServiceError
from campfire_service.services.transitions import (
    ASSIGNED_STATUSES,
    TaskStatus,
    ValidatedTransition,
)

if TYPE_CHECKING:
    from campfire_service.services.database import Database


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class TaskStore:
    """
    Task repository: tasks, their status history and deliverable metadata.

    Status is only ever written through ``apply_transition`` with a
    ``ValidatedTransition``; every such write appends exactly one history
    row in the same database transaction.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "title",
        "description",
        "status",
        "priority",
        "category_id",
        "project_id",
        "client_id",
        "contractor_id",
        "created_by",
        "deadline",
        "credit_cost",
        "complexity_level",
        "campfire_eligible",
        "version",
        "created_at",
        "updated_at",
        "status_changed_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TASK_SELECT_BASE_SQL = "SELECT " + _TASK_COLUMNS_SQL + " FROM tasks"  # nosec B608

    # Columns editable outside of a status transition
    _EDITABLE_COLUMNS = frozenset(
        {
            "title",
            "description",
            "priority",
            "category_id",
            "project_id",
            "deadline",
            "campfire_eligible",
            "complexity_level",
        }
    )
    # Columns a transition may set alongside status
    _TRANSITION_COLUMNS = frozenset({"contractor_id", "campfire_eligible"})

    def __init__(self, db: Database) -> None:
        self._db = db
        self._init_schema()

    def _init_schema(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'submitted',
                priority TEXT NOT NULL,
                category_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                contractor_id TEXT,
                created_by TEXT NOT NULL,
                deadline TEXT,
                credit_cost INTEGER NOT NULL CHECK (credit_cost > 0),
                complexity_level INTEGER,
                campfire_eligible INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                status_changed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS task_history (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL UNIQUE,
                task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                actor_id TEXT NOT NULL,
                from_status TEXT,
                to_status TEXT NOT NULL,
                note TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS task_attachments (
                attachment_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                uploader_id TEXT NOT NULL,
                filename TEXT NOT NULL,
                upload_type TEXT NOT NULL,
                uploaded_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS ix_tasks_client ON tasks(client_id);
            CREATE INDEX IF NOT EXISTS ix_tasks_contractor ON tasks(contractor_id);
            CREATE INDEX IF NOT EXISTS ix_history_task ON task_history(task_id, seq);
            """
        )

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {column: row[column] for column in self._TASK_COLUMNS}
        task["campfire_eligible"] = bool(task["campfire_eligible"])
        return task

    def _insert_history(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        actor_id: str,
        from_status: str | None,
        to_status: str,
        note: str | None,
        now: str,
    ) -> None:
        conn.execute(
            "INSERT INTO task_history "
            "(entry_id, task_id, actor_id, from_status, to_status, note, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (f"h-{uuid.uuid4()}", task_id, actor_id, from_status, to_status, note, now),
        )

    def insert_task(self, task_data: dict[str, Any], actor_id: str) -> dict[str, Any]:
        """
        Insert a new task in ``submitted`` plus its creation history row.

        Status, contractor and version are forced regardless of task_data.
        Joins the caller's transaction when one is open.

        Raises:
            DuplicateTaskError: task_id already exists.
        """
        now = _now_iso()
        row = dict(task_data)
        row.update(
            {
                "status": TaskStatus.SUBMITTED.value,
                "contractor_id": None,
                "created_by": actor_id,
                "version": 1,
                "created_at": now,
                "updated_at": now,
                "status_changed_at": now,
            }
        )
        row["campfire_eligible"] = 1 if row.get("campfire_eligible") else 0
        values = tuple(row.get(column) for column in self._TASK_COLUMNS)
        placeholders = ", ".join("?" for _ in self._TASK_COLUMNS)

        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "INSERT INTO tasks (" + self._TASK_COLUMNS_SQL + ") "  # nosec B608
                    "VALUES (" + placeholders + ")",
                    values,
                )
                self._insert_history(
                    conn,
                    row["task_id"],
                    actor_id,
                    None,
                    TaskStatus.SUBMITTED.value,
                    "Task created",
                    now,
                )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower() and "tasks.task_id" in str(exc):
                raise DuplicateTaskError(
                    f"A task with task_id={row['task_id']} already exists"
                ) from exc
            raise

        task = self.get_task(row["task_id"])
        if task is None:
            msg = f"Task {row['task_id']} not found after insert"
            raise RuntimeError(msg)
        return task

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        with self._db.lock:
            row = self._db.connection.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def require_task(self, task_id: str) -> dict[str, Any]:
        """
        Fetch a task by ID.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        task = self.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return task

    def apply_transition(self, transition: ValidatedTransition) -> dict[str, Any]:
        """
        Persist a validated status change and append its history row.

        The update is a compare-and-swap on the current status, so a
        transition validated against a stale snapshot writes nothing.

        Raises:
            ServiceError: INVARIANT_VIOLATION if the transition was not
                validated, the status no longer matches, or the result
                would leave an assigned-family status without a contractor.
        """
        if not isinstance(transition, ValidatedTransition):
            raise ServiceError(
                "INVARIANT_VIOLATION",
                "Status writes require a validated transition",
                500,
                {},
            )
        if any(column not in self._TRANSITION_COLUMNS for column in transition.updates):
            msg = "Attempted to update unknown task column during transition"
            raise ValueError(msg)

        now = _now_iso()
        with self._db.transaction() as conn:
            current = conn.execute(
                "SELECT status, contractor_id FROM tasks WHERE task_id = ?",
                (transition.task_id,),
            ).fetchone()
            if current is None:
                raise ServiceError(
                    "TASK_NOT_FOUND", "Task not found", 404, {"task_id": transition.task_id}
                )

            contractor_id = transition.updates.get("contractor_id", current["contractor_id"])
            if transition.to_status in ASSIGNED_STATUSES and contractor_id is None:
                raise ServiceError(
                    "INVARIANT_VIOLATION",
                    f"Status {transition.to_status} requires an assigned contractor",
                    500,
                    {"task_id": transition.task_id},
                )

            set_columns = ["status = ?", "version = version + 1", "updated_at = ?"]
            set_columns.append("status_changed_at = ?")
            params: list[object] = [transition.to_status.value, now, now]
            for column, value in transition.updates.items():
                set_columns.append(f"{column} = ?")
                params.append(value)
            params.extend([transition.task_id, transition.from_status.value])

            cursor = conn.execute(
                "UPDATE tasks SET " + ", ".join(set_columns) + " "  # nosec B608
                "WHERE task_id = ? AND status = ?",
                params,
            )
            if cursor.rowcount != 1:
                raise ServiceError(
                    "INVARIANT_VIOLATION",
                    "Task status changed before the transition was written",
                    500,
                    {"task_id": transition.task_id},
                )

            self._insert_history(
                conn,
                transition.task_id,
                transition.actor_id,
                transition.from_status.value,
                transition.to_status.value,
                transition.note,
                now,
            )

        return self.require_task(transition.task_id)

    def update_task_fields(self, task_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Update non-status columns of a task."""
        if len(updates) == 0:
            return self.require_task(task_id)
        if any(column not in self._EDITABLE_COLUMNS for column in updates):
            msg = "Attempted to update a task column outside the editable set"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        sql = "UPDATE tasks SET " + set_clause + ", updated_at = ? WHERE task_id = ?"  # nosec B608
        params: list[object] = list(updates.values())
        params.extend([_now_iso(), task_id])

        with self._db.transaction() as conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount == 0:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return self.require_task(task_id)

    def delete_task(self, task_id: str) -> None:
        """Delete a task together with its history and attachments."""
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM task_history WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM task_attachments WHERE task_id = ?", (task_id,))
            cursor = conn.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
            if cursor.rowcount == 0:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})

    def list_tasks(
        self,
        *,
        client_id: str | None = None,
        contractor_id: str | None = None,
        status: str | None = None,
        priority: str | None = None,
        category_id: str | None = None,
        project_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first. All filters use AND logic."""
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        for column, value in (
            ("client_id", client_id),
            ("contractor_id", contractor_id),
            ("status", status),
            ("priority", priority),
            ("category_id", category_id),
            ("project_id", project_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC, task_id"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        with self._db.lock:
            rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_campfire_tasks(self) -> list[dict[str, Any]]:
        """Unassigned, campfire-eligible tasks waiting in ``submitted``."""
        with self._db.lock:
            rows = self._db.connection.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE status = ? AND contractor_id IS NULL "
                "AND campfire_eligible = 1 ORDER BY created_at DESC",
                (TaskStatus.SUBMITTED.value,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_history(self, task_id: str) -> list[dict[str, Any]]:
        """Status history for a task, in write order."""
        with self._db.lock:
            rows = self._db.connection.execute(
                "SELECT entry_id, task_id, actor_id, from_status, to_status, note, created_at "
                "FROM task_history WHERE task_id = ? ORDER BY seq",
                (task_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def insert_attachment(self, attachment_data: dict[str, Any]) -> dict[str, Any]:
        """Record attachment metadata for a task."""
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO task_attachments "
                "(attachment_id, task_id, uploader_id, filename, upload_type, uploaded_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    attachment_data["attachment_id"],
                    attachment_data["task_id"],
                    attachment_data["uploader_id"],
                    attachment_data["filename"],
                    attachment_data["upload_type"],
                    attachment_data["uploaded_at"],
                ),
            )
        return dict(attachment_data)

    def get_attachments_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """Fetch all attachment records for a task sorted by upload time."""
        with self._db.lock:
            rows = self._db.connection.execute(
                "SELECT attachment_id, task_id, uploader_id, filename, upload_type, uploaded_at "
                "FROM task_attachments WHERE task_id = ? ORDER BY uploaded_at",
                (task_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def count_deliverables(self, task_id: str) -> int:
        """Count attachments flagged as deliverables for a task."""
        with self._db.lock:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM task_attachments WHERE task_id = ? AND upload_type = ?",
                (task_id, "deliverable"),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._db.lock:
            row = self._db.connection.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._db.lock:
            rows = self._db.connection.execute(
                "SELECT status, COUNT(*) FROM tasks GROUP BY status"
            ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}
