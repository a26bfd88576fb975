"""Lazy expiry of credit holds on tasks nobody picked up."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from campfire_service.logging import get_logger
from campfire_service.services.transitions import SYSTEM_ACTOR_ID, TaskStatus, expire_hold

if TYPE_CHECKING:
    from campfire_service.services.database import Database
    from campfire_service.services.ledger import Ledger
    from campfire_service.services.task_store import TaskStore


class HoldExpiryEvaluator:
    """
    Cancels unassigned ``submitted`` tasks whose hold outlived the window.

    Evaluation happens when a task is read. The status is re-checked
    inside the write transaction, so a task assigned or claimed in the
    meantime is left alone.
    """

    def __init__(
        self,
        store: TaskStore,
        ledger: Ledger,
        db: Database,
        window_seconds: int | None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._db = db
        self._window_seconds = window_seconds
        self._logger = get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._window_seconds is not None

    @staticmethod
    def compute_expiry(status_changed_at: str, seconds: int) -> datetime:
        """Instant at which a task that entered ``submitted`` at the given time expires."""
        base_dt = datetime.fromisoformat(status_changed_at.replace("Z", "+00:00"))
        return base_dt + timedelta(seconds=seconds)

    def expires_at(self, task: dict[str, Any]) -> datetime | None:
        """Expiry instant for a task whose hold can expire, else None."""
        if self._window_seconds is None:
            return None
        if task["status"] != TaskStatus.SUBMITTED or task["contractor_id"] is not None:
            return None
        return self.compute_expiry(str(task["status_changed_at"]), self._window_seconds)

    def is_expired(self, task: dict[str, Any]) -> bool:
        expires_at = self.expires_at(task)
        return expires_at is not None and datetime.now(UTC) >= expires_at

    def evaluate(self, task: dict[str, Any]) -> dict[str, Any]:
        """Return the task, cancelled and released first if its hold has expired."""
        if not self.is_expired(task):
            return task

        task_id = str(task["task_id"])
        with self._db.transaction():
            current = self._store.get_task(task_id)
            if current is None or not self.is_expired(current):
                return current if current is not None else task

            updated = self._store.apply_transition(expire_hold(current))
            self._ledger.release(
                str(current["client_id"]),
                int(current["credit_cost"]),
                task_id,
                SYSTEM_ACTOR_ID,
                description="Credit hold expired",
            )

        self._logger.info(
            "Credit hold expired",
            extra={"task_id": task_id, "client_id": current["client_id"]},
        )
        return updated

    def evaluate_batch(self, tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Evaluate hold expiry for a list of tasks."""
        return [self.evaluate(task) for task in tasks]

    def expire_for_client(self, client_id: str) -> int:
        """Expire every lapsed hold a client owns. Returns how many tasks were cancelled."""
        if not self.enabled:
            return 0
        open_tasks = self._store.list_tasks(client_id=client_id, status=TaskStatus.SUBMITTED.value)
        evaluated = self.evaluate_batch(open_tasks)
        return sum(1 for task in evaluated if task["status"] == TaskStatus.CANCELLED)
