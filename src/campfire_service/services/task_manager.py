"""Task lifecycle orchestration: validation, persistence and ledger effects."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from campfire_service.core.exceptions import ServiceError
from campfire_service.logging import get_logger
from campfire_service.services.money import (
    config_to_minor_units,
    from_minor_units,
    to_minor_units,
)
from campfire_service.services.transitions import (
    TERMINAL_STATUSES,
    Actor,
    Role,
    TaskStatus,
    ValidatedTransition,
    parse_status,
    validate_claim,
    validate_pass,
    validate_transition,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from campfire_service.clients.identity_client import IdentityClient
    from campfire_service.clients.notification_client import NotificationClient
    from campfire_service.config import PricingConfig
    from campfire_service.services.database import Database
    from campfire_service.services.hold_expiry import HoldExpiryEvaluator
    from campfire_service.services.ledger import Ledger
    from campfire_service.services.task_store import TaskStore

VALID_PRIORITIES = ("low", "medium", "high", "urgent")
UPLOAD_TYPES = ("deliverable", "reference")
MAX_COMPLEXITY_LEVEL = 12
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 10000

_CREATE_FIELDS = frozenset(
    {
        "title",
        "description",
        "priority",
        "category_id",
        "project_id",
        "client_id",
        "deadline",
        "campfire_eligible",
        "complexity_level",
        "credit_cost",
    }
)
_ADMIN_EDITABLE_FIELDS = frozenset(
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
_CONTRACTOR_EDITABLE_FIELDS = frozenset({"deadline"})


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _reject_unknown_fields(body: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(body) - allowed)
    if unknown:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Unknown fields: {', '.join(unknown)}",
            400,
            {"fields": unknown},
        )


def _validate_text(value: object, field_name: str, max_length: int, *, allow_empty: bool) -> str:
    if not isinstance(value, str):
        raise ServiceError(
            "VALIDATION_ERROR", f"{field_name} must be a string", 400, {"field": field_name}
        )
    stripped = value.strip()
    if not allow_empty and len(stripped) == 0:
        raise ServiceError(
            "VALIDATION_ERROR", f"{field_name} must not be empty", 400, {"field": field_name}
        )
    if len(stripped) > max_length:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"{field_name} must not exceed {max_length} characters",
            400,
            {"field": field_name},
        )
    return stripped


def _validate_priority(value: object) -> str:
    if value not in VALID_PRIORITIES:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Invalid priority: {value}",
            400,
            {"field": "priority", "allowed": list(VALID_PRIORITIES)},
        )
    return str(value)


def _validate_deadline(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError(
            "VALIDATION_ERROR", "deadline must be an ISO 8601 string", 400, {"field": "deadline"}
        )
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ServiceError(
            "VALIDATION_ERROR", "deadline must be an ISO 8601 string", 400, {"field": "deadline"}
        ) from exc
    return value


def _validate_complexity(value: object) -> int | None:
    if value is None:
        return None
    if (
        not isinstance(value, int)
        or isinstance(value, bool)
        or not 0 <= value <= MAX_COMPLEXITY_LEVEL
    ):
        raise ServiceError(
            "VALIDATION_ERROR",
            f"complexity_level must be an integer between 0 and {MAX_COMPLEXITY_LEVEL}",
            400,
            {"field": "complexity_level"},
        )
    return value


def _validate_flag(value: object, field_name: str) -> int:
    if not isinstance(value, bool):
        raise ServiceError(
            "VALIDATION_ERROR", f"{field_name} must be a boolean", 400, {"field": field_name}
        )
    return 1 if value else 0


class TaskManager:
    """
    Orchestrates the task lifecycle.

    Every status change goes through the same sequence inside one
    database transaction: reload the task, validate the requested edge
    against the fresh snapshot, persist status plus history, then apply
    the ledger effect (release on ``cancelled``, finalize on ``closed``).
    Notifications are sent only after the transaction commits and never
    fail the request.
    """

    def __init__(
        self,
        db: Database,
        store: TaskStore,
        ledger: Ledger,
        identity_client: IdentityClient,
        notification_client: NotificationClient,
        hold_expiry: HoldExpiryEvaluator,
        pricing: PricingConfig,
    ) -> None:
        self._db = db
        self._store = store
        self._ledger = ledger
        self._identity_client = identity_client
        self._notification_client = notification_client
        self._hold_expiry = hold_expiry
        self._pricing = pricing
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _task_to_response(self, row: dict[str, Any]) -> dict[str, Any]:
        """Convert a stored task to its response dict."""
        expires_at = self._hold_expiry.expires_at(row)
        return {
            "task_id": row["task_id"],
            "title": row["title"],
            "description": row["description"],
            "status": row["status"],
            "priority": row["priority"],
            "category_id": row["category_id"],
            "project_id": row["project_id"],
            "client_id": row["client_id"],
            "contractor_id": row["contractor_id"],
            "created_by": row["created_by"],
            "deadline": row["deadline"],
            "credit_cost": from_minor_units(row["credit_cost"]),
            "complexity_level": row["complexity_level"],
            "campfire_eligible": row["campfire_eligible"],
            "version": row["version"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "status_changed_at": row["status_changed_at"],
            "hold_expires_at": (
                None
                if expires_at is None
                else expires_at.isoformat(timespec="seconds").replace("+00:00", "Z")
            ),
        }

    @staticmethod
    def _is_open_campfire_task(task: dict[str, Any]) -> bool:
        return (
            task["campfire_eligible"]
            and task["status"] == TaskStatus.SUBMITTED
            and task["contractor_id"] is None
        )

    def _ensure_can_view(self, task: dict[str, Any], actor: Actor) -> None:
        if actor.role is Role.ADMIN:
            return
        if actor.role is Role.CLIENT and task["client_id"] == actor.user_id:
            return
        if actor.role is Role.CONTRACTOR and (
            task["contractor_id"] == actor.user_id or self._is_open_campfire_task(task)
        ):
            return
        raise ServiceError("FORBIDDEN", "You do not have access to this task", 403, {})

    def _load_visible_task(self, task_id: str, actor: Actor) -> dict[str, Any]:
        task = self._hold_expiry.evaluate(self._store.require_task(task_id))
        self._ensure_can_view(task, actor)
        return task

    def _compute_cost(self, category_id: str, complexity_level: int | None) -> int:
        base = self._pricing.category_costs.get(category_id, self._pricing.default_cost)
        cost = config_to_minor_units(base)
        if complexity_level is not None:
            cost += complexity_level * config_to_minor_units(
                self._pricing.cost_per_complexity_level
            )
        return cost

    async def _require_user_with_role(self, user_id: object, role: Role, field_name: str) -> str:
        if not isinstance(user_id, str) or len(user_id) == 0:
            raise ServiceError(
                "VALIDATION_ERROR", f"{field_name} must be a string", 400, {"field": field_name}
            )
        user = await self._identity_client.get_user(user_id)
        if user is None:
            raise ServiceError("USER_NOT_FOUND", "User not found", 404, {"user_id": user_id})
        if user.get("role") != role:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"{field_name} must reference a {role}",
                400,
                {"field": field_name},
            )
        return user_id

    def _commit_transition(
        self,
        task_id: str,
        decide: Callable[[dict[str, Any]], ValidatedTransition],
    ) -> tuple[dict[str, Any], ValidatedTransition]:
        """Reload, validate, write and apply the ledger effect as one unit."""
        with self._db.transaction():
            current = self._store.require_task(task_id)
            transition = decide(current)
            updated = self._store.apply_transition(transition)

            if transition.to_status is TaskStatus.CANCELLED:
                self._ledger.release(
                    str(current["client_id"]),
                    int(current["credit_cost"]),
                    task_id,
                    transition.actor_id,
                )
            elif transition.to_status is TaskStatus.CLOSED:
                self._ledger.finalize(
                    str(current["client_id"]),
                    int(current["credit_cost"]),
                    task_id,
                    transition.actor_id,
                )

        self._logger.info(
            "Task transitioned",
            extra={
                "task_id": task_id,
                "from_status": transition.from_status.value,
                "to_status": transition.to_status.value,
                "actor_id": transition.actor_id,
            },
        )
        return updated, transition

    async def _notify_status_change(
        self,
        task: dict[str, Any],
        transition: ValidatedTransition,
        previous_contractor_id: str | None,
    ) -> None:
        recipients: list[str] = []
        for user_id in (task["client_id"], task["contractor_id"] or previous_contractor_id):
            if user_id is not None and user_id != transition.actor_id and user_id not in recipients:
                recipients.append(user_id)

        for user_id in recipients:
            await self._notification_client.notify(
                user_id,
                "status_change",
                "Task status updated",
                f'"{task["title"]}" moved from {transition.from_status} to {transition.to_status}',
                f"/tasks/{task['task_id']}",
            )

    # ------------------------------------------------------------------
    # Public methods, called by routers
    # ------------------------------------------------------------------

    async def create_task(self, actor: Actor, body: dict[str, Any]) -> dict[str, Any]:
        """
        Create a task in ``submitted`` and hold its cost against the client.

        The task row, its creation history entry and the ``task_hold``
        transaction commit together; an insufficient balance leaves no task.
        """
        if actor.role not in (Role.CLIENT, Role.ADMIN):
            raise ServiceError("FORBIDDEN", "Only clients and admins can create tasks", 403, {})

        _reject_unknown_fields(body, _CREATE_FIELDS)
        for field_name in ("title", "category_id", "project_id"):
            if body.get(field_name) is None:
                raise ServiceError(
                    "MISSING_FIELD",
                    f"{field_name} is required",
                    400,
                    {"field": field_name},
                )

        title = _validate_text(body["title"], "title", MAX_TITLE_LENGTH, allow_empty=False)
        description = _validate_text(
            body.get("description", ""), "description", MAX_DESCRIPTION_LENGTH, allow_empty=True
        )
        category_id = _validate_text(body["category_id"], "category_id", 100, allow_empty=False)
        project_id = _validate_text(body["project_id"], "project_id", 100, allow_empty=False)
        priority = _validate_priority(body.get("priority", "medium"))
        deadline = _validate_deadline(body.get("deadline"))
        complexity_level = _validate_complexity(body.get("complexity_level"))
        campfire_eligible = _validate_flag(
            body.get("campfire_eligible", False), "campfire_eligible"
        )

        if "credit_cost" in body and body["credit_cost"] is not None:
            credit_cost = to_minor_units(body["credit_cost"], "credit_cost")
        else:
            credit_cost = self._compute_cost(category_id, complexity_level)
        if credit_cost <= 0:
            raise ServiceError(
                "VALIDATION_ERROR",
                "credit_cost must be positive",
                400,
                {"field": "credit_cost"},
            )

        if actor.role is Role.ADMIN:
            if body.get("client_id") is None:
                raise ServiceError(
                    "MISSING_FIELD",
                    "client_id is required when an admin creates a task",
                    400,
                    {"field": "client_id"},
                )
            client_id = await self._require_user_with_role(
                body["client_id"], Role.CLIENT, "client_id"
            )
        else:
            client_id = actor.user_id
            if body.get("client_id") not in (None, actor.user_id):
                raise ServiceError(
                    "FORBIDDEN", "Clients can only create tasks for themselves", 403, {}
                )

        task_id = f"t-{uuid.uuid4()}"
        with self._db.transaction():
            task = self._store.insert_task(
                {
                    "task_id": task_id,
                    "title": title,
                    "description": description,
                    "priority": priority,
                    "category_id": category_id,
                    "project_id": project_id,
                    "client_id": client_id,
                    "deadline": deadline,
                    "credit_cost": credit_cost,
                    "complexity_level": complexity_level,
                    "campfire_eligible": campfire_eligible,
                },
                actor.user_id,
            )
            self._ledger.hold(
                client_id,
                credit_cost,
                task_id,
                actor.user_id,
                description=f"Credits held for task: {title}",
            )

        self._logger.info(
            "Task created",
            extra={"task_id": task_id, "client_id": client_id, "credit_cost": credit_cost},
        )
        return self._task_to_response(task)

    async def get_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Fetch one task visible to the caller."""
        return self._task_to_response(self._load_visible_task(task_id, actor))

    async def list_tasks(
        self,
        actor: Actor,
        *,
        status: str | None = None,
        priority: str | None = None,
        category_id: str | None = None,
        project_id: str | None = None,
        client_id: str | None = None,
        contractor_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> dict[str, Any]:
        """
        List tasks scoped to the caller.

        Clients see their own tasks, contractors the tasks assigned to
        them, and admins everything (optionally filtered by client or
        contractor).
        """
        if status is not None:
            status = parse_status(status).value
        if priority is not None:
            priority = _validate_priority(priority)

        if actor.role is Role.CLIENT:
            client_id, contractor_id = actor.user_id, None
        elif actor.role is Role.CONTRACTOR:
            client_id, contractor_id = None, actor.user_id

        tasks = self._hold_expiry.evaluate_batch(
            self._store.list_tasks(
                client_id=client_id,
                contractor_id=contractor_id,
                status=status,
                priority=priority,
                category_id=category_id,
                project_id=project_id,
                limit=limit,
                offset=offset,
            )
        )
        if status is not None:
            tasks = [task for task in tasks if task["status"] == status]
        return {"tasks": [self._task_to_response(task) for task in tasks]}

    async def list_campfire_tasks(self, actor: Actor) -> dict[str, Any]:
        """Open tasks any contractor may claim."""
        if actor.role not in (Role.CONTRACTOR, Role.ADMIN):
            raise ServiceError(
                "FORBIDDEN", "Only campers and admins can view the campfire", 403, {}
            )
        tasks = self._hold_expiry.evaluate_batch(self._store.list_campfire_tasks())
        return {
            "tasks": [
                self._task_to_response(task) for task in tasks if self._is_open_campfire_task(task)
            ]
        }

    async def request_transition(
        self,
        actor: Actor,
        task_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Move a task along one edge of the transition table.

        Assignment targets are checked against the identity service after
        the edge is validated and before anything is written. Validation
        then runs again inside the write transaction against the current
        row, so a concurrent change causes a clean rejection.
        """
        new_status = parse_status(body.get("status"))
        contractor_id = body.get("contractor_id")
        if contractor_id is not None and not isinstance(contractor_id, str):
            raise ServiceError(
                "VALIDATION_ERROR",
                "contractor_id must be a string",
                400,
                {"field": "contractor_id"},
            )
        note = body.get("note")
        if note is not None and not isinstance(note, str):
            raise ServiceError("VALIDATION_ERROR", "note must be a string", 400, {"field": "note"})
        fields = {"contractor_id": contractor_id, "note": note.strip() if note else note}

        task = self._hold_expiry.evaluate(self._store.require_task(task_id))
        validate_transition(task, new_status, actor, fields, self._store.count_deliverables)

        if new_status is TaskStatus.ASSIGNED:
            await self._require_user_with_role(contractor_id, Role.CONTRACTOR, "contractor_id")

        updated, transition = self._commit_transition(
            task_id,
            lambda current: validate_transition(
                current, new_status, actor, fields, self._store.count_deliverables
            ),
        )
        await self._notify_status_change(updated, transition, task["contractor_id"])
        return self._task_to_response(updated)

    async def pass_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Assigned contractor hands an unstarted task back to the campfire."""
        task = self._store.require_task(task_id)
        validate_pass(task, actor)

        updated, _ = self._commit_transition(
            task_id, lambda current: validate_pass(current, actor)
        )
        await self._notification_client.notify(
            str(updated["client_id"]),
            "task_passed",
            "Task returned to campfire",
            f'"{updated["title"]}" was passed and is open for another camper',
            f"/tasks/{task_id}",
        )
        return self._task_to_response(updated)

    async def claim_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Contractor claims an open campfire task."""
        task = self._hold_expiry.evaluate(self._store.require_task(task_id))
        validate_claim(task, actor)

        updated, transition = self._commit_transition(
            task_id, lambda current: validate_claim(current, actor)
        )
        await self._notify_status_change(updated, transition, None)
        return self._task_to_response(updated)

    async def update_task(
        self,
        actor: Actor,
        task_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Edit non-status fields.

        Admins may edit any descriptive field; the assigned contractor may
        only move the deadline. Credit cost is fixed at creation.
        """
        if "status" in body:
            raise ServiceError(
                "VALIDATION_ERROR",
                "Use the status endpoint to change task status",
                400,
                {"field": "status"},
            )

        task = self._store.require_task(task_id)
        if actor.role is Role.ADMIN:
            allowed = _ADMIN_EDITABLE_FIELDS
        elif actor.role is Role.CONTRACTOR and task["contractor_id"] == actor.user_id:
            allowed = _CONTRACTOR_EDITABLE_FIELDS
        else:
            raise ServiceError("FORBIDDEN", "You cannot edit this task", 403, {})

        forbidden = sorted(set(body) & (_ADMIN_EDITABLE_FIELDS - allowed))
        if forbidden:
            raise ServiceError(
                "FORBIDDEN",
                f"You cannot edit: {', '.join(forbidden)}",
                403,
                {"fields": forbidden},
            )
        _reject_unknown_fields(body, allowed)

        updates: dict[str, Any] = {}
        for field_name, value in body.items():
            if field_name == "title":
                updates[field_name] = _validate_text(
                    value, field_name, MAX_TITLE_LENGTH, allow_empty=False
                )
            elif field_name == "description":
                updates[field_name] = _validate_text(
                    value, field_name, MAX_DESCRIPTION_LENGTH, allow_empty=True
                )
            elif field_name in ("category_id", "project_id"):
                updates[field_name] = _validate_text(value, field_name, 100, allow_empty=False)
            elif field_name == "priority":
                updates[field_name] = _validate_priority(value)
            elif field_name == "deadline":
                updates[field_name] = _validate_deadline(value)
            elif field_name == "complexity_level":
                updates[field_name] = _validate_complexity(value)
            elif field_name == "campfire_eligible":
                updates[field_name] = _validate_flag(value, field_name)

        updated = self._store.update_task_fields(task_id, updates)
        self._logger.info(
            "Task updated",
            extra={"task_id": task_id, "actor_id": actor.user_id, "fields": sorted(updates)},
        )
        return self._task_to_response(updated)

    async def delete_task(self, actor: Actor, task_id: str) -> None:
        """Admin-only delete. An open task's hold is released in the same transaction."""
        if actor.role is not Role.ADMIN:
            raise ServiceError("FORBIDDEN", "Only admins can delete tasks", 403, {})

        with self._db.transaction():
            task = self._store.require_task(task_id)
            if TaskStatus(task["status"]) not in TERMINAL_STATUSES:
                self._ledger.release(
                    str(task["client_id"]),
                    int(task["credit_cost"]),
                    task_id,
                    actor.user_id,
                    description="Task deleted, credits released",
                )
            self._store.delete_task(task_id)

        self._logger.info("Task deleted", extra={"task_id": task_id, "actor_id": actor.user_id})

    async def add_attachment(
        self,
        actor: Actor,
        task_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Record attachment metadata.

        Deliverables come from the assigned contractor (or an admin);
        references from the owning client (or an admin).
        """
        _reject_unknown_fields(body, frozenset({"filename", "upload_type"}))
        if body.get("filename") is None:
            raise ServiceError("MISSING_FIELD", "filename is required", 400, {"field": "filename"})
        filename = _validate_text(body["filename"], "filename", 255, allow_empty=False)
        upload_type = body.get("upload_type", "reference")
        if upload_type not in UPLOAD_TYPES:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Invalid upload_type: {upload_type}",
                400,
                {"field": "upload_type", "allowed": list(UPLOAD_TYPES)},
            )

        task = self._store.require_task(task_id)
        if actor.role is not Role.ADMIN:
            if upload_type == "deliverable":
                permitted = (
                    actor.role is Role.CONTRACTOR and task["contractor_id"] == actor.user_id
                )
            else:
                permitted = actor.role is Role.CLIENT and task["client_id"] == actor.user_id
            if not permitted:
                raise ServiceError(
                    "FORBIDDEN",
                    f"You cannot upload a {upload_type} for this task",
                    403,
                    {},
                )

        attachment = self._store.insert_attachment(
            {
                "attachment_id": f"a-{uuid.uuid4()}",
                "task_id": task_id,
                "uploader_id": actor.user_id,
                "filename": filename,
                "upload_type": upload_type,
                "uploaded_at": _now_iso(),
            }
        )
        self._logger.info(
            "Attachment recorded",
            extra={"task_id": task_id, "upload_type": upload_type, "uploader_id": actor.user_id},
        )
        return attachment

    async def list_attachments(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Attachment metadata for a visible task."""
        self._load_visible_task(task_id, actor)
        return {"attachments": self._store.get_attachments_for_task(task_id)}

    async def get_history(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Status history for a visible task, oldest first."""
        self._load_visible_task(task_id, actor)
        return {"task_id": task_id, "history": self._store.get_history(task_id)}

    def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        return {
            "total_tasks": self._store.count_tasks(),
            "tasks_by_status": self._store.count_tasks_by_status(),
        }
