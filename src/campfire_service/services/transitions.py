"""
Task status transition table and validation.

The table is static, process-wide configuration: a mapping from the
current status to the statuses it may move to, each carrying the roles
allowed to make the move and the preconditions that must hold.

Validation is a pure decision over (task snapshot, proposed edge, caller).
It performs no writes. A successful check yields a ``ValidatedTransition``,
the only thing the task store will accept for a status write.

"Pass" and "claim" are named special transitions with their own guards
rather than table edges, because both re-use ``submitted`` as a re-entry
state with campfire semantics that the generic table does not express.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from campfire_service.core.exceptions import ServiceError


class TaskStatus(StrEnum):
    """Lifecycle states of a task."""

    SUBMITTED = "submitted"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    REVISION = "revision"
    APPROVED = "approved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class Role(StrEnum):
    """Caller roles as resolved by the identity service."""

    CLIENT = "client"
    CONTRACTOR = "contractor"
    ADMIN = "admin"


SYSTEM_ACTOR_ID = "system"

TERMINAL_STATUSES = frozenset({TaskStatus.CLOSED, TaskStatus.CANCELLED})

# contractor_id must be set in every one of these
ASSIGNED_STATUSES = frozenset(
    {
        TaskStatus.ASSIGNED,
        TaskStatus.IN_PROGRESS,
        TaskStatus.REVIEW,
        TaskStatus.REVISION,
        TaskStatus.APPROVED,
        TaskStatus.CLOSED,
    }
)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller."""

    user_id: str
    role: Role


@dataclass(frozen=True)
class TransitionRule:
    """Guard metadata for one edge of the table."""

    roles: frozenset[Role]
    requires: tuple[str, ...] = ()
    requires_deliverable: bool = False


@dataclass(frozen=True)
class ValidatedTransition:
    """A transition that passed its guard and may be written."""

    task_id: str
    from_status: TaskStatus
    to_status: TaskStatus
    actor_id: str
    note: str | None = None
    updates: Mapping[str, Any] = field(default_factory=dict)


_ADMIN = frozenset({Role.ADMIN})
_CONTRACTOR = frozenset({Role.CONTRACTOR})

TRANSITIONS: Mapping[TaskStatus, Mapping[TaskStatus, TransitionRule]] = MappingProxyType(
    {
        TaskStatus.SUBMITTED: MappingProxyType(
            {
                TaskStatus.ASSIGNED: TransitionRule(roles=_ADMIN, requires=("contractor_id",)),
                TaskStatus.CANCELLED: TransitionRule(roles=_ADMIN),
            }
        ),
        TaskStatus.ASSIGNED: MappingProxyType(
            {
                TaskStatus.IN_PROGRESS: TransitionRule(roles=_CONTRACTOR),
                TaskStatus.CANCELLED: TransitionRule(roles=_ADMIN),
            }
        ),
        TaskStatus.IN_PROGRESS: MappingProxyType(
            {
                TaskStatus.REVIEW: TransitionRule(roles=_CONTRACTOR, requires_deliverable=True),
                TaskStatus.CANCELLED: TransitionRule(roles=_ADMIN),
            }
        ),
        TaskStatus.REVIEW: MappingProxyType(
            {
                TaskStatus.APPROVED: TransitionRule(roles=_ADMIN),
                TaskStatus.REVISION: TransitionRule(roles=_ADMIN, requires=("note",)),
            }
        ),
        TaskStatus.REVISION: MappingProxyType(
            {
                TaskStatus.IN_PROGRESS: TransitionRule(roles=_CONTRACTOR),
            }
        ),
        TaskStatus.APPROVED: MappingProxyType(
            {
                TaskStatus.CLOSED: TransitionRule(roles=_ADMIN),
            }
        ),
        TaskStatus.CLOSED: MappingProxyType({}),
        TaskStatus.CANCELLED: MappingProxyType({}),
    }
)


def parse_status(value: object) -> TaskStatus:
    """Parse a status string, raising VALIDATION_ERROR for unknown values."""
    if not isinstance(value, str):
        raise ServiceError("VALIDATION_ERROR", "status must be a string", 400, {"field": "status"})
    try:
        return TaskStatus(value)
    except ValueError as exc:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Invalid status: {value}",
            400,
            {"field": "status", "allowed": [status.value for status in TaskStatus]},
        ) from exc


def allowed_targets(status: TaskStatus) -> list[TaskStatus]:
    """Statuses reachable from ``status`` through the table."""
    return list(TRANSITIONS[status])


def validate_transition(
    task: Mapping[str, Any],
    new_status: TaskStatus,
    actor: Actor,
    fields: Mapping[str, Any],
    count_deliverables: Callable[[str], int],
) -> ValidatedTransition:
    """
    Decide whether ``actor`` may move ``task`` to ``new_status``.

    Checks, in order: the edge exists, the role is allowed, a contractor
    is the assignee, required fields are present, and for
    ``in_progress -> review`` that a deliverable exists.

    Raises:
        ServiceError: INVALID_TRANSITION, FORBIDDEN, MISSING_FIELD,
            PRECONDITION_FAILED.
    """
    current = TaskStatus(task["status"])
    edges = TRANSITIONS[current]

    rule = edges.get(new_status)
    if rule is None:
        raise ServiceError(
            "INVALID_TRANSITION",
            f"Cannot transition from {current} to {new_status}",
            409,
            {
                "from_status": current.value,
                "to_status": new_status.value,
                "allowed": [status.value for status in edges],
            },
        )

    if actor.role not in rule.roles:
        required = sorted(role.value for role in rule.roles)
        raise ServiceError(
            "FORBIDDEN",
            f"Only {', '.join(required)} can perform this transition",
            403,
            {"required_roles": required},
        )

    if actor.role is Role.CONTRACTOR and task["contractor_id"] != actor.user_id:
        raise ServiceError("FORBIDDEN", "You are not assigned to this task", 403, {})

    for field_name in rule.requires:
        if not fields.get(field_name):
            raise ServiceError(
                "MISSING_FIELD",
                f"{field_name} is required for this transition",
                400,
                {"field": field_name},
            )

    if rule.requires_deliverable:
        deliverables = count_deliverables(str(task["task_id"]))
        if deliverables == 0:
            raise ServiceError(
                "PRECONDITION_FAILED",
                "At least one deliverable is required to submit for review",
                409,
                {"deliverables": 0},
            )

    updates: dict[str, Any] = {}
    if new_status is TaskStatus.ASSIGNED:
        updates["contractor_id"] = fields["contractor_id"]

    note = fields.get("note")
    return ValidatedTransition(
        task_id=str(task["task_id"]),
        from_status=current,
        to_status=new_status,
        actor_id=actor.user_id,
        note=note if isinstance(note, str) and note else None,
        updates=updates,
    )


def validate_pass(task: Mapping[str, Any], actor: Actor) -> ValidatedTransition:
    """
    Guard for a contractor handing an unstarted task back to the campfire.

    The task must be ``assigned`` to the caller. It returns to
    ``submitted`` with no contractor and becomes campfire-eligible.
    """
    if actor.role is not Role.CONTRACTOR:
        raise ServiceError("FORBIDDEN", "Only campers can pass on tasks", 403, {})
    if task["contractor_id"] != actor.user_id:
        raise ServiceError("FORBIDDEN", "This task is not assigned to you", 403, {})
    if task["status"] != TaskStatus.ASSIGNED:
        raise ServiceError(
            "INVALID_TRANSITION",
            "You can only pass on tasks that have not been started",
            409,
            {"from_status": task["status"]},
        )
    return ValidatedTransition(
        task_id=str(task["task_id"]),
        from_status=TaskStatus.ASSIGNED,
        to_status=TaskStatus.SUBMITTED,
        actor_id=actor.user_id,
        note="Passed, returned to campfire",
        updates={"contractor_id": None, "campfire_eligible": 1},
    )


def validate_claim(task: Mapping[str, Any], actor: Actor) -> ValidatedTransition:
    """Guard for a contractor claiming an open campfire task."""
    if actor.role is not Role.CONTRACTOR:
        raise ServiceError("FORBIDDEN", "Only campers can claim tasks", 403, {})
    if (
        not task["campfire_eligible"]
        or task["status"] != TaskStatus.SUBMITTED
        or task["contractor_id"] is not None
    ):
        raise ServiceError(
            "INVALID_TRANSITION",
            "This task has already been claimed",
            409,
            {"from_status": task["status"]},
        )
    return ValidatedTransition(
        task_id=str(task["task_id"]),
        from_status=TaskStatus.SUBMITTED,
        to_status=TaskStatus.ASSIGNED,
        actor_id=actor.user_id,
        note="Claimed from campfire",
        updates={"contractor_id": actor.user_id},
    )


def expire_hold(task: Mapping[str, Any]) -> ValidatedTransition:
    """System cancellation of a task whose credit hold outlived the expiry window."""
    if task["status"] != TaskStatus.SUBMITTED or task["contractor_id"] is not None:
        raise ServiceError(
            "INVALID_TRANSITION",
            "Only unassigned submitted tasks can expire",
            409,
            {"from_status": task["status"]},
        )
    return ValidatedTransition(
        task_id=str(task["task_id"]),
        from_status=TaskStatus.SUBMITTED,
        to_status=TaskStatus.CANCELLED,
        actor_id=SYSTEM_ACTOR_ID,
        note="Credit hold expired",
    )
