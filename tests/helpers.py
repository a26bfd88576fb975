"""Shared test helpers for building tasks, managers and mocked collaborators."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

from campfire_service.config import PricingConfig
from campfire_service.core.exceptions import ServiceError
from campfire_service.services.database import Database
from campfire_service.services.hold_expiry import HoldExpiryEvaluator
from campfire_service.services.ledger import Ledger
from campfire_service.services.task_manager import TaskManager
from campfire_service.services.task_store import TaskStore
from campfire_service.services.transitions import Actor, Role

if TYPE_CHECKING:
    from collections.abc import Mapping

CLIENT_ID = "u-client"
OTHER_CLIENT_ID = "u-client-2"
CONTRACTOR_ID = "u-camper"
OTHER_CONTRACTOR_ID = "u-camper-2"
ADMIN_ID = "u-admin"

CLIENT = Actor(CLIENT_ID, Role.CLIENT)
OTHER_CLIENT = Actor(OTHER_CLIENT_ID, Role.CLIENT)
CONTRACTOR = Actor(CONTRACTOR_ID, Role.CONTRACTOR)
OTHER_CONTRACTOR = Actor(OTHER_CONTRACTOR_ID, Role.CONTRACTOR)
ADMIN = Actor(ADMIN_ID, Role.ADMIN)

USER_ROLES: dict[str, str] = {
    CLIENT_ID: "client",
    OTHER_CLIENT_ID: "client",
    CONTRACTOR_ID: "contractor",
    OTHER_CONTRACTOR_ID: "contractor",
    ADMIN_ID: "admin",
}

PRICING = PricingConfig(
    default_cost=5,
    cost_per_complexity_level=0.5,
    category_costs={"social": 3, "brand": 12},
)


def make_task_id() -> str:
    """Generate a unique task ID."""
    return f"t-{uuid.uuid4()}"


def task_data(task_id: str | None = None, **overrides: Any) -> dict[str, Any]:
    """Insertable task fields with sensible defaults."""
    data: dict[str, Any] = {
        "task_id": task_id or make_task_id(),
        "title": "Instagram carousel",
        "description": "Five slides for the spring launch",
        "priority": "medium",
        "category_id": "social",
        "project_id": "p-spring",
        "client_id": CLIENT_ID,
        "deadline": None,
        "credit_cost": 3000,
        "complexity_level": None,
        "campfire_eligible": False,
    }
    data.update(overrides)
    return data


def make_identity_mock(roles: Mapping[str, str] | None = None) -> AsyncMock:
    """Identity client mock resolving ``token-<user_id>`` and user lookups from a role map."""
    known = dict(USER_ROLES if roles is None else roles)

    async def resolve_token(token: str) -> dict[str, Any]:
        user_id = token.removeprefix("token-")
        if user_id not in known:
            raise ServiceError("UNAUTHORIZED", "Invalid or expired credentials", 401, {})
        return {"id": user_id, "role": known[user_id]}

    async def get_user(user_id: str) -> dict[str, Any] | None:
        if user_id not in known:
            return None
        return {"id": user_id, "role": known[user_id]}

    identity = AsyncMock()
    identity.resolve_token = AsyncMock(side_effect=resolve_token)
    identity.get_user = AsyncMock(side_effect=get_user)
    identity.close = AsyncMock()
    return identity


def make_notification_mock() -> AsyncMock:
    notifications = AsyncMock()
    notifications.notify = AsyncMock(return_value=True)
    notifications.close = AsyncMock()
    return notifications


def build_manager(
    db: Database,
    *,
    hold_expiry_seconds: int | None = None,
    identity: AsyncMock | None = None,
    notifications: AsyncMock | None = None,
) -> tuple[TaskManager, TaskStore, Ledger]:
    """Wire a TaskManager over one database with mocked collaborators."""
    store = TaskStore(db)
    ledger = Ledger(db)
    manager = TaskManager(
        db=db,
        store=store,
        ledger=ledger,
        identity_client=identity or make_identity_mock(),
        notification_client=notifications or make_notification_mock(),
        hold_expiry=HoldExpiryEvaluator(store, ledger, db, hold_expiry_seconds),
        pricing=PRICING,
    )
    return manager, store, ledger


def auth(user_id: str) -> dict[str, str]:
    """Authorization header for a user known to the identity mock."""
    return {"Authorization": f"Bearer token-{user_id}"}
