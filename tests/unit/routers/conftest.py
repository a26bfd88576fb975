"""Router test fixtures with mocked Identity and notification services."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from campfire_service.app import create_app
from campfire_service.config import clear_settings_cache
from campfire_service.core.lifespan import lifespan
from campfire_service.core.state import get_app_state, reset_app_state
from tests.helpers import (
    ADMIN_ID,
    CONTRACTOR_ID,
    auth,
    make_identity_mock,
    make_notification_mock,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path
    from unittest.mock import AsyncMock


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def hold_expiry_seconds() -> int | None:
    """Override in a test module to enable hold expiry."""
    return None


@pytest.fixture
async def app(tmp_path: Path, hold_expiry_seconds: int | None) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    db_path = tmp_path / "test.db"
    log_dir = tmp_path / "logs"
    hold_expiry = "null" if hold_expiry_seconds is None else str(hold_expiry_seconds)
    config_content = f"""\
service:
  name: "campfire"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_dir}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  resolve_token_path: "/auth/resolve"
  get_user_path: "/users"
  timeout_seconds: 10
notifications:
  base_url: "http://localhost:8004"
  notify_path: "/notifications"
  timeout_seconds: 2
credits:
  hold_expiry_seconds: {hold_expiry}
  packs:
    - pack_id: "spark"
      name: "Spark"
      credits: 10
    - pack_id: "kindling"
      name: "Kindling"
      credits: 50
pricing:
  default_cost: 5
  cost_per_complexity_level: 0.5
  category_costs:
    social: 3
    brand: 12
request:
  max_body_size: 4096
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Replace external service clients with mocks
        mock_identity = make_identity_mock()
        mock_notifications = make_notification_mock()
        state.identity_client = mock_identity
        state.notification_client = mock_notifications

        # Propagate mocks to extracted services
        if state.task_manager is not None:
            state.task_manager._identity_client = mock_identity
            state.task_manager._notification_client = mock_notifications
        if state.credit_manager is not None:
            state.credit_manager._identity_client = mock_identity
            state.credit_manager._notification_client = mock_notifications

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def notifications(app: Any) -> AsyncMock:
    """The notification mock wired into the running app."""
    return get_app_state().notification_client  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Lifecycle helper functions
# ---------------------------------------------------------------------------
async def grant_credits(client: AsyncClient, user_id: str, amount: float) -> Any:
    """Grant credits via POST /credits/grant as the admin."""
    return await client.post(
        "/credits/grant",
        json={"user_id": user_id, "amount": amount},
        headers=auth(ADMIN_ID),
    )


async def create_task(
    client: AsyncClient,
    client_id: str,
    *,
    title: str = "Spring launch carousel",
    credit_cost: float | None = 30,
    **fields: Any,
) -> Any:
    """Create a task via POST /tasks as the given client."""
    body: dict[str, Any] = {
        "title": title,
        "category_id": "social",
        "project_id": "p-spring",
        **fields,
    }
    if credit_cost is not None:
        body["credit_cost"] = credit_cost
    return await client.post("/tasks", json=body, headers=auth(client_id))


async def set_status(
    client: AsyncClient,
    user_id: str,
    task_id: str,
    status: str,
    **fields: Any,
) -> Any:
    """Request a transition via PATCH /tasks/{task_id}/status."""
    return await client.patch(
        f"/tasks/{task_id}/status",
        json={"status": status, **fields},
        headers=auth(user_id),
    )


async def upload_deliverable(client: AsyncClient, user_id: str, task_id: str) -> Any:
    return await client.post(
        f"/tasks/{task_id}/attachments",
        json={"filename": "final.png", "upload_type": "deliverable"},
        headers=auth(user_id),
    )


async def setup_task_in_review(client: AsyncClient, client_id: str) -> str:
    """Create a funded task and advance it to review. Returns the task_id."""
    response = await create_task(client, client_id)
    task_id: str = response.json()["task_id"]
    await set_status(client, ADMIN_ID, task_id, "assigned", contractor_id=CONTRACTOR_ID)
    await set_status(client, CONTRACTOR_ID, task_id, "in_progress")
    await upload_deliverable(client, CONTRACTOR_ID, task_id)
    await set_status(client, CONTRACTOR_ID, task_id, "review")
    return task_id
