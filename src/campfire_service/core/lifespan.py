"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from campfire_service.clients.identity_client import IdentityClient
from campfire_service.clients.notification_client import NotificationClient
from campfire_service.config import get_settings
from campfire_service.core.state import init_app_state
from campfire_service.logging import get_logger, setup_logging
from campfire_service.services.credit_manager import CreditManager
from campfire_service.services.database import Database
from campfire_service.services.hold_expiry import HoldExpiryEvaluator
from campfire_service.services.ledger import Ledger
from campfire_service.services.task_manager import TaskManager
from campfire_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    # Task store and ledger share one connection so transitions and
    # their credit effects commit together
    database = Database(settings.database.path)
    state.database = database
    store = TaskStore(database)
    ledger = Ledger(database)
    state.ledger = ledger

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        resolve_token_path=settings.identity.resolve_token_path,
        get_user_path=settings.identity.get_user_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    notification_client = NotificationClient(
        base_url=settings.notifications.base_url,
        notify_path=settings.notifications.notify_path,
        timeout_seconds=settings.notifications.timeout_seconds,
    )
    state.notification_client = notification_client

    hold_expiry = HoldExpiryEvaluator(
        store=store,
        ledger=ledger,
        db=database,
        window_seconds=settings.credits.hold_expiry_seconds,
    )
    state.task_manager = TaskManager(
        db=database,
        store=store,
        ledger=ledger,
        identity_client=identity_client,
        notification_client=notification_client,
        hold_expiry=hold_expiry,
        pricing=settings.pricing,
    )
    state.credit_manager = CreditManager(
        ledger=ledger,
        identity_client=identity_client,
        notification_client=notification_client,
        packs=settings.credits.packs,
        hold_expiry=hold_expiry,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "identity_base_url": settings.identity.base_url,
            "hold_expiry_seconds": settings.credits.hold_expiry_seconds,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    database.close()
    await identity_client.close()
    await notification_client.close()
