"""Service layer components."""

from campfire_service.services.credit_manager import CreditManager
from campfire_service.services.database import Database
from campfire_service.services.hold_expiry import HoldExpiryEvaluator
from campfire_service.services.ledger import Ledger
from campfire_service.services.task_manager import TaskManager
from campfire_service.services.task_store import TaskStore

__all__ = [
    "CreditManager",
    "Database",
    "HoldExpiryEvaluator",
    "Ledger",
    "TaskManager",
    "TaskStore",
]
