"""API routers."""

from campfire_service.routers import credits, health, tasks

__all__ = ["credits", "health", "tasks"]
