"""HTTP clients for external collaborators."""

from campfire_service.clients.identity_client import IdentityClient
from campfire_service.clients.notification_client import NotificationClient

__all__ = ["IdentityClient", "NotificationClient"]
