"""Async HTTP client for the notification sink."""

from __future__ import annotations

import httpx

from campfire_service.logging import get_logger


class NotificationClient:
    """
    Fire-and-forget notification dispatch.

    ``notify`` never raises: a failed delivery is logged and dropped so
    that it cannot fail the task or ledger operation that triggered it.
    """

    def __init__(self, base_url: str, notify_path: str, timeout_seconds: float) -> None:
        self._base_url = base_url
        self._notify_path = notify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def notify(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> bool:
        """Send one notification. Returns True if the sink accepted it."""
        logger = get_logger(__name__)
        payload = {
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "link": link,
        }
        try:
            response = await self._client.post(self._notify_path, json=payload)
        except Exception as exc:
            logger.warning(
                "Notification delivery failed",
                extra={"error": str(exc), "user_id": user_id, "type": notification_type},
            )
            return False

        if response.status_code not in (200, 201, 202, 204):
            logger.warning(
                "Notification sink rejected notification",
                extra={
                    "status_code": response.status_code,
                    "user_id": user_id,
                    "type": notification_type,
                },
            )
            return False
        return True

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
