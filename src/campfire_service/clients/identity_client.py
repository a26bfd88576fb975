"""Async HTTP client for the Identity service."""

from __future__ import annotations

from typing import Any

import httpx

from campfire_service.core.exceptions import ServiceError
from campfire_service.logging import get_logger


class IdentityClient:
    """
    Client for caller and user lookups.

    The Identity service owns credentials and roles. This service only
    asks it two questions: who holds this bearer token, and what role
    does a given user id have.
    """

    def __init__(
        self,
        base_url: str,
        resolve_token_path: str,
        get_user_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._resolve_token_path = resolve_token_path
        self._get_user_path = get_user_path.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        logger = get_logger(__name__)
        try:
            return await self._client.request(method, path, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Identity service connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Cannot connect to Identity service",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity service HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service request failed",
                status_code=502,
                details={},
            ) from exc

    def _unexpected(self, response: httpx.Response) -> ServiceError:
        get_logger(__name__).warning(
            "Identity service unexpected status",
            extra={"status_code": response.status_code, "base_url": self._base_url},
        )
        return ServiceError(
            error="IDENTITY_SERVICE_UNAVAILABLE",
            message="Identity service returned unexpected status",
            status_code=502,
            details={},
        )

    async def resolve_token(self, token: str) -> dict[str, Any]:
        """
        Resolve a bearer token to the calling user.

        Returns:
            dict with keys: id (str), role (client | contractor | admin)

        Raises:
            ServiceError: UNAUTHORIZED (401) if the token is not recognised
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        response = await self._send("POST", self._resolve_token_path, json={"token": token})

        if response.status_code in (401, 403, 404):
            raise ServiceError(
                error="UNAUTHORIZED",
                message="Invalid or expired credentials",
                status_code=401,
                details={},
            )
        if response.status_code != 200:
            raise self._unexpected(response)

        result: dict[str, Any] = response.json()
        if "id" not in result or "role" not in result:
            raise self._unexpected(response)
        return result

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        """
        Look up a user by id.

        Returns:
            dict with keys: id, role; or None if the user does not exist
        """
        response = await self._send("GET", f"{self._get_user_path}/{user_id}")

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise self._unexpected(response)

        result: dict[str, Any] = response.json()
        return result

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
