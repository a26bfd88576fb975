"""Shared request parsing and authentication helpers for routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from campfire_service.core.exceptions import ServiceError
from campfire_service.core.state import get_app_state
from campfire_service.services.transitions import Actor, Role

if TYPE_CHECKING:
    from fastapi import Request


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the bearer credential from an Authorization header."""
    if authorization is None:
        raise ServiceError("UNAUTHORIZED", "Missing Authorization header", 401, {})

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError("UNAUTHORIZED", "Bearer token must not be empty", 401, {})

    return token


async def authenticate(request: Request) -> Actor:
    """Resolve the caller through the Identity service."""
    token = extract_bearer_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.identity_client is None:
        msg = "Identity client not initialized"
        raise RuntimeError(msg)

    user = await state.identity_client.resolve_token(token)
    try:
        role = Role(str(user["role"]))
    except ValueError as exc:
        raise ServiceError("FORBIDDEN", "Unrecognised user role", 403, {}) from exc
    return Actor(user_id=str(user["id"]), role=role)


def parse_int_query(request: Request, name: str, *, minimum: int) -> int | None:
    """Parse an optional integer query parameter."""
    raw = request.query_params.get(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError(
            "VALIDATION_ERROR", f"{name} must be an integer", 400, {"field": name}
        ) from exc
    if value < minimum:
        raise ServiceError(
            "VALIDATION_ERROR", f"{name} must be >= {minimum}", 400, {"field": name}
        )
    return value
