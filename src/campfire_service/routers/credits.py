"""Credit balance, purchase and grant endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from campfire_service.core.state import get_app_state
from campfire_service.routers.validation import authenticate, parse_int_query, parse_json_body
from campfire_service.schemas import CreditBalanceResponse, CreditPacksResponse

if TYPE_CHECKING:
    from campfire_service.services.credit_manager import CreditManager

router = APIRouter()


def _credit_manager() -> CreditManager:
    state = get_app_state()
    if state.credit_manager is None:
        msg = "CreditManager not initialized"
        raise RuntimeError(msg)
    return state.credit_manager


@router.get("/credits/me")
async def get_my_credits(request: Request) -> dict[str, Any]:
    """Caller's balance and recent transactions."""
    actor = await authenticate(request)
    return await _credit_manager().get_my_credits(actor)


@router.get("/credits/packs", response_model=CreditPacksResponse)
async def list_packs(request: Request) -> dict[str, Any]:
    """Available credit packs."""
    await authenticate(request)
    return _credit_manager().list_packs()


@router.get("/credits/transactions")
async def list_transactions(request: Request) -> dict[str, Any]:
    """Caller's transactions, newest first."""
    actor = await authenticate(request)
    limit = parse_int_query(request, "limit", minimum=1)
    return await _credit_manager().list_transactions(actor, limit)


@router.post("/credits/purchase")
async def purchase(request: Request) -> dict[str, Any]:
    """Buy a credit pack."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    return await _credit_manager().purchase(actor, data)


@router.post("/credits/grant", response_model=CreditBalanceResponse)
async def grant(request: Request) -> dict[str, Any]:
    """Grant credits to a client (admin only)."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    return await _credit_manager().grant(actor, data)


@router.get("/credits/{user_id}")
async def get_user_credits(user_id: str, request: Request) -> dict[str, Any]:
    """Any user's balance (admin only)."""
    actor = await authenticate(request)
    return await _credit_manager().get_user_credits(actor, user_id)
