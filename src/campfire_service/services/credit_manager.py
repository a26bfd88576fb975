"""Credit balance views, purchases and admin grants."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from campfire_service.core.exceptions import ServiceError
from campfire_service.logging import get_logger
from campfire_service.services.money import (
    config_to_minor_units,
    from_minor_units,
    to_minor_units,
)
from campfire_service.services.transitions import Actor, Role

if TYPE_CHECKING:
    from campfire_service.clients.identity_client import IdentityClient
    from campfire_service.clients.notification_client import NotificationClient
    from campfire_service.config import CreditPackConfig
    from campfire_service.services.hold_expiry import HoldExpiryEvaluator
    from campfire_service.services.ledger import Ledger

OWN_TRANSACTIONS_LIMIT = 50
ADMIN_TRANSACTIONS_LIMIT = 100
MAX_TRANSACTIONS_LIMIT = 500
DEFAULT_GRANT_DESCRIPTION = "Admin credit grant"


def _balance_to_response(balance: dict[str, Any]) -> dict[str, Any]:
    return {
        "user_id": balance["user_id"],
        "total_credits": from_minor_units(balance["total_credits"]),
        "available_credits": from_minor_units(balance["available_credits"]),
        "held_credits": from_minor_units(balance["held_credits"]),
        "lifetime_credits": from_minor_units(balance["lifetime_credits"]),
        "updated_at": balance["updated_at"],
    }


def _transaction_to_response(tx: dict[str, Any]) -> dict[str, Any]:
    response = dict(tx)
    response["amount"] = from_minor_units(tx["amount"])
    response["balance_after"] = from_minor_units(tx["balance_after"])
    return response


class CreditManager:
    """Caller-facing credit operations on top of the ledger."""

    def __init__(
        self,
        ledger: Ledger,
        identity_client: IdentityClient,
        notification_client: NotificationClient,
        packs: list[CreditPackConfig],
        hold_expiry: HoldExpiryEvaluator,
    ) -> None:
        self._ledger = ledger
        self._hold_expiry = hold_expiry
        self._identity_client = identity_client
        self._notification_client = notification_client
        self._packs = {pack.pack_id: pack for pack in packs}
        self._logger = get_logger(__name__)

    def _balance_with_transactions(self, user_id: str, limit: int) -> dict[str, Any]:
        self._hold_expiry.expire_for_client(user_id)
        balance = _balance_to_response(self._ledger.get_balance(user_id))
        balance["transactions"] = [
            _transaction_to_response(tx) for tx in self._ledger.list_transactions(user_id, limit)
        ]
        return balance

    async def get_my_credits(self, actor: Actor) -> dict[str, Any]:
        """Caller's balance with the most recent transactions."""
        return self._balance_with_transactions(actor.user_id, OWN_TRANSACTIONS_LIMIT)

    async def list_transactions(self, actor: Actor, limit: int | None) -> dict[str, Any]:
        """Caller's transactions, newest first."""
        if limit is None:
            limit = OWN_TRANSACTIONS_LIMIT
        if limit < 1 or limit > MAX_TRANSACTIONS_LIMIT:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"limit must be between 1 and {MAX_TRANSACTIONS_LIMIT}",
                400,
                {"field": "limit"},
            )
        self._hold_expiry.expire_for_client(actor.user_id)
        return {
            "user_id": actor.user_id,
            "transactions": [
                _transaction_to_response(tx)
                for tx in self._ledger.list_transactions(actor.user_id, limit)
            ],
        }

    async def get_user_credits(self, actor: Actor, user_id: str) -> dict[str, Any]:
        """Admin view of any user's balance."""
        if actor.role is not Role.ADMIN:
            raise ServiceError("FORBIDDEN", "Only admins can view other balances", 403, {})
        return self._balance_with_transactions(user_id, ADMIN_TRANSACTIONS_LIMIT)

    def list_packs(self) -> dict[str, Any]:
        return {
            "packs": [
                {"pack_id": pack.pack_id, "name": pack.name, "credits": pack.credits}
                for pack in self._packs.values()
            ]
        }

    async def purchase(self, actor: Actor, body: dict[str, Any]) -> dict[str, Any]:
        """
        Buy a credit pack. Stands in for a real payment capture.

        A repeated ``payment_reference`` is recorded once.
        """
        if actor.role is not Role.CLIENT:
            raise ServiceError("FORBIDDEN", "Only clients can purchase credits", 403, {})

        pack_id = body.get("pack_id")
        if pack_id is None:
            raise ServiceError("MISSING_FIELD", "pack_id is required", 400, {"field": "pack_id"})
        pack = self._packs.get(pack_id) if isinstance(pack_id, str) else None
        if pack is None:
            raise ServiceError("PACK_NOT_FOUND", "Invalid pack", 404, {"pack_id": pack_id})

        payment_reference = body.get("payment_reference")
        if payment_reference is not None and (
            not isinstance(payment_reference, str) or len(payment_reference) == 0
        ):
            raise ServiceError(
                "VALIDATION_ERROR",
                "payment_reference must be a non-empty string",
                400,
                {"field": "payment_reference"},
            )

        amount = config_to_minor_units(pack.credits)
        balance, original = self._ledger.purchase(
            actor.user_id,
            pack.pack_id,
            amount,
            f"Purchased {pack.name} pack ({pack.credits:g} credits)",
            payment_reference,
        )
        if original is not None:
            return {
                "pack_id": original["pack_id"],
                "credits_added": 0.0,
                "duplicate": True,
                "payment_reference": payment_reference,
                "balance": _balance_to_response(balance),
            }
        return {
            "pack_id": pack.pack_id,
            "credits_added": from_minor_units(amount),
            "duplicate": False,
            "payment_reference": payment_reference,
            "balance": _balance_to_response(balance),
        }

    async def grant(self, actor: Actor, body: dict[str, Any]) -> dict[str, Any]:
        """Admin grants credits to a client, who is then notified."""
        if actor.role is not Role.ADMIN:
            raise ServiceError("FORBIDDEN", "Only admins can grant credits", 403, {})

        for field_name in ("user_id", "amount"):
            if body.get(field_name) is None:
                raise ServiceError(
                    "MISSING_FIELD",
                    f"{field_name} is required",
                    400,
                    {"field": field_name},
                )

        amount = to_minor_units(body["amount"], "amount")
        if amount <= 0:
            raise ServiceError(
                "VALIDATION_ERROR", "amount must be positive", 400, {"field": "amount"}
            )

        description = body.get("description") or DEFAULT_GRANT_DESCRIPTION
        if not isinstance(description, str):
            raise ServiceError(
                "VALIDATION_ERROR",
                "description must be a string",
                400,
                {"field": "description"},
            )

        user_id = body["user_id"]
        if not isinstance(user_id, str):
            raise ServiceError(
                "VALIDATION_ERROR", "user_id must be a string", 400, {"field": "user_id"}
            )
        user = await self._identity_client.get_user(user_id)
        if user is None:
            raise ServiceError("USER_NOT_FOUND", "User not found", 404, {"user_id": user_id})
        if user.get("role") != Role.CLIENT:
            raise ServiceError(
                "VALIDATION_ERROR",
                "Credits can only be granted to clients",
                400,
                {"field": "user_id"},
            )

        balance = self._ledger.grant(user_id, amount, description, actor.user_id)
        await self._notification_client.notify(
            user_id,
            "credits",
            "Credits Added",
            f"{from_minor_units(amount):g} credits have been added to your account. {description}",
            "/client/credits",
        )
        return _balance_to_response(balance)
