"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]


class CreditPack(BaseModel):
    """A purchasable credit pack."""

    model_config = ConfigDict(extra="forbid")
    pack_id: str
    name: str
    credits: float


class CreditPacksResponse(BaseModel):
    """Response model for GET /credits/packs."""

    model_config = ConfigDict(extra="forbid")
    packs: list[CreditPack]


class CreditBalanceResponse(BaseModel):
    """A user's credit balance."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    total_credits: float
    available_credits: float
    held_credits: float
    lifetime_credits: float
    updated_at: str
