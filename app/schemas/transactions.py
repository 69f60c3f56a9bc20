from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class InitiateIn(BaseModel):
    coupon_id: int = Field(..., ge=1)


class DisputeIn(BaseModel):
    # emptiness is checked by the engine after trimming
    reason: str = ""


class TransactionOut(BaseModel):
    id: UUID
    coupon_id: int
    buyer_id: int
    seller_id: int
    amount: Decimal

    payment_status: str
    payment_reference: Optional[str] = None
    redirect_url: Optional[str] = None

    dispute_reason: Optional[str] = None
    auto_confirmed: bool = False

    created_at: datetime
    holding_started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # set when the call lost a race to another actor (no-op, not an error)
    already_finalized: bool = False
    # revealed to the buyer once the transaction completed
    coupon_code: Optional[str] = None


class TransactionListOut(BaseModel):
    items: list[TransactionOut]
    total: int
    offset: int
    limit: int


class WebhookAckOut(BaseModel):
    received: bool = True
    handled: bool
    detail: Optional[str] = None
