from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class TrustProfileOut(BaseModel):
    user_id: int
    username: Optional[str] = None

    trust_score: int
    warnings_count: int
    badge: str
    is_flagged: bool

    is_banned: bool
    ban_reason: Optional[str] = None
    banned_at: Optional[datetime] = None

    total_sold: int = 0
    total_bought: int = 0


class PublicTrustOut(BaseModel):
    user_id: int
    trust_score: int
    badge: str
    total_sold: int


class TrustProfileListOut(BaseModel):
    items: list[TrustProfileOut]
    total: int
    offset: int
    limit: int


class AdjustTrustIn(BaseModel):
    # bounds are enforced by the trust ledger so the error is INVALID_SCORE
    trust_score: int
    reason: Optional[str] = Field(default=None, max_length=500)


class BanIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
