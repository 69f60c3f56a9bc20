from __future__ import annotations

from pydantic import BaseModel


class MeOut(BaseModel):
    id: int
    username: str
    role: str
    full_name: str | None = None
    email: str | None = None
    is_active: bool

    trust_score: int
    warnings_count: int
    badge: str
    is_banned: bool
    total_sold: int = 0
    total_bought: int = 0
