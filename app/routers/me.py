from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user
from app.models.user import User
from app.schemas.me import MeOut
from app.services.trust import get_profile, trust_badge

router = APIRouter(tags=["Me"])


@router.get("/me", response_model=MeOut)
async def me(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MeOut:
    tp = await get_profile(db, int(current_user.id))
    return MeOut(
        id=int(current_user.id),
        username=current_user.username,
        role=current_user.role,
        full_name=current_user.full_name,
        email=current_user.email,
        is_active=bool(current_user.is_active),
        trust_score=int(tp.trust_score),
        warnings_count=int(tp.warnings_count),
        badge=trust_badge(tp.trust_score, tp.warnings_count),
        is_banned=bool(tp.is_banned),
        total_sold=int(tp.total_sold),
        total_bought=int(tp.total_bought),
    )
