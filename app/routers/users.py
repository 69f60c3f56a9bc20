from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user
from app.models.user import User
from app.schemas.trust import PublicTrustOut
from app.services.trust import TrustError, get_profile, trust_badge

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/{user_id}/trust", response_model=PublicTrustOut)
async def user_trust(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PublicTrustOut:
    """Seller reputation shown next to a listing."""
    try:
        tp = await get_profile(db, user_id)
    except TrustError as e:
        raise HTTPException(status_code=e.status_code, detail={"code": e.code, "message": str(e)})
    return PublicTrustOut(
        user_id=int(tp.user_id),
        trust_score=int(tp.trust_score),
        badge=trust_badge(tp.trust_score, tp.warnings_count),
        total_sold=int(tp.total_sold),
    )
