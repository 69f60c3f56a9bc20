from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_notifier, require_admin
from app.models.trust import TrustProfile
from app.models.user import User
from app.schemas.trust import AdjustTrustIn, BanIn, TrustProfileListOut, TrustProfileOut
from app.services import trust
from app.services.notifications import NotificationDispatcher
from app.services.trust import TrustError

router = APIRouter(prefix="/admin/trust", tags=["Admin Trust"])


def profile_out(profile: TrustProfile, username: str | None = None) -> TrustProfileOut:
    return TrustProfileOut(
        user_id=int(profile.user_id),
        username=username,
        trust_score=int(profile.trust_score),
        warnings_count=int(profile.warnings_count),
        badge=trust.trust_badge(profile.trust_score, profile.warnings_count),
        is_flagged=trust.is_flagged(profile),
        is_banned=bool(profile.is_banned),
        ban_reason=profile.ban_reason,
        banned_at=profile.banned_at,
        total_sold=int(profile.total_sold),
        total_bought=int(profile.total_bought),
    )


def _http_error(e: TrustError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"code": e.code, "message": str(e)})


@router.get("", response_model=TrustProfileListOut)
async def list_trust_profiles(
    banned: Optional[bool] = Query(default=None),
    low_trust: bool = Query(default=False),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> TrustProfileListOut:
    rows, total = await trust.list_profiles(
        db, banned=banned, low_trust=low_trust, offset=offset, limit=limit
    )
    return TrustProfileListOut(
        items=[profile_out(p, u.username) for p, u in rows],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.get("/{user_id}", response_model=TrustProfileOut)
async def get_trust_profile(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> TrustProfileOut:
    try:
        profile = await trust.get_profile(db, user_id)
    except TrustError as e:
        raise _http_error(e)
    return profile_out(profile)


@router.post("/{user_id}/adjust", response_model=TrustProfileOut)
async def adjust_trust(
    user_id: int,
    payload: AdjustTrustIn,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> TrustProfileOut:
    try:
        profile = await trust.adjust_trust_score(
            db,
            user_id=user_id,
            new_score=payload.trust_score,
            reason=payload.reason,
            actor=admin,
        )
    except TrustError as e:
        raise _http_error(e)
    return profile_out(profile)


@router.post("/{user_id}/ban", response_model=TrustProfileOut)
async def ban_user(
    user_id: int,
    payload: BanIn,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> TrustProfileOut:
    try:
        profile = await trust.ban(
            db, user_id=user_id, reason=payload.reason, actor=admin, notifier=notifier
        )
    except TrustError as e:
        raise _http_error(e)
    return profile_out(profile)


@router.post("/{user_id}/unban", response_model=TrustProfileOut)
async def unban_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> TrustProfileOut:
    try:
        profile = await trust.unban(db, user_id=user_id, actor=admin)
    except TrustError as e:
        raise _http_error(e)
    return profile_out(profile)
