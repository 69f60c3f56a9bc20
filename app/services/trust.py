from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import utcnow
from app.models.trust import TrustEvent, TrustProfile
from app.models.user import User
from app.services.notifications import NotificationDispatcher, notify_ban

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 100
LOW_TRUST_BELOW = 50


class TrustError(Exception):
    status_code = 400
    code = "TRUST_ERROR"


class UserNotFound(TrustError):
    status_code = 404
    code = "USER_NOT_FOUND"


class InvalidScore(TrustError):
    code = "INVALID_SCORE"


class AdminOnly(TrustError):
    status_code = 403
    code = "ADMIN_ONLY"


class CannotBanAdmin(TrustError):
    status_code = 403
    code = "CANNOT_BAN_ADMIN"


@dataclass
class DisputeOutcome:
    profile: TrustProfile
    flagged: bool
    auto_banned: bool


def _clamp(score: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, int(score)))


def trust_badge(trust_score: int, warnings_count: int) -> str:
    """Display badge; derived on read, never stored."""
    if warnings_count >= settings.TRUST_WARNING_THRESHOLD:
        return "warning"
    if trust_score > 90:
        return "gold"
    if trust_score >= 70:
        return "verified"
    return "new"


def is_flagged(profile: TrustProfile) -> bool:
    return profile.warnings_count >= settings.TRUST_WARNING_THRESHOLD


async def _get_user(db: AsyncSession, user_id: int) -> User:
    res = await db.execute(select(User).where(User.id == user_id))
    u = res.scalar_one_or_none()
    if u is None:
        raise UserNotFound(f"User {user_id} not found.")
    return u


async def _ensure_trust_profile(db: AsyncSession, user_id: int) -> None:
    # make sure user exists first (prevents FK crash)
    res_u = await db.execute(select(User.id).where(User.id == user_id))
    if res_u.scalar_one_or_none() is None:
        raise UserNotFound(f"User {user_id} not found.")

    res = await db.execute(select(TrustProfile.user_id).where(TrustProfile.user_id == user_id))
    if res.scalar_one_or_none() is not None:
        return

    await _insert_profile_if_missing(db, user_id)


async def _insert_profile_if_missing(db: AsyncSession, user_id: int) -> None:
    """
    Concurrent first purchases may race to create the same profile: the
    loser's insert is skipped instead of failing the whole transaction.
    """
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    await db.execute(
        insert(TrustProfile)
        .values(user_id=user_id, trust_score=MAX_SCORE, warnings_count=0)
        .on_conflict_do_nothing(index_elements=[TrustProfile.user_id])
    )


async def _lock_profiles(db: AsyncSession, user_ids: Iterable[int]) -> dict[int, TrustProfile]:
    """
    Lock trust_profiles rows FOR UPDATE, creating missing profiles first.
    Returns dict user_id -> TrustProfile (locked).
    """
    ids = sorted({int(x) for x in user_ids})

    for uid in ids:
        await _ensure_trust_profile(db, uid)

    res = await db.execute(
        select(TrustProfile)
        .where(TrustProfile.user_id.in_(ids))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    found = {p.user_id: p for p in res.scalars().all()}

    missing = [uid for uid in ids if uid not in found]
    if missing:
        raise TrustError(f"Trust profiles not found for user_ids={missing}.")

    return found


def _log_event(
    db: AsyncSession,
    profile: TrustProfile,
    *,
    kind: str,
    score_before: int,
    reason: str | None = None,
    actor_user_id: int | None = None,
    transaction_id: UUID | None = None,
    meta: dict | None = None,
) -> None:
    db.add(
        TrustEvent(
            user_id=profile.user_id,
            kind=kind,
            score_before=score_before,
            score_after=profile.trust_score,
            reason=reason,
            actor_user_id=actor_user_id,
            transaction_id=transaction_id,
            meta=meta or {},
        )
    )


async def ensure_profiles(db: AsyncSession, user_ids: Iterable[int]) -> dict[int, TrustProfile]:
    """Create (if needed) and return profiles without locking. Does not commit."""
    ids = sorted({int(x) for x in user_ids})
    for uid in ids:
        await _ensure_trust_profile(db, uid)
    res = await db.execute(
        select(TrustProfile)
        .where(TrustProfile.user_id.in_(ids))
        .execution_options(populate_existing=True)
    )
    return {p.user_id: p for p in res.scalars().all()}


async def get_profile(db: AsyncSession, user_id: int) -> TrustProfile:
    profiles = await ensure_profiles(db, [user_id])
    await db.commit()
    return profiles[user_id]


async def list_profiles(
    db: AsyncSession,
    *,
    banned: bool | None = None,
    low_trust: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[tuple[TrustProfile, User]], int]:
    filters = []
    if banned is not None:
        filters.append(TrustProfile.is_banned.is_(banned))
    if low_trust:
        filters.append(TrustProfile.trust_score < LOW_TRUST_BELOW)

    total_stmt = select(func.count()).select_from(TrustProfile).where(*filters)
    total = int((await db.execute(total_stmt)).scalar_one())

    stmt = (
        select(TrustProfile, User)
        .join(User, User.id == TrustProfile.user_id)
        .where(*filters)
        .order_by(TrustProfile.trust_score.asc(), TrustProfile.user_id.asc())
        .offset(offset)
        .limit(limit)
    )
    rows = (await db.execute(stmt)).all()
    return [(r[0], r[1]) for r in rows], total


# -------------------------
# Escrow-driven updates
# -------------------------
# These run inside the escrow engine's finalize transaction and never commit.

async def record_dispute_outcome(
    db: AsyncSession,
    *,
    seller_id: int,
    transaction_id: UUID | None = None,
    reason: str | None = None,
) -> DisputeOutcome:
    profile = (await _lock_profiles(db, [seller_id]))[seller_id]

    before = profile.trust_score
    was_flagged = is_flagged(profile)

    profile.warnings_count += 1
    profile.trust_score = _clamp(before - settings.TRUST_DISPUTE_PENALTY)
    profile.updated_at = utcnow()

    _log_event(
        db,
        profile,
        kind="dispute_penalty",
        score_before=before,
        reason=reason,
        transaction_id=transaction_id,
        meta={"warnings_count": profile.warnings_count},
    )

    flagged = is_flagged(profile)
    if flagged and not was_flagged:
        logger.info("TRUST_WARNING_FLAG: seller=%s warnings=%s", seller_id, profile.warnings_count)

    auto_banned = False
    threshold = settings.TRUST_AUTO_BAN_WARNINGS
    if threshold is not None and not profile.is_banned and profile.warnings_count >= threshold:
        profile.is_banned = True
        profile.ban_reason = f"{profile.warnings_count} substantiated disputes"
        profile.banned_at = utcnow()
        auto_banned = True
        _log_event(
            db,
            profile,
            kind="ban",
            score_before=profile.trust_score,
            reason=profile.ban_reason,
            transaction_id=transaction_id,
            meta={"automatic": True},
        )
        logger.info("TRUST_AUTO_BAN: seller=%s warnings=%s", seller_id, profile.warnings_count)

    return DisputeOutcome(profile=profile, flagged=flagged, auto_banned=auto_banned)


async def record_successful_sale(
    db: AsyncSession,
    *,
    seller_id: int,
    buyer_id: int,
    transaction_id: UUID | None = None,
) -> TrustProfile:
    profiles = await _lock_profiles(db, [seller_id, buyer_id])
    seller = profiles[seller_id]
    buyer = profiles[buyer_id]

    before = seller.trust_score
    seller.total_sold += 1
    seller.trust_score = _clamp(before + settings.TRUST_SALE_BONUS)
    seller.updated_at = utcnow()

    buyer.total_bought += 1
    buyer.updated_at = utcnow()

    if seller.trust_score != before:
        _log_event(
            db,
            seller,
            kind="sale_bonus",
            score_before=before,
            transaction_id=transaction_id,
        )

    return seller


# -------------------------
# Admin moderation
# -------------------------

async def adjust_trust_score(
    db: AsyncSession,
    *,
    user_id: int,
    new_score: int,
    reason: str | None,
    actor: User,
) -> TrustProfile:
    """
    Admin override. Always overwrites, never deltas; `reason` is audit only.
    """
    if actor.role != "admin":
        raise AdminOnly("Only admin can adjust trust scores.")

    if isinstance(new_score, bool) or not isinstance(new_score, int):
        raise InvalidScore("Trust score must be an integer.")
    if not MIN_SCORE <= new_score <= MAX_SCORE:
        raise InvalidScore(f"Trust score must be between {MIN_SCORE} and {MAX_SCORE}.")

    try:
        profile = (await _lock_profiles(db, [user_id]))[user_id]

        before = profile.trust_score
        profile.trust_score = new_score
        profile.updated_at = utcnow()

        _log_event(
            db,
            profile,
            kind="admin_adjust",
            score_before=before,
            reason=reason,
            actor_user_id=actor.id,
        )

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "TRUST_ADJUSTED: user=%s %s -> %s by admin=%s reason=%r",
        user_id, before, new_score, actor.id, reason,
    )
    return profile


async def ban(
    db: AsyncSession,
    *,
    user_id: int,
    reason: str | None,
    actor: User,
    notifier: NotificationDispatcher | None = None,
) -> TrustProfile:
    """Idempotent: banning a banned user succeeds without changes."""
    if actor.role != "admin":
        raise AdminOnly("Only admin can ban users.")

    target = await _get_user(db, user_id)
    if target.role == "admin":
        raise CannotBanAdmin("Cannot ban admin users.")

    try:
        profile = (await _lock_profiles(db, [user_id]))[user_id]
        if profile.is_banned:
            await db.commit()
            return profile

        profile.is_banned = True
        profile.ban_reason = reason
        profile.banned_at = utcnow()
        profile.updated_at = utcnow()

        _log_event(
            db,
            profile,
            kind="ban",
            score_before=profile.trust_score,
            reason=reason,
            actor_user_id=actor.id,
            meta={"automatic": False},
        )

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("USER_BANNED: user=%s by admin=%s reason=%r", user_id, actor.id, reason)
    if notifier is not None:
        notify_ban(notifier, user_id=user_id, reason=reason, automatic=False)
    return profile


async def unban(db: AsyncSession, *, user_id: int, actor: User) -> TrustProfile:
    if actor.role != "admin":
        raise AdminOnly("Only admin can unban users.")

    try:
        profile = (await _lock_profiles(db, [user_id]))[user_id]
        if not profile.is_banned:
            await db.commit()
            return profile

        profile.is_banned = False
        profile.ban_reason = None
        profile.banned_at = None
        profile.updated_at = utcnow()

        _log_event(
            db,
            profile,
            kind="unban",
            score_before=profile.trust_score,
            actor_user_id=actor.id,
        )

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("USER_UNBANNED: user=%s by admin=%s", user_id, actor.id)
    return profile
