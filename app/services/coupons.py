from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import utcnow
from app.models.coupon import Coupon
from app.models.coupon_event import CouponEvent


def _log_event(
    db: AsyncSession,
    *,
    coupon_id: int,
    actor_user_id: int | None,
    event_type: str,
    transaction_id: UUID | None = None,
    meta: dict | None = None,
):
    e = CouponEvent(
        coupon_id=coupon_id,
        actor_user_id=actor_user_id,
        transaction_id=transaction_id,
        event_type=event_type,
        meta=meta or {},
    )
    db.add(e)


async def get_coupon(db: AsyncSession, coupon_id: int) -> Coupon | None:
    res = await db.execute(
        select(Coupon).where(Coupon.id == coupon_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


def is_expired(coupon: Coupon, now: datetime | None = None) -> bool:
    return coupon.expiry_date <= (now or utcnow())


def is_available(coupon: Coupon) -> bool:
    return (
        coupon.status == "approved"
        and not coupon.is_sold
        and coupon.reserved_transaction_id is None
    )


async def reserve_coupon(
    db: AsyncSession,
    *,
    coupon_id: int,
    transaction_id: UUID,
    buyer_id: int,
) -> bool:
    """
    Conditional claim: only an approved, unsold, unreserved coupon can be
    reserved. Returns False when someone else got there first. Does not commit.
    """
    now = utcnow()
    res = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.status == "approved",
            Coupon.is_sold.is_(False),
            Coupon.reserved_transaction_id.is_(None),
        )
        .values(reserved_transaction_id=transaction_id, reserved_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False

    _log_event(
        db,
        coupon_id=coupon_id,
        actor_user_id=buyer_id,
        event_type="reserved",
        transaction_id=transaction_id,
    )
    return True


async def release_coupon(
    db: AsyncSession,
    *,
    coupon_id: int,
    transaction_id: UUID,
    reason: str,
) -> bool:
    """Put the coupon back on the market. No-op if this tx no longer holds it."""
    res = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.reserved_transaction_id == transaction_id,
            Coupon.is_sold.is_(False),
        )
        .values(
            reserved_transaction_id=None,
            reserved_at=None,
            buyer_id=None,
            status="approved",
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False

    _log_event(
        db,
        coupon_id=coupon_id,
        actor_user_id=None,
        event_type="released",
        transaction_id=transaction_id,
        meta={"reason": reason},
    )
    return True


async def mark_coupon_sold(
    db: AsyncSession,
    *,
    coupon_id: int,
    transaction_id: UUID,
    buyer_id: int,
) -> bool:
    res = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.reserved_transaction_id == transaction_id,
        )
        .values(is_sold=True, status="sold", buyer_id=buyer_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False

    _log_event(
        db,
        coupon_id=coupon_id,
        actor_user_id=buyer_id,
        event_type="sold",
        transaction_id=transaction_id,
    )
    return True
