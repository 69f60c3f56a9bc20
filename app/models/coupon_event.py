# app/models/coupon_event.py
from __future__ import annotations

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Text, Uuid, func

from app.core.db import Base, BigIntPK, JSONDict


class CouponEvent(Base):
    __tablename__ = "coupon_events"

    id = Column(BigIntPK, primary_key=True)
    coupon_id = Column(BigInteger, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)

    actor_user_id = Column(BigInteger, ForeignKey("users.id"), nullable=True)
    transaction_id = Column(Uuid, nullable=True)

    event_type = Column(Text, nullable=False)  # e.g. reserved, released, sold
    meta = Column(JSONDict, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
