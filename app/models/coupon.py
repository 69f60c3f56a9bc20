# app/models/coupon.py
from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    Text,
    Uuid,
    func,
)

from app.core.db import Base, BigIntPK


class Coupon(Base):
    """
    Listing record. Coupon CRUD and admin approval live in the listings
    service; the escrow core only reads price/ownership/status and flips the
    reservation and sold flags.
    """

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_verification','rejected','approved','sold')",
            name="coupons_status_check",
        ),
        CheckConstraint("price >= 0", name="coupons_price_check"),
    )

    id = Column(BigIntPK, primary_key=True)

    seller_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    buyer_id = Column(BigInteger, ForeignKey("users.id"), nullable=True)

    title = Column(Text, nullable=False)
    store_name = Column(Text, nullable=False)
    code = Column(Text, nullable=False)

    price = Column(Numeric(12, 2), nullable=False)
    expiry_date = Column(DateTime, nullable=False)

    status = Column(Text, nullable=False, default="pending_verification")
    is_sold = Column(Boolean, nullable=False, default=False)

    # ✅ set only by the escrow engine, one reservation at a time
    reserved_transaction_id = Column(Uuid, nullable=True)
    reserved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=True)


Index("ix_coupons_seller_id", Coupon.seller_id)
Index("ix_coupons_status_is_sold", Coupon.status, Coupon.is_sold)
