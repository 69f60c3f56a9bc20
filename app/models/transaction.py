from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from app.core.db import Base, utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    HOLDING = "holding"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED}
)

# Statuses that mean "the money already moved (or is moving) for this
# transaction": a buyer action arriving now lost the race.
FINALIZED_STATUSES = frozenset(
    {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}
)

# Older rows were written with the escrow vocabulary of the first release.
LEGACY_STATUS_ALIASES = {
    "released": PaymentStatus.COMPLETED,
    "holding": PaymentStatus.HOLDING,
}


def normalize_payment_status(raw: str | PaymentStatus) -> PaymentStatus:
    """Translate a stored or inbound status string to the canonical enum."""
    if isinstance(raw, PaymentStatus):
        return raw
    value = (raw or "").strip().lower()
    if value in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[value]
    try:
        return PaymentStatus(value)
    except ValueError:
        raise ValueError(f"Unknown payment status: {raw!r}") from None


class PaymentStatusType(TypeDecorator):
    """Text column that always reads back as a canonical PaymentStatus."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return normalize_payment_status(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return normalize_payment_status(value)


class SettlementAction(str, Enum):
    CAPTURE = "capture"
    REFUND = "refund"


class EscrowTransaction(Base):
    __tablename__ = "escrow_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="escrow_transactions_amount_check"),
        CheckConstraint(
            "payment_status IN ('pending','processing','holding','completed','failed','refunded','released')",
            name="escrow_transactions_status_check",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    coupon_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("coupons.id"), nullable=False)
    buyer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    seller_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)

    # snapshot of coupon.price at initiation, never re-read
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        PaymentStatusType(), nullable=False, default=PaymentStatus.PENDING
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    redirect_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    auto_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # in-flight settlement bookkeeping (capture on confirm, refund on dispute)
    settlement_action: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    settlement_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    settlement_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    holding_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    warning_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


_ACTIVE_STATUSES = text("payment_status IN ('pending','processing','holding')")

# ✅ no double-sell: at most one non-terminal transaction per coupon
Index(
    "uq_escrow_transactions_active_coupon",
    EscrowTransaction.coupon_id,
    unique=True,
    postgresql_where=_ACTIVE_STATUSES,
    sqlite_where=_ACTIVE_STATUSES,
)
Index("ix_escrow_transactions_status_expires", EscrowTransaction.payment_status, EscrowTransaction.expires_at)
Index("ix_escrow_transactions_buyer_id", EscrowTransaction.buyer_id)
Index("ix_escrow_transactions_seller_id", EscrowTransaction.seller_id)
Index("ix_escrow_transactions_payment_reference", EscrowTransaction.payment_reference)
