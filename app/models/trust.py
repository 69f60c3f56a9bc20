from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base, BigIntPK, JSONDict, utcnow


class TrustProfile(Base):
    __tablename__ = "trust_profiles"
    __table_args__ = (
        CheckConstraint("trust_score >= 0 AND trust_score <= 100", name="trust_profiles_score_check"),
        CheckConstraint("warnings_count >= 0", name="trust_profiles_warnings_check"),
    )

    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )

    trust_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    warnings_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ban_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    banned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    total_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_bought: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class TrustEvent(Base):
    """Append-only audit row for every trust profile mutation."""

    __tablename__ = "trust_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    # dispute_penalty | sale_bonus | admin_adjust | ban | unban
    kind: Mapped[str] = mapped_column(Text, nullable=False)

    score_before: Mapped[int] = mapped_column(Integer, nullable=False)
    score_after: Mapped[int] = mapped_column(Integer, nullable=False)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    meta: Mapped[dict] = mapped_column(JSONDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


Index("ix_trust_events_user_created", TrustEvent.user_id, TrustEvent.created_at.desc())
Index("ix_trust_events_kind", TrustEvent.kind)
