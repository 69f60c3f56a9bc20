from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import SessionLocal
from app.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Fire-and-forget delivery of user notifications.

    dispatch() never blocks or raises: each notification is written by a
    background task in its own session, and a failed write is logged only.
    The caller's transaction is already committed by the time it dispatches.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] = SessionLocal):
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()

    def dispatch(
        self,
        user_id: int,
        type_: str,
        title: str,
        message: str,
        *,
        payload: dict[str, Any] | None = None,
        transaction_id: UUID | None = None,
    ) -> None:
        task = asyncio.create_task(
            self._deliver(
                user_id=user_id,
                type_=type_,
                title=title,
                message=message,
                payload=payload or {},
                transaction_id=transaction_id,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(
        self,
        *,
        user_id: int,
        type_: str,
        title: str,
        message: str,
        payload: dict[str, Any],
        transaction_id: UUID | None,
    ) -> None:
        try:
            async with self._session_factory() as db:
                db.add(
                    Notification(
                        user_id=user_id,
                        type=type_,
                        title=title,
                        message=message,
                        payload=payload,
                        transaction_id=transaction_id,
                    )
                )
                await db.commit()
        except Exception:
            logger.exception(
                "NOTIFICATION_DELIVERY_FAILED: user=%s type=%s tx=%s", user_id, type_, transaction_id
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


notification_dispatcher = NotificationDispatcher()


# -------------------------
# Escrow event templates
# -------------------------

def _money(amount) -> str:
    return f"₹{amount}"


def notify_holding(notifier: NotificationDispatcher, *, tx, coupon, hold_minutes: int) -> None:
    notifier.dispatch(
        tx.buyer_id,
        "purchase",
        "Payment Successful",
        f"Your payment for the {coupon.store_name} coupon is held in escrow. "
        f"You have {hold_minutes} minutes to confirm it works or report an issue.",
        payload={"coupon_id": coupon.id, "expires_at": tx.expires_at.isoformat() if tx.expires_at else None},
        transaction_id=tx.id,
    )
    notifier.dispatch(
        tx.seller_id,
        "sale",
        "Coupon Sold",
        f"Your {coupon.store_name} coupon has been purchased for {_money(tx.amount)}. "
        "Payment is being held in escrow pending buyer confirmation.",
        payload={"coupon_id": coupon.id},
        transaction_id=tx.id,
    )


def notify_completed(notifier: NotificationDispatcher, *, tx, coupon) -> None:
    if tx.auto_confirmed:
        buyer_title = "Transaction Auto-Confirmed"
        buyer_message = (
            "Your transaction was automatically confirmed as the verification period expired. "
            "Payment has been released to the seller."
        )
        seller_message = (
            f"Payment of {_money(tx.amount)} for your {coupon.store_name} coupon has been released "
            "automatically as the buyer verification period expired."
        )
    else:
        buyer_title = "Purchase Confirmed"
        buyer_message = f"Thanks for confirming. Your {coupon.store_name} coupon code is: {coupon.code}"
        seller_message = (
            f"Payment of {_money(tx.amount)} for your {coupon.store_name} coupon has been released. "
            "The buyer confirmed the coupon works!"
        )

    notifier.dispatch(
        tx.buyer_id,
        "completed",
        buyer_title,
        buyer_message,
        payload={"coupon_id": coupon.id, "coupon_code": coupon.code, "auto_confirmed": tx.auto_confirmed},
        transaction_id=tx.id,
    )
    notifier.dispatch(
        tx.seller_id,
        "sale",
        "Payment Released",
        seller_message,
        payload={"coupon_id": coupon.id, "amount": str(tx.amount)},
        transaction_id=tx.id,
    )


def notify_refunded(notifier: NotificationDispatcher, *, tx, coupon, flagged: bool) -> None:
    notifier.dispatch(
        tx.buyer_id,
        "refunded",
        "Refund Processed",
        f"Your refund of {_money(tx.amount)} for the {coupon.store_name} coupon has been processed.",
        payload={"coupon_id": coupon.id, "reason": tx.dispute_reason},
        transaction_id=tx.id,
    )
    message = (
        f"A buyer has reported that your {coupon.store_name} coupon does not work. "
        "This has been recorded as a warning."
    )
    if flagged:
        message += " Your account now carries a warning flag."
    notifier.dispatch(
        tx.seller_id,
        "warning",
        "Dispute Filed",
        message,
        payload={"coupon_id": coupon.id, "reason": tx.dispute_reason, "flagged": flagged},
        transaction_id=tx.id,
    )


def notify_failed(notifier: NotificationDispatcher, *, tx, reason: str | None = None) -> None:
    notifier.dispatch(
        tx.buyer_id,
        "failed",
        "Payment Failed",
        "Your payment for this coupon failed. Please try again.",
        payload={"coupon_id": tx.coupon_id, "reason": reason},
        transaction_id=tx.id,
    )


def notify_timer_warning(notifier: NotificationDispatcher, *, tx, minutes_remaining: int) -> None:
    notifier.dispatch(
        tx.buyer_id,
        "warning",
        "Verification Time Running Out",
        f"You have {minutes_remaining} minutes remaining to verify your purchased coupon. "
        "Please confirm if it works or report an issue.",
        payload={"minutes_remaining": minutes_remaining},
        transaction_id=tx.id,
    )


def notify_ban(notifier: NotificationDispatcher, *, user_id: int, reason: str | None, automatic: bool) -> None:
    if automatic:
        title = "Account Suspended"
        message = (
            f"Your account has been suspended due to {reason or 'repeated disputes'}. "
            "You can no longer list or purchase coupons."
        )
    else:
        title = "Account Banned"
        message = (
            f"Your account has been banned by an administrator. Reason: {reason or 'not specified'}. "
            "Please contact support if you believe this is an error."
        )
    notifier.dispatch(user_id, "ban", title, message, payload={"reason": reason, "automatic": automatic})
