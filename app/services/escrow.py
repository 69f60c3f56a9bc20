from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import utcnow
from app.integrations.stripe_client import (
    GatewayDeclined,
    GatewayError,
    GatewayUnavailable,
    PaymentGateway,
)
from app.models.transaction import (
    FINALIZED_STATUSES,
    EscrowTransaction,
    PaymentStatus,
    SettlementAction,
)
from app.models.user import User
from app.services import coupons as coupon_store
from app.services import trust
from app.services.notifications import (
    NotificationDispatcher,
    notify_ban,
    notify_completed,
    notify_failed,
    notify_holding,
    notify_refunded,
    notify_timer_warning,
)

logger = logging.getLogger(__name__)


class EscrowError(Exception):
    status_code = 400
    code = "ESCROW_ERROR"


class TransactionNotFound(EscrowError):
    status_code = 404
    code = "TRANSACTION_NOT_FOUND"


class CouponNotFound(EscrowError):
    status_code = 404
    code = "COUPON_NOT_FOUND"


class CouponUnavailable(EscrowError):
    status_code = 409
    code = "COUPON_UNAVAILABLE"


class CouponExpired(EscrowError):
    code = "COUPON_EXPIRED"


class CouponNotApproved(EscrowError):
    code = "COUPON_NOT_APPROVED"


class SelfPurchase(EscrowError):
    code = "SELF_PURCHASE"


class AmountTooSmall(EscrowError):
    code = "AMOUNT_TOO_SMALL"


class BuyerBanned(EscrowError):
    status_code = 403
    code = "BUYER_BANNED"


class NotBuyer(EscrowError):
    status_code = 403
    code = "NOT_BUYER"


class NotParticipant(EscrowError):
    status_code = 403
    code = "NOT_PARTICIPANT"


class InvalidState(EscrowError):
    status_code = 409
    code = "INVALID_STATE"


class TransactionExpired(EscrowError):
    code = "TRANSACTION_EXPIRED"


class MissingReason(EscrowError):
    code = "MISSING_REASON"


class PaymentDeclined(EscrowError):
    status_code = 402
    code = "PAYMENT_DECLINED"


class PaymentProviderError(EscrowError):
    status_code = 502
    code = "PAYMENT_PROVIDER_ERROR"


class SettlementStuck(PaymentProviderError):
    """Sweep-driven settlement gave up; needs an operator or a buyer action."""
    code = "SETTLEMENT_STUCK"


@dataclass
class TransitionResult:
    transaction: EscrowTransaction
    # True when another actor already moved the transaction: the call was a no-op
    already_finalized: bool = False
    coupon_code: str | None = None


# -------------------------
# Helpers
# -------------------------

async def _load(db: AsyncSession, transaction_id: UUID) -> EscrowTransaction | None:
    res = await db.execute(
        select(EscrowTransaction)
        .where(EscrowTransaction.id == transaction_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def _require(db: AsyncSession, transaction_id: UUID) -> EscrowTransaction:
    tx = await _load(db, transaction_id)
    if tx is None:
        raise TransactionNotFound("Transaction not found.")
    return tx


async def _cas(
    db: AsyncSession,
    transaction_id: UUID,
    *,
    expected: PaymentStatus,
    where: tuple = (),
    **values: Any,
) -> bool:
    """
    Compare-and-set on payment_status. Exactly one concurrent caller can win;
    the row count tells which. Does not commit.
    """
    values.setdefault("updated_at", utcnow())
    res = await db.execute(
        update(EscrowTransaction)
        .where(
            EscrowTransaction.id == transaction_id,
            EscrowTransaction.payment_status == expected,
            *where,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _with_timeout(call: Awaitable[Any]) -> Any:
    try:
        return await asyncio.wait_for(call, timeout=settings.PAYMENT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as e:
        raise GatewayUnavailable("Payment processor timed out") from e


async def _call_processor(gateway: PaymentGateway, tx: EscrowTransaction, action: SettlementAction) -> None:
    if not tx.payment_reference:
        raise GatewayError("Transaction has no payment reference")

    key = f"{tx.id}:{action.value}"
    if action is SettlementAction.CAPTURE:
        await _with_timeout(gateway.capture(tx.payment_reference, idempotency_key=key))
    else:
        await _with_timeout(gateway.refund(tx.payment_reference, idempotency_key=key))


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff for scheduler-driven settlement retries."""
    exp = max(0, attempts - 1)
    seconds = min(settings.RETRY_MAX_SECONDS, settings.RETRY_BASE_SECONDS * (2 ** min(exp, 30)))
    return timedelta(seconds=seconds)


def _result(tx: EscrowTransaction, coupon=None, *, already_finalized: bool = False) -> TransitionResult:
    code = None
    if coupon is not None and tx.payment_status is PaymentStatus.COMPLETED:
        code = coupon.code
    return TransitionResult(transaction=tx, already_finalized=already_finalized, coupon_code=code)


async def _fail_pending(
    db: AsyncSession,
    tx: EscrowTransaction,
    *,
    reason: str | None,
    notifier: NotificationDispatcher,
    where: tuple = (),
) -> bool:
    """pending -> failed, releasing the coupon. False if the tx already moved on."""
    try:
        if not await _cas(
            db,
            tx.id,
            expected=PaymentStatus.PENDING,
            where=where,
            payment_status=PaymentStatus.FAILED,
            last_error=reason,
        ):
            await db.rollback()
            return False

        await coupon_store.release_coupon(
            db,
            coupon_id=tx.coupon_id,
            transaction_id=tx.id,
            reason=reason or "payment_failed",
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("ESCROW_FAILED: tx=%s coupon=%s reason=%s", tx.id, tx.coupon_id, reason)
    notify_failed(notifier, tx=tx, reason=reason)
    return True


# -------------------------
# Queries
# -------------------------

async def get_transaction(db: AsyncSession, transaction_id: UUID, *, viewer: User) -> TransitionResult:
    tx = await _require(db, transaction_id)
    if viewer.role != "admin" and viewer.id not in (tx.buyer_id, tx.seller_id):
        raise NotParticipant("You are not a party to this transaction.")

    coupon = None
    if viewer.id == tx.buyer_id:
        # code is revealed to the buyer only once the sale completed
        coupon = await coupon_store.get_coupon(db, tx.coupon_id)
    return _result(tx, coupon)


async def list_for_user(
    db: AsyncSession,
    *,
    user_id: int,
    role: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[EscrowTransaction], int]:
    if role == "buyer":
        cond = EscrowTransaction.buyer_id == user_id
    elif role == "seller":
        cond = EscrowTransaction.seller_id == user_id
    else:
        cond = or_(EscrowTransaction.buyer_id == user_id, EscrowTransaction.seller_id == user_id)

    total = int(
        (await db.execute(select(func.count()).select_from(EscrowTransaction).where(cond))).scalar_one()
    )
    res = await db.execute(
        select(EscrowTransaction)
        .where(cond)
        .order_by(EscrowTransaction.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(res.scalars().all()), total


async def find_by_id(db: AsyncSession, transaction_id: UUID) -> EscrowTransaction | None:
    return await _load(db, transaction_id)


async def find_by_reference(db: AsyncSession, reference: str) -> EscrowTransaction | None:
    res = await db.execute(
        select(EscrowTransaction)
        .where(EscrowTransaction.payment_reference == reference)
        .order_by(EscrowTransaction.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


# -------------------------
# Initiation / authorization
# -------------------------

async def initiate(
    db: AsyncSession,
    *,
    coupon_id: int,
    buyer: User,
    gateway: PaymentGateway,
    notifier: NotificationDispatcher,
) -> EscrowTransaction:
    coupon = await coupon_store.get_coupon(db, coupon_id)
    if coupon is None:
        raise CouponNotFound("Coupon not found.")
    if coupon.is_sold or coupon.reserved_transaction_id is not None:
        raise CouponUnavailable("This coupon is no longer available.")
    if coupon.seller_id == buyer.id:
        raise SelfPurchase("You cannot buy your own coupon.")
    if coupon_store.is_expired(coupon):
        raise CouponExpired("This coupon has expired.")
    if coupon.status != "approved":
        raise CouponNotApproved("This coupon has not been approved for sale.")

    amount = Decimal(coupon.price)
    if amount < settings.MIN_AMOUNT:
        raise AmountTooSmall(f"Amount must be at least {settings.MIN_AMOUNT}.")

    profiles = await trust.ensure_profiles(db, [buyer.id, coupon.seller_id])
    if profiles[buyer.id].is_banned:
        raise BuyerBanned("Your account is banned from purchasing.")
    if profiles[coupon.seller_id].is_banned:
        raise CouponUnavailable("This coupon is no longer available.")

    tx = EscrowTransaction(
        coupon_id=coupon.id,
        buyer_id=buyer.id,
        seller_id=coupon.seller_id,
        amount=amount,
        payment_status=PaymentStatus.PENDING,
        created_at=utcnow(),
    )

    try:
        db.add(tx)
        await db.flush()

        # ✅ one buyer at a time: conditional claim on the coupon row
        reserved = await coupon_store.reserve_coupon(
            db, coupon_id=coupon.id, transaction_id=tx.id, buyer_id=buyer.id
        )
        if not reserved:
            raise CouponUnavailable("This coupon is no longer available.")

        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise CouponUnavailable("This coupon is no longer available.") from None
    except Exception:
        await db.rollback()
        raise

    logger.info("ESCROW_INITIATED: tx=%s coupon=%s buyer=%s amount=%s", tx.id, coupon.id, buyer.id, amount)

    # no lock is held while the processor is called
    try:
        auth = await _with_timeout(
            gateway.authorize(
                amount=amount,
                metadata={
                    "transaction_id": str(tx.id),
                    "coupon_id": str(coupon.id),
                    "buyer_id": str(buyer.id),
                    "seller_id": str(coupon.seller_id),
                    "title": coupon.title,
                },
                idempotency_key=f"{tx.id}:authorize",
            )
        )
    except GatewayDeclined as e:
        await _fail_pending(db, tx, reason=f"declined: {e}", notifier=notifier)
        raise PaymentDeclined(str(e) or "Payment was declined.") from e
    except GatewayError as e:
        logger.warning("AUTHORIZE_FAILED: tx=%s err=%s", tx.id, e)
        await _fail_pending(db, tx, reason=f"provider_error: {e}", notifier=notifier)
        raise PaymentProviderError("Payment provider is unavailable, please try again.") from e

    try:
        await db.execute(
            update(EscrowTransaction)
            .where(EscrowTransaction.id == tx.id)
            .values(
                # the webhook may already have stored the payment intent id
                payment_reference=func.coalesce(EscrowTransaction.payment_reference, auth.reference),
                redirect_url=auth.redirect_url,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    return await _require(db, tx.id)


async def on_authorization_result(
    db: AsyncSession,
    *,
    transaction_id: UUID,
    succeeded: bool,
    notifier: NotificationDispatcher,
    reference: str | None = None,
    reason: str | None = None,
    gateway: PaymentGateway | None = None,
) -> TransitionResult:
    """
    Processor callback. Delivered at least once: anything but a pending
    transaction is left untouched and reported as already finalized.
    """
    tx = await _require(db, transaction_id)

    if not succeeded:
        if await _fail_pending(db, tx, reason=reason or "authorization_failed", notifier=notifier):
            return _result(await _require(db, tx.id))
        return _result(await _require(db, tx.id), already_finalized=True)

    now = utcnow()
    values: dict[str, Any] = {
        "payment_status": PaymentStatus.HOLDING,
        "holding_started_at": now,
        "expires_at": now + timedelta(minutes=settings.HOLD_MINUTES),
    }
    if reference:
        values["payment_reference"] = reference

    try:
        moved = await _cas(db, tx.id, expected=PaymentStatus.PENDING, **values)
        if moved:
            await db.commit()
        else:
            await db.rollback()
    except Exception:
        await db.rollback()
        raise

    tx = await _require(db, tx.id)

    if not moved:
        if tx.payment_status is PaymentStatus.FAILED and gateway is not None and reference:
            # authorization arrived after we gave up on it: release the buyer's funds
            try:
                await _with_timeout(gateway.refund(reference, idempotency_key=f"{tx.id}:void"))
                logger.info("LATE_AUTHORIZATION_VOIDED: tx=%s ref=%s", tx.id, reference)
            except GatewayError as e:
                logger.warning("LATE_AUTHORIZATION_VOID_FAILED: tx=%s ref=%s err=%s", tx.id, reference, e)
        return _result(tx, already_finalized=True)

    coupon = await coupon_store.get_coupon(db, tx.coupon_id)
    logger.info("ESCROW_HOLDING: tx=%s expires_at=%s", tx.id, tx.expires_at)
    notify_holding(notifier, tx=tx, coupon=coupon, hold_minutes=settings.HOLD_MINUTES)
    return _result(tx)


# -------------------------
# Settlement (confirm / dispute / auto-confirm)
# -------------------------

async def _finalize(
    db: AsyncSession,
    tx: EscrowTransaction,
    action: SettlementAction,
    *,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> TransitionResult:
    """processing -> completed/refunded after the processor confirmed the money moved."""
    now = now or utcnow()
    target = PaymentStatus.COMPLETED if action is SettlementAction.CAPTURE else PaymentStatus.REFUNDED

    outcome = None
    try:
        moved = await _cas(
            db,
            tx.id,
            expected=PaymentStatus.PROCESSING,
            where=(EscrowTransaction.settlement_action == action.value,),
            payment_status=target,
            completed_at=now,
            next_attempt_at=None,
            last_error=None,
        )
        if not moved:
            await db.rollback()
        elif action is SettlementAction.CAPTURE:
            await coupon_store.mark_coupon_sold(
                db, coupon_id=tx.coupon_id, transaction_id=tx.id, buyer_id=tx.buyer_id
            )
            await trust.record_successful_sale(
                db, seller_id=tx.seller_id, buyer_id=tx.buyer_id, transaction_id=tx.id
            )
            await db.commit()
        else:
            await coupon_store.release_coupon(
                db, coupon_id=tx.coupon_id, transaction_id=tx.id, reason="disputed"
            )
            outcome = await trust.record_dispute_outcome(
                db, seller_id=tx.seller_id, transaction_id=tx.id, reason=tx.dispute_reason
            )
            await db.commit()
    except Exception:
        await db.rollback()
        raise

    tx = await _require(db, tx.id)
    coupon = await coupon_store.get_coupon(db, tx.coupon_id)

    if not moved:
        # reconciled concurrently (webhook or re-drive); effects already applied
        return _result(tx, coupon)

    if target is PaymentStatus.COMPLETED:
        logger.info("ESCROW_CONFIRMED: tx=%s auto=%s", tx.id, tx.auto_confirmed)
        notify_completed(notifier, tx=tx, coupon=coupon)
    else:
        logger.info("ESCROW_REFUNDED: tx=%s seller=%s", tx.id, tx.seller_id)
        notify_refunded(notifier, tx=tx, coupon=coupon, flagged=bool(outcome and outcome.flagged))
        if outcome is not None and outcome.auto_banned:
            notify_ban(notifier, user_id=tx.seller_id, reason=outcome.profile.ban_reason, automatic=True)

    return _result(tx, coupon)


async def _release_claim(
    db: AsyncSession,
    tx: EscrowTransaction,
    action: SettlementAction,
    *,
    claimed_at: datetime,
    error: str,
    next_attempt_at: datetime | None = None,
    attempts: int | None = None,
) -> None:
    """processing -> holding when the processor call failed; the buyer (or sweep) can retry."""
    extra: dict[str, Any] = {}
    if attempts is not None:
        extra["settlement_attempts"] = attempts
    try:
        await _cas(
            db,
            tx.id,
            expected=PaymentStatus.PROCESSING,
            where=(
                EscrowTransaction.settlement_action == action.value,
                EscrowTransaction.settlement_started_at == claimed_at,
            ),
            payment_status=PaymentStatus.HOLDING,
            settlement_action=None,
            settlement_started_at=None,
            dispute_reason=None,
            auto_confirmed=False,
            last_error=error[:500],
            next_attempt_at=next_attempt_at,
            **extra,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def _settle(
    db: AsyncSession,
    tx: EscrowTransaction,
    action: SettlementAction,
    *,
    gateway: PaymentGateway,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
    auto: bool = False,
    dispute_reason: str | None = None,
    where: tuple = (),
) -> TransitionResult:
    now = now or utcnow()

    values: dict[str, Any] = {
        "payment_status": PaymentStatus.PROCESSING,
        "settlement_action": action.value,
        "settlement_started_at": now,
        "settlement_attempts": EscrowTransaction.settlement_attempts + 1,
        "auto_confirmed": auto,
    }
    if dispute_reason is not None:
        values["dispute_reason"] = dispute_reason

    try:
        claimed = await _cas(db, tx.id, expected=PaymentStatus.HOLDING, where=where, **values)
        if claimed:
            await db.commit()
        else:
            await db.rollback()
    except Exception:
        await db.rollback()
        raise

    tx = await _require(db, tx.id)

    if not claimed:
        if tx.payment_status in FINALIZED_STATUSES:
            logger.info("ESCROW_ALREADY_FINALIZED: tx=%s status=%s action=%s", tx.id, tx.payment_status.value, action.value)
            coupon = await coupon_store.get_coupon(db, tx.coupon_id)
            return _result(tx, coupon, already_finalized=True)
        if (
            action is SettlementAction.REFUND
            and tx.payment_status is PaymentStatus.HOLDING
            and (tx.expires_at is None or tx.expires_at <= now)
        ):
            raise TransactionExpired("The verification window for this transaction has closed.")
        raise InvalidState(f"Transaction is {tx.payment_status.value}, expected holding.")

    logger.info("ESCROW_CLAIMED: tx=%s action=%s auto=%s attempt=%s", tx.id, action.value, auto, tx.settlement_attempts)

    try:
        await _call_processor(gateway, tx, action)
    except GatewayError as e:
        if not auto:
            await _release_claim(db, tx, action, claimed_at=now, error=str(e))
            logger.warning("SETTLEMENT_FAILED: tx=%s action=%s err=%s", tx.id, action.value, e)
            raise PaymentProviderError("Payment provider is unavailable, please try again.") from e

        # a rejection (not an outage) will not succeed on retry either
        permanent = not isinstance(e, GatewayUnavailable)
        if permanent or tx.settlement_attempts >= settings.SETTLEMENT_MAX_ATTEMPTS:
            await _release_claim(
                db,
                tx,
                action,
                claimed_at=now,
                error=str(e),
                attempts=max(tx.settlement_attempts, settings.SETTLEMENT_MAX_ATTEMPTS),
            )
            logger.error(
                "AUTO_CONFIRM_STUCK: tx=%s attempt=%s permanent=%s err=%s",
                tx.id, tx.settlement_attempts, permanent, e,
            )
            raise SettlementStuck(f"Auto-confirm gave up: {e}") from e

        next_at = now + retry_delay(tx.settlement_attempts)
        await _release_claim(db, tx, action, claimed_at=now, error=str(e), next_attempt_at=next_at)
        logger.warning(
            "AUTO_CONFIRM_RETRY: tx=%s attempt=%s next_attempt_at=%s err=%s",
            tx.id, tx.settlement_attempts, next_at, e,
        )
        raise PaymentProviderError("Payment provider is unavailable, please try again.") from e

    return await _finalize(db, tx, action, notifier=notifier, now=now)


async def confirm(
    db: AsyncSession,
    *,
    transaction_id: UUID,
    actor: User,
    gateway: PaymentGateway,
    notifier: NotificationDispatcher,
) -> TransitionResult:
    tx = await _require(db, transaction_id)
    if tx.buyer_id != actor.id:
        raise NotBuyer("Only the buyer can confirm this transaction.")

    return await _settle(db, tx, SettlementAction.CAPTURE, gateway=gateway, notifier=notifier)


async def dispute(
    db: AsyncSession,
    *,
    transaction_id: UUID,
    actor: User,
    reason: str | None,
    gateway: PaymentGateway,
    notifier: NotificationDispatcher,
) -> TransitionResult:
    reason = (reason or "").strip()
    if not reason:
        raise MissingReason("Please describe the issue with the coupon.")

    tx = await _require(db, transaction_id)
    if tx.buyer_id != actor.id:
        raise NotBuyer("Only the buyer can dispute this transaction.")

    # disputes are only accepted inside the holding window
    now = utcnow()
    return await _settle(
        db,
        tx,
        SettlementAction.REFUND,
        gateway=gateway,
        notifier=notifier,
        now=now,
        dispute_reason=reason,
        where=(EscrowTransaction.expires_at > now,),
    )


async def auto_confirm(
    db: AsyncSession,
    *,
    transaction_id: UUID,
    gateway: PaymentGateway,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> TransitionResult:
    """Scheduler-only: release funds to the seller once the holding window elapsed."""
    now = now or utcnow()
    tx = await _require(db, transaction_id)

    if tx.payment_status is PaymentStatus.HOLDING and (tx.expires_at is None or tx.expires_at > now):
        raise InvalidState("Holding window has not elapsed yet.")

    return await _settle(
        db,
        tx,
        SettlementAction.CAPTURE,
        gateway=gateway,
        notifier=notifier,
        now=now,
        auto=True,
        where=(EscrowTransaction.expires_at <= now,),
    )


async def on_settlement_result(
    db: AsyncSession,
    *,
    transaction_id: UUID,
    action: SettlementAction,
    succeeded: bool,
    notifier: NotificationDispatcher,
    reason: str | None = None,
) -> TransitionResult:
    """Webhook reconciliation of a capture/refund outcome."""
    tx = await _require(db, transaction_id)

    if tx.payment_status is not PaymentStatus.PROCESSING or tx.settlement_action != action.value:
        return _result(tx, already_finalized=True)

    if succeeded:
        return await _finalize(db, tx, action, notifier=notifier)

    await _release_claim(
        db,
        tx,
        action,
        claimed_at=tx.settlement_started_at,
        error=reason or f"{action.value}_failed",
    )
    logger.warning("SETTLEMENT_FAILED: tx=%s action=%s reason=%s", tx.id, action.value, reason)
    return _result(await _require(db, tx.id))


# -------------------------
# Sweep entry points
# -------------------------

async def redrive_stale_settlement(
    db: AsyncSession,
    *,
    transaction_id: UUID,
    gateway: PaymentGateway,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> TransitionResult:
    """
    Finish a settlement whose worker died between claim and finalize. The
    processor call is repeated with the same idempotency key, so money moves
    at most once.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.SETTLEMENT_STALE_SECONDS)

    tx = await _require(db, transaction_id)
    if tx.payment_status is not PaymentStatus.PROCESSING or not tx.settlement_action:
        return _result(tx, already_finalized=True)

    try:
        claimed = await _cas(
            db,
            tx.id,
            expected=PaymentStatus.PROCESSING,
            where=(
                or_(
                    EscrowTransaction.settlement_started_at.is_(None),
                    EscrowTransaction.settlement_started_at <= cutoff,
                ),
            ),
            settlement_started_at=now,
            settlement_attempts=EscrowTransaction.settlement_attempts + 1,
        )
        if claimed:
            await db.commit()
        else:
            await db.rollback()
    except Exception:
        await db.rollback()
        raise

    tx = await _require(db, tx.id)
    if not claimed:
        return _result(tx, already_finalized=True)

    action = SettlementAction(tx.settlement_action)
    logger.info("SETTLEMENT_REDRIVE: tx=%s action=%s attempt=%s", tx.id, action.value, tx.settlement_attempts)

    try:
        await _call_processor(gateway, tx, action)
    except GatewayError as e:
        # the money may already have moved: stay in processing, retry after the stale window
        values: dict[str, Any] = {"last_error": str(e)[:500]}
        stuck = (
            not isinstance(e, GatewayUnavailable)
            or tx.settlement_attempts >= settings.SETTLEMENT_MAX_ATTEMPTS
        )
        if stuck:
            values["settlement_attempts"] = max(tx.settlement_attempts, settings.SETTLEMENT_MAX_ATTEMPTS)
        try:
            await _cas(db, tx.id, expected=PaymentStatus.PROCESSING, **values)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        if stuck:
            logger.error(
                "SETTLEMENT_REDRIVE_STUCK: tx=%s action=%s attempt=%s err=%s",
                tx.id, action.value, tx.settlement_attempts, e,
            )
            raise SettlementStuck(f"Settlement re-drive gave up: {e}") from e
        logger.warning("SETTLEMENT_REDRIVE_FAILED: tx=%s action=%s err=%s", tx.id, action.value, e)
        raise PaymentProviderError("Payment provider is unavailable, please try again.") from e

    return await _finalize(db, tx, action, notifier=notifier, now=now)


async def expire_pending(
    db: AsyncSession,
    *,
    transaction_id: UUID,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> bool:
    """pending -> failed once the authorization window passed without a processor outcome."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.PENDING_TIMEOUT_MINUTES)

    tx = await _require(db, transaction_id)
    return await _fail_pending(
        db,
        tx,
        reason="authorization_timeout",
        notifier=notifier,
        where=(EscrowTransaction.created_at <= cutoff,),
    )


async def mark_timer_warning(
    db: AsyncSession,
    *,
    transaction_id: UUID,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> bool:
    """Send the single 'time running out' warning for a holding transaction."""
    now = now or utcnow()

    try:
        sent = await _cas(
            db,
            transaction_id,
            expected=PaymentStatus.HOLDING,
            where=(EscrowTransaction.warning_sent_at.is_(None),),
            warning_sent_at=now,
        )
        if not sent:
            await db.rollback()
            return False
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    tx = await _require(db, transaction_id)
    remaining = max(0, math.ceil((tx.expires_at - now).total_seconds() / 60)) if tx.expires_at else 0
    notify_timer_warning(notifier, tx=tx, minutes_remaining=remaining)
    return True
