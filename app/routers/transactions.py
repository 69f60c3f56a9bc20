from __future__ import annotations

from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user, get_notifier, get_payment_gateway
from app.integrations.stripe_client import PaymentGateway
from app.models.transaction import EscrowTransaction
from app.models.user import User
from app.schemas.transactions import DisputeIn, InitiateIn, TransactionListOut, TransactionOut
from app.services import escrow
from app.services.escrow import EscrowError, TransitionResult
from app.services.notifications import NotificationDispatcher

router = APIRouter(prefix="/transactions", tags=["Transactions"])


def _out(tx: EscrowTransaction, result: TransitionResult | None = None) -> TransactionOut:
    return TransactionOut(
        id=tx.id,
        coupon_id=int(tx.coupon_id),
        buyer_id=int(tx.buyer_id),
        seller_id=int(tx.seller_id),
        amount=tx.amount,
        payment_status=tx.payment_status.value,
        payment_reference=tx.payment_reference,
        redirect_url=tx.redirect_url,
        dispute_reason=tx.dispute_reason,
        auto_confirmed=bool(tx.auto_confirmed),
        created_at=tx.created_at,
        holding_started_at=tx.holding_started_at,
        expires_at=tx.expires_at,
        completed_at=tx.completed_at,
        already_finalized=bool(result and result.already_finalized),
        coupon_code=result.coupon_code if result else None,
    )


def _http_error(e: EscrowError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"code": e.code, "message": str(e)})


@router.post("", response_model=TransactionOut, status_code=status.HTTP_201_CREATED)
async def initiate_purchase(
    payload: InitiateIn,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> TransactionOut:
    try:
        tx = await escrow.initiate(
            db,
            coupon_id=payload.coupon_id,
            buyer=current_user,
            gateway=gateway,
            notifier=notifier,
        )
    except EscrowError as e:
        raise _http_error(e)
    return _out(tx)


@router.get("/me", response_model=TransactionListOut)
async def my_transactions(
    role: Optional[Literal["buyer", "seller"]] = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> TransactionListOut:
    items, total = await escrow.list_for_user(
        db, user_id=int(current_user.id), role=role, offset=offset, limit=limit
    )
    return TransactionListOut(items=[_out(tx) for tx in items], total=total, offset=offset, limit=limit)


@router.get("/{transaction_id}", response_model=TransactionOut)
async def get_transaction(
    transaction_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> TransactionOut:
    try:
        result = await escrow.get_transaction(db, transaction_id, viewer=current_user)
    except EscrowError as e:
        raise _http_error(e)
    return _out(result.transaction, result)


@router.post("/{transaction_id}/confirm", response_model=TransactionOut)
async def confirm_transaction(
    transaction_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> TransactionOut:
    try:
        result = await escrow.confirm(
            db,
            transaction_id=transaction_id,
            actor=current_user,
            gateway=gateway,
            notifier=notifier,
        )
    except EscrowError as e:
        raise _http_error(e)
    return _out(result.transaction, result)


@router.post("/{transaction_id}/dispute", response_model=TransactionOut)
async def dispute_transaction(
    transaction_id: UUID,
    payload: DisputeIn,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> TransactionOut:
    try:
        result = await escrow.dispute(
            db,
            transaction_id=transaction_id,
            actor=current_user,
            reason=payload.reason,
            gateway=gateway,
            notifier=notifier,
        )
    except EscrowError as e:
        raise _http_error(e)
    return _out(result.transaction, result)
