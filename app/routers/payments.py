from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import get_db
from app.core.deps import get_notifier, get_payment_gateway
from app.integrations.stripe_client import PaymentGateway, WebhookSignatureError, verify_webhook_signature
from app.schemas.transactions import WebhookAckOut
from app.services.escrow import EscrowError
from app.services.notifications import NotificationDispatcher
from app.services.payment_events import handle_payment_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook", response_model=WebhookAckOut)
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> WebhookAckOut:
    if not stripe_signature:
        raise HTTPException(
            status_code=400,
            detail={"code": "MISSING_SIGNATURE", "message": "Stripe-Signature header is required"},
        )

    payload = await request.body()
    try:
        event = verify_webhook_signature(payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    except WebhookSignatureError as e:
        logger.warning("WEBHOOK_SIGNATURE_REJECTED: %s", e)
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_WEBHOOK_SIGNATURE", "message": str(e)},
        )

    try:
        outcome = await handle_payment_event(db, event, gateway=gateway, notifier=notifier)
    except EscrowError as e:
        # a business rejection will not change on redelivery: acknowledge it
        logger.warning("WEBHOOK_EVENT_REJECTED: type=%s code=%s err=%s", event.get("type"), e.code, e)
        return WebhookAckOut(handled=False, detail=e.code)

    return WebhookAckOut(handled=outcome.handled, detail=outcome.detail)
