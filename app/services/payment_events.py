from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.integrations.stripe_client import PaymentGateway
from app.models.transaction import EscrowTransaction, PaymentStatus, SettlementAction
from app.services import escrow
from app.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

AUTHORIZED_EVENTS = {"payment_intent.amount_capturable_updated"}
AUTHORIZATION_FAILED_EVENTS = {"payment_intent.payment_failed", "checkout.session.expired"}
CAPTURED_EVENTS = {"payment_intent.succeeded"}
CANCELED_EVENTS = {"payment_intent.canceled"}


@dataclass
class EventOutcome:
    handled: bool
    transaction_id: UUID | None = None
    detail: str | None = None


def _parse_uuid(value) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


async def _resolve(db: AsyncSession, obj: dict) -> EscrowTransaction | None:
    metadata = obj.get("metadata") or {}
    tx_id = _parse_uuid(metadata.get("transaction_id"))
    if tx_id is not None:
        tx = await escrow.find_by_id(db, tx_id)
        if tx is not None:
            return tx

    for ref in (obj.get("id"), obj.get("payment_intent")):
        if ref:
            tx = await escrow.find_by_reference(db, str(ref))
            if tx is not None:
                return tx
    return None


def _failure_reason(event_type: str, obj: dict) -> str:
    err = obj.get("last_payment_error") or {}
    return err.get("message") or err.get("code") or event_type


async def handle_payment_event(
    db: AsyncSession,
    event: dict,
    *,
    gateway: PaymentGateway,
    notifier: NotificationDispatcher,
) -> EventOutcome:
    """
    Route a verified processor event into the escrow state machine.
    Safe to call repeatedly with the same event.
    """
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}

    known = AUTHORIZED_EVENTS | AUTHORIZATION_FAILED_EVENTS | CAPTURED_EVENTS | CANCELED_EVENTS
    if event_type not in known:
        return EventOutcome(handled=False, detail="ignored")

    tx = await _resolve(db, obj)
    if tx is None:
        logger.warning("PAYMENT_EVENT_UNMATCHED: type=%s object=%s", event_type, obj.get("id"))
        return EventOutcome(handled=False, detail="unknown transaction")

    logger.info("PAYMENT_EVENT: type=%s tx=%s status=%s", event_type, tx.id, tx.payment_status.value)

    if event_type in AUTHORIZED_EVENTS:
        # the payment intent id replaces the checkout session id as reference
        result = await escrow.on_authorization_result(
            db,
            transaction_id=tx.id,
            succeeded=True,
            reference=obj.get("id"),
            gateway=gateway,
            notifier=notifier,
        )
    elif event_type in AUTHORIZATION_FAILED_EVENTS:
        result = await escrow.on_authorization_result(
            db,
            transaction_id=tx.id,
            succeeded=False,
            reason=_failure_reason(event_type, obj),
            notifier=notifier,
        )
    elif event_type in CAPTURED_EVENTS:
        result = await escrow.on_settlement_result(
            db,
            transaction_id=tx.id,
            action=SettlementAction.CAPTURE,
            succeeded=True,
            notifier=notifier,
        )
    elif tx.payment_status is PaymentStatus.PENDING:
        # intent cancelled before it was ever authorized
        result = await escrow.on_authorization_result(
            db,
            transaction_id=tx.id,
            succeeded=False,
            reason=obj.get("cancellation_reason") or event_type,
            notifier=notifier,
        )
    else:
        result = await escrow.on_settlement_result(
            db,
            transaction_id=tx.id,
            action=SettlementAction.REFUND,
            succeeded=True,
            notifier=notifier,
        )

    return EventOutcome(
        handled=True,
        transaction_id=tx.id,
        detail="duplicate" if result.already_finalized else result.transaction.payment_status.value,
    )
