from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.db import utcnow
from app.integrations.stripe_client import GatewayDeclined, GatewayUnavailable
from app.models.coupon_event import CouponEvent
from app.models.transaction import EscrowTransaction, PaymentStatus, SettlementAction
from app.services import coupons, escrow, trust


async def _count_tx(db, coupon_id) -> int:
    res = await db.execute(
        select(func.count()).select_from(EscrowTransaction).where(EscrowTransaction.coupon_id == coupon_id)
    )
    return int(res.scalar_one())


class TestInitiate:
    async def test_creates_pending_transaction_and_reserves_coupon(self, db, gateway, notifier, coupon, buyer):
        tx = await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

        assert tx.payment_status is PaymentStatus.PENDING
        assert tx.amount == Decimal("100.00")
        assert tx.seller_id == coupon.seller_id
        assert tx.payment_reference == "cs_test_1"
        assert tx.redirect_url.endswith("cs_test_1")

        c = await coupons.get_coupon(db, coupon.id)
        assert c.reserved_transaction_id == tx.id
        assert c.is_sold is False

        assert gateway.calls == [("authorize", str(tx.id), f"{tx.id}:authorize")]

    async def test_unknown_coupon(self, db, gateway, notifier, buyer):
        with pytest.raises(escrow.CouponNotFound):
            await escrow.initiate(db, coupon_id=999, buyer=buyer, gateway=gateway, notifier=notifier)

    async def test_sold_coupon_is_unavailable(self, db, gateway, notifier, make_coupon, seller, buyer):
        c = await make_coupon(seller, status="sold", is_sold=True)
        with pytest.raises(escrow.CouponUnavailable):
            await escrow.initiate(db, coupon_id=c.id, buyer=buyer, gateway=gateway, notifier=notifier)

    async def test_self_purchase(self, db, gateway, notifier, coupon, seller):
        with pytest.raises(escrow.SelfPurchase):
            await escrow.initiate(db, coupon_id=coupon.id, buyer=seller, gateway=gateway, notifier=notifier)

    async def test_expired_coupon(self, db, gateway, notifier, make_coupon, seller, buyer):
        c = await make_coupon(seller, expires_in=timedelta(days=-1))
        with pytest.raises(escrow.CouponExpired):
            await escrow.initiate(db, coupon_id=c.id, buyer=buyer, gateway=gateway, notifier=notifier)

    async def test_unapproved_coupon(self, db, gateway, notifier, make_coupon, seller, buyer):
        c = await make_coupon(seller, status="pending_verification")
        with pytest.raises(escrow.CouponNotApproved):
            await escrow.initiate(db, coupon_id=c.id, buyer=buyer, gateway=gateway, notifier=notifier)

    async def test_amount_below_minimum(self, db, gateway, notifier, make_coupon, seller, buyer):
        c = await make_coupon(seller, price="0.50")
        with pytest.raises(escrow.AmountTooSmall):
            await escrow.initiate(db, coupon_id=c.id, buyer=buyer, gateway=gateway, notifier=notifier)

    async def test_banned_buyer(self, db, gateway, notifier, coupon, buyer, admin):
        await trust.ban(db, user_id=buyer.id, reason="fraud", actor=admin)
        with pytest.raises(escrow.BuyerBanned):
            await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

    async def test_banned_seller_listing_is_unavailable(self, db, gateway, notifier, coupon, seller, buyer, admin):
        await trust.ban(db, user_id=seller.id, reason="fraud", actor=admin)
        with pytest.raises(escrow.CouponUnavailable):
            await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

    async def test_second_buyer_cannot_reserve_active_coupon(self, db, gateway, notifier, coupon, buyer, make_user):
        other = await make_user("other-buyer")
        await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

        with pytest.raises(escrow.CouponUnavailable):
            await escrow.initiate(db, coupon_id=coupon.id, buyer=other, gateway=gateway, notifier=notifier)

        assert await _count_tx(db, coupon.id) == 1

    async def test_partial_unique_index_rejects_second_active_transaction(self, db, gateway, notifier, coupon, buyer):
        await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

        db.add(
            EscrowTransaction(
                coupon_id=coupon.id,
                buyer_id=buyer.id,
                seller_id=coupon.seller_id,
                amount=Decimal("100.00"),
                payment_status=PaymentStatus.PENDING,
            )
        )
        with pytest.raises(IntegrityError):
            await db.commit()
        await db.rollback()

    async def test_declined_authorization_fails_and_releases(self, db, gateway, notifier, coupon, buyer):
        gateway.fail["authorize"] = GatewayDeclined("Your card was declined.")

        with pytest.raises(escrow.PaymentDeclined):
            await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

        tx = (await db.execute(select(EscrowTransaction))).scalar_one()
        await db.refresh(tx)
        assert tx.payment_status is PaymentStatus.FAILED

        c = await coupons.get_coupon(db, coupon.id)
        assert c.reserved_transaction_id is None
        assert notifier.types_for(buyer.id) == ["failed"]

    async def test_provider_outage_surfaces_immediately(self, db, gateway, notifier, coupon, buyer):
        gateway.fail["authorize"] = GatewayUnavailable("503")

        with pytest.raises(escrow.PaymentProviderError):
            await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

        assert gateway.count("authorize") == 1

    async def test_coupon_can_be_bought_again_after_failure(self, db, gateway, notifier, coupon, buyer):
        gateway.fail["authorize"] = GatewayDeclined("declined")
        with pytest.raises(escrow.PaymentDeclined):
            await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

        gateway.fail.clear()
        tx = await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)
        assert tx.payment_status is PaymentStatus.PENDING
        assert await _count_tx(db, coupon.id) == 2


class TestAuthorizationCallback:
    async def test_success_moves_to_holding(self, db, notifier, coupon, buyer, seller, open_escrow):
        before = utcnow()
        tx = await open_escrow(coupon, buyer)

        assert tx.payment_status is PaymentStatus.HOLDING
        assert tx.payment_reference == "pi_test_1"
        assert tx.holding_started_at >= before
        assert tx.expires_at - tx.holding_started_at == timedelta(minutes=settings.HOLD_MINUTES)

        assert notifier.types_for(buyer.id) == ["purchase"]
        assert notifier.types_for(seller.id) == ["sale"]

    async def test_repeated_success_is_a_no_op(self, db, gateway, notifier, coupon, buyer, open_escrow):
        tx = await open_escrow(coupon, buyer)
        expires_at = tx.expires_at
        sent = len(notifier.sent)

        again = await escrow.on_authorization_result(
            db, transaction_id=tx.id, succeeded=True, reference="pi_test_1", gateway=gateway, notifier=notifier
        )

        assert again.already_finalized is True
        assert again.transaction.expires_at == expires_at
        assert len(notifier.sent) == sent

    async def test_failure_after_holding_is_ignored(self, db, notifier, coupon, buyer, open_escrow):
        tx = await open_escrow(coupon, buyer)

        res = await escrow.on_authorization_result(
            db, transaction_id=tx.id, succeeded=False, reason="card_declined", notifier=notifier
        )

        assert res.already_finalized is True
        assert res.transaction.payment_status is PaymentStatus.HOLDING

    async def test_failure_releases_coupon(self, db, gateway, notifier, coupon, buyer):
        tx = await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

        res = await escrow.on_authorization_result(
            db, transaction_id=tx.id, succeeded=False, reason="card_declined", notifier=notifier
        )

        assert res.transaction.payment_status is PaymentStatus.FAILED
        c = await coupons.get_coupon(db, coupon.id)
        assert c.reserved_transaction_id is None
        assert c.status == "approved"

    async def test_late_success_on_failed_transaction_voids_authorization(self, db, gateway, notifier, coupon, buyer):
        tx = await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)
        await escrow.on_authorization_result(db, transaction_id=tx.id, succeeded=False, notifier=notifier)

        res = await escrow.on_authorization_result(
            db, transaction_id=tx.id, succeeded=True, reference="pi_late", gateway=gateway, notifier=notifier
        )

        assert res.already_finalized is True
        assert res.transaction.payment_status is PaymentStatus.FAILED
        assert ("refund", "pi_late", f"{tx.id}:void") in gateway.calls


class TestConfirm:
    async def test_confirm_completes_and_marks_sold(self, db, gateway, notifier, coupon, buyer, seller, open_escrow):
        tx = await open_escrow(coupon, buyer)

        res = await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)

        assert res.already_finalized is False
        assert res.transaction.payment_status is PaymentStatus.COMPLETED
        assert res.transaction.completed_at is not None
        assert res.coupon_code == "SAVE20"
        assert ("capture", "pi_test_1", f"{tx.id}:capture") in gateway.calls

        c = await coupons.get_coupon(db, coupon.id)
        assert c.is_sold is True
        assert c.status == "sold"
        assert c.buyer_id == buyer.id

        seller_profile = await trust.get_profile(db, seller.id)
        buyer_profile = await trust.get_profile(db, buyer.id)
        assert seller_profile.total_sold == 1
        assert buyer_profile.total_bought == 1

        assert "completed" in notifier.types_for(buyer.id)
        assert notifier.types_for(seller.id)[-1] == "sale"

    async def test_only_buyer_can_confirm(self, db, gateway, notifier, coupon, buyer, seller, open_escrow):
        tx = await open_escrow(coupon, buyer)

        with pytest.raises(escrow.NotBuyer):
            await escrow.confirm(db, transaction_id=tx.id, actor=seller, gateway=gateway, notifier=notifier)

    async def test_confirm_pending_is_invalid_state(self, db, gateway, notifier, coupon, buyer):
        tx = await escrow.initiate(db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier)

        with pytest.raises(escrow.InvalidState):
            await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)

    async def test_capture_failure_releases_claim_for_retry(self, db, gateway, notifier, coupon, buyer, open_escrow):
        tx = await open_escrow(coupon, buyer)
        gateway.fail["capture"] = GatewayUnavailable("502 from processor")

        with pytest.raises(escrow.PaymentProviderError):
            await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)

        reloaded = await escrow.find_by_id(db, tx.id)
        assert reloaded.payment_status is PaymentStatus.HOLDING
        assert reloaded.settlement_action is None
        assert reloaded.next_attempt_at is None
        assert "502" in reloaded.last_error

        gateway.fail.clear()
        res = await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)
        assert res.transaction.payment_status is PaymentStatus.COMPLETED
        assert gateway.count("capture") == 2

    async def test_confirm_twice_reports_already_finalized(self, db, gateway, notifier, coupon, buyer, open_escrow):
        tx = await open_escrow(coupon, buyer)
        await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)

        again = await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)

        assert again.already_finalized is True
        assert again.transaction.payment_status is PaymentStatus.COMPLETED
        assert gateway.count("capture") == 1


class TestDispute:
    async def test_dispute_refunds_and_penalizes_seller(self, db, gateway, notifier, coupon, buyer, seller, open_escrow):
        tx = await open_escrow(coupon, buyer)

        res = await escrow.dispute(
            db, transaction_id=tx.id, actor=buyer, reason="  code invalid ", gateway=gateway, notifier=notifier
        )

        assert res.transaction.payment_status is PaymentStatus.REFUNDED
        assert res.transaction.dispute_reason == "code invalid"
        assert res.coupon_code is None
        assert ("refund", "pi_test_1", f"{tx.id}:refund") in gateway.calls

        c = await coupons.get_coupon(db, coupon.id)
        assert c.is_sold is False
        assert c.reserved_transaction_id is None
        assert c.status == "approved"

        profile = await trust.get_profile(db, seller.id)
        assert profile.warnings_count == 1
        assert profile.trust_score == 100 - settings.TRUST_DISPUTE_PENALTY

        assert "refunded" in notifier.types_for(buyer.id)
        assert "warning" in notifier.types_for(seller.id)

    @pytest.mark.parametrize("reason", ["", "   ", None])
    async def test_dispute_requires_reason(self, db, gateway, notifier, coupon, buyer, open_escrow, reason):
        tx = await open_escrow(coupon, buyer)

        with pytest.raises(escrow.MissingReason):
            await escrow.dispute(db, transaction_id=tx.id, actor=buyer, reason=reason, gateway=gateway, notifier=notifier)

        reloaded = await escrow.find_by_id(db, tx.id)
        assert reloaded.payment_status is PaymentStatus.HOLDING
        assert gateway.count("refund") == 0

    async def test_dispute_after_window_closes_is_rejected(
        self, db, gateway, notifier, coupon, buyer, seller, open_escrow
    ):
        tx = await open_escrow(coupon, buyer)
        # window elapsed, sweep has not run yet
        await db.execute(
            update(EscrowTransaction)
            .where(EscrowTransaction.id == tx.id)
            .values(expires_at=utcnow() - timedelta(minutes=10))
        )
        await db.commit()

        with pytest.raises(escrow.TransactionExpired):
            await escrow.dispute(db, transaction_id=tx.id, actor=buyer, reason="late", gateway=gateway, notifier=notifier)

        reloaded = await escrow.find_by_id(db, tx.id)
        assert reloaded.payment_status is PaymentStatus.HOLDING
        assert reloaded.dispute_reason is None
        assert gateway.count("refund") == 0

        profile = await trust.get_profile(db, seller.id)
        assert profile.trust_score == 100
        assert profile.warnings_count == 0

        res = await escrow.auto_confirm(db, transaction_id=tx.id, gateway=gateway, notifier=notifier)
        assert res.transaction.payment_status is PaymentStatus.COMPLETED

    async def test_confirm_after_dispute_never_reverts(self, db, gateway, notifier, coupon, buyer, open_escrow):
        tx = await open_escrow(coupon, buyer)
        await escrow.dispute(db, transaction_id=tx.id, actor=buyer, reason="expired", gateway=gateway, notifier=notifier)

        res = await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)

        assert res.already_finalized is True
        assert res.transaction.payment_status is PaymentStatus.REFUNDED
        assert gateway.count("capture") == 0

    async def test_disputed_coupon_can_be_resold(self, db, gateway, notifier, coupon, buyer, make_user, open_escrow):
        tx = await open_escrow(coupon, buyer)
        await escrow.dispute(db, transaction_id=tx.id, actor=buyer, reason="used", gateway=gateway, notifier=notifier)

        other = await make_user("second-buyer")
        again = await escrow.initiate(db, coupon_id=coupon.id, buyer=other, gateway=gateway, notifier=notifier)
        assert again.payment_status is PaymentStatus.PENDING

        events = (
            await db.execute(select(CouponEvent.event_type).where(CouponEvent.coupon_id == coupon.id).order_by(CouponEvent.id))
        ).scalars().all()
        assert events == ["reserved", "released", "reserved"]


class TestAutoConfirm:
    async def test_not_before_expiry(self, db, gateway, notifier, coupon, buyer, open_escrow):
        tx = await open_escrow(coupon, buyer)

        with pytest.raises(escrow.InvalidState):
            await escrow.auto_confirm(db, transaction_id=tx.id, gateway=gateway, notifier=notifier)

    async def test_completes_after_expiry(self, db, gateway, notifier, coupon, buyer, seller, open_escrow):
        tx = await open_escrow(coupon, buyer)

        res = await escrow.auto_confirm(
            db, transaction_id=tx.id, gateway=gateway, notifier=notifier, now=tx.expires_at + timedelta(seconds=1)
        )

        assert res.transaction.payment_status is PaymentStatus.COMPLETED
        assert res.transaction.auto_confirmed is True
        completed = [n for n in notifier.sent if n.type == "completed"]
        assert completed[0].title == "Transaction Auto-Confirmed"

    async def test_buyer_confirm_after_auto_confirm_is_already_finalized(
        self, db, gateway, notifier, coupon, buyer, open_escrow
    ):
        tx = await open_escrow(coupon, buyer)
        await escrow.auto_confirm(
            db, transaction_id=tx.id, gateway=gateway, notifier=notifier, now=tx.expires_at
        )

        res = await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)

        assert res.already_finalized is True
        assert res.transaction.payment_status is PaymentStatus.COMPLETED
        assert res.coupon_code == "SAVE20"
        assert gateway.count("capture") == 1

    async def test_buyer_action_during_in_flight_capture_is_already_finalized(
        self, db, session_factory, gateway, notifier, coupon, buyer, open_escrow
    ):
        tx = await open_escrow(coupon, buyer)
        seen = {}

        async def buyer_disputes_meanwhile():
            async with session_factory() as other:
                seen["result"] = await escrow.dispute(
                    other, transaction_id=tx.id, actor=buyer, reason="does not work", gateway=gateway, notifier=notifier
                )

        gateway.hooks["capture"] = buyer_disputes_meanwhile

        res = await escrow.auto_confirm(
            db, transaction_id=tx.id, gateway=gateway, notifier=notifier, now=tx.expires_at
        )

        assert res.transaction.payment_status is PaymentStatus.COMPLETED
        assert seen["result"].already_finalized is True
        assert gateway.count("refund") == 0
        assert gateway.count("capture") == 1


class TestSettlementReconciliation:
    async def _claim(self, db, tx, action: SettlementAction, started_at):
        await db.execute(
            update(EscrowTransaction)
            .where(EscrowTransaction.id == tx.id)
            .values(
                payment_status=PaymentStatus.PROCESSING,
                settlement_action=action.value,
                settlement_started_at=started_at,
            )
        )
        await db.commit()

    async def test_capture_webhook_finalizes_processing_transaction(self, db, notifier, coupon, buyer, open_escrow):
        tx = await open_escrow(coupon, buyer)
        await self._claim(db, tx, SettlementAction.CAPTURE, utcnow())

        res = await escrow.on_settlement_result(
            db, transaction_id=tx.id, action=SettlementAction.CAPTURE, succeeded=True, notifier=notifier
        )
        assert res.transaction.payment_status is PaymentStatus.COMPLETED
        c = await coupons.get_coupon(db, coupon.id)
        assert c.is_sold is True

        again = await escrow.on_settlement_result(
            db, transaction_id=tx.id, action=SettlementAction.CAPTURE, succeeded=True, notifier=notifier
        )
        assert again.already_finalized is True

    async def test_failed_settlement_returns_to_holding(self, db, notifier, coupon, buyer, open_escrow):
        tx = await open_escrow(coupon, buyer)
        await self._claim(db, tx, SettlementAction.REFUND, utcnow())

        res = await escrow.on_settlement_result(
            db, transaction_id=tx.id, action=SettlementAction.REFUND, succeeded=False,
            reason="charge_already_captured", notifier=notifier,
        )

        assert res.transaction.payment_status is PaymentStatus.HOLDING
        assert res.transaction.last_error == "charge_already_captured"


class TestQueries:
    async def test_code_is_revealed_to_buyer_only(self, db, gateway, notifier, coupon, buyer, seller, make_user, open_escrow):
        tx = await open_escrow(coupon, buyer)
        await escrow.confirm(db, transaction_id=tx.id, actor=buyer, gateway=gateway, notifier=notifier)

        as_buyer = await escrow.get_transaction(db, tx.id, viewer=buyer)
        as_seller = await escrow.get_transaction(db, tx.id, viewer=seller)
        assert as_buyer.coupon_code == "SAVE20"
        assert as_seller.coupon_code is None

        stranger = await make_user("stranger")
        with pytest.raises(escrow.NotParticipant):
            await escrow.get_transaction(db, tx.id, viewer=stranger)

    async def test_list_for_user_by_role(self, db, gateway, notifier, coupon, buyer, seller, open_escrow):
        await open_escrow(coupon, buyer)

        bought, total_bought = await escrow.list_for_user(db, user_id=buyer.id, role="buyer")
        sold, total_sold = await escrow.list_for_user(db, user_id=buyer.id, role="seller")
        assert total_bought == 1 and len(bought) == 1
        assert total_sold == 0 and sold == []


def test_retry_delay_backs_off_and_caps():
    assert escrow.retry_delay(1) == timedelta(seconds=settings.RETRY_BASE_SECONDS)
    assert escrow.retry_delay(2) == timedelta(seconds=settings.RETRY_BASE_SECONDS * 2)
    assert escrow.retry_delay(50) == timedelta(seconds=settings.RETRY_MAX_SECONDS)
