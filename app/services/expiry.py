from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import utcnow
from app.integrations.stripe_client import PaymentGateway
from app.models.transaction import EscrowTransaction, PaymentStatus
from app.services import escrow
from app.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]

SWEEP_JOB_ID = "escrow_expiry_sweep"


@dataclass
class SweepReport:
    auto_confirmed: int = 0
    already_finalized: int = 0
    retry_scheduled: int = 0
    stuck: int = 0
    redriven: int = 0
    pending_expired: int = 0
    warnings_sent: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return (
            self.auto_confirmed
            + self.redriven
            + self.pending_expired
            + self.warnings_sent
        )


async def _ids(session_factory: SessionFactory, stmt) -> list[UUID]:
    async with session_factory() as db:
        res = await db.execute(stmt.limit(settings.SWEEP_BATCH_SIZE))
        return list(res.scalars().all())


async def _auto_confirm_due(session_factory, report: SweepReport, *, gateway, notifier, now: datetime) -> None:
    ids = await _ids(
        session_factory,
        select(EscrowTransaction.id)
        .where(
            EscrowTransaction.payment_status == PaymentStatus.HOLDING,
            EscrowTransaction.expires_at <= now,
            or_(EscrowTransaction.next_attempt_at.is_(None), EscrowTransaction.next_attempt_at <= now),
            EscrowTransaction.settlement_attempts < settings.SETTLEMENT_MAX_ATTEMPTS,
        )
        .order_by(EscrowTransaction.expires_at.asc()),
    )

    for tx_id in ids:
        try:
            async with session_factory() as db:
                result = await escrow.auto_confirm(
                    db, transaction_id=tx_id, gateway=gateway, notifier=notifier, now=now
                )
        except escrow.SettlementStuck:
            report.stuck += 1
            continue
        except escrow.PaymentProviderError:
            # claim released and next_attempt_at pushed out; logged by the engine
            report.retry_scheduled += 1
            continue
        except escrow.InvalidState:
            report.already_finalized += 1
            continue
        except Exception:
            report.errors += 1
            logger.exception("AUTO_CONFIRM_ERROR: tx=%s", tx_id)
            continue

        if result.already_finalized:
            report.already_finalized += 1
        else:
            report.auto_confirmed += 1


async def _redrive_stale(session_factory, report: SweepReport, *, gateway, notifier, now: datetime) -> None:
    cutoff = now - timedelta(seconds=settings.SETTLEMENT_STALE_SECONDS)
    ids = await _ids(
        session_factory,
        select(EscrowTransaction.id)
        .where(
            EscrowTransaction.payment_status == PaymentStatus.PROCESSING,
            EscrowTransaction.settlement_attempts < settings.SETTLEMENT_MAX_ATTEMPTS,
            or_(
                EscrowTransaction.settlement_started_at.is_(None),
                EscrowTransaction.settlement_started_at <= cutoff,
            ),
        )
        .order_by(EscrowTransaction.settlement_started_at.asc()),
    )

    for tx_id in ids:
        try:
            async with session_factory() as db:
                result = await escrow.redrive_stale_settlement(
                    db, transaction_id=tx_id, gateway=gateway, notifier=notifier, now=now
                )
        except escrow.SettlementStuck:
            report.stuck += 1
            continue
        except escrow.PaymentProviderError:
            report.retry_scheduled += 1
            continue
        except Exception:
            report.errors += 1
            logger.exception("SETTLEMENT_REDRIVE_ERROR: tx=%s", tx_id)
            continue

        if not result.already_finalized:
            report.redriven += 1


async def _expire_pending(session_factory, report: SweepReport, *, notifier, now: datetime) -> None:
    cutoff = now - timedelta(minutes=settings.PENDING_TIMEOUT_MINUTES)
    ids = await _ids(
        session_factory,
        select(EscrowTransaction.id)
        .where(
            EscrowTransaction.payment_status == PaymentStatus.PENDING,
            EscrowTransaction.created_at <= cutoff,
        )
        .order_by(EscrowTransaction.created_at.asc()),
    )

    for tx_id in ids:
        try:
            async with session_factory() as db:
                if await escrow.expire_pending(db, transaction_id=tx_id, notifier=notifier, now=now):
                    report.pending_expired += 1
        except Exception:
            report.errors += 1
            logger.exception("PENDING_EXPIRY_ERROR: tx=%s", tx_id)


async def _send_timer_warnings(session_factory, report: SweepReport, *, notifier, now: datetime) -> None:
    horizon = now + timedelta(minutes=settings.TIMER_WARNING_MINUTES)
    ids = await _ids(
        session_factory,
        select(EscrowTransaction.id)
        .where(
            EscrowTransaction.payment_status == PaymentStatus.HOLDING,
            EscrowTransaction.warning_sent_at.is_(None),
            EscrowTransaction.expires_at > now,
            EscrowTransaction.expires_at <= horizon,
        )
        .order_by(EscrowTransaction.expires_at.asc()),
    )

    for tx_id in ids:
        try:
            async with session_factory() as db:
                if await escrow.mark_timer_warning(db, transaction_id=tx_id, notifier=notifier, now=now):
                    report.warnings_sent += 1
        except Exception:
            report.errors += 1
            logger.exception("TIMER_WARNING_ERROR: tx=%s", tx_id)


async def sweep_once(
    session_factory: SessionFactory,
    *,
    gateway: PaymentGateway,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> SweepReport:
    """
    One pass over every deadline stored in the database. Each transaction is
    handled in its own session, so one failure never aborts the pass.
    """
    now = now or utcnow()
    report = SweepReport()

    await _auto_confirm_due(session_factory, report, gateway=gateway, notifier=notifier, now=now)
    await _redrive_stale(session_factory, report, gateway=gateway, notifier=notifier, now=now)
    await _expire_pending(session_factory, report, notifier=notifier, now=now)
    await _send_timer_warnings(session_factory, report, notifier=notifier, now=now)

    if report.total or report.errors or report.retry_scheduled or report.stuck:
        logger.info(
            "SWEEP_DONE: auto_confirmed=%s redriven=%s pending_expired=%s warnings=%s retries=%s stuck=%s errors=%s",
            report.auto_confirmed,
            report.redriven,
            report.pending_expired,
            report.warnings_sent,
            report.retry_scheduled,
            report.stuck,
            report.errors,
        )
    return report


class ExpirySweeper:
    """Runs sweep_once on a fixed interval inside the API process."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        gateway_factory: Callable[[], PaymentGateway],
        notifier: NotificationDispatcher,
        interval_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.notifier = notifier
        self.interval_seconds = interval_seconds or settings.SWEEP_INTERVAL_SECONDS

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 30,
            },
            timezone="UTC",
        )

    async def run(self) -> SweepReport | None:
        try:
            return await sweep_once(
                self.session_factory,
                gateway=self.gateway_factory(),
                notifier=self.notifier,
            )
        except Exception:
            # the job must keep firing; the next tick re-reads everything
            logger.exception("SWEEP_FAILED")
            return None

    def start(self) -> None:
        self.scheduler.add_job(
            self.run,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=SWEEP_JOB_ID,
            name="Escrow Expiry Sweep",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("SWEEPER_STARTED: interval=%ss", self.interval_seconds)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("SWEEPER_STOPPED")
