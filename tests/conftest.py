"""
Shared fixtures for the escrow test suite.

Every test gets its own SQLite database file, a recording fake of the
payment processor and a notifier that records instead of writing rows.
"""

import os

# settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401
from app.core.db import Base, utcnow
from app.integrations.stripe_client import Authorization
from app.models.coupon import Coupon
from app.models.user import User
from app.services import escrow
from app.services.notifications import NotificationDispatcher


# -------------------------
# Fakes
# -------------------------

class FakeGateway:
    """Records every processor call; failures and hooks are set per action."""

    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []
        self.fail: dict[str, Exception] = {}
        self.hooks: dict[str, Callable[[], Awaitable[Any]]] = {}
        self._seq = 0

    async def _run(self, action: str) -> None:
        hook = self.hooks.pop(action, None)
        if hook is not None:
            await hook()
        exc = self.fail.get(action)
        if exc is not None:
            raise exc

    async def authorize(self, *, amount, metadata, idempotency_key) -> Authorization:
        self.calls.append(("authorize", metadata["transaction_id"], idempotency_key))
        await self._run("authorize")
        self._seq += 1
        return Authorization(
            reference=f"cs_test_{self._seq}",
            redirect_url=f"https://checkout.stripe.test/pay/cs_test_{self._seq}",
        )

    async def capture(self, reference, *, idempotency_key) -> None:
        self.calls.append(("capture", reference, idempotency_key))
        await self._run("capture")

    async def refund(self, reference, *, idempotency_key) -> None:
        self.calls.append(("refund", reference, idempotency_key))
        await self._run("refund")

    def count(self, action: str) -> int:
        return sum(1 for c in self.calls if c[0] == action)


@dataclass
class SentNotification:
    user_id: int
    type: str
    title: str
    message: str
    payload: dict = field(default_factory=dict)
    transaction_id: Optional[Any] = None


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        super().__init__()
        self.sent: list[SentNotification] = []

    def dispatch(self, user_id, type_, title, message, *, payload=None, transaction_id=None) -> None:
        self.sent.append(
            SentNotification(user_id, type_, title, message, payload or {}, transaction_id)
        )

    def types_for(self, user_id: int) -> list[str]:
        return [n.type for n in self.sent if n.user_id == user_id]


# -------------------------
# Database
# -------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


# -------------------------
# Factories
# -------------------------

@pytest.fixture
def make_user(db):
    async def _make(username: str, role: str = "user") -> User:
        u = User(username=username, role=role, is_active=True, email=f"{username}@example.com")
        db.add(u)
        await db.commit()
        return u

    return _make


@pytest.fixture
def make_coupon(db):
    async def _make(
        seller: User,
        *,
        price: str = "100.00",
        status: str = "approved",
        code: str = "SAVE20",
        expires_in: timedelta = timedelta(days=30),
        is_sold: bool = False,
    ) -> Coupon:
        c = Coupon(
            seller_id=seller.id,
            title="20% off everything",
            store_name="Myntra",
            code=code,
            price=Decimal(price),
            expiry_date=utcnow() + expires_in,
            status=status,
            is_sold=is_sold,
        )
        db.add(c)
        await db.commit()
        return c

    return _make


@pytest_asyncio.fixture
async def seller(make_user):
    return await make_user("seller")


@pytest_asyncio.fixture
async def buyer(make_user):
    return await make_user("buyer")


@pytest_asyncio.fixture
async def admin(make_user):
    return await make_user("admin", role="admin")


@pytest_asyncio.fixture
async def coupon(make_coupon, seller):
    return await make_coupon(seller)


@pytest.fixture
def open_escrow(db, gateway, notifier):
    """initiate + successful authorization callback -> a holding transaction."""

    async def _open(coupon: Coupon, buyer: User, *, reference: str = "pi_test_1"):
        tx = await escrow.initiate(
            db, coupon_id=coupon.id, buyer=buyer, gateway=gateway, notifier=notifier
        )
        result = await escrow.on_authorization_result(
            db,
            transaction_id=tx.id,
            succeeded=True,
            reference=reference,
            gateway=gateway,
            notifier=notifier,
        )
        return result.transaction

    return _open
