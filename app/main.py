from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import app.models  # noqa: F401

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.deps import get_payment_gateway
from app.core.logging import configure_logging
from app.services.expiry import ExpirySweeper
from app.services.notifications import notification_dispatcher

# Routers
from app.routers.transactions import router as transactions_router
from app.routers.payments import router as payments_router
from app.routers.admin_trust import router as admin_trust_router
from app.routers.users import router as users_router
from app.routers.me import router as me_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)

    sweeper = None
    if settings.SWEEPER_ENABLED:
        # deadlines live in the database, so a restart simply resumes sweeping
        sweeper = ExpirySweeper(
            SessionLocal,
            gateway_factory=get_payment_gateway,
            notifier=notification_dispatcher,
        )
        sweeper.start()

    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.shutdown()
        await notification_dispatcher.drain()


app = FastAPI(title="Coupon Escrow", lifespan=lifespan)

# ✅ CORS for the Vite dev server (frontend)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Escrow
app.include_router(transactions_router)
app.include_router(payments_router)

# Trust & moderation
app.include_router(admin_trust_router)
app.include_router(users_router)

app.include_router(me_router)
