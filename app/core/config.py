from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # project root

# ✅ Force load .env into environment variables first
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",   # ✅ ignore unknown keys in .env
    )

    DATABASE_URL: str

    JWT_SECRET: str
    JWT_ACCESS_MINUTES: int = 30
    JWT_ALG: str = "HS256"

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    # Escrow windows
    HOLD_MINUTES: int = 15
    PENDING_TIMEOUT_MINUTES: int = 30
    TIMER_WARNING_MINUTES: int = 5

    # Expiry sweeper
    SWEEPER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 5
    SWEEP_BATCH_SIZE: int = 100
    SETTLEMENT_STALE_SECONDS: int = 120
    RETRY_BASE_SECONDS: int = 10
    RETRY_MAX_SECONDS: int = 600
    SETTLEMENT_MAX_ATTEMPTS: int = 10

    # Payment processor (Stripe)
    STRIPE_API_BASE: str = "https://api.stripe.com"
    STRIPE_SECRET_KEY: str = "sk_test_change-me"
    STRIPE_WEBHOOK_SECRET: str = "whsec_change-me"
    PAYMENT_TIMEOUT_SECONDS: float = 15
    CURRENCY: str = "inr"
    MIN_AMOUNT: int = 1
    FRONTEND_URL: str = "http://localhost:5173"

    # Trust ledger policy
    TRUST_DISPUTE_PENALTY: int = 50
    TRUST_SALE_BONUS: int = 5
    TRUST_WARNING_THRESHOLD: int = 2
    TRUST_AUTO_BAN_WARNINGS: int | None = None


settings = Settings()
