# ============================================================
# app/core/config.py
#
# All configuration comes from environment variables (or .env
# locally). Per-school SchoolPay credentials are NOT here: they
# live in the schoolpay_settings table and are loaded fresh on
# every webhook / sync invocation.
#
# Usage anywhere in the app:
#   from app.core.config import settings
#   print(settings.SCHOOLPAY_BASE_URL)
# ============================================================

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from pathlib import Path

class Settings(BaseSettings):
    """
    All settings come from environment variables.
    Pydantic automatically reads .env file when running locally.
    In Docker / VPS, set these as real environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",          # Ignore extra vars in .env
    )

    # ── App Identity ─────────────────────────────────────────
    APP_NAME: str = "SchoolPay Reconciliation"
    APP_VERSION: str = "1.0.0"

    ENVIRONMENT: str = "development"        # development | production
    DEBUG: bool = False
    # Keep production logs at INFO and suppress verbose HTTP wire logs by default.
    HTTP_CLIENT_DEBUG_LOGS: bool = False

    # ── API Settings ─────────────────────────────────────────
    API_PREFIX: str = "/api/v1"
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    # Public base URL of this API, shown to schools as the webhook
    # address to paste into the SchoolPay portal.
    PUBLIC_API_URL: str = "http://localhost:8000"

    # ── Supabase ─────────────────────────────────────────────
    SUPABASE_URL: str                       # e.g. https://xyz.supabase.co
    SUPABASE_SERVICE_KEY: str               # Service key, NEVER expose to frontend

    # ── JWT Authentication ────────────────────────────────────
    JWT_SECRET_KEY: str                     # Generate: openssl rand -hex 32
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 8

    # ── SchoolPay provider ───────────────────────────────────
    SCHOOLPAY_BASE_URL: str = "https://schoolpay.co.ug/paymentapi/AndroidRS"
    SCHOOLPAY_TIMEOUT_SECONDS: float = 30.0
    # Webhook signatures are checked but mismatches only log by default.
    # Flip this on once every school's api secret is known to be correct.
    SCHOOLPAY_ENFORCE_WEBHOOK_SIGNATURE: bool = False

    # ── Reconciliation ───────────────────────────────────────
    # Compare-and-swap attempts on student_fees.amount_paid before giving up.
    RECONCILE_MAX_ATTEMPTS: int = 3

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def schoolpay_webhook_url(self) -> str:
        return f"{self.PUBLIC_API_URL.rstrip('/')}{self.API_PREFIX}/schoolpay/webhook"


# Single instance, import this everywhere
settings = Settings()
