# ============================================================
# app/services/schoolpay_settings_service.py
#
# The per-tenant SchoolPay credential store. Both ingestion paths
# call load_settings() at the start of every invocation; nothing
# is cached between requests.
# ============================================================

from datetime import datetime, timezone
from typing import Optional
import logging

from supabase import Client

from app.core.config import settings as app_settings
from app.core.database import TenantDB
from app.core.exceptions import SchoolPayNotConfigured
from app.schemas.schoolpay import (
    SchoolPaySettingsResponse, SchoolPaySettingsUpdate, TenantPaymentSettings,
)

logger = logging.getLogger(__name__)

SETTINGS_TABLE = "schoolpay_settings"


def load_settings(client: Client, tenant_id: str) -> Optional[TenantPaymentSettings]:
    db = TenantDB(tenant_id, client)
    row = db.first(db.select(SETTINGS_TABLE))
    return TenantPaymentSettings.from_row(row) if row else None


def require_settings(client: Client, tenant_id: str) -> TenantPaymentSettings:
    config = load_settings(client, tenant_id)
    if config is None or not config.school_code or not config.api_secret:
        raise SchoolPayNotConfigured()
    return config


def touch_last_sync(client: Client, tenant_id: str) -> None:
    TenantDB(tenant_id, client).update_where(
        SETTINGS_TABLE,
        {"last_sync_at": datetime.now(timezone.utc).isoformat()},
    )


def save_settings(client: Client, tenant_id: str, data: SchoolPaySettingsUpdate) -> TenantPaymentSettings:
    """
    Create or update the tenant's settings row.
    A missing api_secret keeps the stored one; a brand new row needs one.
    """
    existing = load_settings(client, tenant_id)
    api_secret = data.api_secret or (existing.api_secret if existing else None)
    if not api_secret:
        raise SchoolPayNotConfigured()

    row = TenantDB(tenant_id, client).upsert(SETTINGS_TABLE, {
        "school_code":     data.school_code.strip(),
        "api_secret":      api_secret,
        "webhook_enabled": data.webhook_enabled,
        "auto_reconcile":  data.auto_reconcile,
        "updated_at":      datetime.now(timezone.utc).isoformat(),
    }, on_conflict="tenant_id")
    logger.info(f"SchoolPay settings saved for tenant {tenant_id} (school code {data.school_code})")
    return TenantPaymentSettings.from_row(row)


def to_response(config: TenantPaymentSettings) -> SchoolPaySettingsResponse:
    secret = config.api_secret or ""
    return SchoolPaySettingsResponse(
        school_code=config.school_code,
        api_secret_set=bool(secret),
        api_secret_hint=f"••••{secret[-4:]}" if len(secret) > 4 else None,
        webhook_enabled=config.webhook_enabled,
        auto_reconcile=config.auto_reconcile,
        last_sync_at=config.last_sync_at,
        webhook_url=app_settings.schoolpay_webhook_url,
    )
