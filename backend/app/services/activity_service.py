# app/services/activity_service.py
#
# Audit trail for the SchoolPay flows. One activity_logs row per
# sync run, reconciliation, manual rematch and settings change, so a
# bursar can see who (or which webhook) moved money and when.

from datetime import datetime, timezone
from typing import Any, Optional
import logging

from pydantic_core import to_jsonable_python
from supabase import Client

logger = logging.getLogger(__name__)

ACTIVITY_TABLE = "activity_logs"

SYNCED = "schoolpay.synced"
RECONCILED = "schoolpay.reconciled"
REMATCHED = "schoolpay.rematched"
SETTINGS_UPDATED = "schoolpay.settings_updated"


async def log_activity(
    client: Client,
    action: str,
    tenant_id: Optional[str] = None,
    user_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    metadata: Optional[dict] = None,
) -> None:
    """
    Never raises: a failed audit write must not undo a payment that
    has already been applied. user_id is None for webhook-driven rows.
    """
    row = {
        "tenant_id":   str(tenant_id) if tenant_id else None,
        "user_id":     str(user_id) if user_id else None,
        "action":      action,
        "entity_type": entity_type,
        "entity_id":   str(entity_id) if entity_id else None,
        # Decimal amounts, dates and UUIDs in metadata must survive JSON encoding
        "metadata":    to_jsonable_python(metadata or {}, fallback=str),
        "created_at":  datetime.now(timezone.utc).isoformat(),
    }
    try:
        client.table(ACTIVITY_TABLE).insert(row).execute()
    except Exception as e:
        logger.error(f"Failed to write activity log [{action}] for tenant {tenant_id}: {e}")
