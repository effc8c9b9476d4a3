# ============================================================
# app/api/v1/endpoints/schoolpay.py
#
# Client usage:
#
#   webhook      → no JWT. SchoolPay's servers call it directly;
#                  the tenant is discovered from the student record
#                  and the signature is checked against that
#                  tenant's api secret.
#   everything   → JWT. Tenant comes from the token, every query
#   else           goes through TenantDB.
#
#   SchoolPayClient → outbound, signed calls to SchoolPay (sync)
# ============================================================

from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from supabase import Client

from app.core.database import get_db_client
from app.core.security import (
    RECONCILE_ROLES, SETTINGS_ROLES, CurrentUser, get_current_user, require_roles,
)
from app.schemas.common import APIResponse, PaginatedResponse, PaginationParams
from app.schemas.schoolpay import (
    ReconcileOutcome, ReconciliationStatus, SchoolPaySettingsResponse,
    SchoolPaySettingsUpdate, SyncRequest, TransactionItem, TransactionStats,
)
from app.services import transaction_ledger as ledger
from app.services import activity_service as activity
from app.services.reconciliation_service import retry_reconciliation
from app.services.schoolpay_settings_service import load_settings, save_settings, to_response
from app.services.sync_service import run_sync
from app.services.webhook_service import process_webhook
from app.utils.schoolpay_client import SchoolPayClient, get_schoolpay_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/schoolpay", tags=["SchoolPay"])


# ═══════════════════════════════════════════════════════════
# PUSH: SchoolPay webhook
# ═══════════════════════════════════════════════════════════

@router.post("/webhook")
async def schoolpay_webhook(request: Request, client: Client = Depends(get_db_client)):
    """
    Always 200 once the body is valid, see webhook_service.py.
    A body without payment.schoolpayReceiptNumber is a 400.
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid payload"},
        )
    return await process_webhook(client, body)


# ═══════════════════════════════════════════════════════════
# PULL: operator-triggered sync
# ═══════════════════════════════════════════════════════════

@router.post("/sync")
async def sync_transactions(
    body: SyncRequest,
    user: CurrentUser = Depends(get_current_user),
    client: Client = Depends(get_db_client),
    provider: SchoolPayClient = Depends(get_schoolpay_client),
):
    result = await run_sync(
        client, provider,
        tenant_id=str(user.tenant_id),
        request=body,
        user_id=str(user.user_id),
    )
    return {"success": True, **result.model_dump(by_alias=True)}


# ═══════════════════════════════════════════════════════════
# SETTINGS
# ═══════════════════════════════════════════════════════════

@router.get("/settings", response_model=APIResponse[Optional[SchoolPaySettingsResponse]])
async def get_settings(
    user: CurrentUser = Depends(get_current_user),
    client: Client = Depends(get_db_client),
):
    config = load_settings(client, str(user.tenant_id))
    if config is None:
        return APIResponse(data=None, message="SchoolPay not configured")
    return APIResponse(data=to_response(config))


@router.put("/settings", response_model=APIResponse[SchoolPaySettingsResponse])
async def update_settings(
    body: SchoolPaySettingsUpdate,
    user: CurrentUser = Depends(require_roles(*SETTINGS_ROLES)),
    client: Client = Depends(get_db_client),
):
    config = save_settings(client, str(user.tenant_id), body)
    await activity.log_activity(
        client,
        action=activity.SETTINGS_UPDATED,
        tenant_id=str(user.tenant_id), user_id=str(user.user_id),
        entity_type="schoolpay_settings",
        metadata={
            "school_code": config.school_code,
            "webhook_enabled": config.webhook_enabled,
            "auto_reconcile": config.auto_reconcile,
            "secret_changed": body.api_secret is not None,
        },
    )
    return APIResponse(data=to_response(config), message="SchoolPay settings saved")


# ═══════════════════════════════════════════════════════════
# LEDGER
# ═══════════════════════════════════════════════════════════

@router.get("/transactions", response_model=PaginatedResponse[TransactionItem])
async def list_transactions(
    params: PaginationParams = Depends(),
    status_filter: Optional[ReconciliationStatus] = Query(default=None, alias="status"),
    user: CurrentUser = Depends(get_current_user),
    client: Client = Depends(get_db_client),
):
    rows, total = ledger.list_transactions(
        client, str(user.tenant_id),
        offset=params.offset, limit=params.page_size, status=status_filter,
    )
    return PaginatedResponse(
        data=[TransactionItem.model_validate(r) for r in rows],
        total=total,
        page=params.page,
        page_size=params.page_size,
        total_pages=params.total_pages(total),
    )


@router.get("/transactions/stats", response_model=APIResponse[TransactionStats])
async def transaction_stats(
    user: CurrentUser = Depends(get_current_user),
    client: Client = Depends(get_db_client),
):
    return APIResponse(data=TransactionStats(**ledger.summarize(client, str(user.tenant_id))))


@router.post("/transactions/{transaction_id}/reconcile", response_model=APIResponse[ReconcileOutcome])
async def reconcile_transaction(
    transaction_id: str,
    user: CurrentUser = Depends(require_roles(*RECONCILE_ROLES)),
    client: Client = Depends(get_db_client),
):
    outcome = await retry_reconciliation(
        client, str(user.tenant_id), transaction_id, user_id=str(user.user_id),
    )
    return APIResponse(data=outcome, message=f"Transaction is {outcome.status.value}")
