# ============================================================
# app/services/webhook_service.py
#
# SchoolPay pushes one payment per call to a single endpoint
# shared by every school on the platform. There is no user JWT.
#
# Per request:
#   received → tenant found via student match → signature checked
#            → ledgered (insert-or-ignore) → reconciled / needs_attention
#
# The endpoint ALWAYS answers 200 once the payload is valid;
# SchoolPay retries anything else. Duplicate safety rests entirely
# on the ledger's unique (tenant_id, schoolpay_receipt_number) key.
# ============================================================

from datetime import datetime, timezone
from typing import Any
import logging

from pydantic import ValidationError
from supabase import Client

from app.core.config import settings
from app.core.exceptions import InvalidWebhookPayload
from app.schemas.schoolpay import ReconciliationStatus, WebhookPayload
from app.services import transaction_ledger as ledger
from app.services.reconciliation_service import reconcile_transaction
from app.services.schoolpay_settings_service import load_settings
from app.services.student_matcher import match_student
from app.utils.schoolpay_client import verify_webhook_signature

logger = logging.getLogger(__name__)


def parse_webhook(body: Any) -> WebhookPayload:
    if not isinstance(body, dict):
        raise InvalidWebhookPayload()
    try:
        return WebhookPayload.model_validate(body)
    except ValidationError as e:
        logger.warning(f"Rejected SchoolPay webhook: {e.errors()}")
        raise InvalidWebhookPayload()


async def process_webhook(client: Client, body: Any) -> dict:
    """
    Returns the JSON body to send back with HTTP 200.
    Only InvalidWebhookPayload escapes (→ 400, nothing written).
    """
    payload = parse_webhook(body)
    payment = payload.payment
    receipt = payment.schoolpay_receipt_number
    logger.info(f"SchoolPay webhook received: receipt={receipt} type={payload.type.value}")

    try:
        return await _ingest(client, payload, body)
    except Exception as e:
        logger.error(f"SchoolPay webhook error for receipt {receipt}: {e}", exc_info=True)
        return {"success": False, "error": str(e) or "Unknown error"}


async def _ingest(client: Client, payload: WebhookPayload, body: dict) -> dict:
    payment = payload.payment
    receipt = payment.schoolpay_receipt_number

    match = match_student(client, payment)
    if match is None:
        # The one place a payment can be lost: no student → no tenant → nowhere to write it.
        logger.error(
            f"Cannot attribute SchoolPay receipt {receipt} to any school "
            f"(payment code={payment.student_payment_code!r}, "
            f"registration={payment.student_registration_number!r}); not persisted"
        )
        return {"success": False, "error": "No matching school found"}

    tenant_id = match.tenant_id
    config = load_settings(client, tenant_id)

    if config is not None and not config.webhook_enabled:
        logger.info(f"Webhooks disabled for tenant {tenant_id}; receipt {receipt} left for the next sync")
        return {"success": True, "status": "ignored"}

    signature_ok = verify_webhook_signature(
        config.api_secret if config else "", receipt, payload.signature,
    )
    if not signature_ok:
        logger.warning(f"SchoolPay signature mismatch for receipt {receipt} (tenant {tenant_id})")
        if settings.SCHOOLPAY_ENFORCE_WEBHOOK_SIGNATURE:
            return {"success": False, "error": "Invalid signature"}

    row = ledger.build_ledger_row(
        payment,
        kind=payload.type,
        raw_payload=body,
        matched_student_id=match.student_id,
        default_payment_date=datetime.now(timezone.utc),
    )
    txn = ledger.insert_if_new(client, tenant_id, row)
    if txn is None:
        return {"success": True, "status": "duplicate"}

    status = ReconciliationStatus.matched
    auto_reconcile = config.auto_reconcile if config else True
    if payment.amount > 0 and auto_reconcile:
        outcome = await reconcile_transaction(client, tenant_id, txn, source="webhook")
        status = outcome.status

    return {"success": True, "status": status.value}
