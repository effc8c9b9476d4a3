# ============================================================
# app/services/sync_service.py
#
# Pull path: an operator asks for a day (or a date range) and we fetch
# every SchoolPay transaction for the school, ledger the new ones and
# reconcile those we can match.
#
# The counters are what the dashboard shows, so they must be exact:
# every transaction in the batch is either inserted or skipped.
#
# NOTE: existence check + insert is not atomic. Two overlapping syncs
# can race; the unique key then rejects the second insert and that
# sync fails as a whole rather than double-counting.
# ============================================================

from typing import Optional
import logging

from supabase import Client

from app.core.exceptions import InvalidSyncRequest
from app.schemas.schoolpay import ReconciliationStatus, SyncRequest, SyncResult
from app.services import transaction_ledger as ledger
from app.services import activity_service as activity
from app.services.reconciliation_service import reconcile_transaction
from app.services.schoolpay_settings_service import require_settings, touch_last_sync
from app.services.student_matcher import match_student
from app.utils.schoolpay_client import SchoolPayClient

logger = logging.getLogger(__name__)


async def run_sync(
    client: Client,
    provider: SchoolPayClient,
    tenant_id: str,
    request: SyncRequest,
    user_id: Optional[str] = None,
) -> SyncResult:
    config = require_settings(client, tenant_id)

    if request.is_range:
        url = provider.range_url(config.school_code, request.from_date, request.to_date, config.api_secret)
        window = f"{request.from_date} → {request.to_date}"
    elif request.sync_date:
        url = provider.single_date_url(config.school_code, request.sync_date, config.api_secret)
        window = str(request.sync_date)
    else:
        raise InvalidSyncRequest("Provide 'date' or 'fromDate'+'toDate'")

    batch = await provider.fetch_transactions(url)
    result = SyncResult(total=len(batch.transactions), message=batch.return_message)

    for item in batch.transactions:
        receipt = item.payment.schoolpay_receipt_number

        if ledger.find_transaction(client, tenant_id, receipt):
            result.skipped += 1
            continue

        match = match_student(client, item.payment, tenant_id=tenant_id)
        row = ledger.build_ledger_row(
            item.payment,
            kind=item.kind,
            raw_payload=item.raw,
            matched_student_id=match.student_id if match else None,
        )
        txn = ledger.insert_transaction(client, tenant_id, row)
        result.inserted += 1

        if match and config.auto_reconcile and item.payment.amount > 0 and txn.get("id"):
            outcome = await reconcile_transaction(client, tenant_id, txn, source="sync")
            if outcome.status == ReconciliationStatus.reconciled:
                result.auto_reconciled += 1

    touch_last_sync(client, tenant_id)

    logger.info(
        f"SchoolPay sync for tenant {tenant_id} ({window}): total={result.total} "
        f"inserted={result.inserted} skipped={result.skipped} reconciled={result.auto_reconciled}"
    )
    await activity.log_activity(
        client,
        action=activity.SYNCED,
        tenant_id=tenant_id, user_id=user_id,
        entity_type="schoolpay_settings",
        metadata={"window": window, **result.model_dump()},
    )
    return result
