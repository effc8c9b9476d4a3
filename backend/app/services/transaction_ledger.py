# ============================================================
# app/services/transaction_ledger.py
#
# Every SchoolPay receipt we ever see becomes exactly one row in
# schoolpay_transactions, unique on (tenant_id, schoolpay_receipt_number).
#
#   Webhook path → insert_if_new(): INSERT ... ON CONFLICT DO NOTHING.
#                  A redelivered webhook returns None and must not be
#                  reconciled again.
#   Sync path    → find_transaction() then insert_transaction().
#                  Check-then-act; fine for an operator-triggered batch.
#
# The provider payload is always stored verbatim in raw_payload,
# whatever the match outcome, so rows can be audited or replayed.
# ============================================================

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
import logging

from supabase import Client

from app.core.database import TenantDB
from app.schemas.schoolpay import ReconciliationStatus, SchoolPayPayment, TransactionKind

logger = logging.getLogger(__name__)

LEDGER_TABLE = "schoolpay_transactions"
LEDGER_KEY = "tenant_id,schoolpay_receipt_number"


def parse_payment_datetime(value: Optional[str]) -> Optional[datetime]:
    """SchoolPay sends '2025-01-10 14:03:22' or ISO-8601; both parse here."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable paymentDateAndTime {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_ledger_row(
    payment: SchoolPayPayment,
    kind: TransactionKind,
    raw_payload: dict[str, Any],
    matched_student_id: Optional[str],
    default_payment_date: Optional[datetime] = None,
) -> dict:
    paid_at = parse_payment_datetime(payment.payment_date_and_time) or default_payment_date
    return {
        "schoolpay_receipt_number":      payment.schoolpay_receipt_number,
        "amount":                        float(payment.amount),
        "student_name":                  payment.student_name,
        "student_payment_code":          payment.student_payment_code,
        "student_registration_number":   payment.student_registration_number,
        "student_class":                 payment.student_class,
        "payment_channel":               payment.source_payment_channel,
        "settlement_bank":               payment.settlement_bank_code,
        "transaction_id":                payment.source_channel_transaction_id,
        "payment_date":                  paid_at.isoformat() if paid_at else None,
        "transaction_type":              kind.value,
        "supplementary_fee_description": (
            payment.supplementary_fee_description if kind == TransactionKind.other_fees else None
        ),
        "raw_payload":                   raw_payload,
        "matched_student_id":            matched_student_id,
        "reconciliation_status": (
            ReconciliationStatus.matched if matched_student_id else ReconciliationStatus.unmatched
        ).value,
    }


def find_transaction(client: Client, tenant_id: str, receipt_number: str) -> Optional[dict]:
    db = TenantDB(tenant_id, client)
    return db.first(
        db.select(LEDGER_TABLE, "id, reconciliation_status")
        .eq("schoolpay_receipt_number", receipt_number)
    )


def insert_transaction(client: Client, tenant_id: str, row: dict) -> dict:
    return TenantDB(tenant_id, client).insert(LEDGER_TABLE, row)


def insert_if_new(client: Client, tenant_id: str, row: dict) -> Optional[dict]:
    """Returns the new row, or None if the receipt was already ledgered."""
    inserted = TenantDB(tenant_id, client).insert_ignore_duplicates(LEDGER_TABLE, row, LEDGER_KEY)
    if inserted is None:
        logger.info(f"Receipt {row['schoolpay_receipt_number']} already ledgered for tenant {tenant_id}")
    return inserted


def get_transaction(client: Client, tenant_id: str, transaction_id: str) -> dict:
    return TenantDB(tenant_id, client).require_one(LEDGER_TABLE, transaction_id)


# ── Status transitions ───────────────────────────────────────
def mark_matched(client: Client, tenant_id: str, transaction_id: str, student_id: str) -> dict:
    return TenantDB(tenant_id, client).update(LEDGER_TABLE, {
        "matched_student_id":    student_id,
        "reconciliation_status": ReconciliationStatus.matched.value,
    }, record_id=transaction_id)


def mark_reconciled(
    client: Client,
    tenant_id: str,
    transaction_id: str,
    fee_payment_id: str,
    notes: str,
) -> dict:
    return TenantDB(tenant_id, client).update(LEDGER_TABLE, {
        "fee_payment_id":        fee_payment_id,
        "reconciliation_status": ReconciliationStatus.reconciled.value,
        "reconciled_at":         datetime.now(timezone.utc).isoformat(),
        "reconciliation_notes":  notes,
    }, record_id=transaction_id)


def mark_needs_attention(
    client: Client,
    tenant_id: str,
    transaction_id: str,
    notes: str,
    fee_payment_id: Optional[str] = None,
) -> dict:
    payload = {
        "reconciliation_status": ReconciliationStatus.needs_attention.value,
        "reconciliation_notes":  notes,
    }
    if fee_payment_id:
        payload["fee_payment_id"] = fee_payment_id
    return TenantDB(tenant_id, client).update(LEDGER_TABLE, payload, record_id=transaction_id)


def note_failure(client: Client, tenant_id: str, transaction_id: str, notes: str) -> None:
    """Record why reconciliation stopped without changing the status."""
    TenantDB(tenant_id, client).update_where(
        LEDGER_TABLE, {"reconciliation_notes": notes}, id=transaction_id,
    )


# ── Listing ──────────────────────────────────────────────────
def list_transactions(
    client: Client,
    tenant_id: str,
    offset: int,
    limit: int,
    status: Optional[ReconciliationStatus] = None,
) -> tuple[list[dict], int]:
    db = TenantDB(tenant_id, client)
    query = db.select(LEDGER_TABLE, count="exact")
    if status:
        query = query.eq("reconciliation_status", status.value)
    result = (
        query
        .order("created_at", desc=True)
        .range(offset, offset + limit - 1)
        .execute()
    )
    rows = result.data or []
    total = result.count if result.count is not None else len(rows)
    return rows, total


def summarize(client: Client, tenant_id: str) -> dict:
    db = TenantDB(tenant_id, client)
    rows = db.select(LEDGER_TABLE, "amount, reconciliation_status").execute().data or []

    stats = {s.value: 0 for s in ReconciliationStatus}
    total_amount = Decimal("0")
    reconciled_amount = Decimal("0")
    for r in rows:
        status = r.get("reconciliation_status") or ReconciliationStatus.unmatched.value
        stats[status] = stats.get(status, 0) + 1
        amount = Decimal(str(r.get("amount") or 0))
        total_amount += amount
        if status == ReconciliationStatus.reconciled.value:
            reconciled_amount += amount

    return {
        "total": len(rows),
        **stats,
        "total_amount": total_amount,
        "reconciled_amount": reconciled_amount,
    }
