# ============================================================
# app/services/reconciliation_service.py
#
# Applies a matched SchoolPay transaction to the student's fee.
#
#   1. Latest student_fees row for the student (created_at desc).
#      No row → needs_attention. We never invent a fee record.
#   2. Insert a fee_payments row, receipt "SP-<schoolpay receipt>".
#      Failure here leaves the transaction "matched" so it can be
#      re-triggered from the dashboard.
#   3. Apply the amount to student_fees with a compare-and-swap on
#      amount_paid, so two payments for the same student landing at
#      once can't overwrite each other's balance. Any failure here
#      (or an SP- row left by an earlier run) → needs_attention with
#      the fee payment linked; never reconciled without the credit.
#   4. Mark the transaction reconciled and link the fee payment.
#
# Callers only get here right after a transaction was NEWLY ledgered
# (or from the manual reconcile endpoint), which is what keeps
# reconciliation at-most-once per receipt.
# ============================================================

from decimal import Decimal
from typing import Optional
import logging

from supabase import Client

from app.core.config import settings
from app.core.database import TenantDB
from app.core.exceptions import ReconciliationConflict, TransactionStateError
from app.schemas.schoolpay import FeeStatus, ReconcileOutcome, ReconciliationStatus, SchoolPayPayment
from app.services import transaction_ledger as ledger
from app.services import activity_service as activity
from app.services.student_matcher import match_student

logger = logging.getLogger(__name__)

FEE_TABLE = "student_fees"
PAYMENT_TABLE = "fee_payments"
RECEIPT_PREFIX = "SP-"


def fee_payment_receipt(schoolpay_receipt_number: str) -> str:
    return f"{RECEIPT_PREFIX}{schoolpay_receipt_number}"


def _money(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def fee_position(total_amount: Decimal, amount_paid: Decimal) -> tuple[Decimal, FeeStatus]:
    """
    balance = max(0, total - paid)
    status  = paid if nothing is owed, partial if anything was paid, else pending
    """
    outstanding = total_amount - amount_paid
    if outstanding <= 0:
        status = FeeStatus.paid
    elif amount_paid > 0:
        status = FeeStatus.partial
    else:
        status = FeeStatus.pending
    return max(Decimal("0"), outstanding), status


def latest_student_fee(db: TenantDB, student_id: str) -> Optional[dict]:
    # TODO: join on the active term once student_fees carries term_id
    return db.first(
        db.select(FEE_TABLE, "id, total_amount, amount_paid, balance, status")
        .eq("student_id", student_id)
        .order("created_at", desc=True)
    )


def apply_payment(db: TenantDB, fee: dict, amount: Decimal, max_attempts: Optional[int] = None) -> dict:
    """
    Add `amount` to a student fee atomically. Each attempt only writes
    if amount_paid is still what we read; otherwise re-read and retry.
    """
    attempts = max_attempts or settings.RECONCILE_MAX_ATTEMPTS
    current = fee
    for attempt in range(1, attempts + 1):
        new_paid = _money(current.get("amount_paid")) + amount
        balance, status = fee_position(_money(current.get("total_amount")), new_paid)

        updated = db.update_where(
            FEE_TABLE,
            {"amount_paid": float(new_paid), "balance": float(balance), "status": status.value},
            id=current["id"],
            amount_paid=current.get("amount_paid"),
        )
        if updated:
            return updated[0]

        logger.warning(f"Student fee {current['id']} changed underneath us (attempt {attempt}/{attempts})")
        current = db.select_one(FEE_TABLE, current["id"])
        if current is None:
            raise ReconciliationConflict("Student fee disappeared during reconciliation")

    raise ReconciliationConflict(f"Could not update student fee {fee['id']} after {attempts} attempts")


async def reconcile_transaction(
    client: Client,
    tenant_id: str,
    txn: dict,
    source: str = "webhook",
) -> ReconcileOutcome:
    """
    `txn` is a schoolpay_transactions row. Returns the resulting
    reconciliation state; raises TransactionStateError if the row
    isn't eligible at all.
    """
    txn_id = str(txn["id"])
    student_id = txn.get("matched_student_id")
    amount = _money(txn.get("amount"))
    receipt_number = txn["schoolpay_receipt_number"]

    if not student_id:
        raise TransactionStateError("Transaction has no matched student")
    if amount <= 0:
        raise TransactionStateError("Only positive amounts can be reconciled")

    db = TenantDB(tenant_id, client)

    fee = latest_student_fee(db, str(student_id))
    if not fee:
        notes = "Student matched but no fee record found"
        ledger.mark_needs_attention(client, tenant_id, txn_id, notes)
        logger.info(f"Receipt {receipt_number}: {notes}")
        return ReconcileOutcome(status=ReconciliationStatus.needs_attention, notes=notes)

    receipt = fee_payment_receipt(receipt_number)
    existing = db.first(db.select(PAYMENT_TABLE, "id").eq("receipt_number", receipt))
    if existing:
        # An earlier run got as far as the fee payment; whether the balance
        # moved is unknown, so a human has to check it.
        notes = f"Fee payment {receipt} already exists; balance application unconfirmed, check student fee {fee['id']}"
        ledger.mark_needs_attention(client, tenant_id, txn_id, notes, fee_payment_id=str(existing["id"]))
        logger.warning(f"Receipt {receipt_number}: {notes}")
        return ReconcileOutcome(
            status=ReconciliationStatus.needs_attention,
            fee_payment_id=str(existing["id"]),
            notes=notes,
        )

    label = "SchoolPay sync" if source == "sync" else "SchoolPay"
    note_parts = [label, txn.get("payment_channel"), txn.get("student_name")]
    fee_payment = None
    try:
        fee_payment = db.insert(PAYMENT_TABLE, {
            "student_id":       str(student_id),
            "student_fee_id":   fee["id"],
            "amount":           float(amount),
            "payment_method":   "schoolpay",
            "reference_number": txn.get("transaction_id") or receipt_number,
            "receipt_number":   receipt,
            "notes":            " - ".join(p for p in note_parts if p),
        })
    except Exception as e:
        logger.error(f"Receipt {receipt_number}: fee payment insert failed: {e}")

    if not fee_payment or not fee_payment.get("id"):
        notes = "Fee payment could not be recorded; retry reconciliation"
        ledger.note_failure(client, tenant_id, txn_id, notes)
        return ReconcileOutcome(status=ReconciliationStatus.matched, notes=notes)

    fee_payment_id = str(fee_payment["id"])
    try:
        updated_fee = apply_payment(db, fee, amount)
    except Exception as e:
        reason = e.message if isinstance(e, ReconciliationConflict) else f"{type(e).__name__}: {e}"
        notes = f"Fee payment {receipt} recorded but balance not updated ({reason}); adjust student fee {fee['id']} manually"
        ledger.mark_needs_attention(client, tenant_id, txn_id, notes, fee_payment_id=fee_payment_id)
        logger.error(f"Receipt {receipt_number}: {notes}")
        return ReconcileOutcome(
            status=ReconciliationStatus.needs_attention,
            fee_payment_id=fee_payment_id,
            notes=notes,
        )

    new_balance = _money(updated_fee.get("balance"))
    notes = f"{'Synced & reconciled' if source == 'sync' else 'Auto-reconciled'}. Balance: {new_balance}"
    ledger.mark_reconciled(client, tenant_id, txn_id, fee_payment_id, notes)

    logger.info(f"Reconciled receipt {receipt_number}: {amount} to student {student_id}, balance {new_balance}")
    await activity.log_activity(
        client,
        action=activity.RECONCILED,
        tenant_id=tenant_id,
        entity_type="schoolpay_transaction", entity_id=txn_id,
        metadata={"receipt": receipt_number, "amount": float(amount), "fee_payment_id": fee_payment_id},
    )
    return ReconcileOutcome(
        status=ReconciliationStatus.reconciled,
        fee_payment_id=fee_payment_id,
        new_balance=new_balance,
        notes=notes,
    )


async def retry_reconciliation(
    client: Client,
    tenant_id: str,
    transaction_id: str,
    user_id: Optional[str] = None,
) -> ReconcileOutcome:
    """
    Manual follow-up from the dashboard. Ignores the auto_reconcile
    toggle because a human asked for it.

      unmatched                 → match again (tenant-scoped) → matched
      matched / needs_attention → run the engine
      reconciled, or already linked to a fee payment → 409
    """
    txn = ledger.get_transaction(client, tenant_id, transaction_id)
    status = txn.get("reconciliation_status")

    if status == ReconciliationStatus.reconciled.value or txn.get("fee_payment_id"):
        raise TransactionStateError("Transaction is already linked to a fee payment")

    if status == ReconciliationStatus.unmatched.value or not txn.get("matched_student_id"):
        payment = SchoolPayPayment(
            schoolpay_receipt_number=txn["schoolpay_receipt_number"],
            student_payment_code=txn.get("student_payment_code"),
            student_registration_number=txn.get("student_registration_number"),
        )
        match = match_student(client, payment, tenant_id=tenant_id)
        if match is None:
            return ReconcileOutcome(
                status=ReconciliationStatus.unmatched,
                notes="Still no active student with this payment code or registration number",
            )
        txn = ledger.mark_matched(client, tenant_id, str(txn["id"]), match.student_id)
        await activity.log_activity(
            client,
            action=activity.REMATCHED,
            tenant_id=tenant_id, user_id=user_id,
            entity_type="schoolpay_transaction", entity_id=txn["id"],
            metadata={"student_id": match.student_id, "matched_on": match.matched_on},
        )
        return ReconcileOutcome(status=ReconciliationStatus.matched)

    return await reconcile_transaction(client, tenant_id, txn, source="manual")
