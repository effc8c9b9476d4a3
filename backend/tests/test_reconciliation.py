import asyncio
from decimal import Decimal

import pytest

from app.core.exceptions import TransactionStateError
from app.schemas.schoolpay import FeeStatus, ReconciliationStatus
from app.services.reconciliation_service import (
    fee_position,
    reconcile_transaction,
    retry_reconciliation,
)
from fakes import TENANT_A


def _ledger(db, student_id, receipt="R100", amount=50000, status="matched", **extra):
    return db.seed(
        "schoolpay_transactions",
        tenant_id=TENANT_A, schoolpay_receipt_number=receipt, amount=amount,
        student_name="Jane Doe", student_payment_code="SP001",
        payment_channel="MTN MoMo", transaction_id=f"TX-{receipt}",
        transaction_type="SCHOOL_FEES", raw_payload={},
        matched_student_id=student_id, reconciliation_status=status, **extra,
    )


def _run(db, txn, **kwargs):
    return asyncio.run(reconcile_transaction(db, TENANT_A, txn, **kwargs))


@pytest.mark.parametrize("total, paid, balance, status", [
    (200000, 0, 200000, FeeStatus.pending),
    (200000, 50000, 150000, FeeStatus.partial),
    (200000, 200000, 0, FeeStatus.paid),
    (200000, 250000, 0, FeeStatus.paid),       # overpayment clamps at zero
    (0, 0, 0, FeeStatus.paid),
])
def test_fee_position(total, paid, balance, status):
    assert fee_position(Decimal(total), Decimal(paid)) == (Decimal(balance), status)


def test_partial_payment_scenario(db, school):
    txn = _ledger(db, school["student"]["id"])

    outcome = _run(db, txn)

    assert outcome.status == ReconciliationStatus.reconciled
    [payment] = db.rows("fee_payments")
    assert payment["amount"] == 50000
    assert payment["receipt_number"] == "SP-R100"
    assert payment["payment_method"] == "schoolpay"
    assert payment["reference_number"] == "TX-R100"
    assert payment["student_fee_id"] == school["fee"]["id"]

    [fee] = db.rows("student_fees")
    assert (fee["amount_paid"], fee["balance"], fee["status"]) == (50000, 150000, "partial")

    [row] = db.rows("schoolpay_transactions")
    assert row["reconciliation_status"] == "reconciled"
    assert row["fee_payment_id"] == payment["id"]
    assert row["reconciled_at"]


def test_full_payment_marks_fee_paid(db, school):
    _run(db, _ledger(db, school["student"]["id"], amount=200000))
    [fee] = db.rows("student_fees")
    assert (fee["balance"], fee["status"]) == (0, "paid")


def test_latest_fee_record_is_the_target(db, school):
    newer = db.seed(
        "student_fees", tenant_id=TENANT_A, student_id=school["student"]["id"],
        total_amount=300000, amount_paid=0, balance=300000, status="pending",
    )
    _run(db, _ledger(db, school["student"]["id"]))

    fees = {f["id"]: f for f in db.rows("student_fees")}
    assert fees[newer["id"]]["amount_paid"] == 50000
    assert fees[school["fee"]["id"]]["amount_paid"] == 0


def test_no_fee_record_needs_attention(db):
    student = db.seed("students", tenant_id=TENANT_A, schoolpay_payment_code="SP001", is_active=True)

    outcome = _run(db, _ledger(db, student["id"]))

    assert outcome.status == ReconciliationStatus.needs_attention
    [row] = db.rows("schoolpay_transactions")
    assert row["reconciliation_status"] == "needs_attention"
    assert row["reconciliation_notes"] == "Student matched but no fee record found"
    assert db.rows("fee_payments") == []
    assert db.rows("student_fees") == []


def test_fee_payment_failure_stays_matched(db, school):
    db.fail_next("fee_payments", "insert")

    outcome = _run(db, _ledger(db, school["student"]["id"]))

    assert outcome.status == ReconciliationStatus.matched
    [row] = db.rows("schoolpay_transactions")
    assert row["reconciliation_status"] == "matched"
    assert row.get("fee_payment_id") is None
    [fee] = db.rows("student_fees")
    assert fee["amount_paid"] == 0


def test_concurrent_balance_change_is_not_lost(db, school):
    def someone_else_pays(fake):
        fake.rows("student_fees")[0].update(amount_paid=20000, balance=180000, status="partial")

    db.before_next_update("student_fees", someone_else_pays)

    outcome = _run(db, _ledger(db, school["student"]["id"]))

    assert outcome.status == ReconciliationStatus.reconciled
    [fee] = db.rows("student_fees")
    assert (fee["amount_paid"], fee["balance"]) == (70000, 130000)


def test_balance_conflict_exhaustion_needs_attention(db, school, monkeypatch):
    from app.core.config import settings
    monkeypatch.setattr(settings, "RECONCILE_MAX_ATTEMPTS", 2)

    def another_writer(fake):
        fee = fake.rows("student_fees")[0]
        fee["amount_paid"] = fee["amount_paid"] + 1

    db.before_every_update("student_fees", another_writer)

    outcome = _run(db, _ledger(db, school["student"]["id"]))

    assert outcome.status == ReconciliationStatus.needs_attention
    [payment] = db.rows("fee_payments")
    [row] = db.rows("schoolpay_transactions")
    assert row["reconciliation_status"] == "needs_attention"
    assert row["fee_payment_id"] == payment["id"]
    assert db.rows("student_fees")[0]["amount_paid"] == 2


def test_existing_sp_receipt_is_flagged_not_reapplied(db, school):
    existing = db.seed(
        "fee_payments", tenant_id=TENANT_A, student_id=school["student"]["id"],
        student_fee_id=school["fee"]["id"], amount=50000, receipt_number="SP-R100",
    )

    outcome = _run(db, _ledger(db, school["student"]["id"]))

    assert outcome.status == ReconciliationStatus.needs_attention
    assert outcome.fee_payment_id == existing["id"]
    [row] = db.rows("schoolpay_transactions")
    assert row["reconciliation_status"] == "needs_attention"
    assert row["fee_payment_id"] == existing["id"]
    assert "unconfirmed" in row["reconciliation_notes"]
    assert len(db.rows("fee_payments")) == 1
    assert db.rows("student_fees")[0]["amount_paid"] == 0


def test_ineligible_transactions_are_rejected(db, school):
    with pytest.raises(TransactionStateError):
        _run(db, _ledger(db, None, receipt="R1", status="unmatched"))
    with pytest.raises(TransactionStateError):
        _run(db, _ledger(db, school["student"]["id"], receipt="R2", amount=0))


def test_retry_rematches_unmatched_transaction(db, school):
    txn = _ledger(db, None, status="unmatched")

    outcome = asyncio.run(retry_reconciliation(db, TENANT_A, txn["id"]))

    assert outcome.status == ReconciliationStatus.matched
    [row] = db.rows("schoolpay_transactions")
    assert row["matched_student_id"] == school["student"]["id"]
    assert db.rows("fee_payments") == []


def test_retry_reconciles_matched_transaction(db, school):
    txn = _ledger(db, school["student"]["id"])

    outcome = asyncio.run(retry_reconciliation(db, TENANT_A, txn["id"]))

    assert outcome.status == ReconciliationStatus.reconciled
    assert db.rows("student_fees")[0]["amount_paid"] == 50000


def test_retry_refuses_reconciled_transaction(db, school):
    txn = _ledger(db, school["student"]["id"], status="reconciled", fee_payment_id="fp-1")
    with pytest.raises(TransactionStateError):
        asyncio.run(retry_reconciliation(db, TENANT_A, txn["id"]))


def test_reconciliation_is_audited(db, school):
    txn = _ledger(db, school["student"]["id"])
    _run(db, txn)

    [entry] = [a for a in db.rows("activity_logs") if a["action"] == "schoolpay.reconciled"]
    assert entry["tenant_id"] == TENANT_A
    assert entry["user_id"] is None
    assert entry["entity_id"] == txn["id"]
    assert entry["metadata"]["receipt"] == txn["schoolpay_receipt_number"]


def test_audit_failure_does_not_undo_payment(db, school):
    txn = _ledger(db, school["student"]["id"])
    db.fail_next("activity_logs", "insert")

    outcome = _run(db, txn)

    assert outcome.status == ReconciliationStatus.reconciled
    assert db.rows("activity_logs") == []
    assert db.rows("student_fees")[0]["amount_paid"] == 50000


def test_balance_update_error_links_payment_and_needs_attention(db, school):
    db.fail_next("student_fees", "update")

    outcome = _run(db, _ledger(db, school["student"]["id"]))

    assert outcome.status == ReconciliationStatus.needs_attention
    [payment] = db.rows("fee_payments")
    [row] = db.rows("schoolpay_transactions")
    assert row["reconciliation_status"] == "needs_attention"
    assert row["fee_payment_id"] == payment["id"]
    assert "balance not updated" in row["reconciliation_notes"]
    assert db.rows("student_fees")[0]["amount_paid"] == 0


def test_retry_never_closes_an_uncredited_payment(db, school):
    db.fail_next("student_fees", "update")
    txn = _ledger(db, school["student"]["id"])
    _run(db, txn)

    with pytest.raises(TransactionStateError):
        asyncio.run(retry_reconciliation(db, TENANT_A, txn["id"]))

    assert db.rows("schoolpay_transactions")[0]["reconciliation_status"] == "needs_attention"
    assert db.rows("student_fees")[0]["amount_paid"] == 0
