# ============================================================
# app/services/student_matcher.py
#
# Resolves a SchoolPay payment to one of our students using stable
# identifiers only, never names. Lookups run in order and the first
# hit wins:
#
#   1. students.schoolpay_payment_code == payment.studentPaymentCode
#   2. students.admission_number       == payment.studentRegistrationNumber
#
# With a tenant (sync, manual re-match) every lookup is tenant-scoped.
# Without one (the shared webhook endpoint) the lookup is also how we
# discover which school the payment belongs to.
# ============================================================

from typing import Optional
import logging

from pydantic import BaseModel
from supabase import Client

from app.core.database import TenantDB
from app.schemas.schoolpay import SchoolPayPayment

logger = logging.getLogger(__name__)

# (students column, payment attribute), in priority order
MATCH_CHAIN = (
    ("schoolpay_payment_code", "student_payment_code"),
    ("admission_number",       "student_registration_number"),
)


class StudentMatch(BaseModel):
    student_id: str
    tenant_id: str
    matched_on: str


def match_student(
    client: Client,
    payment: SchoolPayPayment,
    tenant_id: Optional[str] = None,
) -> Optional[StudentMatch]:
    """Returns None when nothing matches. That is a normal outcome."""
    for column, attribute in MATCH_CHAIN:
        value = getattr(payment, attribute)
        if not value:
            continue
        if tenant_id:
            match = _lookup_in_tenant(client, tenant_id, column, value)
        else:
            match = _lookup_any_tenant(client, column, value)
        if match:
            logger.debug(f"Receipt {payment.schoolpay_receipt_number} matched student {match.student_id} on {column}")
            return match
    return None


def _lookup_in_tenant(client: Client, tenant_id: str, column: str, value: str) -> Optional[StudentMatch]:
    db = TenantDB(tenant_id, client)
    row = db.first(
        db.select("students", "id, tenant_id")
        .eq(column, value)
        .eq("is_active", True)
    )
    if not row:
        return None
    return StudentMatch(student_id=str(row["id"]), tenant_id=str(tenant_id), matched_on=column)


def _lookup_any_tenant(client: Client, column: str, value: str) -> Optional[StudentMatch]:
    result = (
        client.table("students")
        .select("id, tenant_id")
        .eq(column, value)
        .eq("is_active", True)
        .limit(2)
        .execute()
    )
    rows = result.data or []
    if not rows:
        return None
    tenants = {str(r["tenant_id"]) for r in rows}
    if len(tenants) > 1:
        # Admission numbers are only unique per school. Refuse to guess.
        logger.warning(f"Ambiguous {column}={value!r}: active students in {len(tenants)} tenants, skipping")
        return None
    row = rows[0]
    return StudentMatch(student_id=str(row["id"]), tenant_id=str(row["tenant_id"]), matched_on=column)
