# ============================================================
# app/schemas/schoolpay.py
#
# Two families of models live here:
#
#   Provider shapes  → what SchoolPay sends us (camelCase, loosely
#                      typed: amounts arrive as strings, receipt
#                      numbers sometimes as ints). Parsed once at
#                      the edge, snake_case from then on.
#   API shapes       → what our endpoints accept and return.
# ============================================================

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TransactionKind(str, Enum):
    school_fees = "SCHOOL_FEES"
    other_fees  = "OTHER_FEES"


class ReconciliationStatus(str, Enum):
    unmatched       = "unmatched"
    matched         = "matched"
    reconciled      = "reconciled"
    needs_attention = "needs_attention"


class FeeStatus(str, Enum):
    pending = "pending"
    partial = "partial"
    paid    = "paid"


# ── Provider shapes ──────────────────────────────────────────
class SchoolPayPayment(BaseModel):
    """One payment record, as found in webhooks and sync batches."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schoolpay_receipt_number: str = Field(alias="schoolpayReceiptNumber", min_length=1)
    amount: Decimal = Decimal("0")
    student_name: Optional[str] = Field(default=None, alias="studentName")
    student_payment_code: Optional[str] = Field(default=None, alias="studentPaymentCode")
    student_registration_number: Optional[str] = Field(default=None, alias="studentRegistrationNumber")
    student_class: Optional[str] = Field(default=None, alias="studentClass")
    source_payment_channel: Optional[str] = Field(default=None, alias="sourcePaymentChannel")
    settlement_bank_code: Optional[str] = Field(default=None, alias="settlementBankCode")
    source_channel_transaction_id: Optional[str] = Field(default=None, alias="sourceChannelTransactionId")
    payment_date_and_time: Optional[str] = Field(default=None, alias="paymentDateAndTime")
    supplementary_fee_description: Optional[str] = Field(default=None, alias="supplementaryFeeDescription")

    @field_validator(
        "schoolpay_receipt_number", "student_payment_code", "student_registration_number",
        "source_channel_transaction_id", "settlement_bank_code",
        "student_name", "student_class", "source_payment_channel",
        "payment_date_and_time", "supplementary_fee_description",
        mode="before",
    )
    @classmethod
    def _stringify_text(cls, v: Any) -> Any:
        # Some channels send identifiers and classes ("5") as JSON numbers
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, v: Any) -> Decimal:
        """Unparseable or missing amounts become 0, which never reconciles."""
        if v is None or v == "":
            return Decimal("0")
        try:
            amount = Decimal(str(v).strip().replace(",", ""))
        except InvalidOperation:
            return Decimal("0")
        return amount if amount.is_finite() else Decimal("0")


class WebhookPayload(BaseModel):
    signature: Optional[str] = None
    type: TransactionKind = TransactionKind.school_fees
    payment: SchoolPayPayment

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, v: Any) -> Any:
        return v or TransactionKind.school_fees


class ProviderTransaction(BaseModel):
    """A batch record tagged with the sub-list it came from."""
    kind: TransactionKind
    payment: SchoolPayPayment
    raw: dict


class ProviderBatch(BaseModel):
    return_message: Optional[str] = None
    transactions: list[ProviderTransaction] = []


# ── Settings ─────────────────────────────────────────────────
class TenantPaymentSettings(BaseModel):
    """Loaded per invocation; never cached."""
    tenant_id: str
    school_code: str
    api_secret: Optional[str] = None
    webhook_enabled: bool = True
    auto_reconcile: bool = True
    last_sync_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "TenantPaymentSettings":
        return cls(
            tenant_id=str(row["tenant_id"]),
            school_code=row.get("school_code") or "",
            api_secret=row.get("api_secret"),
            # NULL in the table means "never touched the toggle" → on
            webhook_enabled=row.get("webhook_enabled") is not False,
            auto_reconcile=row.get("auto_reconcile") is not False,
            last_sync_at=row.get("last_sync_at"),
        )


class SchoolPaySettingsUpdate(BaseModel):
    school_code: str = Field(min_length=1, max_length=50)
    api_secret: Optional[str] = Field(default=None, min_length=1)   # omitted → keep existing
    webhook_enabled: bool = True
    auto_reconcile: bool = True


class SchoolPaySettingsResponse(BaseModel):
    school_code: str
    api_secret_set: bool
    api_secret_hint: Optional[str] = None
    webhook_enabled: bool
    auto_reconcile: bool
    last_sync_at: Optional[datetime] = None
    webhook_url: str


# ── Sync ─────────────────────────────────────────────────────
class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_date: Optional[date] = Field(default=None, alias="date")
    from_date: Optional[date] = Field(default=None, alias="fromDate")
    to_date: Optional[date] = Field(default=None, alias="toDate")

    @model_validator(mode="after")
    def _range_order(self) -> "SyncRequest":
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("fromDate must not be after toDate")
        return self

    @property
    def is_range(self) -> bool:
        return self.from_date is not None and self.to_date is not None


class SyncResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    inserted: int = 0
    skipped: int = 0
    auto_reconciled: int = Field(default=0, serialization_alias="autoReconciled")
    message: Optional[str] = None


# ── Ledger / reconciliation ──────────────────────────────────
class ReconcileOutcome(BaseModel):
    status: ReconciliationStatus
    fee_payment_id: Optional[str] = None
    new_balance: Optional[Decimal] = None
    notes: Optional[str] = None


class TransactionItem(BaseModel):
    id: str
    schoolpay_receipt_number: str
    amount: Decimal
    student_name: Optional[str] = None
    student_payment_code: Optional[str] = None
    student_registration_number: Optional[str] = None
    student_class: Optional[str] = None
    payment_channel: Optional[str] = None
    transaction_type: TransactionKind
    payment_date: Optional[datetime] = None
    matched_student_id: Optional[str] = None
    reconciliation_status: ReconciliationStatus
    fee_payment_id: Optional[str] = None
    reconciled_at: Optional[datetime] = None
    reconciliation_notes: Optional[str] = None
    created_at: Optional[datetime] = None


class TransactionStats(BaseModel):
    total: int = 0
    reconciled: int = 0
    matched: int = 0
    unmatched: int = 0
    needs_attention: int = 0
    total_amount: Decimal = Decimal("0")
    reconciled_amount: Decimal = Decimal("0")
