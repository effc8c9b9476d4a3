# ============================================================
# app/utils/schoolpay_client.py
#
# Outbound calls to the SchoolPay payment API, plus the two
# hashing schemes SchoolPay uses:
#
#   request hash  → MD5(schoolCode + date + apiPassword), upper-case
#                   hex, placed in the URL path of sync calls.
#                   Must match byte-for-byte or the whole batch
#                   is rejected.
#   webhook sig   → SHA-256(apiPassword + receiptNumber), lower-case
#                   hex, sent in the webhook body as "signature".
# ============================================================

import hashlib
import hmac
import logging
from datetime import date
from typing import Optional

import httpx
from pydantic import ValidationError

from app.core.config import settings
from app.core.exceptions import ProviderUnavailable, SchoolPayAPIError
from app.schemas.schoolpay import (
    ProviderBatch, ProviderTransaction, SchoolPayPayment, TransactionKind,
)

logger = logging.getLogger(__name__)


def build_request_hash(school_code: str, identifying_date: str, api_secret: str) -> str:
    digest = hashlib.md5(f"{school_code}{identifying_date}{api_secret}".encode("utf-8"))
    return digest.hexdigest().upper()


def expected_webhook_signature(api_secret: str, receipt_number: str) -> str:
    return hashlib.sha256(f"{api_secret}{receipt_number}".encode("utf-8")).hexdigest()


def verify_webhook_signature(api_secret: str, receipt_number: str, signature: Optional[str]) -> bool:
    if not api_secret or not signature:
        return False
    expected = expected_webhook_signature(api_secret, receipt_number)
    return hmac.compare_digest(expected, signature.strip().lower())


class SchoolPayClient:
    """
    Thin async wrapper over the two SchoolPay read endpoints.
    A fresh httpx.AsyncClient is opened per call; pass `transport`
    to swap the network out (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.SCHOOLPAY_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.SCHOOLPAY_TIMEOUT_SECONDS
        self._transport = transport

    def single_date_url(self, school_code: str, sync_date: date, api_secret: str) -> str:
        day = sync_date.isoformat()
        request_hash = build_request_hash(school_code, day, api_secret)
        return f"{self.base_url}/SyncSchoolTransactions/{school_code}/{day}/{request_hash}"

    def range_url(self, school_code: str, from_date: date, to_date: date, api_secret: str) -> str:
        start, end = from_date.isoformat(), to_date.isoformat()
        request_hash = build_request_hash(school_code, start, api_secret)
        return f"{self.base_url}/SchoolRangeTransactions/{school_code}/{start}/{end}/{request_hash}"

    async def fetch_transactions(self, url: str) -> ProviderBatch:
        """
        GET a sync URL and turn the response into a tagged batch.
        Any non-zero returnCode fails the whole call.
        """
        # The hash is a credential; log only the endpoint name.
        logger.info(f"Fetching SchoolPay transactions: {url.rsplit('/', 1)[0]}/<hash>")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url, headers={"Accept": "application/json"})
            body = resp.json()
        except httpx.HTTPError as e:
            logger.error(f"SchoolPay request failed: {e}")
            raise ProviderUnavailable("Could not reach SchoolPay. Try again.")
        except ValueError:
            logger.error(f"SchoolPay returned a non-JSON body (HTTP {resp.status_code})")
            raise ProviderUnavailable("SchoolPay returned an unreadable response.")

        if not isinstance(body, dict):
            raise ProviderUnavailable("SchoolPay returned an unreadable response.")

        return_code = body.get("returnCode")
        if return_code != 0:
            message = body.get("returnMessage") or "SchoolPay API error"
            logger.warning(f"SchoolPay rejected sync: code={return_code} message={message}")
            raise SchoolPayAPIError(message, return_code=return_code)

        return ProviderBatch(
            return_message=body.get("returnMessage"),
            transactions=parse_batch(body),
        )


def parse_batch(body: dict) -> list[ProviderTransaction]:
    """
    Regular fee transactions first, then supplementary (other-fee)
    payments, each tagged with its kind. Raises before anything is
    written if a record cannot be parsed.
    """
    tagged = []
    sources = (
        (TransactionKind.school_fees, body.get("transactions") or []),
        (TransactionKind.other_fees, body.get("supplementaryFeePayments") or []),
    )
    for kind, records in sources:
        for record in records:
            try:
                payment = SchoolPayPayment.model_validate(record)
            except ValidationError as e:
                logger.error(f"Malformed SchoolPay {kind.value} record: {e.errors()}")
                raise SchoolPayAPIError("SchoolPay returned a malformed transaction record")
            tagged.append(ProviderTransaction(kind=kind, payment=payment, raw=record))
    return tagged


def get_schoolpay_client() -> SchoolPayClient:
    """FastAPI dependency. Overridden in tests."""
    return SchoolPayClient()
