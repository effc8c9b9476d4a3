# app/core/exceptions.py
#
# Domain errors raised by the SchoolPay services. main.py turns
# them into {"success": false, "error": "..."} JSON responses, so
# services never need to know about HTTP.

from typing import Any, Optional


class SchoolPayError(Exception):
    status_code: int = 400

    def __init__(self, message: str, status_code: Optional[int] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra


class SchoolPayNotConfigured(SchoolPayError):
    """Tenant has no schoolpay_settings row."""

    def __init__(self):
        super().__init__(
            "SchoolPay not configured. Please set up your school code and API password first."
        )


class InvalidSyncRequest(SchoolPayError):
    pass


class InvalidWebhookPayload(SchoolPayError):
    def __init__(self, message: str = "Invalid payload"):
        super().__init__(message)


class SchoolPayAPIError(SchoolPayError):
    """SchoolPay answered, but with a non-zero returnCode. Echoed back under the same key."""

    def __init__(self, message: str, return_code: Any = None):
        super().__init__(message or "SchoolPay API error", returnCode=return_code)
        self.return_code = return_code


class ProviderUnavailable(SchoolPayError):
    status_code = 502


class TransactionStateError(SchoolPayError):
    status_code = 409


class ReconciliationConflict(SchoolPayError):
    """Balance compare-and-swap kept losing to concurrent writers."""
    status_code = 409
