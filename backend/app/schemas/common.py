# ============================================================
# app/schemas/common.py
#
# Response envelopes shared by the authenticated endpoints.
# The webhook and sync endpoints answer in SchoolPay's own
# flat {success, error, ...} shape instead; see schoolpay.py.
# ============================================================

from pydantic import BaseModel, Field
from typing import Optional, Generic, TypeVar, List

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    """
    {
        "success": true,
        "message": "Settings saved",
        "data": { ... }
    }
    """
    success: bool = True
    message: str = "OK"
    data: Optional[T] = None


class PaginatedResponse(BaseModel, Generic[T]):
    success: bool = True
    data: List[T] = []
    total: int = 0
    page: int = 1
    page_size: int = 50
    total_pages: int = 0


class PaginationParams(BaseModel):
    """
    Add to any list endpoint:
        async def list_transactions(params: PaginationParams = Depends()):
    """
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=200)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def total_pages(self, total: int) -> int:
        return (total + self.page_size - 1) // self.page_size if total else 0
