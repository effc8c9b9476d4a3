# ============================================================
# app/core/database.py
#
# Two ways to talk to Supabase:
#
# get_admin_client()  (SERVICE ROLE key)
# ├── Bypasses ALL RLS policies
# ├── Use for: the SchoolPay webhook, which arrives with no user
# │   session and has to discover the tenant from the student record
# └── NEVER use for tenant-level writes once the tenant is known
#
# TenantDB  (a typed wrapper around the same client)
# ├── Wraps every query with MANDATORY tenant_id filtering
# ├── Raises immediately if you forget tenant_id
# └── Use for: ALL tenant-level data operations
#
# The client is created lazily so importing this module never
# opens a connection (tests swap it out via dependency overrides).
# ============================================================

from functools import lru_cache
from typing import Optional

from supabase import create_client, Client
from fastapi import HTTPException
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


# ── Raw client ────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_admin_client() -> Client:
    return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY)


def get_db_client() -> Client:
    """FastAPI dependency. Overridden in tests."""
    return get_admin_client()


# ── Tenant-scoped DB wrapper ──────────────────────────────────
class TenantDB:
    """
    Safety wrapper around Supabase queries for tenant-level data.
    Every method requires tenant_id, so cross-tenant queries are impossible across tenants.
    """

    def __init__(self, tenant_id: str, client: Optional[Client] = None):
        if not tenant_id:
            raise ValueError("TenantDB requires a non-empty tenant_id")
        self.tenant_id = str(tenant_id)
        self._client: Client = client if client is not None else get_admin_client()

    def select(self, table: str, columns: str = "*", count: Optional[str] = None):
        return (
            self._client
            .table(table)
            .select(columns, count=count)
            .eq("tenant_id", self.tenant_id)
        )

    def select_one(self, table: str, record_id: str, columns: str = "*"):
        result = (
            self._client
            .table(table)
            .select(columns)
            .eq("id", record_id)
            .eq("tenant_id", self.tenant_id)
            .execute()
        )
        return result.data[0] if result.data else None

    def first(self, query) -> Optional[dict]:
        """Execute a select built from self.select() and return the first row."""
        result = query.limit(1).execute()
        return result.data[0] if result.data else None

    def require_one(self, table: str, record_id: str, columns: str = "*"):
        data = self.select_one(table, record_id, columns)
        if not data:
            raise HTTPException(
                status_code=404,
                detail=f"Record not found in {table}",
            )
        return data

    def insert(self, table: str, payload: dict) -> dict:
        payload["tenant_id"] = self.tenant_id
        result = self._client.table(table).insert(payload).execute()
        return result.data[0] if result.data else {}

    def insert_ignore_duplicates(self, table: str, payload: dict, on_conflict: str) -> Optional[dict]:
        """
        INSERT ... ON CONFLICT DO NOTHING.
        Returns the new row, or None when the conflict key already exists.
        """
        payload["tenant_id"] = self.tenant_id
        result = (
            self._client
            .table(table)
            .upsert(payload, on_conflict=on_conflict, ignore_duplicates=True)
            .execute()
        )
        return result.data[0] if result.data else None

    def update(self, table: str, payload: dict, record_id: str) -> dict:
        payload.pop("tenant_id", None)
        result = (
            self._client
            .table(table)
            .update(payload)
            .eq("id", record_id)
            .eq("tenant_id", self.tenant_id)
            .execute()
        )
        if not result.data:
            raise HTTPException(
                status_code=404,
                detail=f"Record not found or access denied in {table}",
            )
        return result.data[0]

    def update_where(self, table: str, payload: dict, **filters) -> list[dict]:
        """Conditional update. An empty result means no row matched the filters."""
        payload.pop("tenant_id", None)
        query = self._client.table(table).update(payload).eq("tenant_id", self.tenant_id)
        for col, val in filters.items():
            query = query.is_(col, "null") if val is None else query.eq(col, val)
        result = query.execute()
        return result.data or []

    def upsert(self, table: str, payload: dict, on_conflict: str) -> dict:
        payload["tenant_id"] = self.tenant_id
        result = self._client.table(table).upsert(payload, on_conflict=on_conflict).execute()
        return result.data[0] if result.data else {}


# ── Health check ─────────────────────────────────────────────
async def check_db_connection(client: Optional[Client] = None) -> bool:
    try:
        (client or get_admin_client()).table("schoolpay_settings").select("id").limit(1).execute()
        return True
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return False
