import os
import sys
import uuid
from pathlib import Path

import httpx
import pytest


# Ensure `import app...` resolves when tests run from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))


# Minimal defaults so settings can initialize in test environments.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SCHOOLPAY_BASE_URL", "https://schoolpay.test/paymentapi/AndroidRS")


from fakes import API_SECRET, SCHOOL_CODE, TENANT_A, FakeSupabase, mock_provider  # noqa: E402


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def school(db):
    """Tenant A, configured, with one student holding an open fee."""
    db.seed(
        "schoolpay_settings",
        tenant_id=TENANT_A, school_code=SCHOOL_CODE, api_secret=API_SECRET,
        webhook_enabled=True, auto_reconcile=True,
    )
    student = db.seed(
        "students",
        tenant_id=TENANT_A, schoolpay_payment_code="SP001",
        admission_number="ADM-001", is_active=True,
    )
    fee = db.seed(
        "student_fees",
        tenant_id=TENANT_A, student_id=student["id"],
        total_amount=200000, amount_paid=0, balance=200000, status="pending",
    )
    return {"tenant_id": TENANT_A, "student": student, "fee": fee}


@pytest.fixture
def auth_headers():
    from app.core.security import TokenData, create_access_token

    def _make(tenant_id=TENANT_A, role="school_admin"):
        token = create_access_token(TokenData(
            user_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            role=role,
            email="bursar@example.com",
            full_name="Test Bursar",
        ))
        return {"Authorization": f"Bearer {token}"}
    return _make


@pytest.fixture
def api(db):
    """TestClient wired to the fake database. Set api.provider to mock SchoolPay."""
    from fastapi.testclient import TestClient
    from app.main import app
    from app.core.database import get_db_client
    from app.utils.schoolpay_client import get_schoolpay_client

    client = TestClient(app)
    client.provider = mock_provider(lambda request: httpx.Response(500))
    app.dependency_overrides[get_db_client] = lambda: db
    app.dependency_overrides[get_schoolpay_client] = lambda: client.provider
    yield client
    app.dependency_overrides.clear()
