from fakes import TENANT_A, TENANT_B, provider_payment

BASE = "/api/v1/schoolpay"


def _ledger(db, tenant_id=TENANT_A, receipt="R1", status="unmatched", **extra):
    row = {
        "tenant_id": tenant_id,
        "schoolpay_receipt_number": receipt,
        "amount": 50000,
        "student_payment_code": "SP001",
        "transaction_type": "SCHOOL_FEES",
        "reconciliation_status": status,
        "matched_student_id": None,
    }
    row.update(extra)
    return db.seed("schoolpay_transactions", **row)


# ── Settings ─────────────────────────────────────────────────
class TestSettings:
    def test_get_masks_the_secret(self, api, school, auth_headers):
        data = api.get(f"{BASE}/settings", headers=auth_headers()).json()["data"]

        assert data["school_code"] == "990001"
        assert data["api_secret_set"] is True
        assert data["api_secret_hint"] == "••••pass"
        assert "api_secret" not in data
        assert data["webhook_url"].endswith("/api/v1/schoolpay/webhook")

    def test_get_unconfigured_returns_no_data(self, api, db, auth_headers):
        body = api.get(f"{BASE}/settings", headers=auth_headers(tenant_id=TENANT_B)).json()
        assert body["success"] is True
        assert body["data"] is None

    def test_put_creates_settings(self, api, db, auth_headers):
        resp = api.put(
            f"{BASE}/settings",
            json={"school_code": "123456", "api_secret": "new-secret", "auto_reconcile": False},
            headers=auth_headers(tenant_id=TENANT_B),
        )

        assert resp.status_code == 200
        [row] = db.rows("schoolpay_settings")
        assert row["tenant_id"] == TENANT_B
        assert (row["school_code"], row["api_secret"], row["auto_reconcile"]) == ("123456", "new-secret", False)
        assert any(a["action"] == "schoolpay.settings_updated" for a in db.rows("activity_logs"))

    def test_put_without_secret_keeps_existing(self, api, db, school, auth_headers):
        api.put(f"{BASE}/settings", json={"school_code": "990002"}, headers=auth_headers())

        [row] = db.rows("schoolpay_settings")
        assert row["school_code"] == "990002"
        assert row["api_secret"] == "secret-pass"

    def test_first_save_needs_a_secret(self, api, db, auth_headers):
        resp = api.put(f"{BASE}/settings", json={"school_code": "1"}, headers=auth_headers(tenant_id=TENANT_B))
        assert resp.status_code == 400
        assert db.rows("schoolpay_settings") == []

    def test_bursar_cannot_change_settings(self, api, school, auth_headers):
        resp = api.put(
            f"{BASE}/settings", json={"school_code": "990002"},
            headers=auth_headers(role="bursar"),
        )
        assert resp.status_code == 403


# ── Ledger listing ───────────────────────────────────────────
class TestTransactions:
    def test_list_is_tenant_scoped_and_filterable(self, api, db, school, auth_headers):
        _ledger(db, receipt="R1")
        _ledger(db, receipt="R2", status="reconciled")
        _ledger(db, tenant_id=TENANT_B, receipt="R3")

        body = api.get(f"{BASE}/transactions", headers=auth_headers()).json()
        assert body["total"] == 2
        assert [t["schoolpay_receipt_number"] for t in body["data"]] == ["R2", "R1"]

        only = api.get(f"{BASE}/transactions?status=unmatched", headers=auth_headers()).json()
        assert [t["schoolpay_receipt_number"] for t in only["data"]] == ["R1"]

    def test_list_paginates(self, api, db, school, auth_headers):
        for i in range(5):
            _ledger(db, receipt=f"R{i}")

        body = api.get(f"{BASE}/transactions?page=2&page_size=2", headers=auth_headers()).json()

        assert (body["total"], body["page"], body["total_pages"]) == (5, 2, 3)
        assert [t["schoolpay_receipt_number"] for t in body["data"]] == ["R2", "R1"]

    def test_stats(self, api, db, school, auth_headers):
        _ledger(db, receipt="R1", status="reconciled", amount=50000)
        _ledger(db, receipt="R2", status="reconciled", amount=25000)
        _ledger(db, receipt="R3", status="unmatched", amount=1000)

        data = api.get(f"{BASE}/transactions/stats", headers=auth_headers()).json()["data"]

        assert (data["total"], data["reconciled"], data["unmatched"], data["matched"]) == (3, 2, 1, 0)
        assert float(data["total_amount"]) == 76000
        assert float(data["reconciled_amount"]) == 75000


# ── Manual reconcile ─────────────────────────────────────────
class TestManualReconcile:
    def test_unmatched_is_rematched_first(self, api, db, school, auth_headers):
        txn = _ledger(db)

        resp = api.post(f"{BASE}/transactions/{txn['id']}/reconcile", headers=auth_headers(role="bursar"))

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "matched"
        [row] = db.rows("schoolpay_transactions")
        assert row["matched_student_id"] == school["student"]["id"]
        assert db.rows("fee_payments") == []

    def test_matched_is_reconciled(self, api, db, school, auth_headers):
        txn = _ledger(db, status="matched", matched_student_id=school["student"]["id"])

        data = api.post(f"{BASE}/transactions/{txn['id']}/reconcile", headers=auth_headers()).json()["data"]

        assert data["status"] == "reconciled"
        assert db.rows("student_fees")[0]["amount_paid"] == 50000
        assert db.rows("schoolpay_transactions")[0]["fee_payment_id"] == data["fee_payment_id"]

    def test_still_unmatched_reports_so(self, api, db, school, auth_headers):
        txn = _ledger(db, student_payment_code="NOBODY")

        data = api.post(f"{BASE}/transactions/{txn['id']}/reconcile", headers=auth_headers()).json()["data"]

        assert data["status"] == "unmatched"
        assert db.rows("schoolpay_transactions")[0]["reconciliation_status"] == "unmatched"

    def test_reconciled_transaction_is_409(self, api, db, school, auth_headers):
        api.post(f"{BASE}/webhook", json={"payment": provider_payment()})
        [txn] = db.rows("schoolpay_transactions")

        resp = api.post(f"{BASE}/transactions/{txn['id']}/reconcile", headers=auth_headers())

        assert resp.status_code == 409
        assert resp.json()["success"] is False
        assert len(db.rows("fee_payments")) == 1

    def test_other_tenants_transaction_is_404(self, api, db, school, auth_headers):
        txn = _ledger(db, tenant_id=TENANT_B)
        resp = api.post(f"{BASE}/transactions/{txn['id']}/reconcile", headers=auth_headers())
        assert resp.status_code == 404

    def test_staff_role_is_forbidden(self, api, db, school, auth_headers):
        txn = _ledger(db)
        resp = api.post(f"{BASE}/transactions/{txn['id']}/reconcile", headers=auth_headers(role="staff"))
        assert resp.status_code == 403
