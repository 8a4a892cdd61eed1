from __future__ import annotations

from datetime import datetime

import pytest

from src.flow_billing.flow_billing.container import build_container
from src.flow_billing.flow_billing.main import create_app


@pytest.fixture()
def client(monkeypatch):
    monkeypatch.setenv("APP_ENV", "testing")
    container = build_container(store_backend="memory", clock=lambda: datetime(2024, 3, 1, 9, 0))
    app = create_app(container=container)
    return app.test_client()


def _login(client, role="admin", company_id=1, user_id=10):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
        sess["company_id"] = company_id
        sess["role"] = role


def _create_service(client):
    resp = client.post(
        "/api/services",
        json={
            "stakeholder_id": 7,
            "service_name": "Managed hosting",
            "billing_cycle": "monthly",
            "billing_day": 1,
            "start_date": "2024-02-01",
            "line_items": [{"item_key": "hosting", "description": "Hosting plan", "amount": "300"}],
        },
    )
    assert resp.status_code == 201
    return resp.get_json()


def test_requires_a_session(client):
    resp = client.get("/api/invoices")
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "authentication_required"


def test_staff_cannot_mutate(client):
    _login(client, role="staff")
    resp = client.post("/api/services", json={"service_name": "x"})
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "forbidden"


def test_validation_errors_are_400(client):
    _login(client)
    resp = client.post("/api/services", json={"stakeholder_id": 7, "service_name": "x", "billing_day": 31})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "validation_error"


def test_invoice_flow_over_http(client):
    _login(client)
    service = _create_service(client)
    assert service["billing_cycle"] == "monthly"
    assert service["start_date"] == "2024-02-01"

    resp = client.put(
        f"/api/services/{service['service_id']}/line-items/hosting",
        json={"amount": "450", "effective_date": "2024-02-16"},
    )
    assert resp.status_code == 200

    preview = client.get(f"/api/services/{service['service_id']}/invoice-preview").get_json()
    assert preview["total_amount"] == "375.00"
    assert preview["has_proration"] is True

    resp = client.post(f"/api/services/{service['service_id']}/invoices", json={})
    assert resp.status_code == 201
    invoice = resp.get_json()
    assert invoice["invoice_number"] == "INV-2024-03-01-001"
    assert invoice["status"] == "draft"
    assert [li["amount"] for li in invoice["line_items"]] == ["150.00", "225.00"]

    sent = client.post(f"/api/invoices/{invoice['invoice_id']}/send").get_json()
    assert sent["status"] == "sent"

    resp = client.post(f"/api/invoices/{invoice['invoice_id']}/payments", json={"amount": "375", "method": "card"})
    assert resp.status_code == 201
    assert resp.get_json()["status"] == "paid"
    assert resp.get_json()["outstanding_amount"] == "0.00"

    resp = client.post(f"/api/invoices/{invoice['invoice_id']}/cancel")
    assert resp.status_code == 409
    assert resp.get_json()["details"]["type"] == "CannotCancelPaidInvoiceError"

    summary = client.get("/api/invoices/summary").get_json()
    assert summary["total_invoices"] == 1
    assert summary["paid_amount"] == "375.00"


def test_unknown_invoice_is_404(client):
    _login(client)
    resp = client.get("/api/invoices/999")
    assert resp.status_code == 404


def test_other_company_cannot_see_invoices(client):
    _login(client)
    service = _create_service(client)
    invoice = client.post(f"/api/services/{service['service_id']}/invoices", json={}).get_json()

    _login(client, company_id=2)
    assert client.get(f"/api/invoices/{invoice['invoice_id']}").status_code == 404
    assert client.get("/api/invoices").get_json() == {"invoices": []}


def test_delete_draft(client):
    _login(client)
    service = _create_service(client)
    invoice = client.post(f"/api/services/{service['service_id']}/invoices", json={}).get_json()

    assert client.delete(f"/api/invoices/{invoice['invoice_id']}").status_code == 204
    assert client.get(f"/api/invoices/{invoice['invoice_id']}").status_code == 404


def test_service_maintenance_over_http(client):
    _login(client)
    service = _create_service(client)
    url = f"/api/services/{service['service_id']}"

    resp = client.patch(url, json={"service_name": "Hosting plus", "tax_rate": "5"})
    assert resp.status_code == 200
    assert resp.get_json()["service_name"] == "Hosting plus"

    changes = client.get(f"{url}/changes").get_json()["changes"]
    assert sorted(c["field_changed"] for c in changes if c["change_type"] == "updated") == [
        "service_name",
        "tax_rate",
    ]

    resp = client.post(f"{url}/status", json={"status": "cancelled", "effective_date": "2024-03-16"})
    assert resp.status_code == 200
    assert (resp.get_json()["status"], resp.get_json()["end_date"]) == ("cancelled", "2024-03-16")

    resp = client.post(f"{url}/status", json={"status": "active"})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "validation_error"


def test_service_summary_over_http(client):
    _login(client)
    _create_service(client)

    summary = client.get("/api/services/summary").get_json()

    assert summary["total_services"] == 1
    assert summary["active_services"] == 1
    assert summary["monthly_recurring"] == {"BDT": "300.00"}
    assert client.get("/api/services/summary?stakeholder_id=8").get_json()["total_services"] == 0


def test_delete_service(client):
    _login(client)
    service = _create_service(client)

    assert client.delete(f"/api/services/{service['service_id']}").status_code == 204
    assert client.get(f"/api/services/{service['service_id']}").status_code == 404


def test_invoice_settings_over_http(client):
    _login(client)
    resp = client.put("/api/invoice-settings", json={"invoice_prefix": "acme", "default_payment_terms_days": 14})
    assert resp.status_code == 200
    assert resp.get_json()["invoice_prefix"] == "ACME"

    settings = client.get("/api/invoice-settings").get_json()
    assert (settings["invoice_prefix"], settings["default_payment_terms_days"]) == ("ACME", 14)

    _login(client, role="staff")
    assert client.put("/api/invoice-settings", json={"invoice_prefix": "X"}).status_code == 403
