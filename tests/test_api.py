"""HTTP tests for the FastAPI routes, run against mongomock."""

import re
from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

import database
from auth import create_jwt
from database import get_db, utcnow
from main import app, get_notifier
from orders import OrderService

ORDER_NUMBER = re.compile(r"^ORD-\d{8}-\d{3,}$")

PAYLOAD = {
    "customer": {"name": "Maria", "phone": "5511987654321", "address": "Rua A, 10"},
    "items": [{"name": "Pizza Margherita", "quantity": 2, "unit_price": 30,
               "options": [{"name": "Borda", "price": 5}]}],
    "payment_method": "pix",
    "delivery_fee": 5,
}
BOT = {"X-API-Key": "bella-key"}


@pytest.fixture
def client(db, tenant, notifier):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def _bearer(tenant, role="admin"):
    token = create_jwt({"sub": "u1", "name": "Ana", "role": role, "tenant_id": str(tenant["_id"])})
    return {"Authorization": f"Bearer {token}"}


def _create(client, payload=None):
    res = client.post("/orders/bella", json=payload or PAYLOAD, headers=BOT)
    assert res.status_code == 201, res.text
    return res.json()["order"]


def _order_id(client, tenant, order_number):
    orders = client.get("/orders", headers=_bearer(tenant)).json()["orders"]
    return next(o["id"] for o in orders if o["order_number"] == order_number)


class TestChatBotRoutes:
    def test_create_order(self, client, notifier):
        res = client.post("/orders/bella", json=PAYLOAD, headers=BOT)
        assert res.status_code == 201
        body = res.json()
        assert body["ok"] is True
        assert body["order"]["status"] == "pending"
        assert body["order"]["total"] == 75
        assert ORDER_NUMBER.match(body["order"]["order_number"])
        assert notifier.calls[0]["type"] == "new_order"

    def test_tenant_by_id(self, client, tenant):
        res = client.post(f"/orders/{tenant['_id']}", json=PAYLOAD, headers=BOT)
        assert res.status_code == 201

    def test_missing_api_key(self, client, tenant):
        res = client.post("/orders/bella", json=PAYLOAD)
        assert res.status_code == 401
        assert res.json()["error_type"] == "AuthenticationError"

    def test_wrong_api_key(self, client, tenant, other_tenant):
        res = client.post("/orders/bella", json=PAYLOAD, headers={"X-API-Key": "burger-key"})
        assert res.status_code == 401

    def test_unknown_tenant(self, client, tenant):
        res = client.post("/orders/nowhere", json=PAYLOAD, headers=BOT)
        assert res.status_code == 404
        assert res.json()["error_type"] == "TenantNotFoundError"

    def test_business_validation_error(self, client, tenant):
        res = client.post("/orders/bella", json={**PAYLOAD, "items": []}, headers=BOT)
        assert res.status_code == 400
        body = res.json()
        assert body["ok"] is False
        assert body["error_type"] == "ValidationError"
        assert body["fields"] == ["items"]

    def test_malformed_body_is_a_validation_error(self, client, tenant):
        items = [{"name": "Soda", "quantity": 0, "unit_price": 6}]
        res = client.post("/orders/bella", json={**PAYLOAD, "items": items}, headers=BOT)
        assert res.status_code == 400
        body = res.json()
        assert body["error_type"] == "ValidationError"
        assert "items.0.quantity" in body["fields"]

    def test_order_status(self, client, tenant):
        order = _create(client)
        res = client.get(f"/orders/bella/status/{order['order_number']}", headers=BOT)
        assert res.status_code == 200
        assert res.json()["order"]["status"] == "pending"
        assert res.json()["order"]["customer_name"] == "Maria"

    def test_order_status_unknown(self, client, tenant):
        res = client.get("/orders/bella/status/ORD-20000101-001", headers=BOT)
        assert res.status_code == 404
        assert res.json()["error_type"] == "OrderNotFoundError"

    def test_rating_requires_completed_order(self, client, tenant):
        order = _create(client)
        res = client.post(f"/orders/bella/rate/{order['order_number']}", json={"rating": 5}, headers=BOT)
        assert res.status_code == 400
        assert res.json()["fields"] == ["status"]

    def test_rating_completed_order(self, client, tenant):
        order = _create(client)
        order_id = _order_id(client, tenant, order["order_number"])
        for status in ("confirmed", "preparing", "completed"):
            client.patch(f"/orders/{order_id}/status", json={"status": status}, headers=_bearer(tenant))

        res = client.post(f"/orders/bella/rate/{order['order_number']}",
                          json={"rating": 5, "comment": "Perfect"}, headers=BOT)

        assert res.status_code == 200
        assert res.json()["rating"] == 5

    def test_database_unavailable(self, client, tenant, monkeypatch):
        app.dependency_overrides.pop(get_db)
        monkeypatch.setattr(database, "db", None)
        res = client.post("/orders/bella", json=PAYLOAD, headers=BOT)
        assert res.status_code == 503
        assert res.json()["error_type"] == "DependencyError"


class TestAdminRoutes:
    def test_requires_token(self, client, tenant):
        res = client.get("/orders")
        assert res.status_code == 401

    def test_rejects_invalid_token(self, client, tenant):
        res = client.get("/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_requires_staff_role(self, client, tenant):
        res = client.get("/orders", headers=_bearer(tenant, role="customer"))
        assert res.status_code == 403
        assert res.json()["error_type"] == "AuthorizationError"

    def test_list_and_get(self, client, tenant):
        order = _create(client)
        listing = client.get("/orders", headers=_bearer(tenant)).json()
        assert listing["pagination"]["total"] == 1
        order_id = listing["orders"][0]["id"]

        res = client.get(f"/orders/{order_id}", headers=_bearer(tenant))
        assert res.status_code == 200
        assert res.json()["order"]["order_number"] == order["order_number"]

    def test_orders_of_other_tenant_are_invisible(self, client, tenant, other_tenant):
        order = _create(client)
        order_id = _order_id(client, tenant, order["order_number"])
        res = client.get(f"/orders/{order_id}", headers=_bearer(other_tenant))
        assert res.status_code == 404

    def test_invalid_transition(self, client, tenant):
        order = _create(client)
        order_id = _order_id(client, tenant, order["order_number"])
        res = client.patch(f"/orders/{order_id}/status", json={"status": "completed"}, headers=_bearer(tenant))
        assert res.status_code == 400
        assert res.json()["error_type"] == "InvalidTransitionError"
        assert res.json()["fields"] == ["status"]

    def test_unknown_status_value(self, client, tenant):
        order = _create(client)
        order_id = _order_id(client, tenant, order["order_number"])
        res = client.patch(f"/orders/{order_id}/status", json={"status": "lost"}, headers=_bearer(tenant))
        assert res.status_code == 400
        assert res.json()["fields"] == ["status"]

    def test_valid_transition_notifies_customer(self, client, tenant, notifier):
        order = _create(client)
        order_id = _order_id(client, tenant, order["order_number"])
        res = client.patch(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=_bearer(tenant))
        assert res.status_code == 200
        assert res.json()["status"] == "confirmed"
        assert notifier.calls[-1]["type"] == "status_changed"
        assert notifier.calls[-1]["phone"] == "5511987654321"

    def test_notes(self, client, tenant):
        order = _create(client)
        order_id = _order_id(client, tenant, order["order_number"])

        empty = client.patch(f"/orders/{order_id}/notes", json={"note": "  "}, headers=_bearer(tenant))
        assert empty.status_code == 400

        res = client.patch(f"/orders/{order_id}/notes", json={"note": "Call on arrival"}, headers=_bearer(tenant))
        assert res.status_code == 200
        assert res.json()["notes"].endswith("Ana: Call on arrival")

    def test_stats_overview(self, client, tenant):
        _create(client)
        today = utcnow().date()
        params = {
            "period": "custom",
            "start_date": (today - timedelta(days=1)).isoformat(),
            "end_date": (today + timedelta(days=1)).isoformat(),
        }
        res = client.get("/orders/stats/overview", params=params, headers=_bearer(tenant))
        assert res.status_code == 200
        stats = res.json()["stats"]
        assert stats["total_orders"] == 1
        assert stats["total_sales"] == 75
        assert stats["by_status"]["pending"]["count"] == 1

    def test_stats_rejects_unknown_period(self, client, tenant):
        res = client.get("/orders/stats/overview", params={"period": "yearly"}, headers=_bearer(tenant))
        assert res.status_code == 400

    def test_stats_rejects_inverted_window(self, client, tenant):
        params = {"period": "custom", "start_date": "2026-10-20", "end_date": "2026-10-01"}
        res = client.get("/orders/stats/overview", params=params, headers=_bearer(tenant))
        assert res.status_code == 400

    def test_list_rejects_bad_date_under_its_own_name(self, client, tenant):
        res = client.get("/orders", params={"date_to": "nope"}, headers=_bearer(tenant))
        assert res.status_code == 400
        assert res.json()["fields"] == ["date_to"]
        res = client.get("/orders", params={"date_from": "nope"}, headers=_bearer(tenant))
        assert res.json()["fields"] == ["date_from"]


class TestErrorHandling:
    def test_store_failure_is_a_dependency_error(self, client, tenant, monkeypatch):
        def unreachable(*args, **kwargs):
            raise ServerSelectionTimeoutError("mongo:27017: timed out")

        monkeypatch.setattr(mongomock.Collection, "count_documents", unreachable)
        res = client.get("/orders", headers=_bearer(tenant))

        assert res.status_code == 503
        assert res.json()["error_type"] == "DependencyError"
        assert "mongo:27017" not in res.text

    def test_unexpected_error_is_opaque(self, client, tenant, monkeypatch, caplog):
        def broken(self, tenant_id, order_id):
            raise RuntimeError("secret stack detail")

        monkeypatch.setattr(OrderService, "get_order", broken)
        res = TestClient(app, raise_server_exceptions=False).get(
            f"/orders/{ObjectId()}", headers=_bearer(tenant)
        )

        assert res.status_code == 500
        body = res.json()
        assert body["error_type"] == "InternalError"
        assert body["detail"] == "Internal error"
        assert "secret stack detail" not in res.text
        assert f"(tenant {tenant['_id']})" in caplog.text
