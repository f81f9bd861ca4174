import pytest
from fastapi.testclient import TestClient

from backend.app.deps import get_current_user
from backend.app.main import app, error_body
from backend.app.routers import orders as orders_router


@pytest.fixture
def client():
    # Not used as a context manager: startup would try to open the real pool.
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def _as(role):
    app.dependency_overrides[get_current_user] = lambda: {
        "user_id": "00000000-0000-0000-0000-000000000001",
        "email": f"{role}@test.local",
        "full_name": role,
        "role": role,
    }


def test_error_body_merges_dict_detail():
    body = error_body({"error": "insufficient stock", "available": "2"}, 400)
    assert body == {"success": False, "error": "insufficient stock", "available": "2"}
    assert error_body(None, 404) == {"success": False, "error": "not found"}
    assert error_body("boom", 500) == {"success": False, "error": "boom"}


def test_unknown_route_uses_failure_envelope(client):
    r = client.get("/does-not-exist")
    assert r.status_code == 404
    assert r.json()["success"] is False
    assert r.headers.get("X-Request-Id")


def test_missing_token_is_401(client):
    r = client.get("/orders")
    assert r.status_code == 401
    assert r.json() == {"success": False, "error": "missing token"}


def test_body_validation_is_400_with_field_errors(client):
    r = client.post("/auth/login", json={"email": "not-an-email"})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "validation failed"
    fields = {e["field"] for e in body["errors"]}
    assert {"email", "password"} <= fields


def test_role_gate_is_403(client):
    _as("user")
    r = client.post("/orders", json={"items": [{"product_id": "p1", "quantity": 1, "unit_price": 1}]})
    assert r.status_code == 403
    assert r.json() == {"success": False, "error": "permission denied"}


def test_order_created_and_stock_error_detail_over_http(client, fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(name="Uva", stock="2")
    _as("vendedor")

    ok = client.post("/orders", json={"items": [{"product_id": pid, "quantity": 2, "unit_price": 3}]})
    assert ok.status_code == 201
    assert ok.json()["success"] is True
    assert ok.json()["data"]["order_number"] == "ORD-001"

    r = client.post("/orders", json={"items": [{"product_id": pid, "quantity": 1, "unit_price": 3}]})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "insufficient stock for Uva"
    assert body["available"] == "0"
    assert body["requested"] == "1"


def test_unhandled_error_reports_request_id(client, monkeypatch):
    def _broken():
        raise RuntimeError("db exploded")

    monkeypatch.setattr(orders_router, "get_conn", _broken)
    _as("admin")
    r = client.get("/orders/next-number", headers={"X-Request-Id": "req-123"})
    assert r.status_code == 500
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "internal error"
    assert body["request_id"] == "req-123"
