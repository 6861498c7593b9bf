import pytest
from fastapi.testclient import TestClient
from jose import jwt

import auth
from conftest import EXTERNAL_SECRET
from database import get_db
from main import app


@pytest.fixture
def order_payload(make_product, address):
    def _payload(**product):
        product_id = make_product(**product)
        return {"items": [{"product_id": product_id, "quantity": 2, "price": 0.01}], "shipping_address": address}
    return _payload


def external_token(**claims):
    return jwt.encode({"sub": "ext-user-1", "email": "Ext@Example.com", "name": "Ext User", **claims},
                      EXTERNAL_SECRET, algorithm="HS256")


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["success"] is True


def test_unknown_route(client):
    res = client.get("/nowhere")
    assert res.status_code == 404
    assert res.json()["success"] is False
    assert res.json()["error"] == "Endpoint not found"


# Orders

def test_guest_order(client, order_payload):
    res = client.post("/orders", json=order_payload(price=12.5))
    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    order = body["data"]
    assert order["user_id"] == "guest"
    assert order["total_amount"] == 25.0
    assert order["shipping_cost"] == 5.99
    assert order["status"] == "pending"
    assert order["order_number"] == order["id"][-8:].upper()
    assert order["items"][0]["product"]["price"] == 12.5


def test_order_validation(client, order_payload, address):
    res = client.post("/orders", json={"items": [], "shipping_address": address})
    assert res.status_code == 400
    assert res.json()["success"] is False

    payload = order_payload()
    payload["shipping_address"]["zip_code"] = "ABCDE"
    res = client.post("/orders", json=payload)
    assert res.status_code == 400
    assert res.json()["error"] == "Validation failed"
    assert res.json()["details"]

    payload = order_payload()
    payload["items"][0]["quantity"] = 21
    assert client.post("/orders", json=payload).status_code == 400


def test_order_missing_and_out_of_stock_products(client, order_payload, address):
    missing = {"items": [{"product_id": "0123456789abcdef01234567", "quantity": 1}], "shipping_address": address}
    res = client.post("/orders", json=missing)
    assert res.status_code == 404
    assert "0123456789abcdef01234567" in res.json()["error"]

    res = client.post("/orders", json=order_payload(name="Sold Out", in_stock=False))
    assert res.status_code == 400
    assert res.json()["error"] == "Product out of stock: Sold Out"


def test_order_lifecycle(client, db, user, auth_headers, order_payload):
    res = client.post("/orders", json=order_payload(price=40.0), headers=auth_headers)
    assert res.status_code == 201
    order_id = res.json()["data"]["id"]
    assert db["user"].find_one({"_id": user["_id"]})["loyalty_points"] == 80

    res = client.get("/orders", headers=auth_headers)
    assert res.status_code == 200
    assert [o["id"] for o in res.json()["data"]] == [order_id]
    assert res.json()["pagination"]["total"] == 1

    res = client.get(f"/orders/{order_id}", headers=auth_headers)
    assert res.json()["data"]["id"] == order_id

    res = client.put(f"/orders/{order_id}/status", json={"status": "confirmed"})
    assert res.status_code == 200
    assert res.json()["data"]["tracking_number"].startswith("SH")

    res = client.put(f"/orders/{order_id}/status", json={"status": "shipped"})
    assert res.json()["data"]["estimated_delivery"]

    res = client.delete(f"/orders/{order_id}", headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "Cannot cancel order that has been shipped"


def test_cancel_order(client, auth_headers, order_payload):
    order_id = client.post("/orders", json=order_payload(), headers=auth_headers).json()["data"]["id"]
    res = client.delete(f"/orders/{order_id}", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "cancelled"


def test_invalid_status_update(client, order_payload):
    order_id = client.post("/orders", json=order_payload()).json()["data"]["id"]
    res = client.put(f"/orders/{order_id}/status", json={"status": "lost"})
    assert res.status_code == 400

    res = client.put("/orders/not-an-id/status", json={"status": "confirmed"})
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid order ID"


def test_orders_require_auth(client):
    res = client.get("/orders")
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": "Access token required"}

    res = client.get("/orders", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


def test_order_not_visible_to_other_users(client, make_user, auth_headers, order_payload):
    order_id = client.post("/orders", json=order_payload(), headers=auth_headers).json()["data"]["id"]
    other = make_user()
    headers = {"Authorization": f"Bearer {auth.create_access_token({'sub': str(other['_id'])})}"}

    assert client.get(f"/orders/{order_id}", headers=headers).status_code == 404
    assert client.delete(f"/orders/{order_id}", headers=headers).status_code == 404


def test_invalid_token_on_optional_route_is_guest(client, order_payload):
    res = client.post("/orders", json=order_payload(), headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 201
    assert res.json()["data"]["user_id"] == "guest"


def test_admin_key_required_when_configured(client, monkeypatch, order_payload):
    monkeypatch.setattr(auth, "ADMIN_API_KEY", "admin-key")
    order_id = client.post("/orders", json=order_payload()).json()["data"]["id"]

    res = client.put(f"/orders/{order_id}/status", json={"status": "confirmed"})
    assert res.status_code == 403
    assert client.post("/products/sync").status_code == 403

    res = client.put(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers={"X-Admin-Key": "admin-key"})
    assert res.status_code == 200


# Products

def test_product_search_and_get(client, lookup):
    res = client.get("/products/search", params={"code": " sw123 "})
    assert res.status_code == 200
    product = res.json()["data"]
    assert product["code"] == "SW123"
    assert product["discount_percentage"] == 33

    res = client.get(f"/products/{product['id']}")
    assert res.json()["data"]["code"] == "SW123"
    client.get("/products/search", params={"code": "SW123"})
    assert lookup.calls == ["SW123"]


def test_product_search_validation(client):
    assert client.get("/products/search").status_code == 400
    assert client.get("/products/search", params={"code": "ab"}).status_code == 400


def test_product_not_found(client):
    assert client.get("/products/0123456789abcdef01234567").status_code == 404


def test_sync_featured_and_recommendations(client):
    res = client.post("/products/sync")
    assert res.status_code == 200
    assert res.json()["message"] == "Synced 3 products"

    res = client.get("/products/featured", params={"limit": 2})
    body = res.json()
    assert [p["code"] for p in body["data"]] == ["SW2301003", "SW2301001"]
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    res = client.get("/products/recommendations")
    assert res.json()["data"][0]["reason"] == "Top rated product"


# Users and authentication

def test_register_and_login(client):
    res = client.post("/auth/register", json={"name": "Local", "email": "Local@Example.com", "password": "secret12"})
    assert res.status_code == 201
    assert res.json()["data"]["user"]["email"] == "local@example.com"
    assert "password_hash" not in res.json()["data"]["user"]

    assert client.post("/auth/register", json={"name": "Again", "email": "local@example.com", "password": "secret12"}).status_code == 400
    assert client.post("/auth/login", json={"email": "local@example.com", "password": "wrong"}).status_code == 400

    res = client.post("/auth/login", json={"email": "local@example.com", "password": "secret12"})
    token = res.json()["data"]["access_token"]
    res = client.get("/users/profile", headers={"Authorization": f"Bearer {token}"})
    assert res.json()["data"]["display_name"] == "Local"


def test_external_identity_provisions_user(client, db):
    headers = {"Authorization": f"Bearer {external_token()}"}
    res = client.get("/users/profile", headers=headers)
    assert res.status_code == 200
    profile = res.json()["data"]
    assert profile["email"] == "ext@example.com"
    assert profile["display_name"] == "Ext User"
    assert profile["loyalty_tier"] == 1
    assert profile["points_to_next_tier"] == 500

    client.get("/users/profile", headers=headers)
    assert db["user"].count_documents({"uid": "ext-user-1"}) == 1


def test_external_user_order_uses_user_id(client, db, order_payload):
    headers = {"Authorization": f"Bearer {external_token()}"}
    order = client.post("/orders", json=order_payload(price=10.0), headers=headers).json()["data"]
    user = db["user"].find_one({"uid": "ext-user-1"})
    assert order["user_id"] == str(user["_id"])
    assert user["loyalty_points"] == 20


def test_profile_and_preferences(client, auth_headers):
    res = client.put("/users/profile", json={"display_name": "Renamed"}, headers=auth_headers)
    assert res.json()["data"]["display_name"] == "Renamed"

    res = client.put("/users/preferences", json={"notifications": {"promotions": False}, "language": "fr"},
                     headers=auth_headers)
    assert res.json()["data"]["notifications"]["promotions"] is False
    assert res.json()["data"]["notifications"]["order_updates"] is True

    res = client.get("/users/preferences", headers=auth_headers)
    assert res.json()["data"]["language"] == "fr"

    res = client.put("/users/preferences", json={"currency": "EURO"}, headers=auth_headers)
    assert res.status_code == 400


def test_address_endpoints(client, auth_headers, address):
    res = client.post("/users/addresses", json=address, headers=auth_headers)
    assert res.status_code == 200
    assert len(res.json()["data"]) == 1

    res = client.put("/users/addresses/0", json={"city": "Chicago"}, headers=auth_headers)
    assert res.json()["data"][0]["city"] == "Chicago"

    assert client.put("/users/addresses/5", json={"city": "X"}, headers=auth_headers).status_code == 404
    assert client.delete("/users/addresses/-1", headers=auth_headers).status_code == 400
    assert client.post("/users/addresses", json=dict(address, phone="123"), headers=auth_headers).status_code == 400

    res = client.delete("/users/addresses/0", headers=auth_headers)
    assert res.json()["data"] == []


def test_users_require_auth(client):
    assert client.get("/users/profile").status_code == 401
    assert client.post("/users/addresses", json={}).status_code in (400, 401)


def test_unexpected_errors_return_envelope():
    def broken_db():
        raise RuntimeError("storage unavailable")

    app.dependency_overrides[get_db] = broken_db
    try:
        res = TestClient(app, raise_server_exceptions=False).get("/products/featured")
    finally:
        app.dependency_overrides.clear()
    assert res.status_code == 500
    assert res.json()["success"] is False
