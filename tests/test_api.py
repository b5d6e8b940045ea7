"""Tests for the HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from checkout_core.main import create_app

CART_HEADERS = {"X-Cart-ID": "guest-abc"}


@pytest.fixture
def client(registry):
    return TestClient(create_app(registry))


def _add_items(client):
    client.post("/cart/items", headers=CART_HEADERS, json={
        "variant_id": "v1",
        "fulfillment_variant_id": "pf-1",
        "quantity": 2,
        "product_name": "Poster",
        "price": "10.00",
        "source": "printful",
    })
    client.post("/cart/items", headers=CART_HEADERS, json={
        "variant_id": "v2", "quantity": 1, "product_name": "Sticker", "price": "15.00",
    })


def _start(client, session_id="s-1"):
    return client.post("/checkout/sessions", headers={**CART_HEADERS, "X-Session-ID": session_id})


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["session_store"]["status"] == "healthy"
        assert "X-Response-Time-Ms" in response.headers

    def test_shutdown_closes_collaborators(self, registry):
        with TestClient(create_app(registry)) as client:
            assert client.get("/health").status_code == 200

        assert registry.auth_client.client.is_closed
        assert registry.payment_client.client.is_closed

    def test_regions(self, client):
        response = client.get("/regions")
        assert [c["code"] for c in response.json()["countries"]] == ["US", "CA", "GB", "DE"]


class TestCartEndpoints:
    def test_add_and_get(self, client):
        _add_items(client)

        body = client.get("/cart", headers=CART_HEADERS).json()

        assert body["item_count"] == 2
        assert body["total_quantity"] == 3
        assert body["items"]["v1"]["fulfillment_variant_id"] == "pf-1"

    def test_missing_cart_is_empty(self, client):
        body = client.get("/cart", headers={"X-Cart-ID": "nobody"}).json()
        assert body["items"] == {}

    def test_cart_header_required(self, client):
        assert client.get("/cart").status_code == 422

    def test_quantity_limit(self, client):
        response = client.post("/cart/items", headers=CART_HEADERS, json={
            "variant_id": "v1", "quantity": 1000, "price": "1.00",
        })

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"

    def test_update_to_zero_removes_line(self, client):
        _add_items(client)

        response = client.patch("/cart/items/v1", headers=CART_HEADERS, json={"quantity": 0})

        assert response.json()["removed"] is True
        assert list(client.get("/cart", headers=CART_HEADERS).json()["items"]) == ["v2"]

    def test_update_unknown_variant(self, client):
        _add_items(client)
        response = client.patch("/cart/items/nope", headers=CART_HEADERS, json={"quantity": 2})
        assert response.status_code == 404

    def test_remove_item(self, client):
        _add_items(client)
        assert client.delete("/cart/items/v2", headers=CART_HEADERS).status_code == 200
        assert client.delete("/cart/items/v2", headers=CART_HEADERS).status_code == 404


class TestCheckoutEndpoints:
    def test_full_guest_checkout(self, client):
        _add_items(client)
        assert _start(client).json()["checkout"]["stage"] == "started"

        assert client.post("/checkout/s-1/guest").json()["checkout"]["stage"] == "identity_resolved"
        client.patch("/checkout/s-1/customer", json={
            "name": "Grace Hopper",
            "email": "grace@example.com",
            "phone": "555-987-6543",
            "address1": "1 Main St",
        })
        client.put("/checkout/s-1/country", json={"country": "US"})
        zip_body = client.put("/checkout/s-1/zip", json={"zip": "90210"}).json()
        assert zip_body["outcome"]["message"] == "Auto-filled: Beverly Hills, CA"

        assert client.post("/checkout/s-1/address").json()["checkout"]["stage"] == "address_ready"
        assert client.post("/checkout/s-1/inventory").json()["checkout"]["stage"] == "inventory_confirmed"
        response = client.post("/checkout/s-1/payment", json={"payment_method": "card"})

        assert response.status_code == 200
        body = response.json()
        assert body["checkout"]["stage"] == "complete"
        assert body["checkout"]["order"]["order_number"] == "ORD-1001"
        assert body["checkout"]["order"]["total"] == "43.79"
        assert client.get("/cart", headers=CART_HEADERS).json()["items"] == {}

    def test_get_checkout(self, client):
        _add_items(client)
        _start(client)

        body = client.get("/checkout/s-1").json()

        assert body["outcome"]["ok"] is True
        assert body["checkout"]["cart"]["item_count"] == 2

    def test_unknown_checkout(self, client):
        response = client.get("/checkout/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "Checkout not found"

    def test_empty_cart(self, client):
        body = _start(client).json()
        assert body["checkout"]["stage"] == "empty_cart"
        assert body["outcome"]["message"] == "Your cart is empty"

    def test_out_of_order_step(self, client):
        _add_items(client)
        _start(client)

        response = client.post("/checkout/s-1/payment")

        assert response.status_code == 400
        assert response.json()["outcome"]["error"] == "validation"
        assert response.json()["checkout"]["stage"] == "started"

    def test_bad_login(self, fake_api, client):
        fake_api.add("POST", "/api/auth/login", status=401, json={"error": "Invalid email or password"})
        _add_items(client)
        _start(client)

        response = client.post("/checkout/s-1/login", json={"email": "ada@example.com", "password": "x"})

        assert response.status_code == 401
        assert response.json()["outcome"]["message"] == "Invalid email or password"

    def test_login_and_merge(self, client):
        _add_items(client)
        client.post("/cart/items", headers={"X-Cart-ID": "user:42"}, json={
            "variant_id": "v1", "quantity": 1, "price": "10.00",
        })
        _start(client)

        login = client.post("/checkout/s-1/login", json={"email": "ada@example.com", "password": "secret"})
        assert login.json()["checkout"]["stage"] == "awaiting_merge"
        assert login.json()["checkout"]["merge"]["combined_count"] == 3

        merged = client.post("/checkout/s-1/merge/confirm").json()

        assert merged["checkout"]["stage"] == "cart_reconciled"
        assert merged["checkout"]["cart"]["items"]["v1"]["quantity"] == 3

    def test_cart_edit_reopens_inventory(self, client):
        _add_items(client)
        _start(client)
        client.post("/checkout/s-1/guest")
        client.patch("/checkout/s-1/customer", json={
            "name": "Grace Hopper", "email": "grace@example.com", "phone": "555-987-6543", "address1": "1 Main St",
        })
        client.put("/checkout/s-1/country", json={"country": "US"})
        client.put("/checkout/s-1/zip", json={"zip": "90210"})
        client.post("/checkout/s-1/address")
        client.post("/checkout/s-1/inventory")

        client.patch("/cart/items/v2", headers=CART_HEADERS, json={"quantity": 3})

        body = client.get("/checkout/s-1").json()
        assert body["checkout"]["stage"] == "address_ready"
        assert body["checkout"]["availability"] is None

    def test_invalid_state_rejected(self, client):
        _add_items(client)
        _start(client)
        client.post("/checkout/s-1/guest")
        client.put("/checkout/s-1/country", json={"country": "US"})

        response = client.put("/checkout/s-1/state", json={"state": "ON"})

        assert response.status_code == 400
