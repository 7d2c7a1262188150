"""Tests for the FastAPI endpoints."""

import httpx
import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from conftest import mint_token
from schemas.orders import CustomerInfo, Order, OrderStatus
from services.payment_gateway import KhaltiGateway


def order_payload(product_id, pidx="bZQLD9wRVWo4CdESSfuSsB", quantity=1, **overrides):
    payload = {
        "pidx": pidx,
        "transactionId": "GFq9PFS7b2iYvL8Lir9oXe",
        "productId": product_id,
        "quantity": quantity,
        "totalAmount": overrides.pop("totalAmount") if "totalAmount" in overrides else 750.0 * quantity,
        "shippingAddress": {
            "fullName": "Sita Sharma",
            "phone": "9800000001",
            "addressLine1": "Jhamsikhel Road",
            "city": "Lalitpur",
            "postalCode": "44600",
        },
    }
    payload.update(overrides)
    return payload


class TestHealthCheck:
    def test_health(self, api_client):
        response = api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["storage"] == "MemoryStorage"
        assert "X-Request-Id" in response.headers
        assert "X-Response-Time-Ms" in response.headers


class TestAuth:
    def test_missing_token(self, api_client):
        response = api_client.get("/api/cart")

        assert response.status_code == 401
        assert response.json()["error"] == "Not authorized, token missing"

    def test_invalid_token(self, api_client):
        bad = mint_token("user-1", secret="someone-elses-secret")

        response = api_client.get("/api/cart", headers={"Authorization": f"Bearer {bad}"})

        assert response.status_code == 401
        assert response.json()["error"] == "Not authorized, token invalid"

    def test_admin_routes_reject_users(self, api_client, buyer_headers):
        response = api_client.get("/api/admin/orders", headers=buyer_headers)

        assert response.status_code == 403
        assert response.json()["error_key"] == "role_not_permitted"


class TestCreateOrder:
    def test_created(self, api_client, buyer_headers, product):
        response = api_client.post("/api/orders", json=order_payload(product.id, quantity=2), headers=buyer_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Order created and stock updated successfully"
        assert data["order"]["status"] == "confirmed"
        assert data["order"]["paymentStatus"] == "completed"
        assert data["order"]["product"]["name"] == "Handwoven Dhaka Shawl"
        assert data["stockUpdate"] == {
            "productId": product.id,
            "productName": "Handwoven Dhaka Shawl",
            "oldStock": 5,
            "newStock": 3,
            "delisted": False,
        }

    def test_replay_answers_conflict_with_order(self, api_client, buyer_headers, product, storage):
        first = api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers)
        second = api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers)

        assert second.status_code == 409
        data = second.json()
        assert data["error"] == "Order already exists"
        assert data["error_key"] == "order_exists"
        assert data["orderId"] == first.json()["order"]["id"]
        assert data["order"]["pidx"] == "bZQLD9wRVWo4CdESSfuSsB"
        assert storage.product_snapshot(product.id).stock_quantity == 4

    def test_replay_by_other_user_hides_order(self, api_client, buyer_headers, other_headers, product):
        api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers)

        response = api_client.post("/api/orders", json=order_payload(product.id), headers=other_headers)

        assert response.status_code == 409
        assert "order" not in response.json()

    def test_insufficient_stock(self, api_client, buyer_headers, product):
        response = api_client.post("/api/orders", json=order_payload(product.id, quantity=9), headers=buyer_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "Insufficient stock: only 5 available"

    def test_missing_fields(self, api_client, buyer_headers):
        response = api_client.post("/api/orders", json={"quantity": 1}, headers=buyer_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields: pidx, productId, totalAmount"

    def test_malformed_body(self, api_client, buyer_headers, product):
        response = api_client.post(
            "/api/orders", json=order_payload(product.id, quantity="lots", totalAmount=750.0), headers=buyer_headers
        )

        assert response.status_code == 400
        assert response.json()["error_key"] == "validation_error"

    def test_persistence_failure_points_to_pidx(self, settings, storage, gateway, buyer_headers, product, monkeypatch):
        from storage.memory import InMemoryUnitOfWork

        async def broken_insert(self, order):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(InMemoryUnitOfWork, "insert_order", broken_insert)
        app = create_app(settings=settings, storage=storage, gateway=gateway)

        with TestClient(app) as client:
            response = client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers)

        assert response.status_code == 500
        data = response.json()
        assert data["error_key"] == "order_creation_failed"
        assert data["pidx"] == "bZQLD9wRVWo4CdESSfuSsB"
        assert "pidx" in data["hint"]

    def test_lookup_by_pidx(self, api_client, buyer_headers, other_headers, product):
        api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers)

        mine = api_client.get("/api/orders/pidx/bZQLD9wRVWo4CdESSfuSsB", headers=buyer_headers)
        theirs = api_client.get("/api/orders/pidx/bZQLD9wRVWo4CdESSfuSsB", headers=other_headers)

        assert mine.status_code == 200
        assert theirs.status_code == 403

    def test_orders_by_product_for_vendor(self, api_client, buyer_headers, vendor_headers, product):
        api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers)

        response = api_client.get(f"/api/orders/product/{product.id}", headers=vendor_headers)
        forbidden = api_client.get(f"/api/orders/product/{product.id}", headers=buyer_headers)

        assert response.status_code == 200
        assert response.json()["pagination"]["total"] == 1
        assert forbidden.status_code == 403


class TestVendorOrders:
    def test_listing_with_filters(self, api_client, buyer_headers, vendor_headers, product):
        api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers)

        response = api_client.get(
            "/api/vendor/orders",
            params={"status": "confirmed", "paymentStatus": "all", "startDate": "2020-01-01T00:00:00Z"},
            headers=vendor_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {"page": 1, "limit": 100, "total": 1, "pages": 1}
        assert body["orders"][0]["productId"] == product.id

    def test_vendor_role_required(self, api_client, buyer_headers, admin_headers):
        assert api_client.get("/api/vendor/orders", headers=buyer_headers).status_code == 403
        assert api_client.get("/api/vendor/orders", headers=admin_headers).status_code == 403


class TestUserOrders:
    def test_list_and_detail(self, api_client, buyer_headers, product):
        created = api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers).json()
        order_id = created["order"]["id"]

        listing = api_client.get("/api/user/orders", params={"status": "confirmed"}, headers=buyer_headers)
        detail = api_client.get(f"/api/user/orders/{order_id}", headers=buyer_headers)

        assert listing.json()["pagination"]["total"] == 1
        assert detail.json()["allowedActions"] == ["cancelled"]

    def test_cancel_then_cancel_again(self, api_client, buyer_headers, product, storage):
        created = api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers).json()
        order_id = created["order"]["id"]

        first = api_client.put(f"/api/user/orders/{order_id}/cancel", json={"reason": "Changed my mind"},
                               headers=buyer_headers)
        second = api_client.put(f"/api/user/orders/{order_id}/cancel", headers=buyer_headers)

        assert first.status_code == 200
        assert first.json()["order"]["cancellationReason"] == "Changed my mind"
        assert second.status_code == 409
        assert second.json()["error"] == "Order is already cancelled"

    def test_refund_before_delivery_rejected(self, api_client, buyer_headers, product):
        created = api_client.post("/api/orders", json=order_payload(product.id), headers=buyer_headers).json()

        response = api_client.put(f"/api/user/orders/{created['order']['id']}/refund", headers=buyer_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "Refund can only be requested for delivered orders"


class TestAdminOrders:
    @pytest.fixture
    def order_id(self, storage, product):
        return storage.seed_order(Order(
            pidx="admin-pidx",
            product_id=product.id,
            user_id="user-1",
            quantity=1,
            total_amount=750.0,
            customer_info=CustomerInfo(name="Sita Sharma", email="sita@example.com"),
            status=OrderStatus.READY_TO_SHIP,
        )).id

    def test_shipping_update_ships_order(self, api_client, admin_headers, order_id):
        response = api_client.put(
            f"/api/admin/orders/{order_id}/shipping",
            json={"carrier": "Nepal Can Move", "trackingNumber": "NCM-884211"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "shipped"
        assert order["shipping"]["trackingNumber"] == "NCM-884211"

    def test_status_update_and_search(self, api_client, admin_headers, order_id):
        response = api_client.put(f"/api/admin/orders/{order_id}/status", json={"status": "shipped"},
                                  headers=admin_headers)
        listing = api_client.get("/api/admin/orders", params={"search": "admin-pidx"}, headers=admin_headers)

        assert response.json()["order"]["timeline"]["shipped"] is not None
        assert listing.json()["pagination"]["total"] == 1

    def test_invalid_status(self, api_client, admin_headers, order_id):
        response = api_client.put(f"/api/admin/orders/{order_id}/status", json={"status": "lost"},
                                  headers=admin_headers)

        assert response.status_code == 400
        assert "validStatuses" in response.json()

    def test_admin_cancel_rejected_after_fulfillment_started(self, api_client, admin_headers, order_id):
        response = api_client.put(f"/api/admin/orders/{order_id}/cancel", json={"cancellationReason": "Fraud"},
                                  headers=admin_headers)

        assert response.status_code == 409

    def test_notes(self, api_client, admin_headers, order_id):
        response = api_client.put(f"/api/admin/orders/{order_id}/notes", json={"notes": "Fragile"},
                                  headers=admin_headers)

        assert response.json()["order"]["notes"] == "Fragile"


class TestCartEndpoints:
    def test_cart_lifecycle(self, api_client, buyer_headers, product):
        empty = api_client.get("/api/cart", headers=buyer_headers)
        added = api_client.post("/api/cart/add", json={"productId": product.id, "quantity": 2},
                                headers=buyer_headers)
        updated = api_client.put(f"/api/cart/update/{product.id}", json={"quantity": 3}, headers=buyer_headers)
        removed = api_client.delete(f"/api/cart/remove/{product.id}", headers=buyer_headers)

        assert empty.json()["items"] == []
        assert added.json()["total"] == 1500.0
        assert added.json()["itemCount"] == 2
        assert updated.json()["items"][0]["quantity"] == 3
        assert removed.json()["items"] == []

    def test_add_unknown_product(self, api_client, buyer_headers):
        response = api_client.post("/api/cart/add", json={"productId": "missing"}, headers=buyer_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "Product not found or unavailable"

    def test_clear_without_cart(self, api_client, buyer_headers):
        response = api_client.delete("/api/cart/clear", headers=buyer_headers)

        assert response.status_code == 404

    def test_sync(self, api_client, buyer_headers, product):
        response = api_client.post(
            "/api/cart/sync",
            json={"items": [{"productId": product.id, "quantity": 2}, {"productId": "missing", "quantity": 1}]},
            headers=buyer_headers,
        )

        assert [(i["productId"], i["quantity"]) for i in response.json()["items"]] == [(product.id, 2)]


class TestPaymentEndpoints:
    def test_initiate_below_minimum(self, api_client):
        response = api_client.post("/api/payments/khalti/initiate", json={
            "return_url": "https://shop.example.com/return",
            "website_url": "https://shop.example.com",
            "amount": 999,
            "purchase_order_id": "order-1",
            "purchase_order_name": "Shawl",
        })

        assert response.status_code == 400
        assert response.json()["error"] == "Amount should be greater than Rs. 10, that is 1000 paisa."

    def test_lookup(self, api_client):
        response = api_client.post("/api/payments/khalti/lookup", json={"pidx": "bZQLD9wRVWo4CdESSfuSsB"})

        assert response.status_code == 200
        assert response.json()["status"] == "Completed"

    def test_gateway_error_passed_through(self, settings, storage):
        body = {"detail": "Not found.", "error_key": "validation_error"}
        gateway = KhaltiGateway(settings, transport=httpx.MockTransport(lambda request: httpx.Response(404, json=body)))

        with TestClient(create_app(settings=settings, storage=storage, gateway=gateway)) as client:
            response = client.post("/api/payments/khalti/lookup", json={"pidx": "unknown"})

        assert response.status_code == 404
        assert response.json() == body
        assert response.headers["X-Error-Kind"] == "gateway_error"

    def test_unreachable_gateway_carries_hint(self, settings, storage):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        gateway = KhaltiGateway(settings, transport=httpx.MockTransport(refuse))

        with TestClient(create_app(settings=settings, storage=storage, gateway=gateway)) as client:
            response = client.post(
                "/api/payments/khalti/lookup",
                json={"pidx": "bZQLD9wRVWo4CdESSfuSsB"},
                headers={"X-Request-Id": "req-gw-1"},
            )

        assert response.status_code == 502
        body = response.json()
        assert body["error_key"] == "gateway_unavailable"
        assert body["hint"] == "lookup_payment_before_retry"
        assert body["reference"] == "req-gw-1"
        assert "X-Error-Kind" not in response.headers
