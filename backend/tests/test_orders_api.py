"""
HTTP tests for the order, inventory and system blueprints.

Verifies:
- authentication and role checks on every protected route
- error bodies carry the error code and the offending details
- the payment webhook is authenticated by its signature only
"""

import json

import pytest

from app.extensions import db
from app.models import Inventory, Order, User
from app.services.payment_gateway import SIGNATURE_HEADER, compute_signature

from conftest import WEBHOOK_SECRET, auth_headers, make_product, make_user


def _vendor_headers(vendor):
    return auth_headers(db.session.get(User, vendor.user_id))


def _order_body(address, product, quantity=1, **extra):
    body = {"addressId": address.id, "items": [{"productId": product.id, "quantity": quantity}]}
    body.update(extra)
    return body


# =============================================================================
# AUTHENTICATION
# =============================================================================

class TestAuthentication:

    @pytest.mark.parametrize("method,path", [
        ("post", "/api/orders"),
        ("get", "/api/orders/my-orders"),
        ("get", "/api/orders/1"),
        ("patch", "/api/orders/1/cancel"),
        ("get", "/api/orders/verify-payment/ABC"),
        ("post", "/api/inventory/adjust"),
        ("get", "/api/notifications"),
    ])
    def test_requires_token(self, client, db_session, method, path):
        response = getattr(client, method)(path, json={})
        assert response.status_code == 401

    def test_invalid_token(self, client, db_session):
        response = client.get("/api/orders/my-orders", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_admin_listing_requires_admin(self, client, buyer, admin):
        assert client.get("/api/orders", headers=auth_headers(buyer)).status_code == 403
        assert client.get("/api/orders", headers=auth_headers(admin)).status_code == 200

    def test_vendor_listing_requires_vendor_row(self, client, db_session):
        orphan = make_user("orphan@example.com", "vendor")
        response = client.get("/api/orders/vendor", headers=auth_headers(orphan))
        assert response.status_code == 403


# =============================================================================
# ORDERS
# =============================================================================

class TestOrderRoutes:

    def test_create_order(self, client, buyer, address, vendor):
        product = make_product(vendor, price="10000.00", stock=5)

        response = client.post(
            "/api/orders",
            json=_order_body(address, product, 2, shippingCost="1500.00", taxAmount="500.00"),
            headers=auth_headers(buyer),
        )

        assert response.status_code == 201
        body = response.get_json()
        assert body["status"] == "success"
        assert "warnings" not in body
        order = body["data"]["order"]
        assert order["summary"]["total"] == "22000.00"
        assert order["order_status"] == "pending"
        assert order["payment"]["authorization_url"].startswith("https://checkout.test/")
        assert len(order["items"]) == 1

    def test_create_order_insufficient_stock(self, client, buyer, address, vendor):
        product = make_product(vendor, stock=1)

        response = client.post("/api/orders", json=_order_body(address, product, 4), headers=auth_headers(buyer))

        assert response.status_code == 400
        body = response.get_json()
        assert body["code"] == "INSUFFICIENT_STOCK"
        assert body["errors"]["requested_quantity"] == 4
        assert body["errors"]["available_stock"] == 1
        assert db.session.query(Order).count() == 0

    def test_create_order_rejects_non_object_body(self, client, buyer):
        response = client.post("/api/orders", json=[1, 2], headers=auth_headers(buyer))
        assert response.status_code == 400

    def test_payment_warning_is_returned(self, client, buyer, address, vendor, gateway):
        gateway.fail_initialize = True
        product = make_product(vendor, stock=5)

        response = client.post("/api/orders", json=_order_body(address, product), headers=auth_headers(buyer))

        assert response.status_code == 201
        body = response.get_json()
        assert body["data"]["order"]["payment"] is None
        assert "/payment" in body["warnings"][0]

    def test_order_hidden_from_strangers(self, client, buyer, address, vendor):
        product = make_product(vendor, stock=5)
        created = client.post("/api/orders", json=_order_body(address, product), headers=auth_headers(buyer))
        order_id = created.get_json()["data"]["order"]["id"]
        stranger = make_user("stranger@example.com", "customer")

        assert client.get(f"/api/orders/{order_id}", headers=auth_headers(buyer)).status_code == 200
        response = client.get(f"/api/orders/{order_id}", headers=auth_headers(stranger))
        assert response.status_code == 404
        assert response.get_json()["code"] == "ORDER_NOT_FOUND"

    def test_vendor_ships_and_buyer_cannot_cancel(self, client, buyer, address, vendor):
        product = make_product(vendor, stock=5)
        created = client.post("/api/orders", json=_order_body(address, product), headers=auth_headers(buyer))
        order_id = created.get_json()["data"]["order"]["id"]

        shipped = client.patch(
            f"/api/orders/{order_id}/status",
            json={"status": "shipped", "carrier": "GIG", "trackingNumber": "GIG-1"},
            headers=_vendor_headers(vendor),
        )
        assert shipped.status_code == 200
        assert shipped.get_json()["data"]["transition"]["order_status"] == "shipped"

        cancelled = client.patch(f"/api/orders/{order_id}/cancel", json={}, headers=auth_headers(buyer))
        assert cancelled.status_code == 400
        assert cancelled.get_json()["code"] == "INVALID_TRANSITION"

    def test_buyer_cancels(self, client, buyer, address, vendor):
        product = make_product(vendor, stock=5)
        created = client.post("/api/orders", json=_order_body(address, product, 2), headers=auth_headers(buyer))
        order_id = created.get_json()["data"]["order"]["id"]

        response = client.patch(
            f"/api/orders/{order_id}/cancel", json={"reason": "Too slow"}, headers=auth_headers(buyer)
        )

        assert response.status_code == 200
        assert response.get_json()["data"]["order"]["order_status"] == "cancelled"
        assert db.session.query(Inventory.stock).filter_by(product_id=product.id).scalar() == 5

    def test_verify_payment(self, client, buyer, address, vendor):
        product = make_product(vendor, stock=5)
        created = client.post("/api/orders", json=_order_body(address, product), headers=auth_headers(buyer))
        reference = created.get_json()["data"]["order"]["payment"]["reference"]

        response = client.get(f"/api/orders/verify-payment/{reference}", headers=auth_headers(buyer))

        assert response.status_code == 200
        verification = response.get_json()["data"]["verification"]
        assert verification["verified"] is True
        assert verification["order_status"] == "processing"

    def test_my_orders_and_notifications(self, client, buyer, address, vendor):
        product = make_product(vendor, stock=5)
        client.post("/api/orders", json=_order_body(address, product), headers=auth_headers(buyer))

        orders = client.get("/api/orders/my-orders", headers=auth_headers(buyer)).get_json()["data"]
        assert orders["pagination"]["total"] == 1

        notes = client.get("/api/notifications", headers=auth_headers(buyer)).get_json()["data"]
        assert [n["type"] for n in notes["notifications"]] == ["order_created"]


# =============================================================================
# WEBHOOK
# =============================================================================

class TestWebhookRoute:

    def _post(self, client, payload, secret=WEBHOOK_SECRET):
        raw = json.dumps(payload).encode("utf-8")
        return client.post(
            "/api/orders/webhook/payment",
            data=raw,
            content_type="application/json",
            headers={SIGNATURE_HEADER: compute_signature(raw, secret)},
        )

    def test_bad_signature_is_rejected(self, client, db_session):
        response = self._post(client, {"event": "charge.success", "data": {}}, secret="wrong")
        assert response.status_code == 401

    def test_missing_signature_is_rejected(self, client, db_session):
        response = client.post("/api/orders/webhook/payment", json={"event": "charge.success"})
        assert response.status_code == 401

    def test_signed_event_is_applied(self, client, buyer, address, vendor):
        product = make_product(vendor, price="100.00", stock=5)
        created = client.post("/api/orders", json=_order_body(address, product), headers=auth_headers(buyer))
        order = created.get_json()["data"]["order"]
        reference = order["payment"]["reference"]

        payload = {"event": "charge.success", "data": {"reference": reference, "status": "success", "amount": 10000}}
        response = self._post(client, payload)

        assert response.status_code == 200
        assert response.get_json()["data"]["webhook"]["handled"] is True
        assert db.session.get(Order, order["id"]).order_status == "processing"

    def test_unknown_event_is_acknowledged(self, client, db_session):
        response = self._post(client, {"event": "subscription.create", "data": {}})
        assert response.status_code == 200
        assert response.get_json()["data"]["webhook"]["handled"] is False

    @pytest.mark.parametrize("amount", ["abc", "12.5", -100, 99.5, True, {"value": 1}])
    def test_malformed_amount_is_acknowledged_without_changes(self, client, buyer, address, vendor, amount):
        product = make_product(vendor, price="100.00", stock=5)
        created = client.post("/api/orders", json=_order_body(address, product), headers=auth_headers(buyer))
        order = created.get_json()["data"]["order"]
        reference = order["payment"]["reference"]

        payload = {"event": "charge.success", "data": {"reference": reference, "status": "success", "amount": amount}}
        response = self._post(client, payload)

        assert response.status_code == 200
        assert response.get_json()["data"]["webhook"]["handled"] is False
        stored = db.session.get(Order, order["id"])
        assert stored.order_status == "pending"
        assert stored.payment_status == "pending"


# =============================================================================
# INVENTORY AND SYSTEM
# =============================================================================

class TestInventoryRoutes:

    def test_vendor_adjusts_own_product(self, client, vendor):
        product = make_product(vendor)

        response = client.post(
            "/api/inventory/adjust",
            json={"product_id": product.id, "quantity_delta": 12, "note": "Delivery"},
            headers=_vendor_headers(vendor),
        )

        assert response.status_code == 200
        assert response.get_json()["data"]["movement"]["new_stock"] == 12

        history = client.get(f"/api/inventory/products/{product.id}/history", headers=_vendor_headers(vendor))
        assert [h["change_amount"] for h in history.get_json()["data"]["history"]] == [12]

    def test_other_vendor_is_forbidden(self, client, vendor, other_vendor):
        product = make_product(vendor, stock=3)
        response = client.post(
            "/api/inventory/adjust",
            json={"product_id": product.id, "quantity_delta": -1},
            headers=_vendor_headers(other_vendor),
        )
        assert response.status_code == 403
        assert db.session.query(Inventory.stock).filter_by(product_id=product.id).scalar() == 3

    def test_customer_cannot_adjust(self, client, buyer, vendor):
        product = make_product(vendor, stock=3)
        response = client.post(
            "/api/inventory/adjust",
            json={"product_id": product.id, "quantity_delta": 1},
            headers=auth_headers(buyer),
        )
        assert response.status_code == 403

    def test_negative_adjustment_beyond_stock(self, client, vendor):
        product = make_product(vendor, stock=3)
        response = client.post(
            "/api/inventory/adjust",
            json={"product_id": product.id, "quantity_delta": -5},
            headers=_vendor_headers(vendor),
        )
        assert response.status_code == 400
        assert response.get_json()["code"] == "INSUFFICIENT_STOCK"

    def test_stock_summary_and_toggle(self, client, vendor, tee):
        product, combos = tee
        headers = _vendor_headers(vendor)

        summary = client.get(f"/api/inventory/products/{product.id}", headers=headers).get_json()["data"]
        assert summary["tracked_by"] == "combination"

        response = client.patch(
            f"/api/inventory/products/{product.id}/combinations/{combos['White-L'].id}",
            json={"is_active": False},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.get_json()["data"]["combination"]["is_active"] is False

        bad = client.patch(
            f"/api/inventory/products/{product.id}/combinations/{combos['White-L'].id}",
            json={"is_active": "no"},
            headers=headers,
        )
        assert bad.status_code == 400


class TestHealth:

    def test_health(self, client, db_session):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.get_json()
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["payment_gateway"]["details"]["gateway"] == "injected"
