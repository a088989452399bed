# Overview: HTTP-level tests for identity headers, status codes and error bodies.

import json
import time
from datetime import timedelta

from ordering.payments.webhooks import compute_signature
from ordering.services import discount_service
from ordering.time_utils import to_utc_z, utcnow

from conftest import stock_of


GUEST = {"X-Session-Id": "sess-http"}
USER = {"X-User-Id": "user-http"}
STAFF = {"X-Staff-Id": "staff-1"}


def test_health(client, db_session):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.get_json()
    assert data["checks"]["database"]["status"] == "healthy"
    # Test config runs without a webhook secret
    assert data["checks"]["payment_gateway"]["status"] == "degraded"
    assert data["status"] == "degraded"


def test_identity_headers_are_required(client, pizza):
    assert client.get("/api/cart").status_code == 400
    assert client.get("/api/cart", headers={**GUEST, **USER}).status_code == 400
    assert client.get("/api/cart", headers=GUEST).status_code == 200


def test_staff_routes_need_staff_header(client, pizza):
    assert client.get(f"/api/price-overrides?product_id={pizza.id}").status_code == 401
    assert client.get("/api/orders").status_code == 401
    assert client.put(f"/api/stock/{pizza.id}", json={"quantity": 1}).status_code == 401
    assert client.get(f"/api/price-overrides?product_id={pizza.id}", headers=STAFF).status_code == 200


def test_cart_to_checkout_flow(client, gateway, pizza, tiramisu):
    response = client.post("/api/cart/items", json={"product_id": pizza.id, "quantity": 2}, headers=GUEST)
    assert response.status_code == 201
    line_id = response.get_json()["line"]["id"]

    client.post("/api/cart/items", json={"product_id": tiramisu.id}, headers=GUEST)
    response = client.patch(f"/api/cart/items/{line_id}", json={"quantity": 1}, headers=GUEST)
    assert response.status_code == 200
    assert response.get_json()["cart"]["subtotal_cents"] == 1550

    response = client.put("/api/cart/delivery", json={"order_type": "pickup"}, headers=GUEST)
    assert response.get_json()["total_cents"] == 1550

    response = client.post(
        "/api/orders",
        json={"payment_method": "card", "guest": {"name": "Ada", "phone": "+44 20 7946 0000"}},
        headers=GUEST,
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["client_secret"].endswith("_secret")
    assert body["order"]["final_total_cents"] == 1550
    assert gateway.created[0]["amount_cents"] == 1550
    assert stock_of(tiramisu.id) == 4

    order_id = body["order"]["id"]
    mine = client.get("/api/orders/mine", headers=GUEST).get_json()["orders"]
    assert [o["id"] for o in mine] == [order_id]
    assert client.get(f"/api/orders/{order_id}", headers={"X-Session-Id": "someone-else"}).status_code == 404

    events = client.get(f"/api/orders/{order_id}/events", headers=STAFF).get_json()["events"]
    assert [e["event_type"] for e in events] == ["order_created"]


def test_checkout_shortfall_returns_409_with_items(client, gateway, tiramisu):
    client.post("/api/cart/items", json={"product_id": tiramisu.id, "quantity": 6}, headers=USER)

    response = client.post("/api/orders", json={"payment_method": "cash_on_delivery"}, headers=USER)

    assert response.status_code == 409
    items = response.get_json()["details"]["items"]
    assert items[0]["product_id"] == tiramisu.id
    assert items[0]["available"] == 5


def test_checkout_validation_errors(client, gateway, pizza):
    assert client.post("/api/orders", json={}, headers=USER).status_code == 400
    # Empty cart
    assert client.post("/api/orders", json={"payment_method": "card"}, headers=USER).status_code == 400
    assert client.post("/api/orders", data="[1]", content_type="application/json", headers=USER).status_code == 400


def test_cancel_and_staff_status_update(client, gateway, pizza):
    client.post("/api/cart/items", json={"product_id": pizza.id}, headers=USER)
    order_id = client.post("/api/orders", json={"payment_method": "cash_on_delivery"}, headers=USER).get_json()["order"]["id"]

    response = client.patch(f"/api/orders/{order_id}/status", json={"status": "completed"}, headers=STAFF)
    assert response.status_code == 409

    response = client.patch(f"/api/orders/{order_id}/status", json={"status": "processing"}, headers=STAFF)
    assert response.get_json()["order"]["status"] == "processing"

    response = client.post(f"/api/orders/{order_id}/cancel", json={"reason": "late"}, headers=USER)
    assert response.status_code == 200
    assert response.get_json()["order"]["status"] == "cancelled"

    assert client.post(f"/api/orders/{order_id}/cancel", json={}, headers=USER).status_code == 409


def test_cancel_reason_must_be_text(client, gateway, pizza):
    client.post("/api/cart/items", json={"product_id": pizza.id}, headers=USER)
    order_id = client.post("/api/orders", json={"payment_method": "cash_on_delivery"}, headers=USER).get_json()["order"]["id"]

    response = client.post(f"/api/orders/{order_id}/cancel", json={"reason": ["x"]}, headers=USER)
    assert response.status_code == 400

    response = client.patch(
        f"/api/orders/{order_id}/status",
        json={"status": "cancelled", "internal_notes": {"why": "x"}},
        headers=STAFF,
    )
    assert response.status_code == 400

    order = client.get(f"/api/orders/{order_id}", headers=USER).get_json()["order"]
    assert order["status"] == "pending"


def test_rejected_price_override_returns_reason(client, pizza):
    now = utcnow()
    response = client.post(
        "/api/price-overrides",
        json={
            "product_id": pizza.id,
            "name": "Happy hour",
            "kind": "fixed",
            "value": 700,
            "starts_at": to_utc_z(now + timedelta(days=2)),
            "ends_at": to_utc_z(now + timedelta(days=1)),
        },
        headers=STAFF,
    )
    assert response.status_code == 400
    assert response.get_json()["reason"] == "invalid_window"

    response = client.post(
        "/api/price-overrides",
        json={
            "product_id": pizza.id,
            "name": "Happy hour",
            "kind": "fixed",
            "value": 700,
            "starts_at": to_utc_z(now - timedelta(hours=1)),
            "ends_at": to_utc_z(now + timedelta(days=1)),
            "time_start": 1100,
            "time_end": 1400,
        },
        headers=STAFF,
    )
    assert response.status_code == 400
    assert response.get_json()["reason"] == "invalid_restriction"


def test_price_override_changes_resolved_price(client, pizza):
    now = utcnow()
    response = client.post(
        "/api/price-overrides",
        json={
            "product_id": pizza.id,
            "name": "Lunch",
            "kind": "decrease",
            "value": 1000,
            "is_percentage": True,
            "starts_at": to_utc_z(now - timedelta(hours=1)),
            "ends_at": to_utc_z(now + timedelta(hours=1)),
        },
        headers=STAFF,
    )
    assert response.status_code == 201

    resolved = client.get(f"/api/pricing/resolve/{pizza.id}").get_json()
    assert resolved["effective_price_cents"] == 900
    assert client.get(f"/api/pricing/resolve/{pizza.id}?at=yesterday").status_code == 400


def test_discount_validate(client, branch):
    discount_service.create_discount({
        "code": "WELCOME10", "name": "Welcome", "discount_type": "percentage", "discount_value": 10,
        "min_order_cents": 1000,
    })

    response = client.post(
        "/api/discounts/validate",
        json={"code": "welcome10", "subtotal_cents": 2000, "branch_id": branch.id, "order_type": "delivery"},
    )
    assert response.status_code == 200
    assert response.get_json()["amount_cents"] == 200

    response = client.post(
        "/api/discounts/validate",
        json={"code": "welcome10", "subtotal_cents": 500, "branch_id": branch.id},
    )
    assert response.status_code == 400
    assert response.get_json()["details"]["reason"] == "below_minimum_spend"


def test_stock_availability(client, tiramisu, pizza):
    response = client.post(
        "/api/stock/availability",
        json={"items": [{"product_id": tiramisu.id, "quantity": 6}, {"product_id": pizza.id, "quantity": 50}]},
    )
    assert response.status_code == 200
    data = response.get_json()
    assert data["ok"] is False
    assert [s["product_id"] for s in data["shortfalls"]] == [tiramisu.id]


def test_signed_webhook_marks_order_paid(client, app, gateway, pizza, monkeypatch):
    monkeypatch.setitem(app.config, "PAYMENT_WEBHOOK_SECRET", "whsec_test")

    client.post("/api/cart/items", json={"product_id": pizza.id}, headers=USER)
    order = client.post("/api/orders", json={"payment_method": "card"}, headers=USER).get_json()["order"]

    payload = json.dumps({
        "id": "evt_http_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": order["payment_intent_id"]}},
    }).encode()
    ts = int(time.time())
    signature = f"t={ts},v1={compute_signature(payload, 'whsec_test', ts)}"

    unsigned = client.post("/api/payments/webhook", data=payload, content_type="application/json")
    assert unsigned.status_code == 400

    response = client.post(
        "/api/payments/webhook",
        data=payload,
        content_type="application/json",
        headers={"Stripe-Signature": signature},
    )
    assert response.status_code == 200
    assert response.get_json()["outcome"] == "applied"

    again = client.post(
        "/api/payments/webhook",
        data=payload,
        content_type="application/json",
        headers={"Stripe-Signature": signature},
    )
    assert again.status_code == 200
    assert again.get_json()["outcome"] == "duplicate"

    status = client.get(f"/api/orders/{order['id']}", headers=USER).get_json()["order"]
    assert status["payment_status"] == "paid"
    assert status["status"] == "processing"
