import asyncio

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from backoffice.api.v1 import payments
from backoffice.models.cart import CartItem
from backoffice.models.checkout import CheckoutSession
from backoffice.models.order import Order
from backoffice.services.credit_service import CreditService
from backoffice.services.payment_service import IntentStatus

TENANT = "default"


def _add(client: TestClient, headers: dict, variant) -> dict:
    response = client.post(
        "/api/v1/cart/items",
        json={"product_id": variant.product_id, "variant_id": variant.id},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["data"]


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Request-ID" in response.headers
    assert "X-Process-Time" in response.headers


def test_cart_requires_customer_token(client: TestClient, admin_headers):
    assert client.get("/api/v1/cart/").status_code == 401

    response = client.get("/api/v1/cart/", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["success"] is False

    assert client.get("/api/v1/cart/", headers=admin_headers).status_code == 403


def test_add_to_cart_and_waitlist_fallback(client: TestClient, customer_headers, make_variant):
    variant = make_variant(price="19.99", available=1)

    added = _add(client, customer_headers, variant)
    assert added["outcome"] == "added"
    assert added["cart"]["total_items"] == 1
    assert added["cart"]["pricing"]["subtotal"] == 19.99

    waitlisted = _add(client, customer_headers, variant)
    assert waitlisted["outcome"] == "waitlisted"
    assert waitlisted["cart_item_id"] is None
    assert waitlisted["waitlist_entry_id"] is not None

    entries = client.get("/api/v1/waitlist/", headers=customer_headers).json()["data"]
    assert [e["id"] for e in entries] == [waitlisted["waitlist_entry_id"]]


def test_rejected_discount_carries_reason_and_cart(client: TestClient, customer_headers, make_variant):
    _add(client, customer_headers, make_variant(price="40.00"))

    response = client.post("/api/v1/cart/discount", json={"code": "NOPE"}, headers=customer_headers)

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["errors"][0]["reason"] == "not_found"
    assert body["errors"][0]["cart"]["total_items"] == 1
    assert body["errors"][0]["cart"]["pricing"]["total"] == 43.2


def test_admin_creates_discount_and_customer_applies_it(client: TestClient, admin_headers, customer_headers, make_variant):
    created = client.post(
        "/api/v1/discounts/",
        json={"code": "save10", "title": "Ten off", "value_type": "percentage", "value": "10"},
        headers=admin_headers,
    )
    assert created.status_code == 200
    assert created.json()["data"]["code"] == "SAVE10"
    assert created.json()["data"]["effective_status"] == "active"

    assert client.post("/api/v1/discounts/", json={}, headers=customer_headers).status_code == 403

    preview = client.post(
        "/api/v1/discounts/validate",
        json={"code": "SAVE10", "cart_subtotal": "100.00"},
        headers=customer_headers,
    ).json()["data"]
    assert preview["valid"] is True
    assert preview["amount"] == 10.0

    _add(client, customer_headers, make_variant(price="100.00"))
    cart = client.post("/api/v1/cart/discount", json={"code": "save10"}, headers=customer_headers).json()["data"]
    assert cart["applied_discount"]["code"] == "SAVE10"
    assert cart["pricing"]["discount_amount"] == 10.0
    assert cart["pricing"]["total"] == 98.0


def test_paid_checkout_over_http_is_idempotent(client: TestClient, db_session: Session, customer_headers, make_variant, provider):
    _add(client, customer_headers, make_variant(price="100.00"))

    prepared = client.post("/api/v1/checkout/prepare", json={}, headers=customer_headers)
    assert prepared.status_code == 201
    session = prepared.json()["data"]
    assert session["state"] == "awaiting_payment"
    assert session["publishable_key"] == "pk_test_fake"
    assert session["client_secret"] in provider.intents
    assert session["total"] == 108.0

    first = client.post("/api/v1/checkout/complete", json={"session_id": session["id"]}, headers=customer_headers)
    second = client.post(
        "/api/v1/checkout/complete",
        json={"payment_reference": session["client_secret"]},
        headers=customer_headers,
    )

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["data"]["order_number"] == second.json()["data"]["order_number"]
    assert first.json()["data"]["status"] == "paid"
    assert db_session.query(Order).count() == 1

    orders = client.get("/api/v1/checkout/orders", headers=customer_headers).json()["data"]
    assert len(orders) == 1
    detail = client.get(f"/api/v1/checkout/orders/{orders[0]['order_number']}", headers=customer_headers)
    assert detail.json()["data"]["items"][0]["unit_price"] == 100.0


def test_complete_requires_a_reference(client: TestClient, customer_headers):
    response = client.post("/api/v1/checkout/complete", json={}, headers=customer_headers)

    assert response.status_code == 422


def test_unpaid_checkout_returns_payment_required(client: TestClient, customer_headers, make_variant, provider):
    _add(client, customer_headers, make_variant())
    session = client.post("/api/v1/checkout/prepare", json={}, headers=customer_headers).json()["data"]
    provider.status = IntentStatus.REQUIRES_PAYMENT

    response = client.post("/api/v1/checkout/complete", json={"session_id": session["id"]}, headers=customer_headers)

    assert response.status_code == 402


def test_credits_only_checkout_over_http(client: TestClient, customer, customer_headers, admin_headers, make_variant, provider):
    issued = client.post(
        "/api/v1/credits/issue",
        json={"customer_id": customer.id, "amount": "100.00", "description": "Loyalty reward"},
        headers=admin_headers,
    )
    assert issued.status_code == 200
    assert issued.json()["data"]["actor_id"] == "staff-1"

    _add(client, customer_headers, make_variant(price="25.00"))
    session = client.post("/api/v1/checkout/prepare", json={}, headers=customer_headers).json()["data"]
    assert session["credits_only"] is True
    assert session["client_secret"] is None
    assert session["publishable_key"] is None

    order = client.post("/api/v1/checkout/complete", json={"credits_only": True}, headers=customer_headers).json()["data"]

    assert order["payment_method"] == "credits"
    assert order["credits_applied"] == 27.0
    assert order["total_amount"] == 0.0
    assert provider.intents == {}
    balance = client.get("/api/v1/credits/balance", headers=customer_headers).json()["data"]
    assert balance["balance"] == 73.0
    history = client.get("/api/v1/credits/history", headers=customer_headers).json()["data"]
    assert [t["transaction_type"] for t in history] == ["spend", "grant"]


def test_adjustments_are_owner_only(client: TestClient, customer, admin_headers, owner_headers):
    payload = {"customer_id": customer.id, "amount": "-5.00", "description": "Correction"}

    assert client.post("/api/v1/credits/adjust", json=payload, headers=admin_headers).status_code == 403

    response = client.post("/api/v1/credits/adjust", json=payload, headers=owner_headers)
    assert response.status_code == 409
    assert response.json()["errors"][0]["reason"] == "insufficient_balance"

    response = client.post("/api/v1/credits/adjust", json={**payload, "amount": "5.00"}, headers=owner_headers)
    assert response.status_code == 200
    assert response.json()["data"]["balance_after"] == 5.0


def test_post_payment_failure_is_reported_distinctly(client: TestClient, db_session: Session, customer_headers, make_variant):
    _add(client, customer_headers, make_variant(price="30.00"))
    extra = _add(client, customer_headers, make_variant(price="20.00"))
    session = client.post("/api/v1/checkout/prepare", json={}, headers=customer_headers).json()["data"]
    db_session.query(CartItem).filter(CartItem.id == extra["cart_item_id"]).delete(synchronize_session=False)
    db_session.commit()

    response = client.post("/api/v1/checkout/complete", json={"session_id": session["id"]}, headers=customer_headers)

    assert response.status_code == 500
    error = response.json()["errors"][0]
    assert error["reason"] == "post_payment_commit_failed"
    assert error["payment_reference"] == session["client_secret"]
    db_session.expire_all()
    assert db_session.get(CheckoutSession, session["id"]).reconciliation_required is True


def test_cart_edit_during_checkout_needs_cancel_first(client: TestClient, customer_headers, make_variant, provider):
    _add(client, customer_headers, make_variant(price="30.00"))
    extra = _add(client, customer_headers, make_variant(price="20.00"))
    session = client.post("/api/v1/checkout/prepare", json={}, headers=customer_headers).json()["data"]

    blocked = client.delete(f"/api/v1/cart/items/{extra['cart_item_id']}", headers=customer_headers)
    assert blocked.status_code == 409
    assert blocked.json()["errors"][0]["reason"] == "checkout_in_progress"
    assert blocked.json()["errors"][0]["cart"]["total_items"] == 2

    provider.status = IntentStatus.REQUIRES_PAYMENT
    cancelled = client.post(f"/api/v1/checkout/sessions/{session['id']}/cancel", headers=customer_headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["state"] == "failed"

    removed = client.delete(f"/api/v1/cart/items/{extra['cart_item_id']}", headers=customer_headers)
    assert removed.status_code == 200
    assert removed.json()["data"]["total_items"] == 1


def test_webhook_completes_abandoned_paid_checkout(client: TestClient, db_session: Session, customer_headers, make_variant):
    _add(client, customer_headers, make_variant())
    session = client.post("/api/v1/checkout/prepare", json={}, headers=customer_headers).json()["data"]
    body = {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_hook", "order_id": session["client_secret"]}}},
    }

    rejected = client.post("/api/v1/payments/webhook", json=body, headers={"X-Razorpay-Signature": "forged"})
    assert rejected.status_code == 400

    accepted = client.post("/api/v1/payments/webhook", json=body, headers={"X-Razorpay-Signature": "valid-webhook-signature"})
    assert accepted.status_code == 200
    assert accepted.json()["data"]["status"] == "ok"

    duplicate = client.post("/api/v1/payments/webhook", json=body, headers={"X-Razorpay-Signature": "valid-webhook-signature"})
    assert duplicate.json()["data"]["status"] == "duplicate"
    assert db_session.query(Order).count() == 1


def test_webhook_completion_runs_off_the_event_loop(client: TestClient, db_session: Session, customer_headers, make_variant, monkeypatch):
    _add(client, customer_headers, make_variant())
    session = client.post("/api/v1/checkout/prepare", json={}, headers=customer_headers).json()["data"]
    seen = []
    settle = payments._settle_capture

    def recording(*args):
        try:
            asyncio.get_running_loop()
            seen.append("event_loop")
        except RuntimeError:
            seen.append("worker_thread")
        return settle(*args)

    monkeypatch.setattr(payments, "_settle_capture", recording)
    body = {
        "event": "order.paid",
        "payload": {"order": {"entity": {"id": session["client_secret"]}}},
    }

    response = client.post("/api/v1/payments/webhook", json=body, headers={"X-Razorpay-Signature": "valid-webhook-signature"})

    assert response.json()["data"]["status"] == "ok"
    assert seen == ["worker_thread"]
    assert db_session.query(Order).count() == 1


def test_saved_payment_methods(client: TestClient, customer_headers, provider):
    created = client.post("/api/v1/payments/methods", json={"token_id": "token_abc"}, headers=customer_headers)
    assert created.status_code == 201
    assert created.json()["data"]["last4"] == "4242"
    assert len(provider.customers) == 1

    methods = client.get("/api/v1/payments/methods", headers=customer_headers).json()["data"]
    assert [m["token_id"] for m in methods] == ["token_abc"]


def test_plugin_registration_and_flags(client: TestClient, admin_headers, owner_headers):
    response = client.post(
        "/api/v1/plugins/",
        json={
            "slug": "crm-sync",
            "name": "CRM Sync",
            "webhook_url": "https://hooks.example.com/crm",
            "events": ["cart.item_added", "order.paid"],
        },
        headers=admin_headers,
    )
    assert response.status_code == 201
    assert len(response.json()["data"]["secret"]) == 64

    listed = client.get("/api/v1/plugins/", headers=admin_headers).json()["data"]
    assert "secret" not in listed[0]

    assert client.put("/api/v1/plugins/flags/plugin_events", json={"enabled": False}, headers=admin_headers).status_code == 403
    flag = client.put("/api/v1/plugins/flags/plugin_events", json={"enabled": False}, headers=owner_headers)
    assert flag.json()["data"]["enabled"] is False


def test_credit_stats_for_admins(client: TestClient, db_session: Session, customer, admin_headers, customer_headers):
    CreditService(db_session, TENANT).issue(customer.id, "12.00", "Gift")

    stats = client.get("/api/v1/credits/stats", headers=admin_headers).json()["data"]
    assert stats["outstanding_balance"] == 12.0

    assert client.get("/api/v1/credits/stats", headers=customer_headers).status_code == 403
