"""HTTP surface of the marketplace API."""
from __future__ import annotations

import json

from sqlalchemy.orm import Session

from docmarket.errors import AccountLedgerError
from docmarket.models import CartItem, Order, OrderStatus, UserRole
from docmarket.services.account_service import AccountLedger
from docmarket.services.checkout_service import CheckoutService
from tests.payment_utils import (
    auth_headers,
    charge_refunded_event,
    create_document,
    create_user,
    payment_succeeded_event,
    post_signed_event,
    sign_payload,
)


class _BrokenAccountLedger(AccountLedger):
    def credit_sale(self, session, seller_id, seller_share_cents):
        raise AccountLedgerError("ledger offline")


def _marketplace(session: Session, price_cents: int = 1000):
    seller = create_user(session, "seller@example.com", UserRole.SELLER)
    buyer = create_user(session, "buyer@example.com")
    document = create_document(session, seller, price_cents=price_cents, content=b"exam answers")
    return seller, buyer, document


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_payment_config(client) -> None:
    response = client.get("/api/payment/config")
    assert response.status_code == 200
    assert response.json()["currency"] == "usd"
    assert response.json()["publishable_key"]


def test_requests_require_authentication(client) -> None:
    response = client.get("/api/orders/my-orders")
    assert response.status_code == 401

    response = client.get("/api/orders/my-orders", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_checkout_confirm_download_flow(client, session: Session, stripe_stub) -> None:
    seller, buyer, document = _marketplace(session)
    headers = auth_headers(buyer)
    assert client.post("/api/cart", json={"documentId": document.id}, headers=headers).status_code == 200

    created = client.post("/api/payment/create-intent", json={"documentIds": [document.id]}, headers=headers)
    assert created.status_code == 200
    body = created.json()
    assert body["amount_cents"] == 1000
    assert body["client_secret"]
    payment_intent_id = body["payment_intent_id"]

    not_paid = client.post("/api/payment/confirm", json={"paymentIntentId": payment_intent_id}, headers=headers)
    assert not_paid.status_code == 409
    assert not_paid.json()["error"] == "PAYMENT_NOT_SUCCEEDED"

    stripe_stub.set_status(payment_intent_id, "succeeded")
    confirmed = client.post("/api/payment/confirm", json={"paymentIntentId": payment_intent_id}, headers=headers)
    assert confirmed.status_code == 200
    payload = confirmed.json()
    assert payload["items"][0]["outcome"] == "fulfilled"
    order_id = payload["orders"][0]["id"]
    assert payload["orders"][0]["amount_cents"] == 1000
    assert payload["orders"][0]["status"] == "COMPLETED"

    again = client.post("/api/payment/confirm", json={"paymentIntentId": payment_intent_id}, headers=headers)
    assert again.json()["items"][0]["outcome"] == "already_fulfilled"
    assert session.query(CartItem).filter(CartItem.user_id == buyer.id).count() == 0

    for remaining in (4, 3, 2, 1, 0):
        download = client.get(f"/api/orders/{order_id}/download", headers=headers)
        assert download.status_code == 200
        assert download.content == b"exam answers"
        assert download.headers["x-downloads-remaining"] == str(remaining)
        assert "attachment" in download.headers["content-disposition"]

    limited = client.get(f"/api/orders/{order_id}/download", headers=headers)
    assert limited.status_code == 403
    assert limited.json() == {
        "success": False,
        "error": "DOWNLOAD_LIMIT_EXCEEDED",
        "message": "Download limit reached",
    }

    session.refresh(seller)
    assert seller.balance_cents == 850


def test_create_intent_errors(client, session: Session) -> None:
    _seller, buyer, document = _marketplace(session)
    headers = auth_headers(buyer)

    empty = client.post("/api/payment/create-intent", json={"documentIds": []}, headers=headers)
    assert empty.status_code == 400
    assert empty.json()["error"] == "VALIDATION_ERROR"

    missing = client.post(
        "/api/payment/create-intent",
        json={"documentIds": ["5f0c6f1e-3a2b-4c59-9d1e-000000000000"]},
        headers=headers,
    )
    assert missing.status_code == 404
    assert missing.json()["error"] == "DOCUMENT_NOT_FOUND"


def test_create_intent_for_owned_document_conflicts(client, session: Session, service: CheckoutService) -> None:
    _seller, buyer, document = _marketplace(session)
    service.fulfill_payment(session, payment_intent_id="pi_owned", buyer_id=buyer.id, document_ids=[document.id])

    response = client.post(
        "/api/payment/create-intent", json={"documentIds": [document.id]}, headers=auth_headers(buyer)
    )
    assert response.status_code == 409
    assert response.json()["error"] == "ALREADY_PURCHASED"


def test_webhook_rejects_unverified_events(client, session: Session, stripe_stub) -> None:
    _seller, buyer, document = _marketplace(session)
    intent = stripe_stub.add_intent(buyer_id=buyer.id, document_ids=[document.id], amount_cents=1000)
    event = payment_succeeded_event(intent)

    unsigned = client.post(
        "/api/webhooks/stripe", content=json.dumps(event), headers={"Content-Type": "application/json"}
    )
    forged = post_signed_event(client, event, signature=sign_payload(json.dumps(event), secret="whsec_wrong"))
    stale = post_signed_event(client, event, signature=sign_payload(json.dumps(event), timestamp=1))

    for response in (unsigned, forged, stale):
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_SIGNATURE"
    assert session.query(Order).count() == 0


def test_webhook_fulfills_and_refunds(client, session: Session, stripe_stub) -> None:
    seller, buyer, document = _marketplace(session)
    intent = stripe_stub.add_intent(buyer_id=buyer.id, document_ids=[document.id], amount_cents=1000)
    event = payment_succeeded_event(intent)

    first = post_signed_event(client, event)
    duplicate = post_signed_event(client, event)

    assert first.status_code == 200
    assert first.json() == {"received": True, "status": "processed"}
    assert duplicate.json()["status"] == "duplicate"
    order = session.query(Order).filter(Order.buyer_id == buyer.id).one()
    session.refresh(seller)
    assert seller.balance_cents == 850

    refunded = post_signed_event(client, charge_refunded_event(intent["id"], 1000))
    assert refunded.status_code == 200
    session.refresh(order)
    session.refresh(seller)
    session.refresh(document)
    assert order.status == OrderStatus.REFUNDED
    assert seller.balance_cents == 0
    assert document.sales_count == 1

    blocked = client.get(f"/api/orders/{order.id}/download", headers=auth_headers(buyer))
    assert blocked.status_code == 409


def test_webhook_rejects_malformed_payload(client) -> None:
    payload = "not json"
    response = client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"Content-Type": "application/json", "Stripe-Signature": sign_payload(payload)},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"


def test_direct_purchase_conflicts_on_duplicate(client, session: Session, stripe_stub) -> None:
    _seller, buyer, document = _marketplace(session)
    intent = stripe_stub.add_intent(buyer_id=buyer.id, document_ids=[document.id], amount_cents=1000)
    headers = auth_headers(buyer)
    body = {"documentId": document.id, "paymentIntentId": intent["id"]}

    created = client.post("/api/orders", json=body, headers=headers)
    duplicate = client.post("/api/orders", json=body, headers=headers)

    assert created.status_code == 201
    assert created.json()["document_id"] == document.id
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "ALREADY_PURCHASED"


def test_order_visibility_and_listings(client, session: Session, service: CheckoutService) -> None:
    seller, buyer, document = _marketplace(session)
    stranger = create_user(session, "stranger@example.com")
    result = service.fulfill_payment(session, payment_intent_id="pi_list", buyer_id=buyer.id, document_ids=[document.id])
    order_id = result.order_ids[0]

    assert client.get(f"/api/orders/{order_id}", headers=auth_headers(buyer)).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=auth_headers(seller)).status_code == 200
    hidden = client.get(f"/api/orders/{order_id}", headers=auth_headers(stranger))
    assert hidden.status_code == 403
    assert hidden.json()["error"] == "FORBIDDEN"
    assert client.get("/api/orders/missing", headers=auth_headers(buyer)).status_code == 404
    assert client.get(f"/api/orders/{order_id}/download", headers=auth_headers(stranger)).status_code == 403

    mine = client.get("/api/orders/my-orders", headers=auth_headers(buyer)).json()
    sold = client.get("/api/orders/seller-orders", headers=auth_headers(seller)).json()
    assert [o["id"] for o in mine["orders"]] == [order_id]
    assert mine["orders"][0]["document"]["title"] == document.title
    assert [o["id"] for o in sold["orders"]] == [order_id]

    stats = client.get("/api/orders/stats/seller", headers=auth_headers(seller)).json()
    assert stats["total_sales"] == 1
    assert stats["total_revenue_cents"] == 1000
    assert stats["balance_cents"] == 850
    assert stats["top_documents"][0]["sales_count"] == 1


def test_cart_operations(client, session: Session, service: CheckoutService) -> None:
    seller, buyer, document = _marketplace(session)
    second = create_document(session, seller, price_cents=2500, title="Second")
    owned = create_document(session, seller, title="Owned")
    service.fulfill_payment(session, payment_intent_id="pi_cart", buyer_id=buyer.id, document_ids=[owned.id])
    headers = auth_headers(buyer)

    client.post("/api/cart", json={"documentId": document.id}, headers=headers)
    cart = client.post("/api/cart", json={"documentId": second.id}, headers=headers).json()
    assert cart["total_cents"] == 3500
    assert len(cart["items"]) == 2

    refused = client.post("/api/cart", json={"documentId": owned.id}, headers=headers)
    assert refused.status_code == 409

    cart = client.request("DELETE", "/api/cart", json={"documentIds": [document.id]}, headers=headers).json()
    assert [item["document_id"] for item in cart["items"]] == [second.id]
    assert client.get("/api/cart", headers=headers).json()["total_cents"] == 2500


def test_admin_reconciliation(client, session: Session) -> None:
    seller, buyer, document = _marketplace(session)
    admin = create_user(session, "admin@example.com", UserRole.ADMIN)
    broken = CheckoutService(accounts=_BrokenAccountLedger(), max_attempts=2, backoff_seconds=0, backoff_max_seconds=0)
    result = broken.fulfill_payment(session, payment_intent_id="pi_admin", buyer_id=buyer.id, document_ids=[document.id])
    order_id = result.order_ids[0]

    assert client.get("/api/admin/reconciliation", headers=auth_headers(buyer)).status_code == 403

    queue = client.get("/api/admin/reconciliation", headers=auth_headers(admin)).json()
    assert [item["id"] for item in queue["items"]] == [order_id]
    assert "ledger offline" in queue["items"][0]["reconciliation_note"]

    run = client.post("/api/admin/reconciliation/run", json={}, headers=auth_headers(admin)).json()
    assert run["items"] == [{"order_id": order_id, "outcome": "settled"}]
    assert client.get("/api/admin/reconciliation", headers=auth_headers(admin)).json()["items"] == []
    session.refresh(seller)
    assert seller.balance_cents == 850
