"""HTTP surface with the orchestrators swapped for test-wired instances."""

from decimal import Decimal
from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient

from storepay.common.config import settings
from storepay.services.checkout import main
from storepay.services.checkout.models import Order


def _card_payload(**overrides):
    payload = {
        "card_number": "5528790000000008",
        "card_expiry": "12/30",
        "card_cvc": "123",
        "first_name": "Ayse",
        "last_name": "Yilmaz",
        "email": "ayse@example.com",
        "address": "Ataturk Cd. 12",
        "city": "Istanbul",
        "items": [
            {
                "product_id": 1, "product_name": "Linen Curtain", "width": "150", "height": "260",
                "pleat_type": "pilesiz", "quantity": 1, "price": "150.00",
            },
            {
                "product_id": 2, "product_name": "Velvet Curtain", "width": "200", "height": "240",
                "pleat_type": "1x1", "quantity": 1, "price": "100.00",
            },
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def client(orchestrator, refunds):
    main.app.dependency_overrides[main.get_payment_orchestrator] = lambda: orchestrator
    main.app.dependency_overrides[main.get_refund_orchestrator] = lambda: refunds
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def test_card_payment_returns_challenge_html(client, gateway):
    resp = client.post("/api/payments/card", json=_card_payload())

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == "<html>3ds challenge</html>"
    assert len(gateway.init_calls) == 1


def test_card_payment_price_mismatch_is_400(client, gateway):
    payload = _card_payload()
    payload["items"][0]["price"] = "120.00"

    resp = client.post("/api/payments/card", json=payload)

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["data"]["code"] == "validation_error"
    assert gateway.init_calls == []


def test_card_payment_requires_an_address(client):
    resp = client.post("/api/payments/card", json=_card_payload(address=None, city=None))

    assert resp.status_code == 422


def test_callback_redirects_to_success_page(client, gateway, pending_store):
    client.post("/api/payments/card", json=_card_payload())
    conversation_id = gateway.init_calls[0].conversation_id
    gateway.approve("PAY-1")

    resp = client.post(
        "/api/payments/3ds-callback",
        data={"paymentId": "PAY-1", "conversationId": conversation_id},
        follow_redirects=False,
    )

    assert resp.status_code == 303
    assert resp.headers["location"].startswith(f"{settings.frontend_url}/payment/success?order=ORD-")
    assert len(pending_store) == 0


def test_callback_failure_redirects_with_reason(client):
    resp = client.post("/api/payments/3ds-callback", data={}, follow_redirects=False)

    assert resp.status_code == 303
    assert resp.headers["location"] == (
        f"{settings.frontend_url}/payment/failure?reason={quote('Missing payment parameters.')}"
    )


def test_refund_endpoint(client, gateway, session_factory):
    with session_factory() as db:
        db.add(
            Order(
                order_number="ORD-20260101-1111", status="PAID", version=0, customer_email="a@example.com",
                customer_name="Ayse Yilmaz", subtotal=Decimal("200.00"), total_amount=Decimal("200.00"),
                gateway_payment_id="PAY-7", gateway_transaction_id="TX-7",
            )
        )
        db.commit()
    gateway.approve("PAY-7", ("TX-7",))

    resp = client.post("/api/payments/refund", json={"identifier": "ORD-20260101-1111", "refund_amount": "75.5"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Refund of 75.50 completed for order ORD-20260101-1111."
    assert body["data"]["refund_transaction_id"] == "RF-1"


def test_refund_unknown_target_is_404(client):
    resp = client.post("/api/payments/refund", json={"identifier": "nope", "refund_amount": "10"})

    assert resp.status_code == 404
    assert resp.json()["message"] == "refund target not found"


def test_quote_endpoint(client, gateway):
    resp = client.post("/api/payments/quote", json={"items": _card_payload()["items"]})

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["subtotal"] == "250.00"
    assert data["total"] == "250.00"
    assert [item["charge"] for item in data["items"]] == ["150.00", "100.00"]
    assert gateway.init_calls == []


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "payment_initiations_total" in resp.text
