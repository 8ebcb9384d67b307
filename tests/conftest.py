"""Shared fixtures: in-memory SQLite, a recording gateway and wired orchestrators."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TRACING_ENABLED", "false")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storepay.common.db import Base
from storepay.services.checkout.gateway import RefundOutcome, RetrievedPayment, ThreeDSInitResult
from storepay.services.checkout.models import Cart, CouponUsage, Product
from storepay.services.checkout.refunds import RefundOrchestrator
from storepay.services.checkout.schemas import LineItemRequest, PaymentSubmitRequest
from storepay.services.checkout.service import PaymentOrchestrator
from storepay.services.checkout.sessions import SessionStore


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway:
    """Records every call and answers from canned results."""

    def __init__(self) -> None:
        self.init_calls = []
        self.retrieve_calls = []
        self.refund_calls = []
        self.init_result = ThreeDSInitResult(status="success", html_content="<html>3ds challenge</html>")
        self.payments: dict[str, RetrievedPayment] = {}
        self.refund_result = RefundOutcome(status="success", refund_transaction_id="RF-1")

    def initiate_three_d_secure(self, request):
        self.init_calls.append(request)
        return self.init_result

    def retrieve_payment(self, payment_id, conversation_id=None):
        self.retrieve_calls.append(payment_id)
        return self.payments.get(
            payment_id,
            RetrievedPayment(status="failure", error_code="NOT_FOUND", error_message="payment not found"),
        )

    def create_refund(self, transaction_id, amount, currency, conversation_id=None, ip=None):
        self.refund_calls.append(
            {"transaction_id": transaction_id, "amount": amount, "currency": currency, "ip": ip}
        )
        return self.refund_result

    def approve(self, payment_id: str = "PAY-1", transaction_ids=("TX-1", "TX-2")) -> None:
        self.payments[payment_id] = RetrievedPayment(
            status="success",
            payment_id=payment_id,
            payment_status="SUCCESS",
            transaction_ids=tuple(transaction_ids),
            card_brand="VISA",
        )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as db:
        db.add_all(
            [
                Product(id=1, name="Linen Curtain", sku="LIN-01", unit_price=Decimal("100.00"),
                        stock_meters=Decimal("50.00")),
                Product(id=2, name="Velvet Curtain", sku="VEL-02", unit_price=Decimal("50.00"), stock_meters=None),
            ]
        )
        db.commit()
    yield factory
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def pending_store(clock):
    return SessionStore("pending_checkout", ttl_seconds=3600, clock=clock)


@pytest.fixture
def refund_store(clock):
    return SessionStore("refund_context", ttl_seconds=7 * 86400, clock=clock)


@pytest.fixture
def orchestrator(session_factory, gateway, pending_store, refund_store):
    return PaymentOrchestrator(
        session_factory,
        gateway,
        pending_store,
        refund_store,
        callback_url="http://checkout.test/api/payments/3ds-callback",
    )


@pytest.fixture
def refunds(session_factory, gateway, refund_store):
    return RefundOrchestrator(session_factory, gateway, refund_store)


@pytest.fixture
def coupon_cart(session_factory):
    """Active cart of user 7 carrying a 50.00 coupon, plus the pending usage."""

    with session_factory() as db:
        cart = Cart(id=10, user_id=7, status="ACTIVE", coupon_code="SAVE50", discount_amount=Decimal("50.00"))
        db.add(cart)
        db.add(CouponUsage(coupon_code="SAVE50", user_id=7, status="PENDING"))
        db.commit()
    return cart


def line_items():
    """150.00 of linen plus 100.00 of velvet."""

    return [
        LineItemRequest(
            product_id=1, product_name="Linen Curtain", width=Decimal("150"), height=Decimal("260"),
            pleat_type="pilesiz", quantity=1, price=Decimal("150.00"),
        ),
        LineItemRequest(
            product_id=2, product_name="Velvet Curtain", width=Decimal("200"), height=Decimal("240"),
            pleat_type="1x1", quantity=1, price=Decimal("100.00"),
        ),
    ]


def payment_request(**overrides) -> PaymentSubmitRequest:
    data = {
        "card_number": "5528790000000008",
        "card_expiry": "12/30",
        "card_cvc": "123",
        "first_name": "Ayse",
        "last_name": "Yilmaz",
        "email": "ayse@example.com",
        "phone": "+905350000000",
        "address": "Ataturk Cd. 12",
        "address_detail": "Daire 4",
        "city": "Istanbul",
        "district": "Kadikoy",
        "items": line_items(),
    }
    data.update(overrides)
    return PaymentSubmitRequest(**data)
