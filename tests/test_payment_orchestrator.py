"""Initiate -> 3DS callback -> order flow against an in-memory database."""

from decimal import Decimal

from sqlalchemy import select

from storepay.common.errors import GatewayError, ReconciliationError, ValidationError
from storepay.services.checkout.domain import ClientInfo
from storepay.services.checkout.gateway import GATEWAY_UNAVAILABLE, RetrievedPayment, ThreeDSInitResult
from storepay.services.checkout.models import (
    Cart,
    CartItem,
    CouponUsage,
    Order,
    OutboxEvent,
    PaymentRecord,
    Product,
    SavedAddress,
)
from storepay.services.checkout.post_commit import PostCommitAction, clear_cart
from storepay.services.checkout.schemas import QuoteRequest
from storepay.services.checkout.service import PaymentOrchestrator

from conftest import line_items, payment_request

CLIENT = ClientInfo(ip_address="10.0.0.1", user_agent="pytest")


def _audit(session_factory, conversation_id):
    with session_factory() as db:
        return db.execute(
            select(PaymentRecord).where(PaymentRecord.conversation_id == conversation_id)
        ).scalar_one_or_none()


def _initiate_with_coupon(orchestrator):
    return orchestrator.initiate(payment_request(user_id=7, cart_id=10), CLIENT).unwrap()


def test_initiate_sends_repriced_basket(orchestrator, gateway, pending_store, session_factory, coupon_cart):
    challenge = _initiate_with_coupon(orchestrator)

    assert challenge.html_content == "<html>3ds challenge</html>"
    assert challenge.charge_amount == Decimal("200.00")

    request = gateway.init_calls[0]
    assert request.conversation_id == challenge.conversation_id
    assert request.price == request.paid_price == Decimal("200.00")
    assert [item.id for item in request.basket_items] == ["ITEM-1", "ITEM-2"]
    assert [item.price for item in request.basket_items] == [Decimal("120.00"), Decimal("80.00")]
    assert [item.category2 for item in request.basket_items] == ["pilesiz", "1x1"]
    assert request.card.expire_month == "12"
    assert request.card.expire_year == "2030"
    assert request.buyer.ip == "10.0.0.1"
    assert request.shipping_address.address == "Ataturk Cd. 12 - Daire 4"

    record = _audit(session_factory, challenge.conversation_id)
    assert record.status == "PENDING"
    assert record.amount == Decimal("200.00")
    assert record.ip_address == "10.0.0.1"

    session = pending_store.get_by_primary_key(challenge.conversation_id)
    assert session.state == "3DS_PENDING"
    assert session.coupon_code == "SAVE50"


def test_price_mismatch_never_reaches_gateway(orchestrator, gateway, session_factory):
    items = line_items()
    items[0] = items[0].model_copy(update={"price": Decimal("140.00")})

    result = orchestrator.initiate(payment_request(items=items), CLIENT)

    assert not result.ok
    assert isinstance(result.error, ValidationError)
    assert gateway.init_calls == []
    with session_factory() as db:
        assert db.execute(select(PaymentRecord)).first() is None


def test_foreign_cart_is_rejected_before_gateway(orchestrator, gateway, coupon_cart):
    result = orchestrator.initiate(payment_request(user_id=99, cart_id=10), CLIENT)

    assert result.error.message == "This cart does not belong to you."
    assert gateway.init_calls == []


def test_gateway_init_failure_fails_audit(orchestrator, gateway, pending_store, session_factory):
    gateway.init_result = ThreeDSInitResult(status="failure", error_code="12", error_message="Invalid card number")

    result = orchestrator.initiate(payment_request(), CLIENT)

    assert isinstance(result.error, GatewayError)
    assert result.error.message == "3DS initialization failed: Invalid card number"
    assert len(pending_store) == 0
    with session_factory() as db:
        record = db.execute(select(PaymentRecord)).scalar_one()
    assert record.status == "FAILED"
    assert record.error_code == "12"


def test_complete_creates_order_and_side_effects(
    orchestrator, gateway, pending_store, refund_store, session_factory, coupon_cart
):
    with session_factory() as db:
        db.add(CartItem(cart_id=10, product_id=1, width_cm=Decimal("150"), height_cm=Decimal("260"), quantity=1))
        db.commit()
    challenge = _initiate_with_coupon(orchestrator)
    gateway.approve("PAY-1", ("TX-1", "TX-2"))

    done = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap()

    assert done.replayed is False
    assert done.total_amount == Decimal("200.00")
    assert done.warnings == ()
    assert len(pending_store) == 0

    with session_factory() as db:
        order = db.execute(select(Order).where(Order.order_number == done.order_number)).scalar_one()
        assert order.status == "PAID"
        assert order.gateway_payment_id == "PAY-1"
        assert order.gateway_transaction_id == "TX-1"
        assert order.subtotal == Decimal("250.00")
        assert order.discount_amount == Decimal("50.00")
        assert order.total_amount == Decimal("200.00")
        assert [item.charged_price for item in order.items] == [Decimal("120.00"), Decimal("80.00")]
        assert order.addresses[0].city == "Istanbul"

        record = db.execute(select(PaymentRecord)).scalar_one()
        assert record.status == "SUCCESS"
        assert record.order_number == done.order_number
        assert record.card_brand == "VISA"

        assert db.get(Product, 1).stock_meters == Decimal("48.50")
        assert db.get(Product, 2).stock_meters is None
        cart = db.get(Cart, 10)
        assert cart.coupon_code is None
        assert db.execute(select(CartItem)).first() is None
        usage = db.execute(select(CouponUsage)).scalar_one()
        assert usage.status == "USED"
        assert usage.order_number == done.order_number
        assert len(db.execute(select(OutboxEvent)).all()) == 2

    context = refund_store.get_by_primary_key("PAY-1")
    assert context.order_number == done.order_number
    assert refund_store.get_by_secondary_key(done.order_number) == context


def test_replayed_callback_returns_existing_order(orchestrator, gateway, session_factory):
    challenge = orchestrator.initiate(payment_request(), CLIENT).unwrap()
    gateway.approve("PAY-1")

    first = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap()
    second = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap()

    assert second.replayed is True
    assert second.order_number == first.order_number
    with session_factory() as db:
        assert len(db.execute(select(Order)).all()) == 1


def test_declined_payment_fails_audit_and_keeps_session(orchestrator, gateway, pending_store, session_factory):
    challenge = orchestrator.initiate(payment_request(), CLIENT).unwrap()

    result = orchestrator.complete("PAY-404", challenge.conversation_id, CLIENT)

    assert isinstance(result.error, GatewayError)
    assert result.error.message == "3D payment failed: payment not found"
    assert pending_store.get_by_primary_key(challenge.conversation_id) is not None
    record = _audit(session_factory, challenge.conversation_id)
    assert record.status == "FAILED"
    assert record.error_code == "NOT_FOUND"
    with session_factory() as db:
        assert db.execute(select(Order)).first() is None


def test_unreachable_gateway_leaves_audit_pending_for_retry(orchestrator, gateway, pending_store, session_factory):
    challenge = orchestrator.initiate(payment_request(), CLIENT).unwrap()
    gateway.payments["PAY-1"] = RetrievedPayment(
        status="failure", error_code=GATEWAY_UNAVAILABLE, error_message="timeout"
    )

    result = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT)

    assert isinstance(result.error, GatewayError)
    assert len(pending_store) == 1
    assert _audit(session_factory, challenge.conversation_id).status == "PENDING"

    gateway.approve("PAY-1")
    done = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap()

    assert done.replayed is False
    record = _audit(session_factory, challenge.conversation_id)
    assert record.status == "SUCCESS"
    assert record.order_number == done.order_number
    with session_factory() as db:
        assert len(db.execute(select(Order)).all()) == 1


def test_forged_decline_does_not_block_the_real_callback(orchestrator, gateway, session_factory):
    challenge = orchestrator.initiate(payment_request(), CLIENT).unwrap()
    orchestrator.complete("PAY-404", challenge.conversation_id, CLIENT)
    gateway.approve("PAY-1")

    done = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap()

    record = _audit(session_factory, challenge.conversation_id)
    assert record.status == "SUCCESS"
    assert record.error_code is None
    assert record.gateway_payment_id == "PAY-1"
    assert record.order_number == done.order_number


def test_concurrent_duplicate_callback_is_relinked_to_the_order(orchestrator, gateway, pending_store, session_factory):
    challenge = orchestrator.initiate(payment_request(), CLIENT).unwrap()
    gateway.approve("PAY-1")
    real_take = pending_store.take
    calls = []
    duplicates = []

    def take_then_duplicate(key):
        calls.append(key)
        session = real_take(key)
        if len(calls) == 1:
            duplicates.append(orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT))
        return session

    pending_store.take = take_then_duplicate

    done = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap()

    assert isinstance(duplicates[0].error, ReconciliationError)
    record = _audit(session_factory, challenge.conversation_id)
    assert record.status == "SUCCESS"
    assert record.error_code is None
    assert record.order_number == done.order_number


def test_duplicate_that_loses_the_race_returns_the_winning_order(orchestrator, gateway, pending_store, session_factory):
    challenge = orchestrator.initiate(payment_request(), CLIENT).unwrap()
    gateway.approve("PAY-1")
    real_take = pending_store.take
    calls = []
    winners = []

    def duplicate_then_take(key):
        calls.append(key)
        if len(calls) == 1:
            winners.append(orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap())
        return real_take(key)

    pending_store.take = duplicate_then_take

    late = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap()

    assert late.replayed is True
    assert late.order_number == winners[0].order_number
    record = _audit(session_factory, challenge.conversation_id)
    assert record.error_code is None
    with session_factory() as db:
        assert len(db.execute(select(Order)).all()) == 1

def test_missing_callback_parameters(orchestrator, gateway):
    result = orchestrator.complete(None, "conv-1")

    assert result.error.message == "Missing payment parameters."
    assert gateway.retrieve_calls == []


def test_paid_without_session_is_flagged(orchestrator, gateway, session_factory):
    gateway.approve("PAY-9")

    result = orchestrator.complete("PAY-9", "conv-unknown", CLIENT)

    assert isinstance(result.error, ReconciliationError)
    assert result.error.message == "Payment session not found."
    record = _audit(session_factory, "conv-unknown")
    assert record.status == "SUCCESS"
    assert record.error_code == "ORDER_NOT_CREATED"


def test_expired_session_blocks_order_and_flags_late_payment(orchestrator, gateway, pending_store, clock, session_factory):
    challenge = orchestrator.initiate(payment_request(), CLIENT).unwrap()
    clock.advance(3601)

    assert pending_store.evict_expired() == 1
    record = _audit(session_factory, challenge.conversation_id)
    assert record.status == "FAILED"
    assert record.error_code == "SESSION_EXPIRED"

    gateway.approve("PAY-1")
    result = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT)
    assert isinstance(result.error, ReconciliationError)
    record = _audit(session_factory, challenge.conversation_id)
    assert record.status == "SUCCESS"
    assert record.error_code == "ORDER_NOT_CREATED"
    with session_factory() as db:
        assert db.execute(select(Order)).first() is None


def test_saved_address_is_used_for_owner(orchestrator, gateway, session_factory):
    with session_factory() as db:
        db.add(
            SavedAddress(
                id=3, user_id=7, full_name="Ayse Y.", phone="+905351111111",
                address_line="Bagdat Cd. 5", city="Ankara", district="Cankaya",
            )
        )
        db.commit()

    orchestrator.initiate(payment_request(user_id=7, address_id=3, address=None, city=None), CLIENT).unwrap()

    request = gateway.init_calls[0]
    assert request.shipping_address.city == "Ankara"
    assert request.shipping_address.contact_name == "Ayse Y."


def test_someone_elses_saved_address_needs_manual_address(orchestrator, gateway, session_factory):
    with session_factory() as db:
        db.add(SavedAddress(id=3, user_id=8, full_name="Other", address_line="Elsewhere", city="Izmir"))
        db.commit()

    result = orchestrator.initiate(payment_request(user_id=7, address_id=3, address=None, city=None), CLIENT)

    assert result.error.message == "Shipping address is required."
    assert gateway.init_calls == []


def test_quote_reports_breakdown_without_gateway(orchestrator, gateway, coupon_cart):
    plan = orchestrator.quote(QuoteRequest(items=line_items(), cart_id=10, user_id=7)).unwrap()

    assert plan.subtotal == Decimal("250.00")
    assert plan.charge_amount == Decimal("200.00")
    assert gateway.init_calls == []


def test_post_commit_failure_keeps_order(session_factory, gateway, pending_store, refund_store):
    def explode(session_factory, committed):
        raise RuntimeError("mail queue down")

    orchestrator = PaymentOrchestrator(
        session_factory,
        gateway,
        pending_store,
        refund_store,
        post_commit_actions=[PostCommitAction("explode", explode), PostCommitAction("clear_cart", clear_cart)],
    )
    challenge = orchestrator.initiate(payment_request(), CLIENT).unwrap()
    gateway.approve("PAY-1")

    done = orchestrator.complete("PAY-1", challenge.conversation_id, CLIENT).unwrap()

    assert [warning.action for warning in done.warnings] == ["explode"]
    assert done.warnings[0].message == "mail queue down"
    with session_factory() as db:
        assert db.execute(select(Order)).scalar_one().status == "PAID"
