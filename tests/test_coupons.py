"""Cart coupon lookup, minimum charge and discount redistribution."""

import random
from decimal import Decimal

import pytest

from storepay.services.checkout.coupons import CouponReconciler, redistribute, resolve_cart_coupon
from storepay.services.checkout.domain import CartCoupon, PricedBasket, ValidatedLineItem
from storepay.services.checkout.models import Cart


def _item(price: str, product_id: int = 1) -> ValidatedLineItem:
    amount = Decimal(price)
    return ValidatedLineItem(
        product_id=product_id,
        product_name=f"Curtain {product_id}",
        product_sku=None,
        width_cm=Decimal("100"),
        height_cm=Decimal("250"),
        pleat_type="1x1",
        quantity=1,
        unit_price=amount,
        declared_price=amount,
        server_price=amount,
        stock_delta=Decimal("1"),
        charge=amount,
    )


def _basket(*prices: str) -> PricedBasket:
    items = tuple(_item(price, idx) for idx, price in enumerate(prices, start=1))
    subtotal = sum((item.server_price for item in items), Decimal("0.00"))
    return PricedBasket(subtotal=subtotal, declared_subtotal=subtotal, items=items)


def test_discount_is_spread_proportionally():
    reconciler = CouponReconciler(Decimal("20.00"))
    coupon = CartCoupon(cart_id=10, coupon_code="SAVE50", discount_amount=Decimal("50.00"))

    plan = reconciler.reconcile(_basket("150.00", "100.00"), coupon).unwrap()

    assert plan.charge_amount == Decimal("200.00")
    assert plan.coupon_code == "SAVE50"
    assert [item.charge for item in plan.items] == [Decimal("120.00"), Decimal("80.00")]


def test_rounding_remainder_lands_on_last_line():
    reconciler = CouponReconciler(Decimal("20.00"))
    coupon = CartCoupon(coupon_code="TEN", discount_amount=Decimal("10.00"))

    plan = reconciler.reconcile(_basket("33.33", "33.33", "33.34"), coupon).unwrap()

    charges = [item.charge for item in plan.items]
    assert sum(charges) == Decimal("90.00")
    assert charges[:2] == [Decimal("30.00"), Decimal("30.00")]
    assert charges[2] == Decimal("30.00")


def test_remainder_moves_to_largest_when_last_would_go_negative():
    items = (_item("0.05", 1), _item("0.05", 2), _item("0.00", 3))

    charged = redistribute(items, Decimal("0.10"), Decimal("0.01"))

    charges = [item.charge for item in charged]
    assert sum(charges) == Decimal("0.01")
    assert all(charge >= 0 for charge in charges)


def test_many_tiny_lines_never_go_negative():
    items = tuple(_item("0.05", idx) for idx in range(1, 5))

    charged = redistribute(items, Decimal("0.20"), Decimal("0.02"))

    charges = [item.charge for item in charged]
    assert sum(charges) == Decimal("0.02")
    assert all(charge >= 0 for charge in charges)


@pytest.mark.parametrize("seed", range(25))
def test_redistributed_charges_always_sum_to_the_total(seed):
    rng = random.Random(seed)
    prices = [Decimal(rng.randint(1, 99_999)) / 100 for _ in range(rng.randint(1, 12))]
    basket = _basket(*(str(price) for price in prices))
    charge_amount = Decimal(rng.randint(0, int(basket.subtotal * 100))) / 100

    charged = redistribute(basket.items, basket.subtotal, charge_amount)

    charges = [item.charge for item in charged]
    assert sum(charges) == charge_amount
    assert all(charge >= 0 for charge in charges)
    assert all(charge == charge.quantize(Decimal("0.01")) for charge in charges)


def test_no_discount_keeps_server_prices():
    plan = CouponReconciler(Decimal("20.00")).reconcile(_basket("150.00", "100.00"), CartCoupon()).unwrap()

    assert plan.discount_amount == Decimal("0.00")
    assert plan.coupon_code is None
    assert [item.charge for item in plan.items] == [Decimal("150.00"), Decimal("100.00")]


def test_charge_below_minimum_is_rejected():
    coupon = CartCoupon(coupon_code="BIG", discount_amount=Decimal("90.00"))

    result = CouponReconciler(Decimal("20.00")).reconcile(_basket("100.00"), coupon)

    assert not result.ok
    assert result.error.message == "Total amount after discount must be at least 20.00."


def test_discount_larger_than_basket_is_rejected():
    coupon = CartCoupon(coupon_code="ALL", discount_amount=Decimal("500.00"))

    result = CouponReconciler(Decimal("20.00")).reconcile(_basket("100.00"), coupon)

    assert not result.ok
    assert result.error.message == "Total amount must be greater than zero."


def test_quotes_skip_minimum_charge():
    coupon = CartCoupon(coupon_code="BIG", discount_amount=Decimal("90.00"))

    result = CouponReconciler(Decimal("20.00")).reconcile(_basket("100.00"), coupon, enforce_minimum=False)

    assert result.ok
    assert result.value.charge_amount == Decimal("10.00")


def test_cart_of_another_user_is_rejected(session_factory, coupon_cart):
    with session_factory() as db:
        result = resolve_cart_coupon(db, cart_id=10, user_id=8, guest_user_id=None)

    assert not result.ok
    assert result.error.message == "This cart does not belong to you."


def test_guest_cart_ownership(session_factory):
    with session_factory() as db:
        db.add(Cart(id=20, guest_user_id="guest-a", status="ACTIVE", coupon_code="HI", discount_amount=Decimal("5")))
        db.commit()

        assert resolve_cart_coupon(db, 20, None, "guest-a").unwrap().coupon_code == "HI"
        assert not resolve_cart_coupon(db, 20, None, "guest-b").ok


def test_active_cart_is_found_without_cart_id(session_factory, coupon_cart):
    with session_factory() as db:
        coupon = resolve_cart_coupon(db, None, 7, None).unwrap()

    assert coupon.cart_id == 10
    assert coupon.discount_amount == Decimal("50.00")


def test_submitted_code_never_overrides_cart(session_factory, coupon_cart):
    with session_factory() as db:
        coupon = resolve_cart_coupon(db, 10, 7, None, submitted_code="FREE100").unwrap()

    assert coupon.coupon_code == "SAVE50"
    assert coupon.discount_amount == Decimal("50.00")


def test_no_cart_means_no_discount(session_factory):
    with session_factory() as db:
        coupon = resolve_cart_coupon(db, None, 42, None, submitted_code="SAVE50").unwrap()

    assert coupon == CartCoupon()
