"""Cart coupon resolution and discount redistribution.

The only trusted discount is the one already applied to the buyer's active
cart. Whatever coupon code the client submits is compared and logged, nothing
more.
"""

from dataclasses import replace
from decimal import Decimal

from sqlalchemy import select

from storepay.common.errors import Result, ValidationError
from storepay.common.logging import logger
from storepay.common.money import CENT, ZERO, to_money
from storepay.services.checkout.domain import CartCoupon, ChargePlan, PricedBasket
from storepay.services.checkout.models import Cart

ACTIVE_CART = "ACTIVE"
NOT_YOUR_CART = "This cart does not belong to you."


def _cart_coupon(cart: Cart) -> CartCoupon:
    if cart.coupon_code and cart.discount_amount is not None:
        logger.info(
            "cart_coupon_found cart_id=%s coupon=%s discount=%s", cart.id, cart.coupon_code, cart.discount_amount
        )
        return CartCoupon(cart_id=cart.id, coupon_code=cart.coupon_code, discount_amount=to_money(cart.discount_amount))
    return CartCoupon(cart_id=cart.id)


def resolve_cart_coupon(
    db,
    cart_id: int | None,
    user_id: int | None,
    guest_user_id: str | None,
    submitted_code: str | None = None,
) -> Result[CartCoupon]:
    """Find the buyer's cart and the coupon applied to it.

    An explicit cart id must belong to the caller. Without one the caller's
    active cart is used, if any.
    """

    coupon = CartCoupon()
    if cart_id is not None:
        cart = db.get(Cart, cart_id)
        if cart is not None:
            if user_id is not None and cart.user_id != user_id:
                return Result.failure(ValidationError(NOT_YOUR_CART, {"cart_id": cart_id}))
            if user_id is None and guest_user_id is not None and cart.guest_user_id != guest_user_id:
                return Result.failure(ValidationError(NOT_YOUR_CART, {"cart_id": cart_id}))
            coupon = _cart_coupon(cart)
    elif user_id is not None or guest_user_id is not None:
        query = select(Cart).where(Cart.status == ACTIVE_CART)
        if user_id is not None:
            query = query.where(Cart.user_id == user_id)
        else:
            query = query.where(Cart.guest_user_id == guest_user_id)
        cart = db.execute(query.order_by(Cart.id.desc()).limit(1)).scalar_one_or_none()
        if cart is not None:
            coupon = _cart_coupon(cart)

    if submitted_code and submitted_code.strip():
        if coupon.coupon_code is None or coupon.coupon_code.lower() != submitted_code.strip().lower():
            logger.warning("coupon_code_mismatch submitted=%s cart=%s", submitted_code, coupon.coupon_code)
    return Result.success(coupon)


class CouponReconciler:
    """Turns a repriced basket plus cart discount into the gateway charge."""

    def __init__(self, min_charge: Decimal) -> None:
        self.min_charge = min_charge

    def reconcile(self, basket: PricedBasket, coupon: CartCoupon, enforce_minimum: bool = True) -> Result[ChargePlan]:
        """Apply the cart discount and spread the charge over the lines.

        `enforce_minimum=False` is for read-only quotes, which report the
        breakdown even when it could not be charged.
        """

        discount = to_money(coupon.discount_amount or ZERO)
        if discount < ZERO:
            discount = ZERO
        charge_amount = max(ZERO, to_money(basket.subtotal - discount))
        if discount > ZERO:
            logger.info(
                "coupon_applied coupon=%s subtotal=%s discount=%s charge=%s",
                coupon.coupon_code,
                basket.subtotal,
                discount,
                charge_amount,
            )

        if enforce_minimum and charge_amount <= ZERO:
            return Result.failure(ValidationError("Total amount must be greater than zero."))
        if enforce_minimum and charge_amount < self.min_charge:
            return Result.failure(
                ValidationError(
                    f"Total amount after discount must be at least {self.min_charge}.",
                    {"charge_amount": str(charge_amount), "min_charge": str(self.min_charge)},
                )
            )

        return Result.success(
            ChargePlan(
                subtotal=basket.subtotal,
                discount_amount=discount,
                charge_amount=charge_amount,
                coupon_code=coupon.coupon_code if discount > ZERO else None,
                items=redistribute(basket.items, basket.subtotal, charge_amount) if discount > ZERO else basket.items,
            )
        )


def redistribute(items, subtotal: Decimal, charge_amount: Decimal) -> tuple:
    """Spread `charge_amount` over lines proportionally to their server price.

    The rounding remainder goes to the last line. When that would turn it
    negative, the missing cents are taken one at a time from the largest
    lines, so charges sum to the total exactly and none is below zero.
    """

    if not items:
        return ()
    if subtotal <= ZERO:
        return tuple(replace(item, charge=ZERO) for item in items)

    charges = [to_money(item.server_price * charge_amount / subtotal) for item in items]
    charges[-1] += charge_amount - sum(charges, ZERO)
    while charges[-1] < ZERO:
        donor = max(range(len(charges) - 1), key=lambda idx: charges[idx])
        charges[donor] -= CENT
        charges[-1] += CENT
    return tuple(replace(item, charge=charge) for item, charge in zip(items, charges))
