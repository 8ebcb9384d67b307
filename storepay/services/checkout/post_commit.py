"""Best-effort side effects that run after an order has been committed.

Each action opens its own database session and is isolated from the others:
one failing never stops the rest and never undoes the order. Failures become
`PersistenceWarning`s that are logged, counted and handed back to the caller.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy import delete, select

from storepay.common.config import settings
from storepay.common.errors import PersistenceWarning
from storepay.common.events import ADMIN_ORDER_TOPIC, ORDER_CONFIRMATION_TOPIC
from storepay.common.logging import logger, trace_id_ctx
from storepay.common.metrics import post_commit_failures_total
from storepay.common.money import ZERO, format_amount
from storepay.common.outbox import enqueue_event
from storepay.services.checkout.domain import PendingTransactionSession
from storepay.services.checkout.models import Cart, CartItem, CouponUsage, OutboxEvent, Product


@dataclass(frozen=True)
class CommittedOrder:
    """What post-commit actions know about the order that was just stored."""

    order_number: str
    session: PendingTransactionSession


@dataclass(frozen=True)
class PostCommitAction:
    name: str
    fn: Callable[..., None]


def run_post_commit_actions(
    session_factory, actions: list[PostCommitAction], committed: CommittedOrder
) -> list[PersistenceWarning]:
    """Run every action in order and collect failures instead of raising."""

    warnings: list[PersistenceWarning] = []
    for action in actions:
        try:
            action.fn(session_factory, committed)
        except Exception as exc:
            logger.exception(
                "post_commit_action_failed action=%s order_number=%s error=%s",
                action.name,
                committed.order_number,
                exc,
            )
            post_commit_failures_total.labels(service=settings.service_name, action=action.name).inc()
            warnings.append(
                PersistenceWarning(action.name, str(exc), {"order_number": committed.order_number})
            )
    return warnings


def decrement_stock(session_factory, committed: CommittedOrder) -> None:
    """Take the fabric each line consumed out of tracked stock, floored at zero."""

    with session_factory() as db:
        for item in committed.session.items:
            product = db.get(Product, item.product_id)
            if product is None:
                logger.warning("stock_product_missing product_id=%s", item.product_id)
                continue
            if product.stock_meters is None:
                continue
            current = Decimal(product.stock_meters)
            product.stock_meters = max(ZERO, current - item.stock_delta)
            logger.info(
                "stock_decremented product_id=%s before=%s used=%s after=%s",
                product.id,
                current,
                item.stock_delta,
                product.stock_meters,
            )
        db.commit()


def mark_coupon_used(session_factory, committed: CommittedOrder) -> None:
    """Flip the buyer's pending coupon usage to USED for this order."""

    session = committed.session
    if not session.coupon_code or (session.buyer.user_id is None and session.buyer.guest_user_id is None):
        return
    with session_factory() as db:
        query = select(CouponUsage).where(CouponUsage.status == "PENDING")
        if session.buyer.user_id is not None:
            query = query.where(CouponUsage.user_id == session.buyer.user_id)
        else:
            query = query.where(CouponUsage.guest_user_id == session.buyer.guest_user_id)
        usage = db.execute(query.order_by(CouponUsage.id.desc()).limit(1)).scalar_one_or_none()
        if usage is None:
            logger.warning("coupon_usage_pending_missing coupon=%s", session.coupon_code)
            return
        if usage.coupon_code.lower() != session.coupon_code.lower():
            logger.warning("coupon_usage_mismatch expected=%s found=%s", session.coupon_code, usage.coupon_code)
            return
        usage.status = "USED"
        usage.order_number = committed.order_number
        usage.used_at = datetime.now(timezone.utc)
        db.commit()


def clear_cart(session_factory, committed: CommittedOrder) -> None:
    """Empty the cart the order was placed from."""

    session = committed.session
    with session_factory() as db:
        cart = db.get(Cart, session.cart_id) if session.cart_id is not None else None
        if cart is None and (session.buyer.user_id is not None or session.buyer.guest_user_id is not None):
            query = select(Cart).where(Cart.status == "ACTIVE")
            if session.buyer.user_id is not None:
                query = query.where(Cart.user_id == session.buyer.user_id)
            else:
                query = query.where(Cart.guest_user_id == session.buyer.guest_user_id)
            cart = db.execute(query.limit(1)).scalar_one_or_none()
        if cart is None:
            return
        db.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
        cart.coupon_code = None
        cart.discount_amount = None
        db.commit()


def _order_items_payload(session: PendingTransactionSession) -> list[dict]:
    return [
        {
            "product_name": item.product_name,
            "description": f"{item.width_cm:.0f} x {item.height_cm:.0f} cm, pleat {item.pleat_type}",
            "quantity": item.quantity,
            "total_price": format_amount(item.server_price),
        }
        for item in session.items
    ]


def queue_confirmation_email(session_factory, committed: CommittedOrder) -> None:
    session = committed.session
    with session_factory() as db:
        enqueue_event(
            db,
            OutboxEvent,
            topic=ORDER_CONFIRMATION_TOPIC,
            aggregate_type="order",
            aggregate_id=committed.order_number,
            trace_id=trace_id_ctx.get() or session.conversation_id,
            payload={
                "to_email": session.buyer.email,
                "customer_name": session.buyer.full_name,
                "order_number": committed.order_number,
                "subtotal": format_amount(session.subtotal),
                "discount_amount": format_amount(session.discount_amount),
                "total_amount": format_amount(session.charge_amount),
                "items": _order_items_payload(session),
                "orders_url": f"{settings.frontend_url}/orders",
            },
        )
        db.commit()


def notify_admins(session_factory, committed: CommittedOrder) -> None:
    session = committed.session
    with session_factory() as db:
        enqueue_event(
            db,
            OutboxEvent,
            topic=ADMIN_ORDER_TOPIC,
            aggregate_type="order",
            aggregate_id=committed.order_number,
            trace_id=trace_id_ctx.get() or session.conversation_id,
            payload={
                "order_number": committed.order_number,
                "customer_email": session.buyer.email,
                "customer_name": session.buyer.full_name,
                "total_amount": format_amount(session.charge_amount),
            },
        )
        db.commit()


DEFAULT_POST_COMMIT_ACTIONS = [
    PostCommitAction("decrement_stock", decrement_stock),
    PostCommitAction("mark_coupon_used", mark_coupon_used),
    PostCommitAction("clear_cart", clear_cart),
    PostCommitAction("queue_confirmation_email", queue_confirmation_email),
    PostCommitAction("notify_admins", notify_admins),
]
