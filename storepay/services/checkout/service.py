"""Card checkout orchestration.

Drives the three-phase 3DS handshake: `initiate` validates and prices the
basket and asks the gateway for a challenge, the buyer's browser completes
the challenge out of band, and `complete` reconciles the gateway callback
into a durable order. The pending session store is the only link between the
two calls.
"""

import random
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select

from storepay.common.config import settings
from storepay.common.errors import GatewayError, ReconciliationError, Result, ValidationError
from storepay.common.logging import conversation_id_ctx, logger, order_number_ctx
from storepay.common.metrics import payment_completions_total, payment_initiations_total
from storepay.common.state_machine import (
    can_transition_payment_record,
    validate_payment_record_transition,
    validate_transition,
)
from storepay.services.checkout.coupons import CouponReconciler, resolve_cart_coupon
from storepay.services.checkout.domain import (
    BuyerInfo,
    ChargePlan,
    ClientInfo,
    CompletedCheckout,
    PendingTransactionSession,
    RefundContext,
    ShippingAddress,
    ThreeDSChallenge,
)
from storepay.services.checkout.gateway import (
    GATEWAY_UNAVAILABLE,
    BasketItem,
    GatewayAddress,
    GatewayBuyer,
    PaymentCard,
    ThreeDSInitRequest,
    is_success,
)
from storepay.services.checkout.models import Address, Order, OrderItem, PaymentRecord, SavedAddress
from storepay.services.checkout.post_commit import (
    DEFAULT_POST_COMMIT_ACTIONS,
    CommittedOrder,
    run_post_commit_actions,
)
from storepay.services.checkout.pricing import PriceValidator

BASKET_CATEGORY = "Curtain"
ORDER_NUMBER_ATTEMPTS = 5
USER_AGENT_MAX = 500
ORDER_NOT_CREATED = "ORDER_NOT_CREATED"


def generate_order_number(now: datetime | None = None) -> str:
    """Return a number like `ORD-20260217-4821`."""

    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{random.randint(1000, 9999)}"


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value[:limit]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentOrchestrator:
    """Owns the initiate -> callback -> order flow for card payments."""

    def __init__(
        self,
        session_factory,
        gateway,
        pending_store,
        refund_store,
        price_validator: PriceValidator | None = None,
        coupon_reconciler: CouponReconciler | None = None,
        post_commit_actions=None,
        currency: str = settings.currency,
        callback_url: str | None = None,
        service_name: str = settings.service_name,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.pending_store = pending_store
        self.refund_store = refund_store
        self.price_validator = price_validator or PriceValidator(session_factory, settings.price_tolerance)
        self.coupon_reconciler = coupon_reconciler or CouponReconciler(settings.min_charge_amount)
        self.post_commit_actions = (
            DEFAULT_POST_COMMIT_ACTIONS if post_commit_actions is None else post_commit_actions
        )
        self.currency = currency
        self.callback_url = callback_url or f"{settings.callback_base_url}/api/payments/3ds-callback"
        self.service_name = service_name
        self.pending_store.on_evict = self.on_pending_evicted

    def _price(self, items, cart_id, user_id, guest_user_id, coupon_code, enforce_minimum: bool) -> Result[ChargePlan]:
        with self.session_factory() as db:
            coupon = resolve_cart_coupon(db, cart_id, user_id, guest_user_id, coupon_code)
        if not coupon.ok:
            return Result.failure(coupon.error)
        basket = self.price_validator.validate(items)
        if not basket.ok:
            return Result.failure(basket.error)
        return self.coupon_reconciler.reconcile(basket.value, coupon.value, enforce_minimum=enforce_minimum)

    def quote(self, req) -> Result[ChargePlan]:
        """Price a basket for display without touching the gateway."""

        return self._price(req.items, req.cart_id, req.user_id, req.guest_user_id, req.coupon_code, False)

    def _resolve_address(self, req, buyer: BuyerInfo) -> Result[ShippingAddress]:
        if req.address_id is not None and req.user_id is not None:
            with self.session_factory() as db:
                saved = db.get(SavedAddress, req.address_id)
            if saved is not None and saved.user_id == req.user_id:
                return Result.success(
                    ShippingAddress(
                        full_name=saved.full_name,
                        phone=saved.phone,
                        address_line=saved.address_line,
                        address_detail=saved.address_detail,
                        city=saved.city,
                        district=saved.district,
                    )
                )
            logger.warning("saved_address_unusable address_id=%s user_id=%s", req.address_id, req.user_id)
        if not req.address or not req.city:
            return Result.failure(ValidationError("Shipping address is required."))
        return Result.success(
            ShippingAddress(
                full_name=buyer.full_name,
                phone=req.phone,
                address_line=req.address,
                address_detail=req.address_detail,
                city=req.city,
                district=req.district,
            )
        )

    def _reject_initiate(self, error, outcome: str) -> Result:
        logger.warning("payment_initiate_rejected outcome=%s reason=%s", outcome, error.message)
        payment_initiations_total.labels(service=self.service_name, outcome=outcome).inc()
        return Result.failure(error)

    def initiate(self, req, client: ClientInfo | None = None) -> Result[ThreeDSChallenge]:
        """Validate the basket server-side and start a 3DS challenge."""

        client = client or ClientInfo()
        plan = self._price(req.items, req.cart_id, req.user_id, req.guest_user_id, req.coupon_code, True)
        if not plan.ok:
            return self._reject_initiate(plan.error, "validation_error")

        buyer = BuyerInfo(
            first_name=req.first_name,
            last_name=req.last_name,
            email=req.email,
            phone=req.phone,
            user_id=req.user_id,
            guest_user_id=req.guest_user_id,
        )
        address = self._resolve_address(req, buyer)
        if not address.ok:
            return self._reject_initiate(address.error, "validation_error")

        charge = plan.value
        conversation_id = str(uuid4())
        conversation_id_ctx.set(conversation_id)
        logger.info(
            "payment_initiate_validated subtotal=%s discount=%s charge=%s",
            charge.subtotal,
            charge.discount_amount,
            charge.charge_amount,
        )

        with self.session_factory() as db:
            db.add(
                PaymentRecord(
                    conversation_id=conversation_id,
                    amount=charge.charge_amount,
                    currency=self.currency,
                    status="PENDING",
                    customer_email=buyer.email,
                    customer_name=buyer.full_name,
                    customer_phone=buyer.phone,
                    user_id=buyer.user_id,
                    guest_user_id=buyer.guest_user_id,
                    ip_address=client.ip_address,
                    user_agent=_truncate(client.user_agent, USER_AGENT_MAX),
                )
            )
            db.commit()

        result = self.gateway.initiate_three_d_secure(
            self._build_init_request(req, conversation_id, charge, buyer, address.value, client)
        )
        if not is_success(result.status) or not result.html_content:
            self._settle_audit(
                conversation_id,
                "FAILED",
                gateway_status=result.status,
                error_code=result.error_code,
                error_message=result.error_message,
            )
            return self._reject_initiate(
                GatewayError(
                    f"3DS initialization failed: {result.error_message or 'unknown error'}",
                    {"error_code": result.error_code},
                ),
                "gateway_error",
            )

        self.pending_store.put(
            conversation_id,
            PendingTransactionSession(
                conversation_id=conversation_id,
                buyer=buyer,
                address=address.value,
                cart_id=req.cart_id,
                coupon_code=charge.coupon_code,
                discount_amount=charge.discount_amount,
                subtotal=charge.subtotal,
                charge_amount=charge.charge_amount,
                items=charge.items,
                state="3DS_PENDING",
                created_at=_utcnow(),
            ),
        )
        payment_initiations_total.labels(service=self.service_name, outcome="accepted").inc()
        logger.info("payment_initiate_accepted charge=%s", charge.charge_amount)
        return Result.success(
            ThreeDSChallenge(
                conversation_id=conversation_id,
                html_content=result.html_content,
                charge_amount=charge.charge_amount,
            )
        )

    def _build_init_request(
        self, req, conversation_id: str, charge: ChargePlan, buyer: BuyerInfo, address: ShippingAddress, client
    ) -> ThreeDSInitRequest:
        month, year = req.card_expiry.split("/")
        address_text = address.address_line + (f" - {address.address_detail}" if address.address_detail else "")
        gateway_address = GatewayAddress(contact_name=address.full_name, city=address.city, address=address_text)
        return ThreeDSInitRequest(
            conversation_id=conversation_id,
            price=charge.charge_amount,
            paid_price=charge.charge_amount,
            currency=self.currency,
            callback_url=self.callback_url,
            card=PaymentCard(
                card_holder_name=buyer.full_name,
                card_number=req.card_number,
                expire_month=month.strip(),
                expire_year=f"20{year.strip()}",
                cvc=req.card_cvc,
            ),
            buyer=GatewayBuyer(
                id=str(buyer.user_id or buyer.guest_user_id or uuid4()),
                name=buyer.first_name,
                surname=buyer.last_name,
                email=buyer.email,
                gsm_number=buyer.phone,
                registration_address=address_text,
                city=address.city,
                ip=client.ip_address or "0.0.0.0",
            ),
            shipping_address=gateway_address,
            billing_address=gateway_address,
            basket_items=tuple(
                BasketItem(
                    id=f"ITEM-{index}",
                    name=item.product_name,
                    category1=BASKET_CATEGORY,
                    category2=item.pleat_type,
                    price=item.charge,
                )
                for index, item in enumerate(charge.items, start=1)
            ),
            basket_id=conversation_id,
            locale=settings.locale,
        )

    def _settle_audit(
        self,
        conversation_id: str,
        status: str,
        db=None,
        defaults: dict | None = None,
        **fields,
    ) -> PaymentRecord:
        """Move the audit row for a conversation to a settled status.

        A missing row is created so every gateway interaction leaves a trace.
        Rows that cannot make the transition are left untouched, except a
        SUCCESS row flagged `ORDER_NOT_CREATED`, which is linked to the order
        that a concurrent callback built after all.
        """

        own_session = db is None
        if own_session:
            db = self.session_factory()
        try:
            record = db.execute(
                select(PaymentRecord).where(PaymentRecord.conversation_id == conversation_id)
            ).scalar_one_or_none()
            if record is None:
                record = PaymentRecord(
                    conversation_id=conversation_id,
                    currency=self.currency,
                    status=status,
                    **(defaults or {"amount": Decimal("0.00")}),
                )
                db.add(record)
            elif record.status == status == "SUCCESS" and record.error_code == ORDER_NOT_CREATED:
                # A duplicate callback flagged the payment as orphaned before this one built the order.
                logger.info("payment_record_relinked conversation_id=%s", conversation_id)
            elif not can_transition_payment_record(record.status, status):
                logger.warning(
                    "payment_record_already_settled status=%s requested=%s", record.status, status
                )
                return record
            else:
                validate_payment_record_transition(record.status, status)
                record.status = status
            for key, value in fields.items():
                setattr(record, key, value)
            record.completed_at = _utcnow()
            if own_session:
                db.commit()
            return record
        finally:
            if own_session:
                db.close()

    @staticmethod
    def _audit_defaults(session: PendingTransactionSession | None, client: ClientInfo) -> dict:
        defaults = {
            "amount": session.charge_amount if session else Decimal("0.00"),
            "ip_address": client.ip_address,
            "user_agent": _truncate(client.user_agent, USER_AGENT_MAX),
        }
        if session is not None:
            defaults.update(
                customer_email=session.buyer.email,
                customer_name=session.buyer.full_name,
                customer_phone=session.buyer.phone,
                user_id=session.buyer.user_id,
                guest_user_id=session.buyer.guest_user_id,
            )
        return defaults

    def on_pending_evicted(self, conversation_id: str, session: PendingTransactionSession) -> None:
        """Expire the audit row of a checkout whose callback never arrived."""

        with self.session_factory() as db:
            record = db.execute(
                select(PaymentRecord).where(PaymentRecord.conversation_id == conversation_id)
            ).scalar_one_or_none()
            if record is None or record.status != "PENDING":
                return
            validate_payment_record_transition(record.status, "FAILED")
            record.status = "FAILED"
            record.error_code = "SESSION_EXPIRED"
            record.error_message = "3DS callback not received before the session expired"
            record.completed_at = _utcnow()
            db.commit()
        logger.info("payment_session_expired conversation_id=%s", conversation_id)

    def _reject_complete(self, error, outcome: str) -> Result:
        logger.warning("payment_complete_rejected outcome=%s reason=%s", outcome, error.message)
        payment_completions_total.labels(service=self.service_name, outcome=outcome).inc()
        return Result.failure(error)

    def _replayed(self, canonical_id: str, conversation_id: str) -> Result[CompletedCheckout] | None:
        """Result for a callback whose payment already produced an order, else None."""

        with self.session_factory() as db:
            existing = db.execute(
                select(Order).where(Order.gateway_payment_id == canonical_id)
            ).scalar_one_or_none()
        if existing is None:
            return None
        self.pending_store.remove(conversation_id)
        logger.info("payment_callback_replayed order_number=%s", existing.order_number)
        payment_completions_total.labels(service=self.service_name, outcome="replayed").inc()
        return Result.success(
            CompletedCheckout(
                order_number=existing.order_number,
                payment_id=canonical_id,
                total_amount=existing.total_amount,
                replayed=True,
            )
        )

    def complete(
        self, payment_id: str | None, conversation_id: str | None, client: ClientInfo | None = None
    ) -> Result[CompletedCheckout]:
        """Reconcile a gateway callback into an order, exactly once."""

        client = client or ClientInfo()
        if not payment_id or not conversation_id:
            return self._reject_complete(ValidationError("Missing payment parameters."), "validation_error")
        conversation_id_ctx.set(conversation_id)
        logger.info("payment_callback_received payment_id=%s", payment_id)

        payment = self.gateway.retrieve_payment(payment_id, conversation_id)
        if not is_success(payment.status):
            # The session stays until its TTL; a replayed callback may still succeed.
            session = self.pending_store.get_by_primary_key(conversation_id)
            if payment.error_code == GATEWAY_UNAVAILABLE:
                logger.warning("payment_retrieve_unavailable payment_id=%s", payment_id)
            else:
                self._settle_audit(
                    conversation_id,
                    "FAILED",
                    defaults=self._audit_defaults(session, client),
                    gateway_payment_id=payment_id,
                    gateway_status=payment.status,
                    error_code=payment.error_code,
                    error_message=payment.error_message,
                )
            return self._reject_complete(
                GatewayError(
                    f"3D payment failed: {payment.error_message or 'unknown error'}",
                    {"error_code": payment.error_code},
                ),
                "gateway_error",
            )

        canonical_id = payment.payment_id or payment_id
        transaction_id = payment.transaction_ids[0] if payment.transaction_ids else canonical_id

        replayed = self._replayed(canonical_id, conversation_id)
        if replayed is not None:
            return replayed

        session = self.pending_store.take(conversation_id)
        if session is None:
            # A concurrent duplicate may have committed the order after the first check.
            replayed = self._replayed(canonical_id, conversation_id)
            if replayed is not None:
                return replayed
            self._settle_audit(
                conversation_id,
                "SUCCESS",
                defaults=self._audit_defaults(None, client),
                gateway_payment_id=canonical_id,
                gateway_transaction_id=transaction_id,
                gateway_status=payment.status,
                error_code=ORDER_NOT_CREATED,
                error_message="Payment succeeded but no pending checkout session was found",
            )
            logger.error("payment_session_missing payment_id=%s", canonical_id)
            return self._reject_complete(
                ReconciliationError("Payment session not found.", {"payment_id": canonical_id}),
                "reconciliation_error",
            )

        validate_transition(session.state, "COMPLETED")
        try:
            order_number = self._persist_order(session, payment, canonical_id, transaction_id, client)
        except Exception:
            # Put the session back so a retried callback can still build the order.
            self.pending_store.put(conversation_id, session)
            logger.exception("order_persist_failed payment_id=%s", canonical_id)
            raise
        order_number_ctx.set(order_number)

        warnings = run_post_commit_actions(
            self.session_factory,
            self.post_commit_actions,
            CommittedOrder(order_number=order_number, session=session),
        )
        self.refund_store.put(
            canonical_id,
            RefundContext(
                payment_id=canonical_id,
                order_number=order_number,
                amount=session.charge_amount,
                conversation_id=conversation_id,
                transaction_id=transaction_id,
                customer_email=session.buyer.email,
                customer_name=session.buyer.full_name,
                customer_phone=session.buyer.phone,
                address_line=session.address.address_line,
                city=session.address.city,
                district=session.address.district,
                paid_at=_utcnow(),
            ),
            secondary_key=order_number,
        )
        payment_completions_total.labels(service=self.service_name, outcome="completed").inc()
        logger.info("payment_completed total=%s warnings=%s", session.charge_amount, len(warnings))
        return Result.success(
            CompletedCheckout(
                order_number=order_number,
                payment_id=canonical_id,
                total_amount=session.charge_amount,
                warnings=tuple(warnings),
            )
        )

    def _next_order_number(self, db) -> str:
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            candidate = generate_order_number()
            taken = db.execute(select(Order.id).where(Order.order_number == candidate)).first()
            if taken is None:
                return candidate
        raise RuntimeError("could not allocate a unique order number")

    def _persist_order(
        self, session: PendingTransactionSession, payment, canonical_id: str, transaction_id: str, client
    ) -> str:
        """Write the audit update, order, items and address in one transaction."""

        with self.session_factory() as db:
            order_number = self._next_order_number(db)
            self._settle_audit(
                session.conversation_id,
                "SUCCESS",
                db=db,
                defaults=self._audit_defaults(session, client),
                gateway_payment_id=canonical_id,
                gateway_transaction_id=transaction_id,
                order_number=order_number,
                amount=session.charge_amount,
                gateway_status=payment.status,
                card_brand=payment.card_brand,
                error_code=None,
                error_message=None,
            )
            order = Order(
                order_number=order_number,
                status="PAID",
                version=0,
                customer_email=session.buyer.email,
                customer_name=session.buyer.full_name or "Guest Customer",
                customer_phone=session.buyer.phone,
                user_id=session.buyer.user_id,
                guest_user_id=session.buyer.guest_user_id,
                subtotal=session.subtotal,
                discount_amount=session.discount_amount,
                total_amount=session.charge_amount,
                coupon_code=session.coupon_code,
                gateway_payment_id=canonical_id,
                gateway_transaction_id=transaction_id,
                conversation_id=session.conversation_id,
            )
            order.items = [
                OrderItem(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    product_sku=item.product_sku,
                    width_cm=item.width_cm,
                    height_cm=item.height_cm,
                    pleat_type=item.pleat_type,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.server_price,
                    charged_price=item.charge,
                )
                for item in session.items
            ]
            order.addresses = [
                Address(
                    full_name=session.address.full_name,
                    phone=session.address.phone,
                    address_line=session.address.address_line,
                    address_detail=session.address.address_detail,
                    city=session.address.city,
                    district=session.address.district,
                )
            ]
            db.add(order)
            db.commit()
        logger.info("order_created order_number=%s items=%s", order_number, len(session.items))
        return order_number
