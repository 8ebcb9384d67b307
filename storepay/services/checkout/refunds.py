"""Operator-driven refunds.

The operator supplies one identifier without saying what kind it is. An
ordered list of resolvers turns it into a `RefundContext`; the order is then
claimed under its optimistic `version`, the payment is re-verified with the
gateway, and the refund is issued. Every attempt leaves a `RefundRecord`.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol
from uuid import uuid4

from sqlalchemy import select, update

from storepay.common.config import settings
from storepay.common.errors import GatewayError, ReconciliationError, Result, ValidationError
from storepay.common.logging import logger, order_number_ctx
from storepay.common.metrics import refund_attempts_total
from storepay.common.money import ZERO, to_money
from storepay.common.state_machine import REFUNDABLE_ORDER_STATUSES, validate_order_transition
from storepay.services.checkout.domain import ClientInfo, RefundContext, RefundReceipt
from storepay.services.checkout.gateway import RetrievedPayment, is_success
from storepay.services.checkout.models import Order, PaymentRecord, RefundRecord

UNFINISHED_PAYMENT_STATUSES = frozenset({"WAITING", "INIT_THREEDS"})
TARGET_NOT_FOUND = "refund target not found"


class RefundResolver(Protocol):
    name: str

    def resolve(self, identifier: str) -> Optional[RefundContext]:  # pragma: no cover - interface
        ...


class RefundStorePrimaryResolver:
    """Cached context keyed by gateway payment id."""

    name = "store_payment_id"

    def __init__(self, store) -> None:
        self.store = store

    def resolve(self, identifier: str) -> Optional[RefundContext]:
        return self.store.get_by_primary_key(identifier)


class RefundStoreSecondaryResolver:
    """Cached context keyed by order number."""

    name = "store_order_number"

    def __init__(self, store) -> None:
        self.store = store

    def resolve(self, identifier: str) -> Optional[RefundContext]:
        return self.store.get_by_secondary_key(identifier)


def context_from_order(order: Order) -> RefundContext:
    """Rebuild refund context from a persisted order."""

    payment_id = order.gateway_payment_id
    if not payment_id:
        transaction_id = order.gateway_transaction_id or ""
        payment_id = transaction_id if transaction_id.isdigit() else order.order_number
    address = order.addresses[0] if order.addresses else None
    return RefundContext(
        payment_id=payment_id,
        order_number=order.order_number,
        amount=to_money(order.total_amount),
        conversation_id=order.conversation_id,
        transaction_id=order.gateway_transaction_id,
        customer_email=order.customer_email,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        address_line=address.address_line if address else None,
        city=address.city if address else None,
        district=address.district if address else None,
        paid_at=order.created_at,
    )


class OrderColumnResolver:
    """Looks the identifier up in one Order column."""

    name = "order"
    column_name = ""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def resolve(self, identifier: str) -> Optional[RefundContext]:
        with self.session_factory() as db:
            column = getattr(Order, self.column_name)
            order = db.execute(select(Order).where(column == identifier).limit(1)).scalar_one_or_none()
            if order is None:
                return None
            return context_from_order(order)


class OrderNumberResolver(OrderColumnResolver):
    name = "order_number"
    column_name = "order_number"


class TransactionIdResolver(OrderColumnResolver):
    name = "transaction_id"
    column_name = "gateway_transaction_id"


class PaymentIdResolver(OrderColumnResolver):
    name = "payment_id"
    column_name = "gateway_payment_id"


def default_resolvers(session_factory, refund_store) -> list:
    """Lookup order: cache by payment id, cache by order number, then orders."""

    return [
        RefundStorePrimaryResolver(refund_store),
        RefundStoreSecondaryResolver(refund_store),
        OrderNumberResolver(session_factory),
        TransactionIdResolver(session_factory),
        PaymentIdResolver(session_factory),
    ]


@dataclass(frozen=True)
class _Claim:
    order_id: int
    previous_status: str
    version: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefundOrchestrator:
    """Locates, verifies and refunds a previously completed payment."""

    def __init__(
        self,
        session_factory,
        gateway,
        refund_store,
        resolvers: list | None = None,
        currency: str = settings.currency,
        service_name: str = settings.service_name,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.refund_store = refund_store
        self.resolvers = resolvers if resolvers is not None else default_resolvers(session_factory, refund_store)
        self.currency = currency
        self.service_name = service_name

    def locate(self, identifier: str) -> Optional[RefundContext]:
        """Try each resolver in order; contexts rebuilt from orders are cached."""

        for resolver in self.resolvers:
            context = resolver.resolve(identifier)
            if context is None:
                continue
            logger.info("refund_target_resolved resolver=%s identifier=%s", resolver.name, identifier)
            if not isinstance(resolver, (RefundStorePrimaryResolver, RefundStoreSecondaryResolver)):
                self.refund_store.put(context.payment_id, context, secondary_key=context.order_number)
            return context
        return None

    def _reject(self, error, outcome: str) -> Result:
        logger.warning("refund_rejected outcome=%s reason=%s", outcome, error.message)
        refund_attempts_total.labels(service=self.service_name, outcome=outcome).inc()
        return Result.failure(error)

    def refund(
        self, identifier: str, amount, reason: str | None = None, client: ClientInfo | None = None
    ) -> Result[RefundReceipt]:
        """Refund part or all of a completed payment located by any of its identifiers."""

        client = client or ClientInfo()
        try:
            amount = to_money(amount) if amount is not None else None
        except InvalidOperation:
            amount = None
        if amount is None or amount <= ZERO:
            return self._reject(ValidationError("Refund amount must be greater than zero."), "validation_error")

        context = self.locate(identifier)
        if context is None:
            return self._reject(
                ReconciliationError(TARGET_NOT_FOUND, {"identifier": identifier}), "reconciliation_error"
            )
        order_number_ctx.set(context.order_number)

        if amount > context.amount:
            return self._reject(
                ValidationError(
                    f"Refund amount cannot exceed the original payment of {context.amount:.2f}. "
                    f"Requested: {amount:.2f}",
                    {"original_amount": str(context.amount), "refund_amount": str(amount)},
                ),
                "validation_error",
            )

        claim = self._claim(context.order_number)
        if not claim.ok:
            return self._reject(claim.error, claim.error.code)

        verified = self._verify(claim.value, context)
        if verified is None:
            self._finish(
                claim.value, context, amount, reason, client, success=False,
                error_code="VERIFICATION_FAILED", error_message="payment could not be retrieved from the gateway",
            )
            return self._reject(
                GatewayError("Refund failed: the payment could not be verified with the gateway."), "gateway_error"
            )
        if verified.payment_status in UNFINISHED_PAYMENT_STATUSES:
            self._finish(
                claim.value, context, amount, reason, client, success=False,
                gateway_status=verified.status, error_code="PAYMENT_NOT_COMPLETED",
                error_message=f"payment status {verified.payment_status}",
            )
            return self._reject(
                GatewayError(
                    f"Refund failed: the payment is not completed yet (status {verified.payment_status})."
                ),
                "gateway_error",
            )

        canonical_id = verified.payment_id or context.payment_id
        first_transaction = verified.transaction_ids[0] if verified.transaction_ids else None
        target = first_transaction or context.transaction_id or canonical_id
        outcome = self.gateway.create_refund(
            target,
            amount,
            self.currency,
            conversation_id=context.conversation_id or str(uuid4()),
            ip=client.ip_address,
        )
        succeeded = is_success(outcome.status)
        self._finish(
            claim.value,
            context,
            amount,
            reason,
            client,
            success=succeeded,
            canonical_id=canonical_id,
            gateway_transaction_id=target,
            refund_transaction_id=outcome.refund_transaction_id,
            gateway_status=outcome.status,
            error_code=outcome.error_code,
            error_message=outcome.error_message,
        )
        if not succeeded:
            return self._reject(
                GatewayError(
                    f"Refund failed: {outcome.error_message or 'unknown error'}",
                    {"error_code": outcome.error_code},
                ),
                "gateway_error",
            )

        self.refund_store.remove(context.payment_id)
        refund_attempts_total.labels(service=self.service_name, outcome="success").inc()
        logger.info("refund_completed amount=%s target=%s", amount, target)
        return Result.success(
            RefundReceipt(
                order_number=context.order_number,
                payment_id=canonical_id,
                refund_amount=amount,
                refund_transaction_id=outcome.refund_transaction_id,
                status="SUCCESS",
            )
        )

    def _claim(self, order_number: str) -> Result[_Claim]:
        """Move the order to REFUND_REQUESTED if nobody else got there first."""

        with self.session_factory() as db:
            order = db.execute(select(Order).where(Order.order_number == order_number)).scalar_one_or_none()
            if order is None:
                return Result.failure(ReconciliationError(TARGET_NOT_FOUND, {"order_number": order_number}))
            if order.status == "REFUNDED":
                return Result.failure(ValidationError("This order has already been refunded."))
            if order.status == "REFUND_REQUESTED":
                return Result.failure(ValidationError("A refund is already in progress for this order."))
            if order.status not in REFUNDABLE_ORDER_STATUSES:
                return Result.failure(ValidationError(f"Orders in status {order.status} cannot be refunded."))

            order_id, previous_status, current_version = order.id, order.status, order.version
            validate_order_transition(previous_status, "REFUND_REQUESTED")
            result = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == previous_status, Order.version == current_version)
                .values(status="REFUND_REQUESTED", version=current_version + 1, updated_at=_utcnow())
            )
            if result.rowcount != 1:
                db.rollback()
                return Result.failure(ValidationError("A refund is already in progress for this order."))
            db.commit()
            return Result.success(
                _Claim(order_id=order_id, previous_status=previous_status, version=current_version + 1)
            )

    def _verify(self, claim: _Claim, context: RefundContext) -> Optional[RetrievedPayment]:
        """Retrieve the payment by its stored id, then by the alternate transaction id."""

        with self.session_factory() as db:
            order = db.get(Order, claim.order_id)
            candidates = [
                order.gateway_payment_id,
                context.payment_id,
                order.gateway_transaction_id,
                context.transaction_id,
            ]
        seen = set()
        for candidate in candidates:
            if not candidate or candidate in seen:
                continue
            seen.add(candidate)
            payment = self.gateway.retrieve_payment(candidate, context.conversation_id)
            if is_success(payment.status) and payment.payment_id:
                return payment
            logger.warning(
                "refund_verify_miss candidate=%s status=%s error=%s", candidate, payment.status, payment.error_message
            )
        return None

    def _find_payment_record(self, db, order: Order, context: RefundContext, canonical_id: str | None) -> PaymentRecord:
        """Locate the audit row this refund belongs to, synthesizing one if needed."""

        lookups = [
            (PaymentRecord.gateway_payment_id, canonical_id),
            (PaymentRecord.gateway_transaction_id, canonical_id),
            (PaymentRecord.gateway_payment_id, order.gateway_payment_id),
            (PaymentRecord.gateway_transaction_id, order.gateway_transaction_id),
            (PaymentRecord.order_number, order.order_number),
            (PaymentRecord.conversation_id, context.conversation_id),
        ]
        for column, value in lookups:
            if not value:
                continue
            record = db.execute(select(PaymentRecord).where(column == value).limit(1)).scalar_one_or_none()
            if record is not None:
                return record

        logger.warning("payment_record_synthesized order_number=%s", order.order_number)
        record = PaymentRecord(
            conversation_id=order.conversation_id or str(uuid4()),
            gateway_payment_id=canonical_id or order.gateway_payment_id or order.gateway_transaction_id,
            gateway_transaction_id=order.gateway_transaction_id or order.gateway_payment_id or canonical_id,
            order_number=order.order_number,
            amount=context.amount,
            currency=self.currency,
            status="SUCCESS",
            synthetic=True,
            customer_email=order.customer_email,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            user_id=order.user_id,
            guest_user_id=order.guest_user_id,
            completed_at=order.created_at or _utcnow(),
        )
        db.add(record)
        db.flush()
        return record

    def _finish(
        self,
        claim: _Claim,
        context: RefundContext,
        amount: Decimal,
        reason: str | None,
        client: ClientInfo,
        success: bool,
        canonical_id: str | None = None,
        gateway_transaction_id: str | None = None,
        refund_transaction_id: str | None = None,
        gateway_status: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Write the refund audit row and resolve the order claim in one transaction."""

        with self.session_factory() as db:
            order = db.get(Order, claim.order_id)
            payment_record = self._find_payment_record(db, order, context, canonical_id or context.payment_id)
            db.add(
                RefundRecord(
                    payment_record_id=payment_record.id,
                    refund_transaction_id=refund_transaction_id,
                    gateway_transaction_id=gateway_transaction_id,
                    order_number=order.order_number,
                    refund_amount=amount,
                    original_amount=context.amount,
                    status="SUCCESS" if success else "FAILED",
                    reason=reason,
                    gateway_status=gateway_status,
                    error_code=error_code,
                    error_message=error_message,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent[:500] if client.user_agent else None,
                    completed_at=_utcnow(),
                )
            )

            target_status = "REFUNDED" if success else claim.previous_status
            validate_order_transition(order.status, target_status)
            values = {"status": target_status, "version": claim.version + 1, "updated_at": _utcnow()}
            if success:
                values.update(refund_amount=amount, refund_reason=reason)
            result = db.execute(
                update(Order)
                .where(Order.id == order.id, Order.version == claim.version)
                .values(**values)
            )
            if result.rowcount != 1:
                raise RuntimeError(
                    f"optimistic concurrency conflict for order {order.order_number} (expected version {claim.version})"
                )
            db.commit()
