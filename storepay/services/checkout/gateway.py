"""Payment gateway port and its HTTP adapter.

The orchestrators only depend on the `PaymentGateway` protocol. Every
outcome, including transport failures, comes back as a result object with a
`status` of `success` or `failure`; nothing here raises for an expected
rejection.
"""

import base64
import hashlib
import hmac
import json
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from time import perf_counter
from typing import Optional, Protocol

import httpx

from storepay.common.config import settings
from storepay.common.logging import logger
from storepay.common.metrics import gateway_call_duration_seconds
from storepay.common.money import format_amount
from storepay.common.tracing import payment_span

SUCCESS = "success"
FAILURE = "failure"
GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
INVALID_CHALLENGE = "INVALID_CHALLENGE"


def is_success(status: Optional[str]) -> bool:
    return (status or "").lower() == SUCCESS


@dataclass(frozen=True)
class BasketItem:
    id: str
    name: str
    category1: str
    category2: str
    price: Decimal
    item_type: str = "PHYSICAL"


@dataclass(frozen=True)
class GatewayBuyer:
    id: str
    name: str
    surname: str
    email: str
    gsm_number: Optional[str]
    registration_address: str
    city: str
    ip: str
    country: str = "Turkey"
    zip_code: str = "34000"
    identity_number: str = "00000000000"


@dataclass(frozen=True)
class GatewayAddress:
    contact_name: str
    city: str
    address: str
    country: str = "Turkey"
    zip_code: str = "34000"


@dataclass(frozen=True)
class PaymentCard:
    card_holder_name: str
    card_number: str
    expire_month: str
    expire_year: str
    cvc: str

    def __repr__(self) -> str:
        return f"PaymentCard(card_holder_name={self.card_holder_name!r}, last4={self.card_number[-4:]!r})"


@dataclass(frozen=True)
class ThreeDSInitRequest:
    conversation_id: str
    price: Decimal
    paid_price: Decimal
    currency: str
    callback_url: str
    card: PaymentCard
    buyer: GatewayBuyer
    shipping_address: GatewayAddress
    billing_address: GatewayAddress
    basket_items: tuple[BasketItem, ...]
    basket_id: str
    locale: str = "tr"
    installment: int = 1


@dataclass(frozen=True)
class ThreeDSInitResult:
    status: str
    html_content: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class RetrievedPayment:
    status: str
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    transaction_ids: tuple[str, ...] = field(default_factory=tuple)
    card_brand: Optional[str] = None
    paid_price: Optional[Decimal] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class RefundOutcome:
    status: str
    refund_transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PaymentGateway(Protocol):
    """External card gateway capability used by checkout and refunds."""

    def initiate_three_d_secure(self, request: ThreeDSInitRequest) -> ThreeDSInitResult:  # pragma: no cover - interface
        ...

    def retrieve_payment(
        self, payment_id: str, conversation_id: Optional[str] = None
    ) -> RetrievedPayment:  # pragma: no cover - interface
        ...

    def create_refund(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        conversation_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> RefundOutcome:  # pragma: no cover - interface
        ...


def _jsonable(value):
    if isinstance(value, Decimal):
        return format_amount(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


class HttpPaymentGateway:
    """JSON-over-HTTPS adapter signed with an HMAC of the request body."""

    def __init__(
        self,
        base_url: str = settings.gateway_base_url,
        api_key: str = settings.gateway_api_key,
        secret_key: str = settings.gateway_secret_key,
        timeout_seconds: float = settings.gateway_timeout_seconds,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.secret_key = secret_key
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout_seconds)

    def _headers(self, body: bytes) -> dict[str, str]:
        signature = hmac.new(self.secret_key.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "x-signature": signature,
        }

    def _post(self, operation: str, path: str, payload: dict) -> dict:
        """POST one signed request; transport failures come back as a failure body."""

        body = json.dumps(_jsonable(payload)).encode("utf-8")
        start = perf_counter()
        with payment_span(f"gateway.{operation}", **{"gateway.operation": operation}) as span:
            try:
                resp = self.client.post(path, content=body, headers=self._headers(body))
                resp.raise_for_status()
                data = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("gateway_call_failed operation=%s error=%s", operation, exc)
                span.set_attribute("gateway.status", FAILURE)
                data = {"status": FAILURE, "errorCode": GATEWAY_UNAVAILABLE, "errorMessage": str(exc)}
            else:
                span.set_attribute("gateway.status", str(data.get("status")))
            finally:
                gateway_call_duration_seconds.labels(service=settings.service_name, operation=operation).observe(
                    max(0.0, perf_counter() - start)
                )
        return data

    def initiate_three_d_secure(self, request: ThreeDSInitRequest) -> ThreeDSInitResult:
        payload = asdict(request)
        data = self._post("initiate_3ds", "/payment/3dsecure/initialize", payload)
        html = data.get("threeDSHtmlContent")
        if html:
            try:
                html = base64.b64decode(html, validate=True).decode("utf-8")
            except ValueError as exc:
                logger.error("gateway_challenge_undecodable error=%s", exc)
                return ThreeDSInitResult(
                    status=FAILURE,
                    error_code=INVALID_CHALLENGE,
                    error_message="3DS challenge content could not be decoded",
                )
        return ThreeDSInitResult(
            status=data.get("status", FAILURE),
            html_content=html,
            error_code=data.get("errorCode"),
            error_message=data.get("errorMessage"),
        )

    def retrieve_payment(self, payment_id: str, conversation_id: Optional[str] = None) -> RetrievedPayment:
        data = self._post(
            "retrieve_payment",
            "/payment/detail",
            {"paymentId": payment_id, "conversationId": conversation_id, "locale": settings.locale},
        )
        items = data.get("itemTransactions") or []
        paid_price = data.get("paidPrice")
        return RetrievedPayment(
            status=data.get("status", FAILURE),
            payment_id=data.get("paymentId"),
            payment_status=data.get("paymentStatus"),
            transaction_ids=tuple(
                str(item["paymentTransactionId"]) for item in items if item.get("paymentTransactionId")
            ),
            card_brand=data.get("cardAssociation"),
            paid_price=Decimal(str(paid_price)) if paid_price is not None else None,
            error_code=data.get("errorCode"),
            error_message=data.get("errorMessage"),
        )

    def create_refund(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        conversation_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> RefundOutcome:
        data = self._post(
            "create_refund",
            "/payment/refund",
            {
                "paymentTransactionId": transaction_id,
                "price": amount,
                "currency": currency,
                "conversationId": conversation_id,
                "ip": ip or "0.0.0.0",
                "locale": settings.locale,
            },
        )
        return RefundOutcome(
            status=data.get("status", FAILURE),
            refund_transaction_id=data.get("paymentTransactionId"),
            error_code=data.get("errorCode"),
            error_message=data.get("errorMessage"),
        )

    def close(self) -> None:
        self.client.close()
