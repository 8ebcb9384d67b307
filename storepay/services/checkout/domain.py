"""In-memory value types passed between checkout components.

These never hit the database directly; `models.py` holds the persisted shapes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from storepay.common.errors import PersistenceWarning


@dataclass(frozen=True)
class ValidatedLineItem:
    product_id: int
    product_name: str
    product_sku: Optional[str]
    width_cm: Decimal
    height_cm: Decimal
    pleat_type: str
    quantity: int
    unit_price: Decimal
    declared_price: Decimal
    server_price: Decimal
    # Metres of fabric this line consumes.
    stock_delta: Decimal
    charge: Decimal


@dataclass(frozen=True)
class PricedBasket:
    """Output of server-side repricing, before any coupon is applied."""

    subtotal: Decimal
    declared_subtotal: Decimal
    items: tuple[ValidatedLineItem, ...]


@dataclass(frozen=True)
class CartCoupon:
    """Coupon resolved from the buyer's active cart."""

    cart_id: Optional[int] = None
    coupon_code: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class ChargePlan:
    """Basket after coupon reconciliation; charges sum to `charge_amount`."""

    subtotal: Decimal
    discount_amount: Decimal
    charge_amount: Decimal
    coupon_code: Optional[str]
    items: tuple[ValidatedLineItem, ...]


@dataclass(frozen=True)
class BuyerInfo:
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    user_id: Optional[int] = None
    guest_user_id: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class ShippingAddress:
    full_name: str
    address_line: str
    city: str
    phone: Optional[str] = None
    address_detail: Optional[str] = None
    district: Optional[str] = None


@dataclass(frozen=True)
class ClientInfo:
    """Caller metadata recorded on audit rows."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class PendingTransactionSession:
    """Everything needed to turn a successful 3DS callback into an order."""

    conversation_id: str
    buyer: BuyerInfo
    address: ShippingAddress
    cart_id: Optional[int]
    coupon_code: Optional[str]
    discount_amount: Decimal
    subtotal: Decimal
    charge_amount: Decimal
    items: tuple[ValidatedLineItem, ...]
    state: str
    created_at: datetime


@dataclass(frozen=True)
class RefundContext:
    """What a refund needs to know about the original charge."""

    payment_id: str
    order_number: str
    amount: Decimal
    conversation_id: Optional[str] = None
    transaction_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    address_line: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    paid_at: Optional[datetime] = None


@dataclass(frozen=True)
class ThreeDSChallenge:
    conversation_id: str
    html_content: str
    charge_amount: Decimal


@dataclass(frozen=True)
class CompletedCheckout:
    order_number: str
    payment_id: str
    total_amount: Decimal
    replayed: bool = False
    warnings: tuple[PersistenceWarning, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RefundReceipt:
    order_number: str
    payment_id: str
    refund_amount: Decimal
    refund_transaction_id: Optional[str]
    status: str
