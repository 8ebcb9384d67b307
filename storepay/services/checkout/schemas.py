"""API request/response schemas for checkout endpoints."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, model_validator


class LineItemRequest(BaseModel):
    """One curtain line as the storefront priced it; the price is untrusted."""

    product_id: int = Field(gt=0)
    product_name: str = Field(min_length=1)
    width: Decimal = Field(gt=0, description="Width in centimetres")
    height: Decimal = Field(gt=0, description="Height in centimetres")
    pleat_type: str | None = None
    quantity: int = Field(ge=1)
    price: Decimal | None = None


class PaymentSubmitRequest(BaseModel):
    """Card payment payload submitted by the storefront."""

    card_number: str = Field(pattern=r"^[0-9]{16}$")
    card_expiry: str = Field(pattern=r"^(0[1-9]|1[0-2])/([0-9]{2})$")
    card_cvc: str = Field(pattern=r"^[0-9]{3,4}$")

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    phone: str | None = None

    address: str | None = None
    address_detail: str | None = None
    city: str | None = None
    district: str | None = None
    address_id: int | None = None

    user_id: int | None = None
    guest_user_id: str | None = None
    cart_id: int | None = None
    coupon_code: str | None = None

    items: list[LineItemRequest] = Field(min_length=1)

    @model_validator(mode="after")
    def require_address(self) -> "PaymentSubmitRequest":
        if self.address_id is None and not (self.address and self.city):
            raise ValueError("either address_id or address and city are required")
        return self


class RefundRequest(BaseModel):
    """Operator refund request; identifier may be a payment id, order number or transaction id."""

    identifier: str = Field(min_length=1)
    refund_amount: Decimal
    reason: str | None = Field(default=None, max_length=500)


class QuoteRequest(BaseModel):
    """Read-only price breakdown request."""

    items: list[LineItemRequest] = Field(min_length=1)
    cart_id: int | None = None
    user_id: int | None = None
    guest_user_id: str | None = None
    coupon_code: str | None = None


class ResponseEnvelope(BaseModel):
    """Common response shape for every checkout endpoint."""

    message: str
    success: bool
    data: Any = None
