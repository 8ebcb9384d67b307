"""Server-side repricing of client-submitted line items.

Client prices are never trusted: every line is recomputed from the catalog
and compared against the declared value within a one-cent tolerance.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from storepay.common.errors import Result, ValidationError
from storepay.common.logging import logger
from storepay.common.money import CENT, ZERO, to_money, within_tolerance
from storepay.services.checkout.domain import PricedBasket, ValidatedLineItem
from storepay.services.checkout.models import Product

ONE = Decimal("1")
METRE_PRECISION = Decimal("0.0001")
UNPLEATED = "pilesiz"


def parse_pleat_multiplier(pleat_type: str | None) -> Decimal:
    """Return the fabric multiplier of a pleat pattern such as `1x2.5`.

    Unpleated, blank or unparseable values count as 1.
    """

    if pleat_type is None or not pleat_type.strip():
        return ONE
    value = pleat_type.strip()
    if value.lower() == UNPLEATED:
        return ONE
    parts = value.split("x")
    if len(parts) != 2:
        logger.warning("pleat_type_unexpected_format pleat_type=%s", pleat_type)
        return ONE
    try:
        multiplier = Decimal(parts[1].strip())
    except InvalidOperation:
        logger.warning("pleat_type_unparseable pleat_type=%s", pleat_type)
        return ONE
    if not multiplier.is_finite() or multiplier <= 0:
        logger.warning("pleat_type_unparseable pleat_type=%s", pleat_type)
        return ONE
    return multiplier


def width_in_metres(width_cm: Decimal) -> Decimal:
    return (Decimal(str(width_cm)) / Decimal(100)).quantize(METRE_PRECISION, rounding=ROUND_HALF_UP)


class PriceValidator:
    """Reprices a basket against the catalog and checks stock."""

    def __init__(self, session_factory, tolerance: Decimal = CENT) -> None:
        self.session_factory = session_factory
        self.tolerance = tolerance

    def validate(self, items) -> Result[PricedBasket]:
        if not items:
            return Result.failure(ValidationError("Basket is empty."))

        validated: list[ValidatedLineItem] = []
        subtotal = ZERO
        declared_subtotal = ZERO
        with self.session_factory() as db:
            for item in items:
                product = db.get(Product, item.product_id)
                if product is None:
                    return Result.failure(
                        ValidationError(f"Product not found: {item.product_id}", {"product_id": item.product_id})
                    )
                if product.name != item.product_name:
                    logger.warning(
                        "product_name_mismatch product_id=%s catalog=%s declared=%s",
                        product.id,
                        product.name,
                        item.product_name,
                    )
                    return Result.failure(
                        ValidationError(
                            f"Product details do not match. Product name: {product.name}",
                            {"product_id": product.id},
                        )
                    )

                multiplier = parse_pleat_multiplier(item.pleat_type)
                width_m = width_in_metres(item.width)
                required_stock = width_m * multiplier * item.quantity
                if product.stock_meters is not None and Decimal(product.stock_meters) < required_stock:
                    return Result.failure(
                        ValidationError(
                            f"Insufficient stock for '{product.name}'. "
                            f"Available: {product.stock_meters} m, requested: {required_stock:.2f} m",
                            {"product_id": product.id},
                        )
                    )

                server_price = to_money(Decimal(product.unit_price) * width_m * multiplier * item.quantity)
                if item.price is None:
                    return Result.failure(
                        ValidationError(f"Price is missing for '{product.name}'.", {"product_id": product.id})
                    )
                declared_price = Decimal(str(item.price))
                if not within_tolerance(server_price, declared_price, self.tolerance):
                    logger.error(
                        "line_price_mismatch product_id=%s server=%s declared=%s",
                        product.id,
                        server_price,
                        declared_price,
                    )
                    return Result.failure(
                        ValidationError(
                            f"Price mismatch detected for '{product.name}'. Please refresh the page and try again.",
                            {"product_id": product.id, "server_price": str(server_price)},
                        )
                    )

                validated.append(
                    ValidatedLineItem(
                        product_id=product.id,
                        product_name=product.name,
                        product_sku=product.sku,
                        width_cm=Decimal(str(item.width)),
                        height_cm=Decimal(str(item.height)),
                        pleat_type=item.pleat_type or "1x1",
                        quantity=item.quantity,
                        unit_price=to_money(product.unit_price),
                        declared_price=declared_price,
                        server_price=server_price,
                        stock_delta=required_stock,
                        charge=server_price,
                    )
                )
                subtotal += server_price
                declared_subtotal += declared_price

        if not within_tolerance(subtotal, declared_subtotal, self.tolerance):
            logger.error("subtotal_mismatch server=%s declared=%s", subtotal, declared_subtotal)
            return Result.failure(
                ValidationError(
                    "Order total mismatch detected. Please refresh the page and try again.",
                    {"server_subtotal": str(subtotal)},
                )
            )
        return Result.success(
            PricedBasket(subtotal=to_money(subtotal), declared_subtotal=declared_subtotal, items=tuple(validated))
        )
