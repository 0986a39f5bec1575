# pipeline/validator.py
# ============================================================================
# STREETWEAR STOREFRONT — CART VALIDATOR
# ============================================================================
# Re-prices a client cart against the catalog. Client-supplied prices are
# ignored; every total is rebuilt from the authoritative variant price.
# Read-only: stock is checked here but only decremented on promotion.
# ============================================================================

from decimal import Decimal
from typing import Iterable, List

import structlog

from pipeline.errors import EmptyCart, InsufficientStock, InvalidCartItem, InvalidVariant
from schemas.checkout_models import CartLineRequest, ValidatedCartLine, ValidationResult
from storage.repositories import ICatalogStore

logger = structlog.get_logger().bind(component="cart_validator")


def _check_structure(line: CartLineRequest) -> None:
    if not line.variant_id:
        raise InvalidCartItem("Invalid cart item structure: missing variant id.")
    if line.quantity is None or line.quantity <= 0:
        raise InvalidCartItem(
            f"Invalid cart item quantity for variant {line.variant_id}: {line.quantity}"
        )


async def validate_cart(catalog: ICatalogStore, lines: Iterable[CartLineRequest]) -> ValidationResult:
    """
    Validate cart lines against current prices and stock.

    Lines are checked in order and the first failure is raised. Duplicate
    variants are kept as separate lines but their stock check uses the
    combined quantity.

    Raises:
        EmptyCart, InvalidCartItem, InvalidVariant, InsufficientStock
    """
    lines = list(lines or [])
    if not lines:
        raise EmptyCart()

    validated: List[ValidatedCartLine] = []
    requested_so_far = {}
    total = Decimal("0")

    for line in lines:
        _check_structure(line)

        variant = await catalog.get_variant(line.variant_id)
        if variant is None:
            logger.info("cart_variant_not_found", variant_id=line.variant_id)
            raise InvalidVariant(line.variant_id)

        requested = requested_so_far.get(variant.id, 0) + line.quantity
        if requested > variant.stock:
            logger.info(
                "cart_insufficient_stock",
                variant_id=variant.id,
                available=variant.stock,
                requested=requested,
            )
            raise InsufficientStock(variant.display_name, variant.stock, requested, variant_id=variant.id)
        requested_so_far[variant.id] = requested

        if line.price is not None and Decimal(line.price) != variant.price:
            logger.debug(
                "cart_client_price_ignored",
                variant_id=variant.id,
                client_price=str(line.price),
                price=str(variant.price),
            )

        item = ValidatedCartLine(
            product_id=variant.product_id,
            variant_id=variant.id,
            quantity=line.quantity,
            price=variant.price,
        )
        validated.append(item)
        total += item.subtotal

    return ValidationResult(items=validated, total_amount=total)
