from decimal import Decimal

import pytest

from conftest import HOODIE, TEE, cart_line
from pipeline.errors import EmptyCart, InsufficientStock, InvalidCartItem, InvalidVariant
from pipeline.validator import validate_cart
from schemas.checkout_models import CartLineRequest


async def test_total_uses_catalog_price_not_client_price(stores):
    result = await validate_cart(stores.catalog, [cart_line(TEE, 2, price="0.01")])

    assert result.total_amount == Decimal("100.00")
    assert result.items[0].price == Decimal("50.00")
    assert result.items[0].product_id == TEE.product_id


async def test_total_is_exact_decimal_sum(stores):
    result = await validate_cart(stores.catalog, [cart_line(TEE, 3), cart_line(HOODIE, 1)])

    assert result.total_amount == Decimal("185.50")
    assert [i.variant_id for i in result.items] == [TEE.id, HOODIE.id]


async def test_empty_cart_rejected(stores):
    with pytest.raises(EmptyCart):
        await validate_cart(stores.catalog, [])


async def test_unknown_variant_names_the_id(stores):
    with pytest.raises(InvalidVariant) as exc:
        await validate_cart(stores.catalog, [CartLineRequest(variant_id="nope", quantity=1)])

    assert exc.value.message == "Product variant not found for ID: nope"


async def test_insufficient_stock_message(stores):
    with pytest.raises(InsufficientStock) as exc:
        await validate_cart(stores.catalog, [cart_line(HOODIE, 2)])

    assert exc.value.message == "Insufficient stock for Box Hoodie (L). Available: 1, Requested: 2"
    assert exc.value.status_code == 400


async def test_duplicate_lines_share_stock(stores):
    with pytest.raises(InsufficientStock):
        await validate_cart(stores.catalog, [cart_line(HOODIE, 1), cart_line(HOODIE, 1)])


@pytest.mark.parametrize("line", [
    CartLineRequest(variant_id=None, quantity=1),
    CartLineRequest(variant_id=TEE.id, quantity=0),
    CartLineRequest(variant_id=TEE.id, quantity=None),
])
async def test_structurally_invalid_lines(stores, line):
    with pytest.raises(InvalidCartItem):
        await validate_cart(stores.catalog, [line])


async def test_validation_does_not_touch_stock(stores):
    await validate_cart(stores.catalog, [cart_line(TEE, 4)])

    variant = await stores.catalog.get_variant(TEE.id)
    assert variant.stock == 10
