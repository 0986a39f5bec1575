from decimal import Decimal

import pytest

from conftest import BILLING_ID, HOODIE, SHIPPING_ID, TEE, USER_ID
from pipeline.errors import InsufficientStock, MaterializationFailed, SessionNotFound
from schemas.checkout_models import OrderStatus, PaymentMethod, ValidatedCartLine


def lines():
    return [
        ValidatedCartLine(product_id=TEE.product_id, variant_id=TEE.id, quantity=2, price=TEE.price),
        ValidatedCartLine(product_id=HOODIE.product_id, variant_id=HOODIE.id, quantity=1, price=HOODIE.price),
    ]


async def materialize(materializer, total="135.50", **kwargs):
    return await materializer.materialize(
        user_id=USER_ID,
        lines=lines(),
        total=Decimal(total),
        shipping_address_id=SHIPPING_ID,
        billing_address_id=BILLING_ID,
        payment_method=PaymentMethod.COD,
        status=OrderStatus.PENDING,
        **kwargs,
    )


async def test_items_copy_the_snapshot(materializer, stores):
    order = await materialize(materializer)

    stored = await stores.orders.get(order.id)
    assert stored.total == Decimal("135.50")
    assert stored.items_total == stored.total
    assert {i.order_id for i in stored.items} == {order.id}
    assert [(i.variant_id, i.quantity, i.price) for i in stored.items] == [
        (TEE.id, 2, Decimal("50.00")),
        (HOODIE.id, 1, Decimal("35.50")),
    ]
    assert "ORDER_MATERIALIZED" in stores.events.types()


async def test_total_must_match_items(materializer, stores):
    with pytest.raises(MaterializationFailed):
        await materialize(materializer, total="100.00")

    assert stores.orders.all() == []


async def test_stock_shortfall_writes_nothing(materializer, stores):
    await stores.catalog.put_variant(HOODIE.model_copy(update={"stock": 0}))

    with pytest.raises(InsufficientStock):
        await materialize(materializer)

    assert stores.orders.all() == []
    assert (await stores.catalog.get_variant(TEE.id)).stock == 10


async def test_consuming_a_missing_session(materializer, stores):
    with pytest.raises(SessionNotFound):
        await materialize(materializer, consume_session_id="gone")

    assert stores.orders.all() == []


async def test_unexpected_store_error_is_wrapped(materializer, stores):
    stores.orders.fail_next_insert = ConnectionError("pool exhausted")

    with pytest.raises(MaterializationFailed):
        await materialize(materializer)


async def test_audit_failure_does_not_fail_the_order(materializer, stores):
    async def broken_append(*args, **kwargs):
        raise RuntimeError("audit table missing")

    stores.events.append = broken_append

    order = await materialize(materializer)

    assert await stores.orders.get(order.id) is not None
