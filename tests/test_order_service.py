from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import BILLING_ID, OTHER_USER_ID, SHIPPING_ID, TEE, USER_ID
from pipeline.errors import DuplicateTrackingNumber, InvalidStatusTransition, OrderNotFound
from schemas.checkout_models import (
    DeliveryStatus,
    DeliveryUpdate,
    OrderStatus,
    PaymentMethod,
    ValidatedCartLine,
)
from services.order_service import OrderService


@pytest.fixture
def service(stores):
    return OrderService(stores.orders)


async def place(materializer, status=OrderStatus.PENDING, user_id=USER_ID, reference=None):
    return await materializer.materialize(
        user_id=user_id,
        lines=[ValidatedCartLine(product_id=TEE.product_id, variant_id=TEE.id, quantity=1, price=TEE.price)],
        total=Decimal("50.00"),
        shipping_address_id=SHIPPING_ID,
        billing_address_id=BILLING_ID,
        payment_method=PaymentMethod.CARD if reference else PaymentMethod.COD,
        status=status,
        payment_reference=reference,
    )


async def test_owner_scoped_lookup(service, materializer):
    order = await place(materializer)

    assert (await service.get_order_for_user(order.id, USER_ID)).id == order.id
    with pytest.raises(OrderNotFound):
        await service.get_order_for_user(order.id, OTHER_USER_ID)


async def test_lookup_by_reference(service, materializer):
    order = await place(materializer, status=OrderStatus.COMPLETED, reference="sess-1")

    assert (await service.get_order_by_reference("sess-1", USER_ID)).id == order.id
    with pytest.raises(OrderNotFound):
        await service.get_order_by_reference("sess-2", USER_ID)
    with pytest.raises(OrderNotFound):
        await service.get_order_by_reference("sess-1", OTHER_USER_ID)


async def test_history_is_per_user(service, materializer):
    mine = await place(materializer)
    await place(materializer, user_id=OTHER_USER_ID)

    history = await service.list_orders_for_user(USER_ID)

    assert [o.id for o in history] == [mine.id]


async def test_status_transitions(service, materializer):
    order = await place(materializer)

    shipped = await service.update_order_status(order.id, OrderStatus.SHIPPED)
    assert shipped.status == OrderStatus.SHIPPED

    with pytest.raises(InvalidStatusTransition):
        await service.update_order_status(order.id, OrderStatus.PENDING)


async def test_delivery_update_and_public_tracking(service, materializer):
    order = await place(materializer)
    eta = datetime(2026, 11, 2, 15, 0, tzinfo=timezone.utc)

    await service.update_delivery(order.id, DeliveryUpdate(
        delivery_status=DeliveryStatus.OUT_FOR_DELIVERY,
        tracking_number="TRK-001",
        rider_id="rider-9",
        estimated_delivery_time=eta,
    ))

    tracked = await service.get_order_by_tracking_number("TRK-001")
    assert tracked.id == order.id
    assert tracked.delivery_status == DeliveryStatus.OUT_FOR_DELIVERY
    assert tracked.estimated_delivery_time == eta
    assert "user_id" not in tracked.model_dump()


async def test_delivered_marks_order_delivered(service, materializer):
    order = await place(materializer)

    updated = await service.update_delivery(order.id, DeliveryUpdate(delivery_status=DeliveryStatus.DELIVERED))

    assert updated.status == OrderStatus.DELIVERED


async def test_unpaid_order_cannot_be_marked_delivered(service, materializer, stores):
    order = await place(materializer, status=OrderStatus.PENDING_PAYMENT, reference="sess-unpaid")

    with pytest.raises(InvalidStatusTransition):
        await service.update_delivery(order.id, DeliveryUpdate(delivery_status=DeliveryStatus.DELIVERED))

    unchanged = await stores.orders.get(order.id)
    assert unchanged.status == OrderStatus.PENDING_PAYMENT
    assert unchanged.delivery_status != DeliveryStatus.DELIVERED


async def test_tracking_numbers_are_unique(service, materializer):
    first = await place(materializer)
    second = await place(materializer)
    await service.update_delivery(first.id, DeliveryUpdate(tracking_number="TRK-1"))

    with pytest.raises(DuplicateTrackingNumber):
        await service.update_delivery(second.id, DeliveryUpdate(tracking_number="TRK-1"))


async def test_owner_cancel_rules(service, materializer):
    pending = await place(materializer)
    paid = await place(materializer, status=OrderStatus.COMPLETED, reference="sess-9")

    canceled = await service.cancel_order(pending.id, USER_ID)
    assert canceled.status == OrderStatus.CANCELED

    with pytest.raises(InvalidStatusTransition):
        await service.cancel_order(paid.id, USER_ID)
    with pytest.raises(OrderNotFound):
        await service.cancel_order(paid.id, OTHER_USER_ID)

    by_admin = await service.cancel_order(paid.id, "ops", is_admin=True)
    assert by_admin.status == OrderStatus.CANCELED


async def test_delivered_orders_cannot_be_canceled(service, materializer):
    order = await place(materializer)
    await service.update_order_status(order.id, OrderStatus.DELIVERED)

    with pytest.raises(InvalidStatusTransition):
        await service.cancel_order(order.id, "ops", is_admin=True)
