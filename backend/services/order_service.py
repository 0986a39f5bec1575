# services/order_service.py
# ============================================================================
# STREETWEAR STOREFRONT — ORDER SERVICE
# ============================================================================
# Read access to materialized orders (owner-scoped, by reference for the
# payment callback page, by tracking number for guests) and the admin
# mutations: status, delivery details, cancellation.
# ============================================================================

from typing import Dict, FrozenSet, List

import structlog

from pipeline.errors import DuplicateTrackingNumber, InvalidStatusTransition, OrderNotFound
from schemas.checkout_models import DeliveryStatus, DeliveryUpdate, Order, OrderStatus, TrackedOrder
from storage.repositories import IOrderRepository

logger = structlog.get_logger().bind(component="order_service")


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PENDING, OrderStatus.COMPLETED, OrderStatus.CANCELED}),
    OrderStatus.PENDING: frozenset({
        OrderStatus.COMPLETED, OrderStatus.PROCESSING, OrderStatus.SHIPPED,
        OrderStatus.DELIVERED, OrderStatus.CANCELED,
    }),
    OrderStatus.COMPLETED: frozenset({
        OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELED,
    }),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELED: frozenset(),
}

OWNER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PENDING_PAYMENT})


class OrderService:

    def __init__(self, orders: IOrderRepository):
        self.orders = orders

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if not order:
            raise OrderNotFound(order_id)
        return order

    async def get_order_for_user(self, order_id: str, user_id: str) -> Order:
        order = await self.orders.get(order_id)
        # Someone else's order is reported exactly like a missing one
        if not order or order.user_id != user_id:
            raise OrderNotFound(order_id)
        return order

    async def get_order_by_reference(self, reference: str, user_id: str) -> Order:
        """Polling target of the payment callback page. 404 until the webhook lands."""
        order = await self.orders.get_by_reference(reference)
        if not order or order.user_id != user_id:
            raise OrderNotFound(reference)
        return order

    async def get_order_by_tracking_number(self, tracking_number: str) -> TrackedOrder:
        order = await self.orders.get_by_tracking_number(tracking_number)
        if not order:
            raise OrderNotFound(tracking_number)
        return TrackedOrder.from_order(order)

    async def list_orders_for_user(self, user_id: str, limit: int = 50) -> List[Order]:
        return await self.orders.list_for_user(user_id, limit=limit)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_transition(order: Order, status: OrderStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[order.status]:
            raise InvalidStatusTransition(
                f"Cannot move order {order.id} from {order.status.value} to {status.value}."
            )

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        order = await self.get_order(order_id)
        if status == order.status:
            return order
        self._check_transition(order, status)

        updated = await self.orders.update(order_id, status=status)
        if not updated:
            raise OrderNotFound(order_id)
        logger.info("order_status_updated", order_id=order_id, previous=order.status.value, status=status.value)
        return updated

    async def update_delivery(self, order_id: str, update: DeliveryUpdate) -> Order:
        order = await self.get_order(order_id)
        if order.status == OrderStatus.CANCELED:
            raise InvalidStatusTransition(f"Order {order_id} is canceled.")

        fields = update.model_dump(exclude_unset=True)
        if not fields:
            return order

        tracking_number = fields.get("tracking_number")
        if tracking_number:
            holder = await self.orders.get_by_tracking_number(tracking_number)
            if holder and holder.id != order_id:
                raise DuplicateTrackingNumber(tracking_number)

        if fields.get("delivery_status") == DeliveryStatus.DELIVERED and order.status != OrderStatus.DELIVERED:
            self._check_transition(order, OrderStatus.DELIVERED)
            fields["status"] = OrderStatus.DELIVERED

        updated = await self.orders.update(order_id, **fields)
        if not updated:
            raise OrderNotFound(order_id)
        logger.info("order_delivery_updated", order_id=order_id, fields=sorted(fields))
        return updated

    async def cancel_order(self, order_id: str, user_id: str, is_admin: bool = False) -> Order:
        """
        Cancel an order. Owners may only cancel orders that have not been
        paid or dispatched; admins may cancel anything not yet delivered.
        """
        if is_admin:
            order = await self.get_order(order_id)
        else:
            order = await self.get_order_for_user(order_id, user_id)

        if order.status == OrderStatus.CANCELED:
            return order
        if order.status == OrderStatus.DELIVERED:
            raise InvalidStatusTransition(f"Order {order_id} was already delivered.")
        if not is_admin and order.status not in OWNER_CANCELLABLE:
            raise InvalidStatusTransition(
                f"Order {order_id} can no longer be canceled ({order.status.value})."
            )

        updated = await self.orders.update(order_id, status=OrderStatus.CANCELED)
        if not updated:
            raise OrderNotFound(order_id)
        logger.info("order_canceled", order_id=order_id, user_id=user_id, by_admin=is_admin)
        return updated
