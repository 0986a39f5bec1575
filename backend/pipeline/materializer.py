# pipeline/materializer.py
# ============================================================================
# STREETWEAR STOREFRONT — ORDER MATERIALIZER
# ============================================================================
# The single place an Order is created. Builds the order and its items from
# a validated cart snapshot and hands the whole unit of work to the order
# repository, which commits order + items + stock + session deletion
# together or not at all.
# ============================================================================

from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from pipeline.audit import CheckoutEventType, emit
from pipeline.errors import CheckoutError, MaterializationFailed
from schemas.checkout_models import (
    CheckoutSession,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    ValidatedCartLine,
)
from storage.repositories import IEventLog, IOrderRepository

logger = structlog.get_logger().bind(component="order_materializer")


class OrderMaterializer:

    def __init__(self, orders: IOrderRepository, events: Optional[IEventLog] = None):
        self.orders = orders
        self.events = events

    async def materialize(
        self,
        user_id: str,
        lines: List[ValidatedCartLine],
        total: Decimal,
        shipping_address_id: str,
        billing_address_id: str,
        payment_method: PaymentMethod,
        status: OrderStatus,
        payment_reference: Optional[str] = None,
        payment_details: Optional[Dict[str, Any]] = None,
        consume_session_id: Optional[str] = None,
    ) -> Order:
        """
        Persist an Order with one OrderItem per validated line.

        Raises:
            SessionNotFound: consume_session_id was already consumed
            InsufficientStock: stock ran out since validation
            MaterializationFailed: anything else went wrong; nothing was written
        """
        if not lines:
            raise MaterializationFailed("Cannot create an order without items.")

        items_total = sum((line.subtotal for line in lines), Decimal("0"))
        if items_total != total:
            logger.error(
                "order_total_mismatch",
                user_id=user_id,
                items_total=str(items_total),
                total=str(total),
                reference=payment_reference,
            )
            raise MaterializationFailed(
                f"Order total {total} does not match its items ({items_total})."
            )

        order = Order(
            user_id=user_id,
            total=total,
            status=status,
            payment_method=payment_method,
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
            payment_reference=payment_reference,
            payment_details=payment_details,
        )
        items = [
            OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                quantity=line.quantity,
                price=line.price,
            )
            for line in lines
        ]

        try:
            created = await self.orders.create_with_items(order, items, consume_session_id=consume_session_id)
        except CheckoutError:
            raise
        except Exception as e:
            logger.error(
                "order_materialization_failed",
                user_id=user_id,
                temp_session_id=consume_session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise MaterializationFailed(f"Could not create order: {e}") from e

        logger.info(
            "order_materialized",
            order_id=created.id,
            user_id=user_id,
            status=created.status.value,
            total=str(created.total),
            items=len(items),
            temp_session_id=consume_session_id,
        )
        await emit(
            self.events,
            CheckoutEventType.ORDER_MATERIALIZED,
            reference=payment_reference or created.id,
            order_id=created.id,
            user_id=user_id,
            status=created.status.value,
            total=str(created.total),
            payment_method=payment_method.value,
        )
        return created

    async def promote_session(self, session: CheckoutSession, payment_details: Optional[Dict[str, Any]] = None) -> Order:
        """Turn a paid checkout session into a completed order, consuming the session."""
        return await self.materialize(
            user_id=session.user_id,
            lines=session.cart_items,
            total=session.total_amount,
            shipping_address_id=session.shipping_address_id,
            billing_address_id=session.billing_address_id,
            payment_method=session.payment_method,
            status=OrderStatus.COMPLETED,
            payment_reference=session.id,
            payment_details=payment_details,
            consume_session_id=session.id,
        )
