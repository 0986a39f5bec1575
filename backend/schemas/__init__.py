# schemas/__init__.py
from schemas.checkout_models import (
    CartLineRequest,
    CheckoutRequest,
    CheckoutResult,
    CheckoutSession,
    DeliveryStatus,
    DeliveryUpdate,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusUpdate,
    PaymentMethod,
    PaystackEvent,
    ProductVariant,
    SessionStatus,
    TrackedOrder,
    ValidatedCartLine,
    ValidationResult,
)

__all__ = [
    "CartLineRequest",
    "CheckoutRequest",
    "CheckoutResult",
    "CheckoutSession",
    "DeliveryStatus",
    "DeliveryUpdate",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderStatusUpdate",
    "PaymentMethod",
    "PaystackEvent",
    "ProductVariant",
    "SessionStatus",
    "TrackedOrder",
    "ValidatedCartLine",
    "ValidationResult",
]
