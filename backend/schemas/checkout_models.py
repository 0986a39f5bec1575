# schemas/checkout_models.py
# ============================================================================
# STREETWEAR STOREFRONT — CHECKOUT DOMAIN MODELS
# ============================================================================
# Typed records for the checkout flow: cart lines, checkout sessions, orders
# and the request/response shapes of the checkout and webhook endpoints.
#
# Money is always Decimal in major units (e.g. 50.00). Conversion to the
# payment provider's minor units happens in pipeline.gateway only.
# ============================================================================

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class PaymentMethod(str, Enum):
    CARD = "gateway-card"
    COD = "cod"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["PaymentMethod"]:
        """Resolve a client-supplied method name, accepting legacy aliases."""
        if value is None:
            return None
        normalized = str(value).strip().lower()
        aliases = {
            "gateway-card": cls.CARD,
            "card": cls.CARD,
            "paystack": cls.CARD,
            "cod": cls.COD,
            "cash-on-delivery": cls.COD,
        }
        return aliases.get(normalized)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    COMPLETED = "completed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELED = "canceled"


class DeliveryStatus(str, Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    OUT_FOR_DELIVERY = "out_for_delivery"
    ATTEMPTED_DELIVERY = "attempted_delivery"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"


class SessionStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    ABANDONED = "abandoned"
    REVIEW = "review"  # paid but could not be promoted automatically


# ============================================================================
# SECTION 2: CATALOG + CART
# ============================================================================

class ProductVariant(BaseModel):
    """Catalog projection read by the validator."""
    id: str
    product_id: str
    price: Decimal
    stock: int
    name: Optional[str] = None
    sku: Optional[str] = None
    product_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.product_name and self.name:
            return f"{self.product_name} ({self.name})"
        return self.product_name or self.name or self.sku or self.id


class CartLineRequest(BaseModel):
    """A cart line as submitted by the client. The price is advisory only."""
    model_config = ConfigDict(populate_by_name=True)

    variant_id: Optional[str] = Field(default=None, alias="variantId")
    quantity: Optional[int] = None
    price: Optional[Decimal] = None


class ValidatedCartLine(BaseModel):
    product_id: str
    variant_id: str
    quantity: int = Field(gt=0)
    price: Decimal

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class ValidationResult(BaseModel):
    items: List[ValidatedCartLine]
    total_amount: Decimal


# ============================================================================
# SECTION 3: CHECKOUT SESSION
# ============================================================================

class CheckoutSession(BaseModel):
    """
    Staging record for a card checkout that has not been paid yet.

    The id doubles as the payment provider's transaction reference. Sessions
    never show up in order history; they are deleted when promoted.
    """
    id: str = Field(default_factory=new_id)
    user_id: str
    cart_items: List[ValidatedCartLine]
    shipping_address_id: str
    billing_address_id: str
    payment_method: PaymentMethod
    total_amount: Decimal
    status: SessionStatus = SessionStatus.PENDING
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def age_minutes(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.created_at).total_seconds() / 60


# ============================================================================
# SECTION 4: ORDERS
# ============================================================================

class OrderItem(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    product_id: str
    variant_id: str
    quantity: int = Field(gt=0)
    price: Decimal

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    total: Decimal
    status: OrderStatus
    payment_method: PaymentMethod
    shipping_address_id: str
    billing_address_id: str

    # Delivery (admin managed, absent until dispatch)
    delivery_status: Optional[DeliveryStatus] = None
    tracking_number: Optional[str] = None
    rider_id: Optional[str] = None
    estimated_delivery_time: Optional[datetime] = None
    delivery_notes: Optional[str] = None

    # Payment provider audit trail
    payment_reference: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    items: List[OrderItem] = Field(default_factory=list)

    @property
    def items_total(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0"))


class TrackedOrder(BaseModel):
    """Public projection for guest order tracking (no owner or payment data)."""
    id: str
    status: OrderStatus
    delivery_status: Optional[DeliveryStatus] = None
    tracking_number: Optional[str] = None
    estimated_delivery_time: Optional[datetime] = None
    delivery_notes: Optional[str] = None
    created_at: datetime
    items: List[OrderItem] = Field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order) -> "TrackedOrder":
        return cls(
            id=order.id,
            status=order.status,
            delivery_status=order.delivery_status,
            tracking_number=order.tracking_number,
            estimated_delivery_time=order.estimated_delivery_time,
            delivery_notes=order.delivery_notes,
            created_at=order.created_at,
            items=order.items,
        )


# ============================================================================
# SECTION 5: REQUEST / RESPONSE SHAPES
# ============================================================================

class CheckoutRequest(BaseModel):
    """
    Checkout initiation body. Every field is optional here so that missing
    fields surface as a MissingField error rather than a schema error.
    """
    items: Optional[List[CartLineRequest]] = None
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    payment_method: Optional[str] = None
    user_id: Optional[str] = None


class CheckoutResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temp_session_id: Optional[str] = Field(default=None, alias="tempSessionId")
    url: Optional[str] = None
    order_id: Optional[str] = Field(default=None, alias="orderId")
    message: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaystackEvent(BaseModel):
    """Inbound webhook envelope: {event, data: {reference, amount, status, ...}}"""
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def reference(self) -> Optional[str]:
        ref = self.data.get("reference")
        return str(ref) if ref else None

    @property
    def amount(self) -> Optional[int]:
        amount = self.data.get("amount")
        try:
            return int(amount) if amount is not None else None
        except (TypeError, ValueError):
            return None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class DeliveryUpdate(BaseModel):
    delivery_status: Optional[DeliveryStatus] = None
    tracking_number: Optional[str] = None
    rider_id: Optional[str] = None
    estimated_delivery_time: Optional[datetime] = None
    delivery_notes: Optional[str] = None
