# pipeline/orchestrator.py
# ============================================================================
# STREETWEAR STOREFRONT — CHECKOUT ORCHESTRATOR
# ============================================================================
# Entry point of a checkout:
#
#   request -> required fields -> validate_cart
#     cod          -> materialize order (pending) -> clear cart -> {orderId}
#     gateway-card -> customer email -> CheckoutSession -> clear cart
#                  -> gateway.initialize -> {tempSessionId, url}
#
# Card orders are NOT created here. They are materialized by the webhook
# receiver once the payment provider confirms the charge.
# ============================================================================

from typing import Optional

import structlog

from pipeline.audit import CheckoutEventType, emit
from pipeline.errors import (
    CustomerEmailUnavailable,
    EmptyCart,
    GatewayError,
    InvalidPaymentMethod,
    MissingField,
    NonPayableTotal,
    PaymentInitFailed,
)
from pipeline.gateway import PaystackClient, to_minor_units
from pipeline.materializer import OrderMaterializer
from pipeline.validator import validate_cart
from schemas.checkout_models import (
    CheckoutRequest,
    CheckoutResult,
    CheckoutSession,
    OrderStatus,
    PaymentMethod,
    SessionStatus,
    ValidationResult,
)
from storage.repositories import Stores

logger = structlog.get_logger().bind(component="checkout_orchestrator")

COD_CONFIRMATION = "Cash on Delivery order placed successfully!"
REQUIRED_FIELDS = ("user_id", "items", "shipping_address_id", "billing_address_id", "payment_method")


class CheckoutOrchestrator:
    """Runs one checkout request end to end."""

    def __init__(
        self,
        stores: Stores,
        gateway: PaystackClient,
        materializer: Optional[OrderMaterializer] = None,
        frontend_url: str = "http://localhost:5173",
    ):
        self.stores = stores
        self.gateway = gateway
        self.materializer = materializer or OrderMaterializer(stores.orders, stores.events)
        self.frontend_url = frontend_url.rstrip("/")

    def callback_url(self, temp_session_id: str) -> str:
        return f"{self.frontend_url}/checkout/success?tempSessionId={temp_session_id}"

    async def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        for field in REQUIRED_FIELDS:
            if getattr(request, field) is None or getattr(request, field) == "":
                raise MissingField(field)
        if not request.items:
            raise EmptyCart()

        method = PaymentMethod.parse(request.payment_method)
        if method is None:
            raise InvalidPaymentMethod(request.payment_method)

        log = logger.bind(user_id=request.user_id, payment_method=method.value)
        log.info("checkout_initiated", lines=len(request.items))

        validation = await validate_cart(self.stores.catalog, request.items)
        await emit(
            self.stores.events,
            CheckoutEventType.CHECKOUT_INITIATED,
            user_id=request.user_id,
            payment_method=method.value,
            total=str(validation.total_amount),
            lines=len(validation.items),
        )

        if method == PaymentMethod.COD:
            return await self._checkout_cod(request, validation)
        return await self._checkout_card(request, validation)

    async def _clear_cart(self, user_id: str) -> None:
        try:
            removed = await self.stores.carts.clear(user_id)
            logger.debug("cart_cleared", user_id=user_id, removed=removed)
        except Exception as e:
            logger.warning("cart_clear_failed", user_id=user_id, error=str(e))

    async def _checkout_cod(self, request: CheckoutRequest, validation: ValidationResult) -> CheckoutResult:
        order = await self.materializer.materialize(
            user_id=request.user_id,
            lines=validation.items,
            total=validation.total_amount,
            shipping_address_id=request.shipping_address_id,
            billing_address_id=request.billing_address_id,
            payment_method=PaymentMethod.COD,
            status=OrderStatus.PENDING,
        )
        await self._clear_cart(request.user_id)

        logger.info("cod_order_placed", order_id=order.id, user_id=request.user_id, total=str(order.total))
        return CheckoutResult(order_id=order.id, message=COD_CONFIRMATION)

    async def _checkout_card(self, request: CheckoutRequest, validation: ValidationResult) -> CheckoutResult:
        amount_minor_units = to_minor_units(validation.total_amount)
        if amount_minor_units <= 0:
            logger.warning("non_payable_total", user_id=request.user_id, total=str(validation.total_amount))
            raise NonPayableTotal(validation.total_amount)

        email = await self.stores.users.get_email(request.user_id)
        if not email:
            logger.warning("customer_email_unavailable", user_id=request.user_id)
            raise CustomerEmailUnavailable(request.user_id)

        session = await self.stores.sessions.create(
            CheckoutSession(
                user_id=request.user_id,
                cart_items=validation.items,
                shipping_address_id=request.shipping_address_id,
                billing_address_id=request.billing_address_id,
                payment_method=PaymentMethod.CARD,
                total_amount=validation.total_amount,
            )
        )
        log = logger.bind(temp_session_id=session.id, user_id=request.user_id)
        log.info("checkout_session_created", total=str(session.total_amount))
        await emit(
            self.stores.events,
            CheckoutEventType.SESSION_CREATED,
            reference=session.id,
            user_id=request.user_id,
            total=str(session.total_amount),
            amount_minor_units=amount_minor_units,
        )

        # Cleared before redirecting so going back to the cart cannot double-submit
        await self._clear_cart(request.user_id)

        try:
            initialized = await self.gateway.initialize(
                email=email,
                amount_minor_units=amount_minor_units,
                reference=session.id,
                callback_url=self.callback_url(session.id),
                metadata={"temp_session_id": session.id, "user_id": request.user_id},
            )
        except GatewayError as e:
            log.error("payment_init_failed", error=e.message, http_status=e.http_status)
            await self.stores.sessions.mark(session.id, SessionStatus.FAILED, e.message)
            await emit(
                self.stores.events,
                CheckoutEventType.PAYMENT_INIT_FAILED,
                reference=session.id,
                severity="ERROR",
                error=e.message,
            )
            raise PaymentInitFailed(e.message or "Failed to initialize payment.") from e

        log.info("payment_redirect_ready")
        return CheckoutResult(temp_session_id=session.id, url=initialized.redirect_url)
