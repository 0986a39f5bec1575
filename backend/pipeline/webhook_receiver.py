# pipeline/webhook_receiver.py
# ============================================================================
# STREETWEAR STOREFRONT — PAYSTACK WEBHOOK RECEIVER
# ============================================================================
# Session state machine driven by provider events:
#
#   pending --charge.success + verified--> order completed (session deleted)
#   pending --charge.failed-------------> failed     (kept for cleanup)
#   pending --charge.abandoned----------> abandoned  (kept for cleanup)
#   pending --paid but out of stock-----> review     (kept for an operator)
#
# Signature is checked on the raw body BEFORE anything is parsed. Once the
# signature is good we answer 200 for every business no-op (unknown session,
# duplicate delivery, unhandled event) so the provider stops retrying; we
# answer non-2xx only when a retry could succeed or the body is bad.
# ============================================================================

import hashlib
import hmac
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from pipeline.audit import CheckoutEventType, emit, summarize
from pipeline.errors import (
    GatewayError,
    InsufficientStock,
    InvalidSignature,
    MalformedWebhook,
    SessionNotFound,
    VerificationFailed,
    VerificationUnavailable,
)
from pipeline.gateway import PaystackClient, to_minor_units
from pipeline.materializer import OrderMaterializer
from schemas.checkout_models import CheckoutSession, PaystackEvent, SessionStatus
from storage.repositories import Stores

logger = structlog.get_logger().bind(component="paystack_webhook")

SIGNATURE_HEADER = "X-Paystack-Signature"

WebhookHandler = Callable[[PaystackEvent], Awaitable[Dict[str, Any]]]


# =============================================================================
# SIGNATURE
# =============================================================================

def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8", "replace"))


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

class WebhookRouter:
    """Maps provider event names to handlers."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: PaystackEvent) -> Optional[Dict[str, Any]]:
        handler = self._handlers.get(event.event)
        if not handler:
            self._logger.info("no_handler", event_type=event.event, reference=event.reference)
            return None
        return await handler(event)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())


# =============================================================================
# RECEIVER
# =============================================================================

class WebhookReceiver:
    """
    Verifies, routes and applies Paystack webhook deliveries.

    Example:
        receiver = WebhookReceiver(stores, gateway, materializer, secret)
        result = await receiver.receive(await request.body(), signature)
    """

    def __init__(
        self,
        stores: Stores,
        gateway: PaystackClient,
        materializer: Optional[OrderMaterializer] = None,
        secret: str = "",
    ):
        self.stores = stores
        self.gateway = gateway
        self.materializer = materializer or OrderMaterializer(stores.orders, stores.events)
        self.secret = secret

        self.router = WebhookRouter()
        self._register_handlers()

    def _register_handlers(self):

        @self.router.register("charge.success")
        async def handle_charge_success(event: PaystackEvent):
            return await self._on_charge_success(event)

        @self.router.register("charge.failed")
        async def handle_charge_failed(event: PaystackEvent):
            return await self._on_charge_closed(event, SessionStatus.FAILED, CheckoutEventType.SESSION_FAILED)

        @self.router.register("charge.abandoned")
        async def handle_charge_abandoned(event: PaystackEvent):
            return await self._on_charge_closed(event, SessionStatus.ABANDONED, CheckoutEventType.SESSION_ABANDONED)

    # -------------------------------------------------------------------------

    async def receive(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Process one webhook delivery.

        Raises:
            MalformedWebhook (400), InvalidSignature (403),
            VerificationFailed (400), VerificationUnavailable (500),
            MaterializationFailed (500)
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise MalformedWebhook("No Paystack signature header")

        if not verify_signature(raw_body, signature, self.secret):
            logger.warning("webhook_signature_invalid", body_bytes=len(raw_body))
            await emit(
                self.stores.events,
                CheckoutEventType.SIGNATURE_REJECTED,
                severity="WARN",
                body_bytes=len(raw_body),
            )
            raise InvalidSignature()

        try:
            event = PaystackEvent.model_validate_json(raw_body)
        except ValidationError as e:
            logger.warning("webhook_body_malformed", error=str(e))
            raise MalformedWebhook("Malformed webhook body") from e

        if not event.reference:
            logger.warning("webhook_reference_missing", event_type=event.event)
            raise MalformedWebhook("Webhook event has no reference")

        logger.info("webhook_received", event_type=event.event, reference=event.reference)
        await emit(
            self.stores.events,
            CheckoutEventType.WEBHOOK_RECEIVED,
            reference=event.reference,
            provider_event=event.event,
            **summarize(event.data),
        )

        result = await self.router.route(event)
        if result is None:
            return {"received": True, "status": "ignored", "event": event.event}
        return {"received": True, **result}

    async def _load_session(self, event: PaystackEvent) -> Optional[CheckoutSession]:
        session = await self.stores.sessions.get(event.reference)
        if session is None:
            # Duplicate delivery after promotion, or an event that beat its session
            logger.info(
                "webhook_session_not_found",
                event_type=event.event,
                temp_session_id=event.reference,
            )
        return session

    async def _not_found(self, event: PaystackEvent) -> Dict[str, Any]:
        existing = await self.stores.orders.get_by_reference(event.reference)
        if existing:
            return {"status": "already_processed", "order_id": existing.id}
        return {"status": "session_not_found"}

    async def _reject(self, session: CheckoutSession, reason: str, **details: Any) -> None:
        logger.error(
            "payment_verification_failed",
            temp_session_id=session.id,
            user_id=session.user_id,
            reason=reason,
            **details,
        )
        await emit(
            self.stores.events,
            CheckoutEventType.VERIFICATION_FAILED,
            reference=session.id,
            severity="ERROR",
            reason=reason,
            **details,
        )
        raise VerificationFailed(session.id, reason)

    async def _on_charge_success(self, event: PaystackEvent) -> Dict[str, Any]:
        session = await self._load_session(event)
        if session is None:
            return await self._not_found(event)

        try:
            verification = await self.gateway.verify(session.id)
        except GatewayError as e:
            logger.error("payment_verification_unavailable", temp_session_id=session.id, error=e.message)
            raise VerificationUnavailable(session.id, e.message) from e

        expected = to_minor_units(session.total_amount)
        if not verification.success:
            await self._reject(session, f"provider reports status {verification.status!r}")
        if verification.amount_minor_units != event.amount:
            await self._reject(
                session,
                "verified amount differs from event amount",
                verified_amount=verification.amount_minor_units,
                event_amount=event.amount,
            )
        if verification.amount_minor_units != expected:
            await self._reject(
                session,
                "verified amount differs from checkout total",
                verified_amount=verification.amount_minor_units,
                expected_amount=expected,
            )

        try:
            order = await self.materializer.promote_session(session, payment_details=event.data)
        except SessionNotFound:
            # Lost the race to a concurrent delivery of the same event
            logger.info("webhook_duplicate_promotion", temp_session_id=session.id)
            return await self._not_found(event)
        except InsufficientStock as e:
            logger.error(
                "paid_session_out_of_stock",
                temp_session_id=session.id,
                user_id=session.user_id,
                variant_id=e.variant_id,
                error=e.message,
            )
            await self.stores.sessions.mark(session.id, SessionStatus.REVIEW, e.message)
            return {"status": "review", "temp_session_id": session.id}

        return {"status": "order_created", "order_id": order.id}

    async def _on_charge_closed(
        self,
        event: PaystackEvent,
        status: SessionStatus,
        event_type: CheckoutEventType,
    ) -> Dict[str, Any]:
        session = await self._load_session(event)
        if session is None:
            return await self._not_found(event)

        reason = event.data.get("gateway_response") or event.event
        await self.stores.sessions.mark(session.id, status, reason)

        logger.info(
            "checkout_session_closed",
            temp_session_id=session.id,
            user_id=session.user_id,
            status=status.value,
            reason=reason,
        )
        await emit(self.stores.events, event_type, reference=session.id, reason=reason)
        return {"status": status.value, "temp_session_id": session.id}
