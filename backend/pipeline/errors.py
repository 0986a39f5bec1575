# pipeline/errors.py
# ============================================================================
# STREETWEAR STOREFRONT — CHECKOUT ERROR TAXONOMY
# ============================================================================
# Every failure the checkout flow can report. Each carries the HTTP status it
# maps to at the API boundary; the server renders them as {error, code}.
# ============================================================================

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base class for checkout flow failures."""

    code = "checkout_error"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


# =============================================================================
# CLIENT INPUT (400)
# =============================================================================

class MissingField(CheckoutError):
    code = "missing_field"

    def __init__(self, field: str):
        super().__init__(f"Missing required checkout data: {field}.", field=field)
        self.field = field


class EmptyCart(CheckoutError):
    code = "empty_cart"

    def __init__(self, message: str = "Cart is empty."):
        super().__init__(message)


class InvalidCartItem(CheckoutError):
    code = "invalid_cart_item"


class InvalidPaymentMethod(CheckoutError):
    code = "invalid_payment_method"

    def __init__(self, method: Optional[str]):
        super().__init__(f"Invalid payment method provided: {method!r}.", method=method)


# =============================================================================
# VALIDATION (400)
# =============================================================================

class InvalidVariant(CheckoutError):
    code = "invalid_variant"

    def __init__(self, variant_id: str):
        super().__init__(f"Product variant not found for ID: {variant_id}", variant_id=variant_id)
        self.variant_id = variant_id


class InsufficientStock(CheckoutError):
    code = "insufficient_stock"

    def __init__(self, name: str, available: Optional[int], requested: int, variant_id: str = ""):
        if available is None:
            message = f"Insufficient stock for {name}. Requested: {requested}"
        else:
            message = f"Insufficient stock for {name}. Available: {available}, Requested: {requested}"
        super().__init__(message, variant_id=variant_id, available=available, requested=requested)
        self.variant_id = variant_id
        self.available = available
        self.requested = requested


# =============================================================================
# PAYMENT
# =============================================================================

class CustomerEmailUnavailable(CheckoutError):
    code = "customer_email_unavailable"

    def __init__(self, user_id: str):
        super().__init__("Failed to get user email for payment.", user_id=user_id)


class NonPayableTotal(CheckoutError):
    """Card payments need a positive amount; the provider rejects zero."""

    code = "non_payable_total"

    def __init__(self, total):
        super().__init__(f"Order total {total} cannot be paid by card.", total=str(total))


class PaymentInitFailed(CheckoutError):
    code = "payment_init_failed"


class GatewayError(CheckoutError):
    """The payment provider could not be reached or answered with an error."""

    code = "gateway_error"
    status_code = 502

    def __init__(self, message: str, http_status: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(message, http_status=http_status)
        self.http_status = http_status
        self.payload = payload or {}


class InvalidSignature(CheckoutError):
    code = "invalid_signature"
    status_code = 403

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class MalformedWebhook(CheckoutError):
    code = "malformed_webhook"


class SessionNotFound(CheckoutError):
    code = "session_not_found"
    status_code = 404

    def __init__(self, reference: str):
        super().__init__(f"Checkout session not found: {reference}", reference=reference)
        self.reference = reference


class VerificationFailed(CheckoutError):
    code = "verification_failed"

    def __init__(self, reference: str, reason: str):
        super().__init__(f"Payment verification failed for {reference}: {reason}", reference=reference)
        self.reference = reference
        self.reason = reason


class VerificationUnavailable(CheckoutError):
    """The provider could not be asked; answered with 500 so the webhook is retried."""

    code = "verification_unavailable"
    status_code = 500

    def __init__(self, reference: str, reason: str):
        super().__init__(f"Could not verify payment {reference}: {reason}", reference=reference)
        self.reference = reference


class MaterializationFailed(CheckoutError):
    """Order or order items could not be written. The session is kept."""

    code = "materialization_failed"
    status_code = 500


# =============================================================================
# ORDERS + ACCESS
# =============================================================================

class OrderNotFound(CheckoutError):
    code = "order_not_found"
    status_code = 404

    def __init__(self, key: str):
        super().__init__(f"Order not found: {key}")


class InvalidStatusTransition(CheckoutError):
    code = "invalid_status_transition"
    status_code = 409


class DuplicateTrackingNumber(CheckoutError):
    code = "duplicate_tracking_number"
    status_code = 409

    def __init__(self, tracking_number: str):
        super().__init__(f"Tracking number already assigned: {tracking_number}")


class Unauthorized(CheckoutError):
    code = "unauthorized"
    status_code = 401


class Forbidden(CheckoutError):
    code = "forbidden"
    status_code = 403
