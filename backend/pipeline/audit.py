# pipeline/audit.py
# ============================================================================
# STREETWEAR STOREFRONT — CHECKOUT AUDIT TRAIL
# ============================================================================
# Event types written to the checkout event log, and the best-effort emitter
# every pipeline step uses. A failing audit write is logged, never raised.
# ============================================================================

from enum import Enum
from typing import Any, Dict, Optional

import structlog

from storage.repositories import IEventLog

logger = structlog.get_logger().bind(component="checkout_audit")


class CheckoutEventType(str, Enum):
    CHECKOUT_INITIATED = "CHECKOUT_INITIATED"
    SESSION_CREATED = "SESSION_CREATED"
    PAYMENT_INIT_FAILED = "PAYMENT_INIT_FAILED"
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"
    SIGNATURE_REJECTED = "SIGNATURE_REJECTED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    ORDER_MATERIALIZED = "ORDER_MATERIALIZED"
    SESSION_FAILED = "SESSION_FAILED"
    SESSION_ABANDONED = "SESSION_ABANDONED"
    SESSION_RECONCILED = "SESSION_RECONCILED"


async def emit(
    events: Optional[IEventLog],
    event_type: CheckoutEventType,
    reference: Optional[str] = None,
    severity: str = "INFO",
    **payload: Any,
) -> None:
    if events is None:
        return
    try:
        await events.append(event_type.value, payload, reference=reference, severity=severity)
    except Exception as e:
        logger.warning(
            "audit_write_failed",
            event_type=event_type.value,
            reference=reference,
            error=str(e),
        )


def summarize(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Trim a provider payload to the fields worth keeping in the audit log."""
    keys = ("amount", "status", "gateway_response", "currency", "paid_at", "channel")
    return {k: payload[k] for k in keys if k in payload}
