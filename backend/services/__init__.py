# services/__init__.py
# ============================================================================
# STREETWEAR STOREFRONT — SERVICES MODULE
# ============================================================================
# Order lookup and admin order management
# ============================================================================

from services.order_service import (
    ALLOWED_TRANSITIONS,
    OWNER_CANCELLABLE,
    OrderService,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "OWNER_CANCELLABLE",
    "OrderService",
]
