# pipeline/__init__.py
# ============================================================================
# STREETWEAR STOREFRONT — CHECKOUT PIPELINE
# ============================================================================
# validator -> orchestrator -> gateway -> webhook_receiver -> materializer
#
# Only the error taxonomy is re-exported here: the storage layer imports it,
# so this package must not import the storage-backed modules eagerly.
# ============================================================================

from pipeline.errors import (
    CheckoutError,
    GatewayError,
    InvalidSignature,
    MaterializationFailed,
    SessionNotFound,
    VerificationFailed,
)

__all__ = [
    "CheckoutError",
    "GatewayError",
    "InvalidSignature",
    "MaterializationFailed",
    "SessionNotFound",
    "VerificationFailed",
]
