# config.py
# ============================================================================
# STREETWEAR STOREFRONT — CHECKOUT SERVICE CONFIGURATION
# ============================================================================
# Environment-driven settings shared by the server, the payment pipeline and
# the reconciliation sweep. Database settings live in database.py.
# ============================================================================

import os


class CheckoutConfig:
    """Checkout service configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Storefront (callback pages live here)
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

    # Paystack. Webhooks are signed with the secret key unless a dedicated
    # webhook secret is configured.
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
    PAYSTACK_WEBHOOK_SECRET = os.getenv("PAYSTACK_WEBHOOK_SECRET") or PAYSTACK_SECRET_KEY

    # Back-office
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # Reconciliation sweep
    SWEEP_ENABLED = os.getenv("SWEEP_ENABLED", "true").lower() == "true"
    SWEEP_INTERVAL = int(os.getenv("SWEEP_INTERVAL", "300"))  # 5 minutes
    SWEEP_THRESHOLD_MINUTES = int(os.getenv("SWEEP_THRESHOLD_MINUTES", "15"))
    SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "1440"))  # 24 hours
    SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "25"))


config = CheckoutConfig()
