# storage/__init__.py
# ============================================================================
# STREETWEAR STOREFRONT — STORAGE MODULE
# ============================================================================
# Store interfaces and in-memory implementations. The asyncpg versions are
# imported explicitly from storage.postgres.
# ============================================================================

from storage.repositories import (
    ICartStore,
    ICatalogStore,
    ICheckoutSessionStore,
    IEventLog,
    IOrderRepository,
    IUserDirectory,
    Stores,
    in_memory_stores,
)

__all__ = [
    "ICartStore",
    "ICatalogStore",
    "ICheckoutSessionStore",
    "IEventLog",
    "IOrderRepository",
    "IUserDirectory",
    "Stores",
    "in_memory_stores",
]
