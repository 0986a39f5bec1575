# storefront_client/__init__.py
from storefront_client.cart_cache import CartCache
from storefront_client.storefront_client import StorefrontClient, StorefrontError

__all__ = [
    "CartCache",
    "StorefrontClient",
    "StorefrontError",
]
