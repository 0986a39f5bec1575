# storefront_client/storefront_client.py
# ============================================================================
# STREETWEAR STOREFRONT — CHECKOUT API CLIENT
# ============================================================================
# What the callback page does after a card payment:
#   1. POST /api/checkout              -> {tempSessionId, url} (redirect)
#   2. user pays on the provider page, provider sends the webhook
#   3. GET /api/orders/by-reference/X  -> 404 until the order exists
# Polling is bounded; giving up is a normal outcome ("still processing").
# ============================================================================

import asyncio
from typing import Any, Dict, List, Optional

import httpx
import structlog

from schemas.checkout_models import CartLineRequest, CheckoutResult
from storefront_client.cart_cache import CartCache

logger = structlog.get_logger().bind(component="storefront_client")


class StorefrontError(Exception):
    """The checkout API answered with an error body."""

    def __init__(self, status_code: int, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code


class StorefrontClient:

    def __init__(
        self,
        base_url: str,
        user_id: str,
        http_client: Optional[httpx.AsyncClient] = None,
        cart_cache: Optional[CartCache] = None,
        timeout_seconds: float = 15.0,
    ):
        self.user_id = user_id
        self.cart_cache = cart_cache
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._owns_client = http_client is None

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "StorefrontClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        return {"X-User-Id": self.user_id}

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        raise StorefrontError(
            response.status_code,
            body.get("error") or response.text or f"HTTP {response.status_code}",
            body.get("code"),
        )

    async def checkout(
        self,
        shipping_address_id: str,
        billing_address_id: str,
        payment_method: str,
        items: Optional[List[CartLineRequest]] = None,
    ) -> CheckoutResult:
        """
        Submit a checkout. Without explicit items the cached cart is sent,
        and the cache is cleared once the server accepted the checkout.
        """
        if items is None:
            if self.cart_cache is None:
                raise ValueError("No items given and no cart cache configured")
            items = self.cart_cache.load(self.user_id)

        response = await self._client.post(
            "/api/checkout",
            headers=self._headers(),
            json={
                "items": [line.model_dump(mode="json", exclude_none=True) for line in items],
                "shipping_address_id": shipping_address_id,
                "billing_address_id": billing_address_id,
                "payment_method": payment_method,
                "user_id": self.user_id,
            },
        )
        self._raise_for_error(response)
        result = CheckoutResult.model_validate(response.json())

        if self.cart_cache is not None:
            self.cart_cache.clear(self.user_id)

        logger.info(
            "checkout_submitted",
            user_id=self.user_id,
            temp_session_id=result.temp_session_id,
            order_id=result.order_id,
        )
        return result

    async def get_order_by_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        response = await self._client.get(f"/api/orders/by-reference/{reference}", headers=self._headers())
        if response.status_code == 404:
            return None
        self._raise_for_error(response)
        return response.json()

    async def poll_for_order(
        self,
        reference: str,
        max_attempts: int = 10,
        interval_seconds: float = 2.0,
    ) -> Optional[Dict[str, Any]]:
        """Poll until the webhook has materialized the order, or give up with None."""
        for attempt in range(1, max_attempts + 1):
            order = await self.get_order_by_reference(reference)
            if order is not None:
                logger.info("order_found", reference=reference, attempt=attempt, order_id=order.get("id"))
                return order
            if attempt < max_attempts:
                await asyncio.sleep(interval_seconds)

        logger.info("order_poll_exhausted", reference=reference, attempts=max_attempts)
        return None
