import httpx
import pytest

from api.server import build_services, create_app
from conftest import BILLING_ID, SECRET_KEY, SHIPPING_ID, TEE, USER_ID, sign, webhook_body
from schemas.checkout_models import CartLineRequest
from storefront_client import CartCache, StorefrontClient, StorefrontError


# =============================================================================
# CART CACHE
# =============================================================================

def test_cart_cache_roundtrip(tmp_path):
    cache = CartCache(tmp_path)

    cache.add(USER_ID, TEE.id, 1)
    cache.add(USER_ID, TEE.id, 2)
    cache.add(USER_ID, "var-other", 1)

    lines = cache.load(USER_ID)
    assert [(line.variant_id, line.quantity) for line in lines] == [(TEE.id, 3), ("var-other", 1)]
    assert cache.load("someone-else") == []
    assert all(USER_ID not in p.name for p in tmp_path.iterdir())

    cache.update_quantity(USER_ID, "var-other", 0)
    assert [line.variant_id for line in cache.load(USER_ID)] == [TEE.id]

    cache.clear(USER_ID)
    assert cache.load(USER_ID) == []


def test_corrupt_cart_file_is_discarded(tmp_path):
    cache = CartCache(tmp_path)
    cache.add(USER_ID, TEE.id, 1)
    path = next(tmp_path.iterdir())
    path.write_text("{broken", encoding="utf-8")

    assert cache.load(USER_ID) == []
    assert not path.exists()


def test_add_rejects_non_positive_quantity(tmp_path):
    with pytest.raises(ValueError):
        CartCache(tmp_path).add(USER_ID, TEE.id, 0)


# =============================================================================
# CLIENT
# =============================================================================

@pytest.fixture
def app(stores, gateway):
    services = build_services(stores, gateway, webhook_secret=SECRET_KEY, frontend_url="http://shop.test")
    return create_app(services, run_sweeper=False)


@pytest.fixture
async def http_client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def test_cod_checkout_from_cached_cart(tmp_path, http_client, stores):
    cache = CartCache(tmp_path)
    cache.add(USER_ID, TEE.id, 2)
    client = StorefrontClient("http://test", USER_ID, http_client=http_client, cart_cache=cache)

    result = await client.checkout(SHIPPING_ID, BILLING_ID, "cod")

    assert result.order_id
    assert cache.load(USER_ID) == []
    assert (await stores.orders.get(result.order_id)).user_id == USER_ID


async def test_rejected_checkout_keeps_cart(tmp_path, http_client):
    cache = CartCache(tmp_path)
    cache.add(USER_ID, TEE.id, 50)
    client = StorefrontClient("http://test", USER_ID, http_client=http_client, cart_cache=cache)

    with pytest.raises(StorefrontError) as exc:
        await client.checkout(SHIPPING_ID, BILLING_ID, "cod")

    assert exc.value.status_code == 400
    assert exc.value.code == "insufficient_stock"
    assert len(cache.load(USER_ID)) == 1


async def test_polling_is_bounded_then_finds_order(http_client, paystack):
    client = StorefrontClient("http://test", USER_ID, http_client=http_client)
    started = await client.checkout(
        SHIPPING_ID,
        BILLING_ID,
        "gateway-card",
        items=[CartLineRequest(variant_id=TEE.id, quantity=2)],
    )
    reference = started.temp_session_id

    assert await client.poll_for_order(reference, max_attempts=3, interval_seconds=0) is None
    assert paystack.calls("/transaction/initialize") == 1

    paystack.settle(reference, 10000)
    body = webhook_body("charge.success", reference, 10000)
    delivered = await http_client.post(
        "/api/webhooks/paystack",
        content=body,
        headers={"X-Paystack-Signature": sign(body)},
    )
    assert delivered.status_code == 200

    order = await client.poll_for_order(reference, max_attempts=3, interval_seconds=0)
    assert order["payment_reference"] == reference
    assert order["status"] == "completed"
