import json
from decimal import Decimal

import httpx
import pytest

from conftest import BASE_URL, SECRET_KEY
from pipeline.errors import GatewayError
from pipeline.gateway import PaystackClient, PaystackConfig, from_minor_units, to_minor_units


# =============================================================================
# MONEY
# =============================================================================

@pytest.mark.parametrize("amount,expected", [
    (Decimal("100.00"), 10000),
    (Decimal("0.1"), 10),
    (Decimal("19.99"), 1999),
    ("35.50", 3550),
    (7, 700),
    (Decimal("1.10") + Decimal("2.20"), 330),
])
def test_to_minor_units_is_exact(amount, expected):
    assert to_minor_units(amount) == expected


@pytest.mark.parametrize("amount", [Decimal("1.005"), Decimal("-1.00"), 10.5, "abc", Decimal("NaN")])
def test_to_minor_units_rejects(amount):
    with pytest.raises(ValueError):
        to_minor_units(amount)


def test_from_minor_units():
    assert from_minor_units(18550) == Decimal("185.50")


# =============================================================================
# INITIALIZE
# =============================================================================

async def test_initialize_sends_minor_units_and_bearer(paystack, gateway):
    result = await gateway.initialize(
        email="ada@example.com",
        amount_minor_units=10000,
        reference="ref-1",
        callback_url="http://shop/checkout/success?tempSessionId=ref-1",
        metadata={"temp_session_id": "ref-1", "user_id": "user-1"},
    )

    assert result.redirect_url == "https://checkout.paystack.test/ref-1"
    assert result.reference == "ref-1"

    request = paystack.requests[0]
    assert str(request.url) == f"{BASE_URL}/transaction/initialize"
    assert request.headers["Authorization"] == f"Bearer {SECRET_KEY}"
    body = json.loads(request.content)
    assert body["amount"] == 10000
    assert body["currency"] == "NGN"
    assert body["metadata"] == {"temp_session_id": "ref-1", "user_id": "user-1"}


async def test_initialize_provider_refusal_raises(paystack, gateway):
    paystack.initialize_override = (400, {"status": False, "message": "Invalid key"})

    with pytest.raises(GatewayError) as exc:
        await gateway.initialize("ada@example.com", 10000, "ref-1", "http://cb")

    assert "Invalid key" in exc.value.message
    assert exc.value.http_status == 400


async def test_initialize_status_false_with_200_raises(paystack, gateway):
    paystack.initialize_override = (200, {"status": False, "message": "Duplicate Transaction Reference"})

    with pytest.raises(GatewayError):
        await gateway.initialize("ada@example.com", 10000, "ref-1", "http://cb")


async def test_initialize_transport_error_raises():
    def broken(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = PaystackClient(
        PaystackConfig(secret_key=SECRET_KEY, base_url=BASE_URL),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(broken)),
    )
    with pytest.raises(GatewayError):
        await client.initialize("ada@example.com", 10000, "ref-1", "http://cb")


# =============================================================================
# VERIFY
# =============================================================================

async def test_verify_success(paystack, gateway):
    paystack.settle("ref-1", 10000)

    result = await gateway.verify("ref-1")

    assert result.success is True
    assert result.amount_minor_units == 10000
    assert result.matches(10000)
    assert not result.matches(9999)


async def test_verify_failed_charge_is_not_success(paystack, gateway):
    paystack.settle("ref-1", 10000, status="failed", gateway_response="Declined")

    result = await gateway.verify("ref-1")

    assert result.success is False
    assert result.gateway_response == "Declined"


async def test_verify_unknown_reference_is_unsuccessful_not_error(gateway):
    result = await gateway.verify("missing")

    assert result.success is False
    assert result.amount_minor_units is None


async def test_verify_server_error_raises(paystack, gateway):
    paystack.verify_status_code = 503

    with pytest.raises(GatewayError):
        await gateway.verify("ref-1")
