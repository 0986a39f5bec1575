import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from pipeline.gateway import PaystackClient, PaystackConfig
from pipeline.materializer import OrderMaterializer
from pipeline.webhook_receiver import WebhookReceiver, compute_signature
from schemas.checkout_models import CartLineRequest, ProductVariant
from storage.repositories import in_memory_stores

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
EMAIL = "ada@example.com"
SHIPPING_ID = "addr-ship"
BILLING_ID = "addr-bill"
SECRET_KEY = "sk_test_secret"
BASE_URL = "https://api.paystack.test"

TEE = ProductVariant(
    id="var-tee-m",
    product_id="prod-tee",
    price=Decimal("50.00"),
    stock=10,
    name="M",
    sku="TEE-M",
    product_name="Logo Tee",
)
HOODIE = ProductVariant(
    id="var-hoodie-l",
    product_id="prod-hoodie",
    price=Decimal("35.50"),
    stock=1,
    name="L",
    sku="HOOD-L",
    product_name="Box Hoodie",
)


class FakePaystack:
    """httpx.MockTransport handler standing in for api.paystack.co."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.initialized: Dict[str, Dict[str, Any]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.initialize_override: Optional[Tuple[int, Dict[str, Any]]] = None
        self.verify_status_code: Optional[int] = None

    def settle(self, reference: str, amount: int, status: str = "success", gateway_response: str = "Approved"):
        self.transactions[reference] = {
            "status": status,
            "amount": amount,
            "currency": "NGN",
            "gateway_response": gateway_response,
        }

    def calls(self, prefix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.startswith(prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/transaction/initialize":
            if self.initialize_override:
                status_code, body = self.initialize_override
                return httpx.Response(status_code, json=body)
            body = json.loads(request.content)
            reference = body["reference"]
            self.initialized[reference] = body
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.test/{reference}",
                    "access_code": f"ac_{reference[:8]}",
                    "reference": reference,
                },
            })

        if path.startswith("/transaction/verify/"):
            if self.verify_status_code:
                return httpx.Response(self.verify_status_code, json={"status": False, "message": "Upstream error"})
            reference = path.rsplit("/", 1)[-1]
            tx = self.transactions.get(reference)
            if tx is None:
                return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})
            return httpx.Response(200, json={
                "status": True,
                "message": "Verification successful",
                "data": {"reference": reference, **tx},
            })

        return httpx.Response(404, json={"status": False, "message": "Not found"})


def webhook_body(event: str, reference: str, amount: Optional[int] = None, **data: Any) -> bytes:
    payload = {"reference": reference, **data}
    if amount is not None:
        payload["amount"] = amount
    return json.dumps({"event": event, "data": payload}).encode("utf-8")


def sign(body: bytes, secret: str = SECRET_KEY) -> str:
    return compute_signature(body, secret)


def cart_line(variant: ProductVariant, quantity: int, price: Optional[str] = None) -> CartLineRequest:
    return CartLineRequest(
        variant_id=variant.id,
        quantity=quantity,
        price=Decimal(price) if price is not None else None,
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def paystack() -> FakePaystack:
    return FakePaystack()


@pytest.fixture
def gateway(paystack: FakePaystack) -> PaystackClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(paystack.handler))
    return PaystackClient(PaystackConfig(secret_key=SECRET_KEY, base_url=BASE_URL), http_client=http_client)


@pytest.fixture
def stores():
    return in_memory_stores([TEE, HOODIE], {USER_ID: EMAIL, OTHER_USER_ID: "bo@example.com"})


@pytest.fixture
def materializer(stores) -> OrderMaterializer:
    return OrderMaterializer(stores.orders, stores.events)


@pytest.fixture
def receiver(stores, gateway, materializer) -> WebhookReceiver:
    return WebhookReceiver(stores, gateway, materializer, secret=SECRET_KEY)
