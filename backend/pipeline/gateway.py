# pipeline/gateway.py
# ============================================================================
# STREETWEAR STOREFRONT — PAYSTACK GATEWAY ADAPTER
# ============================================================================
# Thin async wrapper over the Paystack transaction API:
#   POST /transaction/initialize   -> hosted payment page URL
#   GET  /transaction/verify/{ref} -> authoritative charge status + amount
#
# Amounts cross this boundary in minor units (kobo). Conversion is exact
# Decimal arithmetic; floats are never accepted as money. No retries: the
# caller decides (the webhook sender retries on our non-2xx answers).
# ============================================================================

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, Field

from pipeline.errors import GatewayError

logger = structlog.get_logger().bind(component="paystack_gateway")

MINOR_UNITS_PER_MAJOR = 100
_CENT = Decimal("0.01")


# ============================================================================
# SECTION 1: CONFIGURATION
# ============================================================================

@dataclass
class PaystackConfig:
    """Configuration for the Paystack API."""
    secret_key: str
    base_url: str = "https://api.paystack.co"
    currency: str = "NGN"
    timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "PaystackConfig":
        return cls(
            secret_key=os.getenv("PAYSTACK_SECRET_KEY", ""),
            base_url=os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            currency=os.getenv("PAYSTACK_CURRENCY", "NGN"),
            timeout_seconds=float(os.getenv("PAYSTACK_TIMEOUT", "15.0")),
        )


# ============================================================================
# SECTION 2: MONEY CONVERSION
# ============================================================================

def to_minor_units(amount: Union[Decimal, int, str]) -> int:
    """
    Convert a major-unit amount (e.g. Decimal("100.00")) to integer minor
    units (10000).

    Raises ValueError for floats, negative amounts and amounts with sub-cent
    precision.
    """
    if isinstance(amount, float):
        raise ValueError("Money amounts must be Decimal, int or str, not float")
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a money amount: {amount!r}") from e

    if not value.is_finite():
        raise ValueError(f"Not a money amount: {amount!r}")
    if value < 0:
        raise ValueError(f"Money amount cannot be negative: {amount}")
    if value != value.quantize(_CENT):
        raise ValueError(f"Money amount has more than two decimal places: {amount}")

    return int(value.quantize(_CENT) * MINOR_UNITS_PER_MAJOR)


def from_minor_units(amount_minor_units: int) -> Decimal:
    return (Decimal(int(amount_minor_units)) / MINOR_UNITS_PER_MAJOR).quantize(_CENT)


# ============================================================================
# SECTION 3: RESULTS
# ============================================================================

class InitializeResult(BaseModel):
    redirect_url: str
    reference: str
    access_code: Optional[str] = None


class VerificationResult(BaseModel):
    success: bool
    amount_minor_units: Optional[int] = None
    status: Optional[str] = None
    gateway_response: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    def matches(self, expected_minor_units: int) -> bool:
        return self.success and self.amount_minor_units == expected_minor_units


# ============================================================================
# SECTION 4: CLIENT
# ============================================================================

class PaystackClient:
    """
    Paystack transaction client.

    An httpx.AsyncClient can be injected (tests pass one built on
    httpx.MockTransport); otherwise one is created lazily and owned here.
    """

    def __init__(self, config: Optional[PaystackConfig] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or PaystackConfig.from_env()
        if not self.config.secret_key:
            logger.warning("paystack_secret_key_missing")
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._get_client().request(
                method, self._url(path), headers=self._headers(), **kwargs
            )
        except httpx.TimeoutException as e:
            logger.error("paystack_timeout", path=path)
            raise GatewayError(f"Payment provider timed out: {path}") from e
        except httpx.HTTPError as e:
            logger.error("paystack_transport_error", path=path, error=str(e))
            raise GatewayError(f"Payment provider unreachable: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise GatewayError(
                "Payment provider returned a non-JSON response",
                http_status=response.status_code,
            ) from e
        if not isinstance(body, dict):
            raise GatewayError("Payment provider returned an unexpected body", http_status=response.status_code)
        return body

    async def initialize(
        self,
        email: str,
        amount_minor_units: int,
        reference: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitializeResult:
        """
        Start a transaction and return the hosted payment page.

        Raises:
            GatewayError: transport failure, HTTP error or `status: false`
        """
        if amount_minor_units <= 0:
            raise ValueError("Amount must be a positive number of minor units")

        response = await self._request(
            "POST",
            "/transaction/initialize",
            json={
                "email": email,
                "amount": amount_minor_units,
                "currency": self.config.currency,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata or {},
            },
        )
        body = self._json(response)

        if response.is_error or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.error(
                "paystack_initialize_rejected",
                reference=reference,
                http_status=response.status_code,
                message=message,
            )
            raise GatewayError(f"Payment initialization failed: {message}", response.status_code, body)

        data = body.get("data") or {}
        if not data.get("authorization_url"):
            raise GatewayError("Payment provider returned no authorization URL", response.status_code, body)

        logger.info("paystack_transaction_initialized", reference=reference, amount=amount_minor_units)
        return InitializeResult(
            redirect_url=data["authorization_url"],
            reference=data.get("reference") or reference,
            access_code=data.get("access_code"),
        )

    async def verify(self, reference: str) -> VerificationResult:
        """
        Ask the provider for the authoritative state of a transaction.

        A provider answer of "not found / not successful" is a normal
        unsuccessful result. Only transport failures and 5xx answers raise.
        """
        response = await self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")

        if response.status_code >= 500:
            logger.error("paystack_verify_server_error", reference=reference, http_status=response.status_code)
            raise GatewayError(
                f"Payment provider error while verifying {reference}",
                http_status=response.status_code,
            )

        body = self._json(response)
        data = body.get("data") or {}
        if not isinstance(data, dict):
            data = {}

        amount = data.get("amount")
        success = bool(body.get("status")) and not response.is_error and data.get("status") == "success"

        result = VerificationResult(
            success=success,
            amount_minor_units=int(amount) if isinstance(amount, (int, str)) and str(amount).isdigit() else None,
            status=data.get("status"),
            gateway_response=data.get("gateway_response") or body.get("message"),
            raw_payload=body,
        )
        logger.info(
            "paystack_transaction_verified",
            reference=reference,
            success=result.success,
            amount=result.amount_minor_units,
            status=result.status,
        )
        return result
