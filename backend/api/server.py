"""
Checkout Server v1.0
====================
FastAPI server for the storefront checkout flow:
- Checkout initiation (card via Paystack, or cash on delivery)
- Paystack webhook receiver (signature gate, re-verification, promotion)
- Order lookup for the payment callback page and order history
- Admin order management and manual session reconciliation
- Background reconciliation sweep
- Health monitoring

The caller's identity arrives in the X-User-Id header, set by the hosted
auth layer in front of this service. Admin routes also require X-Admin-Key.

pip install fastapi uvicorn pydantic asyncpg httpx structlog
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import config
from database import Database, close_database, init_database
from pipeline.errors import CheckoutError, Forbidden, Unauthorized
from pipeline.gateway import PaystackClient, PaystackConfig
from pipeline.materializer import OrderMaterializer
from pipeline.orchestrator import CheckoutOrchestrator
from pipeline.webhook_receiver import SIGNATURE_HEADER, WebhookReceiver
from schemas.checkout_models import CheckoutRequest, DeliveryUpdate, OrderStatusUpdate
from services.order_service import OrderService
from storage.repositories import Stores
from tasks.session_sweeper import SessionSweeper

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=True) if config.DEBUG else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, config.LOG_LEVEL, logging.INFO)),
)

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# =============================================================================
# SERVICE CONTAINER
# =============================================================================

@dataclass
class CheckoutServices:
    """Everything the route handlers need, built once per app."""
    stores: Stores
    gateway: PaystackClient
    orchestrator: CheckoutOrchestrator
    receiver: WebhookReceiver
    orders: OrderService
    sweeper: SessionSweeper
    admin_api_key: str = ""
    uses_database: bool = False


def build_services(
    stores: Stores,
    gateway: PaystackClient,
    webhook_secret: str = config.PAYSTACK_WEBHOOK_SECRET,
    frontend_url: str = config.FRONTEND_URL,
    admin_api_key: str = config.ADMIN_API_KEY,
    uses_database: bool = False,
) -> CheckoutServices:
    materializer = OrderMaterializer(stores.orders, stores.events)
    return CheckoutServices(
        stores=stores,
        gateway=gateway,
        orchestrator=CheckoutOrchestrator(stores, gateway, materializer, frontend_url=frontend_url),
        receiver=WebhookReceiver(stores, gateway, materializer, secret=webhook_secret),
        orders=OrderService(stores.orders),
        sweeper=SessionSweeper(stores, gateway, materializer),
        admin_api_key=admin_api_key,
        uses_database=uses_database,
    )


def build_default_services() -> CheckoutServices:
    from storage.postgres import postgres_stores

    return build_services(
        postgres_stores(),
        PaystackClient(PaystackConfig.from_env()),
        uses_database=True,
    )


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_services(request: Request) -> CheckoutServices:
    return request.app.state.services


def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise Unauthorized("Authentication required.")
    return x_user_id


def require_admin(
    x_admin_key: Optional[str] = Header(default=None),
    services: CheckoutServices = Depends(get_services),
) -> str:
    if not services.admin_api_key or x_admin_key != services.admin_api_key:
        raise Forbidden("Admin access required.")
    return "admin"


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    database_connected: bool
    sweeper: Dict[str, Any]


START_TIME = datetime.now(timezone.utc)


# =============================================================================
# HEALTH ENDPOINTS
# =============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(services: CheckoutServices = Depends(get_services)):
    """Health check endpoint"""
    uptime = (datetime.now(timezone.utc) - START_TIME).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=uptime,
        database_connected=Database._initialized,
        sweeper=services.sweeper.get_sweep_stats(),
    )


@router.get("/ready")
async def readiness_check(services: CheckoutServices = Depends(get_services)):
    """Kubernetes readiness probe"""
    return {"ready": Database._initialized or not services.uses_database}


@router.get("/live")
async def liveness_check():
    """Kubernetes liveness probe"""
    return {"live": True}


# =============================================================================
# CHECKOUT + WEBHOOK
# =============================================================================

@router.post("/api/checkout")
async def initiate_checkout(
    body: CheckoutRequest,
    x_user_id: Optional[str] = Header(default=None),
    services: CheckoutServices = Depends(get_services),
):
    """
    Start a checkout. Card payments answer {tempSessionId, url}; cash on
    delivery answers {orderId, message}.
    """
    if x_user_id:
        if body.user_id and body.user_id != x_user_id:
            raise Forbidden("Cannot check out on behalf of another user.")
        body = body.model_copy(update={"user_id": x_user_id})

    result = await services.orchestrator.checkout(body)
    return result.to_response()


@router.post("/api/webhooks/paystack")
async def paystack_webhook(request: Request, services: CheckoutServices = Depends(get_services)):
    """
    Paystack webhook handler for payment events.
    The signature is checked against the raw body before it is parsed.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    return await services.receiver.receive(payload, signature)


# =============================================================================
# ORDERS
# =============================================================================

@router.get("/api/orders")
async def list_orders(
    limit: int = 50,
    user_id: str = Depends(require_user),
    services: CheckoutServices = Depends(get_services),
):
    orders = await services.orders.list_orders_for_user(user_id, limit=min(max(limit, 1), 100))
    return {"orders": [o.model_dump(mode="json") for o in orders], "count": len(orders)}


@router.get("/api/orders/by-reference/{reference}")
async def get_order_by_reference(
    reference: str,
    user_id: str = Depends(require_user),
    services: CheckoutServices = Depends(get_services),
):
    """Polled by the payment callback page until the webhook has landed."""
    order = await services.orders.get_order_by_reference(reference, user_id)
    return order.model_dump(mode="json")


@router.get("/api/orders/track/{tracking_number}")
async def track_order(tracking_number: str, services: CheckoutServices = Depends(get_services)):
    tracked = await services.orders.get_order_by_tracking_number(tracking_number)
    return tracked.model_dump(mode="json")


@router.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    user_id: str = Depends(require_user),
    services: CheckoutServices = Depends(get_services),
):
    order = await services.orders.get_order_for_user(order_id, user_id)
    return order.model_dump(mode="json")


@router.post("/api/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    request: Request,
    user_id: str = Depends(require_user),
    services: CheckoutServices = Depends(get_services),
):
    is_admin = bool(services.admin_api_key) and request.headers.get("X-Admin-Key") == services.admin_api_key
    order = await services.orders.cancel_order(order_id, user_id, is_admin=is_admin)
    return order.model_dump(mode="json")


# =============================================================================
# ADMIN
# =============================================================================

@router.patch("/api/admin/orders/{order_id}/status")
async def admin_update_status(
    order_id: str,
    update: OrderStatusUpdate,
    _: str = Depends(require_admin),
    services: CheckoutServices = Depends(get_services),
):
    order = await services.orders.update_order_status(order_id, update.status)
    return order.model_dump(mode="json")


@router.patch("/api/admin/orders/{order_id}/delivery")
async def admin_update_delivery(
    order_id: str,
    update: DeliveryUpdate,
    _: str = Depends(require_admin),
    services: CheckoutServices = Depends(get_services),
):
    order = await services.orders.update_delivery(order_id, update)
    return order.model_dump(mode="json")


@router.post("/api/admin/sessions/{session_id}/reconcile")
async def admin_reconcile_session(
    session_id: str,
    _: str = Depends(require_admin),
    services: CheckoutServices = Depends(get_services),
):
    """Manual reconciliation of a card session (lost webhook)."""
    return await services.sweeper.reconcile_session(session_id)


@router.get("/api/admin/checkout-events/{reference}")
async def admin_checkout_events(
    reference: str,
    _: str = Depends(require_admin),
    services: CheckoutServices = Depends(get_services),
):
    events = await services.stores.events.get_for_reference(reference)
    return {"reference": reference, "events": events, "count": len(events)}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

async def checkout_error_handler(request: Request, exc: CheckoutError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        status=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip()
    logger.info("request_invalid", path=request.url.path, error=message)
    return JSONResponse(status_code=400, content={"error": message, "code": "invalid_request"})


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(services: Optional[CheckoutServices] = None, run_sweeper: bool = config.SWEEP_ENABLED) -> FastAPI:
    """
    Build the FastAPI app. Without explicit services the Postgres stores and
    the live Paystack client are wired up at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.ENV)

        if app.state.services is None:
            await init_database()
            app.state.services = build_default_services()

        current: CheckoutServices = app.state.services
        sweep_task = None
        if run_sweeper:
            sweep_task = asyncio.create_task(current.sweeper.run_forever())

        yield

        # Cleanup
        logger.info("server_shutting_down")
        if sweep_task:
            sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await sweep_task
        await current.gateway.close()
        if current.uses_database:
            await close_database()

    app = FastAPI(
        title="Streetwear Checkout",
        description="Checkout and payment orchestration for the streetwear storefront",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
