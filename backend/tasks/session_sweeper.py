"""
Session Sweeper - The Safety Net
================================
Background task that reconciles card checkout sessions whose webhook never
arrived (provider outage, misconfigured endpoint, user closed the tab).

For every `pending` or `failed` session older than the threshold it asks
the provider for the authoritative transaction state (a failed charge can
be retried on the same reference until the session expires):

- paid with the right amount -> promote to a completed order
  (same materializer as the webhook, so a late webhook is a no-op)
- paid with the wrong amount  -> flag `review` for an operator
- not paid and past its TTL   -> flag `abandoned`
- otherwise                   -> leave it for the next cycle

Features:
- Runs every SWEEP_INTERVAL seconds
- Bounded batch per cycle
- Manual reconciliation of a single session (admin endpoint)
- Logs every outcome to the checkout event log
"""

import asyncio
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from config import config
from pipeline.audit import CheckoutEventType, emit
from pipeline.errors import (
    GatewayError,
    InsufficientStock,
    MaterializationFailed,
    SessionNotFound,
)
from pipeline.gateway import PaystackClient, to_minor_units
from pipeline.materializer import OrderMaterializer
from schemas.checkout_models import CheckoutSession, SessionStatus, utcnow
from storage.repositories import Stores

# Configure logger
logger = structlog.get_logger().bind(component="session_sweeper")

SWEPT_STATUSES = (SessionStatus.PENDING, SessionStatus.FAILED)


class SessionSweeper:

    def __init__(
        self,
        stores: Stores,
        gateway: PaystackClient,
        materializer: Optional[OrderMaterializer] = None,
        interval_seconds: int = config.SWEEP_INTERVAL,
        threshold_minutes: int = config.SWEEP_THRESHOLD_MINUTES,
        ttl_minutes: int = config.SESSION_TTL_MINUTES,
        batch_size: int = config.SWEEP_BATCH_SIZE,
    ):
        self.stores = stores
        self.gateway = gateway
        self.materializer = materializer or OrderMaterializer(stores.orders, stores.events)
        self.interval_seconds = interval_seconds
        self.threshold_minutes = threshold_minutes
        self.ttl_minutes = ttl_minutes
        self.batch_size = batch_size

        self.totals: Counter = Counter()
        self.cycles = 0
        self.last_run_at: Optional[datetime] = None

    # =========================================================================
    # SINGLE SESSION
    # =========================================================================

    async def _reconcile(self, session: CheckoutSession, now: Optional[datetime] = None) -> str:
        log = logger.bind(temp_session_id=session.id, user_id=session.user_id)

        try:
            verification = await self.gateway.verify(session.id)
        except GatewayError as e:
            log.warning("sweep_verify_unavailable", error=e.message)
            return "error"

        expected = to_minor_units(session.total_amount)

        if verification.matches(expected):
            try:
                order = await self.materializer.promote_session(
                    session, payment_details=verification.raw_payload.get("data") or {}
                )
            except SessionNotFound:
                return "already_processed"
            except InsufficientStock as e:
                log.error("sweep_paid_session_out_of_stock", error=e.message)
                await self.stores.sessions.mark(session.id, SessionStatus.REVIEW, e.message)
                return "review"
            except MaterializationFailed as e:
                log.error("sweep_promotion_failed", error=e.message)
                return "error"

            log.warning("sweep_recovered_lost_webhook", order_id=order.id)
            return "promoted"

        if verification.success:
            reason = f"paid amount {verification.amount_minor_units} differs from checkout total {expected}"
            log.error("sweep_amount_mismatch", verified_amount=verification.amount_minor_units, expected_amount=expected)
            await self.stores.sessions.mark(session.id, SessionStatus.REVIEW, reason)
            await emit(
                self.stores.events,
                CheckoutEventType.VERIFICATION_FAILED,
                reference=session.id,
                severity="ERROR",
                reason=reason,
            )
            return "review"

        if session.age_minutes(now) >= self.ttl_minutes:
            reason = verification.gateway_response or "expired without payment"
            await self.stores.sessions.mark(session.id, SessionStatus.ABANDONED, reason)
            await emit(self.stores.events, CheckoutEventType.SESSION_ABANDONED, reference=session.id, reason=reason)
            log.info("sweep_session_abandoned", age_minutes=round(session.age_minutes(now)))
            return "abandoned"

        return "pending"

    async def reconcile_session(self, session_id: str) -> Dict[str, Any]:
        """
        Manually reconcile one session.
        Called from the admin API.
        """
        session = await self.stores.sessions.get(session_id)
        if not session:
            existing = await self.stores.orders.get_by_reference(session_id)
            if existing:
                return {"temp_session_id": session_id, "outcome": "already_processed", "order_id": existing.id}
            raise SessionNotFound(session_id)

        outcome = await self._reconcile(session)
        self.totals[outcome] += 1
        await emit(
            self.stores.events,
            CheckoutEventType.SESSION_RECONCILED,
            reference=session_id,
            outcome=outcome,
            manual=True,
        )

        result: Dict[str, Any] = {"temp_session_id": session_id, "outcome": outcome}
        if outcome == "promoted":
            order = await self.stores.orders.get_by_reference(session_id)
            if order:
                result["order_id"] = order.id
        return result

    # =========================================================================
    # SWEEP
    # =========================================================================

    async def sweep_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.threshold_minutes)
        sessions = await self.stores.sessions.list_pending(
            created_before=cutoff, limit=self.batch_size, statuses=SWEPT_STATUSES
        )

        outcomes: Counter = Counter()
        for session in sessions:
            outcome = await self._reconcile(session, now)
            outcomes[outcome] += 1
            if outcome != "pending":
                await emit(
                    self.stores.events,
                    CheckoutEventType.SESSION_RECONCILED,
                    reference=session.id,
                    outcome=outcome,
                    manual=False,
                )

        self.totals.update(outcomes)
        self.cycles += 1
        self.last_run_at = now

        if sessions:
            logger.info("sweep_cycle_complete", examined=len(sessions), **outcomes)
        return dict(outcomes)

    async def run_forever(self):
        """
        Background loop. Started from the server lifespan and stopped by
        cancelling its task.
        """
        logger.info(
            "sweep_loop_started",
            interval=self.interval_seconds,
            threshold=self.threshold_minutes,
            ttl=self.ttl_minutes,
        )

        while True:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("sweep_loop_error", error=str(e), error_type=type(e).__name__)

            # Sleep until next check
            await asyncio.sleep(self.interval_seconds)

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    def get_sweep_stats(self) -> Dict[str, Any]:
        """Sweep statistics for monitoring"""
        return {
            "interval_seconds": self.interval_seconds,
            "threshold_minutes": self.threshold_minutes,
            "ttl_minutes": self.ttl_minutes,
            "cycles": self.cycles,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "outcomes": dict(self.totals),
        }
