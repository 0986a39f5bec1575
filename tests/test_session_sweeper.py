from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import BILLING_ID, SHIPPING_ID, TEE, USER_ID, sign, webhook_body
from pipeline.errors import SessionNotFound
from schemas.checkout_models import (
    CheckoutSession,
    OrderStatus,
    PaymentMethod,
    SessionStatus,
    ValidatedCartLine,
    utcnow,
)
from tasks.session_sweeper import SessionSweeper


@pytest.fixture
def sweeper(stores, gateway, materializer):
    return SessionSweeper(
        stores,
        gateway,
        materializer,
        interval_seconds=1,
        threshold_minutes=15,
        ttl_minutes=60,
        batch_size=10,
    )


async def stage(stores, age_minutes: int) -> CheckoutSession:
    return await stores.sessions.create(
        CheckoutSession(
            user_id=USER_ID,
            cart_items=[ValidatedCartLine(product_id=TEE.product_id, variant_id=TEE.id, quantity=2, price=TEE.price)],
            shipping_address_id=SHIPPING_ID,
            billing_address_id=BILLING_ID,
            payment_method=PaymentMethod.CARD,
            total_amount=Decimal("100.00"),
            created_at=utcnow() - timedelta(minutes=age_minutes),
        )
    )


async def test_lost_webhook_is_recovered(sweeper, stores, paystack, receiver):
    session = await stage(stores, age_minutes=20)
    paystack.settle(session.id, 10000)

    outcomes = await sweeper.sweep_once()

    assert outcomes == {"promoted": 1}
    order = await stores.orders.get_by_reference(session.id)
    assert order.status == OrderStatus.COMPLETED
    assert await stores.sessions.get(session.id) is None

    # The late webhook finds nothing left to do
    body = webhook_body("charge.success", session.id, 10000)
    late = await receiver.receive(body, sign(body))
    assert late["status"] == "already_processed"
    assert len(stores.orders.all()) == 1


async def test_young_sessions_are_skipped(sweeper, stores, paystack):
    await stage(stores, age_minutes=5)

    assert await sweeper.sweep_once() == {}
    assert paystack.calls("/transaction/verify") == 0


async def test_unpaid_session_waits_then_is_abandoned(sweeper, stores):
    waiting = await stage(stores, age_minutes=20)
    expired = await stage(stores, age_minutes=90)

    outcomes = await sweeper.sweep_once()

    assert outcomes == {"pending": 1, "abandoned": 1}
    assert (await stores.sessions.get(waiting.id)).status == SessionStatus.PENDING
    assert (await stores.sessions.get(expired.id)).status == SessionStatus.ABANDONED
    assert stores.orders.all() == []


async def test_amount_mismatch_goes_to_review(sweeper, stores, paystack):
    session = await stage(stores, age_minutes=20)
    paystack.settle(session.id, 100)

    assert await sweeper.sweep_once() == {"review": 1}
    assert (await stores.sessions.get(session.id)).status == SessionStatus.REVIEW
    assert stores.orders.all() == []


async def test_provider_outage_leaves_sessions_alone(sweeper, stores, paystack):
    session = await stage(stores, age_minutes=90)
    paystack.verify_status_code = 500

    assert await sweeper.sweep_once() == {"error": 1}
    assert (await stores.sessions.get(session.id)).status == SessionStatus.PENDING


async def test_manual_reconcile(sweeper, stores, paystack):
    session = await stage(stores, age_minutes=1)
    paystack.settle(session.id, 10000)

    result = await sweeper.reconcile_session(session.id)

    assert result["outcome"] == "promoted"
    assert result["order_id"]
    again = await sweeper.reconcile_session(session.id)
    assert again["outcome"] == "already_processed"
    assert "SESSION_RECONCILED" in stores.events.types()


async def test_manual_reconcile_unknown(sweeper):
    with pytest.raises(SessionNotFound):
        await sweeper.reconcile_session("nope")


async def test_stats(sweeper, stores):
    await stage(stores, age_minutes=90)
    await sweeper.sweep_once()

    stats = sweeper.get_sweep_stats()

    assert stats["cycles"] == 1
    assert stats["outcomes"] == {"abandoned": 1}
    assert stats["last_run_at"] is not None


async def test_paid_retry_after_failed_charge_is_recovered(sweeper, stores, paystack):
    retried = await stage(stores, age_minutes=20)
    await stores.sessions.mark(retried.id, SessionStatus.FAILED, "Declined")
    expired = await stage(stores, age_minutes=90)
    await stores.sessions.mark(expired.id, SessionStatus.FAILED, "Declined")
    paystack.settle(retried.id, 10000)

    outcomes = await sweeper.sweep_once()

    assert outcomes == {"promoted": 1, "abandoned": 1}
    assert (await stores.orders.get_by_reference(retried.id)).status == OrderStatus.COMPLETED
    assert (await stores.sessions.get(expired.id)).status == SessionStatus.ABANDONED


async def test_review_sessions_are_left_for_operators(sweeper, stores, paystack):
    session = await stage(stores, age_minutes=90)
    await stores.sessions.mark(session.id, SessionStatus.REVIEW, "out of stock")

    assert await sweeper.sweep_once() == {}
    assert paystack.calls("/transaction/verify") == 0
