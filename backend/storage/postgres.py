# storage/postgres.py
# ============================================================================
# STREETWEAR STOREFRONT — POSTGRES STORES
# ============================================================================
# asyncpg implementations of the checkout stores, on top of the shared
# connection pool in database.py. Ids are uuid columns; asyncpg accepts
# them as strings and a malformed id raises DataError, which lookups treat
# as "not found".
# ============================================================================

import json
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg
import structlog

from database import Database, get_reference_events, log_event
from pipeline.errors import InsufficientStock, SessionNotFound
from schemas.checkout_models import (
    CartLineRequest,
    CheckoutSession,
    Order,
    OrderItem,
    ProductVariant,
    SessionStatus,
    ValidatedCartLine,
)
from storage.repositories import (
    ICartStore,
    ICatalogStore,
    ICheckoutSessionStore,
    IEventLog,
    IOrderRepository,
    IUserDirectory,
    Stores,
)

logger = structlog.get_logger().bind(component="postgres_stores")


def _as_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


# =============================================================================
# CATALOG + CART
# =============================================================================

class PostgresCatalogStore(ICatalogStore):

    async def get_variant(self, variant_id: str) -> Optional[ProductVariant]:
        try:
            row = await Database.fetch_one(
                """
                SELECT v.id, v.product_id, v.price, v.stock, v.name, v.sku,
                       p.name AS product_name
                FROM product_variants v
                LEFT JOIN products p ON p.id = v.product_id
                WHERE v.id = $1
                """,
                variant_id
            )
        except asyncpg.DataError:
            return None

        if not row:
            return None

        return ProductVariant(
            id=str(row["id"]),
            product_id=str(row["product_id"]),
            price=row["price"],
            stock=row["stock"],
            name=row["name"],
            sku=row["sku"],
            product_name=row["product_name"],
        )


class PostgresCartStore(ICartStore):

    async def get_items(self, user_id: str) -> List[CartLineRequest]:
        rows = await Database.fetch_all(
            "SELECT variant_id, quantity FROM cart_items WHERE user_id = $1 ORDER BY created_at",
            user_id
        )
        return [
            CartLineRequest(variant_id=str(row["variant_id"]), quantity=row["quantity"])
            for row in rows
        ]

    async def clear(self, user_id: str) -> int:
        result = await Database.execute("DELETE FROM cart_items WHERE user_id = $1", user_id)
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1]) if result else 0


# =============================================================================
# CHECKOUT SESSIONS
# =============================================================================

def _row_to_session(row: asyncpg.Record) -> CheckoutSession:
    return CheckoutSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        cart_items=[ValidatedCartLine(**line) for line in _as_json(row["cart_items"])],
        shipping_address_id=str(row["shipping_address_id"]),
        billing_address_id=str(row["billing_address_id"]),
        payment_method=row["payment_method"],
        total_amount=row["total_amount"],
        status=row["status"],
        failure_reason=row["failure_reason"],
        created_at=row["created_at"],
    )


class PostgresCheckoutSessionStore(ICheckoutSessionStore):

    async def create(self, session: CheckoutSession) -> CheckoutSession:
        await Database.execute(
            """
            INSERT INTO temp_checkout_sessions
            (id, user_id, cart_items, shipping_address_id, billing_address_id,
             payment_method, total_amount, status, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            session.id,
            session.user_id,
            json.dumps([line.model_dump(mode="json") for line in session.cart_items]),
            session.shipping_address_id,
            session.billing_address_id,
            session.payment_method.value,
            session.total_amount,
            session.status.value,
            session.created_at,
        )
        return session

    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        try:
            row = await Database.fetch_one(
                "SELECT * FROM temp_checkout_sessions WHERE id = $1",
                session_id
            )
        except asyncpg.DataError:
            return None
        return _row_to_session(row) if row else None

    async def mark(self, session_id: str, status: SessionStatus, reason: Optional[str] = None) -> bool:
        try:
            result = await Database.execute(
                """
                UPDATE temp_checkout_sessions
                SET status = $1, failure_reason = $2
                WHERE id = $3
                """,
                status.value,
                reason,
                session_id
            )
        except asyncpg.DataError:
            return False
        return result == "UPDATE 1"

    async def delete(self, session_id: str) -> bool:
        try:
            result = await Database.execute(
                "DELETE FROM temp_checkout_sessions WHERE id = $1",
                session_id
            )
        except asyncpg.DataError:
            return False
        return result == "DELETE 1"

    async def list_pending(
        self,
        created_before: datetime,
        limit: int = 25,
        statuses: Sequence[SessionStatus] = (SessionStatus.PENDING,),
    ) -> List[CheckoutSession]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM temp_checkout_sessions
            WHERE status = ANY($3::text[]) AND created_at < $1
            ORDER BY created_at ASC
            LIMIT $2
            """,
            created_before,
            limit,
            [s.value for s in statuses]
        )
        return [_row_to_session(row) for row in rows]


# =============================================================================
# ORDERS
# =============================================================================

_ORDER_COLUMNS = {
    "status",
    "delivery_status",
    "tracking_number",
    "rider_id",
    "estimated_delivery_time",
    "delivery_notes",
}


def _row_to_order(row: asyncpg.Record, items: List[OrderItem]) -> Order:
    return Order(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        total=row["total"],
        status=row["status"],
        payment_method=row["payment_method"],
        shipping_address_id=str(row["shipping_address_id"]),
        billing_address_id=str(row["billing_address_id"]),
        delivery_status=row["delivery_status"],
        tracking_number=row["tracking_number"],
        rider_id=_str_or_none(row["rider_id"]),
        estimated_delivery_time=row["estimated_delivery_time"],
        delivery_notes=row["delivery_notes"],
        payment_reference=row["paystack_reference"],
        payment_details=_as_json(row["payment_details"]) if row["payment_details"] else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        items=items,
    )


def _row_to_item(row: asyncpg.Record) -> OrderItem:
    return OrderItem(
        id=str(row["id"]),
        order_id=str(row["order_id"]),
        product_id=str(row["product_id"]),
        variant_id=str(row["variant_id"]),
        quantity=row["quantity"],
        price=row["price"],
    )


class PostgresOrderRepository(IOrderRepository):

    async def create_with_items(
        self,
        order: Order,
        items: List[OrderItem],
        consume_session_id: Optional[str] = None,
    ) -> Order:
        async with Database.transaction() as conn:
            if consume_session_id:
                # Row lock: a concurrent duplicate blocks here, then finds nothing
                locked = await conn.fetchrow(
                    "SELECT id FROM temp_checkout_sessions WHERE id = $1 FOR UPDATE",
                    consume_session_id
                )
                if not locked:
                    raise SessionNotFound(consume_session_id)

            requested: Dict[str, int] = defaultdict(int)
            for item in items:
                requested[item.variant_id] += item.quantity

            # Sorted to keep the row-lock order stable across concurrent checkouts
            for variant_id, quantity in sorted(requested.items()):
                updated = await conn.fetchrow(
                    """
                    UPDATE product_variants
                    SET stock = stock - $1, updated_at = NOW()
                    WHERE id = $2 AND stock >= $1
                    RETURNING stock
                    """,
                    quantity,
                    variant_id
                )
                if updated is None:
                    current = await conn.fetchrow(
                        "SELECT stock, sku FROM product_variants WHERE id = $1",
                        variant_id
                    )
                    raise InsufficientStock(
                        current["sku"] if current else variant_id,
                        current["stock"] if current else None,
                        quantity,
                        variant_id=variant_id,
                    )

            row = await conn.fetchrow(
                """
                INSERT INTO orders
                (id, user_id, total, status, payment_method, shipping_address_id,
                 billing_address_id, paystack_reference, payment_details,
                 created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                RETURNING *
                """,
                order.id,
                order.user_id,
                order.total,
                order.status.value,
                order.payment_method.value,
                order.shipping_address_id,
                order.billing_address_id,
                order.payment_reference,
                json.dumps(order.payment_details, default=str) if order.payment_details is not None else None,
                order.created_at,
                order.updated_at,
            )

            await conn.executemany(
                """
                INSERT INTO order_items (id, order_id, product_id, variant_id, quantity, price)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                [
                    (item.id, item.order_id, item.product_id, item.variant_id, item.quantity, item.price)
                    for item in items
                ],
            )

            if consume_session_id:
                await conn.execute(
                    "DELETE FROM temp_checkout_sessions WHERE id = $1",
                    consume_session_id
                )

        return _row_to_order(row, list(items))

    async def _load(self, where: str, value: Any) -> Optional[Order]:
        try:
            row = await Database.fetch_one(f"SELECT * FROM orders WHERE {where} = $1", value)
        except asyncpg.DataError:
            return None
        if not row:
            return None
        item_rows = await Database.fetch_all(
            "SELECT * FROM order_items WHERE order_id = $1",
            row["id"]
        )
        return _row_to_order(row, [_row_to_item(r) for r in item_rows])

    async def get(self, order_id: str) -> Optional[Order]:
        return await self._load("id", order_id)

    async def get_by_reference(self, reference: str) -> Optional[Order]:
        return await self._load("paystack_reference", reference)

    async def get_by_tracking_number(self, tracking_number: str) -> Optional[Order]:
        return await self._load("tracking_number", tracking_number)

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Order]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM orders
            WHERE user_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            user_id,
            limit
        )
        if not rows:
            return []

        item_rows = await Database.fetch_all(
            "SELECT * FROM order_items WHERE order_id = ANY($1::uuid[])",
            [row["id"] for row in rows]
        )
        by_order: Dict[str, List[OrderItem]] = defaultdict(list)
        for item_row in item_rows:
            item = _row_to_item(item_row)
            by_order[item.order_id].append(item)

        return [_row_to_order(row, by_order.get(str(row["id"]), [])) for row in rows]

    async def update(self, order_id: str, **fields: Any) -> Optional[Order]:
        set_clauses = ["updated_at = NOW()"]
        params: List[Any] = []
        param_num = 1

        for key, value in fields.items():
            if key not in _ORDER_COLUMNS:
                raise ValueError(f"Order field cannot be updated: {key}")
            set_clauses.append(f"{key} = ${param_num}")
            params.append(value.value if hasattr(value, "value") else value)
            param_num += 1

        params.append(order_id)
        query = f"""
            UPDATE orders
            SET {', '.join(set_clauses)}
            WHERE id = ${param_num}
        """

        try:
            result = await Database.execute(query, *params)
        except asyncpg.DataError:
            return None
        if result != "UPDATE 1":
            return None
        return await self.get(order_id)


# =============================================================================
# USERS + EVENT LOG
# =============================================================================

class PostgresUserDirectory(IUserDirectory):
    """Reads emails from the hosted auth schema (auth.users)."""

    async def get_email(self, user_id: str) -> Optional[str]:
        try:
            row = await Database.fetch_one("SELECT email FROM auth.users WHERE id = $1", user_id)
        except (asyncpg.DataError, asyncpg.UndefinedTableError):
            return None
        return row["email"] if row else None


class PostgresEventLog(IEventLog):

    async def append(
        self,
        event_type: str,
        payload: Dict[str, Any],
        reference: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        return await log_event(reference, event_type, payload, severity=severity)

    async def get_for_reference(self, reference: str) -> List[Dict[str, Any]]:
        return await get_reference_events(reference)


def postgres_stores() -> Stores:
    return Stores(
        catalog=PostgresCatalogStore(),
        carts=PostgresCartStore(),
        sessions=PostgresCheckoutSessionStore(),
        orders=PostgresOrderRepository(),
        users=PostgresUserDirectory(),
        events=PostgresEventLog(),
    )
