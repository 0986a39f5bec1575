# storage/repositories.py
# ============================================================================
# STREETWEAR STOREFRONT — PERSISTENCE INTERFACES
# ============================================================================
# Abstract stores used by the checkout pipeline, plus in-memory
# implementations (local development and tests). The asyncpg-backed
# implementations live in storage/postgres.py.
#
# The one operation with real transactional requirements is
# IOrderRepository.create_with_items: it must consume the checkout session,
# decrement stock, and insert the order and its items as a single unit.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from pipeline.errors import InsufficientStock, SessionNotFound
from schemas.checkout_models import (
    CartLineRequest,
    CheckoutSession,
    Order,
    OrderItem,
    ProductVariant,
    SessionStatus,
    utcnow,
)


# =============================================================================
# INTERFACES
# =============================================================================

class ICatalogStore(ABC):
    """Read access to product variants (prices + stock)."""

    @abstractmethod
    async def get_variant(self, variant_id: str) -> Optional[ProductVariant]:
        pass


class ICartStore(ABC):
    """Server-side persisted cart."""

    @abstractmethod
    async def get_items(self, user_id: str) -> List[CartLineRequest]:
        pass

    @abstractmethod
    async def clear(self, user_id: str) -> int:
        """Delete every cart line of the user. Returns the number removed."""
        pass


class ICheckoutSessionStore(ABC):

    @abstractmethod
    async def create(self, session: CheckoutSession) -> CheckoutSession:
        pass

    @abstractmethod
    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        pass

    @abstractmethod
    async def mark(self, session_id: str, status: SessionStatus, reason: Optional[str] = None) -> bool:
        """Flag a session for cleanup. Returns False if it no longer exists."""
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def list_pending(
        self,
        created_before: datetime,
        limit: int = 25,
        statuses: Sequence[SessionStatus] = (SessionStatus.PENDING,),
    ) -> List[CheckoutSession]:
        """Oldest sessions in one of `statuses` created before the cutoff."""
        pass


class IOrderRepository(ABC):

    @abstractmethod
    async def create_with_items(
        self,
        order: Order,
        items: List[OrderItem],
        consume_session_id: Optional[str] = None,
    ) -> Order:
        """
        Atomically persist an order with its items.

        When consume_session_id is given the session is locked first and
        deleted in the same unit of work; SessionNotFound is raised if it is
        already gone. Stock of every variant is decremented with a guarded
        update; InsufficientStock aborts the whole unit.
        """
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_tracking_number(self, tracking_number: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Order]:
        pass

    @abstractmethod
    async def update(self, order_id: str, **fields: Any) -> Optional[Order]:
        pass


class IUserDirectory(ABC):
    """Lookup into the hosted auth service's user records."""

    @abstractmethod
    async def get_email(self, user_id: str) -> Optional[str]:
        pass


class IEventLog(ABC):
    """Append-only checkout audit log."""

    @abstractmethod
    async def append(
        self,
        event_type: str,
        payload: Dict[str, Any],
        reference: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        pass

    @abstractmethod
    async def get_for_reference(self, reference: str) -> List[Dict[str, Any]]:
        pass


@dataclass
class Stores:
    """The set of stores a checkout handler needs."""
    catalog: ICatalogStore
    carts: ICartStore
    sessions: ICheckoutSessionStore
    orders: IOrderRepository
    users: IUserDirectory
    events: IEventLog


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryCatalogStore(ICatalogStore):

    def __init__(self, variants: Optional[List[ProductVariant]] = None):
        self._variants: Dict[str, ProductVariant] = {v.id: v for v in variants or []}
        self._lock = asyncio.Lock()

    async def get_variant(self, variant_id: str) -> Optional[ProductVariant]:
        async with self._lock:
            variant = self._variants.get(variant_id)
            return variant.model_copy() if variant else None

    async def put_variant(self, variant: ProductVariant) -> None:
        async with self._lock:
            self._variants[variant.id] = variant


class InMemoryCartStore(ICartStore):

    def __init__(self):
        self._carts: Dict[str, List[CartLineRequest]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def add(self, user_id: str, line: CartLineRequest) -> None:
        async with self._lock:
            self._carts[user_id].append(line)

    async def get_items(self, user_id: str) -> List[CartLineRequest]:
        async with self._lock:
            return list(self._carts.get(user_id, []))

    async def clear(self, user_id: str) -> int:
        async with self._lock:
            removed = len(self._carts.get(user_id, []))
            self._carts.pop(user_id, None)
            return removed


class InMemoryCheckoutSessionStore(ICheckoutSessionStore):

    def __init__(self):
        self._sessions: Dict[str, CheckoutSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: CheckoutSession) -> CheckoutSession:
        async with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Duplicate checkout session id: {session.id}")
            self._sessions[session.id] = session
            return session

    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    async def mark(self, session_id: str, status: SessionStatus, reason: Optional[str] = None) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if not session:
                return False
            self._sessions[session_id] = session.model_copy(
                update={"status": status, "failure_reason": reason}
            )
            return True

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def list_pending(
        self,
        created_before: datetime,
        limit: int = 25,
        statuses: Sequence[SessionStatus] = (SessionStatus.PENDING,),
    ) -> List[CheckoutSession]:
        async with self._lock:
            pending = [
                s for s in self._sessions.values()
                if s.status in statuses and s.created_at < created_before
            ]
            pending.sort(key=lambda s: s.created_at)
            return [s.model_copy(deep=True) for s in pending[:limit]]

    def __len__(self) -> int:
        return len(self._sessions)


class InMemoryOrderRepository(IOrderRepository):
    """
    Order repository sharing state with the in-memory session and catalog
    stores, so that create_with_items is atomic across all three.
    """

    def __init__(self, sessions: InMemoryCheckoutSessionStore, catalog: InMemoryCatalogStore):
        self._sessions = sessions
        self._catalog = catalog
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()
        self.fail_next_insert: Optional[Exception] = None

    async def create_with_items(
        self,
        order: Order,
        items: List[OrderItem],
        consume_session_id: Optional[str] = None,
    ) -> Order:
        # Lock order: orders -> sessions -> catalog
        async with self._lock, self._sessions._lock, self._catalog._lock:
            if consume_session_id and consume_session_id not in self._sessions._sessions:
                raise SessionNotFound(consume_session_id)

            # Check every line before touching anything so a shortfall leaves no trace
            requested: Dict[str, int] = defaultdict(int)
            for item in items:
                requested[item.variant_id] += item.quantity
            for variant_id, quantity in sorted(requested.items()):
                variant = self._catalog._variants.get(variant_id)
                if variant is None or variant.stock < quantity:
                    raise InsufficientStock(
                        variant.display_name if variant else variant_id,
                        variant.stock if variant else None,
                        quantity,
                        variant_id=variant_id,
                    )

            if self.fail_next_insert is not None:
                exc, self.fail_next_insert = self.fail_next_insert, None
                raise exc

            for variant_id, quantity in requested.items():
                variant = self._catalog._variants[variant_id]
                self._catalog._variants[variant_id] = variant.model_copy(
                    update={"stock": variant.stock - quantity}
                )

            stored = order.model_copy(update={"items": list(items)}, deep=True)
            self._orders[stored.id] = stored

            if consume_session_id:
                del self._sessions._sessions[consume_session_id]

            return stored.model_copy(deep=True)

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def get_by_reference(self, reference: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.payment_reference == reference:
                    return order.model_copy(deep=True)
            return None

    async def get_by_tracking_number(self, tracking_number: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.tracking_number == tracking_number:
                    return order.model_copy(deep=True)
            return None

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Order]:
        async with self._lock:
            owned = [o for o in self._orders.values() if o.user_id == user_id]
            owned.sort(key=lambda o: o.created_at, reverse=True)
            return [o.model_copy(deep=True) for o in owned[:limit]]

    async def update(self, order_id: str, **fields: Any) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if not order:
                return None
            fields["updated_at"] = utcnow()
            self._orders[order_id] = order.model_copy(update=fields)
            return self._orders[order_id].model_copy(deep=True)

    def all(self) -> List[Order]:
        return list(self._orders.values())


class InMemoryUserDirectory(IUserDirectory):

    def __init__(self, emails: Optional[Dict[str, str]] = None):
        self._emails = dict(emails or {})

    async def get_email(self, user_id: str) -> Optional[str]:
        return self._emails.get(user_id)


class InMemoryEventLog(IEventLog):

    def __init__(self):
        self._events: List[Dict[str, Any]] = []
        self._by_reference: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(
        self,
        event_type: str,
        payload: Dict[str, Any],
        reference: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        entry = {
            "id": str(uuid4()),
            "event_type": event_type,
            "reference": reference,
            "payload": payload,
            "severity": severity,
            "created_at": utcnow(),
        }
        async with self._lock:
            self._events.append(entry)
            if reference:
                self._by_reference[reference].append(entry)
        return entry["id"]

    async def get_for_reference(self, reference: str) -> List[Dict[str, Any]]:
        async with self._lock:
            return list(self._by_reference.get(reference, []))

    def types(self) -> List[str]:
        return [e["event_type"] for e in self._events]


def in_memory_stores(
    variants: Optional[List[ProductVariant]] = None,
    emails: Optional[Dict[str, str]] = None,
) -> Stores:
    catalog = InMemoryCatalogStore(variants)
    sessions = InMemoryCheckoutSessionStore()
    return Stores(
        catalog=catalog,
        carts=InMemoryCartStore(),
        sessions=sessions,
        orders=InMemoryOrderRepository(sessions, catalog),
        users=InMemoryUserDirectory(emails),
        events=InMemoryEventLog(),
    )
