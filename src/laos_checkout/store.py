"""
Transactional persistence contract for checkout state.

The checkout path only ever touches persistence through
``CheckoutStore.transaction()``: every read and write happens on the
``StoreTransaction`` it yields, and either all of a transaction's writes
become visible or none do.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from .exceptions import OrderNotFoundError
from .models import (
    CartLine,
    Order,
    OrderStatus,
    PaymentLogEntry,
    PaymentStatus,
    Product,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

# Order attributes update_order() may change
UPDATABLE_ORDER_FIELDS = frozenset({
    "status",
    "payment_status",
    "payment_method",
    "gateway_session_id",
    "gateway_payment_intent_id",
    "shipping_name",
    "shipping_address",
    "shipping_city",
    "shipping_state",
    "shipping_zip_code",
    "shipping_phone",
    "paid_at",
    "canceled_at",
})


class StoreTransaction(ABC):
    """Operations available inside one store transaction."""

    # Catalog and cart

    @abstractmethod
    async def list_cart_lines(self, user_id: str) -> List[CartLine]:
        """Cart lines for a user, oldest first, with product snapshots."""

    @abstractmethod
    async def upsert_cart_line(self, user_id: str, product_id: str, quantity: int) -> CartLine:
        """Insert or replace the (user, product) cart line."""

    @abstractmethod
    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        """Products by id. Unknown ids are absent from the result."""

    @abstractmethod
    async def get_user_email(self, user_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def decrement_stock(self, product_id: str, quantity: int) -> None:
        pass

    @abstractmethod
    async def clear_cart(self, user_id: str) -> int:
        """Delete every cart line of a user. Returns the number removed."""

    # Orders

    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_session(self, session_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def update_order(self, order_id: str, **fields: Any) -> Order:
        """
        Update order fields.

        Raises:
            OrderNotFoundError: If the order does not exist
            ValueError: If a field is not updatable
        """

    async def attach_session(self, order_id: str, session_id: str) -> Order:
        return await self.update_order(order_id, gateway_session_id=session_id)

    @abstractmethod
    async def list_abandoned_orders(self, cutoff: datetime) -> List[Order]:
        """PENDING orders created before ``cutoff`` whose payment never settled."""

    # Audit log

    @abstractmethod
    async def add_payment_log(self, entry: PaymentLogEntry) -> PaymentLogEntry:
        pass

    @abstractmethod
    async def list_payment_logs(self, order_id: str) -> List[PaymentLogEntry]:
        pass

    # Webhook idempotency

    @abstractmethod
    async def has_processed_event(self, event_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_event_processed(self, event_id: str, event_type: str) -> None:
        pass


class CheckoutStore(ABC):
    """Abstract transactional store."""

    @abstractmethod
    def transaction(self) -> "AsyncIterator[StoreTransaction]":
        """Async context manager yielding a read-committed transaction."""

    async def close(self) -> None:
        return None


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_ORDER_FIELDS
    if unknown:
        raise ValueError(f"Cannot update order fields: {sorted(unknown)}")


class _InMemoryState:
    def __init__(self) -> None:
        self.products: Dict[str, Product] = {}
        self.cart: Dict[Tuple[str, str], CartLine] = {}
        self.user_emails: Dict[str, str] = {}
        self.orders: Dict[str, Order] = {}
        self.payment_logs: List[PaymentLogEntry] = []
        self.processed_events: Dict[str, str] = {}


class _InMemoryTransaction(StoreTransaction):
    def __init__(self, state: _InMemoryState):
        self._s = state

    async def list_cart_lines(self, user_id: str) -> List[CartLine]:
        lines = []
        for (owner, product_id), line in self._s.cart.items():
            if owner != user_id:
                continue
            product = self._s.products.get(product_id)
            if product is None:
                continue
            lines.append(replace(line, product=replace(product)))
        return lines

    async def upsert_cart_line(self, user_id: str, product_id: str, quantity: int) -> CartLine:
        product = self._s.products[product_id]
        key = (user_id, product_id)
        existing = self._s.cart.get(key)
        line = CartLine(
            id=existing.id if existing else new_id("cart"),
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            product=replace(product),
        )
        self._s.cart[key] = line
        return line

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        return {
            pid: replace(self._s.products[pid])
            for pid in product_ids
            if pid in self._s.products
        }

    async def get_user_email(self, user_id: str) -> Optional[str]:
        return self._s.user_emails.get(user_id)

    async def decrement_stock(self, product_id: str, quantity: int) -> None:
        product = self._s.products.get(product_id)
        if product is None:
            logger.warning("Stock decrement for unknown product %s", product_id)
            return
        product.stock_quantity -= quantity

    async def clear_cart(self, user_id: str) -> int:
        keys = [key for key in self._s.cart if key[0] == user_id]
        for key in keys:
            del self._s.cart[key]
        return len(keys)

    async def create_order(self, order: Order) -> Order:
        for line in order.items:
            line.order_id = order.id
        self._s.orders[order.id] = copy.deepcopy(order)
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._s.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def get_order_by_session(self, session_id: str) -> Optional[Order]:
        for order in self._s.orders.values():
            if order.gateway_session_id == session_id:
                return copy.deepcopy(order)
        return None

    async def update_order(self, order_id: str, **fields: Any) -> Order:
        _check_fields(fields)
        order = self._s.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id=order_id)
        for name, value in fields.items():
            setattr(order, name, value)
        order.updated_at = utcnow()
        return copy.deepcopy(order)

    async def list_abandoned_orders(self, cutoff: datetime) -> List[Order]:
        return [
            copy.deepcopy(order)
            for order in self._s.orders.values()
            if order.status == OrderStatus.PENDING
            and order.payment_status == PaymentStatus.PENDING
            and order.created_at < cutoff
        ]

    async def add_payment_log(self, entry: PaymentLogEntry) -> PaymentLogEntry:
        self._s.payment_logs.append(copy.deepcopy(entry))
        return entry

    async def list_payment_logs(self, order_id: str) -> List[PaymentLogEntry]:
        return [copy.deepcopy(e) for e in self._s.payment_logs if e.order_id == order_id]

    async def has_processed_event(self, event_id: str) -> bool:
        return event_id in self._s.processed_events

    async def mark_event_processed(self, event_id: str, event_type: str) -> None:
        self._s.processed_events[event_id] = event_type


class InMemoryCheckoutStore(CheckoutStore):
    """
    In-memory store for development and testing.

    Transactions are serialized by a lock and roll back to a snapshot taken
    at the start when the block raises.

    Note: This store is not suitable for production use.
    Use ``PostgresCheckoutStore``.
    """

    def __init__(self, max_wait: float = 5.0):
        self._state = _InMemoryState()
        self._lock = asyncio.Lock()
        self._max_wait = max_wait

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        await asyncio.wait_for(self._lock.acquire(), timeout=self._max_wait)
        try:
            snapshot = copy.deepcopy(self._state)
            try:
                yield _InMemoryTransaction(self._state)
            except BaseException:
                self._state = snapshot
                raise
        finally:
            self._lock.release()

    # Seeding and inspection helpers

    def add_product(self, product: Product) -> Product:
        self._state.products[product.id] = product
        return product

    def add_cart_line(self, user_id: str, product_id: str, quantity: int) -> None:
        key = (user_id, product_id)
        self._state.cart[key] = CartLine(
            id=new_id("cart"),
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            product=self._state.products[product_id],
        )

    def set_user_email(self, user_id: str, email: str) -> None:
        self._state.user_emails[user_id] = email

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._state.products.get(product_id)

    def cart_size(self, user_id: str) -> int:
        return sum(1 for owner, _ in self._state.cart if owner == user_id)

    def orders(self) -> List[Order]:
        return list(self._state.orders.values())

    def payment_logs(self, order_id: Optional[str] = None) -> List[PaymentLogEntry]:
        return [
            e for e in self._state.payment_logs
            if order_id is None or e.order_id == order_id
        ]

    def processed_event_ids(self) -> Set[str]:
        return set(self._state.processed_events)
