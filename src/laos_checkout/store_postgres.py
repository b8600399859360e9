"""PostgreSQL checkout store backed by an asyncpg pool."""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import asyncpg
from asyncpg import Pool

from .exceptions import OrderNotFoundError
from .models import (
    CartLine,
    Order,
    OrderLine,
    OrderStatus,
    PaymentLogEntry,
    PaymentStatus,
    Product,
    new_id,
)
from .store import CheckoutStore, StoreTransaction, _check_fields

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS products (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    price NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
    image TEXT NOT NULL DEFAULT '',
    in_stock BOOLEAN NOT NULL DEFAULT TRUE,
    stock_quantity INTEGER NOT NULL DEFAULT 0,
    gateway_price_id TEXT
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT
);

CREATE TABLE IF NOT EXISTS cart_items (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    product_id TEXT NOT NULL REFERENCES products(id),
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (user_id, product_id)
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    order_number TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'PENDING',
    payment_status TEXT NOT NULL DEFAULT 'PENDING',
    payment_method TEXT,
    subtotal NUMERIC(12, 2) NOT NULL,
    tax NUMERIC(12, 2) NOT NULL,
    shipping NUMERIC(12, 2) NOT NULL,
    total NUMERIC(12, 2) NOT NULL,
    gateway_session_id TEXT UNIQUE,
    gateway_payment_intent_id TEXT,
    shipping_name TEXT,
    shipping_address TEXT,
    shipping_city TEXT,
    shipping_state TEXT,
    shipping_zip_code TEXT,
    shipping_phone TEXT,
    paid_at TIMESTAMPTZ,
    canceled_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_orders_pending_created
    ON orders (created_at) WHERE status = 'PENDING';

CREATE TABLE IF NOT EXISTS order_items (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
    product_id TEXT NOT NULL REFERENCES products(id),
    quantity INTEGER NOT NULL,
    price NUMERIC(12, 2) NOT NULL,
    total NUMERIC(12, 2) NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_logs (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
    event TEXT NOT NULL,
    status TEXT NOT NULL,
    amount NUMERIC(12, 2),
    currency TEXT,
    gateway_event_id TEXT,
    raw_data JSONB NOT NULL DEFAULT '{}',
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_payment_logs_order ON payment_logs (order_id);

CREATE TABLE IF NOT EXISTS processed_webhook_events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_ORDER_COLUMNS = """
    id, user_id, order_number, status, payment_status, payment_method,
    subtotal, tax, shipping, total, gateway_session_id,
    gateway_payment_intent_id, shipping_name, shipping_address,
    shipping_city, shipping_state, shipping_zip_code, shipping_phone,
    paid_at, canceled_at, created_at, updated_at
"""


def _row_to_product(row: asyncpg.Record) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        price=row["price"],
        stock_quantity=row["stock_quantity"],
        in_stock=row["in_stock"],
        description=row["description"],
        image=row["image"],
        gateway_price_id=row["gateway_price_id"],
    )


def _row_to_order(row: asyncpg.Record, items: List[OrderLine]) -> Order:
    data = dict(row)
    data["status"] = OrderStatus(data["status"])
    data["payment_status"] = PaymentStatus(data["payment_status"])
    return Order(items=items, **data)


class _PostgresTransaction(StoreTransaction):
    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def list_cart_lines(self, user_id: str) -> List[CartLine]:
        rows = await self._conn.fetch(
            """
            SELECT c.id AS cart_id, c.user_id, c.quantity, p.*
            FROM cart_items c
            JOIN products p ON p.id = c.product_id
            WHERE c.user_id = $1
            ORDER BY c.created_at, c.id
            """,
            user_id,
        )
        return [
            CartLine(
                id=row["cart_id"],
                user_id=row["user_id"],
                product_id=row["id"],
                quantity=row["quantity"],
                product=_row_to_product(row),
            )
            for row in rows
        ]

    async def upsert_cart_line(self, user_id: str, product_id: str, quantity: int) -> CartLine:
        row = await self._conn.fetchrow(
            """
            INSERT INTO cart_items (id, user_id, product_id, quantity)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id, product_id) DO UPDATE SET quantity = EXCLUDED.quantity
            RETURNING id
            """,
            new_id("cart"), user_id, product_id, quantity,
        )
        products = await self.get_products([product_id])
        return CartLine(
            id=row["id"],
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            product=products[product_id],
        )

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        rows = await self._conn.fetch(
            "SELECT * FROM products WHERE id = ANY($1::text[])",
            list(product_ids),
        )
        return {row["id"]: _row_to_product(row) for row in rows}

    async def get_user_email(self, user_id: str) -> Optional[str]:
        return await self._conn.fetchval("SELECT email FROM users WHERE id = $1", user_id)

    async def decrement_stock(self, product_id: str, quantity: int) -> None:
        await self._conn.execute(
            "UPDATE products SET stock_quantity = stock_quantity - $2 WHERE id = $1",
            product_id, quantity,
        )

    async def clear_cart(self, user_id: str) -> int:
        status = await self._conn.execute("DELETE FROM cart_items WHERE user_id = $1", user_id)
        # "DELETE <n>"
        return int(status.split()[-1])

    async def create_order(self, order: Order) -> Order:
        await self._conn.execute(
            """
            INSERT INTO orders (
                id, user_id, order_number, status, payment_status, payment_method,
                subtotal, tax, shipping, total, gateway_session_id,
                shipping_name, shipping_address, shipping_city, shipping_state,
                shipping_zip_code, shipping_phone, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                      $12, $13, $14, $15, $16, $17, $18, $19)
            """,
            order.id, order.user_id, order.order_number,
            order.status.value, order.payment_status.value, order.payment_method,
            order.subtotal, order.tax, order.shipping, order.total,
            order.gateway_session_id,
            order.shipping_name, order.shipping_address, order.shipping_city,
            order.shipping_state, order.shipping_zip_code, order.shipping_phone,
            order.created_at, order.updated_at,
        )
        for line in order.items:
            line.order_id = order.id
        await self._conn.executemany(
            """
            INSERT INTO order_items (id, order_id, product_id, quantity, price, total)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            [
                (line.id, order.id, line.product_id, line.quantity, line.price, line.total)
                for line in order.items
            ],
        )
        return order

    async def _order_items(self, order_id: str) -> List[OrderLine]:
        rows = await self._conn.fetch(
            "SELECT id, order_id, product_id, quantity, price, total "
            "FROM order_items WHERE order_id = $1 ORDER BY id",
            order_id,
        )
        return [OrderLine(**dict(row)) for row in rows]

    async def _fetch_order(self, where: str, value: str) -> Optional[Order]:
        row = await self._conn.fetchrow(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE {where} = $1",
            value,
        )
        if row is None:
            return None
        return _row_to_order(row, await self._order_items(row["id"]))

    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self._fetch_order("id", order_id)

    async def get_order_by_session(self, session_id: str) -> Optional[Order]:
        return await self._fetch_order("gateway_session_id", session_id)

    async def update_order(self, order_id: str, **fields: Any) -> Order:
        _check_fields(fields)
        assignments = []
        values: List[Any] = []
        for index, (name, value) in enumerate(fields.items(), start=2):
            assignments.append(f"{name} = ${index}")
            values.append(value.value if isinstance(value, (OrderStatus, PaymentStatus)) else value)
        assignments.append("updated_at = NOW()")

        row = await self._conn.fetchrow(
            f"UPDATE orders SET {', '.join(assignments)} WHERE id = $1 "
            f"RETURNING {_ORDER_COLUMNS}",
            order_id, *values,
        )
        if row is None:
            raise OrderNotFoundError(order_id=order_id)
        return _row_to_order(row, await self._order_items(order_id))

    async def list_abandoned_orders(self, cutoff: datetime) -> List[Order]:
        rows = await self._conn.fetch(
            f"""
            SELECT {_ORDER_COLUMNS} FROM orders
            WHERE status = 'PENDING' AND payment_status = 'PENDING' AND created_at < $1
            ORDER BY created_at
            """,
            cutoff,
        )
        return [_row_to_order(row, await self._order_items(row["id"])) for row in rows]

    async def add_payment_log(self, entry: PaymentLogEntry) -> PaymentLogEntry:
        await self._conn.execute(
            """
            INSERT INTO payment_logs (
                id, order_id, event, status, amount, currency,
                gateway_event_id, raw_data, error_message, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10)
            """,
            entry.id, entry.order_id, entry.event, entry.status, entry.amount,
            entry.currency, entry.gateway_event_id,
            json.dumps(entry.raw_data, default=str),
            entry.error_message, entry.created_at,
        )
        return entry

    async def list_payment_logs(self, order_id: str) -> List[PaymentLogEntry]:
        rows = await self._conn.fetch(
            "SELECT * FROM payment_logs WHERE order_id = $1 ORDER BY created_at",
            order_id,
        )
        entries = []
        for row in rows:
            data = dict(row)
            raw = data.pop("raw_data")
            entries.append(PaymentLogEntry(
                raw_data=json.loads(raw) if isinstance(raw, str) else raw,
                **data,
            ))
        return entries

    async def has_processed_event(self, event_id: str) -> bool:
        found = await self._conn.fetchval(
            "SELECT 1 FROM processed_webhook_events WHERE event_id = $1",
            event_id,
        )
        return found is not None

    async def mark_event_processed(self, event_id: str, event_type: str) -> None:
        # Primary key conflict aborts the transaction if another worker won the race
        await self._conn.execute(
            "INSERT INTO processed_webhook_events (event_id, event_type) VALUES ($1, $2)",
            event_id, event_type,
        )


class PostgresCheckoutStore(CheckoutStore):
    """PostgreSQL store. Every transaction runs at READ COMMITTED."""

    def __init__(
        self,
        database_url: str,
        max_wait: float = 5.0,
        timeout: float = 10.0,
        min_size: int = 2,
        max_size: int = 10,
    ):
        self._database_url = database_url
        self._max_wait = max_wait
        self._timeout = timeout
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[Pool] = None

    async def get_pool(self) -> Pool:
        """Get or create the connection pool."""
        if self._pool is None:
            # TLS and other connection options come from the DSN (e.g. ?sslmode=require)
            self._pool = await asyncpg.create_pool(
                self._database_url,
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=60,
            )
        return self._pool

    async def init_schema(self) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Checkout schema initialized")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        pool = await self.get_pool()
        async with pool.acquire(timeout=self._max_wait) as conn:
            async with conn.transaction(isolation="read_committed"):
                await conn.execute(
                    f"SET LOCAL statement_timeout = {int(self._timeout * 1000)}"
                )
                yield _PostgresTransaction(conn)

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
