"""
Async Postgres: orders (current document per order) + order_tracking (append-only history).
Every write runs in a single transaction: conditional update of the order row first,
then insert the tracking entries the row did not have yet.
"""
import json
from contextlib import asynccontextmanager
from typing import Iterable

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from hmarket.config import settings
from hmarket.errors import (
    AlreadyAssignedError,
    ConcurrentModificationError,
    DuplicateOrderNumberError,
    NotFoundError,
    StorageError,
)
from hmarket.models import DeliveryStatus, Order, OrderStatus, utcnow

_pool: asyncpg.Pool | None = None

_SELECT_ORDER = """
    SELECT o.document,
           COALESCE(
               (SELECT json_agg(t.entry ORDER BY t.seq) FROM order_tracking t WHERE t.order_id = o.id),
               '[]'::json
           ) AS tracking
    FROM orders o
"""


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                order_number VARCHAR(32) NOT NULL UNIQUE,
                customer_id VARCHAR(255) NOT NULL,
                order_status VARCHAR(32) NOT NULL,
                delivery_status VARCHAR(32) NOT NULL,
                assigned_driver_id VARCHAR(255),
                version INT NOT NULL DEFAULT 0,
                document JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        for column in ("customer_id", "order_status", "delivery_status", "assigned_driver_id"):
            await conn.execute(f"CREATE INDEX IF NOT EXISTS idx_orders_{column} ON orders({column});")
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_tracking (
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id),
                seq INT NOT NULL,
                entry JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                PRIMARY KEY (order_id, seq)
            );
        """)


def _document(order: Order) -> str:
    doc = order.model_dump(mode="json", exclude={"delivery": {"tracking_history"}})
    return json.dumps(doc)


def _load(row) -> Order:
    doc = json.loads(row["document"])
    doc["delivery"]["tracking_history"] = json.loads(row["tracking"])
    return Order.model_validate(doc)


@asynccontextmanager
async def _storage_errors():
    """Surface driver/connection failures as StorageError. Business errors pass through."""
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        raise StorageError(str(e)) from e


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def create(self, order: Order) -> Order:
        async with _storage_errors():
            async with self._pool.acquire() as conn:
                try:
                    async with conn.transaction():
                        await conn.execute(
                            """
                            INSERT INTO orders (id, order_number, customer_id, order_status, delivery_status,
                                                assigned_driver_id, version, document, created_at, updated_at)
                            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10);
                            """,
                            order.id,
                            order.order_number,
                            order.customer_id,
                            order.order_status.value,
                            order.delivery.status.value,
                            order.delivery.assigned_driver_id,
                            order.version,
                            _document(order),
                            order.created_at,
                            order.updated_at,
                        )
                        await self._append_tracking(conn, order)
                except UniqueViolationError:
                    raise DuplicateOrderNumberError(order.order_number)
        return order

    async def get_by_id(self, order_id: str) -> Order:
        return await self._fetch_one("WHERE o.id = $1", order_id)

    async def get_by_order_number(self, order_number: str) -> Order:
        return await self._fetch_one("WHERE o.order_number = $1", order_number)

    async def list_by_customer(self, customer_id: str) -> list[Order]:
        return await self._fetch_many("WHERE o.customer_id = $1 ORDER BY o.created_at DESC", customer_id)

    async def list_by_driver(self, driver_id: str) -> list[Order]:
        return await self._fetch_many("WHERE o.assigned_driver_id = $1 ORDER BY o.created_at DESC", driver_id)

    async def list_unassigned(self, order_statuses: Iterable[OrderStatus]) -> list[Order]:
        return await self._fetch_many(
            "WHERE o.delivery_status = $1 AND o.order_status = ANY($2::varchar[]) ORDER BY o.created_at ASC",
            DeliveryStatus.PENDING.value,
            [s.value for s in order_statuses],
        )

    async def list_all(
        self, order_status: OrderStatus | None = None, delivery_status: DeliveryStatus | None = None
    ) -> list[Order]:
        clauses: list[str] = []
        args: list[str] = []
        for column, status in (("order_status", order_status), ("delivery_status", delivery_status)):
            if status is not None:
                args.append(status.value)
                clauses.append(f"o.{column} = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        return await self._fetch_many(f"{where}ORDER BY o.created_at DESC", *args)

    async def save(self, order: Order) -> Order:
        return await self._conditional_write(order, claim=False)

    async def claim(self, order: Order) -> Order:
        return await self._conditional_write(order, claim=True)

    async def _conditional_write(self, order: Order, claim: bool) -> Order:
        """
        UPDATE ... WHERE version = <read version> [AND delivery_status = 'pending'].
        Zero rows updated means someone else wrote first; re-read the row to say why.
        """
        new = order.model_copy(update={"version": order.version + 1, "updated_at": utcnow()})
        condition = "id = $1 AND version = $2"
        if claim:
            condition += " AND delivery_status = 'pending'"
        async with _storage_errors():
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        UPDATE orders
                        SET order_status = $3, delivery_status = $4, assigned_driver_id = $5,
                            version = $6, document = $7::jsonb, updated_at = $8
                        WHERE {condition}
                        RETURNING id;
                        """,
                        order.id,
                        order.version,
                        new.order_status.value,
                        new.delivery.status.value,
                        new.delivery.assigned_driver_id,
                        new.version,
                        _document(new),
                        new.updated_at,
                    )
                    if row is None:
                        current = await conn.fetchrow(
                            "SELECT delivery_status FROM orders WHERE id = $1;", order.id
                        )
                        if current is None:
                            raise NotFoundError(order.id)
                        if claim and current["delivery_status"] != DeliveryStatus.PENDING.value:
                            raise AlreadyAssignedError(order.id)
                        raise ConcurrentModificationError(order.id)
                    await self._append_tracking(conn, new)
        return new

    async def _append_tracking(self, conn: asyncpg.Connection, order: Order) -> None:
        stored = await conn.fetchval("SELECT COUNT(*) FROM order_tracking WHERE order_id = $1;", order.id)
        history = order.delivery.tracking_history
        if len(history) < stored:
            raise StorageError(f"tracking history of order {order.id} can only be appended to")
        if len(history) == stored:
            return
        await conn.executemany(
            "INSERT INTO order_tracking (order_id, seq, entry) VALUES ($1, $2, $3::jsonb);",
            [
                (order.id, seq, entry.model_dump_json())
                for seq, entry in enumerate(history[stored:], start=stored)
            ],
        )

    async def _fetch_one(self, where: str, *args) -> Order:
        async with _storage_errors():
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(f"{_SELECT_ORDER} {where};", *args)
        if row is None:
            raise NotFoundError(str(args[0]))
        return _load(row)

    async def _fetch_many(self, where: str, *args) -> list[Order]:
        async with _storage_errors():
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(f"{_SELECT_ORDER} {where};", *args)
        return [_load(r) for r in rows]
