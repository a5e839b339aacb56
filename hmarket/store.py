"""
Order persistence contract plus the in-memory backend used for tests and
single-process development. The Postgres backend lives in hmarket.db.

Writes are optimistic: save() only succeeds when the stored version equals the
version the caller read; claim() only succeeds while the stored delivery is
still pending.
"""
import asyncio
from typing import Iterable, Protocol

from hmarket.errors import (
    AlreadyAssignedError,
    ConcurrentModificationError,
    DuplicateOrderNumberError,
    NotFoundError,
    StorageError,
)
from hmarket.models import DeliveryStatus, Order, OrderStatus, utcnow


class OrderStore(Protocol):
    async def create(self, order: Order) -> Order: ...

    async def get_by_id(self, order_id: str) -> Order: ...

    async def get_by_order_number(self, order_number: str) -> Order: ...

    async def list_by_customer(self, customer_id: str) -> list[Order]: ...

    async def list_by_driver(self, driver_id: str) -> list[Order]: ...

    async def list_unassigned(self, order_statuses: Iterable[OrderStatus]) -> list[Order]: ...

    async def list_all(
        self, order_status: OrderStatus | None = None, delivery_status: DeliveryStatus | None = None
    ) -> list[Order]: ...

    async def save(self, order: Order) -> Order: ...

    async def claim(self, order: Order) -> Order: ...


def check_history_extends(stored: Order, new: Order) -> None:
    """Tracking history is append-only: the new history must start with the stored one."""
    old_history = stored.delivery.tracking_history
    new_history = new.delivery.tracking_history
    if new_history[: len(old_history)] != old_history:
        raise StorageError(f"tracking history of order {new.id} can only be appended to")


class InMemoryOrderStore:
    """Dict-backed store. Every read and write copies, so callers never share state."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise StorageError(f"order already exists: {order.id}")
            if any(o.order_number == order.order_number for o in self._orders.values()):
                raise DuplicateOrderNumberError(order.order_number)
            self._orders[order.id] = order.model_copy(deep=True)
        return order.model_copy(deep=True)

    async def get_by_id(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError(order_id)
        return order.model_copy(deep=True)

    async def get_by_order_number(self, order_number: str) -> Order:
        for order in self._orders.values():
            if order.order_number == order_number:
                return order.model_copy(deep=True)
        raise NotFoundError(order_number)

    async def list_by_customer(self, customer_id: str) -> list[Order]:
        return self._select(lambda o: o.customer_id == customer_id, newest_first=True)

    async def list_by_driver(self, driver_id: str) -> list[Order]:
        return self._select(lambda o: o.delivery.assigned_driver_id == driver_id, newest_first=True)

    async def list_unassigned(self, order_statuses: Iterable[OrderStatus]) -> list[Order]:
        statuses = frozenset(order_statuses)
        return self._select(
            lambda o: o.order_status in statuses and o.delivery.status is DeliveryStatus.PENDING,
            newest_first=False,
        )

    async def list_all(
        self, order_status: OrderStatus | None = None, delivery_status: DeliveryStatus | None = None
    ) -> list[Order]:
        """Every order, newest first, optionally narrowed to one order and/or delivery status."""
        return self._select(
            lambda o: (order_status is None or o.order_status is order_status)
            and (delivery_status is None or o.delivery.status is delivery_status),
            newest_first=True,
        )

    async def save(self, order: Order) -> Order:
        async with self._lock:
            stored = self._orders.get(order.id)
            if stored is None:
                raise NotFoundError(order.id)
            if stored.version != order.version:
                raise ConcurrentModificationError(order.id)
            return self._write(stored, order)

    async def claim(self, order: Order) -> Order:
        async with self._lock:
            stored = self._orders.get(order.id)
            if stored is None:
                raise NotFoundError(order.id)
            if stored.delivery.status is not DeliveryStatus.PENDING:
                raise AlreadyAssignedError(order.id)
            if stored.version != order.version:
                raise ConcurrentModificationError(order.id)
            return self._write(stored, order)

    def _write(self, stored: Order, order: Order) -> Order:
        check_history_extends(stored, order)
        new = order.model_copy(deep=True, update={"version": stored.version + 1, "updated_at": utcnow()})
        self._orders[order.id] = new
        return new.model_copy(deep=True)

    def _select(self, predicate, newest_first: bool) -> list[Order]:
        matches = [o.model_copy(deep=True) for o in self._orders.values() if predicate(o)]
        matches.sort(key=lambda o: o.created_at, reverse=newest_first)
        return matches
