"""Tests for the order listings and the driver dashboard figures."""

from decimal import Decimal

import pytest

from _helper import (
    CUSTOMER_ID,
    DRIVER_ID,
    OTHER_CUSTOMER_ID,
    OTHER_DRIVER_ID,
    admin,
    client,
    driver,
    make_order,
    place,
    place_and_assign,
)
from hmarket.errors import PermissionDeniedError, ValidationError
from hmarket.models import DeliveryStatus, OrderStatus

TWO_DAYS = 60 * 48


class TestListOrders:
    async def test_admin_sees_every_order(self, service):
        mine = await place(service)
        theirs = await place(service, customer_id=OTHER_CUSTOMER_ID)
        orders = await service.list_orders(admin())
        assert {o.id for o in orders} == {mine.id, theirs.id}

    async def test_admin_filters(self, service):
        await place(service)
        assigned = await place_and_assign(service)
        cancelled = await place(service, customer_id=OTHER_CUSTOMER_ID)
        await service.cancel(cancelled.id, client(OTHER_CUSTOMER_ID))

        by_order = await service.list_orders(admin(), order_status=OrderStatus.CANCELLED)
        assert [o.id for o in by_order] == [cancelled.id]
        by_delivery = await service.list_orders(admin(), delivery_status=DeliveryStatus.ASSIGNED)
        assert [o.id for o in by_delivery] == [assigned.id]

    async def test_client_sees_only_own_orders(self, service):
        mine = await place(service)
        await place(service, customer_id=OTHER_CUSTOMER_ID)
        assert [o.id for o in await service.list_orders(client())] == [mine.id]

    async def test_client_filter(self, service):
        kept = await place(service)
        dropped = await place(service)
        await service.cancel(dropped.id, client())
        pending = await service.list_orders(client(), order_status=OrderStatus.PENDING)
        assert [o.id for o in pending] == [kept.id]

    async def test_driver_sees_own_deliveries(self, service):
        await place_and_assign(service, OTHER_DRIVER_ID)
        mine = await place_and_assign(service, DRIVER_ID)
        assert [o.id for o in await service.list_orders(driver())] == [mine.id]

    async def test_own_listing_still_refuses_admins(self, service):
        with pytest.raises(PermissionDeniedError):
            await service.list_my_orders(admin())


class TestDriverStats:
    @pytest.fixture
    async def history(self, store):
        """Two deliveries done today, one two days ago, one in progress, one failed."""
        for age in (0, 1, TWO_DAYS):
            await store.create(
                make_order(OrderStatus.DELIVERED, DeliveryStatus.DELIVERED, DRIVER_ID, age_minutes=age)
            )
        await store.create(make_order(OrderStatus.OUT_FOR_DELIVERY, DeliveryStatus.IN_TRANSIT, DRIVER_ID))
        await store.create(make_order(OrderStatus.FAILED, DeliveryStatus.FAILED, DRIVER_ID))
        await store.create(make_order(OrderStatus.DELIVERED, DeliveryStatus.DELIVERED, OTHER_DRIVER_ID))

    async def test_driver_sees_own_figures(self, service, history):
        stats = await service.driver_stats(driver())
        assert stats.driver_id == DRIVER_ID
        assert stats.available is True
        assert stats.vehicle_type == "scooter"
        assert stats.completed_deliveries == 3
        assert stats.total_revenue == Decimal("64.74")
        assert stats.today_deliveries == 3
        assert stats.today_revenue == Decimal("43.16")
        assert stats.active_deliveries == 1

    async def test_new_driver_has_zeroes(self, service):
        stats = await service.driver_stats(driver(OTHER_DRIVER_ID))
        assert stats.completed_deliveries == 0
        assert stats.total_revenue == Decimal("0.00")
        assert stats.today_deliveries == 0

    async def test_admin_reads_any_driver(self, service, history):
        stats = await service.driver_stats(admin(), OTHER_DRIVER_ID)
        assert stats.completed_deliveries == 1
        assert stats.total_revenue == Decimal("21.58")

    async def test_admin_must_name_a_driver(self, service):
        with pytest.raises(ValidationError):
            await service.driver_stats(admin())

    async def test_driver_cannot_read_colleague(self, service):
        with pytest.raises(PermissionDeniedError):
            await service.driver_stats(driver(), OTHER_DRIVER_ID)

    async def test_client_denied(self, service):
        with pytest.raises(PermissionDeniedError):
            await service.driver_stats(client(CUSTOMER_ID))
