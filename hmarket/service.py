"""
OrderService: the operations web handlers call. Wires pricing, the store, the
state machine, assignment and tracking together; holds no request state.
"""
import logging
import math
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from hmarket.assignment import AssignmentService, DistanceEstimator
from hmarket.drivers import DriverDirectory, DriverProfile
from hmarket.engine import StateMachineEngine, TransitionRequest
from hmarket.errors import DuplicateOrderNumberError, PermissionDeniedError, ValidationError
from hmarket.metrics import orders_placed_total
from hmarket.models import (
    Actor,
    Address,
    CurrentLocation,
    Delivery,
    DeliveryMode,
    DeliveryStatus,
    ItemDraft,
    Location,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Role,
    TrackingEntry,
    generate_order_number,
    utcnow,
)
from hmarket.notifications import Notification, NotificationDispatcher
from hmarket.order_state import is_terminal_state
from hmarket.payments import Charge, PaymentGateway
from hmarket.pricing import DEFAULT_DELIVERY_FEES, DEFAULT_TAX_RATE, compute, price_items
from hmarket.store import OrderStore
from hmarket.tracking import TrackingLog

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5

# Deliveries a driver is working on, and those that count towards the day's tally
_ACTIVE_DELIVERY_STATES = frozenset(
    {DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVED}
)
_COUNTED_DELIVERY_STATES = _ACTIVE_DELIVERY_STATES | {DeliveryStatus.DELIVERED}


class TrackingView(BaseModel):
    order: dict[str, Any]
    driver: DriverProfile | None = None
    current_location: CurrentLocation | None = None
    estimated_minutes_remaining: int | None = None
    tracking_history: list[TrackingEntry]


class DriverStats(BaseModel):
    driver_id: str
    available: bool
    today_deliveries: int
    today_revenue: Decimal
    completed_deliveries: int
    total_revenue: Decimal
    active_deliveries: int
    vehicle_type: str | None = None
    zone: str | None = None


class OrderService:
    def __init__(
        self,
        store: OrderStore,
        drivers: DriverDirectory,
        dispatcher: NotificationDispatcher,
        *,
        payment_gateway: PaymentGateway | None = None,
        delivery_fees: dict[DeliveryMode, Decimal] | None = None,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
        currency: str = "EUR",
        require_delivery_code: bool = True,
        admin_user_ids: list[str] | None = None,
        distance: DistanceEstimator | None = None,
    ):
        self.store = store
        self.drivers = drivers
        self.dispatcher = dispatcher
        self.tracking = TrackingLog(store)
        self.engine = StateMachineEngine(
            store,
            self.tracking,
            dispatcher,
            drivers,
            require_delivery_code=require_delivery_code,
            admin_user_ids=admin_user_ids or [],
        )
        self.assignment = AssignmentService(store, drivers, self.tracking, dispatcher, distance)
        self.payment_gateway = payment_gateway
        self._fees = delivery_fees or DEFAULT_DELIVERY_FEES
        self._tax_rate = tax_rate
        self._currency = currency

    async def place_order(
        self,
        customer_id: str,
        items: list[ItemDraft],
        address: Address,
        delivery_mode: DeliveryMode,
        *,
        payment_method: PaymentMethod = PaymentMethod.STRIPE,
        discounts: Decimal | int = 0,
        notes: str | None = None,
    ) -> Order:
        """Price the cart and create a pending order. Totals are never recomputed afterwards."""
        totals = compute(items, delivery_mode, discounts, fees=self._fees, tax_rate=self._tax_rate)
        now = utcnow()
        order = Order(
            customer_id=customer_id,
            items=price_items(items),
            totals=totals,
            payment=Payment(method=payment_method, amount=totals.total, currency=self._currency),
            delivery_address=address,
            delivery=Delivery(mode=delivery_mode),
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        self.tracking.add(
            order,
            TrackingEntry(
                status=OrderStatus.PENDING.value,
                delivery_status=DeliveryStatus.PENDING,
                timestamp=now,
                actor_id=customer_id,
                actor_role=Role.CLIENT,
                notes="Order placed",
            ),
        )
        # The order number is random; regenerate only while the unique index rejects it.
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            try:
                created = await self.store.create(order)
                break
            except DuplicateOrderNumberError:
                if attempt == ORDER_NUMBER_ATTEMPTS:
                    raise
                logger.warning("Order number %s taken, regenerating (attempt %d)", order.order_number, attempt)
                order = order.model_copy(update={"order_number": generate_order_number(now)})

        orders_placed_total.labels(delivery_mode=delivery_mode.value).inc()
        logger.info("Order %s placed by %s (total=%s)", created.order_number, customer_id, created.totals.total)
        self.dispatcher.dispatch(
            [customer_id],
            Notification(
                type="order_created",
                title="Order received",
                message=f"Your order {created.order_number} has been received",
                data={"orderId": created.id, "orderNumber": created.order_number, "total": str(totals.total)},
            ),
        )
        return created

    async def accept_delivery(self, order_id: str, driver_id: str) -> Order:
        return await self.assignment.accept(order_id, driver_id)

    async def advance(self, order_id: str, actor: Actor, request: TransitionRequest) -> Order:
        return await self.engine.advance(order_id, actor, request)

    async def cancel(self, order_id: str, actor: Actor, note: str | None = None) -> Order:
        return await self.engine.cancel(order_id, actor, note)

    async def get_order(self, order_id: str, actor: Actor) -> Order:
        order = await self.store.get_by_id(order_id)
        check_visibility(order, actor)
        return order

    async def list_my_orders(self, actor: Actor) -> list[Order]:
        if actor.role is Role.CLIENT:
            return await self.store.list_by_customer(actor.actor_id)
        if actor.role is Role.LIVREUR:
            return await self.store.list_by_driver(actor.actor_id)
        raise PermissionDeniedError(f"role `{actor.role.value}` has no orders of its own")

    async def list_orders(
        self,
        actor: Actor,
        order_status: OrderStatus | None = None,
        delivery_status: DeliveryStatus | None = None,
    ) -> list[Order]:
        """Admins see every order; clients and drivers their own. Optional status filters."""
        if actor.role is Role.ADMIN:
            return await self.store.list_all(order_status, delivery_status)
        return [
            o
            for o in await self.list_my_orders(actor)
            if (order_status is None or o.order_status is order_status)
            and (delivery_status is None or o.delivery.status is delivery_status)
        ]

    async def driver_stats(self, actor: Actor, driver_id: str | None = None) -> DriverStats:
        """
        Driver dashboard figures. "Today" is the current UTC day, counted on order
        creation. Revenue is the total of the orders the driver delivered.
        """
        if actor.role is Role.LIVREUR:
            if driver_id not in (None, actor.actor_id):
                raise PermissionDeniedError("drivers may only see their own stats")
            driver_id = actor.actor_id
        elif actor.role is not Role.ADMIN:
            raise PermissionDeniedError("only drivers and admins can see driver stats")
        elif driver_id is None:
            raise ValidationError("driver_id is required")

        orders = await self.store.list_by_driver(driver_id)
        today = utcnow().date()
        delivered = [o for o in orders if o.delivery.status is DeliveryStatus.DELIVERED]
        delivered_today = [o for o in delivered if o.created_at.date() == today]
        profile = await self.drivers.describe(driver_id)
        return DriverStats(
            driver_id=driver_id,
            available=await self.drivers.is_available(driver_id),
            today_deliveries=sum(
                1 for o in orders if o.created_at.date() == today and o.delivery.status in _COUNTED_DELIVERY_STATES
            ),
            today_revenue=sum((o.totals.total for o in delivered_today), Decimal("0.00")),
            completed_deliveries=len(delivered),
            total_revenue=sum((o.totals.total for o in delivered), Decimal("0.00")),
            active_deliveries=sum(1 for o in orders if o.delivery.status in _ACTIVE_DELIVERY_STATES),
            vehicle_type=profile.vehicle_type if profile else None,
            zone=profile.zone if profile else None,
        )

    async def list_available(self, actor: Actor) -> list[Order]:
        if actor.role not in (Role.LIVREUR, Role.ADMIN):
            raise PermissionDeniedError("only drivers can browse available orders")
        driver_id = actor.actor_id if actor.role is Role.LIVREUR else None
        return await self.assignment.list_available(driver_id)

    async def get_tracking(self, order_id: str, actor: Actor) -> TrackingView:
        order = await self.get_order(order_id, actor)
        driver = None
        if order.delivery.assigned_driver_id:
            driver = await self.drivers.describe(order.delivery.assigned_driver_id)

        remaining = None
        eta = order.delivery.estimated_delivery_time
        if order.delivery.status is DeliveryStatus.IN_TRANSIT and eta is not None:
            seconds = (eta - utcnow()).total_seconds()
            if seconds > 0:
                remaining = math.ceil(seconds / 60)

        return TrackingView(
            order={
                "id": order.id,
                "order_number": order.order_number,
                "status": order.order_status.value,
                "delivery_status": order.delivery.status.value,
                "estimated_delivery_time": order.delivery.estimated_delivery_time,
                "actual_delivery_time": order.delivery.actual_delivery_time,
                "delivery_code": order.delivery.delivery_code if actor.role is not Role.LIVREUR else None,
                "delivery_address": order.delivery_address.model_dump(),
                "progress": order.progress.model_dump(),
            },
            driver=driver,
            current_location=order.delivery.current_location,
            estimated_minutes_remaining=remaining,
            tracking_history=await self.tracking.list(order.id),
        )

    async def record_payment(self, order_id: str, charge: Charge) -> Order:
        return await self.engine.record_payment(order_id, charge)

    async def pay(self, order_id: str, actor: Actor) -> Order:
        """Checkout: charge the order total through the gateway, then record the outcome."""
        if self.payment_gateway is None:
            raise ValidationError("no payment gateway configured")
        order = await self.store.get_by_id(order_id)
        if not (actor.role is Role.ADMIN or (actor.role is Role.CLIENT and order.customer_id == actor.actor_id)):
            raise PermissionDeniedError(f"order {order.order_number} does not belong to you")
        if order.payment.status is PaymentStatus.SUCCEEDED:
            raise ValidationError(f"order {order.order_number} is already paid")
        if is_terminal_state(order.order_status):
            raise ValidationError(f"order {order.order_number} is closed (status `{order.order_status.value}`)")
        charge = await self.payment_gateway.charge(order.id, order.totals.total, order.payment.currency)
        return await self.engine.record_payment(order.id, charge)

    async def update_driver_location(self, actor: Actor, location: Location, order_id: str | None = None) -> Order | None:
        """Driver position ping; also records it on the order being delivered when given."""
        if actor.role is not Role.LIVREUR:
            raise PermissionDeniedError("only drivers report a position")
        await self.drivers.update_location(actor.actor_id, location)
        if order_id is None:
            return None
        return await self.engine.advance(order_id, actor, TransitionRequest(location=location))

    async def set_driver_availability(self, actor: Actor, driver_id: str, available: bool) -> None:
        if actor.role is not Role.ADMIN and not (actor.role is Role.LIVREUR and actor.actor_id == driver_id):
            raise PermissionDeniedError("drivers may only change their own availability")
        await self.drivers.set_availability(driver_id, available)
        logger.info("Driver %s is now %s", driver_id, "available" if available else "unavailable")


def check_visibility(order: Order, actor: Actor) -> None:
    """client: own orders. livreur: orders assigned to them. admin: all."""
    if actor.role is Role.ADMIN:
        return
    if actor.role is Role.CLIENT and order.customer_id == actor.actor_id:
        return
    if actor.role is Role.LIVREUR and order.delivery.assigned_driver_id == actor.actor_id:
        return
    raise PermissionDeniedError(f"you do not have access to order {order.order_number}")
