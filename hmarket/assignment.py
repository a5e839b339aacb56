"""
Driver assignment. accept() is a single conditional write ("claim while the
delivery is still pending"): of several drivers racing for the same order,
exactly one wins and the others get AlreadyAssignedError.
"""
import logging
from typing import Protocol

from hmarket.drivers import DriverDirectory
from hmarket.errors import (
    AlreadyAssignedError,
    AlreadyDeliveredError,
    ConcurrentModificationError,
    DriverUnavailableError,
    InvalidTransitionError,
)
from hmarket.metrics import delivery_claims_total, order_transitions_total
from hmarket.models import (
    Address,
    DeliveryStatus,
    Location,
    Order,
    OrderStatus,
    Role,
    TrackingEntry,
    utcnow,
)
from hmarket.notifications import Notification, NotificationDispatcher
from hmarket.order_state import is_terminal_state, progress_for
from hmarket.store import OrderStore
from hmarket.tracking import TrackingLog

logger = logging.getLogger(__name__)

# Orders a driver may pick up from the open list
AVAILABLE_ORDER_STATES = (OrderStatus.CONFIRMED, OrderStatus.READY_FOR_PICKUP)

# Orders accept() will claim: the open list plus unpaid pending orders. An assigned
# delivery couples to order `confirmed`, so accepting a ready_for_pickup order moves
# it back to confirmed. Orders in preparation, out for delivery or failed are refused.
ACCEPTABLE_ORDER_STATES = frozenset({OrderStatus.PENDING, *AVAILABLE_ORDER_STATES})


class DistanceEstimator(Protocol):
    """Geocoding collaborator. Returns kilometres, or None when unknown."""

    async def estimate(self, origin: Location, destination: Address) -> float | None: ...


class AssignmentService:
    def __init__(
        self,
        store: OrderStore,
        drivers: DriverDirectory,
        tracking: TrackingLog,
        dispatcher: NotificationDispatcher,
        distance: DistanceEstimator | None = None,
    ):
        self._store = store
        self._drivers = drivers
        self._tracking = tracking
        self._dispatcher = dispatcher
        self._distance = distance

    async def accept(self, order_id: str, driver_id: str) -> Order:
        order = await self._store.get_by_id(order_id)
        delivery = order.delivery
        if delivery.status is DeliveryStatus.DELIVERED:
            raise AlreadyDeliveredError(order_id)
        if delivery.assigned_driver_id and delivery.status is not DeliveryStatus.PENDING:
            delivery_claims_total.labels(outcome="already_assigned").inc()
            raise AlreadyAssignedError(order_id)
        if is_terminal_state(order.order_status):
            raise InvalidTransitionError(
                "delivery", delivery.status.value, DeliveryStatus.ASSIGNED.value, reason="order is closed"
            )
        if order.order_status not in ACCEPTABLE_ORDER_STATES:
            delivery_claims_total.labels(outcome="not_open").inc()
            raise InvalidTransitionError(
                "delivery",
                delivery.status.value,
                DeliveryStatus.ASSIGNED.value,
                reason=f"order is `{order.order_status.value}`, not open for pickup",
            )
        if not await self._drivers.is_available(driver_id):
            delivery_claims_total.labels(outcome="driver_unavailable").inc()
            raise DriverUnavailableError(driver_id)

        now = utcnow()
        claimed = order.model_copy(deep=True)
        claimed.delivery.assigned_driver_id = driver_id
        claimed.delivery.assigned_at = now
        claimed.delivery.status = DeliveryStatus.ASSIGNED
        claimed.order_status = OrderStatus.CONFIRMED
        claimed.progress = progress_for(claimed)
        self._tracking.add(
            claimed,
            TrackingEntry(
                status=DeliveryStatus.ASSIGNED.value,
                delivery_status=DeliveryStatus.ASSIGNED,
                timestamp=now,
                actor_id=driver_id,
                actor_role=Role.LIVREUR,
                notes="Order accepted by the driver",
            ),
        )
        try:
            saved = await self._store.claim(claimed)
        except AlreadyAssignedError:
            delivery_claims_total.labels(outcome="already_assigned").inc()
            raise
        except ConcurrentModificationError:
            delivery_claims_total.labels(outcome="conflict").inc()
            raise

        delivery_claims_total.labels(outcome="success").inc()
        order_transitions_total.labels(field="delivery", to_state=DeliveryStatus.ASSIGNED.value).inc()
        if order.order_status is not OrderStatus.CONFIRMED:
            order_transitions_total.labels(field="order", to_state=OrderStatus.CONFIRMED.value).inc()
        logger.info("Order %s accepted by driver %s", saved.order_number, driver_id)

        profile = await self._drivers.describe(driver_id)
        driver_name = profile.name if profile and profile.name else None
        self._dispatcher.dispatch(
            [saved.customer_id],
            Notification(
                type="order_assigned",
                title="Driver assigned",
                message=f"{driver_name or 'A driver'} will deliver your order {saved.order_number}",
                data={
                    "orderId": saved.id,
                    "orderNumber": saved.order_number,
                    "driverName": driver_name,
                    "estimatedTime": (
                        saved.delivery.estimated_delivery_time.isoformat()
                        if saved.delivery.estimated_delivery_time
                        else None
                    ),
                },
            ),
        )
        return saved

    async def list_available(self, driver_id: str | None = None) -> list[Order]:
        """
        Unclaimed work: confirmed or ready-for-pickup orders whose delivery is pending,
        oldest first, or nearest first when the driver's position and an estimator are known.
        """
        orders = await self._store.list_unassigned(AVAILABLE_ORDER_STATES)
        if driver_id is None or self._distance is None:
            return orders
        origin = await self._drivers.location(driver_id)
        if origin is None:
            return orders

        distances: dict[str, float | None] = {}
        for order in orders:
            try:
                distances[order.id] = await self._distance.estimate(origin, order.delivery_address)
            except Exception as e:
                logger.warning("Distance estimate failed for order %s: %s", order.order_number, e)
                distances[order.id] = None
        # Unknown distances go last; sort is stable so they keep their age order.
        return sorted(orders, key=lambda o: (distances[o.id] is None, distances[o.id] or 0.0))
