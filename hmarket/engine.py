"""
State machine engine: the only code path that changes an order's status.

advance() runs, in order: load, permission check, table validation, apply the
change plus the state-derived fields, append a tracking entry, optimistic save,
then schedule notifications. Notifications never undo a saved transition.
"""
import hmac
import logging
from datetime import datetime, timezone
from typing import Iterable

from pydantic import BaseModel, field_validator

from hmarket.drivers import DriverDirectory
from hmarket.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from hmarket.metrics import order_transitions_total, transitions_rejected_total
from hmarket.models import (
    Actor,
    CurrentLocation,
    DeliveryStatus,
    Location,
    Order,
    OrderStatus,
    PaymentStatus,
    Role,
    TrackingEntry,
    utcnow,
)
from hmarket.notifications import Notification, NotificationDispatcher
from hmarket.order_state import (
    CLIENT_CANCELLABLE,
    coupling_violation,
    derived_delivery_status,
    derived_order_status,
    is_terminal_state,
    is_valid_delivery_transition,
    is_valid_order_transition,
    progress_for,
)
from hmarket.payments import Charge, ChargeOutcome
from hmarket.store import OrderStore
from hmarket.tracking import TrackingLog

logger = logging.getLogger(__name__)

PAYMENT_ACTOR_ID = "payment-gateway"

_DELIVERY_NOTES = {
    DeliveryStatus.ASSIGNED: "Order assigned to a driver",
    DeliveryStatus.PICKED_UP: "Order picked up by the driver",
    DeliveryStatus.IN_TRANSIT: "Driver on the way to the customer",
    DeliveryStatus.ARRIVED: "Driver arrived at destination",
    DeliveryStatus.DELIVERED: "Delivery completed",
    DeliveryStatus.FAILED: "Delivery failed",
}

_ORDER_NOTES = {
    OrderStatus.CONFIRMED: "Order confirmed",
    OrderStatus.PREPARING: "Order being prepared",
    OrderStatus.READY_FOR_PICKUP: "Order ready for pickup",
    OrderStatus.OUT_FOR_DELIVERY: "Order out for delivery",
    OrderStatus.DELIVERED: "Order delivered",
    OrderStatus.CANCELLED: "Order cancelled",
    OrderStatus.FAILED: "Order failed, intervention required",
}


class TransitionRequest(BaseModel):
    order_status: OrderStatus | None = None
    delivery_status: DeliveryStatus | None = None
    note: str | None = None
    location: Location | None = None
    estimated_delivery_time: datetime | None = None
    delivery_code: str | None = None

    @field_validator("estimated_delivery_time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def changes_status(self) -> bool:
        return self.order_status is not None or self.delivery_status is not None

    def is_empty(self) -> bool:
        return not self.changes_status() and self.location is None and self.estimated_delivery_time is None


def check_permission(order: Order, actor: Actor, request: TransitionRequest) -> None:
    """
    admin: anything. livreur: delivery status / position, on orders assigned to them.
    client: cancel their own order while pending or confirmed. Everyone else: nothing.
    """
    if actor.role is Role.ADMIN:
        return
    if actor.role is Role.LIVREUR:
        if request.order_status is not None:
            raise PermissionDeniedError("drivers may only change the delivery status")
        if order.delivery.assigned_driver_id != actor.actor_id:
            raise PermissionDeniedError(f"order {order.order_number} is not assigned to you")
        return
    if actor.role is Role.CLIENT:
        if order.customer_id != actor.actor_id:
            raise PermissionDeniedError(f"order {order.order_number} does not belong to you")
        only_cancel = (
            request.order_status is OrderStatus.CANCELLED
            and request.delivery_status is None
            and request.location is None
            and request.estimated_delivery_time is None
        )
        if not only_cancel:
            raise PermissionDeniedError("clients may only cancel their order")
        if order.order_status not in CLIENT_CANCELLABLE:
            raise PermissionDeniedError(
                f"order {order.order_number} can no longer be cancelled (status `{order.order_status.value}`)"
            )
        return
    raise PermissionDeniedError(f"role `{actor.role.value}` may not change orders")


class StateMachineEngine:
    def __init__(
        self,
        store: OrderStore,
        tracking: TrackingLog,
        dispatcher: NotificationDispatcher,
        drivers: DriverDirectory,
        *,
        require_delivery_code: bool = True,
        admin_user_ids: Iterable[str] = (),
    ):
        self._store = store
        self._tracking = tracking
        self._dispatcher = dispatcher
        self._drivers = drivers
        self._require_delivery_code = require_delivery_code
        self._admin_user_ids = list(admin_user_ids)

    async def advance(self, order_id: str, actor: Actor, request: TransitionRequest) -> Order:
        if request.is_empty():
            raise ValidationError("nothing to change: give a status, a location or an estimated delivery time")
        order = await self._store.get_by_id(order_id)
        try:
            check_permission(order, actor, request)
            updated = self._apply(order, actor, request)
            saved = await self._store.save(updated)
        except (PermissionDeniedError, InvalidTransitionError, ValidationError, ConcurrentModificationError) as e:
            transitions_rejected_total.labels(reason=e.code).inc()
            raise

        self._count_transitions(order, saved)
        logger.info(
            "Order %s: order %s -> %s, delivery %s -> %s (actor=%s role=%s)",
            saved.order_number,
            order.order_status.value,
            saved.order_status.value,
            order.delivery.status.value,
            saved.delivery.status.value,
            actor.actor_id,
            actor.role.value,
        )
        self._notify_transition(order, saved, actor)
        return saved

    async def cancel(self, order_id: str, actor: Actor, note: str | None = None) -> Order:
        return await self.advance(order_id, actor, TransitionRequest(order_status=OrderStatus.CANCELLED, note=note))

    async def record_payment(self, order_id: str, charge: Charge) -> Order:
        """
        Payment outcome from the checkout flow or the provider webhook. A successful
        payment confirms a pending order. Replays of a recorded success are no-ops.
        Closed orders (delivered, cancelled) reject any other payment event.
        """
        order = await self._store.get_by_id(order_id)
        if order.payment.status is PaymentStatus.SUCCEEDED:
            logger.info("Payment for order %s already recorded, ignoring %s", order.order_number, charge.outcome.value)
            return order
        if is_terminal_state(order.order_status):
            transitions_rejected_total.labels(reason=InvalidTransitionError.code).inc()
            logger.warning(
                "Payment %s for closed order %s (status %s) rejected",
                charge.outcome.value,
                order.order_number,
                order.order_status.value,
            )
            raise InvalidTransitionError(
                "payment", order.payment.status.value, charge.outcome.value, reason="order is closed"
            )

        now = utcnow()
        updated = order.model_copy(deep=True)
        if charge.reference:
            updated.payment.reference = charge.reference
        if charge.outcome is ChargeOutcome.FAILED:
            updated.payment.status = PaymentStatus.FAILED
            label, notes = "payment_failed", "Payment failed"
        else:
            updated.payment.status = PaymentStatus.SUCCEEDED
            updated.payment.paid_at = now
            label, notes = "payment_succeeded", "Payment received"
            if updated.order_status is OrderStatus.PENDING:
                updated.order_status = OrderStatus.CONFIRMED
                updated.progress = progress_for(updated)
                label, notes = OrderStatus.CONFIRMED.value, "Payment received, order confirmed"
        self._tracking.add(
            updated,
            TrackingEntry(
                status=label,
                delivery_status=updated.delivery.status,
                timestamp=now,
                actor_id=PAYMENT_ACTOR_ID,
                actor_role=Role.SYSTEM,
                notes=notes,
            ),
        )
        saved = await self._store.save(updated)
        self._count_transitions(order, saved)
        logger.info("Order %s: payment %s", saved.order_number, saved.payment.status.value)

        self._dispatcher.dispatch(
            [saved.customer_id],
            Notification(
                type=label if label != OrderStatus.CONFIRMED.value else "payment_succeeded",
                title="Payment received" if saved.payment.status is PaymentStatus.SUCCEEDED else "Payment failed",
                message=f"Order {saved.order_number}: {notes}",
                data={"orderId": saved.id, "orderNumber": saved.order_number},
            ),
        )
        if order.order_status is not OrderStatus.CONFIRMED and saved.order_status is OrderStatus.CONFIRMED:
            self.announce_new_order(saved)
        return saved

    def announce_new_order(self, order: Order) -> None:
        """Tell every available driver an unclaimed order is up for grabs."""
        if order.delivery.status is not DeliveryStatus.PENDING:
            return
        self._dispatcher.spawn(self._broadcast_to_drivers(order), f"announce order={order.order_number}")

    async def _broadcast_to_drivers(self, order: Order) -> None:
        driver_ids = await self._drivers.list_available()
        logger.info("Announcing order %s to %d available driver(s)", order.order_number, len(driver_ids))
        self._dispatcher.dispatch(
            driver_ids,
            Notification(
                type="new_order",
                title="New order available",
                message=f"Order {order.order_number} is ready for delivery",
                data={"orderId": order.id, "orderNumber": order.order_number, "total": str(order.totals.total)},
            ),
        )

    def _apply(self, order: Order, actor: Actor, request: TransitionRequest) -> Order:
        """Validate against the tables and return the updated copy (not yet persisted)."""
        current_order = order.order_status
        current_delivery = order.delivery.status

        if is_terminal_state(current_order):
            if request.delivery_status is not None:
                raise InvalidTransitionError(
                    "delivery", current_delivery.value, request.delivery_status.value, reason="order is closed"
                )
            requested = request.order_status.value if request.order_status else "update"
            raise InvalidTransitionError("order", current_order.value, requested, reason="order is closed")

        new_delivery = current_delivery
        derived = current_order
        if request.delivery_status is not None:
            if not is_valid_delivery_transition(current_delivery, request.delivery_status):
                raise InvalidTransitionError("delivery", current_delivery.value, request.delivery_status.value)
            new_delivery = request.delivery_status
            derived = derived_order_status(new_delivery, current_order)

        new_order = derived
        if request.order_status is not None:
            if derived is not current_order:
                if request.order_status is not derived:
                    raise InvalidTransitionError(
                        "order",
                        current_order.value,
                        request.order_status.value,
                        reason=f"delivery `{new_delivery.value}` implies order `{derived.value}`",
                    )
            else:
                if not is_valid_order_transition(current_order, request.order_status):
                    raise InvalidTransitionError("order", current_order.value, request.order_status.value)
                new_order = request.order_status
                if request.delivery_status is None:
                    new_delivery = derived_delivery_status(new_order, order) or new_delivery

        if (
            request.delivery_status is DeliveryStatus.DELIVERED
            and actor.role is Role.LIVREUR
            and self._require_delivery_code
        ):
            code = request.delivery_code or ""
            if not hmac.compare_digest(code.encode(), order.delivery.delivery_code.encode()):
                raise ValidationError("invalid delivery code")

        now = utcnow()
        updated = order.model_copy(deep=True)
        updated.order_status = new_order
        delivery = updated.delivery
        delivery.status = new_delivery
        if new_delivery is DeliveryStatus.PICKED_UP and current_delivery is not DeliveryStatus.PICKED_UP:
            delivery.pickup_time = now
        if new_order is OrderStatus.DELIVERED and current_order is not OrderStatus.DELIVERED:
            delivery.actual_delivery_time = now
        if request.location is not None:
            delivery.current_location = CurrentLocation(**request.location.model_dump(), updated_at=now)
        if request.estimated_delivery_time is not None:
            delivery.estimated_delivery_time = request.estimated_delivery_time
        updated.progress = progress_for(updated)

        violation = coupling_violation(updated)
        if violation:
            if request.delivery_status is not None:
                raise InvalidTransitionError(
                    "delivery", current_delivery.value, request.delivery_status.value, reason=violation
                )
            raise InvalidTransitionError("order", current_order.value, new_order.value, reason=violation)

        if request.delivery_status is not None:
            label = new_delivery.value
            notes = _DELIVERY_NOTES.get(new_delivery, "")
        elif request.order_status is not None:
            label = new_order.value
            notes = _ORDER_NOTES.get(new_order, "")
        else:
            label, notes = "location_update", "Position updated"
        self._tracking.add(
            updated,
            TrackingEntry(
                status=label,
                delivery_status=new_delivery,
                timestamp=now,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                notes=request.note or notes,
                location=request.location,
            ),
        )
        return updated

    def _count_transitions(self, before: Order, after: Order) -> None:
        if after.order_status is not before.order_status:
            order_transitions_total.labels(field="order", to_state=after.order_status.value).inc()
        if after.delivery.status is not before.delivery.status:
            order_transitions_total.labels(field="delivery", to_state=after.delivery.status.value).inc()

    def _notify_transition(self, before: Order, after: Order, actor: Actor) -> None:
        notification = _notification_for(before, after)
        driver_id = after.delivery.assigned_driver_id
        recipients = [after.customer_id]
        if driver_id and driver_id != actor.actor_id:
            recipients.append(driver_id)
        self._dispatcher.dispatch(recipients, notification)

        became_failed = (
            after.order_status is OrderStatus.FAILED and before.order_status is not OrderStatus.FAILED
        ) or (after.delivery.status is DeliveryStatus.FAILED and before.delivery.status is not DeliveryStatus.FAILED)
        if became_failed and after.order_status is not OrderStatus.CANCELLED:
            self._dispatcher.dispatch(
                self._admin_user_ids,
                Notification(
                    type="intervention_required",
                    title="Delivery failed",
                    message=f"Order {after.order_number} needs attention",
                    data={"orderId": after.id, "orderNumber": after.order_number, "driverId": driver_id},
                ),
            )
        if before.order_status is not OrderStatus.CONFIRMED and after.order_status is OrderStatus.CONFIRMED:
            self.announce_new_order(after)


def _notification_for(before: Order, after: Order) -> Notification:
    data = {
        "orderId": after.id,
        "orderNumber": after.order_number,
        "status": after.order_status.value,
        "deliveryStatus": after.delivery.status.value,
    }
    number = after.order_number
    if after.order_status is OrderStatus.CANCELLED and before.order_status is not OrderStatus.CANCELLED:
        return Notification(type="order_cancelled", title="Order cancelled", message=f"Order {number} was cancelled", data=data)
    if after.delivery.status is not before.delivery.status:
        status = after.delivery.status
        if status is DeliveryStatus.ASSIGNED:
            return Notification(type="order_assigned", title="Driver assigned", message=f"A driver took order {number}", data=data)
        if status is DeliveryStatus.DELIVERED:
            return Notification(type="order_delivered", title="Order delivered", message=f"Order {number} was delivered", data=data)
        if status is DeliveryStatus.FAILED:
            return Notification(type="delivery_failed", title="Delivery failed", message=f"Delivery of order {number} failed", data=data)
        return Notification(
            type="delivery_update",
            title="Delivery update",
            message=f"Order {number}: {_DELIVERY_NOTES.get(status, status.value)}",
            data=data,
        )
    if after.order_status is not before.order_status:
        return Notification(
            type="order_update",
            title="Order update",
            message=f"Order {number}: {_ORDER_NOTES.get(after.order_status, after.order_status.value)}",
            data=data,
        )
    location = after.delivery.current_location
    if location is not None:
        data["location"] = location.model_dump(mode="json")
    return Notification(type="location_update", title="Driver position", message=f"Order {number} is on its way", data=data)
