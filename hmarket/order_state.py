"""
Order and delivery state machines. The two tables below are the only place
where allowed transitions are defined; everything else derives from them.
"""
from hmarket.models import DeliveryStatus, Order, OrderStatus, Progress, ProgressStep

# Current order status -> allowed next statuses
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_PICKUP, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.FAILED}),
    OrderStatus.FAILED: frozenset({OrderStatus.PREPARING}),  # retry
    OrderStatus.DELIVERED: frozenset(),  # terminal
    OrderStatus.CANCELLED: frozenset(),  # terminal
}

# Current delivery status -> allowed next statuses
DELIVERY_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.ASSIGNED}),
    DeliveryStatus.ASSIGNED: frozenset({DeliveryStatus.PICKED_UP}),
    DeliveryStatus.PICKED_UP: frozenset({DeliveryStatus.IN_TRANSIT}),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.ARRIVED}),
    DeliveryStatus.ARRIVED: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED}),
    DeliveryStatus.FAILED: frozenset({DeliveryStatus.ASSIGNED}),  # retry
    DeliveryStatus.DELIVERED: frozenset(),  # terminal
}

TERMINAL_ORDER_STATES: frozenset[OrderStatus] = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Statuses a client may still cancel from
CLIENT_CANCELLABLE: frozenset[OrderStatus] = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})

# Order status forced by a delivery status. ARRIVED forces nothing.
DELIVERY_COUPLING: dict[DeliveryStatus, OrderStatus] = {
    DeliveryStatus.ASSIGNED: OrderStatus.CONFIRMED,
    DeliveryStatus.PICKED_UP: OrderStatus.PREPARING,
    DeliveryStatus.IN_TRANSIT: OrderStatus.OUT_FOR_DELIVERY,
    DeliveryStatus.DELIVERED: OrderStatus.DELIVERED,
}

# Delivery status -> (progress step, step number) on a 4-step track
_PROGRESS: dict[DeliveryStatus, tuple[ProgressStep, int]] = {
    DeliveryStatus.PENDING: (ProgressStep.PREPARATION, 1),
    DeliveryStatus.ASSIGNED: (ProgressStep.PREPARATION, 1),
    DeliveryStatus.PICKED_UP: (ProgressStep.PREPARATION, 2),
    DeliveryStatus.IN_TRANSIT: (ProgressStep.IN_TRANSIT, 3),
    DeliveryStatus.ARRIVED: (ProgressStep.IN_TRANSIT, 3),
    DeliveryStatus.FAILED: (ProgressStep.IN_TRANSIT, 3),
    DeliveryStatus.DELIVERED: (ProgressStep.COMPLETED, 4),
}


def is_terminal_state(status: OrderStatus) -> bool:
    """True once the order can no longer change."""
    return status in TERMINAL_ORDER_STATES


def is_valid_order_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in ORDER_TRANSITIONS.get(current, frozenset())


def is_valid_delivery_transition(current: DeliveryStatus, requested: DeliveryStatus) -> bool:
    return requested in DELIVERY_TRANSITIONS.get(current, frozenset())


def derived_order_status(delivery_status: DeliveryStatus, current: OrderStatus) -> OrderStatus:
    """
    Order status implied by moving the delivery to delivery_status. The coupling
    wins over the order table, so a retried delivery (failed -> assigned) takes
    the order back to confirmed.
    """
    if delivery_status is DeliveryStatus.FAILED:
        return OrderStatus.FAILED
    return DELIVERY_COUPLING.get(delivery_status, current)


def derived_delivery_status(order_status: OrderStatus, order: Order) -> DeliveryStatus | None:
    """Delivery status implied by an explicit order status change, if any."""
    delivery = order.delivery
    if delivery.assigned_driver_id is None or delivery.status is DeliveryStatus.DELIVERED:
        return None
    if order_status is OrderStatus.CANCELLED:
        return DeliveryStatus.FAILED
    if order_status is OrderStatus.DELIVERED:
        return DeliveryStatus.DELIVERED
    return None


def coupling_violation(order: Order) -> str | None:
    """Describe the first broken coupling rule, or None when the pair is consistent."""
    delivery = order.delivery
    required = DELIVERY_COUPLING.get(delivery.status)
    if required is not None and order.order_status is not required:
        return f"delivery `{delivery.status.value}` requires order `{required.value}`"
    if (delivery.status is DeliveryStatus.PENDING) != (delivery.assigned_driver_id is None):
        return "a driver is attached if and only if the delivery has left `pending`"
    if (
        order.order_status is OrderStatus.DELIVERED
        and delivery.assigned_driver_id is not None
        and delivery.status is not DeliveryStatus.DELIVERED
    ):
        return "an order delivered by a driver needs its delivery `delivered`"
    if delivery.status is DeliveryStatus.DELIVERED and delivery.actual_delivery_time is None:
        return "a delivered order needs an actual delivery time"
    return None


def progress_for(order: Order) -> Progress:
    step, number = _PROGRESS[order.delivery.status]
    if order.order_status is OrderStatus.DELIVERED:
        step, number = ProgressStep.COMPLETED, 4
    return Progress(step=step, current_step=number, total_steps=4)
