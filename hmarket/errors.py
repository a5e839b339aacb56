"""Business errors raised by the order core.

All of them are recoverable by the caller. Only StorageError is worth retrying
as-is; every other error is a definite rejection and the caller must re-read
the order before trying again.
"""


class HMarketError(Exception):
    """Base exception for all H-Market order errors."""

    code = "error"
    retryable = False


class NotFoundError(HMarketError):
    code = "not_found"

    def __init__(self, order_id: str, what: str = "order"):
        self.order_id = order_id
        super().__init__(f"{what} not found: {order_id}")


class PermissionDeniedError(HMarketError):
    code = "permission_denied"


class InvalidTransitionError(HMarketError):
    """Raised when a requested status is not reachable from the current one."""

    code = "invalid_transition"

    def __init__(self, field: str, current: str | None, requested: str | None, reason: str | None = None):
        self.field = field
        self.current = current
        self.requested = requested
        msg = f"cannot move {field} from `{current}` to `{requested}`"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class AlreadyAssignedError(HMarketError):
    code = "already_assigned"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"order {order_id} is already assigned to another driver")


class AlreadyDeliveredError(HMarketError):
    code = "already_delivered"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"order {order_id} is already delivered")


class DriverUnavailableError(HMarketError):
    code = "driver_unavailable"

    def __init__(self, driver_id: str):
        self.driver_id = driver_id
        super().__init__(f"driver {driver_id} must be available to accept an order")


class ConcurrentModificationError(HMarketError):
    code = "concurrent_modification"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("this order was just updated, please retry")


class ValidationError(HMarketError):
    code = "validation_error"


class StorageError(HMarketError):
    """Opaque persistence failure. Not retried by the store itself."""

    code = "storage_error"
    retryable = True


class DuplicateOrderNumberError(StorageError):
    """Raised when order_number collides with an existing order (unique index)."""

    code = "duplicate_order_number"
    retryable = False

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"order number already exists: {order_number}")


class UnauthenticatedError(HMarketError):
    code = "unauthenticated"
