"""
Order lifecycle error taxonomy.

Every ``OrderError`` is surfaced synchronously to the caller of a transition
and mapped to an HTTP response by the handler registered in ``main``.
``NotificationDeliveryFailure`` never leaves the broadcaster.
"""


class OrderError(Exception):
    status_code: int = 400
    retryable: bool = False

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class OrderNotFound(OrderError):
    status_code = 404

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class UnknownStatus(OrderError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown order status: {value!r}")


class RejectionReasonRequired(OrderError):
    def __init__(self):
        super().__init__("Rejection reason is required")


class InvalidTransition(OrderError):
    def __init__(self, order_id: int, current_status: str, requested_status: str):
        self.order_id = order_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Cannot move order {order_id} from {current_status} to {requested_status}"
        )


class ConcurrentModification(OrderError):
    status_code = 409
    retryable = True

    def __init__(self, order_id: int, expected_status: str):
        self.order_id = order_id
        self.expected_status = expected_status
        super().__init__(
            f"Order {order_id} is no longer {expected_status}; reload it and retry"
        )


class NotificationDeliveryFailure(Exception):
    """A subscriber channel could not be reached. Logged, never propagated."""

    def __init__(self, room: str, reason: str = ""):
        self.room = room
        self.reason = reason
        super().__init__(f"Delivery to {room} failed: {reason}" if reason else f"Delivery to {room} failed")
