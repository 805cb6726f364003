"""Exception taxonomy for the order engine."""

from typing import Any, Optional


class OrderEngineError(Exception):
    """Base exception for all order engine errors."""

    pass


class ValidationError(OrderEngineError):
    """Raised when a request can never succeed as submitted (no auto-retry)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)


class NotFoundError(OrderEngineError):
    """Raised when an order, address or variant doesn't exist."""

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        msg = f"{entity} not found"
        if entity_id:
            msg = f"{entity} not found: {entity_id}"
        super().__init__(msg)


class ConflictError(OrderEngineError):
    """Raised when the current order state forbids the operation."""

    pass


class InvalidTransitionError(ConflictError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from {current} to {requested}")


class InvalidSignatureError(OrderEngineError):
    """Raised when a client confirmation or webhook signature does not verify."""

    pass


class GatewayError(OrderEngineError):
    """Raised when the payment gateway call fails."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class GatewayTimeoutError(GatewayError):
    """Raised when the payment gateway does not answer in time."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"Gateway {operation} timed out after {timeout:g}s",
            retryable=True,
        )


class DuplicateOrderNumberError(OrderEngineError):
    """Raised when an order number is already taken. Always an integrity bug."""

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order number already exists: {order_number}")
