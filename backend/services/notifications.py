"""
Notification Trigger Contract
=============================
Delivery (SMS, email, push) is another subsystem's job. The engine only fires
``notify(user_id, event_type, payload)`` and never lets a failure here roll back
an order-status change.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Tuple

import structlog

logger = structlog.get_logger().bind(component="notifications")


class NotificationType(str, Enum):
    ORDER_PLACED = "order_placed"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    STATUS_CHANGED = "status_changed"
    ORDER_CANCELLED = "order_cancelled"
    REFUND_INITIATED = "refund_initiated"
    REFUND_COMPLETED = "refund_completed"


class INotifier(ABC):

    @abstractmethod
    async def notify(self, user_id: str, event_type: NotificationType, payload: Dict[str, Any]) -> None:
        pass


class LoggingNotifier(INotifier):
    """Default notifier: records the trigger in the structured log"""

    def __init__(self):
        self.sent: List[Tuple[str, NotificationType, Dict[str, Any]]] = []

    async def notify(self, user_id: str, event_type: NotificationType, payload: Dict[str, Any]) -> None:
        self.sent.append((user_id, event_type, payload))
        logger.info("notification_triggered", user_id=user_id, event_type=event_type.value, **payload)


async def notify_safely(
    notifier: INotifier,
    user_id: str,
    event_type: NotificationType,
    payload: Dict[str, Any],
) -> None:
    """Fire-and-forget wrapper; failures are logged only."""
    try:
        await notifier.notify(user_id, event_type, payload)
    except Exception as e:
        logger.warning(
            "notification_failed",
            user_id=user_id,
            event_type=event_type.value,
            error=str(e),
            error_type=type(e).__name__,
        )
