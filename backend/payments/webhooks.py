"""Webhook routing: normalized gateway events to reconciler handlers."""

from typing import Any, Awaitable, Callable, Optional

import structlog

from schemas.payments import GatewayEvent, GatewayEventType

WebhookHandler = Callable[[GatewayEvent, str], Awaitable[Any]]


class WebhookRouter:
    """
    Routes verified gateway events by type.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: dict[GatewayEventType, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: GatewayEventType):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type.value)
            return handler
        return decorator

    async def route(self, event: GatewayEvent, correlation_id: str) -> Optional[Any]:
        handler = self._handlers.get(event.type)
        if not handler:
            self._logger.warning("no_handler", event_type=event.type.value, event_id=event.event_id)
            return None
        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[GatewayEventType]:
        return list(self._handlers.keys())
