# mlm_system/events/event_bus.py
"""
Event bus for decoupled communication between the compensation engines and
the surrounding application (checkout, enrollment, notifications).
"""
from typing import Dict, List, Callable, Any
import logging
import asyncio

logger = logging.getLogger(__name__)


class EventBus:
    """
    In-process publish/subscribe.
    Handler errors are logged and do not reach the emitter.
    """

    _instance = None
    _handlers: Dict[str, List[Callable]] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._handlers = {}
        return cls._instance

    def subscribe(self, eventName: str, handler: Callable):
        """Subscribe handler to event."""
        handlers = self._handlers.setdefault(eventName, [])
        if handler not in handlers:
            handlers.append(handler)
            logger.debug(f"Handler {handler.__name__} subscribed to {eventName}")

    def unsubscribe(self, eventName: str, handler: Callable):
        """Unsubscribe handler from event."""
        if handler in self._handlers.get(eventName, []):
            self._handlers[eventName].remove(handler)
            logger.debug(f"Handler {handler.__name__} unsubscribed from {eventName}")

    def handlers(self, eventName: str) -> List[Callable]:
        return list(self._handlers.get(eventName, []))

    async def emit(self, eventName: str, data: Dict[str, Any]) -> int:
        """Emit event to all subscribers. Returns number of handlers that succeeded."""
        handlers = self.handlers(eventName)
        if not handlers:
            return 0

        logger.debug(f"Emitting event {eventName} with data: {data}")

        succeeded = 0
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
                succeeded += 1
            except Exception as e:
                logger.error(
                    f"Error in handler {handler.__name__} for event {eventName}: {e}",
                    exc_info=True
                )

        return succeeded

    def clear(self):
        """Clear all event handlers."""
        self._handlers.clear()


# Global event bus instance
eventBus = EventBus()


class MLMEvents:
    """Compensation core events."""

    # Inbound triggers
    ORDER_COMPLETED = "order.completed"
    DISTRIBUTOR_ENROLLED = "distributor.enrolled"

    # Outcomes
    MATRIX_PLACED = "matrix.placed"
    COMMISSION_CALCULATED = "commission.calculated"
    RANK_ACHIEVED = "rank.achieved"
    PAYOUT_FAILED = "payout.failed"
    PAYOUT_MANUAL_REVIEW = "payout.manual_review"
