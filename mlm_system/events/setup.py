# mlm_system/events/setup.py
"""
Setup compensation event handlers.
Register all event handlers with the event bus.
"""
import logging

from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.events.handlers import handle_order_completed, handle_distributor_enrolled

logger = logging.getLogger(__name__)

HANDLERS = [
    (MLMEvents.ORDER_COMPLETED, handle_order_completed),
    (MLMEvents.DISTRIBUTOR_ENROLLED, handle_distributor_enrolled),
]


def setup_mlm_event_handlers():
    """
    Register all compensation event handlers with the event bus.

    This function should be called during application startup.
    """
    logger.info("Setting up MLM event handlers...")

    for event_name, handler in HANDLERS:
        eventBus.subscribe(event_name, handler)
        logger.debug(f"Registered handler for {event_name}")

    logger.info("MLM event handlers registered successfully")


def teardown_mlm_event_handlers():
    """
    Unregister all compensation event handlers.
    Useful for testing or shutdown.
    """
    logger.info("Tearing down MLM event handlers...")

    for event_name, handler in HANDLERS:
        eventBus.unsubscribe(event_name, handler)

    logger.info("MLM event handlers unregistered")
