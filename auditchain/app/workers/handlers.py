"""
Handler Registry for the AuditChain Event Bus.

Maps event types to handler coroutines. The consumer loop dispatches every
dequeued event through handle_event().
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

from auditchain.app.events.schemas import BaseEvent, SecurityAlertRaisedEvent
from auditchain.app.services.alerting import AlertDispatcher

logger = logging.getLogger(__name__)

Handler = Callable[[BaseEvent], Awaitable[None]]

# Handler registry: event_type → handler function
_handlers: Dict[str, Handler] = {}


def register_handler(event_type: str, handler: Handler) -> None:
    _handlers[event_type] = handler
    logger.info(f"Handler registered: {event_type} → {getattr(handler, '__name__', handler)}")


def get_handler(event_type: str) -> Optional[Handler]:
    return _handlers.get(event_type)


def clear_handlers() -> None:
    _handlers.clear()


async def handle_event(event: BaseEvent) -> None:
    """Dispatch event to registered handler."""
    handler = get_handler(event.event_type)
    if not handler:
        logger.debug(f"No handler for event type: {event.event_type}")
        return

    try:
        await handler(event)
        logger.debug(f"Event handled: {event.event_type} (id={event.event_id[:8]}...)")
    except Exception as e:
        logger.error(f"Handler failed for {event.event_type}: {e}", exc_info=True)


def register_alert_handler(dispatcher: AlertDispatcher) -> None:
    """Route security alerts to the notification channels."""

    async def deliver_security_alert(event: SecurityAlertRaisedEvent) -> None:
        delivered = await dispatcher.dispatch(event.alert)
        logger.info(
            f"Security alert for record #{event.alert.sequence_number} delivered "
            f"to {delivered}/{len(dispatcher.notifiers)} channels"
        )

    register_handler("security_alert_raised", deliver_security_alert)
