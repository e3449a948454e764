"""
In-Memory Event Bus.

asyncio.Queue-based bus that hands security alerts from the append path to
the background alert worker.

Task-safe, not thread-safe: publish from the event loop that owns the queue.
Global Instance: one queue per application lifecycle, created at startup.
"""
import asyncio
import logging
from typing import Any, Optional
from auditchain.app.events.schemas import BaseEvent

logger = logging.getLogger(__name__)

# Initialized in app startup
_event_bus: Any = None


def get_event_bus() -> asyncio.Queue:
    """
    Get the global event bus queue.

    Raises RuntimeError if bus not initialized.
    """
    if _event_bus is None:
        raise RuntimeError(
            "Event bus not initialized. Call initialize_event_bus() on app startup."
        )
    return _event_bus


def initialize_event_bus(maxsize: int = 10000) -> asyncio.Queue:
    """
    Initialize the global event bus (called during app startup).

    Args:
        maxsize: Maximum queue size (0 = unlimited)

    Returns:
        The initialized asyncio.Queue instance
    """
    global _event_bus
    _event_bus = asyncio.Queue(maxsize=maxsize)
    logger.info(f"Event bus initialized with maxsize={maxsize}")
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global queue (shutdown and tests)."""
    global _event_bus
    _event_bus = None


def publish_event(event: BaseEvent, bus: Optional[asyncio.Queue] = None) -> None:
    """
    Publish an event without waiting.

    Raises:
        asyncio.QueueFull: If queue is at capacity
        RuntimeError: If bus not initialized
    """
    bus = bus or get_event_bus()
    try:
        bus.put_nowait(event)
        logger.debug(
            f"Event published: {event.event_type} "
            f"(id={event.event_id[:8]}..., queue_size={bus.qsize()})"
        )
    except asyncio.QueueFull:
        logger.warning(
            f"Event bus full! Dropped event: {event.event_type} (id={event.event_id[:8]}...)"
        )
        raise
