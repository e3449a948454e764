"""
Background Event Consumer.

Async task that runs alongside FastAPI, consuming events from the bus and
dispatching them to registered handlers. Keeps alert delivery off the
append path.
"""
import asyncio
import logging
from typing import Optional

from auditchain.app.events.bus import get_event_bus
from auditchain.app.workers.handlers import handle_event

logger = logging.getLogger(__name__)


async def event_consumer_loop(bus: Optional[asyncio.Queue] = None) -> None:
    """
    Main event consumer loop.

    Waits for an event, dispatches it, marks it done, repeats.
    Runs as a background asyncio.Task until cancelled.
    """
    logger.info("Event consumer started")
    bus = bus or get_event_bus()

    try:
        while True:
            event = await bus.get()
            try:
                logger.debug(
                    f"Event dequeued: {event.event_type} "
                    f"(id={event.event_id[:8]}..., queue_size={bus.qsize()})"
                )
                await handle_event(event)
            except Exception as e:
                logger.error(f"Consumer loop error: {e}", exc_info=True)
            finally:
                bus.task_done()

    except asyncio.CancelledError:
        logger.info("Event consumer cancelled")
        raise


async def start_event_consumer(bus: Optional[asyncio.Queue] = None) -> asyncio.Task:
    """
    Start the event consumer as a background task.

    Returns:
        The asyncio.Task running the consumer loop
    """
    task = asyncio.create_task(event_consumer_loop(bus))
    # Let the loop reach its first await so startup errors surface early
    await asyncio.sleep(0)
    return task


async def stop_event_consumer(task: asyncio.Task) -> None:
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
