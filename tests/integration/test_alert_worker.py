"""
Tests for the alert path: ledger append -> event bus -> consumer -> notifiers.
"""
import asyncio

import pytest

from auditchain.app.events.bus import initialize_event_bus, publish_event, reset_event_bus
from auditchain.app.events.schemas import BaseEvent
from auditchain.app.schemas.audit import AuditAction, AuditEvent, DataClassification, EventType
from auditchain.app.services.alerting import AlertDispatcher
from auditchain.app.workers.consumer import start_event_consumer, stop_event_consumer
from auditchain.app.workers.handlers import (
    clear_handlers,
    get_handler,
    handle_event,
    register_alert_handler,
    register_handler,
)


class RecordingNotifier:
    def __init__(self):
        self.alerts = []

    async def send(self, alert):
        self.alerts.append(alert)


@pytest.fixture(autouse=True)
def _clean_registry():
    clear_handlers()
    yield
    clear_handlers()
    reset_event_bus()


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored():
    assert get_handler("unknown_event") is None
    await handle_event(BaseEvent(event_type="unknown_event"))


@pytest.mark.asyncio
async def test_handler_failure_is_contained():
    async def broken(event):
        raise RuntimeError("boom")

    register_handler("flaky", broken)
    await handle_event(BaseEvent(event_type="flaky"))


@pytest.mark.asyncio
async def test_high_risk_append_is_delivered_by_worker(ledger, bus):
    notifier = RecordingNotifier()
    register_alert_handler(AlertDispatcher([notifier]))
    task = await start_event_consumer(bus)

    try:
        record = await ledger.record_event(AuditEvent(
            user_id="admin-1",
            action=AuditAction.DELETE,
            resource="clients",
            event_type=EventType.ADMIN_ACTION,
            data_classification=DataClassification.RESTRICTED,
            phi_accessed=True,
        ))
        await asyncio.wait_for(bus.join(), timeout=5)
    finally:
        await stop_event_consumer(task)

    assert len(notifier.alerts) == 1
    alert = notifier.alerts[0]
    assert alert.sequence_number == record.sequence_number
    assert alert.risk_score == 92
    assert alert.severity == "HIGH"


@pytest.mark.asyncio
async def test_consumer_survives_failing_handler(bus):
    seen = []

    async def flaky(event):
        seen.append(event.event_id)
        if len(seen) == 1:
            raise RuntimeError("transient")

    register_handler("flaky", flaky)
    task = await start_event_consumer(bus)
    try:
        publish_event(BaseEvent(event_type="flaky"), bus=bus)
        publish_event(BaseEvent(event_type="flaky"), bus=bus)
        await asyncio.wait_for(bus.join(), timeout=5)
    finally:
        await stop_event_consumer(task)

    assert len(seen) == 2
    assert task.done()


@pytest.mark.asyncio
async def test_publish_to_full_global_bus_raises():
    bus = initialize_event_bus(maxsize=1)
    publish_event(BaseEvent(event_type="noop"))
    with pytest.raises(asyncio.QueueFull):
        publish_event(BaseEvent(event_type="noop"))
    assert bus.qsize() == 1
