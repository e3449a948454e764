import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from auditchain.app.core.resilience import OPEN, CircuitBreaker, CircuitBreakerOpenException
from auditchain.app.events.schemas import SecurityAlertRaisedEvent
from auditchain.app.schemas.audit import AuditAction, AuditLogRecord
from auditchain.app.services.alerting import (
    AlertDispatcher,
    AlertEmitter,
    LoggingNotifier,
    WebhookNotifier,
    build_alert,
    build_dispatcher,
    should_alert,
)


def _record(**overrides) -> AuditLogRecord:
    fields = dict(
        user_id="coach-1",
        action=AuditAction.READ,
        resource="notes",
        timestamp=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
        sequence_number=7,
        integrity_hash="a" * 64,
        previous_log_hash="b" * 64,
        digital_signature="c" * 64,
        key_version="v1",
        anomaly_score=10,
        risk_score=20,
        threat_indicators=[],
        escalation_level=0,
        server_instance="test",
        application_version="1.0.0",
    )
    fields.update(overrides)
    return AuditLogRecord(**fields)


def test_should_alert_thresholds_are_strict():
    assert should_alert(_record()) is False
    assert should_alert(_record(risk_score=70)) is False
    assert should_alert(_record(risk_score=71)) is True
    assert should_alert(_record(anomaly_score=80)) is False
    assert should_alert(_record(anomaly_score=81)) is True
    assert should_alert(_record(threat_indicators=["BULK_DATA_ACCESS"])) is True


def test_should_alert_custom_thresholds():
    assert should_alert(_record(risk_score=55), risk_threshold=50) is True


def test_alert_severity_follows_escalation():
    assert build_alert(_record(risk_score=92, escalation_level=3)).severity == "HIGH"
    assert build_alert(_record(risk_score=75, escalation_level=2)).severity == "MEDIUM"


def test_alert_payload():
    alert = build_alert(_record(risk_score=92, escalation_level=3, ip_address="10.1.1.1"))
    assert alert.sequence_number == 7
    assert alert.action == "READ"
    assert alert.ip_address == "10.1.1.1"
    assert alert.alert_id


@pytest.mark.asyncio
async def test_emitter_queues_alert_event():
    bus = asyncio.Queue()
    emitter = AlertEmitter(bus=bus)

    assert emitter.maybe_emit(_record()) is False
    assert bus.empty()

    assert emitter.maybe_emit(_record(risk_score=90, escalation_level=3)) is True
    event = bus.get_nowait()
    assert isinstance(event, SecurityAlertRaisedEvent)
    assert event.event_type == "security_alert_raised"
    assert event.alert.sequence_number == 7


@pytest.mark.asyncio
async def test_emitter_never_raises_on_full_bus():
    bus = asyncio.Queue(maxsize=1)
    emitter = AlertEmitter(bus=bus)
    assert emitter.maybe_emit(_record(risk_score=90)) is True
    assert emitter.maybe_emit(_record(risk_score=90)) is False
    assert bus.qsize() == 1


class RecordingNotifier:
    def __init__(self):
        self.alerts = []

    async def send(self, alert):
        self.alerts.append(alert)


class BrokenNotifier:
    async def send(self, alert):
        raise RuntimeError("channel down")


@pytest.mark.asyncio
async def test_dispatcher_isolates_failing_channels():
    good = RecordingNotifier()
    dispatcher = AlertDispatcher([BrokenNotifier(), good, LoggingNotifier()])
    delivered = await dispatcher.dispatch(build_alert(_record(risk_score=90)))
    assert delivered == 2
    assert len(good.alerts) == 1


@pytest.mark.asyncio
async def test_webhook_notifier_posts_json():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = WebhookNotifier("https://alerts.example/hook", client=client)
        await notifier.send(build_alert(_record(risk_score=90, escalation_level=3)))

    assert received[0]["severity"] == "HIGH"
    assert received[0]["sequence_number"] == 7


@pytest.mark.asyncio
async def test_webhook_circuit_opens_after_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    breaker = CircuitBreaker("test-webhook", failure_threshold=2, recovery_timeout=60)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = WebhookNotifier("https://alerts.example/hook", client=client, breaker=breaker)
        alert = build_alert(_record(risk_score=90))
        for _ in range(2):
            with pytest.raises(httpx.HTTPStatusError):
                await notifier.send(alert)
        assert breaker.state == OPEN
        with pytest.raises(CircuitBreakerOpenException):
            await notifier.send(alert)


def test_build_dispatcher_channels():
    assert len(build_dispatcher().notifiers) == 1
    dispatcher = build_dispatcher("https://alerts.example/hook")
    assert isinstance(dispatcher.notifiers[1], WebhookNotifier)
