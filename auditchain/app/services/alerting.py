"""
Security alerting for high-risk ledger records.

The ledger only *emits*: it drops a SecurityAlertRaisedEvent on the event bus
and returns. Delivery to the notification collaborator (ops log, webhook into
email/Slack tooling) happens in the background worker, so a slow or failing
channel never adds latency or failure to the audited action.
"""
import asyncio
from typing import List, Optional, Protocol

import httpx

from auditchain.app.core.logging import correlation_id_ctx, get_logger
from auditchain.app.core.resilience import CircuitBreaker
from auditchain.app.events.bus import publish_event
from auditchain.app.events.schemas import SecurityAlertRaisedEvent
from auditchain.app.schemas.audit import AuditLogRecord, SecurityAlert

logger = get_logger(__name__)


def should_alert(record: AuditLogRecord, risk_threshold: int = 70, anomaly_threshold: int = 80) -> bool:
    return (
        record.risk_score > risk_threshold
        or record.anomaly_score > anomaly_threshold
        or len(record.threat_indicators) > 0
    )


def build_alert(record: AuditLogRecord) -> SecurityAlert:
    return SecurityAlert(
        severity="HIGH" if record.escalation_level > 2 else "MEDIUM",
        sequence_number=record.sequence_number,
        user_id=record.user_id,
        action=record.action.value,
        resource=record.resource,
        ip_address=record.ip_address,
        risk_score=record.risk_score,
        anomaly_score=record.anomaly_score,
        threat_indicators=list(record.threat_indicators),
        escalation_level=record.escalation_level,
        timestamp=record.timestamp,
    )


class AlertEmitter:
    """Fire-and-forget handoff of alerts onto the event bus."""

    def __init__(self, risk_threshold: int = 70, anomaly_threshold: int = 80, bus: Optional[asyncio.Queue] = None):
        self.risk_threshold = risk_threshold
        self.anomaly_threshold = anomaly_threshold
        self._bus = bus

    def maybe_emit(self, record: AuditLogRecord) -> bool:
        """Queue an alert when the record crosses a threshold. Never raises."""
        if not should_alert(record, self.risk_threshold, self.anomaly_threshold):
            return False

        alert = build_alert(record)
        event = SecurityAlertRaisedEvent(alert=alert, trace_id=correlation_id_ctx.get())
        try:
            publish_event(event, bus=self._bus)
        except (asyncio.QueueFull, RuntimeError) as e:
            # The record itself is persisted; the alert is best effort
            logger.error(
                f"Security alert for record #{record.sequence_number} not queued: {e}",
                extra={"extra_data": alert.model_dump(mode="json")},
            )
            return False

        logger.warning(
            f"Security alert raised for record #{record.sequence_number}",
            extra={"extra_data": {
                "severity": alert.severity,
                "risk_score": alert.risk_score,
                "anomaly_score": alert.anomaly_score,
                "threat_indicators": alert.threat_indicators,
            }},
        )
        return True


class Notifier(Protocol):
    async def send(self, alert: SecurityAlert) -> None: ...


class LoggingNotifier:
    """Writes alerts to the ops log stream."""

    async def send(self, alert: SecurityAlert) -> None:
        logger.warning(
            f"SECURITY ALERT [{alert.severity}] {alert.action} on {alert.resource} "
            f"by {alert.user_id or 'system'} (record #{alert.sequence_number})",
            extra={"extra_data": alert.model_dump(mode="json")},
        )


class WebhookNotifier:
    """POSTs alerts as JSON to an external channel, behind a circuit breaker."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client
        self.breaker = breaker or CircuitBreaker("alert-webhook", failure_threshold=3, recovery_timeout=60)

    async def _post(self, alert: SecurityAlert) -> None:
        payload = alert.model_dump(mode="json")
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()

    async def send(self, alert: SecurityAlert) -> None:
        await self.breaker.call(self._post, alert)


class AlertDispatcher:
    """Fans an alert out to every configured notifier; one failing channel does not stop the rest."""

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = notifiers

    async def dispatch(self, alert: SecurityAlert) -> int:
        delivered = 0
        for notifier in self.notifiers:
            try:
                await notifier.send(alert)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Alert delivery via {type(notifier).__name__} failed for record "
                    f"#{alert.sequence_number}: {e}"
                )
        return delivered


def build_dispatcher(webhook_url: Optional[str] = None, timeout: float = 5.0) -> AlertDispatcher:
    notifiers: List[Notifier] = [LoggingNotifier()]
    if webhook_url:
        notifiers.append(WebhookNotifier(webhook_url, timeout=timeout))
    return AlertDispatcher(notifiers)
