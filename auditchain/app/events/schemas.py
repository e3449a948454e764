"""
Event Schema Definitions for the AuditChain Event Bus.

Events carry work off the append path: the ledger publishes, background
workers consume. Every event has a unique id and a UTC creation timestamp.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from auditchain.app.schemas.audit import SecurityAlert


class BaseEvent(BaseModel):
    """
    Base event schema.

    All bus events MUST extend this class to ensure:
    - Unique event tracking (event_id, trace_id)
    - Temporal tracking (timestamp)
    - Event categorization (event_type)
    """
    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique event identifier (UUID)"
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp when event was created"
    )

    event_type: str = Field(
        description="Event type discriminator (e.g., 'security_alert_raised')"
    )

    trace_id: Optional[str] = Field(
        default=None,
        description="Correlation ID of the request that produced the event"
    )


class SecurityAlertRaisedEvent(BaseEvent):
    """
    Emitted when an appended record crosses the alert thresholds
    (risk, anomaly, or any threat indicator).
    """

    event_type: str = Field(default="security_alert_raised", frozen=True)

    alert: SecurityAlert = Field(
        description="Alert payload for the notification collaborator"
    )
