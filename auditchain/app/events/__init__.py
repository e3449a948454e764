"""
Event bus and schemas for AuditChain.

Events decouple slow side effects (alert notification) from the audited
request: the ledger publishes onto an in-memory asyncio.Queue and a background
consumer delivers them.
"""

from auditchain.app.events.schemas import (
    BaseEvent,
    SecurityAlertRaisedEvent,
)

__all__ = [
    "BaseEvent",
    "SecurityAlertRaisedEvent",
]
