"""
Ledger Writer - appends events to the hash-chained audit ledger.

Per append:
  validate -> score (no lock) -> reserve slot -> hash + sign -> persist
  -> commit slot -> baseline update -> alert handoff

The allocator lock is held only across reserve/hash/persist. A persistence
failure is retried a bounded number of times and then surfaced: callers get a
fully chained record or an exception, never a partial success.
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from auditchain.app.core.exceptions import EventValidationError, PersistenceError, ScoringFault
from auditchain.app.core.keys import AuditKeyRing
from auditchain.app.core.logging import get_logger
from auditchain.app.core.observability import get_tracer, traced
from auditchain.app.schemas.audit import (
    AuditAction,
    AuditEvent,
    AuditLogRecord,
    DataClassification,
    EventType,
    RiskAssessment,
)
from auditchain.app.services.alerting import AlertEmitter
from auditchain.app.services.audit_repository import AuditRecordRepository
from auditchain.app.services.baseline_store import BaselineStore
from auditchain.app.services.hash_engine import capture_timestamp, compute_integrity_hash
from auditchain.app.services.risk_scorer import RiskScorer
from auditchain.app.services.sequence_allocator import SequenceAllocator, SequenceSlot

logger = get_logger(__name__)

EventInput = Union[AuditEvent, Mapping[str, Any]]


class LedgerWriter:

    def __init__(
        self,
        repository: AuditRecordRepository,
        allocator: SequenceAllocator,
        key_ring: AuditKeyRing,
        baselines: BaselineStore,
        alerts: AlertEmitter,
        scorer: Optional[RiskScorer] = None,
        server_instance: str = "default",
        application_version: str = "1.0.0",
        timezone_name: str = "UTC",
        max_attempts: int = 3,
        retry_backoff: float = 0.05,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.allocator = allocator
        self.key_ring = key_ring
        self.baselines = baselines
        self.alerts = alerts
        self.scorer = scorer or RiskScorer()
        self.server_instance = server_instance
        self.application_version = application_version
        self.zone = ZoneInfo(timezone_name)
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = retry_backoff
        self._clock = clock
        self._tracer = get_tracer(__name__)

    def local_hour(self, timestamp: datetime) -> int:
        return timestamp.astimezone(self.zone).hour

    @staticmethod
    def validate(event: EventInput) -> AuditEvent:
        if isinstance(event, AuditEvent):
            return event
        try:
            return AuditEvent.model_validate(dict(event))
        except ValidationError as e:
            raise EventValidationError(f"Invalid audit event: {e.error_count()} error(s)", errors=e.errors()) from e
        except (TypeError, ValueError) as e:
            raise EventValidationError(f"Invalid audit event: {e}") from e

    async def append(self, event: EventInput) -> AuditLogRecord:
        event = self.validate(event)
        timestamp = capture_timestamp(self._clock() if self._clock else None)
        hour = self.local_hour(timestamp)

        with traced(self._tracer, "ledger.append", action=event.action.value, user_id=event.user_id):
            baseline = await self.baselines.get(event.user_id)
            try:
                assessment = self.scorer.assess(event, baseline, hour)
            except Exception as e:
                raise ScoringFault(f"Scoring failed for {event.action.value}: {e}") from e

            record = await self._persist(event, assessment, timestamp)

        await self.baselines.update(event, hour)
        self.alerts.maybe_emit(record)

        logger.info(
            f"Audit record #{record.sequence_number} appended",
            extra={"extra_data": {
                "sequence_number": record.sequence_number,
                "action": record.action.value,
                "risk_score": record.risk_score,
                "anomaly_score": record.anomaly_score,
                "threat_indicators": len(record.threat_indicators),
            }},
        )
        return record

    async def _persist(self, event: AuditEvent, assessment: RiskAssessment, timestamp: datetime) -> AuditLogRecord:
        last_error: Optional[PersistenceError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.allocator.reserve() as slot:
                    record = self._build_record(event, assessment, timestamp, slot)
                    await self.repository.insert(record)
                    slot.commit(record.integrity_hash)
                return record
            except PersistenceError as e:
                last_error = e
                logger.warning(f"Audit append attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_backoff * attempt)

        logger.error(f"Audit event {event.action.value} on {event.resource} NOT recorded: {last_error}")
        raise PersistenceError(
            f"Audit event not recorded after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    def _build_record(
        self,
        event: AuditEvent,
        assessment: RiskAssessment,
        timestamp: datetime,
        slot: SequenceSlot,
    ) -> AuditLogRecord:
        try:
            integrity_hash = compute_integrity_hash(event, slot.sequence_number, slot.previous_hash, timestamp)
            signature, key_version = self.key_ring.sign(integrity_hash)
        except Exception as e:
            raise ScoringFault(f"Hashing failed for sequence {slot.sequence_number}: {e}") from e

        return AuditLogRecord(
            **event.model_dump(),
            timestamp=timestamp,
            sequence_number=slot.sequence_number,
            integrity_hash=integrity_hash,
            previous_log_hash=slot.previous_hash,
            digital_signature=signature,
            key_version=key_version,
            anomaly_score=assessment.anomaly_score,
            risk_score=assessment.risk_score,
            threat_indicators=assessment.threat_indicators,
            escalation_level=assessment.escalation_level,
            server_instance=self.server_instance,
            application_version=self.application_version,
        )

    # Convenience recorders used by platform collaborators

    async def record_phi_access(
        self,
        user_id: str,
        phi_type: str,
        resource_id: str,
        action: AuditAction = AuditAction.READ,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        description: Optional[str] = None,
    ) -> AuditLogRecord:
        return await self.append(AuditEvent(
            user_id=user_id,
            action=action,
            resource="phi_data",
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
            event_type=EventType.DATA_ACCESS,
            data_classification=DataClassification.RESTRICTED,
            phi_accessed=True,
            description=description or f"Accessed {phi_type} data",
            metadata={"phi_type": phi_type, "compliance_flags": ["HIPAA"]},
        ))

    async def record_authentication(
        self,
        action: AuditAction,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        auth_method: Optional[str] = None,
    ) -> AuditLogRecord:
        if action not in (AuditAction.LOGIN, AuditAction.LOGOUT, AuditAction.LOGIN_FAILED):
            raise EventValidationError(f"{action.value} is not an authentication action")
        success = action != AuditAction.LOGIN_FAILED
        return await self.append(AuditEvent(
            user_id=user_id,
            action=action,
            resource="authentication",
            ip_address=ip_address,
            user_agent=user_agent,
            event_type=EventType.SECURITY_EVENT,
            data_classification=DataClassification.INTERNAL,
            status_code=None if success else 401,
            description=f"User {action.value.lower()} {'successful' if success else 'failed'}",
            metadata={"auth_method": auth_method} if auth_method else None,
        ))

    async def record_security_event(
        self,
        description: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        status_code: Optional[int] = None,
        flagged_reason: Optional[str] = None,
    ) -> AuditLogRecord:
        return await self.append(AuditEvent(
            user_id=user_id,
            action=AuditAction.SECURITY_EVENT,
            resource="security",
            ip_address=ip_address,
            event_type=EventType.SECURITY_EVENT,
            data_classification=DataClassification.RESTRICTED,
            status_code=status_code,
            description=description,
            metadata={"flagged_reason": flagged_reason} if flagged_reason else None,
        ))

    async def record_data_modification(
        self,
        user_id: str,
        resource: str,
        resource_id: str,
        action: AuditAction,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> AuditLogRecord:
        if action not in (AuditAction.CREATE, AuditAction.UPDATE, AuditAction.DELETE):
            raise EventValidationError(f"{action.value} is not a data modification action")
        changed_fields = None
        if old_values is not None and new_values is not None:
            changed_fields = sorted(k for k in new_values if old_values.get(k) != new_values[k])
        return await self.append(AuditEvent(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            ip_address=ip_address,
            event_type=EventType.USER_ACTION,
            data_classification=DataClassification.CONFIDENTIAL,
            description=f"{action.value} operation on {resource}",
            metadata={"changed_fields": changed_fields} if changed_fields is not None else None,
        ))

    async def record_deletion(
        self,
        resource: str,
        resource_id: str,
        reason: str,
        user_id: Optional[str] = None,
        certificate_id: Optional[str] = None,
        data_classification: DataClassification = DataClassification.CONFIDENTIAL,
        phi_accessed: bool = False,
    ) -> AuditLogRecord:
        """Entry point for the retention / erasure workflow: audit a destructive action."""
        metadata: Dict[str, Any] = {"reason": reason}
        if certificate_id:
            metadata["certificate_id"] = certificate_id
        return await self.append(AuditEvent(
            user_id=user_id,
            action=AuditAction.DATA_DELETION,
            resource=resource,
            resource_id=resource_id,
            event_type=EventType.SYSTEM_EVENT if user_id is None else EventType.ADMIN_ACTION,
            data_classification=data_classification,
            phi_accessed=phi_accessed,
            description=f"Deleted {resource} {resource_id}: {reason}",
            metadata=metadata,
        ))
