"""
Audit Record Repository - persistence adapter for the ledger.

Insert-only writes plus read queries for verification and reporting. Each call
uses its own session from the injected factory so writers and readers never
share transaction state.
"""
from datetime import timezone
from typing import List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import and_, asc, desc, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.app.core.exceptions import PersistenceError, SequenceConflictError
from auditchain.app.core.logging import get_logger
from auditchain.app.models.audit_orm import AuditLogRecordORM
from auditchain.app.schemas.audit import AuditLogRecord, RecordFilter

logger = get_logger(__name__)


class AuditRecordRepository:
    """Repository for AuditLogRecord storage."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_tail(self) -> Optional[Tuple[int, str]]:
        """(sequence_number, integrity_hash) of the newest record, or None for an empty ledger."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(AuditLogRecordORM.sequence_number, AuditLogRecordORM.integrity_hash)
                .order_by(desc(AuditLogRecordORM.sequence_number))
                .limit(1)
            )
            row = result.first()
        if row is None:
            return None
        return row.sequence_number, row.integrity_hash

    async def insert(self, record: AuditLogRecord) -> None:
        """
        Persist one record atomically.

        Raises SequenceConflictError when the store already holds this sequence
        number or a record chained to the same predecessor, PersistenceError for
        any other storage failure.
        """
        orm_obj = self._record_to_orm(record)
        async with self.session_factory() as session:
            try:
                session.add(orm_obj)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise SequenceConflictError(
                    f"Sequence {record.sequence_number} rejected by store: {e.orig}"
                ) from e
            except (SQLAlchemyError, OSError) as e:
                await session.rollback()
                raise PersistenceError(
                    f"Failed to persist audit record {record.sequence_number}: {e}"
                ) from e

    async def get(self, sequence_number: int) -> Optional[AuditLogRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AuditLogRecordORM).where(AuditLogRecordORM.sequence_number == sequence_number)
            )
            orm_obj = result.scalar_one_or_none()
        return self._orm_to_record(orm_obj) if orm_obj is not None else None

    async def list_range(
        self,
        start_sequence: Optional[int] = None,
        end_sequence: Optional[int] = None,
    ) -> List[AuditLogRecord]:
        """Records in [start, end], ascending by sequence number."""
        conditions = []
        if start_sequence is not None:
            conditions.append(AuditLogRecordORM.sequence_number >= start_sequence)
        if end_sequence is not None:
            conditions.append(AuditLogRecordORM.sequence_number <= end_sequence)

        stmt = select(AuditLogRecordORM).order_by(asc(AuditLogRecordORM.sequence_number))
        if conditions:
            stmt = stmt.where(and_(*conditions))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [self._orm_to_record(r) for r in rows]

    async def list_records(self, record_filter: RecordFilter) -> List[AuditLogRecord]:
        """Filtered, paginated listing ordered by sequence number."""
        order = asc if record_filter.sort_order == "asc" else desc
        stmt = (
            select(AuditLogRecordORM)
            .order_by(order(AuditLogRecordORM.sequence_number))
            .limit(record_filter.limit)
            .offset(record_filter.offset)
        )
        conditions = self._conditions(record_filter)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [self._orm_to_record(r) for r in rows]

    async def scan(self, record_filter: RecordFilter) -> List[AuditLogRecord]:
        """Every matching record in ledger order, ignoring pagination."""
        stmt = select(AuditLogRecordORM).order_by(asc(AuditLogRecordORM.sequence_number))
        conditions = self._conditions(record_filter)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [self._orm_to_record(r) for r in rows]

    async def count_records(self, record_filter: RecordFilter) -> int:
        stmt = select(func.count()).select_from(AuditLogRecordORM)
        conditions = self._conditions(record_filter)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar() or 0)

    @staticmethod
    def _conditions(f: RecordFilter) -> list:
        conditions = []
        if f.user_id is not None:
            conditions.append(AuditLogRecordORM.user_id == f.user_id)
        if f.action is not None:
            conditions.append(AuditLogRecordORM.action == f.action.value)
        if f.resource is not None:
            conditions.append(AuditLogRecordORM.resource == f.resource)
        if f.event_type is not None:
            conditions.append(AuditLogRecordORM.event_type == f.event_type.value)
        if f.data_classification is not None:
            conditions.append(AuditLogRecordORM.data_classification == f.data_classification.value)
        if f.phi_accessed is not None:
            conditions.append(AuditLogRecordORM.phi_accessed == f.phi_accessed)
        if f.min_risk_score is not None:
            conditions.append(AuditLogRecordORM.risk_score >= f.min_risk_score)
        if f.min_anomaly_score is not None:
            conditions.append(AuditLogRecordORM.anomaly_score >= f.min_anomaly_score)
        if f.min_escalation_level is not None:
            conditions.append(AuditLogRecordORM.escalation_level >= f.min_escalation_level)
        if f.max_escalation_level is not None:
            conditions.append(AuditLogRecordORM.escalation_level <= f.max_escalation_level)
        if f.start_date is not None:
            conditions.append(AuditLogRecordORM.timestamp >= f.start_date)
        if f.end_date is not None:
            conditions.append(AuditLogRecordORM.timestamp <= f.end_date)
        if f.start_sequence is not None:
            conditions.append(AuditLogRecordORM.sequence_number >= f.start_sequence)
        if f.end_sequence is not None:
            conditions.append(AuditLogRecordORM.sequence_number <= f.end_sequence)
        if f.has_threats is not None:
            # json_array_length exists in both SQLite (JSON1) and PostgreSQL
            empty = func.json_array_length(AuditLogRecordORM.threat_indicators) == 0
            conditions.append(~empty if f.has_threats else empty)
        return conditions

    @staticmethod
    def _record_to_orm(record: AuditLogRecord) -> AuditLogRecordORM:
        return AuditLogRecordORM(
            sequence_number=record.sequence_number,
            timestamp=record.timestamp,
            user_id=record.user_id,
            action=record.action.value,
            resource=record.resource,
            resource_id=record.resource_id,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            event_type=record.event_type.value,
            data_classification=record.data_classification.value,
            phi_accessed=record.phi_accessed,
            status_code=record.status_code,
            description=record.description,
            session_id=record.session_id,
            request_id=record.request_id,
            http_method=record.http_method,
            endpoint=record.endpoint,
            event_metadata=record.metadata,
            integrity_hash=record.integrity_hash,
            previous_log_hash=record.previous_log_hash,
            digital_signature=record.digital_signature,
            key_version=record.key_version,
            anomaly_score=record.anomaly_score,
            risk_score=record.risk_score,
            threat_indicators=list(record.threat_indicators),
            escalation_level=record.escalation_level,
            server_instance=record.server_instance,
            application_version=record.application_version,
        )

    @staticmethod
    def _orm_to_record(orm_obj: AuditLogRecordORM) -> AuditLogRecord:
        timestamp = orm_obj.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        fields = dict(
            sequence_number=orm_obj.sequence_number,
            timestamp=timestamp,
            user_id=orm_obj.user_id,
            action=orm_obj.action,
            resource=orm_obj.resource,
            resource_id=orm_obj.resource_id,
            ip_address=orm_obj.ip_address,
            user_agent=orm_obj.user_agent,
            event_type=orm_obj.event_type,
            data_classification=orm_obj.data_classification,
            phi_accessed=orm_obj.phi_accessed,
            status_code=orm_obj.status_code,
            description=orm_obj.description,
            session_id=orm_obj.session_id,
            request_id=orm_obj.request_id,
            http_method=orm_obj.http_method,
            endpoint=orm_obj.endpoint,
            metadata=orm_obj.event_metadata,
            integrity_hash=orm_obj.integrity_hash,
            previous_log_hash=orm_obj.previous_log_hash,
            digital_signature=orm_obj.digital_signature,
            key_version=orm_obj.key_version,
            anomaly_score=orm_obj.anomaly_score,
            risk_score=orm_obj.risk_score,
            threat_indicators=list(orm_obj.threat_indicators or []),
            escalation_level=orm_obj.escalation_level,
            server_instance=orm_obj.server_instance,
            application_version=orm_obj.application_version,
        )
        try:
            return AuditLogRecord(**fields)
        except ValidationError as e:
            # Stored row no longer fits the schema (edited out of band). Return it
            # unvalidated so the verifier can still hash it and flag the break.
            logger.warning(f"Audit record {orm_obj.sequence_number} fails schema validation: {e.error_count()} error(s)")
            return AuditLogRecord.model_construct(**fields)
