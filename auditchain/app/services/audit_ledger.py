"""
AuditLedger - the single entry point other services use to talk to the ledger.

Wires the writer, verifier, baseline store and reporting queries around one
repository and one sequence allocator. Build it once per process with
build_audit_ledger() and share it (the API keeps it on app.state).
"""
import asyncio
from datetime import datetime
from typing import Callable, List, Literal, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.app.core.config import Settings, get_settings
from auditchain.app.core.keys import AuditKeyRing, build_key_ring
from auditchain.app.core.logging import get_logger
from auditchain.app.schemas.audit import (
    AuditLogRecord,
    BehavioralBaseline,
    IntegrityCheckResult,
    IntegrityReport,
    RecordFilter,
    SecurityAlertFeed,
    ThreatSummary,
    UserBehaviorAnalytics,
)
from auditchain.app.services.alerting import AlertEmitter
from auditchain.app.services.audit_reporting import AuditReporting
from auditchain.app.services.audit_repository import AuditRecordRepository
from auditchain.app.services.baseline_store import BaselineStore
from auditchain.app.services.integrity_verifier import IntegrityVerifier
from auditchain.app.services.ledger_writer import EventInput, LedgerWriter
from auditchain.app.services.sequence_allocator import SequenceAllocator

logger = get_logger(__name__)


class AuditLedger:

    def __init__(
        self,
        repository: AuditRecordRepository,
        allocator: SequenceAllocator,
        writer: LedgerWriter,
        verifier: IntegrityVerifier,
        baselines: BaselineStore,
        reporting: AuditReporting,
    ):
        self.repository = repository
        self.allocator = allocator
        self.writer = writer
        self.verifier = verifier
        self.baselines = baselines
        self.reporting = reporting

    async def initialize(self) -> None:
        """Prime the sequence allocator from the store tail."""
        await self.allocator.initialize()

    # Write side

    async def record_event(self, event: EventInput) -> AuditLogRecord:
        return await self.writer.append(event)

    # Read side

    async def list_records(self, record_filter: Optional[RecordFilter] = None) -> List[AuditLogRecord]:
        return await self.repository.list_records(record_filter or RecordFilter())

    async def count_records(self, record_filter: Optional[RecordFilter] = None) -> int:
        return await self.repository.count_records(record_filter or RecordFilter())

    async def get_record(self, sequence_number: int) -> Optional[AuditLogRecord]:
        return await self.repository.get(sequence_number)

    async def verify(
        self,
        start_sequence: Optional[int] = None,
        end_sequence: Optional[int] = None,
    ) -> IntegrityCheckResult:
        return await self.verifier.verify(start_sequence, end_sequence)

    # Baselines

    async def get_baseline(self, user_id: str) -> Optional[BehavioralBaseline]:
        return await self.baselines.get(user_id)

    async def reset_baselines(self, user_id: Optional[str] = None) -> None:
        await self.baselines.reset(user_id)

    async def rebuild_baseline(self, user_id: str) -> Optional[BehavioralBaseline]:
        """Replay the user's ledger history into a fresh baseline."""
        records = await self.repository.scan(RecordFilter(user_id=user_id))
        history = [(record, self.writer.local_hour(record.timestamp)) for record in records]
        return await self.baselines.rebuild(user_id, history)

    # Reporting

    async def integrity_report(self, days: int = 30) -> IntegrityReport:
        return await self.reporting.integrity_report(days)

    async def threat_summary(self, days: int = 7) -> ThreatSummary:
        return await self.reporting.threat_summary(days)

    async def user_behavior(self, user_id: str, days: int = 30) -> UserBehaviorAnalytics:
        return await self.reporting.user_behavior(user_id, days)

    async def security_alerts(
        self,
        limit: int = 50,
        severity: Optional[Literal["high", "medium"]] = None,
    ) -> SecurityAlertFeed:
        return await self.reporting.security_alerts(limit, severity)


def build_audit_ledger(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    key_ring: Optional[AuditKeyRing] = None,
    bus: Optional[asyncio.Queue] = None,
    baselines: Optional[BaselineStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> AuditLedger:
    """Assemble a ledger from settings. Call initialize() before the first append."""
    settings = settings or get_settings()
    key_ring = key_ring or build_key_ring(settings)
    baselines = baselines or BaselineStore()

    repository = AuditRecordRepository(session_factory)
    allocator = SequenceAllocator(repository)
    verifier = IntegrityVerifier(repository, key_ring)
    alerts = AlertEmitter(
        risk_threshold=settings.alert_risk_threshold,
        anomaly_threshold=settings.alert_anomaly_threshold,
        bus=bus,
    )
    writer = LedgerWriter(
        repository=repository,
        allocator=allocator,
        key_ring=key_ring,
        baselines=baselines,
        alerts=alerts,
        server_instance=settings.server_instance,
        application_version=settings.app_version,
        timezone_name=settings.audit_timezone,
        max_attempts=settings.ledger_max_append_attempts,
        retry_backoff=settings.ledger_retry_backoff_seconds,
        clock=clock,
    )
    reporting = AuditReporting(
        repository=repository,
        verifier=verifier,
        baselines=baselines,
        timezone_name=settings.audit_timezone,
        clock=clock,
    )
    logger.info(f"Audit ledger assembled (instance={settings.server_instance}, key={key_ring.active_version})")
    return AuditLedger(repository, allocator, writer, verifier, baselines, reporting)
