"""
Audit Ledger API Router.

Append, query and verify the tamper-evident audit ledger, and read the recent
security alert feed. Verification and reporting calls are themselves recorded
in the ledger (INTEGRITY_CHECK, THREAT_ANALYSIS, USER_ANALYSIS) so that
compliance reviews leave a trail.
"""
import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Security, status

from auditchain.app.core.exceptions import (
    AuditLedgerError,
    EventValidationError,
    PersistenceError,
    ScoringFault,
)
from auditchain.app.core.security import AUDIT_READ, AUDIT_VERIFY, AUDIT_WRITE, User, get_current_user
from auditchain.app.schemas.audit import (
    DESCRIPTION_MAX_LENGTH,
    ENDPOINT_MAX_LENGTH,
    IDENTIFIER_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    AuditAction,
    AuditEvent,
    AuditLogRecord,
    BehavioralBaseline,
    DataClassification,
    EventType,
    IntegrityCheckResult,
    IntegrityReport,
    RecordFilter,
    SecurityAlertFeed,
    ThreatSummary,
    UserBehaviorAnalytics,
    VerifyRequest,
    clip,
)
from auditchain.app.services.audit_ledger import AuditLedger

logger = logging.getLogger(__name__)
router = APIRouter()


def get_audit_ledger(request: Request) -> AuditLedger:
    ledger = getattr(request.app.state, "audit_ledger", None)
    if ledger is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Audit ledger not initialized")
    return ledger


def _http_error(e: AuditLedgerError) -> HTTPException:
    if isinstance(e, EventValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors or str(e))
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Audit record could not be persisted")
    if isinstance(e, ScoringFault):
        logger.error(f"Scoring fault: {e}", exc_info=True)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Audit ledger error")


async def _self_audit(
    ledger: AuditLedger,
    request: Request,
    user: User,
    action: AuditAction,
    resource: str,
    description: str,
    data_classification: DataClassification,
    resource_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """
    Record that an administrative read of the ledger happened.

    Header and path values are clipped to the column widths; anything else the
    ledger rejects comes back as EventValidationError.
    """
    await ledger.record_event({
        "user_id": user.username,
        "action": action,
        "resource": resource,
        "resource_id": clip(resource_id, IDENTIFIER_MAX_LENGTH),
        "ip_address": request.client.host if request.client else None,
        "user_agent": clip(request.headers.get("User-Agent"), USER_AGENT_MAX_LENGTH),
        "event_type": EventType.ADMIN_ACTION,
        "data_classification": data_classification,
        "description": clip(description, DESCRIPTION_MAX_LENGTH),
        "http_method": request.method,
        "endpoint": clip(request.url.path, ENDPOINT_MAX_LENGTH),
        "metadata": metadata,
    })


def record_filter_params(
    user_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    resource: Optional[str] = None,
    event_type: Optional[EventType] = None,
    data_classification: Optional[DataClassification] = None,
    phi_accessed: Optional[bool] = None,
    min_risk_score: Optional[int] = Query(None, ge=0, le=100),
    min_anomaly_score: Optional[int] = Query(None, ge=0, le=100),
    min_escalation_level: Optional[int] = Query(None, ge=0, le=3),
    max_escalation_level: Optional[int] = Query(None, ge=0, le=3),
    has_threats: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    start_sequence: Optional[int] = Query(None, ge=1),
    end_sequence: Optional[int] = Query(None, ge=1),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    sort_order: Literal["asc", "desc"] = "desc",
) -> RecordFilter:
    return RecordFilter(
        user_id=user_id,
        action=action,
        resource=resource,
        event_type=event_type,
        data_classification=data_classification,
        phi_accessed=phi_accessed,
        min_risk_score=min_risk_score,
        min_anomaly_score=min_anomaly_score,
        min_escalation_level=min_escalation_level,
        max_escalation_level=max_escalation_level,
        has_threats=has_threats,
        start_date=start_date,
        end_date=end_date,
        start_sequence=start_sequence,
        end_sequence=end_sequence,
        limit=limit,
        offset=offset,
        sort_order=sort_order,
    )


@router.post("/records", response_model=AuditLogRecord, status_code=201)
async def append_record(
    event: AuditEvent,
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_WRITE]),
):
    """Append one event. Returns the chained, signed and scored record."""
    try:
        return await ledger.record_event(event)
    except AuditLedgerError as e:
        raise _http_error(e)


@router.get("/records", response_model=List[AuditLogRecord])
async def list_records(
    record_filter: RecordFilter = Depends(record_filter_params),
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_READ]),
):
    return await ledger.list_records(record_filter)


@router.get("/records/{sequence_number}", response_model=AuditLogRecord)
async def get_record(
    sequence_number: int,
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_READ]),
):
    record = await ledger.get_record(sequence_number)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Audit record {sequence_number} not found")
    return record


@router.get("/baselines/{user_id}", response_model=BehavioralBaseline)
async def get_baseline(
    user_id: str,
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_READ]),
):
    baseline = await ledger.get_baseline(user_id)
    if baseline is None:
        raise HTTPException(status_code=404, detail=f"No behavioural baseline for user {user_id}")
    return baseline


@router.post("/baselines/{user_id}/rebuild", response_model=Optional[BehavioralBaseline])
async def rebuild_baseline(
    user_id: str,
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_VERIFY]),
):
    """Recompute a user's baseline from their ledger history."""
    return await ledger.rebuild_baseline(user_id)


@router.delete("/baselines/{user_id}", status_code=204)
async def reset_baseline(
    user_id: str,
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_VERIFY]),
):
    await ledger.reset_baselines(user_id)


@router.post("/verify", response_model=IntegrityCheckResult)
async def verify_chain(
    request: Request,
    payload: Optional[VerifyRequest] = None,
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_VERIFY]),
):
    """
    Verify the chain over an optional sequence range.

    A broken chain is a 200 with is_valid=false: tampering is a finding, not an error.
    """
    payload = payload or VerifyRequest()
    result = await ledger.verify(payload.start_sequence, payload.end_sequence)

    try:
        await _self_audit(
            ledger, request, current_user,
            action=AuditAction.INTEGRITY_CHECK,
            resource="audit_logs",
            description="Integrity verification performed",
            data_classification=DataClassification.INTERNAL,
            metadata={
                "start_sequence": payload.start_sequence,
                "end_sequence": payload.end_sequence,
                "result_valid": result.is_valid,
                "issues_found": len(result.issues),
            },
        )
    except AuditLedgerError as e:
        raise _http_error(e)
    return result


@router.get("/reports/integrity", response_model=IntegrityReport)
async def integrity_report(
    request: Request,
    days: int = Query(30, ge=1, le=3650),
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_READ]),
):
    report = await ledger.integrity_report(days)
    try:
        await _self_audit(
            ledger, request, current_user,
            action=AuditAction.INTEGRITY_CHECK,
            resource="audit_reports",
            description=f"Generated integrity report for {days} days",
            data_classification=DataClassification.CONFIDENTIAL,
            metadata={
                "report_days": days,
                "total_logs": report.total_logs,
                "high_risk_events": report.high_risk_events,
                "anomalous_events": report.anomalous_events,
            },
        )
    except AuditLedgerError as e:
        raise _http_error(e)
    return report


@router.get("/reports/threats", response_model=ThreatSummary)
async def threat_summary(
    request: Request,
    days: int = Query(7, ge=1, le=3650),
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_READ]),
):
    summary = await ledger.threat_summary(days)
    try:
        await _self_audit(
            ledger, request, current_user,
            action=AuditAction.THREAT_ANALYSIS,
            resource="security_monitoring",
            description=f"Generated threat detection summary for {days} days",
            data_classification=DataClassification.RESTRICTED,
            metadata={
                "analysis_days": days,
                "threats_found": summary.total_threats,
                "risk_events": summary.high_risk_events,
            },
        )
    except AuditLedgerError as e:
        raise _http_error(e)
    return summary


@router.get("/reports/users/{user_id}", response_model=UserBehaviorAnalytics)
async def user_behavior(
    user_id: str,
    request: Request,
    days: int = Query(30, ge=1, le=3650),
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_READ]),
):
    analytics = await ledger.user_behavior(user_id, days)
    try:
        await _self_audit(
            ledger, request, current_user,
            action=AuditAction.USER_ANALYSIS,
            resource="user_behavior",
            resource_id=user_id,
            description=f"Generated behavior analytics for user {user_id}",
            data_classification=DataClassification.CONFIDENTIAL,
            metadata={
                "analyzed_user": user_id,
                "analysis_days": days,
                "total_actions": analytics.total_actions,
                "risk_events": analytics.high_risk_actions,
            },
        )
    except AuditLedgerError as e:
        raise _http_error(e)
    return analytics


@router.get("/alerts", response_model=SecurityAlertFeed)
async def security_alerts(
    limit: int = Query(50, ge=1, le=500),
    severity: Optional[Literal["high", "medium"]] = None,
    ledger: AuditLedger = Depends(get_audit_ledger),
    current_user: User = Security(get_current_user, scopes=[AUDIT_READ]),
):
    """Escalated records from the last 24 hours for the security dashboard."""
    return await ledger.security_alerts(limit, severity)
