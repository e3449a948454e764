"""
Audit Ledger Schemas and Enums.

Shared contract between the ledger services, the HTTP API and the
collaborators that record events (session, notes, payments, files, retention).
Enum values are part of the hashed payload of historic records:
DO NOT rename or re-spell existing members.
"""
import uuid
from enum import Enum
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    USER_ACTION = "user_action"
    SYSTEM_EVENT = "system_event"
    SECURITY_EVENT = "security_event"
    DATA_ACCESS = "data_access"
    ADMIN_ACTION = "admin_action"


class DataClassification(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


class AuditAction(str, Enum):
    """Verbs the ledger accepts. Unknown verbs are rejected before allocation."""
    READ = "READ"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    ADMIN_ACCESS = "ADMIN_ACCESS"
    PERMISSION_CHANGE = "PERMISSION_CHANGE"
    EXPORT = "EXPORT"
    DATA_EXPORT = "DATA_EXPORT"
    PHI_ACCESS = "PHI_ACCESS"
    SECURITY_EVENT = "SECURITY_EVENT"
    INTEGRITY_CHECK = "INTEGRITY_CHECK"
    THREAT_ANALYSIS = "THREAT_ANALYSIS"
    USER_ANALYSIS = "USER_ANALYSIS"
    DATA_DELETION = "DATA_DELETION"


# Column widths shared by the schema and the ORM
IDENTIFIER_MAX_LENGTH = 255
USER_AGENT_MAX_LENGTH = 512
ENDPOINT_MAX_LENGTH = 1024
DESCRIPTION_MAX_LENGTH = 2000


def clip(value: Optional[str], max_length: int) -> Optional[str]:
    """Truncate request-derived text to a column width."""
    if value is None:
        return None
    return value[:max_length]


class AuditEvent(BaseModel):
    """A security-relevant event handed to the ledger. Never persisted as-is."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    user_id: Optional[str] = Field(None, max_length=IDENTIFIER_MAX_LENGTH)  # None for system events
    action: AuditAction
    resource: str = Field(..., min_length=1, max_length=IDENTIFIER_MAX_LENGTH)
    resource_id: Optional[str] = Field(None, max_length=IDENTIFIER_MAX_LENGTH)
    ip_address: Optional[str] = Field(None, max_length=64)
    user_agent: Optional[str] = Field(None, max_length=USER_AGENT_MAX_LENGTH)
    event_type: EventType = EventType.USER_ACTION
    data_classification: DataClassification = DataClassification.INTERNAL
    phi_accessed: bool = False
    status_code: Optional[int] = Field(None, ge=100, le=599)

    # Context, stored but not hashed
    description: Optional[str] = Field(None, max_length=DESCRIPTION_MAX_LENGTH)
    session_id: Optional[str] = Field(None, max_length=IDENTIFIER_MAX_LENGTH)
    request_id: Optional[str] = Field(None, max_length=IDENTIFIER_MAX_LENGTH)
    http_method: Optional[str] = Field(None, max_length=16)
    endpoint: Optional[str] = Field(None, max_length=ENDPOINT_MAX_LENGTH)
    metadata: Optional[Dict[str, Any]] = None


class AuditLogRecord(AuditEvent):
    """A persisted, chained and signed ledger entry. Immutable."""

    timestamp: datetime
    sequence_number: int = Field(..., ge=1)
    integrity_hash: str
    previous_log_hash: str = ""  # empty for sequence 1
    digital_signature: str
    key_version: str
    anomaly_score: int = Field(..., ge=0, le=100)
    risk_score: int = Field(..., ge=0, le=100)
    threat_indicators: List[str] = []
    escalation_level: int = Field(..., ge=0, le=3)
    server_instance: str
    application_version: str


class RiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    anomaly_score: int
    risk_score: int
    threat_indicators: List[str] = []
    escalation_level: int


class BehavioralBaseline(BaseModel):
    """
    Rolling per-user activity profile.

    Advisory only: it widens or narrows anomaly scoring and is never used to
    authorise or deny anything.
    """
    user_id: str
    normal_hours: List[int] = Field(..., min_length=2, max_length=2)  # [start, end], 24h
    normal_locations: List[str] = []   # capped at 5, FIFO
    typical_actions: List[str] = []    # capped at 10, FIFO
    avg_session_duration: float = 30.0  # minutes
    avg_requests_per_session: float = 10.0
    event_count: int = 0
    updated_at: Optional[datetime] = None


class IntegrityCheckResult(BaseModel):
    is_valid: bool
    issues: List[str] = []
    last_valid_sequence: Optional[int] = None
    broken_chain_at: Optional[int] = None
    checked_records: int = 0


class RecordFilter(BaseModel):
    """Query filter for the reporting surface."""
    user_id: Optional[str] = None
    action: Optional[AuditAction] = None
    resource: Optional[str] = None
    event_type: Optional[EventType] = None
    data_classification: Optional[DataClassification] = None
    phi_accessed: Optional[bool] = None
    min_risk_score: Optional[int] = Field(None, ge=0, le=100)
    min_anomaly_score: Optional[int] = Field(None, ge=0, le=100)
    min_escalation_level: Optional[int] = Field(None, ge=0, le=3)
    max_escalation_level: Optional[int] = Field(None, ge=0, le=3)
    has_threats: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    start_sequence: Optional[int] = Field(None, ge=1)
    end_sequence: Optional[int] = Field(None, ge=1)
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)
    sort_order: Literal["asc", "desc"] = "desc"


class SecurityAlert(BaseModel):
    """Payload handed to the notification collaborator."""
    alert_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    alert_type: str = "SECURITY_ALERT"
    severity: Literal["HIGH", "MEDIUM"]
    sequence_number: int
    user_id: Optional[str] = None
    action: str
    resource: str
    ip_address: Optional[str] = None
    risk_score: int
    anomaly_score: int
    threat_indicators: List[str] = []
    escalation_level: int
    timestamp: datetime


class VerifyRequest(BaseModel):
    start_sequence: Optional[int] = Field(None, ge=1)
    end_sequence: Optional[int] = Field(None, ge=1)


class IntegrityReport(BaseModel):
    window_days: int
    generated_at: datetime
    total_logs: int
    high_risk_events: int
    anomalous_events: int
    threat_indicator_summary: Dict[str, int] = {}
    integrity_checks: IntegrityCheckResult


class ThreatIndicatorStat(BaseModel):
    indicator: str
    count: int
    avg_risk_score: float
    latest_occurrence: datetime


class ThreatSummary(BaseModel):
    window_days: int
    start_date: datetime
    end_date: datetime
    total_threats: int
    high_risk_events: int
    anomalous_events: int
    unique_threat_types: int
    threat_indicators: List[ThreatIndicatorStat] = []
    recent_threats: List[AuditLogRecord] = []
    highest_risk_events: List[AuditLogRecord] = []
    most_anomalous_events: List[AuditLogRecord] = []


class UserBehaviorAnalytics(BaseModel):
    user_id: str
    window_days: int
    total_actions: int
    average_risk_score: float
    average_anomaly_score: float
    hourly_activity: List[int]
    daily_activity: Dict[str, int] = {}
    action_breakdown: Dict[str, int] = {}
    resource_breakdown: Dict[str, int] = {}
    high_risk_actions: int
    anomalous_actions: int
    recent_threat_indicators: List[str] = []
    baseline: Optional[BehavioralBaseline] = None


class SecurityAlertFeed(BaseModel):
    """Escalated records from a recent window, most severe first."""
    window_hours: int
    severity: Optional[Literal["high", "medium"]] = None
    total_alerts: int
    high_severity: int
    medium_severity: int
    alerts: List[AuditLogRecord] = []
