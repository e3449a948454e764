"""
Risk & Anomaly Scorer.

Scores an audit event against the subject's behavioural baseline:

  anomaly  10 + 25 (off-hours) + 20 (atypical action) + 15 (high-risk verb)
              + 30 (PHI access not yet typical), clamped to 0..100
  risk     event-type base + classification weight + 20 (PHI) + 15 (failed)
              + 0.3 * anomaly, rounded half-up, clamped to 0..100

A missing baseline is normal for a new user and only drops the checks that
need one. Everything here is pure; the hour of day is passed in.
"""
import math
from typing import List, Optional

from auditchain.app.schemas.audit import (
    AuditAction,
    AuditEvent,
    BehavioralBaseline,
    DataClassification,
    EventType,
    RiskAssessment,
)

ANOMALY_FLOOR = 10
OFF_HOURS_PENALTY = 25
ATYPICAL_ACTION_PENALTY = 20
HIGH_RISK_ACTION_PENALTY = 15
UNUSUAL_PHI_PENALTY = 30

HIGH_RISK_ACTIONS = frozenset({
    AuditAction.DELETE,
    AuditAction.ADMIN_ACCESS,
    AuditAction.PERMISSION_CHANGE,
})

# Pseudo-action learned into baselines when a user touches PHI
PHI_ACCESS_MARKER = AuditAction.PHI_ACCESS.value

EVENT_TYPE_RISK = {
    EventType.SECURITY_EVENT: 40,
    EventType.ADMIN_ACTION: 30,
    EventType.DATA_ACCESS: 20,
    EventType.USER_ACTION: 10,
}
DEFAULT_EVENT_TYPE_RISK = 5

CLASSIFICATION_RISK = {
    DataClassification.RESTRICTED: 25,
    DataClassification.CONFIDENTIAL: 15,
    DataClassification.INTERNAL: 5,
    DataClassification.PUBLIC: 0,
}

PHI_RISK = 20
FAILED_REQUEST_RISK = 15
ANOMALY_RISK_WEIGHT = 0.3

# PHI touched outside 06:00-22:59 is flagged
BUSINESS_HOURS = (6, 22)

BULK_DATA_RESOURCE = "bulk_data"
EXPORT_ACTIONS = frozenset({AuditAction.EXPORT, AuditAction.DATA_EXPORT})


def _clamp(value: float, low: int = 0, high: int = 100) -> float:
    return max(low, min(high, value))


def anomaly_score(event: AuditEvent, baseline: Optional[BehavioralBaseline], hour: int) -> int:
    score = ANOMALY_FLOOR
    typical = baseline.typical_actions if baseline else []

    if baseline is not None:
        start, end = baseline.normal_hours
        if hour < start or hour > end:
            score += OFF_HOURS_PENALTY
        if event.action.value not in typical:
            score += ATYPICAL_ACTION_PENALTY

    if event.action in HIGH_RISK_ACTIONS:
        score += HIGH_RISK_ACTION_PENALTY

    if event.phi_accessed and PHI_ACCESS_MARKER not in typical:
        score += UNUSUAL_PHI_PENALTY

    return int(_clamp(score))


def risk_score(event: AuditEvent, anomaly: int) -> int:
    score = EVENT_TYPE_RISK.get(event.event_type, DEFAULT_EVENT_TYPE_RISK)
    score += CLASSIFICATION_RISK.get(event.data_classification, 0)

    if event.phi_accessed:
        score += PHI_RISK

    if event.status_code is not None and event.status_code >= 400:
        score += FAILED_REQUEST_RISK

    raw = score + anomaly * ANOMALY_RISK_WEIGHT
    # Half-up rounding: 91.5 -> 92
    return int(_clamp(math.floor(raw + 0.5)))


def threat_indicators(event: AuditEvent, hour: int) -> List[str]:
    indicators: List[str] = []

    if event.action == AuditAction.LOGIN_FAILED:
        indicators.append("FAILED_LOGIN_ATTEMPT")

    if event.action == AuditAction.ADMIN_ACCESS and event.event_type == EventType.ADMIN_ACTION:
        indicators.append("ADMIN_ACCESS_DETECTED")

    if event.action == AuditAction.READ and event.resource == BULK_DATA_RESOURCE:
        indicators.append("BULK_DATA_ACCESS")

    if event.phi_accessed and (hour < BUSINESS_HOURS[0] or hour > BUSINESS_HOURS[1]):
        indicators.append("PHI_ACCESS_UNUSUAL_TIME")

    if event.action == AuditAction.PERMISSION_CHANGE:
        indicators.append("PRIVILEGE_ESCALATION_ATTEMPT")

    if event.action in EXPORT_ACTIONS:
        indicators.append("DATA_EXPORT_ACTIVITY")

    return indicators


def escalation_level(risk: int) -> int:
    if risk > 80:
        return 3
    if risk > 60:
        return 2
    if risk > 40:
        return 1
    return 0


class RiskScorer:
    """Bundles the scoring rules into one assessment per event."""

    def assess(
        self,
        event: AuditEvent,
        baseline: Optional[BehavioralBaseline],
        hour: int,
    ) -> RiskAssessment:
        anomaly = anomaly_score(event, baseline, hour)
        risk = risk_score(event, anomaly)
        return RiskAssessment(
            anomaly_score=anomaly,
            risk_score=risk,
            threat_indicators=threat_indicators(event, hour),
            escalation_level=escalation_level(risk),
        )
