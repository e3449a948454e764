"""
Audit Reporting - read-side summaries over the ledger.

Integrity report, threat detection summary, per-user behaviour analytics and
the recent security alert feed.
All queries are read-only; the HTTP layer records the act of reporting itself
as a ledger event.
"""
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo

from auditchain.app.schemas.audit import (
    IntegrityReport,
    RecordFilter,
    SecurityAlertFeed,
    ThreatIndicatorStat,
    ThreatSummary,
    UserBehaviorAnalytics,
)
from auditchain.app.services.audit_repository import AuditRecordRepository
from auditchain.app.services.baseline_store import BaselineStore
from auditchain.app.services.integrity_verifier import IntegrityVerifier

HIGH_RISK_SCORE = 70
ANOMALOUS_SCORE = 80

RECENT_THREATS_LIMIT = 20
TOP_EVENTS_LIMIT = 10

ALERT_WINDOW_HOURS = 24
HIGH_SEVERITY_LEVEL = 3

# severity -> (min, max) escalation level
SEVERITY_LEVELS = {
    None: (1, 3),
    "high": (HIGH_SEVERITY_LEVEL, 3),
    "medium": (1, HIGH_SEVERITY_LEVEL - 1),
}


class AuditReporting:

    def __init__(
        self,
        repository: AuditRecordRepository,
        verifier: IntegrityVerifier,
        baselines: BaselineStore,
        timezone_name: str = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.verifier = verifier
        self.baselines = baselines
        self.zone = ZoneInfo(timezone_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _window_start(self, days: int) -> datetime:
        return self._clock() - timedelta(days=days)

    async def integrity_report(self, days: int = 30) -> IntegrityReport:
        """Volume, risk counts and threat tallies for the window, plus a full-chain verification."""
        since = self._window_start(days)

        total_logs = await self.repository.count_records(RecordFilter(start_date=since))
        high_risk = await self.repository.count_records(
            RecordFilter(start_date=since, min_risk_score=HIGH_RISK_SCORE)
        )
        anomalous = await self.repository.count_records(
            RecordFilter(start_date=since, min_anomaly_score=ANOMALOUS_SCORE)
        )

        tally: Counter = Counter()
        for record in await self.repository.scan(RecordFilter(start_date=since, has_threats=True)):
            tally.update(record.threat_indicators)

        integrity = await self.verifier.verify()

        return IntegrityReport(
            window_days=days,
            generated_at=self._clock(),
            total_logs=total_logs,
            high_risk_events=high_risk,
            anomalous_events=anomalous,
            threat_indicator_summary=dict(tally),
            integrity_checks=integrity,
        )

    async def threat_summary(self, days: int = 7) -> ThreatSummary:
        since = self._window_start(days)

        threat_logs = await self.repository.list_records(
            RecordFilter(start_date=since, has_threats=True, limit=100, sort_order="desc")
        )
        high_risk = await self.repository.scan(RecordFilter(start_date=since, min_risk_score=HIGH_RISK_SCORE))
        high_risk.sort(key=lambda r: (r.risk_score, r.sequence_number), reverse=True)
        suspicious = await self.repository.scan(RecordFilter(start_date=since, min_anomaly_score=ANOMALOUS_SCORE))
        suspicious.sort(key=lambda r: (r.anomaly_score, r.sequence_number), reverse=True)

        # Unwind indicators across every threat record in the window, not just the newest 100
        grouped: Dict[str, list] = defaultdict(list)
        for record in await self.repository.scan(RecordFilter(start_date=since, has_threats=True)):
            for indicator in record.threat_indicators:
                grouped[indicator].append(record)

        stats: List[ThreatIndicatorStat] = [
            ThreatIndicatorStat(
                indicator=indicator,
                count=len(records),
                avg_risk_score=round(sum(r.risk_score for r in records) / len(records), 2),
                latest_occurrence=max(r.timestamp for r in records),
            )
            for indicator, records in grouped.items()
        ]
        stats.sort(key=lambda s: s.count, reverse=True)

        return ThreatSummary(
            window_days=days,
            start_date=since,
            end_date=self._clock(),
            total_threats=len(threat_logs),
            high_risk_events=len(high_risk),
            anomalous_events=len(suspicious),
            unique_threat_types=len(stats),
            threat_indicators=stats,
            recent_threats=threat_logs[:RECENT_THREATS_LIMIT],
            highest_risk_events=high_risk[:TOP_EVENTS_LIMIT],
            most_anomalous_events=suspicious[:TOP_EVENTS_LIMIT],
        )

    async def user_behavior(self, user_id: str, days: int = 30) -> UserBehaviorAnalytics:
        since = self._window_start(days)
        records = await self.repository.scan(RecordFilter(user_id=user_id, start_date=since))

        hourly = [0] * 24
        daily: Counter = Counter()
        actions: Counter = Counter()
        resources: Counter = Counter()
        indicators: List[str] = []

        for record in records:
            local = record.timestamp.astimezone(self.zone)
            hourly[local.hour] += 1
            daily[local.date().isoformat()] += 1
            actions[getattr(record.action, "value", record.action)] += 1
            resources[record.resource] += 1
            for indicator in record.threat_indicators:
                if indicator not in indicators:
                    indicators.append(indicator)

        total = len(records)
        return UserBehaviorAnalytics(
            user_id=user_id,
            window_days=days,
            total_actions=total,
            average_risk_score=round(sum(r.risk_score for r in records) / total, 2) if total else 0.0,
            average_anomaly_score=round(sum(r.anomaly_score for r in records) / total, 2) if total else 0.0,
            hourly_activity=hourly,
            daily_activity=dict(daily),
            action_breakdown=dict(actions),
            resource_breakdown=dict(resources),
            high_risk_actions=sum(1 for r in records if r.risk_score > HIGH_RISK_SCORE),
            anomalous_actions=sum(1 for r in records if r.anomaly_score > ANOMALOUS_SCORE),
            recent_threat_indicators=indicators,
            baseline=await self.baselines.get(user_id),
        )

    async def security_alerts(
        self,
        limit: int = 50,
        severity: Optional[Literal["high", "medium"]] = None,
    ) -> SecurityAlertFeed:
        """Escalated records from the last 24 hours, highest escalation first, then newest."""
        since = self._clock() - timedelta(hours=ALERT_WINDOW_HOURS)
        low, high = SEVERITY_LEVELS[severity]

        escalated = await self.repository.scan(
            RecordFilter(start_date=since, min_escalation_level=low, max_escalation_level=high)
        )
        escalated.sort(key=lambda r: (r.escalation_level, r.timestamp, r.sequence_number), reverse=True)
        alerts = escalated[:limit]

        high_severity = sum(1 for r in alerts if r.escalation_level >= HIGH_SEVERITY_LEVEL)
        return SecurityAlertFeed(
            window_hours=ALERT_WINDOW_HOURS,
            severity=severity,
            total_alerts=len(alerts),
            high_severity=high_severity,
            medium_severity=len(alerts) - high_severity,
            alerts=alerts,
        )
