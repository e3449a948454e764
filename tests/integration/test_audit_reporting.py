from datetime import datetime, timedelta, timezone

import pytest

from auditchain.app.schemas.audit import (
    AuditAction,
    AuditEvent,
    DataClassification,
    EventType,
    RecordFilter,
)


async def _seed(ledger, clock):
    start = clock.now
    # Routine activity
    await ledger.record_event(AuditEvent(user_id="coach-1", action=AuditAction.READ, resource="notes"))
    await ledger.record_event(AuditEvent(user_id="coach-1", action=AuditAction.UPDATE, resource="notes"))
    # Threats
    clock.now = start + timedelta(hours=1)
    await ledger.record_event(AuditEvent(
        user_id="coach-1", action=AuditAction.EXPORT, resource="clients",
    ))
    await ledger.record_event(AuditEvent(
        user_id="intruder", action=AuditAction.LOGIN_FAILED, resource="authentication",
        event_type=EventType.SECURITY_EVENT, status_code=401,
    ))
    # High risk, no indicator
    await ledger.record_event(AuditEvent(
        user_id="admin-1", action=AuditAction.DELETE, resource="clients",
        event_type=EventType.ADMIN_ACTION, data_classification=DataClassification.RESTRICTED,
        phi_accessed=True,
    ))
    clock.now = start


@pytest.mark.asyncio
async def test_integrity_report(ledger, clock):
    await _seed(ledger, clock)
    report = await ledger.integrity_report(days=30)

    assert report.total_logs == 5
    assert report.high_risk_events == 1
    assert report.anomalous_events == 0
    assert report.threat_indicator_summary == {"DATA_EXPORT_ACTIVITY": 1, "FAILED_LOGIN_ATTEMPT": 1}
    assert report.integrity_checks.is_valid


@pytest.mark.asyncio
async def test_reports_respect_window(ledger, clock):
    await _seed(ledger, clock)
    clock.now = clock.now + timedelta(days=10)

    assert (await ledger.integrity_report(days=7)).total_logs == 0
    assert (await ledger.integrity_report(days=30)).total_logs == 5


@pytest.mark.asyncio
async def test_threat_summary(ledger, clock):
    await _seed(ledger, clock)
    summary = await ledger.threat_summary(days=7)

    assert summary.total_threats == 2
    assert summary.unique_threat_types == 2
    assert summary.high_risk_events == 1
    assert summary.highest_risk_events[0].user_id == "admin-1"
    # Newest first
    assert [r.sequence_number for r in summary.recent_threats] == [4, 3]

    stats = {s.indicator: s for s in summary.threat_indicators}
    assert stats["FAILED_LOGIN_ATTEMPT"].count == 1
    assert stats["FAILED_LOGIN_ATTEMPT"].latest_occurrence == datetime(2024, 5, 1, 11, 0, 0, 123000, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_user_behavior(ledger, clock):
    await _seed(ledger, clock)
    analytics = await ledger.user_behavior("coach-1", days=30)

    assert analytics.total_actions == 3
    assert analytics.hourly_activity[10] == 2
    assert analytics.hourly_activity[11] == 1
    assert sum(analytics.hourly_activity) == 3
    assert analytics.daily_activity == {"2024-05-01": 3}
    assert analytics.action_breakdown == {"READ": 1, "UPDATE": 1, "EXPORT": 1}
    assert analytics.resource_breakdown == {"notes": 2, "clients": 1}
    assert analytics.recent_threat_indicators == ["DATA_EXPORT_ACTIVITY"]
    assert analytics.baseline.user_id == "coach-1"


@pytest.mark.asyncio
async def test_user_behavior_for_unknown_user(ledger):
    analytics = await ledger.user_behavior("nobody", days=30)
    assert analytics.total_actions == 0
    assert analytics.average_risk_score == 0.0
    assert analytics.hourly_activity == [0] * 24
    assert analytics.baseline is None


@pytest.mark.asyncio
async def test_list_records_filters(ledger, clock):
    await _seed(ledger, clock)

    by_user = await ledger.list_records(RecordFilter(user_id="coach-1", sort_order="asc"))
    assert [r.sequence_number for r in by_user] == [1, 2, 3]

    threats = await ledger.list_records(RecordFilter(has_threats=True))
    assert [r.sequence_number for r in threats] == [4, 3]

    calm = await ledger.list_records(RecordFilter(has_threats=False))
    assert {r.sequence_number for r in calm} == {1, 2, 5}

    risky = await ledger.list_records(RecordFilter(min_risk_score=71))
    assert [r.user_id for r in risky] == ["admin-1"]

    page = await ledger.list_records(RecordFilter(limit=2, offset=1))
    assert [r.sequence_number for r in page] == [4, 3]

    phi = await ledger.list_records(RecordFilter(phi_accessed=True))
    assert len(phi) == 1

    by_range = await ledger.list_records(RecordFilter(start_sequence=2, end_sequence=3, sort_order="asc"))
    assert [r.sequence_number for r in by_range] == [2, 3]

    assert await ledger.count_records(RecordFilter(action=AuditAction.DELETE)) == 1


@pytest.mark.asyncio
async def test_security_alert_feed(ledger, clock):
    await _seed(ledger, clock)
    feed = await ledger.security_alerts()

    # Most escalated first: admin delete (level 3), then the failed login (level 2)
    assert [r.user_id for r in feed.alerts] == ["admin-1", "intruder"]
    assert feed.total_alerts == 2
    assert feed.high_severity == 1
    assert feed.medium_severity == 1

    high = await ledger.security_alerts(severity="high")
    assert [r.escalation_level for r in high.alerts] == [3]

    medium = await ledger.security_alerts(severity="medium")
    assert [r.user_id for r in medium.alerts] == ["intruder"]
    assert medium.high_severity == 0

    limited = await ledger.security_alerts(limit=1)
    assert limited.total_alerts == 1


@pytest.mark.asyncio
async def test_security_alert_feed_covers_last_day_only(ledger, clock):
    await _seed(ledger, clock)
    clock.now = clock.now + timedelta(days=2)
    assert (await ledger.security_alerts()).total_alerts == 0


@pytest.mark.asyncio
async def test_list_records_by_escalation_level(ledger, clock):
    await _seed(ledger, clock)
    escalated = await ledger.list_records(RecordFilter(min_escalation_level=1, sort_order="asc"))
    assert [r.sequence_number for r in escalated] == [4, 5]

    calm = await ledger.count_records(RecordFilter(max_escalation_level=0))
    assert calm == 3
