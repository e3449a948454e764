"""
Hash Engine - integrity hash and signature primitives for the audit chain.

Pure functions. The canonical payload is sorted-key compact JSON with
camelCase field names, and must stay byte-stable: every historic record's
integrityHash was computed over exactly this representation.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from auditchain.app.schemas.audit import AuditEvent


def capture_timestamp(now: Optional[datetime] = None) -> datetime:
    """UTC timestamp truncated to the millisecond granularity the hash uses."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_timestamp(ts: datetime) -> str:
    """Render as 2024-05-01T09:30:00.123Z. Naive values (SQLite round trips) are UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def canonical_payload(
    event: AuditEvent,
    sequence_number: int,
    previous_hash: Optional[str],
    timestamp: datetime,
) -> str:
    critical_fields: Dict[str, Any] = {
        "timestamp": format_timestamp(timestamp),
        "userId": event.user_id,
        "action": _enum_value(event.action),
        "resource": event.resource,
        "resourceId": event.resource_id,
        "ipAddress": event.ip_address,
        "sequenceNumber": sequence_number,
        "previousHash": previous_hash or "",
    }
    return json.dumps(critical_fields, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_integrity_hash(
    event: AuditEvent,
    sequence_number: int,
    previous_hash: Optional[str],
    timestamp: datetime,
) -> str:
    """SHA-256 hex digest over the canonical critical-field payload."""
    payload = canonical_payload(event, sequence_number, previous_hash, timestamp)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def sign(integrity_hash: str, key: str) -> str:
    """HMAC-SHA256 of the integrity hash under the audit key."""
    return hmac.new(key.encode("utf-8"), integrity_hash.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(integrity_hash: str, signature: str, key: str) -> bool:
    return hmac.compare_digest(sign(integrity_hash, key), signature or "")
