"""Models package."""

from auditchain.app.models.audit_orm import AuditLogRecordORM

__all__ = [
    "AuditLogRecordORM",
]
