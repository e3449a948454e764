"""
Audit Ledger ORM Model.

Stores the hash-chained, signed audit records. Rows are written once and never
updated or deleted through the application. The UNIQUE constraints on
sequence_number and previous_log_hash make the store reject a second writer
that tries to extend the chain from the same tail (a fork).
"""
from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, Integer, JSON, String, Text

from auditchain.app.core.database import Base


class AuditLogRecordORM(Base):
    __tablename__ = "audit_log_records"

    sequence_number = Column(BigInteger, primary_key=True, autoincrement=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)

    # Event fields
    user_id = Column(String(255), nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True)
    resource = Column(String(255), nullable=False)
    resource_id = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    event_type = Column(String(30), nullable=False)
    data_classification = Column(String(20), nullable=False)
    phi_accessed = Column(Boolean, nullable=False, default=False)
    status_code = Column(Integer, nullable=True)

    # Request context (not part of the hashed payload)
    description = Column(Text, nullable=True)
    session_id = Column(String(255), nullable=True)
    request_id = Column(String(255), nullable=True)
    http_method = Column(String(16), nullable=True)
    endpoint = Column(String(1024), nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)

    # Chain
    integrity_hash = Column(String(64), nullable=False, unique=True)
    previous_log_hash = Column(String(64), nullable=False, unique=True)
    digital_signature = Column(String(64), nullable=False)
    key_version = Column(String(32), nullable=False)

    # Scoring
    anomaly_score = Column(Integer, nullable=False)
    risk_score = Column(Integer, nullable=False, index=True)
    threat_indicators = Column(JSON, nullable=False, default=list)
    escalation_level = Column(Integer, nullable=False, default=0)

    # Provenance
    server_instance = Column(String(100), nullable=False)
    application_version = Column(String(50), nullable=False)

    __table_args__ = (
        Index("ix_audit_log_records_user_timestamp", "user_id", "timestamp"),
    )

    def __repr__(self):
        return f"<AuditLogRecord #{self.sequence_number} {self.action} on {self.resource} by {self.user_id}>"
