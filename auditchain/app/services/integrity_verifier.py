"""
Integrity Verifier - walks the stored chain and reports where it breaks.

Read-only and lock-free: it may run while appends continue, and simply checks
the snapshot it reads. Violations are returned as data, never raised.
"""
from typing import List, Optional

from auditchain.app.core.keys import AuditKeyRing
from auditchain.app.core.logging import get_logger
from auditchain.app.core.observability import get_tracer, traced
from auditchain.app.schemas.audit import AuditLogRecord, IntegrityCheckResult
from auditchain.app.services.audit_repository import AuditRecordRepository
from auditchain.app.services.hash_engine import compute_integrity_hash

logger = get_logger(__name__)


class IntegrityVerifier:

    def __init__(self, repository: AuditRecordRepository, key_ring: AuditKeyRing):
        self.repository = repository
        self.key_ring = key_ring
        self._tracer = get_tracer(__name__)

    async def verify(
        self,
        start_sequence: Optional[int] = None,
        end_sequence: Optional[int] = None,
    ) -> IntegrityCheckResult:
        """
        Verify records in [start_sequence, end_sequence].

        Each record is checked for sequence continuity, linkage to its
        predecessor's stored hash, a matching recomputed content hash and a
        valid signature under its key version. The first failing record sets
        broken_chain_at; scanning continues so every issue is reported.
        """
        with traced(self._tracer, "ledger.verify", start=start_sequence or 1, end=end_sequence or -1):
            records = await self.repository.list_range(start_sequence, end_sequence)
            issues: List[str] = []
            broken_at: Optional[int] = None
            last_valid: Optional[int] = None

            if not records:
                return IntegrityCheckResult(is_valid=True, checked_records=0)

            expected_sequence, previous_hash = await self._anchor(start_sequence, records[0], issues)
            if issues:
                broken_at = records[0].sequence_number

            for record in records:
                record_issues = self._check_record(record, expected_sequence, previous_hash)
                if record_issues:
                    issues.extend(record_issues)
                    if broken_at is None:
                        broken_at = record.sequence_number
                elif broken_at is None:
                    last_valid = record.sequence_number

                # Resync on the stored values so one break is not reported for every later record
                expected_sequence = record.sequence_number + 1
                previous_hash = record.integrity_hash

        result = IntegrityCheckResult(
            is_valid=not issues,
            issues=issues,
            last_valid_sequence=last_valid,
            broken_chain_at=broken_at,
            checked_records=len(records),
        )
        if result.is_valid:
            logger.info(f"Audit chain verified: {len(records)} records intact")
        else:
            logger.error(
                f"Audit chain integrity violation at sequence {broken_at}",
                extra={"extra_data": {"issues": issues[:20], "issue_count": len(issues)}},
            )
        return result

    async def _anchor(self, start_sequence: Optional[int], first: AuditLogRecord, issues: List[str]):
        """(expected sequence, expected previous hash) for the first record in range."""
        if start_sequence is None or start_sequence <= 1:
            if first.sequence_number != 1:
                issues.append(f"Ledger starts at sequence {first.sequence_number}, expected 1")
            return 1, ""

        predecessor = await self.repository.get(start_sequence - 1)
        if predecessor is None:
            issues.append(f"Anchor record {start_sequence - 1} is missing")
            return start_sequence, None
        return start_sequence, predecessor.integrity_hash

    def _check_record(
        self,
        record: AuditLogRecord,
        expected_sequence: int,
        previous_hash: Optional[str],
    ) -> List[str]:
        seq = record.sequence_number
        problems: List[str] = []

        if seq != expected_sequence:
            problems.append(f"Sequence gap: expected {expected_sequence}, found {seq}")

        # previous_hash is None only when the anchor is missing; already reported
        if previous_hash is not None and (record.previous_log_hash or "") != previous_hash:
            problems.append(f"Chain broken at sequence {seq}: previous hash does not match record {seq - 1}")

        recomputed = compute_integrity_hash(record, seq, record.previous_log_hash, record.timestamp)
        if recomputed != record.integrity_hash:
            problems.append(f"Integrity hash mismatch at sequence {seq}")

        if self.key_ring.get(record.key_version) is None:
            problems.append(f"Unknown key version '{record.key_version}' at sequence {seq}")
        elif not self.key_ring.verify(record.integrity_hash, record.digital_signature, record.key_version):
            problems.append(f"Invalid signature at sequence {seq}")

        return problems
