"""
Tamper-detection tests: records are edited or removed directly in the store,
bypassing the ledger, and the verifier must localise the break.
"""
import pytest
from sqlalchemy import delete, update

from auditchain.app.core.keys import AuditKeyRing
from auditchain.app.core.config import get_settings
from auditchain.app.models.audit_orm import AuditLogRecordORM
from auditchain.app.schemas.audit import AuditAction, AuditEvent
from auditchain.app.services.audit_ledger import build_audit_ledger
from auditchain.app.services.hash_engine import compute_integrity_hash, sign


async def _append(ledger, count: int):
    actions = [AuditAction.READ, AuditAction.UPDATE, AuditAction.CREATE]
    for i in range(count):
        await ledger.record_event(AuditEvent(
            user_id=f"coach-{i % 2}",
            action=actions[i % len(actions)],
            resource="notes",
            resource_id=f"note-{i}",
        ))


async def _tamper(session_factory, sequence_number: int, **values):
    async with session_factory() as session:
        await session.execute(
            update(AuditLogRecordORM)
            .where(AuditLogRecordORM.sequence_number == sequence_number)
            .values(**values)
        )
        await session.commit()


async def _remove(session_factory, sequence_number: int):
    async with session_factory() as session:
        await session.execute(
            delete(AuditLogRecordORM).where(AuditLogRecordORM.sequence_number == sequence_number)
        )
        await session.commit()


@pytest.mark.asyncio
async def test_empty_ledger_is_valid(ledger):
    result = await ledger.verify()
    assert result.is_valid
    assert result.checked_records == 0
    assert result.broken_chain_at is None


@pytest.mark.asyncio
async def test_intact_chain_verifies(ledger):
    await _append(ledger, 5)
    result = await ledger.verify()

    assert result.is_valid
    assert result.issues == []
    assert result.last_valid_sequence == 5
    assert result.broken_chain_at is None
    assert result.checked_records == 5


@pytest.mark.asyncio
async def test_edited_critical_field_breaks_at_that_record(ledger, session_factory):
    await _append(ledger, 5)
    await _tamper(session_factory, 3, resource="billing")

    result = await ledger.verify()
    assert not result.is_valid
    assert result.broken_chain_at == 3
    assert result.last_valid_sequence == 2
    assert result.issues == ["Integrity hash mismatch at sequence 3"]


@pytest.mark.asyncio
async def test_edited_context_field_is_not_detected(ledger, session_factory):
    # Only the critical fields are covered by the hash
    await _append(ledger, 3)
    await _tamper(session_factory, 2, description="rewritten")
    assert (await ledger.verify()).is_valid


@pytest.mark.asyncio
async def test_rehashed_record_fails_signature_and_linkage(ledger, session_factory):
    await _append(ledger, 5)
    record = await ledger.get_record(3)
    forged = record.model_copy(update={"resource": "billing"})
    forged_hash = compute_integrity_hash(forged, 3, record.previous_log_hash, record.timestamp)
    await _tamper(session_factory, 3, resource="billing", integrity_hash=forged_hash)

    result = await ledger.verify()
    assert result.broken_chain_at == 3
    assert "Invalid signature at sequence 3" in result.issues
    assert any("Chain broken at sequence 4" in issue for issue in result.issues)


@pytest.mark.asyncio
async def test_deleted_middle_record_breaks_at_successor(ledger, session_factory):
    await _append(ledger, 5)
    await _remove(session_factory, 3)

    result = await ledger.verify()
    assert not result.is_valid
    assert result.broken_chain_at == 4
    assert result.last_valid_sequence == 2
    assert "Sequence gap: expected 3, found 4" in result.issues
    assert result.checked_records == 4


@pytest.mark.asyncio
async def test_deleted_first_record_is_detected(ledger, session_factory):
    await _append(ledger, 3)
    await _remove(session_factory, 1)

    result = await ledger.verify()
    assert not result.is_valid
    assert result.broken_chain_at == 2
    assert result.last_valid_sequence is None


@pytest.mark.asyncio
async def test_foreign_signature_fails_only_that_record(ledger, session_factory):
    await _append(ledger, 4)
    record = await ledger.get_record(2)
    await _tamper(session_factory, 2, digital_signature=sign(record.integrity_hash, "not-the-audit-key"))

    result = await ledger.verify()
    assert result.issues == ["Invalid signature at sequence 2"]
    assert result.broken_chain_at == 2
    assert result.last_valid_sequence == 1


@pytest.mark.asyncio
async def test_unknown_key_version_is_reported(ledger, session_factory):
    await _append(ledger, 2)
    await _tamper(session_factory, 2, key_version="v9")

    result = await ledger.verify()
    assert result.issues == ["Unknown key version 'v9' at sequence 2"]


@pytest.mark.asyncio
async def test_out_of_vocabulary_action_is_reported_not_raised(ledger, session_factory):
    await _append(ledger, 3)
    await _tamper(session_factory, 2, action="TELEPORT")

    result = await ledger.verify()
    assert not result.is_valid
    assert result.broken_chain_at == 2


@pytest.mark.asyncio
async def test_range_uses_predecessor_as_anchor(ledger, session_factory):
    await _append(ledger, 6)
    await _tamper(session_factory, 2, resource="billing")

    # Record 2's stored hash still links record 3, so the range is clean
    in_range = await ledger.verify(3, 5)
    assert in_range.is_valid
    assert in_range.checked_records == 3
    assert in_range.last_valid_sequence == 5

    covering = await ledger.verify(2, 5)
    assert covering.broken_chain_at == 2


@pytest.mark.asyncio
async def test_range_with_missing_anchor(ledger, session_factory):
    await _append(ledger, 5)
    await _remove(session_factory, 2)

    result = await ledger.verify(3)
    assert not result.is_valid
    assert "Anchor record 2 is missing" in result.issues
    assert result.broken_chain_at == 3


@pytest.mark.asyncio
async def test_records_verify_after_key_rotation(ledger, session_factory, key_ring, bus, clock):
    await _append(ledger, 2)

    rotated_ring = AuditKeyRing("v2", {"v1": key_ring.get("v1"), "v2": "ef" * 64})
    rotated = build_audit_ledger(
        session_factory, settings=get_settings(), key_ring=rotated_ring, bus=bus, clock=clock,
    )
    await rotated.initialize()
    record = await rotated.record_event(AuditEvent(user_id="coach-1", action=AuditAction.READ, resource="notes"))

    assert record.sequence_number == 3
    assert record.key_version == "v2"
    assert (await rotated.verify()).is_valid

    # The pre-rotation ring cannot vouch for the v2 record
    assert (await ledger.verify()).broken_chain_at == 3
