"""
Sequence Allocator - the single serialization point of the ledger.

Hands out (sequence_number, previous_hash) slots. The counter is sourced once
from the store's tail and then owned in process. A slot is held under an
exclusive lock for the whole allocate -> hash -> persist span and the counter
only advances when the holder commits, so a failed write never burns a number
and two writers can never chain onto the same predecessor.

If another process appends behind our back, the store's unique constraints
reject our insert with SequenceConflictError. On any persistence failure the
slot is dropped, the cached tail invalidated and the next reservation re-reads
it.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from auditchain.app.core.exceptions import PersistenceError
from auditchain.app.core.logging import get_logger
from auditchain.app.services.audit_repository import AuditRecordRepository

logger = get_logger(__name__)


@dataclass
class SequenceSlot:
    sequence_number: int
    previous_hash: str
    committed_hash: Optional[str] = field(default=None)

    def commit(self, integrity_hash: str) -> None:
        """Mark the slot's record as durably persisted."""
        self.committed_hash = integrity_hash


class SequenceAllocator:

    def __init__(self, repository: AuditRecordRepository):
        self._repository = repository
        self._lock = asyncio.Lock()
        self._last_sequence: Optional[int] = None
        self._last_hash: str = ""

    @property
    def last_sequence(self) -> Optional[int]:
        return self._last_sequence

    async def initialize(self) -> None:
        async with self._lock:
            await self._sync_from_store()

    async def _sync_from_store(self) -> None:
        tail = await self._repository.get_tail()
        if tail is None:
            self._last_sequence, self._last_hash = 0, ""
        else:
            self._last_sequence, self._last_hash = tail
        logger.info(f"Sequence allocator synced from store (tail={self._last_sequence})")

    def invalidate(self) -> None:
        """Forget the cached tail; the next reservation re-reads it from the store."""
        self._last_sequence = None
        self._last_hash = ""

    @asynccontextmanager
    async def reserve(self) -> AsyncIterator[SequenceSlot]:
        """
        Reserve the next slot. The caller must persist the record and call
        slot.commit() before leaving the block; otherwise nothing advances.
        """
        async with self._lock:
            if self._last_sequence is None:
                await self._sync_from_store()

            slot = SequenceSlot(
                sequence_number=self._last_sequence + 1,
                previous_hash=self._last_hash,
            )
            try:
                yield slot
            except PersistenceError:
                # Store moved on or is in an unknown state; resync before the next slot
                self.invalidate()
                raise

            if slot.committed_hash is not None:
                self._last_sequence = slot.sequence_number
                self._last_hash = slot.committed_hash
