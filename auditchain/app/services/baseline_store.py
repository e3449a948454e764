"""
Behavioral Baseline Store.

Per-user rolling profiles consumed by the risk scorer. Best effort: the store
lives in process memory, losing it only degrades scoring, and it can be
rebuilt from ledger history. Updates for one user are serialised by a
per-user lock; different users never contend.
"""
import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from auditchain.app.core.logging import get_logger
from auditchain.app.schemas.audit import AuditEvent, BehavioralBaseline
from auditchain.app.services.risk_scorer import PHI_ACCESS_MARKER

logger = get_logger(__name__)

MAX_LOCATIONS = 5
MAX_TYPICAL_ACTIONS = 10
DEFAULT_SESSION_DURATION = 30.0
DEFAULT_REQUESTS_PER_SESSION = 10.0


def _remember(items: list[str], value: str, cap: int) -> list[str]:
    """Append an unseen value, keeping only the newest `cap` entries."""
    if value in items:
        return items
    items = items + [value]
    return items[-cap:]


def new_baseline(event: AuditEvent, hour: int, now: Optional[datetime] = None) -> BehavioralBaseline:
    typical = [event.action.value]
    if event.phi_accessed:
        typical = _remember(typical, PHI_ACCESS_MARKER, MAX_TYPICAL_ACTIONS)
    return BehavioralBaseline(
        user_id=event.user_id,
        normal_hours=[max(6, hour - 1), min(22, hour + 1)],
        normal_locations=[event.ip_address] if event.ip_address else [],
        typical_actions=typical,
        avg_session_duration=DEFAULT_SESSION_DURATION,
        avg_requests_per_session=DEFAULT_REQUESTS_PER_SESSION,
        event_count=1,
        updated_at=now or datetime.now(timezone.utc),
    )


def apply_event(
    baseline: BehavioralBaseline,
    event: AuditEvent,
    hour: int,
    now: Optional[datetime] = None,
) -> BehavioralBaseline:
    """Return a new baseline that has absorbed `event`."""
    start, end = baseline.normal_hours
    if hour < start:
        start = max(0, hour)
    if hour > end:
        end = min(23, hour)

    typical = _remember(baseline.typical_actions, event.action.value, MAX_TYPICAL_ACTIONS)
    if event.phi_accessed:
        typical = _remember(typical, PHI_ACCESS_MARKER, MAX_TYPICAL_ACTIONS)

    locations = baseline.normal_locations
    if event.ip_address:
        locations = _remember(locations, event.ip_address, MAX_LOCATIONS)

    return baseline.model_copy(update={
        "normal_hours": [start, end],
        "typical_actions": typical,
        "normal_locations": locations,
        "event_count": baseline.event_count + 1,
        "updated_at": now or datetime.now(timezone.utc),
    })


class BaselineStore:
    """In-memory baseline map keyed by user id, injected into the ledger."""

    def __init__(self):
        self._baselines: Dict[str, BehavioralBaseline] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, user_id: Optional[str]) -> Optional[BehavioralBaseline]:
        if not user_id:
            return None
        baseline = self._baselines.get(user_id)
        return baseline.model_copy(deep=True) if baseline else None

    async def put(self, baseline: BehavioralBaseline) -> None:
        async with self._locks[baseline.user_id]:
            self._baselines[baseline.user_id] = baseline.model_copy(deep=True)

    async def update(self, event: AuditEvent, hour: int) -> Optional[BehavioralBaseline]:
        """Fold one event into its user's baseline. System events are ignored."""
        if not event.user_id:
            return None
        async with self._locks[event.user_id]:
            existing = self._baselines.get(event.user_id)
            if existing is None:
                updated = new_baseline(event, hour)
                logger.debug(f"Created behavioural baseline for user {event.user_id}")
            else:
                updated = apply_event(existing, event, hour)
            self._baselines[event.user_id] = updated
            return updated.model_copy(deep=True)

    async def reset(self, user_id: Optional[str] = None) -> None:
        """Forget one user's baseline, or all of them."""
        if user_id is None:
            self._baselines.clear()
            self._locks.clear()
            logger.info("All behavioural baselines reset")
            return
        async with self._locks[user_id]:
            self._baselines.pop(user_id, None)
        self._locks.pop(user_id, None)
        logger.info(f"Behavioural baseline reset for user {user_id}")

    async def rebuild(self, user_id: str, history: Iterable[tuple[AuditEvent, int]]) -> Optional[BehavioralBaseline]:
        """
        Recompute a baseline by replaying (event, hour) pairs in ledger order.
        """
        rebuilt: Optional[BehavioralBaseline] = None
        for event, hour in history:
            if event.user_id != user_id:
                continue
            rebuilt = new_baseline(event, hour) if rebuilt is None else apply_event(rebuilt, event, hour)

        async with self._locks[user_id]:
            if rebuilt is None:
                self._baselines.pop(user_id, None)
            else:
                self._baselines[user_id] = rebuilt
        if rebuilt is None:
            self._locks.pop(user_id, None)
        logger.info(
            f"Rebuilt behavioural baseline for user {user_id} "
            f"from {rebuilt.event_count if rebuilt else 0} events"
        )
        return rebuilt.model_copy(deep=True) if rebuilt else None
