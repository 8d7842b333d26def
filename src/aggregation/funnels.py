"""
Funnel Tracker

Matches incoming events against the active funnel definitions of a tenant
and advances per-session progress. A session moves only forward and only
one step at a time: entry requires step 0 and every later step requires
the one before it. Counters are attributed to the day the session entered
the funnel, so per-day step counts never increase along the funnel.

Per-session progress lives in a FunnelProgressStore:
- DatabaseFunnelProgressStore: advanced in the counting transaction (default)
- RedisFunnelProgressStore: shared across workers, advanced by a Lua script
- InMemoryFunnelProgressStore: single-process deployments, replays and tests

Progress kept outside the database is stepped back with ``retreat`` when the
transaction counting an advance fails.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import structlog
from redis.asyncio import Redis
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core import utc_now
from src.database.models import FunnelDefinition, FunnelSessionProgress, RawEvent

from .upsert import dialect_insert

logger = structlog.get_logger(__name__)


# =============================================================================
# STEP MATCHING
# =============================================================================

def _same(expected: Optional[str], actual: Optional[str]) -> bool:
    return bool(actual) and expected.strip().lower() == actual.strip().lower()


@dataclass(frozen=True)
class FunnelStep:
    """
    One funnel step.

    A bare name matches an event whose action, label or type equals it.
    Explicit matchers must all hold.
    """
    name: str
    event_type: Optional[str] = None
    action: Optional[str] = None
    label: Optional[str] = None
    category: Optional[str] = None

    @property
    def is_bare(self) -> bool:
        return not any((self.event_type, self.action, self.label, self.category))

    def matches(self, event: RawEvent) -> bool:
        if self.is_bare:
            return any(
                _same(self.name, candidate)
                for candidate in (event.action, event.label, event.event_type)
            )
        checks = (
            (self.event_type, event.event_type),
            (self.action, event.action),
            (self.label, event.label),
            (self.category, event.category),
        )
        return all(_same(expected, actual) for expected, actual in checks if expected)


def parse_steps(raw_steps: Optional[Sequence[Any]], conversion_goal: Optional[str] = None) -> List[FunnelStep]:
    """Build FunnelSteps from the stored JSON definition."""
    steps: List[FunnelStep] = []
    for raw in raw_steps or []:
        if isinstance(raw, str):
            steps.append(FunnelStep(name=raw))
        elif isinstance(raw, dict):
            steps.append(FunnelStep(
                name=str(raw.get("name") or raw.get("action") or raw.get("event_type") or ""),
                event_type=raw.get("event_type") or raw.get("eventType"),
                action=raw.get("action"),
                label=raw.get("label"),
                category=raw.get("category"),
            ))
    if not steps and conversion_goal:
        steps.append(FunnelStep(name=conversion_goal))
    return [step for step in steps if step.name or not step.is_bare]


# =============================================================================
# PROGRESS STORES
# =============================================================================

@dataclass
class FunnelProgress:
    """Furthest step a session reached and when it entered the funnel"""
    step_index: int
    entered_at: datetime
    entry_date: date


class FunnelProgressStore(Protocol):
    # True when advance() writes through the caller's database session, so a
    # rolled back transaction undoes the advance on its own
    transactional: bool

    async def advance(
        self,
        funnel_id: int,
        session_id: str,
        candidate_steps: Sequence[int],
        occurred_at: datetime,
        session: Optional[AsyncSession] = None,
    ) -> Optional[FunnelProgress]:
        """
        Move the session to its next step if that step is among the candidates.

        Returns the new progress, or None when the session did not advance.
        """
        ...

    async def retreat(self, funnel_id: int, session_id: str, progress: FunnelProgress) -> None:
        """Undo an advance whose counters were never written."""
        ...


class DatabaseFunnelProgressStore:
    """
    Progress kept in ``funnel_session_progress`` and advanced inside the
    aggregator's transaction. Shared by every API worker.
    """

    transactional = True

    def __init__(self, ttl_seconds: int = 86400):
        self.ttl_seconds = ttl_seconds

    async def advance(
        self,
        funnel_id: int,
        session_id: str,
        candidate_steps: Sequence[int],
        occurred_at: datetime,
        session: Optional[AsyncSession] = None,
    ) -> Optional[FunnelProgress]:
        if session is None:
            raise ValueError("DatabaseFunnelProgressStore.advance needs the caller's session")

        table = FunnelSessionProgress.__table__
        later = [step for step in candidate_steps if step > 0]
        if later:
            result = await session.execute(
                update(table)
                .where(
                    table.c.funnel_id == funnel_id,
                    table.c.session_id == session_id,
                    (table.c.step_index + 1).in_(later),
                )
                .values(step_index=table.c.step_index + 1, updated_at=utc_now())
                .returning(table.c.step_index, table.c.entered_at, table.c.entry_date)
            )
            row = result.first()
            if row is not None:
                return FunnelProgress(row.step_index, row.entered_at, row.entry_date)

        if 0 not in candidate_steps:
            return None

        stmt = (
            dialect_insert(session)(table)
            .values(
                funnel_id=funnel_id,
                session_id=session_id,
                step_index=0,
                entered_at=occurred_at,
                entry_date=occurred_at.date(),
                updated_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["funnel_id", "session_id"])
            .returning(table.c.id)
        )
        if (await session.execute(stmt)).first() is None:
            return None
        return FunnelProgress(0, occurred_at, occurred_at.date())

    async def retreat(self, funnel_id: int, session_id: str, progress: FunnelProgress) -> None:
        # The rolled back transaction already discarded the advance
        return None

    async def prune(self, session: AsyncSession, now: datetime) -> int:
        """Delete progress idle for longer than the TTL."""
        result = await session.execute(
            delete(FunnelSessionProgress).where(
                FunnelSessionProgress.updated_at < now - timedelta(seconds=self.ttl_seconds)
            )
        )
        return result.rowcount or 0


class InMemoryFunnelProgressStore:
    """Process-local progress with lazy TTL pruning. Single-worker deployments, replays and tests."""

    transactional = False

    def __init__(self, ttl_seconds: int = 86400):
        self.ttl_seconds = ttl_seconds
        self._progress: Dict[Tuple[int, str], Tuple[FunnelProgress, float]] = {}
        self._lock = asyncio.Lock()

    async def advance(
        self,
        funnel_id: int,
        session_id: str,
        candidate_steps: Sequence[int],
        occurred_at: datetime,
        session: Optional[AsyncSession] = None,
    ) -> Optional[FunnelProgress]:
        async with self._lock:
            now = time.monotonic()
            self._prune(now)

            key = (funnel_id, session_id)
            current = self._progress.get(key)
            target = 0 if current is None else current[0].step_index + 1
            if target not in candidate_steps:
                return None

            if current is None:
                progress = FunnelProgress(0, occurred_at, occurred_at.date())
            else:
                progress = FunnelProgress(target, current[0].entered_at, current[0].entry_date)
            self._progress[key] = (progress, now + self.ttl_seconds)
            return progress

    async def retreat(self, funnel_id: int, session_id: str, progress: FunnelProgress) -> None:
        async with self._lock:
            key = (funnel_id, session_id)
            current = self._progress.get(key)
            # Only undo if nothing moved the session on in the meantime
            if current is None or current[0].step_index != progress.step_index:
                return
            if progress.step_index == 0:
                del self._progress[key]
            else:
                previous = FunnelProgress(progress.step_index - 1, progress.entered_at, progress.entry_date)
                self._progress[key] = (previous, current[1])

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, expires) in self._progress.items() if expires <= now]
        for key in expired:
            del self._progress[key]


# KEYS[1] progress hash; ARGV: candidates csv, entered_at iso, entry_date iso, ttl
_ADVANCE_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'step')
local target = 0
if current then target = tonumber(current) + 1 end
for candidate in string.gmatch(ARGV[1], '[^,]+') do
    if tonumber(candidate) == target then
        if target == 0 then
            redis.call('HSET', KEYS[1], 'step', 0, 'entered_at', ARGV[2], 'entry_date', ARGV[3])
        else
            redis.call('HSET', KEYS[1], 'step', target)
        end
        redis.call('EXPIRE', KEYS[1], ARGV[4])
        return {target, redis.call('HGET', KEYS[1], 'entered_at'), redis.call('HGET', KEYS[1], 'entry_date')}
    end
end
return false
"""

# KEYS[1] progress hash; ARGV: step to undo
_RETREAT_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'step')
if not current or tonumber(current) ~= tonumber(ARGV[1]) then return 0 end
if tonumber(ARGV[1]) == 0 then
    redis.call('DEL', KEYS[1])
else
    redis.call('HSET', KEYS[1], 'step', tonumber(ARGV[1]) - 1)
end
return 1
"""


class RedisFunnelProgressStore:
    """Progress shared by every API worker; the check-and-advance is one script call"""

    transactional = False

    def __init__(self, redis: Redis, ttl_seconds: int = 86400, prefix: str = "funnel:progress"):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._advance = redis.register_script(_ADVANCE_SCRIPT)
        self._retreat = redis.register_script(_RETREAT_SCRIPT)

    def _key(self, funnel_id: int, session_id: str) -> str:
        return f"{self.prefix}:{funnel_id}:{session_id}"

    async def advance(
        self,
        funnel_id: int,
        session_id: str,
        candidate_steps: Sequence[int],
        occurred_at: datetime,
        session: Optional[AsyncSession] = None,
    ) -> Optional[FunnelProgress]:
        result = await self._advance(
            keys=[self._key(funnel_id, session_id)],
            args=[
                ",".join(str(step) for step in candidate_steps),
                occurred_at.isoformat(),
                occurred_at.date().isoformat(),
                self.ttl_seconds,
            ],
        )
        if not result:
            return None
        step, entered_at, entry_date = result
        return FunnelProgress(
            step_index=int(step),
            entered_at=datetime.fromisoformat(_text(entered_at)),
            entry_date=date.fromisoformat(_text(entry_date)),
        )

    async def retreat(self, funnel_id: int, session_id: str, progress: FunnelProgress) -> None:
        await self._retreat(keys=[self._key(funnel_id, session_id)], args=[progress.step_index])


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


# =============================================================================
# TRACKER
# =============================================================================

@dataclass
class FunnelAdvance:
    """A session reaching one funnel step"""
    funnel_id: int
    step_index: int
    entry_date: date
    is_terminal: bool
    seconds_since_entry: float = 0.0
    session_id: Optional[str] = None
    progress: Optional[FunnelProgress] = None


class FunnelTracker:
    """Turns events into FunnelAdvances using a progress store"""

    def __init__(self, store: FunnelProgressStore):
        self.store = store

    async def load_funnels(self, session: AsyncSession, tenant_id: int) -> List[FunnelDefinition]:
        result = await session.execute(
            select(FunnelDefinition)
            .where(FunnelDefinition.tenant_id == tenant_id, FunnelDefinition.is_active.is_(True))
            .order_by(FunnelDefinition.id)
        )
        return list(result.scalars().all())

    async def evaluate(
        self,
        event: RawEvent,
        funnels: Sequence[FunnelDefinition],
        session: Optional[AsyncSession] = None,
    ) -> List[FunnelAdvance]:
        """
        Advance the event's session through every funnel it matches.

        Call this inside the transaction that writes the returned advances.
        A transactional store advances through ``session`` and is rolled back
        with it; for the others the caller must ``revert`` the advances when
        that transaction fails.
        """
        if not event.session_id:
            return []

        advances: List[FunnelAdvance] = []
        for funnel in funnels:
            steps = parse_steps(funnel.steps, funnel.conversion_goal)
            candidates = [index for index, step in enumerate(steps) if step.matches(event)]
            if not candidates:
                continue

            progress = await self.store.advance(
                funnel.id, event.session_id, candidates, event.occurred_at, session=session
            )
            if progress is None:
                continue

            advances.append(FunnelAdvance(
                funnel_id=funnel.id,
                step_index=progress.step_index,
                entry_date=progress.entry_date,
                is_terminal=progress.step_index == len(steps) - 1,
                seconds_since_entry=max(0.0, (event.occurred_at - progress.entered_at).total_seconds()),
                session_id=event.session_id,
                progress=progress,
            ))
            logger.debug(
                "Funnel step reached",
                funnel_id=funnel.id,
                session_id=event.session_id,
                step=progress.step_index,
            )
        return advances

    async def revert(self, advances: Sequence[FunnelAdvance]) -> None:
        """Step sessions back after the transaction counting ``advances`` failed."""
        if self.store.transactional:
            return
        for advance in reversed(advances):
            if advance.session_id is None or advance.progress is None:
                continue
            await self.store.retreat(advance.funnel_id, advance.session_id, advance.progress)
            logger.info(
                "Funnel advance reverted",
                funnel_id=advance.funnel_id,
                session_id=advance.session_id,
                step=advance.step_index,
            )
