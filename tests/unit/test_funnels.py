"""
Unit Tests - Funnel Step Matching and Progress
"""
import collections
import random
from datetime import date, datetime, timedelta

import pytest

from src.aggregation.funnels import (
    DatabaseFunnelProgressStore,
    FunnelAdvance,
    FunnelProgress,
    FunnelStep,
    FunnelTracker,
    InMemoryFunnelProgressStore,
    parse_steps,
)
from src.database.models import FunnelDefinition, RawEvent

T0 = datetime(2025, 3, 1, 23, 50, 0)


def make_event(action: str, session_id: str = "S1", occurred_at: datetime = T0, **fields) -> RawEvent:
    return RawEvent(
        tenant_id=7,
        event_type=fields.pop("event_type", "click"),
        action=action,
        session_id=session_id,
        occurred_at=occurred_at,
        **fields,
    )


def make_funnel(steps, funnel_id: int = 1, goal: str = "Purchase") -> FunnelDefinition:
    return FunnelDefinition(id=funnel_id, tenant_id=7, name="Signup", steps=steps, conversion_goal=goal)


class TestStepMatching:
    """Tests for FunnelStep"""

    def test_bare_name_matches_action_label_or_type(self):
        step = FunnelStep(name="SignUp")

        assert step.matches(make_event("signup"))
        assert step.matches(make_event("other", label="SIGNUP"))
        assert step.matches(make_event("other", event_type="signup"))
        assert not step.matches(make_event("purchase"))

    def test_explicit_matchers_must_all_hold(self):
        step = FunnelStep(name="checkout", event_type="conversion", action="purchase")

        assert step.matches(make_event("purchase", event_type="conversion"))
        assert not step.matches(make_event("purchase", event_type="click"))

    def test_parse_steps(self):
        steps = parse_steps(["Visit", {"name": "Buy", "eventType": "conversion"}, 42])

        assert [step.name for step in steps] == ["Visit", "Buy"]
        assert steps[1].event_type == "conversion"

    def test_empty_steps_fall_back_to_goal(self):
        steps = parse_steps([], "Purchase")

        assert steps == [FunnelStep(name="Purchase")]


class TestInMemoryProgressStore:
    """Tests for per-session funnel progress"""

    async def test_entry_requires_first_step(self):
        store = InMemoryFunnelProgressStore()

        assert await store.advance(1, "S1", [1], T0) is None
        progress = await store.advance(1, "S1", [0], T0)

        assert progress.step_index == 0
        assert progress.entry_date == T0.date()

    async def test_advances_one_step_at_a_time(self):
        store = InMemoryFunnelProgressStore()
        await store.advance(1, "S1", [0], T0)

        assert await store.advance(1, "S1", [2], T0) is None
        assert (await store.advance(1, "S1", [1], T0)).step_index == 1
        assert await store.advance(1, "S1", [1], T0) is None
        assert (await store.advance(1, "S1", [2], T0)).step_index == 2

    async def test_sessions_and_funnels_are_independent(self):
        store = InMemoryFunnelProgressStore()
        await store.advance(1, "S1", [0], T0)

        assert (await store.advance(1, "S2", [0], T0)).step_index == 0
        assert (await store.advance(2, "S1", [0], T0)).step_index == 0

    async def test_expired_progress_restarts(self):
        store = InMemoryFunnelProgressStore(ttl_seconds=0)
        await store.advance(1, "S1", [0], T0)

        assert await store.advance(1, "S1", [1], T0) is None


class TestFunnelTracker:
    """Tests for FunnelTracker.evaluate"""

    async def test_visit_signup_without_purchase(self):
        tracker = FunnelTracker(InMemoryFunnelProgressStore())
        funnels = [make_funnel(["Visit", "SignUp", "Purchase"])]

        first = await tracker.evaluate(make_event("Visit"), funnels)
        second = await tracker.evaluate(make_event("SignUp", occurred_at=T0 + timedelta(minutes=5)), funnels)

        assert [(a.step_index, a.is_terminal) for a in first + second] == [(0, False), (1, False)]

    async def test_counts_attributed_to_entry_date(self):
        tracker = FunnelTracker(InMemoryFunnelProgressStore())
        funnels = [make_funnel(["Visit", "Purchase"])]

        await tracker.evaluate(make_event("Visit"), funnels)
        advances = await tracker.evaluate(make_event("Purchase", occurred_at=T0 + timedelta(minutes=20)), funnels)

        assert advances[0].is_terminal
        assert advances[0].entry_date == date(2025, 3, 1)
        assert advances[0].seconds_since_entry == pytest.approx(1200.0)

    async def test_repeated_step_counts_once(self):
        tracker = FunnelTracker(InMemoryFunnelProgressStore())
        funnels = [make_funnel(["Visit", "SignUp", "Purchase"])]

        results = [await tracker.evaluate(make_event("Visit"), funnels) for _ in range(3)]

        assert sum(len(advances) for advances in results) == 1

    async def test_events_without_session_ignored(self):
        tracker = FunnelTracker(InMemoryFunnelProgressStore())

        assert await tracker.evaluate(make_event("Visit", session_id=None), [make_funnel(["Visit"])]) == []

    async def test_out_of_order_step_does_not_enter(self):
        tracker = FunnelTracker(InMemoryFunnelProgressStore())
        funnels = [make_funnel(["Visit", "SignUp", "Purchase"])]

        assert await tracker.evaluate(make_event("Purchase"), funnels) == []


class TestProgressRetreat:
    """Tests for undoing advances whose counters were never written"""

    async def test_retreat_undoes_last_advance(self):
        store = InMemoryFunnelProgressStore()
        await store.advance(1, "S1", [0], T0)
        progress = await store.advance(1, "S1", [1], T0)

        await store.retreat(1, "S1", progress)

        assert (await store.advance(1, "S1", [1], T0)).step_index == 1

    async def test_retreat_of_entry_forgets_session(self):
        store = InMemoryFunnelProgressStore()
        entry = await store.advance(1, "S1", [0], T0)

        await store.retreat(1, "S1", entry)

        assert await store.advance(1, "S1", [1], T0) is None
        assert (await store.advance(1, "S1", [0], T0)).step_index == 0

    async def test_stale_retreat_ignored(self):
        """A retreat for a step the session already moved past changes nothing"""
        store = InMemoryFunnelProgressStore()
        entry = await store.advance(1, "S1", [0], T0)
        await store.advance(1, "S1", [1], T0)

        await store.retreat(1, "S1", entry)

        assert (await store.advance(1, "S1", [2], T0)).step_index == 2


class TestTrackerRevert:
    """Tests for FunnelTracker.revert"""

    async def test_reverted_session_can_advance_again(self):
        tracker = FunnelTracker(InMemoryFunnelProgressStore())
        funnels = [make_funnel(["Visit", "SignUp", "Purchase"])]

        visit = await tracker.evaluate(make_event("Visit"), funnels)
        await tracker.revert(visit)

        assert await tracker.evaluate(make_event("SignUp"), funnels) == []
        again = await tracker.evaluate(make_event("Visit"), funnels)
        assert [a.step_index for a in again] == [0]

    async def test_revert_is_noop_for_transactional_store(self):
        tracker = FunnelTracker(DatabaseFunnelProgressStore())
        advance = FunnelAdvance(funnel_id=1, step_index=0, entry_date=T0.date(), is_terminal=False,
                                session_id="S1", progress=FunnelProgress(0, T0, T0.date()))

        await tracker.revert([advance])


class TestTrackerMonotonicity:
    """Random event streams never produce more sessions at a later step"""

    @pytest.mark.parametrize("seed", range(5))
    async def test_random_sessions(self, seed):
        rng = random.Random(seed)
        tracker = FunnelTracker(InMemoryFunnelProgressStore())
        funnels = [make_funnel(["Visit", "SignUp", "Purchase"])]
        actions = ["Visit", "SignUp", "Purchase", "Browse"]

        reached = collections.Counter()
        entrances = completions = 0
        for _ in range(400):
            session_id = f"S{rng.randrange(30)}"
            occurred_at = T0 + timedelta(seconds=rng.randrange(7200))
            for advance in await tracker.evaluate(make_event(rng.choice(actions), session_id, occurred_at), funnels):
                reached[(advance.entry_date, advance.step_index)] += 1
                entrances += advance.step_index == 0
                completions += advance.is_terminal

        assert entrances >= completions
        for entry_date in {day for day, _ in reached}:
            counts = [reached[(entry_date, step)] for step in range(3)]
            assert counts == sorted(counts, reverse=True)
