import asyncio
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("NUDGE_DB_PATH", ":memory:")
os.environ.setdefault("NUDGE_MONITORED_APPS", "com.instagram.android,com.facebook.katana")
os.environ.setdefault("NUDGE_PRODUCTIVE_APPS", "com.duolingo")
# Background jobs are exercised directly in test_scheduler.py.
os.environ.setdefault("NUDGE_SCHEDULER_ENABLED", "0")

from nudge.bandit import DefaultRandom, RolloutController, RuleBasedSelector, ThompsonSampler
from nudge.burden import BurdenTracker
from nudge.db import Database
from nudge.decisions import DecisionLogger, DecisionLogStore
from nudge.deps import (
    burden,
    db,
    engine,
    error_channel,
    limiter,
    monitor,
    outcomes,
    persona,
    rollout,
    sampler,
)
from nudge.engine import DecisionEngine
from nudge.gate import AdaptiveGate, BasicRateLimiter, GateState
from nudge.monitor import MonitorController
from nudge.outcomes import OutcomeStore, OutcomeTracker
from nudge.persona import PersonaDetector
from nudge.sessions import SessionTracker
from nudge.usage import UsageStore

INSTAGRAM = "com.instagram.android"
FACEBOOK = "com.facebook.katana"
LAUNCHER = "com.android.launcher"
DUOLINGO = "com.duolingo"


def _run(coro):
    try:
        asyncio.run(coro)
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(coro)
        finally:
            loop.close()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _run(monitor.reset())
    _run(db.clear())
    engine.reset()
    sampler.reset()
    rollout.reset()
    outcomes.reset()
    limiter.state = GateState()
    persona.clear_cache()
    burden.invalidate()
    error_channel.clear()


class FakeClock:
    """Settable clock; naive local time like the engine."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # A Wednesday, mid-morning.
    return FakeClock(datetime(2026, 10, 14, 10, 0, 0))


def build_stack(clock, *, rollout_percentage=0, shadow_mode=True, seed=7, gap_s=30.0, timer_s=600.0):
    database = Database(":memory:")
    usage = UsageStore(database)
    outcome_store = OutcomeStore(database)
    decision_logger = DecisionLogger(DecisionLogStore(database))
    rng = DefaultRandom(seed)
    thompson = ThompsonSampler(database, rng=rng)
    rollout_controller = RolloutController(
        database, enabled=True, percentage=rollout_percentage, shadow_mode=shadow_mode
    )
    burden_tracker = BurdenTracker(outcome_store, clock=clock)
    rate_limiter = BasicRateLimiter(database)
    tracker = OutcomeTracker(
        outcome_store,
        usage,
        clock=clock,
        sampler=thompson,
        rollout=rollout_controller,
        burden=burden_tracker,
        productive_apps=[DUOLINGO],
        goal_minutes=60,
    )
    decision_engine = DecisionEngine(
        usage=usage,
        outcomes=tracker,
        persona=PersonaDetector(usage, clock=clock),
        burden=burden_tracker,
        gate=AdaptiveGate(rate_limiter),
        sampler=thompson,
        rule_selector=RuleBasedSelector(rng=rng),
        rollout=rollout_controller,
        decision_logger=decision_logger,
        clock=clock,
        goal_minutes=60,
    )
    sessions = SessionTracker([INSTAGRAM, FACEBOOK], gap_s=gap_s, min_duration_s=5.0, timer_duration_s=timer_s)
    controller = MonitorController(sessions, decision_engine, database, clock=clock)
    return SimpleNamespace(
        db=database,
        usage=usage,
        outcome_store=outcome_store,
        decision_logger=decision_logger,
        sampler=thompson,
        rollout=rollout_controller,
        burden=burden_tracker,
        limiter=rate_limiter,
        outcomes=tracker,
        engine=decision_engine,
        tracker=sessions,
        monitor=controller,
        clock=clock,
    )


@pytest.fixture
def stack(clock):
    built = build_stack(clock)
    yield built
    built.db.close()


@pytest.fixture
def rl_stack(clock):
    built = build_stack(clock, rollout_percentage=100)
    yield built
    built.db.close()
