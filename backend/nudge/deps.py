"""Shared singletons and helpers used by route modules."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi.encoders import jsonable_encoder

from .bandit import DefaultRandom, RolloutController, RuleBasedSelector, ThompsonSampler
from .burden import BurdenTracker
from .config import settings
from .db import Database
from .decisions import DecisionLogger, DecisionLogStore
from .engine import DecisionEngine
from .error_channel import ErrorChannel
from .gate import AdaptiveGate, BasicRateLimiter
from .monitor import MonitorController
from .outcomes import OutcomeStore, OutcomeTracker
from .persona import PersonaDetector
from .scheduler import BackgroundScheduler, register_engine_jobs
from .sessions import SessionTracker
from .usage import UsageStore

logger = logging.getLogger("nudge.backend")


def clock() -> datetime:
    return datetime.now()


# ── Singletons ────────────────────────────────────────────────────────────

db = Database(settings.db_path)
error_channel = ErrorChannel(max_entries=settings.error_channel_max_entries)
usage = UsageStore(db)
outcome_store = OutcomeStore(db)
decision_store = DecisionLogStore(db)
decision_logger = DecisionLogger(decision_store)

rng = DefaultRandom()
sampler = ThompsonSampler(db, rng=rng)
rule_selector = RuleBasedSelector(rng=rng)
rollout = RolloutController(
    db,
    enabled=settings.rollout_enabled,
    percentage=settings.rollout_percentage,
    shadow_mode=settings.shadow_mode,
)
burden = BurdenTracker(outcome_store, clock=clock)
persona = PersonaDetector(usage, clock=clock, quick_reopen_window_s=settings.quick_reopen_window_s)
limiter = BasicRateLimiter(
    db,
    global_cooldown_s=settings.global_cooldown_minutes * 60,
    type_cooldowns_s={
        "REMINDER": settings.reminder_cooldown_minutes * 60,
        "TIMER": settings.timer_cooldown_minutes * 60,
    },
    min_session_s={"REMINDER": 0, "TIMER": settings.min_session_minutes * 60},
    max_per_hour=settings.max_per_hour,
    max_per_day=settings.max_per_day,
    snooze_minutes=settings.snooze_minutes,
)
gate = AdaptiveGate(limiter)
outcomes = OutcomeTracker(
    outcome_store,
    usage,
    clock=clock,
    sampler=sampler,
    rollout=rollout,
    burden=burden,
    productive_apps=settings.productive_apps,
    goal_minutes=settings.daily_goal_minutes,
    batch_size=settings.sweep_batch_size,
    quick_reopen_window_s=settings.quick_reopen_window_s,
)
engine = DecisionEngine(
    usage=usage,
    outcomes=outcomes,
    persona=persona,
    burden=burden,
    gate=gate,
    sampler=sampler,
    rule_selector=rule_selector,
    rollout=rollout,
    decision_logger=decision_logger,
    clock=clock,
    goal_minutes=settings.daily_goal_minutes,
    locked_mode=settings.locked_mode,
    quick_reopen_window_s=settings.quick_reopen_window_s,
)
tracker = SessionTracker(
    settings.monitored_apps,
    gap_s=settings.session_gap_s,
    min_duration_s=settings.session_min_duration_s,
    timer_duration_s=settings.session_timer_minutes * 60,
)
monitor = MonitorController(
    tracker,
    engine,
    db,
    clock=clock,
    poll_active_s=settings.poll_active_s,
    poll_idle_s=settings.poll_idle_s,
    poll_idle_after_s=settings.poll_idle_after_s,
    poll_screen_off_s=settings.poll_screen_off_s,
    poll_power_save_s=settings.poll_power_save_s,
)
scheduler = BackgroundScheduler(
    max_retries=settings.job_max_retries,
    retry_delay_s=settings.job_retry_delay_s,
    clock=clock,
)
register_engine_jobs(
    scheduler,
    outcomes=outcomes,
    usage=usage,
    decision_logger=decision_logger,
    rollout=rollout,
    settings=settings,
)


# ── Helpers ───────────────────────────────────────────────────────────────

def _dump(model):
    return jsonable_encoder(model)


def _local_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Engine time is naive local time; convert aware inputs to it."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)

