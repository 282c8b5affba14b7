"""Deterministic 0-100 receptiveness score with a per-factor breakdown."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from .context import InterventionContext

TIME_MAX = 25
SESSION_MAX = 20
COGNITIVE_MAX = 15
HISTORICAL_MAX = 15
USER_STATE_MAX = 25

MIN_HISTORICAL_SAMPLES = 10

LEVEL_THRESHOLDS = (("EXCELLENT", 70), ("GOOD", 50), ("MODERATE", 30))
DECISION_THRESHOLDS = (
    ("INTERVENE_NOW", 70),
    ("INTERVENE_WITH_CONSIDERATION", 50),
    ("WAIT_FOR_BETTER_OPPORTUNITY", 30),
)


@dataclass(frozen=True)
class OpportunityResult:
    score: int
    level: str
    decision: str
    breakdown: Dict[str, int] = field(default_factory=dict)
    factors: Dict[str, str] = field(default_factory=dict)


def level_for_score(score: int) -> str:
    for level, threshold in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return "POOR"


def decision_for_score(score: int) -> str:
    for decision, threshold in DECISION_THRESHOLDS:
        if score >= threshold:
            return decision
    return "SKIP_INTERVENTION"


def _clamp(value: int, upper: int) -> int:
    return max(0, min(upper, value))


def time_receptiveness(ctx: InterventionContext) -> int:
    hour = ctx.hour
    first = ctx.is_first_session_of_day
    if hour >= 22 or hour <= 2:
        return 25 if ctx.is_over_goal else 20
    if 3 <= hour <= 5:
        return 5
    if 6 <= hour <= 9:
        if ctx.is_weekend and first:
            return 25
        if first:
            return 23
        if ctx.is_weekend:
            return 22
        return 20
    if 10 <= hour <= 16:
        if ctx.is_over_goal:
            return 18
        if ctx.current_session_minutes >= 15:
            return 15
        return 12
    if 17 <= hour <= 21:
        if ctx.is_weekend and ctx.is_over_goal:
            return 23
        if ctx.is_over_goal:
            return 20
        return 15
    return 10


def session_pattern(ctx: InterventionContext) -> int:
    if ctx.quick_reopen:
        return 20
    if ctx.is_first_session_of_day:
        return 15
    minutes = ctx.current_session_minutes
    if minutes >= 30:
        return 18
    if minutes >= 15:
        return 12
    if minutes >= 5:
        return 8
    return 5


def cognitive_load(ctx: InterventionContext) -> int:
    score = COGNITIVE_MAX
    if not ctx.quick_reopen:
        score -= 3
    if ctx.current_session_minutes >= 20:
        score -= 5
    elif ctx.current_session_minutes >= 10:
        score -= 2
    if ctx.is_late_night:
        score += 2
    return _clamp(score, COGNITIVE_MAX)


def historical_success(ctx: InterventionContext) -> int:
    rate = ctx.historical_go_back_rate
    if rate is None or ctx.historical_sample_size < MIN_HISTORICAL_SAMPLES:
        return 9
    if rate >= 0.60:
        return 15
    if rate >= 0.50:
        return 13
    if rate >= 0.40:
        return 10
    if rate >= 0.30:
        return 7
    return 4


def user_state(ctx: InterventionContext) -> int:
    score = 6
    if ctx.streak_days >= 7:
        score += 3
    elif ctx.streak_days >= 3:
        score += 2
    if ctx.usage_yesterday_minutes > 0 and ctx.usage_today_minutes < ctx.usage_yesterday_minutes:
        score += 2
    if ctx.weekly_average_minutes > 0 and ctx.usage_today_minutes < ctx.weekly_average_minutes:
        score += 1
    if ctx.is_over_goal:
        score += 3
    if ctx.streak_days >= 14:
        score += 1
    return score


def behavioral_cues(ctx: InterventionContext) -> int:
    score = 0
    if ctx.compulsive_behavior:
        score += 6
    if ctx.rapid_app_switching:
        score += 4
    if ctx.unusual_usage_time:
        score += 3
    if ctx.is_long_screen_session:
        score += 2
    if ctx.is_excessive_unlocking:
        score += 2
    return score


def _describe_cues(ctx: InterventionContext) -> str:
    cues = []
    if ctx.compulsive_behavior:
        cues.append("Compulsive")
    if ctx.rapid_app_switching:
        cues.append("Rapid switching")
    if ctx.unusual_usage_time:
        cues.append("Unusual time")
    if ctx.is_long_screen_session:
        cues.append("Long screen")
    if ctx.is_excessive_unlocking:
        cues.append("Excessive unlocks")
    return ", ".join(cues) if cues else "Normal behavior"


def score(ctx: InterventionContext) -> OpportunityResult:
    breakdown = {
        "time_receptiveness": _clamp(time_receptiveness(ctx), TIME_MAX),
        "session_pattern": _clamp(session_pattern(ctx), SESSION_MAX),
        "cognitive_load": _clamp(cognitive_load(ctx), COGNITIVE_MAX),
        "historical_success": _clamp(historical_success(ctx), HISTORICAL_MAX),
        "user_state": _clamp(user_state(ctx) + behavioral_cues(ctx), USER_STATE_MAX),
    }
    total = min(100, sum(breakdown.values()))
    factors = {
        "time": f"hour {ctx.hour}{' (late night)' if ctx.is_late_night else ''}",
        "session": "quick reopen" if ctx.quick_reopen else f"{ctx.current_session_minutes} min",
        "history": (
            f"{ctx.historical_go_back_rate:.0%} go-back over {ctx.historical_sample_size}"
            if ctx.historical_go_back_rate is not None
            else "insufficient history"
        ),
        "behavioral": _describe_cues(ctx),
    }
    return OpportunityResult(
        score=total,
        level=level_for_score(total),
        decision=decision_for_score(total),
        breakdown=breakdown,
        factors=factors,
    )
