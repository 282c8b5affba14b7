import asyncio
from datetime import datetime, timedelta

import pytest

from nudge.burden import BurdenMetrics
from nudge.context import InterventionContext
from nudge.db import Database
from nudge.gate import (
    AdaptiveGate,
    BasicRateLimiter,
    GateRequest,
    GateState,
    frequency_allows,
)
from nudge.opportunity import OpportunityResult

NOW = datetime(2026, 10, 14, 10, 0, 0)


def make_ctx(hour=10, **overrides):
    values = dict(hour=hour, day_of_week=2, is_weekend=False, target_app="com.instagram.android")
    values.update(overrides)
    return InterventionContext(**values)


def make_request(
    *,
    now=NOW,
    hour=None,
    intervention_type="REMINDER",
    session_s=600.0,
    score=60,
    level="GOOD",
    decision="INTERVENE_WITH_CONSIDERATION",
    persona="MODERATE_BALANCED_USER",
    burden=None,
    **ctx_overrides,
):
    return GateRequest(
        ctx=make_ctx(hour if hour is not None else now.hour, **ctx_overrides),
        intervention_type=intervention_type,
        session_duration_s=session_s,
        now=now,
        opportunity=OpportunityResult(score=score, level=level, decision=decision),
        persona=persona,
        persona_confidence="HIGH",
        burden=burden or BurdenMetrics(),
    )


def high_burden():
    return BurdenMetrics(
        dismiss_rate=0.6,
        timeout_rate=0.4,
        engagement_trend="DECLINING",
        sample_size=25,
    )


def test_all_checkpoints_pass():
    gate = AdaptiveGate(BasicRateLimiter())
    result = gate.evaluate(make_request())
    assert result.decision == "SHOW"
    assert result.blocking_reason is None
    assert [cp.name for cp in result.checkpoints] == [
        "snooze",
        "basic_rate_limit",
        "persona_frequency",
        "jitai_filter",
        "burden_gate",
    ]
    assert all(cp.passed for cp in result.checkpoints)


def test_snooze_blocks_first():
    limiter = BasicRateLimiter()
    limiter.state.snooze_until = NOW + timedelta(minutes=5)
    result = AdaptiveGate(limiter).evaluate(make_request())
    assert result.decision == "SKIP"
    assert result.blocking_reason == "SNOOZE_ACTIVE"
    assert len(result.checkpoints) == 1
    assert result.checkpoint("basic_rate_limit") is None


def test_global_cooldown_blocks_regardless_of_opportunity():
    limiter = BasicRateLimiter()
    asyncio.run(limiter.record_intervention("REMINDER", NOW - timedelta(minutes=2)))
    for level, score in (("POOR", 5), ("MODERATE", 35), ("GOOD", 60), ("EXCELLENT", 95)):
        result = AdaptiveGate(limiter).evaluate(
            make_request(score=score, level=level, decision="INTERVENE_NOW")
        )
        assert result.decision == "SKIP"
        assert result.blocking_reason == "BASIC_RATE_LIMIT"
        assert result.checkpoint("basic_rate_limit").evidence["time_since_last_s"] == 120


def test_burden_multiplier_stretches_cooldown():
    limiter = BasicRateLimiter(type_cooldowns_s={"REMINDER": 0, "TIMER": 0})
    asyncio.run(limiter.record_intervention("REMINDER", NOW - timedelta(minutes=7)))
    plain = limiter.check("REMINDER", 600, NOW)
    stretched = limiter.check("REMINDER", 600, NOW, burden_multiplier=1.5)
    assert plain.allowed is True
    assert stretched.allowed is False
    assert "1.5x multiplier" in stretched.reason


def test_type_cooldown_and_minimum_session():
    limiter = BasicRateLimiter()
    asyncio.run(limiter.record_intervention("TIMER", NOW - timedelta(minutes=10)))
    blocked = limiter.check("TIMER", 600, NOW)
    assert blocked.allowed is False
    assert blocked.reason.startswith("TIMER cooldown active")
    assert limiter.check("REMINDER", 600, NOW).allowed is True

    fresh = BasicRateLimiter()
    too_short = fresh.check("TIMER", 30, NOW)
    assert too_short.allowed is False
    assert too_short.cooldown_remaining_s == 90


def test_hourly_and_daily_caps():
    limiter = BasicRateLimiter(global_cooldown_s=0, type_cooldowns_s={}, max_per_hour=2, max_per_day=3)
    limiter.state.shown_at = [NOW - timedelta(minutes=50), NOW - timedelta(minutes=40)]
    hourly = limiter.check("REMINDER", 600, NOW)
    assert hourly.allowed is False
    assert hourly.reason == "Hourly limit reached (2/2)"

    limiter.state.shown_at = [NOW - timedelta(hours=3), NOW - timedelta(hours=2), NOW - timedelta(minutes=30)]
    daily = limiter.check("REMINDER", 600, NOW)
    assert daily.allowed is False
    assert daily.reason == "Daily limit reached (3/3)"


@pytest.mark.parametrize(
    "frequency,score,level,hour,expected",
    [
        ("MINIMAL", 95, "EXCELLENT", 12, True),
        ("MINIMAL", 65, "GOOD", 12, False),
        ("CONSERVATIVE", 55, "GOOD", 12, True),
        ("CONSERVATIVE", 40, "MODERATE", 12, False),
        ("BALANCED", 35, "MODERATE", 12, True),
        ("BALANCED", 20, "POOR", 12, False),
        ("MODERATE", 25, "POOR", 12, True),
        ("MODERATE", 24, "POOR", 12, False),
        ("ADAPTIVE", 35, "MODERATE", 2, False),
        ("ADAPTIVE", 45, "MODERATE", 2, True),
        ("ONBOARDING", 45, "MODERATE", 2, False),
        ("ONBOARDING", 30, "MODERATE", 9, True),
    ],
)
def test_persona_frequency_rules(frequency, score, level, hour, expected):
    assert frequency_allows(frequency, score, level, hour) is expected


def test_persona_frequency_blocks_problematic_user():
    result = AdaptiveGate(BasicRateLimiter()).evaluate(make_request(persona="PROBLEMATIC_PATTERN_USER"))
    assert result.blocking_reason == "PERSONA_FREQUENCY_LIMIT"
    assert result.checkpoint("persona_frequency").evidence["rule"] == "MINIMAL"


def test_jitai_vetoes_skip_and_early_morning():
    gate = AdaptiveGate(BasicRateLimiter())
    low = gate.evaluate(make_request(score=45, level="MODERATE", decision="SKIP_INTERVENTION"))
    assert low.blocking_reason == "JITAI_POOR_OPPORTUNITY"

    early = datetime(2026, 10, 14, 4, 0, 0)
    result = gate.evaluate(make_request(now=early, persona="HEAVY_BINGE_USER"))
    assert result.blocking_reason == "JITAI_POOR_OPPORTUNITY"
    assert gate.evaluate(make_request(now=early, persona="HEAVY_BINGE_USER", quick_reopen=True)).allowed


def test_high_burden_requires_excellent_opportunity():
    gate = AdaptiveGate(BasicRateLimiter())
    burden = high_burden()
    assert burden.level() in ("HIGH", "CRITICAL")

    good = gate.evaluate(make_request(burden=burden))
    assert good.blocking_reason == "BURDEN_MITIGATION"

    excellent = gate.evaluate(
        make_request(burden=burden, score=90, level="EXCELLENT", decision="INTERVENE_NOW")
    )
    assert excellent.decision == "SHOW"


def test_unreliable_burden_is_ignored():
    burden = BurdenMetrics(dismiss_rate=0.9, timeout_rate=0.9, engagement_trend="DECLINING", sample_size=3)
    request = make_request(burden=burden)
    assert request.burden_multiplier == 1.0
    assert AdaptiveGate(BasicRateLimiter()).evaluate(request).allowed


def test_feedback_adjusts_multiplier_within_bounds():
    limiter = BasicRateLimiter()

    async def scenario():
        for _ in range(20):
            await limiter.apply_feedback("DISRUPTIVE")
        high = limiter.state.cooldown_multiplier
        for _ in range(40):
            await limiter.apply_feedback("HELPFUL")
        low = limiter.state.cooldown_multiplier
        unchanged = await limiter.apply_feedback(None)
        return high, low, unchanged

    high, low, unchanged = asyncio.run(scenario())
    assert high == 3.0
    assert low == 0.5
    assert unchanged == 0.5


def test_escalate_reset_and_snooze():
    limiter = BasicRateLimiter(snooze_minutes=10)

    async def scenario():
        await limiter.escalate_cooldown()
        await limiter.escalate_cooldown()
        escalated = limiter.state.cooldown_multiplier
        await limiter.reset_cooldown()
        until = await limiter.snooze(NOW)
        return escalated, until

    escalated, until = asyncio.run(scenario())
    assert escalated == pytest.approx(2.25)
    assert limiter.state.cooldown_multiplier == 1.0
    assert until == NOW + timedelta(minutes=10)
    assert limiter.is_snoozed(NOW + timedelta(minutes=9)) is True
    assert limiter.is_snoozed(NOW + timedelta(minutes=10)) is False


def test_state_persists_across_limiters():
    db = Database(":memory:")
    first = BasicRateLimiter(db)

    async def scenario():
        await first.record_intervention("TIMER", NOW)
        await first.escalate_cooldown()
        second = BasicRateLimiter(db)
        await second.hydrate()
        return second

    second = asyncio.run(scenario())
    db.close()
    assert second.state.last_by_type["TIMER"] == NOW
    assert second.state.cooldown_multiplier == 1.5
    assert second.state.shown_at == [NOW]


def test_corrupt_state_falls_back_to_defaults():
    db = Database(":memory:")
    db.set_state_sync("gate_state", {"shown_at": ["not-a-date"]})
    limiter = BasicRateLimiter(db)
    asyncio.run(limiter.hydrate())
    db.close()
    assert limiter.state == GateState()
