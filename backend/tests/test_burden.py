"""Tests for burden metrics and the cached BurdenTracker."""

import asyncio
from datetime import datetime, timedelta

from nudge.burden import (
    BurdenMetrics,
    BurdenSample,
    BurdenTracker,
    compute_metrics,
    engagement_trend,
    level_for_score,
    recommended_cooldown_multiplier,
)

NOW = datetime(2026, 10, 14, 12, 0, 0)


def spaced(choices, hours=6, feedback=None):
    start = NOW - timedelta(hours=hours * len(choices))
    return [
        BurdenSample(at=start + timedelta(hours=hours * index), choice=choice, response_time_ms=2000, feedback=feedback)
        for index, choice in enumerate(choices)
    ]


def test_no_samples_gives_neutral_unreliable_metrics():
    metrics = compute_metrics([], NOW)
    assert metrics == BurdenMetrics()
    assert metrics.level() == "LOW"
    assert metrics.is_reliable() is False


def test_one_third_dismissals_is_not_high_burden():
    choices = ["DISMISS", "GO_BACK", "GO_BACK"] * 6 + ["DISMISS", "GO_BACK"]
    metrics = compute_metrics(spaced(choices), NOW)
    assert metrics.sample_size == 20
    assert metrics.dismiss_rate == 7 / 20
    assert metrics.is_reliable() is True
    assert metrics.level() in ("LOW", "MODERATE")
    assert metrics.should_reduce_interventions() is False


def test_fatigue_signals_reach_critical():
    choices = ["GO_BACK"] * 10 + ["DISMISS", "TIMEOUT"] * 5
    samples = [
        BurdenSample(at=NOW - timedelta(minutes=2 * (20 - index)), choice=choice, feedback="DISRUPTIVE")
        for index, choice in enumerate(choices)
    ]
    metrics = compute_metrics(samples, NOW)
    assert metrics.engagement_trend == "DECLINING"
    assert metrics.effectiveness_trend == "DECLINING"
    assert metrics.level() == "CRITICAL"
    assert metrics.cooldown_multiplier() == 4.0
    assert metrics.should_reduce_interventions() is True
    assert any(factor.startswith("Back-to-back") for factor in metrics.factors())
    assert metrics.summary().startswith("CRITICAL")


def test_explicit_feedback_needs_five_responses():
    few = compute_metrics(spaced(["CONTINUE"] * 4, feedback="DISRUPTIVE"), NOW)
    many = compute_metrics(spaced(["CONTINUE"] * 5, feedback="DISRUPTIVE"), NOW)
    assert "Negative explicit feedback (0% helpful)" not in few.factors()
    assert "Negative explicit feedback (0% helpful)" in many.factors()


def test_engagement_trend_requires_twenty_samples():
    short = spaced(["GO_BACK"] * 10 + ["DISMISS"] * 9)
    assert engagement_trend(short) == "STABLE"


def test_level_boundaries_and_multipliers():
    assert level_for_score(4) == "LOW"
    assert level_for_score(5) == "MODERATE"
    assert level_for_score(10) == "HIGH"
    assert level_for_score(15) == "CRITICAL"
    assert [recommended_cooldown_multiplier(level) for level in ("LOW", "MODERATE", "HIGH", "CRITICAL")] == [
        1.0,
        1.5,
        2.5,
        4.0,
    ]


class _FakeOutcomeStore:
    def __init__(self, samples):
        self.samples = samples
        self.calls = 0

    async def burden_samples(self, since):
        self.calls += 1
        return [sample for sample in self.samples if sample.at >= since]


def test_tracker_caches_until_invalidated():
    store = _FakeOutcomeStore(spaced(["DISMISS"] * 12))
    tracker = BurdenTracker(store, clock=lambda: NOW)

    async def scenario():
        first = await tracker.current_metrics()
        await tracker.current_metrics()
        tracker.invalidate()
        await tracker.current_metrics()
        return first, await tracker.is_high_burden(), await tracker.cooldown_adjustment()

    first, high, adjustment = asyncio.run(scenario())
    assert store.calls == 2
    assert first.dismiss_rate == 1.0
    assert high is (first.level() in ("HIGH", "CRITICAL"))
    assert adjustment == first.cooldown_multiplier()


def test_tracker_ignores_unreliable_burden():
    store = _FakeOutcomeStore(spaced(["DISMISS"] * 3))
    tracker = BurdenTracker(store, clock=lambda: NOW)

    async def scenario():
        return await tracker.is_high_burden(), await tracker.cooldown_adjustment()

    assert asyncio.run(scenario()) == (False, 1.0)
