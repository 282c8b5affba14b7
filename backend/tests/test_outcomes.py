import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import DUOLINGO, INSTAGRAM
from nudge.outcomes import OutcomeTracker, weekly_change
from nudge.schemas import ComprehensiveOutcome, ProximalOutcome
from nudge.sessions import Session

T = datetime(2026, 10, 14, 10, 0, 0)


def live_session(session_id="s-1", started_at=T):
    return Session(
        session_id=session_id,
        target_app=INSTAGRAM,
        started_at=started_at,
        last_active_at=started_at,
        timer_anchor_at=started_at,
    )


def ended(session_id, start, end):
    return Session(
        session_id=session_id,
        target_app=INSTAGRAM,
        started_at=start,
        last_active_at=end,
        timer_anchor_at=start,
        ended_at=end,
        interruption_type="app_switch",
    )


def control_outcome(intervention_id="i-1", shown_at=T, variant="CONTROL"):
    return ComprehensiveOutcome(
        intervention_id=intervention_id,
        session_id="s-1",
        target_app=INSTAGRAM,
        content_type="QUOTE",
        rollout_variant=variant,
        shown_at=shown_at,
    )


def test_full_outcome_lifecycle_updates_bandit_once(rl_stack):
    stack = rl_stack

    async def scenario():
        decision = await stack.engine.decide(live_session())
        plan = decision.plan
        assert plan is not None
        assert decision.explanation.rollout_variant == "RL_TREATMENT"
        await stack.engine.record_response(plan.intervention_id, choice="GO_BACK", now=T + timedelta(minutes=1))
        await stack.usage.record_session(ended("s-1", T, T + timedelta(minutes=1)))
        stack.outcomes.note_foreground(DUOLINGO, T + timedelta(minutes=2))

        early = await stack.outcomes.run_sweep("short", T + timedelta(minutes=5))
        short = await stack.outcomes.run_sweep("short", T + timedelta(minutes=6))
        rerun = await stack.outcomes.run_sweep("short", T + timedelta(minutes=7))
        arm = stack.sampler.arm(plan.content_type)
        medium = await stack.outcomes.run_sweep("medium", T + timedelta(hours=2))
        long = await stack.outcomes.run_sweep("long", T + timedelta(days=8))
        stored = await stack.outcome_store.get(plan.intervention_id)
        return plan, early, short, rerun, (arm.alpha, arm.pulls), medium, long, stored

    plan, early, short, rerun, arm_state, medium, long, stored = asyncio.run(scenario())

    assert early["processed"] == 0
    assert short == {"stage": "short", "processed": 1, "collected": 1, "failed": 0, "finalized": 0}
    assert rerun["processed"] == 0
    assert arm_state == (2.0, 1)
    assert medium["collected"] == 1
    assert long["collected"] == 1
    assert long["finalized"] == 1

    assert stored.short_term.session_continued is False
    assert stored.short_term.switched_to_productive_app is True
    assert stored.short_term.reopen_count_30min == 0
    assert stored.medium_term.goal_met_today is True
    assert stored.medium_term.total_usage_minutes_today == 1.0
    assert stored.long_term.weekly_usage_change == "STABLE"
    assert stored.long_term.streak_maintained is True
    assert stored.reward_attributed is True
    # 10 | 15 + 10 + 8 + 8 | 6 + 5 | 3 + 5
    assert stored.reward_score == 70.0
    assert stored.finalized_at == T + timedelta(days=8)


def test_failed_bandit_update_is_retried_at_finalization(rl_stack, monkeypatch):
    stack = rl_stack
    update = stack.sampler.update
    calls = []

    async def flaky_update(arm, reward):
        calls.append(arm)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return await update(arm, reward)

    monkeypatch.setattr(stack.sampler, "update", flaky_update)

    async def scenario():
        plan = (await stack.engine.decide(live_session())).plan
        await stack.engine.record_response(plan.intervention_id, choice="GO_BACK", now=T + timedelta(minutes=1))
        await stack.usage.record_session(ended("s-1", T, T + timedelta(minutes=1)))
        await stack.outcomes.run_sweep("short", T + timedelta(minutes=6))
        after_failure = await stack.outcome_store.get(plan.intervention_id)
        pending = stack.sampler.pending_count
        finalized = await stack.outcomes.finalize_expired(T + timedelta(days=31))
        return plan, after_failure, pending, finalized, await stack.outcome_store.get(plan.intervention_id)

    plan, after_failure, pending, finalized, stored = asyncio.run(scenario())
    assert after_failure.reward_attributed is False
    assert pending == 1
    assert finalized == 1
    assert stored.reward_attributed is True
    assert calls == [plan.content_type, plan.content_type]
    assert stack.sampler.arm(plan.content_type).pulls == 1


def test_short_stage_observes_continuation_and_reopen(stack):
    async def scenario():
        await stack.outcomes.record_proximal(control_outcome(), ProximalOutcome(choice="CONTINUE", recorded_at=T))
        await stack.usage.record_session(ended("s-1", T - timedelta(minutes=5), T + timedelta(minutes=3)))
        await stack.usage.record_session(ended("s-2", T + timedelta(minutes=4), T + timedelta(minutes=6)))
        await stack.outcomes.run_sweep("short", T + timedelta(minutes=10))
        return await stack.outcome_store.get("i-1")

    stored = asyncio.run(scenario())
    short = stored.short_term
    assert short.session_continued is True
    assert short.session_duration_after_s == 180.0
    assert short.reopen_delay_s == 60.0
    assert short.quick_reopen is True
    assert short.reopen_count_30min == 1
    assert short.switched_to_productive_app is False
    # Control outcomes without a pending arm never touch the posteriors.
    assert stored.reward_attributed is True
    assert stack.sampler.stats()["total_pulls"] == 0


def test_proximal_is_recorded_once(stack):
    async def scenario():
        first = await stack.outcomes.record_proximal(
            control_outcome(), ProximalOutcome(choice="DISMISS", recorded_at=T)
        )
        second = await stack.outcomes.record_proximal(
            control_outcome(), ProximalOutcome(choice="GO_BACK", recorded_at=T)
        )
        statuses = await stack.outcome_store.task_statuses("i-1")
        return first, second, statuses

    first, second, statuses = asyncio.run(scenario())
    assert first.proximal.choice == "DISMISS"
    assert second.proximal.choice == "DISMISS"
    assert statuses == {"short": "PENDING", "medium": "PENDING", "long": "PENDING"}


def test_collected_stage_is_never_overwritten(stack):
    async def scenario():
        await stack.outcomes.record_proximal(control_outcome(), ProximalOutcome(choice="GO_BACK", recorded_at=T))
        outcome = await stack.outcome_store.get("i-1")
        payload = await stack.outcomes._observe("medium", outcome, T + timedelta(hours=1))
        first = await stack.outcome_store.complete_stage("i-1", "medium", payload, T + timedelta(hours=1))
        changed = payload.model_copy(update={"additional_sessions_today": 9})
        second = await stack.outcome_store.complete_stage("i-1", "medium", changed, T + timedelta(hours=2))
        return first, second, await stack.outcome_store.get("i-1")

    first, second, stored = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert stored.medium_term.additional_sessions_today == 0


class _BrokenUsage:
    async def get_session(self, session_id):
        raise RuntimeError("usage store offline")

    async def sessions_between(self, since, until, target_app=None):
        raise RuntimeError("usage store offline")


def test_failed_collection_retries_then_marks_failed(stack, clock):
    tracker = OutcomeTracker(stack.outcome_store, _BrokenUsage(), clock=clock, max_attempts=3)

    async def scenario():
        await tracker.record_proximal(control_outcome(), ProximalOutcome(choice="CONTINUE", recorded_at=T))
        sweeps = [await tracker.run_sweep("short", T + timedelta(minutes=6 + i)) for i in range(4)]
        return sweeps, await stack.outcome_store.task_statuses("i-1")

    sweeps, statuses = asyncio.run(scenario())
    assert [s["processed"] for s in sweeps] == [1, 1, 1, 0]
    assert [s["failed"] for s in sweeps] == [0, 0, 1, 0]
    assert statuses["short"] == "FAILED"
    assert statuses["medium"] == "PENDING"


def test_expired_outcome_is_finalized_with_partial_stages(stack):
    shown = T - timedelta(days=31)

    async def scenario():
        await stack.outcomes.record_proximal(
            control_outcome(shown_at=shown), ProximalOutcome(choice="TIMEOUT", recorded_at=shown)
        )
        count = await stack.outcomes.finalize_expired(T)
        return count, await stack.outcome_store.get("i-1"), await stack.outcome_store.task_statuses("i-1")

    count, stored, statuses = asyncio.run(scenario())
    assert count == 1
    assert stored.reward_score == -8.0
    assert set(statuses.values()) == {"FAILED"}


def test_unknown_stage_is_rejected(stack):
    with pytest.raises(ValueError):
        asyncio.run(stack.outcomes.run_sweep("weekly", T))


def test_statistics_and_go_back_rate(stack):
    async def scenario():
        await stack.outcomes.record_proximal(
            control_outcome("i-1"), ProximalOutcome(choice="GO_BACK", recorded_at=T)
        )
        await stack.outcomes.record_proximal(
            control_outcome("i-2", shown_at=T + timedelta(minutes=20)),
            ProximalOutcome(choice="DISMISS", recorded_at=T + timedelta(minutes=20)),
        )
        return await stack.outcomes.statistics(days=7), await stack.outcome_store.go_back_rate(INSTAGRAM, 10)

    stats, (rate, samples) = asyncio.run(scenario())
    assert stats["total_outcomes"] == 2
    assert stats["proximal_collected"] == 2
    assert stats["go_back_rate"] == 0.5
    assert stats["days_analyzed"] == 7
    assert (rate, samples) == (0.5, 2)


@pytest.mark.parametrize(
    "before,after,expected",
    [(60, 40, "DECREASED"), (60, 55, "STABLE"), (60, 80, "INCREASED"), (0, 0, "STABLE"), (0, 5, "INCREASED")],
)
def test_weekly_change_band(before, after, expected):
    assert weekly_change(before, after) == expected
