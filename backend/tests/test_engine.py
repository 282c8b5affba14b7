import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import INSTAGRAM
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


def test_new_user_first_session_is_shown(stack):
    decision = asyncio.run(stack.engine.decide(live_session()))
    record = decision.explanation

    assert decision.shown
    assert record.decision == "SHOW"
    assert record.opportunity_score == 54
    assert record.opportunity_level == "GOOD"
    assert record.persona == "NEW_USER"
    assert record.persona_frequency_rule == "ONBOARDING"
    assert record.friction_level == "GENTLE"
    assert record.rollout_variant == "CONTROL"
    assert record.content_weights
    assert record.explanation.startswith("SHOWN: Opportunity score 54 (GOOD) for NEW_USER user.")
    assert decision.plan.explanation == record.explanation
    assert stack.engine.shown_intervention(decision.plan.intervention_id) == decision.plan


def test_control_variant_records_shadow_prediction(stack):
    record = asyncio.run(stack.engine.decide(live_session())).explanation
    assert record.rl_predicted_arm is not None
    assert record.rl_predicted_reward == 0.5
    assert stack.sampler.stats()["pending"] == 0


def test_treatment_variant_remembers_sampled_arm(rl_stack):
    decision = asyncio.run(rl_stack.engine.decide(live_session()))
    assert decision.explanation.rollout_variant == "RL_TREATMENT"
    assert decision.explanation.content_selection_reason.startswith("Thompson sampling")
    assert rl_stack.sampler.pop_pending(decision.plan.intervention_id) == decision.plan.content_type


def test_second_decision_inside_cooldown_is_skipped(stack, clock):
    async def scenario():
        first = await stack.engine.decide(live_session())
        clock.advance(minutes=1)
        second = await stack.engine.decide(live_session())
        await stack.decision_logger.drain()
        summary = await stack.decision_logger.decision_summary(clock(), days=1)
        return first, second, summary

    first, second, summary = asyncio.run(scenario())
    assert first.shown
    assert not second.shown
    assert second.explanation.blocking_reason == "BASIC_RATE_LIMIT"
    assert second.explanation.time_since_last_intervention_s == 60
    assert second.explanation.passed_basic_rate_limit is False
    assert second.explanation.passed_persona_frequency is False
    assert second.explanation.explanation == "SKIPPED: Cooldown period active (60s since last intervention)"
    assert summary["show_count"] == 1
    assert summary["skip_reasons"] == {"BASIC_RATE_LIMIT": 1}


def test_new_user_is_not_interrupted_before_dawn(stack, clock):
    clock.now = datetime(2026, 10, 14, 4, 0, 0)
    decision = asyncio.run(stack.engine.decide(live_session(started_at=clock.now)))
    assert decision.explanation.blocking_reason == "PERSONA_FREQUENCY_LIMIT"
    assert decision.explanation.explanation == "SKIPPED: Persona frequency limit (ONBOARDING for NEW_USER)"


def test_locked_mode_sets_friction_without_bypassing_gate(stack):
    stack.engine.locked_mode = True
    decision = asyncio.run(stack.engine.decide(live_session()))
    assert decision.plan.friction_level == "LOCKED"
    assert decision.explanation.passed_burden_gate is True


def test_response_validation(stack):
    async def scenario():
        decision = await stack.engine.decide(live_session())
        with pytest.raises(KeyError):
            await stack.engine.record_response("missing", choice="GO_BACK")
        with pytest.raises(ValueError):
            await stack.engine.record_response(decision.plan.intervention_id, choice="MAYBE")

    asyncio.run(scenario())


def test_snooze_response_snoozes_and_escalates(stack, clock):
    async def scenario():
        decision = await stack.engine.decide(live_session())
        outcome = await stack.engine.record_response(
            decision.plan.intervention_id,
            choice="SNOOZE",
            response_time_ms=1500,
            feedback="DISRUPTIVE",
        )
        clock.advance(minutes=20)
        later = await stack.engine.decide(live_session("s-2", started_at=clock()))
        return outcome, later

    outcome, later = asyncio.run(scenario())
    state = stack.limiter.state
    assert outcome.proximal.choice == "SNOOZE"
    assert outcome.proximal_collected is True
    assert state.snooze_until == T + timedelta(minutes=10)
    assert state.cooldown_multiplier == pytest.approx(1.8)
    assert later.explanation.blocking_reason != "SNOOZE_ACTIVE"


def test_go_back_response_resets_cooldown(stack):
    async def scenario():
        stack.limiter.state.cooldown_multiplier = 2.25
        decision = await stack.engine.decide(live_session())
        await stack.engine.record_response(decision.plan.intervention_id, choice="GO_BACK")
        return await stack.outcome_store.get(decision.plan.intervention_id)

    stored = asyncio.run(scenario())
    assert stack.limiter.state.cooldown_multiplier == 1.0
    assert stored.content_type is not None
    assert stored.rollout_variant == "CONTROL"


def test_hydrate_restores_gate_state(stack):
    async def scenario():
        await stack.engine.decide(live_session())
        saved = stack.limiter.state.last_intervention_at
        stack.limiter.state.last_intervention_at = None
        await stack.engine.hydrate()
        return saved

    saved = asyncio.run(scenario())
    assert stack.limiter.state.last_intervention_at == saved
