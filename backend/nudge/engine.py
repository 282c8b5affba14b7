"""Decision pipeline: context -> opportunity/persona/burden -> gate -> content -> log."""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .bandit import RolloutController, RuleBasedSelector, ThompsonSampler, excluded_arms
from .burden import BurdenMetrics, BurdenTracker
from .context import (
    BehaviorTracker,
    InterventionContext,
    build_context,
    effective_friction_level,
)
from .decisions import DecisionLogger
from .gate import AdaptiveGate, GateRequest, GateResult
from .opportunity import OpportunityResult, score
from .outcomes import OutcomeTracker
from .persona import PERSONA_PROFILES, DetectedPersona, PersonaAnalytics, PersonaDetector
from .schemas import (
    USER_CHOICES,
    ComprehensiveOutcome,
    DecisionExplanation,
    InterventionPlan,
    ProximalOutcome,
)
from .sessions import Session
from .usage import UsageStore

logger = logging.getLogger("nudge.engine")

MAX_TRACKED_INTERVENTIONS = 200


@dataclass(frozen=True)
class Decision:
    explanation: DecisionExplanation
    plan: Optional[InterventionPlan] = None

    @property
    def shown(self) -> bool:
        return self.plan is not None


@dataclass(frozen=True)
class _ShownIntervention:
    plan: InterventionPlan
    shown_at: datetime
    rollout_variant: Optional[str]


@dataclass(frozen=True)
class _ContentChoice:
    content_type: str
    reason: str
    weights: Optional[dict] = None
    predicted_arm: Optional[str] = None
    predicted_reward: Optional[float] = None
    exploration: Optional[bool] = None


class DecisionEngine:
    def __init__(
        self,
        *,
        usage: UsageStore,
        outcomes: OutcomeTracker,
        persona: PersonaDetector,
        burden: BurdenTracker,
        gate: AdaptiveGate,
        sampler: ThompsonSampler,
        rule_selector: RuleBasedSelector,
        rollout: RolloutController,
        decision_logger: DecisionLogger,
        clock: Callable[[], datetime] = datetime.now,
        goal_minutes: Optional[int] = 60,
        locked_mode: bool = False,
        friction_override: Optional[str] = None,
        quick_reopen_window_s: float = 120.0,
    ) -> None:
        self.usage = usage
        self.outcomes = outcomes
        self.persona = persona
        self.burden = burden
        self.gate = gate
        self.sampler = sampler
        self.rule_selector = rule_selector
        self.rollout = rollout
        self.decision_logger = decision_logger
        self.behavior = BehaviorTracker()
        self._clock = clock
        self.goal_minutes = goal_minutes
        self.locked_mode = locked_mode
        self.friction_override = friction_override
        self._quick_reopen_window_s = quick_reopen_window_s
        self._shown: "OrderedDict[str, _ShownIntervention]" = OrderedDict()

    async def hydrate(self) -> None:
        await self.gate.limiter.hydrate()
        await self.sampler.hydrate()
        await self.rollout.hydrate(await self.usage.install_id())
        logger.info(
            "Engine hydrated (variant=%s, bandit pulls=%d)",
            self.rollout.variant(),
            self.sampler.stats()["total_pulls"],
        )

    # ── Decision ──────────────────────────────────────────────────────────

    async def decide(
        self, session: Session, intervention_type: str = "REMINDER", now: Optional[datetime] = None
    ) -> Decision:
        now = now or self._clock()
        ctx = await self._context_for(session, now)

        try:
            opportunity = score(ctx)
        except Exception:
            logger.exception("Opportunity scoring failed; using a neutral score")
            opportunity = OpportunityResult(score=0, level="POOR", decision="SKIP_INTERVENTION")

        try:
            detected = await self.persona.detect()
        except Exception:
            logger.exception("Persona detection failed; defaulting to NEW_USER")
            detected = DetectedPersona("NEW_USER", "LOW", PersonaAnalytics(), now)

        try:
            burden = await self.burden.current_metrics()
        except Exception:
            logger.exception("Burden calculation failed; treating burden as unreliable")
            burden = BurdenMetrics()

        request = GateRequest(
            ctx=ctx,
            intervention_type=intervention_type,
            session_duration_s=max(0.0, (now - session.started_at).total_seconds()),
            now=now,
            opportunity=opportunity,
            persona=detected.persona,
            persona_confidence=detected.confidence,
            burden=burden,
        )
        try:
            result = self.gate.evaluate(request)
        except Exception as exc:
            logger.exception("Gate evaluation failed")
            result = GateResult(decision="SKIP", blocking_reason="OTHER", reason=f"Gate error: {exc}")

        plan: Optional[InterventionPlan] = None
        content: Optional[_ContentChoice] = None
        variant: Optional[str] = None
        intervention_id: Optional[str] = None
        decision_id = str(uuid.uuid4())
        if result.allowed:
            variant = self.rollout.variant()
            content = self._select_content(ctx, detected.persona, opportunity.level, intervention_type, variant)
            intervention_id = str(uuid.uuid4())
            if variant == "RL_TREATMENT":
                self.sampler.remember(intervention_id, content.content_type)
            try:
                await self.gate.limiter.record_intervention(intervention_type, now)
            except Exception as exc:
                logger.warning("Failed to persist gate state: %s", exc)
            plan = InterventionPlan(
                intervention_id=intervention_id,
                decision_id=decision_id,
                session_id=session.session_id,
                target_app=session.target_app,
                intervention_type=intervention_type,
                content_type=content.content_type,
                friction_level=ctx.friction_level,
            )

        record = self._explain(
            decision_id=decision_id,
            intervention_id=intervention_id,
            now=now,
            session=session,
            intervention_type=intervention_type,
            ctx=ctx,
            opportunity=opportunity,
            detected=detected,
            burden=burden,
            request=request,
            result=result,
            content=content,
            variant=variant,
        )
        rendered = self.decision_logger.log(record)
        if plan is not None:
            plan = plan.model_copy(update={"explanation": rendered.explanation})
            self._track(plan, now, variant)
            logger.info(
                "SHOW %s for %s (%s, score %d)",
                plan.content_type,
                session.target_app,
                intervention_type,
                opportunity.score,
            )
        else:
            logger.debug("SKIP for %s: %s", session.target_app, result.reason)
        return Decision(explanation=rendered, plan=plan)

    async def _context_for(self, session: Session, now: datetime) -> InterventionContext:
        try:
            aggregates = await self.usage.context_aggregates(now, self.goal_minutes or 0)
            historical = await self.outcomes.store.go_back_rate(session.target_app, now.hour)
        except Exception:
            logger.exception("Usage aggregates unavailable; deciding on session data alone")
            aggregates = {}
            historical = (None, 0)
        days = int(aggregates.get("days_since_install", 0))
        ctx = build_context(
            now=now,
            target_app=session.target_app,
            session_started_at=session.started_at,
            session_count_today=int(aggregates.get("sessions_today", 0)) + 1,
            last_session_end_at=aggregates.get("last_session_end_at"),
            usage_today_minutes=float(aggregates.get("usage_today_minutes", 0.0)),
            usage_yesterday_minutes=float(aggregates.get("usage_yesterday_minutes", 0.0)),
            weekly_average_minutes=float(aggregates.get("weekly_average_minutes", 0.0)),
            goal_minutes=self.goal_minutes,
            streak_days=int(aggregates.get("streak_days", 0)),
            friction_level=effective_friction_level(
                days, locked_mode=self.locked_mode, override=self.friction_override
            ),
            days_since_install=days,
            best_session_minutes=int(aggregates.get("best_session_minutes", 0)),
            cues=self.behavior.cues(now),
            historical=historical,
            quick_reopen_window_s=self._quick_reopen_window_s,
        )
        if ctx.quick_reopen:
            self.behavior.note_quick_reopen(now)
        return ctx

    def _select_content(
        self,
        ctx: InterventionContext,
        persona: str,
        opportunity_level: str,
        intervention_type: str,
        variant: str,
    ) -> _ContentChoice:
        try:
            excluded = excluded_arms(ctx, persona, opportunity_level)
            if variant == "RL_TREATMENT":
                selection = self.sampler.select(excluded)
                mode = "exploration" if selection.exploration else "exploitation"
                return _ContentChoice(
                    content_type=selection.arm,
                    reason=f"Thompson sampling ({mode}, sampled {selection.sampled_value:.3f})",
                    predicted_arm=selection.arm,
                    predicted_reward=round(selection.expected_reward, 4),
                    exploration=selection.exploration,
                )
            rule = self.rule_selector.select(ctx, persona, intervention_type)
            if not self.rollout.shadow_mode:
                return _ContentChoice(rule.content_type, rule.reason, dict(rule.weights))
            shadow = self.sampler.select(excluded)
            return _ContentChoice(
                content_type=rule.content_type,
                reason=rule.reason,
                weights=dict(rule.weights),
                predicted_arm=shadow.arm,
                predicted_reward=round(shadow.expected_reward, 4),
                exploration=shadow.exploration,
            )
        except Exception:
            logger.exception("Content selection failed; using REFLECTION")
            return _ContentChoice("REFLECTION", "Selection error, using fallback")

    def _explain(
        self,
        *,
        decision_id: str,
        intervention_id: Optional[str],
        now: datetime,
        session: Session,
        intervention_type: str,
        ctx: InterventionContext,
        opportunity: OpportunityResult,
        detected: DetectedPersona,
        burden: BurdenMetrics,
        request: GateRequest,
        result: GateResult,
        content: Optional[_ContentChoice],
        variant: Optional[str],
    ) -> DecisionExplanation:
        def passed(name: str) -> bool:
            checkpoint = result.checkpoint(name)
            return checkpoint.passed if checkpoint is not None else False

        basic = result.checkpoint("basic_rate_limit")
        time_since_last = basic.evidence.get("time_since_last_s") if basic else None
        if time_since_last is None and self.gate.limiter.state.last_intervention_at is not None:
            time_since_last = int((now - self.gate.limiter.state.last_intervention_at).total_seconds())

        reliable = burden.is_reliable()
        multiplier = request.burden_multiplier
        profile = PERSONA_PROFILES.get(detected.persona, PERSONA_PROFILES["NEW_USER"])
        return DecisionExplanation(
            decision_id=decision_id,
            intervention_id=intervention_id,
            timestamp=now,
            target_app=session.target_app,
            session_id=session.session_id,
            intervention_type=intervention_type,
            decision=result.decision,
            blocking_reason=result.blocking_reason,
            opportunity_score=opportunity.score,
            opportunity_level=opportunity.level,
            opportunity_breakdown=dict(opportunity.breakdown),
            persona=detected.persona,
            persona_confidence=detected.confidence,
            passed_snooze=passed("snooze"),
            passed_basic_rate_limit=passed("basic_rate_limit"),
            time_since_last_intervention_s=time_since_last,
            basic_rate_limit_detail=basic.detail if basic else None,
            passed_persona_frequency=passed("persona_frequency"),
            persona_frequency_rule=profile.frequency,
            passed_jitai_filter=passed("jitai_filter"),
            jitai_decision=opportunity.decision,
            passed_burden_gate=passed("burden_gate"),
            burden_level=burden.level(),
            burden_score=burden.score(),
            burden_reliable=reliable,
            burden_mitigation_applied=(reliable and multiplier > 1.0)
            or result.blocking_reason == "BURDEN_MITIGATION",
            burden_cooldown_multiplier=multiplier,
            content_type=content.content_type if content else None,
            content_weights=content.weights if content else None,
            content_selection_reason=content.reason if content else None,
            rollout_variant=variant,
            rl_predicted_arm=content.predicted_arm if content else None,
            rl_predicted_reward=content.predicted_reward if content else None,
            rl_exploration=content.exploration if content else None,
            friction_level=ctx.friction_level,
            context_snapshot=ctx.to_snapshot(),
        )

    def _track(self, plan: InterventionPlan, shown_at: datetime, variant: Optional[str]) -> None:
        self._shown[plan.intervention_id] = _ShownIntervention(plan, shown_at, variant)
        while len(self._shown) > MAX_TRACKED_INTERVENTIONS:
            self._shown.popitem(last=False)

    def reset(self) -> None:
        self._shown.clear()
        self.behavior.reset()

    def shown_intervention(self, intervention_id: str) -> Optional[InterventionPlan]:
        shown = self._shown.get(intervention_id)
        return shown.plan if shown else None

    # ── Responses ─────────────────────────────────────────────────────────

    async def record_response(
        self,
        intervention_id: str,
        *,
        choice: str,
        response_time_ms: int = 0,
        interaction_depth: str = "VIEWED",
        feedback: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ComprehensiveOutcome:
        """Record the overlay response and apply its gate side effects.

        Raises ``KeyError`` for an intervention this engine never showed and
        ``ValueError`` for an unknown choice.
        """
        if choice not in USER_CHOICES:
            raise ValueError(f"unknown choice: {choice}")
        shown = self._shown.get(intervention_id)
        if shown is None:
            raise KeyError(intervention_id)
        now = now or self._clock()
        plan = shown.plan

        proximal = ProximalOutcome(
            choice=choice,
            response_time_ms=response_time_ms,
            interaction_depth=interaction_depth,
            feedback=feedback,
            recorded_at=now,
        )
        outcome = await self.outcomes.record_proximal(
            ComprehensiveOutcome(
                intervention_id=intervention_id,
                session_id=plan.session_id,
                target_app=plan.target_app,
                intervention_type=plan.intervention_type,
                content_type=plan.content_type,
                rollout_variant=shown.rollout_variant,
                shown_at=shown.shown_at,
            ),
            proximal,
        )

        limiter = self.gate.limiter
        try:
            if choice == "GO_BACK":
                await limiter.reset_cooldown()
            elif choice == "CONTINUE":
                await limiter.escalate_cooldown()
            elif choice == "SNOOZE":
                await limiter.escalate_cooldown()
                await limiter.snooze(now)
            if feedback:
                await limiter.apply_feedback(feedback)
        except Exception as exc:
            logger.warning("Failed to persist gate feedback for %s: %s", intervention_id, exc)
        logger.info("Response %s for %s (%s)", choice, intervention_id, plan.content_type)
        return outcome
