"""Adaptive gate: sequential SHOW/SKIP checkpoints with per-checkpoint evidence."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .burden import BurdenMetrics
from .context import InterventionContext
from .opportunity import OpportunityResult
from .persona import PERSONA_PROFILES

logger = logging.getLogger("nudge.gate")

GATE_STATE_KEY = "gate_state"

MIN_MULTIPLIER = 0.5
MAX_MULTIPLIER = 3.0


@dataclass
class GateState:
    last_intervention_at: Optional[datetime] = None
    last_by_type: Dict[str, datetime] = field(default_factory=dict)
    shown_at: List[datetime] = field(default_factory=list)
    cooldown_multiplier: float = 1.0
    snooze_until: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_intervention_at": (
                self.last_intervention_at.isoformat() if self.last_intervention_at else None
            ),
            "last_by_type": {k: v.isoformat() for k, v in self.last_by_type.items()},
            "shown_at": [ts.isoformat() for ts in self.shown_at],
            "cooldown_multiplier": self.cooldown_multiplier,
            "snooze_until": self.snooze_until.isoformat() if self.snooze_until else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GateState":
        last = data.get("last_intervention_at")
        snooze = data.get("snooze_until")
        return cls(
            last_intervention_at=datetime.fromisoformat(last) if last else None,
            last_by_type={
                str(k): datetime.fromisoformat(v) for k, v in (data.get("last_by_type") or {}).items()
            },
            shown_at=[datetime.fromisoformat(ts) for ts in data.get("shown_at") or []],
            cooldown_multiplier=float(data.get("cooldown_multiplier", 1.0)),
            snooze_until=datetime.fromisoformat(snooze) if snooze else None,
        )


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reason: str
    cooldown_remaining_s: int = 0
    time_since_last_s: Optional[int] = None


class BasicRateLimiter:
    """Session length, global and per-type cooldowns, hourly and daily caps."""

    def __init__(
        self,
        db=None,
        *,
        global_cooldown_s: float = 5 * 60,
        type_cooldowns_s: Optional[Dict[str, float]] = None,
        min_session_s: Optional[Dict[str, float]] = None,
        max_per_hour: int = 4,
        max_per_day: int = 20,
        snooze_minutes: int = 10,
    ) -> None:
        self._db = db
        self._global_cooldown_s = global_cooldown_s
        self._type_cooldowns_s = type_cooldowns_s or {"REMINDER": 10 * 60, "TIMER": 15 * 60}
        # REMINDER fires at session start, so it has no minimum.
        self._min_session_s = min_session_s or {"REMINDER": 0, "TIMER": 2 * 60}
        self._max_per_hour = max_per_hour
        self._max_per_day = max_per_day
        self._snooze_minutes = snooze_minutes
        self.state = GateState()

    async def hydrate(self) -> None:
        if self._db is None:
            return
        raw = await self._db.get_state(GATE_STATE_KEY)
        if not raw:
            return
        try:
            self.state = GateState.from_dict(raw)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.warning("Ignoring corrupt gate state; using defaults")
            self.state = GateState()

    async def save(self) -> None:
        if self._db is not None:
            await self._db.set_state(GATE_STATE_KEY, self.state.to_dict())

    # ── Checks ────────────────────────────────────────────────────────────

    def is_snoozed(self, now: datetime) -> bool:
        until = self.state.snooze_until
        return until is not None and now < until

    def check(
        self,
        intervention_type: str,
        session_duration_s: float,
        now: datetime,
        burden_multiplier: float = 1.0,
    ) -> RateLimitResult:
        state = self.state
        time_since_last: Optional[int] = None
        if state.last_intervention_at is not None:
            time_since_last = int((now - state.last_intervention_at).total_seconds())

        min_session = self._min_session_s.get(intervention_type, 0)
        if session_duration_s < min_session:
            return RateLimitResult(
                allowed=False,
                reason=f"Session too short ({int(session_duration_s)}s < {int(min_session // 60)}min)",
                cooldown_remaining_s=int(min_session - session_duration_s),
                time_since_last_s=time_since_last,
            )

        multiplier = state.cooldown_multiplier * burden_multiplier
        if time_since_last is not None:
            cooldown = self._global_cooldown_s * multiplier
            if time_since_last < cooldown:
                remaining = int(cooldown - time_since_last)
                return RateLimitResult(
                    allowed=False,
                    reason=(
                        f"Global cooldown active ({remaining}s remaining, "
                        f"{round(multiplier, 2)}x multiplier)"
                    ),
                    cooldown_remaining_s=remaining,
                    time_since_last_s=time_since_last,
                )

        last_type = state.last_by_type.get(intervention_type)
        type_cooldown = self._type_cooldowns_s.get(intervention_type, 0)
        if last_type is not None:
            since_type = (now - last_type).total_seconds()
            if since_type < type_cooldown:
                remaining = int(type_cooldown - since_type)
                return RateLimitResult(
                    allowed=False,
                    reason=f"{intervention_type} cooldown active ({remaining}s remaining)",
                    cooldown_remaining_s=remaining,
                    time_since_last_s=time_since_last,
                )

        hour_ago = now - timedelta(hours=1)
        this_hour = sum(1 for ts in state.shown_at if ts > hour_ago)
        if this_hour >= self._max_per_hour:
            next_hour = (now + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
            return RateLimitResult(
                allowed=False,
                reason=f"Hourly limit reached ({this_hour}/{self._max_per_hour})",
                cooldown_remaining_s=int((next_hour - now).total_seconds()),
                time_since_last_s=time_since_last,
            )

        today = sum(1 for ts in state.shown_at if ts.date() == now.date())
        if today >= self._max_per_day:
            midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
            return RateLimitResult(
                allowed=False,
                reason=f"Daily limit reached ({today}/{self._max_per_day})",
                cooldown_remaining_s=int((midnight - now).total_seconds()),
                time_since_last_s=time_since_last,
            )

        return RateLimitResult(
            allowed=True, reason="Rate limit checks passed", time_since_last_s=time_since_last
        )

    # ── Mutations ─────────────────────────────────────────────────────────

    async def record_intervention(self, intervention_type: str, at: datetime) -> None:
        state = self.state
        state.last_intervention_at = at
        state.last_by_type[intervention_type] = at
        day_ago = at - timedelta(days=1)
        state.shown_at = [ts for ts in state.shown_at if ts > day_ago] + [at]
        logger.info("Recorded %s intervention at %s", intervention_type, at.isoformat())
        await self.save()

    async def apply_feedback(self, feedback: Optional[str]) -> float:
        current = self.state.cooldown_multiplier
        if feedback == "HELPFUL":
            updated = max(MIN_MULTIPLIER, current * 0.9)
        elif feedback == "DISRUPTIVE":
            updated = min(MAX_MULTIPLIER, current * 1.2)
        else:
            return current
        if updated != current:
            self.state.cooldown_multiplier = updated
            logger.info("Cooldown adjusted for %s: %.2fx -> %.2fx", feedback, current, updated)
            await self.save()
        return updated

    async def escalate_cooldown(self) -> float:
        current = self.state.cooldown_multiplier
        self.state.cooldown_multiplier = min(MAX_MULTIPLIER, current * 1.5)
        logger.info("Cooldown escalated: %.2fx -> %.2fx", current, self.state.cooldown_multiplier)
        await self.save()
        return self.state.cooldown_multiplier

    async def reset_cooldown(self) -> None:
        self.state.cooldown_multiplier = 1.0
        await self.save()

    async def snooze(self, now: datetime, minutes: Optional[int] = None) -> datetime:
        until = now + timedelta(minutes=minutes if minutes is not None else self._snooze_minutes)
        self.state.snooze_until = until
        await self.save()
        return until


# ── Checkpoints ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GateRequest:
    ctx: InterventionContext
    intervention_type: str
    session_duration_s: float
    now: datetime
    opportunity: OpportunityResult
    persona: str = "NEW_USER"
    persona_confidence: str = "LOW"
    burden: BurdenMetrics = field(default_factory=BurdenMetrics)

    @property
    def burden_multiplier(self) -> float:
        """The burden cooldown multiplier, neutral while burden is unreliable."""
        if not self.burden.is_reliable():
            return 1.0
        return self.burden.cooldown_multiplier()


@dataclass(frozen=True)
class CheckpointResult:
    name: str
    passed: bool
    detail: str
    evidence: Dict[str, Any] = field(default_factory=dict)


class Checkpoint(ABC):
    """Base class for gate checkpoints."""

    name: str = ""
    blocking_reason: str = "OTHER"

    @abstractmethod
    def check(self, request: GateRequest) -> CheckpointResult:
        """Return the pass/fail verdict with its evidence."""


class SnoozeCheckpoint(Checkpoint):
    name = "snooze"
    blocking_reason = "SNOOZE_ACTIVE"

    def __init__(self, limiter: BasicRateLimiter) -> None:
        self._limiter = limiter

    def check(self, request: GateRequest) -> CheckpointResult:
        until = self._limiter.state.snooze_until
        if self._limiter.is_snoozed(request.now):
            return CheckpointResult(
                self.name,
                False,
                f"Snoozed until {until.isoformat()}",
                {"snooze_until": until.isoformat()},
            )
        return CheckpointResult(self.name, True, "Not snoozed")


class BasicRateLimitCheckpoint(Checkpoint):
    name = "basic_rate_limit"
    blocking_reason = "BASIC_RATE_LIMIT"

    def __init__(self, limiter: BasicRateLimiter) -> None:
        self._limiter = limiter

    def check(self, request: GateRequest) -> CheckpointResult:
        multiplier = request.burden_multiplier
        result = self._limiter.check(
            request.intervention_type, request.session_duration_s, request.now, multiplier
        )
        return CheckpointResult(
            self.name,
            result.allowed,
            result.reason,
            {
                "time_since_last_s": result.time_since_last_s,
                "cooldown_remaining_s": result.cooldown_remaining_s,
                "feedback_multiplier": round(self._limiter.state.cooldown_multiplier, 3),
                "burden_multiplier": multiplier,
            },
        )


def frequency_allows(frequency: str, score: int, level: str, hour: int) -> bool:
    daytime = 6 <= hour <= 23
    if frequency == "MINIMAL":
        return level == "EXCELLENT"
    if frequency == "CONSERVATIVE":
        return level in ("EXCELLENT", "GOOD")
    if frequency == "BALANCED":
        return level != "POOR"
    if frequency == "MODERATE":
        return score >= 25
    if frequency == "ADAPTIVE":
        return level == "EXCELLENT" or (level == "GOOD" and daytime) or score >= 40
    if frequency == "ONBOARDING":
        return daytime and score >= 30
    return True


def persona_block_reason(frequency: str, score: int, level: str) -> str:
    if frequency == "MINIMAL":
        return f"Problematic pattern: Only EXCELLENT opportunities allowed (score: {score}, level: {level})"
    if frequency == "CONSERVATIVE":
        return f"Heavy compulsive: Only GOOD or EXCELLENT opportunities (score: {score}, level: {level})"
    if frequency == "BALANCED":
        return f"Opportunity level too low: {level} (score: {score})"
    if frequency == "MODERATE":
        return f"Score below threshold: {score} < 25"
    if frequency == "ADAPTIVE":
        return f"Adaptive filtering: Current context not optimal (score: {score})"
    return "New user onboarding: Daytime, moderate+ opportunities only"


class PersonaFrequencyCheckpoint(Checkpoint):
    name = "persona_frequency"
    blocking_reason = "PERSONA_FREQUENCY_LIMIT"

    def __init__(self, limiter: BasicRateLimiter, base_cooldown_s: float = 5 * 60) -> None:
        self._limiter = limiter
        self._base_cooldown_s = base_cooldown_s

    def check(self, request: GateRequest) -> CheckpointResult:
        profile = PERSONA_PROFILES.get(request.persona, PERSONA_PROFILES["NEW_USER"])
        opportunity = request.opportunity
        allowed = frequency_allows(
            profile.frequency, opportunity.score, opportunity.level, request.ctx.hour
        )
        evidence = {
            "rule": profile.frequency,
            "persona": profile.name,
            "persona_cooldown_s": int(
                self._base_cooldown_s
                * profile.cooldown_multiplier
                * self._limiter.state.cooldown_multiplier
            ),
        }
        if allowed:
            return CheckpointResult(
                self.name, True, f"{profile.frequency} rule satisfied for {profile.name}", evidence
            )
        return CheckpointResult(
            self.name,
            False,
            persona_block_reason(profile.frequency, opportunity.score, opportunity.level),
            evidence,
        )


class JitaiCheckpoint(Checkpoint):
    name = "jitai_filter"
    blocking_reason = "JITAI_POOR_OPPORTUNITY"

    def check(self, request: GateRequest) -> CheckpointResult:
        decision = request.opportunity.decision
        evidence = {"jitai_decision": decision, "hour": request.ctx.hour}
        if decision == "SKIP_INTERVENTION":
            return CheckpointResult(
                self.name,
                False,
                f"Low opportunity score ({request.opportunity.score}/100)",
                evidence,
            )
        if 3 <= request.ctx.hour <= 5 and not request.ctx.quick_reopen:
            return CheckpointResult(
                self.name, False, "Early-morning hours without a quick reopen", evidence
            )
        return CheckpointResult(self.name, True, f"JITAI approved ({decision})", evidence)


class BurdenCheckpoint(Checkpoint):
    name = "burden_gate"
    blocking_reason = "BURDEN_MITIGATION"

    def check(self, request: GateRequest) -> CheckpointResult:
        burden = request.burden
        level = burden.level()
        reliable = burden.is_reliable()
        evidence = {
            "burden_level": level,
            "burden_score": burden.score(),
            "reliable": reliable,
            "cooldown_multiplier": request.burden_multiplier,
        }
        if not reliable:
            return CheckpointResult(self.name, True, "Insufficient burden data", evidence)
        if level in ("HIGH", "CRITICAL") and request.opportunity.level != "EXCELLENT":
            return CheckpointResult(
                self.name,
                False,
                f"{level} burden requires an EXCELLENT opportunity "
                f"(got {request.opportunity.level})",
                evidence,
            )
        return CheckpointResult(self.name, True, f"{level} burden within limits", evidence)


# ── Gate ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GateResult:
    decision: str
    blocking_reason: Optional[str]
    checkpoints: Tuple[CheckpointResult, ...] = ()
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.decision == "SHOW"

    def checkpoint(self, name: str) -> Optional[CheckpointResult]:
        for result in self.checkpoints:
            if result.name == name:
                return result
        return None


class AdaptiveGate:
    def __init__(self, limiter: BasicRateLimiter, checkpoints: Optional[Sequence[Checkpoint]] = None) -> None:
        self.limiter = limiter
        self._checkpoints: List[Checkpoint] = list(
            checkpoints
            if checkpoints is not None
            else (
                SnoozeCheckpoint(limiter),
                BasicRateLimitCheckpoint(limiter),
                PersonaFrequencyCheckpoint(limiter),
                JitaiCheckpoint(),
                BurdenCheckpoint(),
            )
        )

    def evaluate(self, request: GateRequest) -> GateResult:
        results: List[CheckpointResult] = []
        for checkpoint in self._checkpoints:
            result = checkpoint.check(request)
            results.append(result)
            if not result.passed:
                return GateResult(
                    decision="SKIP",
                    blocking_reason=checkpoint.blocking_reason,
                    checkpoints=tuple(results),
                    reason=result.detail,
                )
        opportunity = request.opportunity
        return GateResult(
            decision="SHOW",
            blocking_reason=None,
            checkpoints=tuple(results),
            reason=(
                f"Persona: {request.persona} | Opportunity: {opportunity.level} "
                f"({opportunity.score}/100) | Decision: {opportunity.decision}"
            ),
        )
