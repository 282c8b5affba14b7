"""Content selection: Thompson Sampling, the rule-based selector, and rollout control."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import random
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, Protocol, Set

from .context import InterventionContext
from .persona import PERSONA_PROFILES
from .schemas import CONTENT_TYPES

logger = logging.getLogger("nudge.bandit")

FALLBACK_ARM = "REFLECTION"
INITIAL_ALPHA = 1.0
INITIAL_BETA = 1.0
SUFFICIENT_DATA_PULLS = 30
MAX_PENDING_ARMS = 200


class RandomSource(Protocol):
    def beta(self, a: float, b: float) -> float: ...

    def random(self) -> float: ...


class DefaultRandom:
    """``RandomSource`` backed by ``random.Random``."""

    def __init__(self, seed: Optional[int] = None) -> None:
        self._rng = random.Random(seed)

    def beta(self, a: float, b: float) -> float:
        return self._rng.betavariate(a, b)

    def random(self) -> float:
        return self._rng.random()


@dataclass
class ArmStats:
    arm: str
    alpha: float = INITIAL_ALPHA
    beta: float = INITIAL_BETA
    pulls: int = 0
    total_reward: float = 0.0

    @property
    def mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    @property
    def uncertainty(self) -> float:
        n = self.alpha + self.beta
        return math.sqrt((self.alpha * self.beta) / (n * n * (n + 1)))

    @property
    def confidence(self) -> float:
        if self.pulls >= 50:
            return 0.95
        if self.pulls >= 20:
            return 0.75
        if self.pulls >= 10:
            return 0.5
        return 0.25

    def interval(self) -> tuple:
        margin = 1.96 * self.uncertainty
        return (max(0.0, self.mean - margin), min(1.0, self.mean + margin))

    def to_dict(self) -> dict:
        low, high = self.interval()
        return {
            "arm": self.arm,
            "alpha": round(self.alpha, 4),
            "beta": round(self.beta, 4),
            "pulls": self.pulls,
            "total_reward": round(self.total_reward, 4),
            "mean": round(self.mean, 4),
            "uncertainty": round(self.uncertainty, 4),
            "interval": [round(low, 4), round(high, 4)],
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class BanditSelection:
    arm: str
    expected_reward: float
    sampled_value: float
    exploration: bool
    strategy: str = "thompson_sampling"


def excluded_arms(
    ctx: InterventionContext, persona: str, opportunity_level: str
) -> Set[str]:
    excluded: Set[str] = set()
    if ctx.is_late_night:
        excluded.update({"BREATHING", "GAMIFICATION"})
    if 3 <= ctx.hour <= 5:
        excluded.update({"USAGE_STATS", "EMOTIONAL_APPEAL"})
    if persona == "PROBLEMATIC_PATTERN_USER":
        excluded.update({"QUOTE", "GAMIFICATION"})
    elif persona == "CASUAL_USER":
        excluded.add("EMOTIONAL_APPEAL")
    elif persona == "NEW_USER":
        excluded.update({"EMOTIONAL_APPEAL", "USAGE_STATS"})
    if ctx.is_first_session_of_day:
        excluded.add("USAGE_STATS")
    if ctx.quick_reopen:
        excluded.update({"QUOTE", "GAMIFICATION"})
    if opportunity_level == "POOR":
        excluded.add("EMOTIONAL_APPEAL")
    return excluded


class ThompsonSampler:
    """Beta-Bernoulli bandit over the content categories."""

    def __init__(self, db=None, rng: Optional[RandomSource] = None) -> None:
        self._db = db
        self._rng = rng or DefaultRandom()
        self._arms: Dict[str, ArmStats] = {arm: ArmStats(arm) for arm in CONTENT_TYPES}
        self._pending: "OrderedDict[str, str]" = OrderedDict()

    async def hydrate(self) -> None:
        if self._db is None:
            return
        stored = await self._db.load_arms()
        for arm, values in stored.items():
            if arm not in self._arms:
                logger.warning("Ignoring unknown content arm %s", arm)
                continue
            self._arms[arm] = ArmStats(arm=arm, **values)

    def select(self, excluded: Iterable[str] = ()) -> BanditSelection:
        blocked = set(excluded)
        available = [arm for arm in CONTENT_TYPES if arm not in blocked]
        if not available:
            return BanditSelection(
                arm=FALLBACK_ARM,
                expected_reward=self._arms[FALLBACK_ARM].mean,
                sampled_value=0.5,
                exploration=False,
                strategy="fallback",
            )
        samples = {
            arm: self._rng.beta(self._arms[arm].alpha, self._arms[arm].beta) for arm in available
        }
        chosen = max(available, key=lambda arm: samples[arm])
        best_mean = max(available, key=lambda arm: self._arms[arm].mean)
        return BanditSelection(
            arm=chosen,
            expected_reward=self._arms[chosen].mean,
            sampled_value=samples[chosen],
            exploration=chosen != best_mean,
        )

    def remember(self, intervention_id: str, arm: str) -> None:
        self._pending[intervention_id] = arm
        while len(self._pending) > MAX_PENDING_ARMS:
            self._pending.popitem(last=False)

    def pop_pending(self, intervention_id: str) -> Optional[str]:
        return self._pending.pop(intervention_id, None)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def update(self, arm: str, reward: float) -> ArmStats:
        if arm not in self._arms:
            raise ValueError(f"unknown content arm: {arm}")
        r = max(0.0, min(1.0, float(reward)))
        stats = self._arms[arm]
        stats.alpha += r
        stats.beta += 1.0 - r
        stats.pulls += 1
        stats.total_reward += r
        if self._db is not None:
            await self._db.save_arm(arm, stats.alpha, stats.beta, stats.pulls, stats.total_reward)
        return stats

    def arm(self, arm: str) -> ArmStats:
        return self._arms[arm]

    def has_sufficient_data(self) -> bool:
        return sum(stats.pulls for stats in self._arms.values()) >= SUFFICIENT_DATA_PULLS

    def stats(self) -> dict:
        return {
            "arms": [self._arms[arm].to_dict() for arm in CONTENT_TYPES],
            "total_pulls": sum(stats.pulls for stats in self._arms.values()),
            "has_sufficient_data": self.has_sufficient_data(),
            "pending": len(self._pending),
        }

    def reset(self) -> None:
        self._arms = {arm: ArmStats(arm) for arm in CONTENT_TYPES}
        self._pending.clear()


@dataclass(frozen=True)
class RuleSelection:
    content_type: str
    weights: Dict[str, float] = field(default_factory=dict)
    reason: str = ""


class RuleBasedSelector:
    """Persona weights adjusted for context, then a weighted draw."""

    def __init__(self, rng: Optional[RandomSource] = None, history_size: int = 3) -> None:
        self._rng = rng or DefaultRandom()
        self._recent: Deque[str] = deque(maxlen=history_size)

    def weights(
        self, ctx: InterventionContext, persona: str, intervention_type: str = "REMINDER"
    ) -> Dict[str, float]:
        profile = PERSONA_PROFILES.get(persona, PERSONA_PROFILES["NEW_USER"])
        w: Dict[str, float] = {arm: float(v) for arm, v in profile.base_weights.items()}

        def bump(arm: str, amount: float) -> None:
            w[arm] = w.get(arm, 0.0) + amount

        late = ctx.is_late_night
        reopen = ctx.quick_reopen
        extended = ctx.is_extended_session

        if persona == "HEAVY_COMPULSIVE_USER":
            if late:
                bump("REFLECTION", 15)
                bump("EMOTIONAL_APPEAL", 10)
            if reopen:
                w["REFLECTION"] = w.get("REFLECTION", 0.0) * 2
                bump("EMOTIONAL_APPEAL", 15)
        elif persona == "HEAVY_BINGE_USER":
            if late:
                bump("ACTIVITY_SUGGESTION", 20)
                bump("BREATHING", 15)
            if extended:
                w["TIME_ALTERNATIVE"] = w.get("TIME_ALTERNATIVE", 0.0) * 1.5
        elif persona == "MODERATE_BALANCED_USER":
            if reopen:
                bump("REFLECTION", 20)
            if extended:
                bump("TIME_ALTERNATIVE", 15)
        elif persona == "CASUAL_USER":
            if late:
                bump("BREATHING", 15)
                bump("ACTIVITY_SUGGESTION", 10)
            if reopen:
                bump("REFLECTION", 10)
                bump("BREATHING", 10)
        elif persona == "PROBLEMATIC_PATTERN_USER":
            bump("REFLECTION", 20)
            if reopen:
                bump("REFLECTION", 30)
                bump("EMOTIONAL_APPEAL", 20)
                w["ACTIVITY_SUGGESTION"] = 0.0
        elif persona == "NEW_USER":
            if late:
                bump("BREATHING", 15)
                bump("ACTIVITY_SUGGESTION", 10)
            w["EMOTIONAL_APPEAL"] = w.get("EMOTIONAL_APPEAL", 0.0) * 0.5

        if ctx.is_weekend_morning:
            bump("ACTIVITY_SUGGESTION", 10)
        if intervention_type == "TIMER":
            bump("TIME_ALTERNATIVE", 20)

        return {arm: value for arm, value in w.items() if value > 0}

    def select(
        self, ctx: InterventionContext, persona: str, intervention_type: str = "REMINDER"
    ) -> RuleSelection:
        weights = self.weights(ctx, persona, intervention_type)
        if not weights:
            return RuleSelection(FALLBACK_ARM, {}, "No weighted content, using fallback")

        candidates = {arm: v for arm, v in weights.items() if arm not in self._recent}
        if not candidates:
            self._recent.clear()
            candidates = dict(weights)

        total = sum(candidates.values())
        threshold = self._rng.random() * total
        chosen = None
        running = 0.0
        for arm in CONTENT_TYPES:
            if arm not in candidates:
                continue
            running += candidates[arm]
            chosen = arm
            if threshold < running:
                break
        assert chosen is not None
        self._recent.append(chosen)
        reason = f"{persona} weights ({int(weights[chosen])}/{int(sum(weights.values()))})"
        return RuleSelection(chosen, weights, reason)

    @property
    def recent(self) -> List[str]:
        return list(self._recent)


# ── Rollout ───────────────────────────────────────────────────────────────

ROLLOUT_STATE_KEY = "rollout_state"
EMA_ALPHA = 0.1
ROLLBACK_CHECK_INTERVAL_S = 24 * 60 * 60
ROLLBACK_RATIO = 0.9


class RolloutController:
    """Assigns CONTROL or RL_TREATMENT and rolls back an underperforming bandit."""

    def __init__(
        self,
        db=None,
        *,
        enabled: bool = True,
        percentage: int = 50,
        shadow_mode: bool = True,
    ) -> None:
        if not 0 <= percentage <= 100:
            raise ValueError("rollout percentage must be 0-100")
        self._db = db
        self._lock = asyncio.Lock()
        self.enabled = enabled
        self._configured_enabled = enabled
        self.percentage = percentage
        self.shadow_mode = shadow_mode
        self.install_id = ""
        self.rl_score = 0.5
        self.control_score = 0.5
        self.last_check: Optional[datetime] = None
        self.rolled_back = False

    async def hydrate(self, install_id: str) -> None:
        self.install_id = install_id
        if self._db is None:
            return
        state = await self._db.get_state(ROLLOUT_STATE_KEY)
        if not isinstance(state, dict):
            return
        try:
            self.rl_score = float(state.get("rl_score", 0.5))
            self.control_score = float(state.get("control_score", 0.5))
            self.rolled_back = bool(state.get("rolled_back", False))
            last = state.get("last_check")
            self.last_check = datetime.fromisoformat(last) if last else None
        except (TypeError, ValueError):
            logger.warning("Ignoring corrupt rollout state")
            return
        if self.rolled_back:
            self.enabled = False

    def reset(self) -> None:
        self.enabled = self._configured_enabled
        self.rl_score = 0.5
        self.control_score = 0.5
        self.last_check = None
        self.rolled_back = False

    def bucket(self) -> int:
        digest = hashlib.sha256(self.install_id.encode("utf-8")).hexdigest()
        return int(digest[:8], 16) % 100

    def variant(self) -> str:
        if not self.enabled:
            return "CONTROL"
        return "RL_TREATMENT" if self.bucket() < self.percentage else "CONTROL"

    async def record_effectiveness(self, variant: str, successful: bool, now: datetime) -> None:
        observation = 1.0 if successful else 0.0
        async with self._lock:
            if variant == "RL_TREATMENT":
                self.rl_score = self.rl_score * (1 - EMA_ALPHA) + observation * EMA_ALPHA
            else:
                self.control_score = self.control_score * (1 - EMA_ALPHA) + observation * EMA_ALPHA
            await self._check_rollback(now)
            await self._save()

    async def check_rollback(self, now: datetime) -> bool:
        async with self._lock:
            rolled_back = await self._check_rollback(now)
            await self._save()
        return rolled_back

    async def _check_rollback(self, now: datetime) -> bool:
        if (
            self.last_check is not None
            and (now - self.last_check).total_seconds() < ROLLBACK_CHECK_INTERVAL_S
        ):
            return False
        self.last_check = now
        if self.enabled and self.control_score > 0 and self.rl_score < self.control_score * ROLLBACK_RATIO:
            self.enabled = False
            self.rolled_back = True
            logger.warning(
                "Automatic rollback triggered: RL=%.3f, Control=%.3f",
                self.rl_score,
                self.control_score,
            )
            return True
        return False

    async def _save(self) -> None:
        if self._db is None:
            return
        await self._db.set_state(
            ROLLOUT_STATE_KEY,
            {
                "rl_score": self.rl_score,
                "control_score": self.control_score,
                "rolled_back": self.rolled_back,
                "last_check": self.last_check.isoformat() if self.last_check else None,
            },
        )

    def metrics(self) -> dict:
        if self.rl_score > self.control_score + 0.05:
            performance = f"RL outperforming (+{int((self.rl_score - self.control_score) * 100)}%)"
        elif self.rl_score < self.control_score - 0.05:
            performance = f"RL underperforming ({int((self.rl_score - self.control_score) * 100)}%)"
        else:
            performance = "RL and Control similar"
        return {
            "variant": self.variant(),
            "enabled": self.enabled,
            "percentage": self.percentage,
            "shadow_mode": self.shadow_mode,
            "rl_score": round(self.rl_score, 4),
            "control_score": round(self.control_score, 4),
            "performance": performance,
            "rolled_back": self.rolled_back,
            "last_check": self.last_check.isoformat() if self.last_check else None,
        }
