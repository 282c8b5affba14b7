"""Intervention fatigue metrics, burden levels, and the cached tracker."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from .persona import slope

logger = logging.getLogger("nudge.burden")

CACHE_DURATION_S = 10 * 60
LOOKBACK_DAYS = 30
MIN_RELIABLE_SAMPLES = 10

COOLDOWN_MULTIPLIERS = {"LOW": 1.0, "MODERATE": 1.5, "HIGH": 2.5, "CRITICAL": 4.0}


@dataclass(frozen=True)
class BurdenSample:
    """One proximal response, as the tracker sees it."""

    at: datetime
    choice: str
    response_time_ms: int = 0
    feedback: Optional[str] = None


@dataclass(frozen=True)
class BurdenMetrics:
    avg_response_time_ms: int = 5000
    dismiss_rate: float = 0.0
    timeout_rate: float = 0.0
    snooze_count: int = 0

    engagement_trend: str = "STABLE"
    interventions_24h: int = 0
    interventions_7d: int = 0

    effectiveness_7d: float = 0.5
    effectiveness_trend: str = "STABLE"
    recent_go_back_rate: float = 0.5

    helpful_count: int = 0
    disruptive_count: int = 0
    helpfulness_ratio: float = 0.5

    avg_spacing_minutes: float = 30.0
    min_spacing_minutes: float = 30.0

    sample_size: int = 0

    @property
    def feedback_count(self) -> int:
        return self.helpful_count + self.disruptive_count

    def score(self) -> int:
        points = 0
        if self.dismiss_rate > 0.40:
            points += 3
        if self.timeout_rate > 0.30:
            points += 3
        if self.engagement_trend == "DECLINING":
            points += 4
        if self.effectiveness_trend == "DECLINING":
            points += 4
        if self.interventions_24h > 15:
            points += 2
        if self.avg_spacing_minutes < 10:
            points += 2
        if self.min_spacing_minutes < 3:
            points += 3
        if self.effectiveness_7d < 0.35:
            points += 3
        if self.helpfulness_ratio < 0.30 and self.feedback_count >= 5:
            points += 5
        if self.snooze_count > 5:
            points += 2
        return points

    def level(self) -> str:
        return level_for_score(self.score())

    def is_reliable(self) -> bool:
        return self.sample_size >= MIN_RELIABLE_SAMPLES

    def cooldown_multiplier(self) -> float:
        return recommended_cooldown_multiplier(self.level())

    def should_reduce_interventions(self) -> bool:
        if self.dismiss_rate > 0.40 or self.timeout_rate > 0.30:
            return True
        if self.engagement_trend == "DECLINING" and self.effectiveness_trend == "DECLINING":
            return True
        if self.interventions_24h > 20:
            return True
        if self.helpfulness_ratio < 0.25 and self.feedback_count >= 5:
            return True
        return self.avg_spacing_minutes < 8

    def factors(self) -> List[str]:
        found = []
        if self.dismiss_rate > 0.40:
            found.append(f"High dismissal rate ({int(self.dismiss_rate * 100)}%)")
        if self.timeout_rate > 0.30:
            found.append(f"High timeout rate ({int(self.timeout_rate * 100)}%)")
        if self.engagement_trend == "DECLINING":
            found.append("Declining engagement trend")
        if self.effectiveness_trend == "DECLINING":
            found.append("Declining effectiveness trend")
        if self.interventions_24h > 15:
            found.append(f"Too many interventions ({self.interventions_24h} in 24h)")
        if self.avg_spacing_minutes < 10:
            found.append(f"Interventions too frequent (avg {int(self.avg_spacing_minutes)} min)")
        if self.min_spacing_minutes < 3:
            found.append(f"Back-to-back interventions (min {int(self.min_spacing_minutes)} min)")
        if self.effectiveness_7d < 0.35:
            found.append(f"Low effectiveness ({int(self.effectiveness_7d * 100)}%)")
        if self.helpfulness_ratio < 0.30 and self.feedback_count >= 5:
            found.append(f"Negative explicit feedback ({int(self.helpfulness_ratio * 100)}% helpful)")
        if self.snooze_count > 5:
            found.append(f"Frequent snoozing ({self.snooze_count} snoozes)")
        return found

    def summary(self) -> str:
        level = self.level()
        if level == "CRITICAL":
            return (
                "CRITICAL: User showing severe intervention fatigue. "
                f"Dismiss rate: {int(self.dismiss_rate * 100)}%, "
                f"Effectiveness: {int(self.effectiveness_7d * 100)}%"
            )
        if level == "HIGH":
            return (
                "HIGH: Clear signs of burden. "
                f"Recent engagement: {self.engagement_trend}, "
                f"{self.interventions_24h} interventions in 24h"
            )
        if level == "MODERATE":
            return (
                "MODERATE: Some burden indicators. "
                f"Dismiss rate: {int(self.dismiss_rate * 100)}%, "
                f"Avg spacing: {int(self.avg_spacing_minutes)} min"
            )
        return (
            "LOW: User handling interventions well. "
            f"Effectiveness: {int(self.effectiveness_7d * 100)}%, "
            f"Go back rate: {int(self.recent_go_back_rate * 100)}%"
        )

    def to_dict(self) -> dict:
        return {
            "level": self.level(),
            "score": self.score(),
            "reliable": self.is_reliable(),
            "cooldown_multiplier": self.cooldown_multiplier(),
            "should_reduce": self.should_reduce_interventions(),
            "factors": self.factors(),
            "summary": self.summary(),
            "sample_size": self.sample_size,
            "avg_response_time_ms": self.avg_response_time_ms,
            "dismiss_rate": round(self.dismiss_rate, 3),
            "timeout_rate": round(self.timeout_rate, 3),
            "snooze_count": self.snooze_count,
            "engagement_trend": self.engagement_trend,
            "effectiveness_trend": self.effectiveness_trend,
            "effectiveness_7d": round(self.effectiveness_7d, 3),
            "helpfulness_ratio": round(self.helpfulness_ratio, 3),
            "interventions_24h": self.interventions_24h,
            "interventions_7d": self.interventions_7d,
            "avg_spacing_minutes": round(self.avg_spacing_minutes, 1),
            "min_spacing_minutes": round(self.min_spacing_minutes, 1),
        }


def level_for_score(points: int) -> str:
    if points >= 15:
        return "CRITICAL"
    if points >= 10:
        return "HIGH"
    if points >= 5:
        return "MODERATE"
    return "LOW"


def recommended_cooldown_multiplier(level: str) -> float:
    return COOLDOWN_MULTIPLIERS.get(level, 1.0)


def _go_back_rate(samples: Sequence[BurdenSample]) -> float:
    if not samples:
        return 0.0
    return sum(1 for s in samples if s.choice == "GO_BACK") / len(samples)


def engagement_trend(samples: Sequence[BurdenSample]) -> str:
    if len(samples) < 20:
        return "STABLE"
    midpoint = len(samples) // 2
    difference = _go_back_rate(samples[midpoint:]) - _go_back_rate(samples[:midpoint])
    if difference > 0.10:
        return "IMPROVING"
    if difference < -0.10:
        return "DECLINING"
    return "STABLE"


def effectiveness_trend(samples: Sequence[BurdenSample]) -> str:
    if len(samples) < 10:
        return "STABLE"
    points = [1.0 if s.choice == "GO_BACK" else 0.0 for s in samples[-30:]]
    trend = slope(points)
    if trend > 0.02:
        return "IMPROVING"
    if trend < -0.02:
        return "DECLINING"
    return "STABLE"


def compute_metrics(samples: Sequence[BurdenSample], now: datetime) -> BurdenMetrics:
    if not samples:
        return BurdenMetrics()

    ordered = sorted(samples, key=lambda s: s.at)
    total = len(ordered)
    day_ago = now - timedelta(hours=24)
    week_ago = now - timedelta(days=7)
    last_week = [s for s in ordered if s.at >= week_ago]

    helpful = sum(1 for s in ordered if s.feedback == "HELPFUL")
    disruptive = sum(1 for s in ordered if s.feedback == "DISRUPTIVE")

    spacings = [
        (current.at - previous.at).total_seconds() / 60.0
        for previous, current in zip(ordered, ordered[1:])
    ]

    return BurdenMetrics(
        avg_response_time_ms=int(sum(s.response_time_ms for s in ordered) / total),
        dismiss_rate=sum(1 for s in ordered if s.choice == "DISMISS") / total,
        timeout_rate=sum(1 for s in ordered if s.choice == "TIMEOUT") / total,
        snooze_count=sum(1 for s in ordered if s.choice == "SNOOZE"),
        engagement_trend=engagement_trend(ordered),
        interventions_24h=sum(1 for s in ordered if s.at >= day_ago),
        interventions_7d=len(last_week),
        effectiveness_7d=_go_back_rate(last_week) if last_week else 0.0,
        effectiveness_trend=effectiveness_trend(ordered),
        recent_go_back_rate=_go_back_rate(ordered[-20:]),
        helpful_count=helpful,
        disruptive_count=disruptive,
        helpfulness_ratio=helpful / (helpful + disruptive) if helpful + disruptive else 0.5,
        avg_spacing_minutes=sum(spacings) / len(spacings) if spacings else 30.0,
        min_spacing_minutes=min(spacings) if spacings else 30.0,
        sample_size=total,
    )


class BurdenTracker:
    """Recomputes burden from stored responses, cached for ten minutes."""

    def __init__(
        self,
        outcome_store,
        *,
        clock: Callable[[], datetime],
        cache_duration_s: int = CACHE_DURATION_S,
    ) -> None:
        self._outcomes = outcome_store
        self._clock = clock
        self._cache_duration_s = cache_duration_s
        self._cached: Optional[BurdenMetrics] = None
        self._cached_at: Optional[datetime] = None

    async def current_metrics(self, force_refresh: bool = False) -> BurdenMetrics:
        now = self._clock()
        if (
            not force_refresh
            and self._cached is not None
            and self._cached_at is not None
            and (now - self._cached_at).total_seconds() < self._cache_duration_s
        ):
            return self._cached
        samples = await self._outcomes.burden_samples(now - timedelta(days=LOOKBACK_DAYS))
        metrics = compute_metrics(samples, now)
        self._cached = metrics
        self._cached_at = now
        if metrics.is_reliable() and metrics.level() in ("HIGH", "CRITICAL"):
            logger.info("Burden %s: %s", metrics.level(), metrics.summary())
        return metrics

    async def is_high_burden(self) -> bool:
        metrics = await self.current_metrics()
        return metrics.is_reliable() and metrics.level() in ("HIGH", "CRITICAL")

    async def cooldown_adjustment(self) -> float:
        metrics = await self.current_metrics()
        if not metrics.is_reliable():
            return 1.0
        return metrics.cooldown_multiplier()

    async def burden_summary(self) -> str:
        metrics = await self.current_metrics()
        return metrics.summary()

    def invalidate(self) -> None:
        self._cached = None
        self._cached_at = None
