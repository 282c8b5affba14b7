"""Behavioral persona classification from recent usage history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

logger = logging.getLogger("nudge.persona")

CACHE_DURATION_S = 6 * 60 * 60
MIN_DAYS_FOR_ANALYSIS = 3
OPTIMAL_DAYS_FOR_ANALYSIS = 14


@dataclass(frozen=True)
class PersonaProfile:
    name: str
    display_name: str
    frequency: str
    cooldown_multiplier: float
    base_weights: Dict[str, int] = field(default_factory=dict)


PERSONA_PROFILES: Dict[str, PersonaProfile] = {
    "HEAVY_COMPULSIVE_USER": PersonaProfile(
        name="HEAVY_COMPULSIVE_USER",
        display_name="Heavy Compulsive User",
        frequency="CONSERVATIVE",
        cooldown_multiplier=1.5,
        base_weights={
            "REFLECTION": 50,
            "TIME_ALTERNATIVE": 20,
            "BREATHING": 15,
            "EMOTIONAL_APPEAL": 10,
            "ACTIVITY_SUGGESTION": 5,
        },
    ),
    "HEAVY_BINGE_USER": PersonaProfile(
        name="HEAVY_BINGE_USER",
        display_name="Heavy Binge User",
        frequency="MODERATE",
        cooldown_multiplier=1.0,
        base_weights={
            "TIME_ALTERNATIVE": 40,
            "REFLECTION": 30,
            "ACTIVITY_SUGGESTION": 15,
            "EMOTIONAL_APPEAL": 10,
            "BREATHING": 5,
        },
    ),
    "MODERATE_BALANCED_USER": PersonaProfile(
        name="MODERATE_BALANCED_USER",
        display_name="Moderate Balanced User",
        frequency="BALANCED",
        cooldown_multiplier=1.0,
        base_weights={
            "REFLECTION": 35,
            "TIME_ALTERNATIVE": 30,
            "BREATHING": 15,
            "ACTIVITY_SUGGESTION": 10,
            "EMOTIONAL_APPEAL": 10,
        },
    ),
    "CASUAL_USER": PersonaProfile(
        name="CASUAL_USER",
        display_name="Casual User",
        frequency="ADAPTIVE",
        cooldown_multiplier=0.7,
        base_weights={
            "REFLECTION": 25,
            "BREATHING": 20,
            "TIME_ALTERNATIVE": 20,
            "ACTIVITY_SUGGESTION": 20,
            "EMOTIONAL_APPEAL": 15,
        },
    ),
    "PROBLEMATIC_PATTERN_USER": PersonaProfile(
        name="PROBLEMATIC_PATTERN_USER",
        display_name="Problematic Pattern User",
        frequency="MINIMAL",
        cooldown_multiplier=2.0,
        base_weights={
            "REFLECTION": 60,
            "TIME_ALTERNATIVE": 20,
            "EMOTIONAL_APPEAL": 15,
            "BREATHING": 5,
            "ACTIVITY_SUGGESTION": 0,
        },
    ),
    "NEW_USER": PersonaProfile(
        name="NEW_USER",
        display_name="New User",
        frequency="ONBOARDING",
        cooldown_multiplier=0.5,
        base_weights={
            "REFLECTION": 25,
            "BREATHING": 25,
            "TIME_ALTERNATIVE": 20,
            "ACTIVITY_SUGGESTION": 15,
            "EMOTIONAL_APPEAL": 15,
        },
    ),
}


@dataclass(frozen=True)
class PersonaAnalytics:
    days_since_install: int = 0
    total_sessions: int = 0
    avg_daily_sessions: float = 0.0
    avg_session_minutes: float = 0.0
    quick_reopen_rate: float = 0.0
    usage_trend: str = "STABLE"


@dataclass(frozen=True)
class DetectedPersona:
    persona: str
    confidence: str
    analytics: PersonaAnalytics
    detected_at: datetime
    matched_archetypes: tuple = ()

    @property
    def profile(self) -> PersonaProfile:
        return PERSONA_PROFILES[self.persona]

    def to_dict(self) -> dict:
        return {
            "persona": self.persona,
            "display_name": self.profile.display_name,
            "confidence": self.confidence,
            "frequency": self.profile.frequency,
            "matched_archetypes": list(self.matched_archetypes),
            "detected_at": self.detected_at.isoformat(),
            "analytics": {
                "days_since_install": self.analytics.days_since_install,
                "total_sessions": self.analytics.total_sessions,
                "avg_daily_sessions": round(self.analytics.avg_daily_sessions, 2),
                "avg_session_minutes": round(self.analytics.avg_session_minutes, 2),
                "quick_reopen_rate": round(self.analytics.quick_reopen_rate, 3),
                "usage_trend": self.analytics.usage_trend,
            },
        }


def slope(values: Sequence[float]) -> float:
    """Least-squares slope of ``values`` against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_xx = sum(i * i for i in range(n))
    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def usage_trend(daily_counts: Sequence[int]) -> str:
    if len(daily_counts) < 3:
        return "STABLE"
    trend = slope(daily_counts)
    avg_daily = sum(daily_counts) / len(daily_counts)
    if trend > 0.5 and avg_daily > 10:
        return "ESCALATING"
    if trend > 0.2:
        return "INCREASING"
    if trend < -0.5:
        return "DECLINING"
    if trend < -0.2:
        return "DECREASING"
    return "STABLE"


def matching_archetypes(analytics: PersonaAnalytics) -> List[str]:
    matches = []
    if analytics.usage_trend == "ESCALATING" and analytics.quick_reopen_rate > 0.40:
        matches.append("PROBLEMATIC_PATTERN_USER")
    if (
        analytics.avg_daily_sessions >= 15
        and analytics.quick_reopen_rate >= 0.35
        and analytics.avg_session_minutes < 5
    ):
        matches.append("HEAVY_COMPULSIVE_USER")
    if analytics.avg_daily_sessions >= 6 and analytics.avg_session_minutes >= 20:
        matches.append("HEAVY_BINGE_USER")
    if 8 <= analytics.avg_daily_sessions <= 13:
        matches.append("MODERATE_BALANCED_USER")
    if analytics.avg_daily_sessions < 8:
        matches.append("CASUAL_USER")
    return matches


def detect_persona(analytics: PersonaAnalytics) -> str:
    if analytics.days_since_install < 14:
        return "NEW_USER"
    matches = matching_archetypes(analytics)
    return matches[0] if matches else "MODERATE_BALANCED_USER"


def persona_confidence(days_since_install: int, archetype_matches: int = 1) -> str:
    tiers = ("LOW", "MEDIUM", "HIGH")
    if days_since_install < 7:
        index = 0
    elif days_since_install < 14:
        index = 1
    else:
        index = 2
    if archetype_matches > 1:
        index = max(0, index - 1)
    return tiers[index]


class PersonaDetector:
    """Cached persona detection over the usage store's session history."""

    def __init__(
        self,
        usage_store,
        *,
        clock: Callable[[], datetime],
        cache_duration_s: int = CACHE_DURATION_S,
        quick_reopen_window_s: float = 120.0,
    ) -> None:
        self._usage = usage_store
        self._clock = clock
        self._cache_duration_s = cache_duration_s
        self._quick_reopen_window_s = quick_reopen_window_s
        self._cached: Optional[DetectedPersona] = None

    async def detect(self, force_refresh: bool = False) -> DetectedPersona:
        now = self._clock()
        cached = self._cached
        if (
            not force_refresh
            and cached is not None
            and (now - cached.detected_at).total_seconds() < self._cache_duration_s
        ):
            return cached

        analytics = await self.gather_analytics(now)
        persona = detect_persona(analytics)
        matches: List[str] = [] if persona == "NEW_USER" else matching_archetypes(analytics)
        confidence = persona_confidence(analytics.days_since_install, len(matches))
        detected = DetectedPersona(
            persona=persona,
            confidence=confidence,
            analytics=analytics,
            detected_at=now,
            matched_archetypes=tuple(matches),
        )
        self._cached = detected
        logger.info("Detected persona %s (%s)", persona, confidence)
        return detected

    async def gather_analytics(self, now: datetime) -> PersonaAnalytics:
        days_since_install = await self._usage.days_since_install(now)
        analysis_days = min(OPTIMAL_DAYS_FOR_ANALYSIS, max(MIN_DAYS_FOR_ANALYSIS, days_since_install))
        since = now - timedelta(days=analysis_days)
        sessions = await self._usage.sessions_between(since, now)

        total = len(sessions)
        avg_daily = total / analysis_days if analysis_days > 0 else 0.0
        durations = [s.duration_s / 60.0 for s in sessions if s.duration_s > 0]
        avg_minutes = sum(durations) / len(durations) if durations else 0.0

        quick_reopens = 0
        ordered = sorted(sessions, key=lambda s: s.started_at)
        for previous, current in zip(ordered, ordered[1:]):
            gap = (current.started_at - previous.ended_at).total_seconds()
            if 0 <= gap < self._quick_reopen_window_s:
                quick_reopens += 1
        reopen_rate = quick_reopens / total if total else 0.0

        counts_by_day: Dict[str, int] = {}
        for session in sessions:
            counts_by_day[session.date] = counts_by_day.get(session.date, 0) + 1
        daily_counts = [counts_by_day[day] for day in sorted(counts_by_day)]

        return PersonaAnalytics(
            days_since_install=days_since_install,
            total_sessions=total,
            avg_daily_sessions=avg_daily,
            avg_session_minutes=avg_minutes,
            quick_reopen_rate=reopen_rate,
            usage_trend=usage_trend(daily_counts) if total >= 3 else "STABLE",
        )

    def clear_cache(self) -> None:
        self._cached = None
