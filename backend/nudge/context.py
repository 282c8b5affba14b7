"""Immutable decision-time context and the short-window behavioral cue tracker."""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional, Tuple

_RAPID_SWITCH_WINDOW_S = 30
_RAPID_SWITCH_MIN_APPS = 3
_QUICK_REOPEN_WINDOW_S = 5 * 60
_COMPULSIVE_MIN_REOPENS = 3
_UNLOCK_WINDOW_S = 60 * 60


@dataclass(frozen=True)
class InterventionContext:
    hour: int
    day_of_week: int  # 0=Monday .. 6=Sunday
    is_weekend: bool

    target_app: str
    current_session_minutes: int = 0
    session_count_today: int = 1
    last_session_end_at: Optional[datetime] = None
    minutes_since_last_session: Optional[float] = None
    quick_reopen: bool = False

    usage_today_minutes: float = 0.0
    usage_yesterday_minutes: float = 0.0
    weekly_average_minutes: float = 0.0

    goal_minutes: Optional[int] = None
    is_over_goal: bool = False
    streak_days: int = 0

    friction_level: str = "GENTLE"
    days_since_install: int = 0
    best_session_minutes: int = 0

    rapid_app_switching: bool = False
    compulsive_behavior: bool = False
    unusual_usage_time: bool = False
    screen_on_minutes: float = 0.0
    unlock_count: int = 0

    historical_go_back_rate: Optional[float] = None
    historical_sample_size: int = 0

    @property
    def is_late_night(self) -> bool:
        return self.hour >= 22 or self.hour <= 5

    @property
    def is_weekend_morning(self) -> bool:
        return self.is_weekend and 6 <= self.hour <= 11

    @property
    def is_extended_session(self) -> bool:
        return self.current_session_minutes >= 15

    @property
    def is_first_session_of_day(self) -> bool:
        return self.session_count_today == 1

    @property
    def is_long_screen_session(self) -> bool:
        return self.screen_on_minutes >= 45

    @property
    def is_excessive_unlocking(self) -> bool:
        return self.unlock_count >= 15

    def to_snapshot(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.last_session_end_at is not None:
            data["last_session_end_at"] = self.last_session_end_at.isoformat()
        data.update(
            {
                "is_late_night": self.is_late_night,
                "is_extended_session": self.is_extended_session,
                "is_first_session_of_day": self.is_first_session_of_day,
                "is_weekend_morning": self.is_weekend_morning,
            }
        )
        return data


def build_context(
    *,
    now: datetime,
    target_app: str,
    session_started_at: Optional[datetime],
    session_count_today: int,
    last_session_end_at: Optional[datetime],
    usage_today_minutes: float,
    usage_yesterday_minutes: float,
    weekly_average_minutes: float,
    goal_minutes: Optional[int],
    streak_days: int,
    friction_level: str,
    days_since_install: int,
    best_session_minutes: int = 0,
    cues: Optional["BehaviorCues"] = None,
    historical: Tuple[Optional[float], int] = (None, 0),
    quick_reopen_window_s: float = 120.0,
) -> InterventionContext:
    minutes_since_last: Optional[float] = None
    quick_reopen = False
    if last_session_end_at is not None:
        gap_s = max(0.0, (now - last_session_end_at).total_seconds())
        minutes_since_last = gap_s / 60.0
        quick_reopen = gap_s < quick_reopen_window_s

    current_minutes = 0
    if session_started_at is not None:
        current_minutes = int(max(0.0, (now - session_started_at).total_seconds()) // 60)

    cues = cues or BehaviorCues()
    go_back_rate, sample_size = historical
    return InterventionContext(
        hour=now.hour,
        day_of_week=now.weekday(),
        is_weekend=now.weekday() >= 5,
        target_app=target_app,
        current_session_minutes=current_minutes,
        session_count_today=max(1, session_count_today),
        last_session_end_at=last_session_end_at,
        minutes_since_last_session=minutes_since_last,
        quick_reopen=quick_reopen,
        usage_today_minutes=usage_today_minutes,
        usage_yesterday_minutes=usage_yesterday_minutes,
        weekly_average_minutes=weekly_average_minutes,
        goal_minutes=goal_minutes,
        is_over_goal=goal_minutes is not None and usage_today_minutes > goal_minutes,
        streak_days=streak_days,
        friction_level=friction_level,
        days_since_install=days_since_install,
        best_session_minutes=best_session_minutes,
        rapid_app_switching=cues.rapid_app_switching,
        compulsive_behavior=cues.compulsive_behavior,
        unusual_usage_time=now.hour in (23, 0, 1, 2, 3, 4, 5),
        screen_on_minutes=cues.screen_on_minutes,
        unlock_count=cues.unlock_count,
        historical_go_back_rate=go_back_rate,
        historical_sample_size=sample_size,
    )


def friction_from_days_since_install(days: int) -> str:
    if days < 14:
        return "GENTLE"
    if days < 28:
        return "MODERATE"
    return "FIRM"


def effective_friction_level(
    days_since_install: int,
    *,
    locked_mode: bool = False,
    override: Optional[str] = None,
) -> str:
    """Locked mode wins over any override, which wins over tenure."""
    if locked_mode:
        return "LOCKED"
    if override:
        return override
    return friction_from_days_since_install(days_since_install)


@dataclass(frozen=True)
class BehaviorCues:
    rapid_app_switching: bool = False
    compulsive_behavior: bool = False
    screen_on_minutes: float = 0.0
    unlock_count: int = 0


class BehaviorTracker:
    """Rolling windows of launches, quick reopens, and unlocks."""

    def __init__(self) -> None:
        self._launches: Deque[Tuple[datetime, str]] = deque(maxlen=100)
        self._quick_reopens: Deque[datetime] = deque(maxlen=50)
        self._unlocks: Deque[datetime] = deque(maxlen=500)
        self._screen_on_since: Optional[datetime] = None

    def note_launch(self, app_id: str, at: datetime) -> None:
        if not self._launches or self._launches[-1][1] != app_id:
            self._launches.append((at, app_id))

    def note_quick_reopen(self, at: datetime) -> None:
        self._quick_reopens.append(at)

    def note_screen(self, screen_on: bool, at: datetime) -> None:
        if screen_on:
            if self._screen_on_since is None:
                self._screen_on_since = at
                self._unlocks.append(at)
        else:
            self._screen_on_since = None

    def cues(self, now: datetime) -> BehaviorCues:
        switch_cutoff = now - timedelta(seconds=_RAPID_SWITCH_WINDOW_S)
        reopen_cutoff = now - timedelta(seconds=_QUICK_REOPEN_WINDOW_S)
        unlock_cutoff = now - timedelta(seconds=_UNLOCK_WINDOW_S)
        recent_apps = {app for ts, app in self._launches if ts >= switch_cutoff}
        reopens = sum(1 for ts in self._quick_reopens if ts >= reopen_cutoff)
        unlocks = sum(1 for ts in self._unlocks if ts >= unlock_cutoff)
        screen_minutes = 0.0
        if self._screen_on_since is not None:
            screen_minutes = max(0.0, (now - self._screen_on_since).total_seconds()) / 60.0
        return BehaviorCues(
            rapid_app_switching=len(recent_apps) >= _RAPID_SWITCH_MIN_APPS,
            compulsive_behavior=reopens >= _COMPULSIVE_MIN_REOPENS,
            screen_on_minutes=screen_minutes,
            unlock_count=unlocks,
        )

    def reset(self) -> None:
        self._launches.clear()
        self._quick_reopens.clear()
        self._unlocks.clear()
        self._screen_on_since = None
