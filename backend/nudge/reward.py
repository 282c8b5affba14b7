"""Reward signals derived from intervention outcomes."""

from __future__ import annotations

from typing import List, Optional

from .schemas import ComprehensiveOutcome, ProximalOutcome, ShortTermOutcome

BASE_REWARDS = {
    "GO_BACK": 1.0,
    "CONTINUE": 0.3,
    "DISMISS": 0.0,
    "TIMEOUT": 0.1,
    "SNOOZE": 0.5,
}

QUICK_REOPEN_THRESHOLD_S = 2 * 60
NO_REOPEN_THRESHOLD_S = 5 * 60
SHORT_SESSION_THRESHOLD_S = 5 * 60
EXTENDED_SESSION_THRESHOLD_S = 15 * 60


def bandit_reward(
    choice: str,
    feedback: Optional[str] = None,
    session_continued: Optional[bool] = None,
    session_duration_after_s: Optional[float] = None,
    quick_reopen: Optional[bool] = None,
    reopen_delay_s: Optional[float] = None,
) -> float:
    """Bounded 0..1 reward for the content arm that was shown."""
    reward = BASE_REWARDS.get(choice, 0.5)

    if feedback == "HELPFUL":
        reward += 0.2
    elif feedback == "DISRUPTIVE":
        reward -= 0.3

    if session_continued is False:
        reward += 0.1

    if session_duration_after_s is not None:
        if session_duration_after_s > EXTENDED_SESSION_THRESHOLD_S:
            reward -= 0.1
        elif session_duration_after_s <= SHORT_SESSION_THRESHOLD_S:
            reward += 0.1

    if quick_reopen:
        reward -= 0.2

    if reopen_delay_s is not None:
        if reopen_delay_s < QUICK_REOPEN_THRESHOLD_S:
            reward -= 0.2
        elif reopen_delay_s > NO_REOPEN_THRESHOLD_S:
            reward += 0.1

    return max(0.0, min(1.0, reward))


def reward_from_stages(
    proximal: ProximalOutcome, short_term: Optional[ShortTermOutcome] = None
) -> float:
    if short_term is None:
        return bandit_reward(proximal.choice, proximal.feedback)
    return bandit_reward(
        proximal.choice,
        proximal.feedback,
        session_continued=short_term.session_continued,
        session_duration_after_s=short_term.session_duration_after_s,
        quick_reopen=short_term.quick_reopen,
        reopen_delay_s=short_term.reopen_delay_s,
    )


def explain_reward(
    choice: str,
    feedback: Optional[str] = None,
    session_continued: Optional[bool] = None,
    quick_reopen: Optional[bool] = None,
) -> str:
    parts: List[str] = []
    base = BASE_REWARDS.get(choice)
    if base is None:
        parts.append("Unknown (+0.5)")
    elif base == 0.0:
        parts.append(f"{choice} (0.0)")
    else:
        parts.append(f"{choice} (+{base})")
    if feedback == "HELPFUL":
        parts.append("HELPFUL (+0.2)")
    elif feedback == "DISRUPTIVE":
        parts.append("DISRUPTIVE (-0.3)")
    if session_continued is False:
        parts.append("Session ended (+0.1)")
    if quick_reopen:
        parts.append("Quick reopen (-0.2)")
    return ", ".join(parts)


def is_successful(choice: str, feedback: Optional[str] = None) -> bool:
    return choice == "GO_BACK" or (choice == "CONTINUE" and feedback == "HELPFUL")


_CHOICE_POINTS = {"GO_BACK": 10.0, "CONTINUE": -5.0, "SNOOZE": 0.0, "DISMISS": -3.0, "TIMEOUT": -8.0}
_DEPTH_POINTS = {"INTERACTED": 3.0, "ENGAGED": 1.5, "VIEWED": 0.0, "DISMISSED": -2.0}


def comprehensive_reward(outcome: ComprehensiveOutcome) -> float:
    """Weighted score over whichever stages were collected."""
    total = 0.0

    proximal = outcome.proximal
    if proximal is not None:
        total += _CHOICE_POINTS.get(proximal.choice, 0.0)
        total += _DEPTH_POINTS.get(proximal.interaction_depth, 0.0)

    short = outcome.short_term
    if short is not None:
        if not short.session_continued:
            total += 15.0
        duration = short.session_duration_after_s
        if duration is not None:
            if duration < 5 * 60:
                total += 10.0
            elif duration < 15 * 60:
                total += 5.0
        if short.switched_to_productive_app:
            total += 8.0
        if short.quick_reopen:
            total -= 12.0
        if short.reopen_count_30min == 0:
            total += 8.0
        elif short.reopen_count_30min >= 3:
            total -= 6.0

    medium = outcome.medium_term
    if medium is not None:
        if medium.goal_met_today:
            total += 6.0
        total += medium.usage_reduction_minutes_today * 0.5
        if medium.additional_sessions_today == 0:
            total += 5.0
        elif medium.additional_sessions_today >= 3:
            total -= 3.0

    long = outcome.long_term
    if long is not None:
        if long.weekly_usage_change == "DECREASED":
            total += 5.0
        elif long.weekly_usage_change == "INCREASED":
            total -= 3.0
        if long.streak_maintained:
            total += 3.0
        if long.app_uninstalled:
            total += 10.0
        if not long.user_retained:
            total -= 20.0
        average = long.avg_daily_usage_next_7_days
        if average is not None:
            if average < 30:
                total += 5.0
            elif average < 60:
                total += 2.0

    return round(total, 2)
