import os
from dataclasses import dataclass
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in _env(name, default).split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    host: str = _env("NUDGE_HOST", "127.0.0.1")
    port: int = _env_int("NUDGE_PORT", 8000)
    db_path: str = _env("NUDGE_DB_PATH", "data/nudge.db")

    monitored_apps: Tuple[str, ...] = tuple(
        _env_list("NUDGE_MONITORED_APPS", "com.instagram.android,com.facebook.katana")
    )
    productive_apps: Tuple[str, ...] = tuple(_env_list("NUDGE_PRODUCTIVE_APPS", ""))

    # Session detection
    session_gap_s: float = _env_float("SESSION_GAP_S", 30.0)
    session_min_duration_s: float = _env_float("SESSION_MIN_DURATION_S", 5.0)
    session_timer_minutes: float = _env_float("SESSION_TIMER_MINUTES", 10.0)
    quick_reopen_window_s: float = _env_float("QUICK_REOPEN_WINDOW_S", 120.0)

    # Adaptive polling
    poll_active_s: float = _env_float("POLL_ACTIVE_S", 1.5)
    poll_idle_s: float = _env_float("POLL_IDLE_S", 5.0)
    poll_idle_after_s: float = _env_float("POLL_IDLE_AFTER_S", 60.0)
    poll_screen_off_s: float = _env_float("POLL_SCREEN_OFF_S", 30.0)
    poll_power_save_s: float = _env_float("POLL_POWER_SAVE_S", 10.0)

    # Gate
    global_cooldown_minutes: float = _env_float("GATE_GLOBAL_COOLDOWN_MINUTES", 5.0)
    reminder_cooldown_minutes: float = _env_float("GATE_REMINDER_COOLDOWN_MINUTES", 10.0)
    timer_cooldown_minutes: float = _env_float("GATE_TIMER_COOLDOWN_MINUTES", 15.0)
    min_session_minutes: float = _env_float("GATE_MIN_SESSION_MINUTES", 2.0)
    max_per_hour: int = _env_int("GATE_MAX_PER_HOUR", 4)
    max_per_day: int = _env_int("GATE_MAX_PER_DAY", 20)
    snooze_minutes: int = _env_int("SNOOZE_MINUTES", 10)

    # User
    daily_goal_minutes: int = _env_int("DAILY_GOAL_MINUTES", 60)
    locked_mode: bool = _env_bool("NUDGE_LOCKED_MODE", False)

    # Content bandit
    rollout_enabled: bool = _env_bool("RL_ROLLOUT_ENABLED", True)
    rollout_percentage: int = _env_int("RL_ROLLOUT_PERCENTAGE", 50)
    shadow_mode: bool = _env_bool("RL_SHADOW_MODE", True)

    # Background jobs
    short_sweep_interval_s: int = _env_int("SWEEP_SHORT_INTERVAL_S", 30 * 60)
    medium_sweep_interval_s: int = _env_int("SWEEP_MEDIUM_INTERVAL_S", 6 * 60 * 60)
    long_sweep_interval_s: int = _env_int("SWEEP_LONG_INTERVAL_S", 24 * 60 * 60)
    daily_job_interval_s: int = _env_int("DAILY_JOB_INTERVAL_S", 24 * 60 * 60)
    sweep_batch_size: int = _env_int("SWEEP_BATCH_SIZE", 50)
    job_max_retries: int = _env_int("JOB_MAX_RETRIES", 3)
    job_retry_delay_s: float = _env_float("JOB_RETRY_DELAY_S", 5.0)
    data_retention_days: int = _env_int("DATA_RETENTION_DAYS", 90)
    scheduler_enabled: bool = _env_bool("NUDGE_SCHEDULER_ENABLED", True)

    error_channel_max_entries: int = _env_int("ERROR_CHANNEL_MAX_ENTRIES", 500)

    allowed_origins: Tuple[str, ...] = tuple(_env_list("ALLOWED_ORIGINS", ""))


settings = Settings()
