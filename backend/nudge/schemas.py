"""Pydantic models and closed value sets for sessions, decisions, outcomes, and API bodies."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

InterventionType = Literal["REMINDER", "TIMER"]
GateDecision = Literal["SHOW", "SKIP"]
BlockingReason = Literal[
    "BASIC_RATE_LIMIT",
    "PERSONA_FREQUENCY_LIMIT",
    "JITAI_POOR_OPPORTUNITY",
    "BURDEN_MITIGATION",
    "SNOOZE_ACTIVE",
    "OTHER",
]
OpportunityLevel = Literal["EXCELLENT", "GOOD", "MODERATE", "POOR"]
JitaiDecision = Literal[
    "INTERVENE_NOW",
    "INTERVENE_WITH_CONSIDERATION",
    "WAIT_FOR_BETTER_OPPORTUNITY",
    "SKIP_INTERVENTION",
]
Persona = Literal[
    "NEW_USER",
    "PROBLEMATIC_PATTERN_USER",
    "HEAVY_COMPULSIVE_USER",
    "HEAVY_BINGE_USER",
    "MODERATE_BALANCED_USER",
    "CASUAL_USER",
]
Confidence = Literal["LOW", "MEDIUM", "HIGH"]
BurdenLevel = Literal["LOW", "MODERATE", "HIGH", "CRITICAL"]
Trend = Literal["IMPROVING", "STABLE", "DECLINING"]
ContentType = Literal[
    "REFLECTION",
    "TIME_ALTERNATIVE",
    "BREATHING",
    "USAGE_STATS",
    "EMOTIONAL_APPEAL",
    "QUOTE",
    "GAMIFICATION",
    "ACTIVITY_SUGGESTION",
]
UserChoice = Literal["GO_BACK", "CONTINUE", "SNOOZE", "DISMISS", "TIMEOUT"]
InteractionDepth = Literal["DISMISSED", "VIEWED", "ENGAGED", "INTERACTED"]
Feedback = Literal["HELPFUL", "DISRUPTIVE"]
WeeklyUsageChange = Literal["DECREASED", "STABLE", "INCREASED"]
RolloutVariant = Literal["CONTROL", "RL_TREATMENT"]
FrictionLevel = Literal["GENTLE", "MODERATE", "FIRM", "LOCKED"]
InterruptionType = Literal[
    "timer_alert", "manual", "screen_off", "app_switch", "timeout", "restart_discarded"
]
OutcomeStage = Literal["short", "medium", "long"]

CONTENT_TYPES: tuple = (
    "REFLECTION",
    "TIME_ALTERNATIVE",
    "BREATHING",
    "USAGE_STATS",
    "EMOTIONAL_APPEAL",
    "QUOTE",
    "GAMIFICATION",
    "ACTIVITY_SUGGESTION",
)
BURDEN_LEVELS: tuple = ("LOW", "MODERATE", "HIGH", "CRITICAL")
OPPORTUNITY_LEVELS: tuple = ("POOR", "MODERATE", "GOOD", "EXCELLENT")
OUTCOME_STAGES: tuple = ("short", "medium", "long")
USER_CHOICES: tuple = ("GO_BACK", "CONTINUE", "SNOOZE", "DISMISS", "TIMEOUT")


class UsageSessionRecord(BaseModel):
    session_id: str
    target_app: str
    started_at: datetime
    ended_at: datetime
    duration_s: float
    was_interrupted: bool = False
    interruption_type: Optional[str] = None
    date: str


class DecisionExplanation(BaseModel):
    decision_id: str
    intervention_id: Optional[str] = None
    timestamp: datetime
    target_app: str
    session_id: Optional[str] = None
    intervention_type: InterventionType = "REMINDER"
    decision: GateDecision
    blocking_reason: Optional[BlockingReason] = None

    opportunity_score: int = 0
    opportunity_level: OpportunityLevel = "POOR"
    opportunity_breakdown: Dict[str, int] = Field(default_factory=dict)

    persona: Persona = "NEW_USER"
    persona_confidence: Confidence = "LOW"

    passed_snooze: bool = True
    passed_basic_rate_limit: bool = False
    time_since_last_intervention_s: Optional[int] = None
    basic_rate_limit_detail: Optional[str] = None
    passed_persona_frequency: bool = False
    persona_frequency_rule: Optional[str] = None
    passed_jitai_filter: bool = False
    jitai_decision: Optional[JitaiDecision] = None
    passed_burden_gate: bool = False

    burden_level: Optional[BurdenLevel] = None
    burden_score: Optional[int] = None
    burden_reliable: bool = False
    burden_mitigation_applied: bool = False
    burden_cooldown_multiplier: Optional[float] = None

    content_type: Optional[ContentType] = None
    content_weights: Optional[Dict[str, float]] = None
    content_selection_reason: Optional[str] = None
    rollout_variant: Optional[RolloutVariant] = None
    rl_predicted_arm: Optional[ContentType] = None
    rl_predicted_reward: Optional[float] = None
    rl_exploration: Optional[bool] = None

    friction_level: Optional[FrictionLevel] = None
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)
    explanation: str = ""
    detailed_explanation: str = ""

    model_config = ConfigDict(frozen=True)


class ProximalOutcome(BaseModel):
    choice: UserChoice
    response_time_ms: int = 0
    interaction_depth: InteractionDepth = "VIEWED"
    feedback: Optional[Feedback] = None
    recorded_at: datetime


class ShortTermOutcome(BaseModel):
    session_continued: bool = False
    session_duration_after_s: Optional[float] = None
    quick_reopen: bool = False
    reopen_delay_s: Optional[float] = None
    switched_to_productive_app: bool = False
    reopen_count_30min: int = 0


class MediumTermOutcome(BaseModel):
    usage_reduction_minutes_today: float = 0.0
    goal_met_today: Optional[bool] = None
    additional_sessions_today: int = 0
    total_usage_minutes_today: float = 0.0


class LongTermOutcome(BaseModel):
    weekly_usage_change: WeeklyUsageChange = "STABLE"
    streak_maintained: bool = False
    app_uninstalled: bool = False
    user_retained: bool = True
    avg_daily_usage_next_7_days: Optional[float] = None


class ComprehensiveOutcome(BaseModel):
    intervention_id: str
    session_id: Optional[str] = None
    target_app: str
    intervention_type: InterventionType = "REMINDER"
    content_type: Optional[ContentType] = None
    rollout_variant: Optional[RolloutVariant] = None
    shown_at: datetime

    proximal: Optional[ProximalOutcome] = None
    short_term: Optional[ShortTermOutcome] = None
    medium_term: Optional[MediumTermOutcome] = None
    long_term: Optional[LongTermOutcome] = None

    proximal_collected: bool = False
    short_term_collected: bool = False
    medium_term_collected: bool = False
    long_term_collected: bool = False
    reward_attributed: bool = False
    reward_score: Optional[float] = None
    finalized_at: Optional[datetime] = None


class InterventionPlan(BaseModel):
    intervention_id: str
    decision_id: str
    session_id: str
    target_app: str
    intervention_type: InterventionType
    content_type: ContentType
    friction_level: FrictionLevel
    explanation: str = ""


# ── API bodies ─────────────────────────────────────────────────────────────


class ForegroundSampleRequest(BaseModel):
    app_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    screen_on: bool = True

    model_config = ConfigDict(extra="allow")


class ScreenStateRequest(BaseModel):
    screen_on: bool
    timestamp: Optional[datetime] = None


class InterventionResponseRequest(BaseModel):
    choice: UserChoice
    response_time_ms: int = Field(default=0, ge=0)
    interaction_depth: InteractionDepth = "VIEWED"
    feedback: Optional[Feedback] = None
    timestamp: Optional[datetime] = None


class ForegroundResponse(BaseModel):
    session: Optional[Dict[str, Any]] = None
    events: List[str] = Field(default_factory=list)
    interventions: List[InterventionPlan] = Field(default_factory=list)
    poll_interval_s: float
