"""Staged intervention outcomes: storage, sweeps, and reward feedback.

Each shown intervention gets one ``comprehensive_outcomes`` row created when
the user responds (the proximal stage) plus one ``outcome_stage_tasks`` row per
later stage. Sweeps take ``now`` explicitly, pick the due tasks, observe the
usage store, and flip the stage flag with ``WHERE <flag> = 0`` so a re-run can
never overwrite a collected value.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from datetime import date, datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .burden import BurdenSample
from .db import Database, parse_datetime
from .reward import comprehensive_reward, is_successful, reward_from_stages
from .schemas import (
    OUTCOME_STAGES,
    ComprehensiveOutcome,
    LongTermOutcome,
    MediumTermOutcome,
    ProximalOutcome,
    ShortTermOutcome,
)

logger = logging.getLogger("nudge.outcomes")

STAGE_DELAYS = {
    "short": timedelta(minutes=5),
    "medium": timedelta(hours=1),
    "long": timedelta(days=7),
}
STAGE_FLAGS = {
    "short": "short_term_collected",
    "medium": "medium_term_collected",
    "long": "long_term_collected",
}
STAGE_FIELDS = {"short": "short_term", "medium": "medium_term", "long": "long_term"}

SHORT_TERM_WINDOW = timedelta(minutes=30)
PRODUCTIVE_SWITCH_WINDOW = timedelta(minutes=5)
MAX_WAIT = timedelta(days=30)
WEEKLY_CHANGE_BAND = 0.20
DEFAULT_MAX_ATTEMPTS = 3


def _validate_stage(stage: str) -> str:
    if stage not in OUTCOME_STAGES:
        raise ValueError(f"unknown outcome stage: {stage}")
    return stage


class OutcomeStore:
    """``comprehensive_outcomes`` and ``outcome_stage_tasks`` over the shared database."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ── Async wrappers ────────────────────────────────────────────────────

    async def create_with_proximal(self, outcome: ComprehensiveOutcome) -> Tuple[ComprehensiveOutcome, bool]:
        return await asyncio.to_thread(self._create_with_proximal, outcome)

    async def get(self, intervention_id: str) -> Optional[ComprehensiveOutcome]:
        return await asyncio.to_thread(self._get, intervention_id)

    async def due_tasks(self, stage: str, now: datetime, limit: int = 50) -> List[dict]:
        return await asyncio.to_thread(self._due_tasks, _validate_stage(stage), now, limit)

    async def complete_stage(self, intervention_id: str, stage: str, payload, now: datetime) -> bool:
        return await asyncio.to_thread(
            self._complete_stage, intervention_id, _validate_stage(stage), payload, now
        )

    async def record_task_failure(
        self, intervention_id: str, stage: str, error: str, now: datetime, max_attempts: int
    ) -> str:
        return await asyncio.to_thread(
            self._record_task_failure, intervention_id, stage, error, now, max_attempts
        )

    async def task_statuses(self, intervention_id: str) -> Dict[str, str]:
        return await asyncio.to_thread(self._task_statuses, intervention_id)

    async def mark_reward_attributed(self, intervention_id: str) -> bool:
        return await asyncio.to_thread(self._mark_reward_attributed, intervention_id)

    async def release_reward_attribution(self, intervention_id: str) -> None:
        await asyncio.to_thread(self._release_reward_attribution, intervention_id)

    async def finalize(self, intervention_id: str, reward_score: float, now: datetime) -> bool:
        return await asyncio.to_thread(self._finalize, intervention_id, reward_score, now)

    async def expired_unfinalized(self, cutoff: datetime, limit: int = 50) -> List[str]:
        return await asyncio.to_thread(self._expired_unfinalized, cutoff, limit)

    async def burden_samples(self, since: datetime) -> List[BurdenSample]:
        return await asyncio.to_thread(self._burden_samples, since)

    async def go_back_rate(self, target_app: str, hour: int) -> Tuple[Optional[float], int]:
        return await asyncio.to_thread(self._go_back_rate, target_app, hour)

    async def statistics(self, since: datetime) -> dict:
        return await asyncio.to_thread(self._statistics, since)

    async def delete_older_than(self, cutoff: datetime) -> int:
        return await asyncio.to_thread(self._delete_older_than, cutoff)

    # ── Sync implementations ─────────────────────────────────────────────

    def _create_with_proximal(self, outcome: ComprehensiveOutcome) -> Tuple[ComprehensiveOutcome, bool]:
        """Insert the outcome and schedule its stage tasks.

        Returns the stored outcome and whether it was newly created; an
        existing row is returned untouched.
        """
        if outcome.proximal is None:
            raise ValueError("proximal outcome is required")
        outcome = outcome.model_copy(update={"proximal_collected": True})
        responded_at = outcome.proximal.recorded_at
        now_iso = datetime.now().isoformat()
        with self._db.lock:
            cur = self._db.conn.cursor()
            cur.execute(
                """
                INSERT OR IGNORE INTO comprehensive_outcomes (
                    intervention_id, session_id, target_app, content_type, rollout_variant,
                    shown_at, hour, choice, proximal_collected, payload_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    outcome.intervention_id,
                    outcome.session_id,
                    outcome.target_app,
                    outcome.content_type,
                    outcome.rollout_variant,
                    outcome.shown_at.isoformat(),
                    outcome.shown_at.hour,
                    outcome.proximal.choice,
                    json.dumps(outcome.model_dump(mode="json")),
                ),
            )
            created = cur.rowcount == 1
            if created:
                cur.executemany(
                    """
                    INSERT OR IGNORE INTO outcome_stage_tasks (intervention_id, stage, due_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (outcome.intervention_id, stage, (responded_at + delay).isoformat(), now_iso)
                        for stage, delay in STAGE_DELAYS.items()
                    ],
                )
            self._db.conn.commit()
        if created:
            return outcome, True
        existing = self._get(outcome.intervention_id)
        assert existing is not None
        return existing, False

    def _get(self, intervention_id: str) -> Optional[ComprehensiveOutcome]:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT * FROM comprehensive_outcomes WHERE intervention_id = ?",
                (intervention_id,),
            ).fetchone()
        return self._row_to_outcome(row) if row else None

    def _due_tasks(self, stage: str, now: datetime, limit: int) -> List[dict]:
        with self._db.lock:
            rows = self._db.conn.execute(
                """
                SELECT intervention_id, stage, due_at, attempts FROM outcome_stage_tasks
                WHERE stage = ? AND status = 'PENDING' AND due_at <= ?
                ORDER BY due_at ASC LIMIT ?
                """,
                (stage, now.isoformat(), max(1, int(limit))),
            ).fetchall()
        return [dict(row) for row in rows]

    def _complete_stage(self, intervention_id: str, stage: str, payload, now: datetime) -> bool:
        flag = STAGE_FLAGS[stage]
        field = STAGE_FIELDS[stage]
        with self._db.lock:
            cur = self._db.conn.cursor()
            row = cur.execute(
                f"SELECT payload_json, {flag} AS collected FROM comprehensive_outcomes "
                "WHERE intervention_id = ?",
                (intervention_id,),
            ).fetchone()
            updated = False
            if row is not None and not row["collected"]:
                data = json.loads(row["payload_json"])
                data[field] = payload.model_dump(mode="json")
                data[flag] = True
                cur.execute(
                    f"UPDATE comprehensive_outcomes SET {flag} = 1, payload_json = ? "
                    f"WHERE intervention_id = ? AND {flag} = 0",
                    (json.dumps(data), intervention_id),
                )
                updated = cur.rowcount == 1
            cur.execute(
                "UPDATE outcome_stage_tasks SET status = 'DONE', updated_at = ? "
                "WHERE intervention_id = ? AND stage = ?",
                (now.isoformat(), intervention_id, stage),
            )
            self._db.conn.commit()
        return updated

    def _record_task_failure(
        self, intervention_id: str, stage: str, error: str, now: datetime, max_attempts: int
    ) -> str:
        with self._db.lock:
            cur = self._db.conn.cursor()
            cur.execute(
                """
                UPDATE outcome_stage_tasks
                SET attempts = attempts + 1,
                    last_error = ?,
                    status = CASE WHEN attempts + 1 >= ? THEN 'FAILED' ELSE status END,
                    updated_at = ?
                WHERE intervention_id = ? AND stage = ?
                """,
                (error[:500], max_attempts, now.isoformat(), intervention_id, stage),
            )
            row = cur.execute(
                "SELECT status FROM outcome_stage_tasks WHERE intervention_id = ? AND stage = ?",
                (intervention_id, stage),
            ).fetchone()
            self._db.conn.commit()
        return row["status"] if row else "FAILED"

    def _task_statuses(self, intervention_id: str) -> Dict[str, str]:
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT stage, status FROM outcome_stage_tasks WHERE intervention_id = ?",
                (intervention_id,),
            ).fetchall()
        return {row["stage"]: row["status"] for row in rows}

    def _mark_reward_attributed(self, intervention_id: str) -> bool:
        with self._db.lock:
            cur = self._db.conn.cursor()
            cur.execute(
                "UPDATE comprehensive_outcomes SET reward_attributed = 1 "
                "WHERE intervention_id = ? AND reward_attributed = 0",
                (intervention_id,),
            )
            self._db.conn.commit()
            return cur.rowcount == 1

    def _release_reward_attribution(self, intervention_id: str) -> None:
        with self._db.lock:
            self._db.conn.execute(
                "UPDATE comprehensive_outcomes SET reward_attributed = 0 WHERE intervention_id = ?",
                (intervention_id,),
            )
            self._db.conn.commit()

    def _finalize(self, intervention_id: str, reward_score: float, now: datetime) -> bool:
        with self._db.lock:
            cur = self._db.conn.cursor()
            cur.execute(
                "UPDATE comprehensive_outcomes SET reward_score = ?, finalized_at = ? "
                "WHERE intervention_id = ? AND finalized_at IS NULL",
                (reward_score, now.isoformat(), intervention_id),
            )
            finalized = cur.rowcount == 1
            if finalized:
                cur.execute(
                    "UPDATE outcome_stage_tasks SET status = 'FAILED', last_error = ?, updated_at = ? "
                    "WHERE intervention_id = ? AND status = 'PENDING'",
                    ("finalized before collection", now.isoformat(), intervention_id),
                )
            self._db.conn.commit()
        return finalized

    def _expired_unfinalized(self, cutoff: datetime, limit: int) -> List[str]:
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT intervention_id FROM comprehensive_outcomes "
                "WHERE finalized_at IS NULL AND shown_at < ? ORDER BY shown_at ASC LIMIT ?",
                (cutoff.isoformat(), max(1, int(limit))),
            ).fetchall()
        return [row["intervention_id"] for row in rows]

    def _burden_samples(self, since: datetime) -> List[BurdenSample]:
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT shown_at, payload_json FROM comprehensive_outcomes "
                "WHERE proximal_collected = 1 AND shown_at >= ? ORDER BY shown_at ASC",
                (since.isoformat(),),
            ).fetchall()
        samples: List[BurdenSample] = []
        for row in rows:
            proximal = json.loads(row["payload_json"]).get("proximal") or {}
            shown_at = parse_datetime(row["shown_at"])
            if shown_at is None or "choice" not in proximal:
                continue
            samples.append(
                BurdenSample(
                    at=shown_at,
                    choice=proximal["choice"],
                    response_time_ms=int(proximal.get("response_time_ms") or 0),
                    feedback=proximal.get("feedback"),
                )
            )
        return samples

    def _go_back_rate(self, target_app: str, hour: int) -> Tuple[Optional[float], int]:
        with self._db.lock:
            row = self._db.conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN choice = 'GO_BACK' THEN 1 ELSE 0 END), 0) AS go_back
                FROM comprehensive_outcomes
                WHERE target_app = ? AND hour = ? AND proximal_collected = 1
                """,
                (target_app, hour),
            ).fetchone()
        total = int(row["total"])
        if total == 0:
            return None, 0
        return int(row["go_back"]) / total, total

    def _statistics(self, since: datetime) -> dict:
        with self._db.lock:
            row = self._db.conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(proximal_collected), 0) AS proximal,
                       COALESCE(SUM(short_term_collected), 0) AS short_term,
                       COALESCE(SUM(medium_term_collected), 0) AS medium_term,
                       COALESCE(SUM(long_term_collected), 0) AS long_term,
                       COALESCE(SUM(reward_attributed), 0) AS attributed,
                       COALESCE(SUM(CASE WHEN finalized_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS finalized,
                       COALESCE(SUM(CASE WHEN choice = 'GO_BACK' THEN 1 ELSE 0 END), 0) AS go_back,
                       AVG(reward_score) AS avg_reward
                FROM comprehensive_outcomes WHERE shown_at >= ?
                """,
                (since.isoformat(),),
            ).fetchone()
            failed = self._db.conn.execute(
                """
                SELECT COUNT(*) AS count FROM outcome_stage_tasks t
                JOIN comprehensive_outcomes o ON o.intervention_id = t.intervention_id
                WHERE t.status = 'FAILED' AND o.shown_at >= ?
                """,
                (since.isoformat(),),
            ).fetchone()
        total = int(row["total"])
        proximal = int(row["proximal"])
        return {
            "total_outcomes": total,
            "proximal_collected": proximal,
            "short_term_collected": int(row["short_term"]),
            "medium_term_collected": int(row["medium_term"]),
            "long_term_collected": int(row["long_term"]),
            "reward_attributed": int(row["attributed"]),
            "finalized": int(row["finalized"]),
            "failed_stage_tasks": int(failed["count"]),
            "avg_reward_score": None if row["avg_reward"] is None else round(float(row["avg_reward"]), 2),
            "go_back_rate": int(row["go_back"]) / proximal if proximal else 0.0,
        }

    def _delete_older_than(self, cutoff: datetime) -> int:
        with self._db.lock:
            cur = self._db.conn.cursor()
            cur.execute(
                "DELETE FROM outcome_stage_tasks WHERE intervention_id IN ("
                "SELECT intervention_id FROM comprehensive_outcomes WHERE shown_at < ?)",
                (cutoff.isoformat(),),
            )
            cur.execute("DELETE FROM comprehensive_outcomes WHERE shown_at < ?", (cutoff.isoformat(),))
            deleted = cur.rowcount
            self._db.conn.commit()
        return deleted

    def _row_to_outcome(self, row) -> ComprehensiveOutcome:
        data = json.loads(row["payload_json"])
        data.update(
            {
                "proximal_collected": bool(row["proximal_collected"]),
                "short_term_collected": bool(row["short_term_collected"]),
                "medium_term_collected": bool(row["medium_term_collected"]),
                "long_term_collected": bool(row["long_term_collected"]),
                "reward_attributed": bool(row["reward_attributed"]),
                "reward_score": row["reward_score"],
                "finalized_at": row["finalized_at"],
            }
        )
        return ComprehensiveOutcome.model_validate(data)


class OutcomeTracker:
    """Records responses, runs the stage sweeps, and feeds rewards back."""

    def __init__(
        self,
        store: OutcomeStore,
        usage,
        *,
        clock: Callable[[], datetime],
        sampler=None,
        rollout=None,
        burden=None,
        productive_apps: Iterable[str] = (),
        goal_minutes: Optional[int] = None,
        batch_size: int = 50,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        quick_reopen_window_s: float = 120.0,
    ) -> None:
        self.store = store
        self._usage = usage
        self._clock = clock
        self._sampler = sampler
        self._rollout = rollout
        self._burden = burden
        self._productive_apps = {app for app in productive_apps if app}
        self.goal_minutes = goal_minutes
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._quick_reopen_window_s = quick_reopen_window_s
        self._foreground: Deque[Tuple[datetime, str]] = deque(maxlen=200)

    def note_foreground(self, app_id: str, at: datetime) -> None:
        """Remember app switches so the short stage can spot a productive switch."""
        if not self._foreground or self._foreground[-1][1] != app_id:
            self._foreground.append((at, app_id))

    def reset(self) -> None:
        self._foreground.clear()

    # ── Proximal ──────────────────────────────────────────────────────────

    async def record_proximal(
        self, outcome: ComprehensiveOutcome, proximal: ProximalOutcome
    ) -> ComprehensiveOutcome:
        stored, created = await self.store.create_with_proximal(
            outcome.model_copy(update={"proximal": proximal})
        )
        if not created:
            logger.info("Proximal outcome for %s already recorded", outcome.intervention_id)
            return stored
        if self._rollout is not None and stored.rollout_variant:
            try:
                await self._rollout.record_effectiveness(
                    stored.rollout_variant,
                    is_successful(proximal.choice, proximal.feedback),
                    proximal.recorded_at,
                )
            except Exception as exc:
                logger.warning("Rollout effectiveness update failed: %s", exc)
        if self._burden is not None:
            self._burden.invalidate()
        return stored

    # ── Sweeps ────────────────────────────────────────────────────────────

    async def run_sweep(self, stage: str, now: Optional[datetime] = None) -> dict:
        _validate_stage(stage)
        now = now or self._clock()
        tasks = await self.store.due_tasks(stage, now, self._batch_size)
        collected = failed = finalized = 0
        for task in tasks:
            intervention_id = task["intervention_id"]
            try:
                outcome = await self.store.get(intervention_id)
                if outcome is None or outcome.proximal is None:
                    raise LookupError(f"outcome {intervention_id} is missing")
                payload = await self._observe(stage, outcome, now)
                if await self.store.complete_stage(intervention_id, stage, payload, now):
                    collected += 1
                    if stage == "short":
                        await self._attribute(
                            outcome.model_copy(update={"short_term": payload, "short_term_collected": True})
                        )
            except Exception as exc:
                logger.warning("%s-term collection failed for %s: %s", stage, intervention_id, exc)
                status = await self.store.record_task_failure(
                    intervention_id, stage, str(exc), now, self._max_attempts
                )
                if status != "FAILED":
                    continue
                failed += 1
            if await self._maybe_finalize(intervention_id, now):
                finalized += 1

        if stage == "long":
            finalized += await self.finalize_expired(now)

        summary = {
            "stage": stage,
            "processed": len(tasks),
            "collected": collected,
            "failed": failed,
            "finalized": finalized,
        }
        if tasks:
            logger.info("Outcome sweep %s", summary)
        return summary

    async def finalize_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        count = 0
        for intervention_id in await self.store.expired_unfinalized(now - MAX_WAIT, self._batch_size):
            if await self._maybe_finalize(intervention_id, now):
                count += 1
        return count

    async def _observe(self, stage: str, outcome: ComprehensiveOutcome, now: datetime):
        if stage == "short":
            return await self._observe_short(outcome, now)
        if stage == "medium":
            return await self._observe_medium(outcome)
        return await self._observe_long(outcome)

    async def _observe_short(self, outcome: ComprehensiveOutcome, now: datetime) -> ShortTermOutcome:
        proximal = outcome.proximal
        responded_at = proximal.recorded_at
        window_end = min(now, responded_at + SHORT_TERM_WINDOW)

        continued = proximal.choice != "GO_BACK"
        anchor = responded_at
        duration_after: Optional[float] = 0.0 if not continued else None
        if continued and outcome.session_id:
            record = await self._usage.get_session(outcome.session_id)
            if record is not None:
                anchor = max(record.ended_at, responded_at)
                duration_after = max(0.0, (record.ended_at - responded_at).total_seconds())

        later = [
            s
            for s in await self._usage.sessions_between(responded_at, window_end, outcome.target_app)
            if s.session_id != outcome.session_id
        ]
        reopen_delay: Optional[float] = None
        if later:
            reopen_delay = max(0.0, (later[0].started_at - anchor).total_seconds())

        switch_cutoff = responded_at + PRODUCTIVE_SWITCH_WINDOW
        switched = any(
            responded_at <= at <= switch_cutoff and app in self._productive_apps
            for at, app in self._foreground
        )
        return ShortTermOutcome(
            session_continued=continued,
            session_duration_after_s=duration_after,
            quick_reopen=reopen_delay is not None and reopen_delay < self._quick_reopen_window_s,
            reopen_delay_s=reopen_delay,
            switched_to_productive_app=switched,
            reopen_count_30min=len(later),
        )

    async def _observe_medium(self, outcome: ComprehensiveOutcome) -> MediumTermOutcome:
        responded_at = outcome.proximal.recorded_at
        day = responded_at.date()
        today = await self._usage.usage_minutes_on(day)
        yesterday = await self._usage.usage_minutes_on(day - timedelta(days=1))
        end_of_day = datetime.combine(day + timedelta(days=1), datetime.min.time())
        later = await self._usage.sessions_between(responded_at, end_of_day, outcome.target_app)
        additional = sum(1 for s in later if s.session_id != outcome.session_id)
        return MediumTermOutcome(
            usage_reduction_minutes_today=round(max(0.0, yesterday - today), 2),
            goal_met_today=None if self.goal_minutes is None else today <= self.goal_minutes,
            additional_sessions_today=additional,
            total_usage_minutes_today=round(today, 2),
        )

    async def _observe_long(self, outcome: ComprehensiveOutcome) -> LongTermOutcome:
        day = outcome.proximal.recorded_at.date()
        after = await self._usage.daily_totals(day + timedelta(days=1), day + timedelta(days=8))
        before = await self._usage.weekly_average_minutes(day)
        average_after = sum(after.values()) / 7.0
        return LongTermOutcome(
            weekly_usage_change=weekly_change(before, average_after),
            streak_maintained=self._streak_maintained(after, day),
            app_uninstalled=False,
            user_retained=True,
            avg_daily_usage_next_7_days=round(average_after, 2),
        )

    def _streak_maintained(self, totals: Dict[str, float], day: date) -> bool:
        if self.goal_minutes is None:
            return False
        return all(
            totals.get((day + timedelta(days=offset)).isoformat(), 0.0) <= self.goal_minutes
            for offset in range(1, 8)
        )

    # ── Rewards ───────────────────────────────────────────────────────────

    async def _attribute(self, outcome: ComprehensiveOutcome) -> bool:
        """Push the 0..1 reward to the bandit once per intervention."""
        if outcome.proximal is None:
            return False
        if not await self.store.mark_reward_attributed(outcome.intervention_id):
            return False
        arm = None
        pending = None
        if self._sampler is not None:
            arm = pending = self._sampler.pop_pending(outcome.intervention_id)
            if arm is None and outcome.rollout_variant == "RL_TREATMENT":
                arm = outcome.content_type
        if arm is None:
            return False
        reward = reward_from_stages(outcome.proximal, outcome.short_term)
        try:
            await self._sampler.update(arm, reward)
        except Exception as exc:
            logger.warning("Bandit update failed for %s: %s", outcome.intervention_id, exc)
            # Left unattributed; finalization retries it.
            if pending is not None:
                self._sampler.remember(outcome.intervention_id, pending)
            await self.store.release_reward_attribution(outcome.intervention_id)
            return False
        logger.info("Attributed reward %.2f to %s for %s", reward, arm, outcome.intervention_id)
        return True

    async def _maybe_finalize(self, intervention_id: str, now: datetime) -> bool:
        outcome = await self.store.get(intervention_id)
        if outcome is None or outcome.finalized_at is not None:
            return False
        statuses = await self.store.task_statuses(intervention_id)
        all_collected = (
            outcome.short_term_collected and outcome.medium_term_collected and outcome.long_term_collected
        )
        none_pending = all(status != "PENDING" for status in statuses.values())
        expired = now - outcome.shown_at >= MAX_WAIT
        if not (all_collected or none_pending or expired):
            return False

        if not outcome.reward_attributed:
            await self._attribute(outcome)
        score = comprehensive_reward(outcome)
        if not await self.store.finalize(intervention_id, score, now):
            return False
        if self._burden is not None:
            self._burden.invalidate()
        logger.info("Finalized outcome %s with reward score %.2f", intervention_id, score)
        return True

    async def statistics(self, days: int = 7) -> dict:
        stats = await self.store.statistics(self._clock() - timedelta(days=days))
        stats["days_analyzed"] = days
        return stats

    async def cleanup(self, retention_days: int) -> int:
        if retention_days <= 0:
            return 0
        deleted = await self.store.delete_older_than(self._clock() - timedelta(days=retention_days))
        if deleted:
            logger.info("Deleted %d outcomes older than %d days", deleted, retention_days)
        return deleted


def weekly_change(before: float, after: float) -> str:
    """DECREASED / STABLE / INCREASED with a symmetric 20% band."""
    if before <= 0:
        return "INCREASED" if after > 0 else "STABLE"
    if after < before * (1 - WEEKLY_CHANGE_BAND):
        return "DECREASED"
    if after > before * (1 + WEEKLY_CHANGE_BAND):
        return "INCREASED"
    return "STABLE"
