"""Decision explanations: text rendering, the append-only store, and the logger."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from .db import Database
from .schemas import DecisionExplanation

logger = logging.getLogger("nudge.decisions")

BURDEN_MITIGATION_ACTIVE_RATE = 0.20


def generate_explanation(record: DecisionExplanation) -> str:
    if record.decision == "SKIP":
        reason = record.blocking_reason
        if reason == "BASIC_RATE_LIMIT":
            return (
                "SKIPPED: Cooldown period active "
                f"({record.time_since_last_intervention_s}s since last intervention)"
            )
        if reason == "PERSONA_FREQUENCY_LIMIT":
            return f"SKIPPED: Persona frequency limit ({record.persona_frequency_rule} for {record.persona})"
        if reason == "JITAI_POOR_OPPORTUNITY":
            return (
                "SKIPPED: Poor timing opportunity "
                f"(score: {record.opportunity_score}/{record.opportunity_level})"
            )
        if reason == "BURDEN_MITIGATION":
            return f"SKIPPED: User experiencing {record.burden_level} burden (mitigation active)"
        if reason == "SNOOZE_ACTIVE":
            return "SKIPPED: User has snoozed interventions"
        return f"SKIPPED: {reason or 'Unknown reason'}"

    ctx = record.context_snapshot
    parts = [
        f"SHOWN: Opportunity score {record.opportunity_score} ({record.opportunity_level}) "
        f"for {record.persona} user. "
    ]
    if ctx.get("quick_reopen"):
        parts.append("Quick reopen detected. ")
    if ctx.get("is_extended_session"):
        parts.append(f"Extended session ({ctx.get('current_session_minutes', 0)} min). ")
    if ctx.get("is_late_night"):
        parts.append("Late night usage. ")
    if ctx.get("is_over_goal"):
        parts.append("Over daily goal. ")
    if record.content_type:
        parts.append(f"Showing {record.content_type} content. ")
    if record.burden_mitigation_applied:
        parts.append(f"(Burden mitigation applied: {record.burden_cooldown_multiplier}x cooldown)")
    return "".join(parts).rstrip()


def _pass_fail(passed: bool) -> str:
    return "PASS" if passed else "FAIL"


def generate_detailed_explanation(record: DecisionExplanation) -> str:
    lines = [
        "=== Intervention Decision Explanation ===",
        f"Time: {record.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
        f"App: {record.target_app}",
        "",
        f"DECISION: {record.decision}",
    ]
    if record.blocking_reason:
        lines.append(f"Blocking Reason: {record.blocking_reason}")
    lines += [
        "",
        "=== Opportunity Scoring ===",
        f"Overall Score: {record.opportunity_score}/100 ({record.opportunity_level})",
        "Breakdown:",
    ]
    lines += [f"  - {factor}: {points} points" for factor, points in record.opportunity_breakdown.items()]
    lines += [
        "",
        "=== Persona Detection ===",
        f"Persona: {record.persona} (confidence: {record.persona_confidence})",
        "",
        "=== Rate Limiting Checks ===",
        f"Snooze: {_pass_fail(record.passed_snooze)}",
        f"Basic Rate Limit: {_pass_fail(record.passed_basic_rate_limit)}",
    ]
    if record.time_since_last_intervention_s is not None:
        lines.append(f"  Time since last: {record.time_since_last_intervention_s}s")
    if record.basic_rate_limit_detail:
        lines.append(f"  Detail: {record.basic_rate_limit_detail}")
    lines.append(f"Persona Frequency: {_pass_fail(record.passed_persona_frequency)}")
    if record.persona_frequency_rule:
        lines.append(f"  Rule: {record.persona_frequency_rule}")
    lines.append(f"JITAI Filter: {_pass_fail(record.passed_jitai_filter)}")
    if record.jitai_decision:
        lines.append(f"  JITAI Decision: {record.jitai_decision}")
    lines.append(f"Burden Gate: {_pass_fail(record.passed_burden_gate)}")
    lines.append("")

    if record.burden_level is not None:
        lines += [
            "=== Burden Considerations ===",
            f"Burden Level: {record.burden_level}",
        ]
        if record.burden_score is not None:
            lines.append(f"Burden Score: {record.burden_score}")
        lines.append(f"Reliable: {record.burden_reliable}")
        lines.append(f"Mitigation Applied: {record.burden_mitigation_applied}")
        if record.burden_cooldown_multiplier is not None:
            lines.append(f"Cooldown Multiplier: {record.burden_cooldown_multiplier}x")
        lines.append("")

    if record.content_type is not None:
        lines += ["=== Content Selection ===", f"Selected: {record.content_type}"]
        if record.rollout_variant:
            lines.append(f"Variant: {record.rollout_variant}")
        if record.content_selection_reason:
            lines.append(f"Reason: {record.content_selection_reason}")
        if record.content_weights:
            lines.append("Weights:")
            lines += [f"  - {arm}: {weight}" for arm, weight in record.content_weights.items()]
        lines.append("")

    if record.rl_predicted_arm is not None:
        lines += [
            "=== Reinforcement Learning ===",
            f"Predicted Arm: {record.rl_predicted_arm}",
            f"Predicted Reward: {record.rl_predicted_reward}",
            f"Mode: {'exploration' if record.rl_exploration else 'exploitation'}",
            "",
        ]

    lines.append("=== Context ===")
    lines += [f"  {key}: {value}" for key, value in record.context_snapshot.items()]
    return "\n".join(lines)


def with_explanations(record: DecisionExplanation) -> DecisionExplanation:
    """Return a copy of ``record`` carrying both rendered explanations."""
    return record.model_copy(
        update={
            "explanation": generate_explanation(record),
            "detailed_explanation": generate_detailed_explanation(record),
        }
    )


class DecisionLogStore:
    """Append-only ``decision_explanations`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ── Async wrappers ────────────────────────────────────────────────────

    async def append(self, record: DecisionExplanation) -> None:
        await asyncio.to_thread(self._append, record)

    async def get(self, decision_id: str) -> Optional[DecisionExplanation]:
        return await asyncio.to_thread(self._get, decision_id)

    async def recent(self, limit: int = 50, target_app: Optional[str] = None) -> List[DecisionExplanation]:
        return await asyncio.to_thread(self._recent, limit, target_app)

    async def by_opportunity(self, level: str, limit: int = 50) -> List[DecisionExplanation]:
        return await asyncio.to_thread(self._by_opportunity, level, limit)

    async def summary(self, since: datetime) -> dict:
        return await asyncio.to_thread(self._summary, since)

    async def skip_statistics(self, since: datetime) -> Dict[str, int]:
        return await asyncio.to_thread(self._skip_statistics, since)

    async def delete_older_than(self, cutoff: datetime) -> int:
        return await asyncio.to_thread(self._delete_older_than, cutoff)

    # ── Sync implementations ─────────────────────────────────────────────

    def _append(self, record: DecisionExplanation) -> None:
        with self._db.lock:
            self._db.conn.execute(
                """
                INSERT INTO decision_explanations (
                    decision_id, timestamp, target_app, decision, blocking_reason,
                    opportunity_score, opportunity_level, burden_mitigation_applied, payload_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.decision_id,
                    record.timestamp.isoformat(),
                    record.target_app,
                    record.decision,
                    record.blocking_reason,
                    record.opportunity_score,
                    record.opportunity_level,
                    int(record.burden_mitigation_applied),
                    json.dumps(record.model_dump(mode="json")),
                ),
            )
            self._db.conn.commit()

    def _get(self, decision_id: str) -> Optional[DecisionExplanation]:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT payload_json FROM decision_explanations WHERE decision_id = ?",
                (decision_id,),
            ).fetchone()
        if row is None:
            return None
        return DecisionExplanation.model_validate(json.loads(row["payload_json"]))

    def _recent(self, limit: int, target_app: Optional[str]) -> List[DecisionExplanation]:
        if limit <= 0:
            return []
        query = "SELECT payload_json FROM decision_explanations"
        params: list = []
        if target_app:
            query += " WHERE target_app = ?"
            params.append(target_app)
        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)
        with self._db.lock:
            rows = self._db.conn.execute(query, params).fetchall()
        return [DecisionExplanation.model_validate(json.loads(row["payload_json"])) for row in rows]

    def _by_opportunity(self, level: str, limit: int) -> List[DecisionExplanation]:
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT payload_json FROM decision_explanations WHERE opportunity_level = ? "
                "ORDER BY timestamp DESC LIMIT ?",
                (level, limit),
            ).fetchall()
        return [DecisionExplanation.model_validate(json.loads(row["payload_json"])) for row in rows]

    def _summary(self, since: datetime) -> dict:
        with self._db.lock:
            row = self._db.conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN decision = 'SHOW' THEN 1 ELSE 0 END), 0) AS shows,
                    COALESCE(SUM(CASE WHEN decision = 'SKIP' THEN 1 ELSE 0 END), 0) AS skips,
                    AVG(opportunity_score) AS avg_score,
                    COALESCE(SUM(burden_mitigation_applied), 0) AS mitigations
                FROM decision_explanations WHERE timestamp >= ?
                """,
                (since.isoformat(),),
            ).fetchone()
        skip_reasons = self._skip_statistics(since)
        by_level = self._decisions_by_level(since)
        total = int(row["total"])
        shows = int(row["shows"])
        skips = int(row["skips"])
        mitigations = int(row["mitigations"])
        return {
            "total_decisions": total,
            "show_count": shows,
            "skip_count": skips,
            "show_rate": shows / total if total else 0.0,
            "skip_rate": skips / total if total else 0.0,
            "skip_reasons": skip_reasons,
            "by_opportunity_level": by_level,
            "avg_opportunity_score": round(float(row["avg_score"] or 0.0), 2),
            "burden_mitigation_count": mitigations,
            "burden_mitigation_rate": mitigations / total if total else 0.0,
        }

    def _skip_statistics(self, since: datetime) -> Dict[str, int]:
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT COALESCE(blocking_reason, 'UNKNOWN') AS reason, COUNT(*) AS count "
                "FROM decision_explanations WHERE decision = 'SKIP' AND timestamp >= ? "
                "GROUP BY reason ORDER BY count DESC",
                (since.isoformat(),),
            ).fetchall()
        return {row["reason"]: int(row["count"]) for row in rows}

    def _decisions_by_level(self, since: datetime) -> Dict[str, Dict[str, int]]:
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT opportunity_level, decision, COUNT(*) AS count "
                "FROM decision_explanations WHERE timestamp >= ? "
                "GROUP BY opportunity_level, decision",
                (since.isoformat(),),
            ).fetchall()
        grouped: Dict[str, Dict[str, int]] = {}
        for row in rows:
            grouped.setdefault(row["opportunity_level"], {})[row["decision"]] = int(row["count"])
        return grouped

    def _delete_older_than(self, cutoff: datetime) -> int:
        with self._db.lock:
            cur = self._db.conn.cursor()
            cur.execute("DELETE FROM decision_explanations WHERE timestamp < ?", (cutoff.isoformat(),))
            self._db.conn.commit()
            return cur.rowcount


class DecisionLogger:
    """Fire-and-forget writer in front of ``DecisionLogStore``.

    ``log`` never raises: a failed write is logged at ERROR (which the
    error channel captures) and dropped so the decision always proceeds.
    """

    def __init__(self, store: DecisionLogStore) -> None:
        self._store = store
        self._jobs: Set[asyncio.Task] = set()
        self.failed_writes = 0

    def log(self, record: DecisionExplanation) -> DecisionExplanation:
        try:
            rendered = with_explanations(record)
        except Exception as exc:
            logger.exception("Failed to render decision explanation: %s", exc)
            rendered = record

        async def _write() -> None:
            try:
                await self._store.append(rendered)
            except Exception as exc:
                self.failed_writes += 1
                logger.error("Failed to persist decision %s: %s", rendered.decision_id, exc)

        try:
            job = asyncio.get_running_loop().create_task(_write())
        except RuntimeError:
            logger.error("No running loop; decision %s not persisted", rendered.decision_id)
            self.failed_writes += 1
            return rendered
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)
        return rendered

    async def drain(self, timeout_s: Optional[float] = None) -> bool:
        jobs = [job for job in list(self._jobs) if not job.done()]
        if not jobs:
            return True
        if timeout_s is None:
            await asyncio.gather(*jobs, return_exceptions=True)
            return True
        _, pending = await asyncio.wait(jobs, timeout=timeout_s)
        return len(pending) == 0

    # ── Read side ─────────────────────────────────────────────────────────

    async def get(self, decision_id: str) -> Optional[DecisionExplanation]:
        return await self._store.get(decision_id)

    async def recent_decisions(
        self, limit: int = 50, target_app: Optional[str] = None
    ) -> List[DecisionExplanation]:
        return await self._store.recent(limit, target_app)

    async def decisions_by_opportunity(self, level: str, limit: int = 50) -> List[DecisionExplanation]:
        return await self._store.by_opportunity(level, limit)

    async def decision_summary(self, now: datetime, days: int = 7) -> dict:
        summary = await self._store.summary(now - timedelta(days=days))
        summary["days_analyzed"] = days
        return summary

    async def skip_statistics(self, now: datetime, days: int = 7) -> Dict[str, int]:
        return await self._store.skip_statistics(now - timedelta(days=days))

    async def is_burden_mitigation_active(self, now: datetime, days: int = 1) -> bool:
        summary = await self._store.summary(now - timedelta(days=days))
        if summary["total_decisions"] == 0:
            return False
        return summary["burden_mitigation_rate"] > BURDEN_MITIGATION_ACTIVE_RATE

    async def cleanup(self, now: datetime, retention_days: int = 90) -> int:
        deleted = await self._store.delete_older_than(now - timedelta(days=retention_days))
        if deleted:
            logger.info("Deleted %d decision explanations older than %d days", deleted, retention_days)
        return deleted
