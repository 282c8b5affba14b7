"""Persisted usage sessions, daily aggregates, and the rolling context queries."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from .db import Database, parse_datetime
from .schemas import UsageSessionRecord
from .sessions import Session

logger = logging.getLogger("nudge.usage")

INSTALL_DATE_KEY = "install_date"
INSTALL_ID_KEY = "install_id"
MAX_STREAK_DAYS = 365


class UsageStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    # ── Async wrappers ────────────────────────────────────────────────────

    async def record_session(self, session: Session) -> UsageSessionRecord:
        return await asyncio.to_thread(self._record_session, session)

    async def sessions_between(
        self, since: datetime, until: datetime, target_app: Optional[str] = None
    ) -> List[UsageSessionRecord]:
        return await asyncio.to_thread(self._sessions_between, since, until, target_app)

    async def usage_minutes_on(self, day: date) -> float:
        return await asyncio.to_thread(self._usage_minutes_on, day)

    async def session_count_on(self, day: date) -> int:
        return await asyncio.to_thread(self._session_count_on, day)

    async def last_session_end(self, target_app: Optional[str] = None) -> Optional[datetime]:
        return await asyncio.to_thread(self._last_session_end, target_app)

    async def get_session(self, session_id: str) -> Optional[UsageSessionRecord]:
        return await asyncio.to_thread(self._get_session, session_id)

    async def daily_totals(self, start: date, end: date) -> Dict[str, float]:
        return await asyncio.to_thread(self._daily_totals, start, end)

    async def weekly_average_minutes(self, today: date) -> float:
        return await asyncio.to_thread(self._weekly_average_minutes, today)

    async def streak_days(self, today: date, goal_minutes: int) -> int:
        return await asyncio.to_thread(self._streak_days, today, goal_minutes)

    async def context_aggregates(self, now: datetime, goal_minutes: int) -> dict:
        return await asyncio.to_thread(self._context_aggregates, now, goal_minutes)

    async def days_since_install(self, now: datetime) -> int:
        return await asyncio.to_thread(self._days_since_install, now)

    async def install_id(self) -> str:
        return await asyncio.to_thread(self._install_id)

    async def aggregate_daily(self, day: date, goal_minutes: Optional[int]) -> dict:
        return await asyncio.to_thread(self._aggregate_daily, day, goal_minutes)

    async def cleanup(self, retention_days: int, now: datetime) -> int:
        return await asyncio.to_thread(self._cleanup, retention_days, now)

    # ── Sync implementations ─────────────────────────────────────────────

    def _record_session(self, session: Session) -> UsageSessionRecord:
        ended_at = session.ended_at or session.last_active_at
        record = UsageSessionRecord(
            session_id=session.session_id,
            target_app=session.target_app,
            started_at=session.started_at,
            ended_at=ended_at,
            duration_s=session.duration_s,
            was_interrupted=session.was_interrupted,
            interruption_type=session.interruption_type,
            date=session.started_at.date().isoformat(),
        )
        with self._db.lock:
            self._db.conn.execute(
                """
                INSERT INTO usage_sessions (
                    session_id, target_app, started_at, ended_at, duration_s,
                    was_interrupted, interruption_type, date
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    ended_at = excluded.ended_at,
                    duration_s = excluded.duration_s,
                    was_interrupted = excluded.was_interrupted,
                    interruption_type = excluded.interruption_type
                """,
                (
                    record.session_id,
                    record.target_app,
                    record.started_at.isoformat(),
                    record.ended_at.isoformat(),
                    record.duration_s,
                    int(record.was_interrupted),
                    record.interruption_type,
                    record.date,
                ),
            )
            self._db.conn.commit()
        return record

    def _sessions_between(
        self, since: datetime, until: datetime, target_app: Optional[str]
    ) -> List[UsageSessionRecord]:
        query = "SELECT * FROM usage_sessions WHERE started_at >= ? AND started_at < ?"
        params: list = [since.isoformat(), until.isoformat()]
        if target_app:
            query += " AND target_app = ?"
            params.append(target_app)
        query += " ORDER BY started_at ASC"
        with self._db.lock:
            rows = self._db.conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def _usage_minutes_on(self, day: date) -> float:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT COALESCE(SUM(duration_s), 0) AS total FROM usage_sessions WHERE date = ?",
                (day.isoformat(),),
            ).fetchone()
        return float(row["total"]) / 60.0

    def _session_count_on(self, day: date) -> int:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT COUNT(*) AS count FROM usage_sessions WHERE date = ?",
                (day.isoformat(),),
            ).fetchone()
        return int(row["count"])

    def _last_session_end(self, target_app: Optional[str]) -> Optional[datetime]:
        if target_app:
            query = "SELECT MAX(ended_at) AS last FROM usage_sessions WHERE target_app = ?"
            params: tuple = (target_app,)
        else:
            query = "SELECT MAX(ended_at) AS last FROM usage_sessions"
            params = ()
        with self._db.lock:
            row = self._db.conn.execute(query, params).fetchone()
        return parse_datetime(row["last"]) if row else None

    def _get_session(self, session_id: str) -> Optional[UsageSessionRecord]:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT * FROM usage_sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def _daily_totals(self, start: date, end: date) -> Dict[str, float]:
        """Minutes per day for ``start <= day < end``."""
        with self._db.lock:
            rows = self._db.conn.execute(
                "SELECT date, SUM(duration_s) AS total FROM usage_sessions "
                "WHERE date >= ? AND date < ? GROUP BY date",
                (start.isoformat(), end.isoformat()),
            ).fetchall()
        return {row["date"]: float(row["total"]) / 60.0 for row in rows}

    def _weekly_average_minutes(self, today: date) -> float:
        totals = self._daily_totals(today - timedelta(days=7), today)
        return sum(totals.values()) / 7.0

    def _streak_days(self, today: date, goal_minutes: int) -> int:
        install = self._install_date(today)
        start = max(install, today - timedelta(days=MAX_STREAK_DAYS))
        totals = self._daily_totals(start, today)
        streak = 0
        day = today - timedelta(days=1)
        while day >= start:
            if totals.get(day.isoformat(), 0.0) > goal_minutes:
                break
            streak += 1
            day -= timedelta(days=1)
        return streak

    def _longest_session_minutes(self, since: datetime) -> float:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT COALESCE(MAX(duration_s), 0) AS longest FROM usage_sessions "
                "WHERE started_at >= ?",
                (since.isoformat(),),
            ).fetchone()
        return float(row["longest"]) / 60.0

    def _context_aggregates(self, now: datetime, goal_minutes: int) -> dict:
        today = now.date()
        return {
            "usage_today_minutes": self._usage_minutes_on(today),
            "usage_yesterday_minutes": self._usage_minutes_on(today - timedelta(days=1)),
            "weekly_average_minutes": self._weekly_average_minutes(today),
            "sessions_today": self._session_count_on(today),
            "last_session_end_at": self._last_session_end(None),
            "streak_days": self._streak_days(today, goal_minutes),
            "best_session_minutes": int(self._longest_session_minutes(now - timedelta(days=7))),
            "days_since_install": self._days_since_install(now),
        }

    def _install_date(self, fallback: date) -> date:
        raw = self._db.get_state_sync(INSTALL_DATE_KEY)
        if raw:
            try:
                return date.fromisoformat(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring corrupt install date %r", raw)
        self._db.set_state_sync(INSTALL_DATE_KEY, fallback.isoformat())
        return fallback

    def _days_since_install(self, now: datetime) -> int:
        return max(0, (now.date() - self._install_date(now.date())).days)

    def _install_id(self) -> str:
        raw = self._db.get_state_sync(INSTALL_ID_KEY)
        if isinstance(raw, str) and raw:
            return raw
        value = str(uuid.uuid4())
        self._db.set_state_sync(INSTALL_ID_KEY, value)
        return value

    def _aggregate_daily(self, day: date, goal_minutes: Optional[int]) -> dict:
        key = day.isoformat()
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT COUNT(*) AS count, COALESCE(SUM(duration_s), 0) AS total, "
                "COALESCE(MAX(duration_s), 0) AS longest FROM usage_sessions WHERE date = ?",
                (key,),
            ).fetchone()
            total_minutes = float(row["total"]) / 60.0
            goal_met = None if goal_minutes is None else total_minutes <= goal_minutes
            stats = {
                "date": key,
                "total_minutes": round(total_minutes, 2),
                "session_count": int(row["count"]),
                "longest_session_minutes": round(float(row["longest"]) / 60.0, 2),
                "goal_minutes": goal_minutes,
                "goal_met": goal_met,
            }
            self._db.conn.execute(
                """
                INSERT INTO daily_stats (
                    date, total_minutes, session_count, longest_session_minutes,
                    goal_minutes, goal_met, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    total_minutes = excluded.total_minutes,
                    session_count = excluded.session_count,
                    longest_session_minutes = excluded.longest_session_minutes,
                    goal_minutes = excluded.goal_minutes,
                    goal_met = excluded.goal_met,
                    updated_at = excluded.updated_at
                """,
                (
                    key,
                    stats["total_minutes"],
                    stats["session_count"],
                    stats["longest_session_minutes"],
                    goal_minutes,
                    None if goal_met is None else int(goal_met),
                    datetime.now().isoformat(),
                ),
            )
            self._db.conn.commit()
        return stats

    def _cleanup(self, retention_days: int, now: datetime) -> int:
        if retention_days <= 0:
            return 0
        cutoff = now - timedelta(days=retention_days)
        with self._db.lock:
            cur = self._db.conn.cursor()
            cur.execute("DELETE FROM usage_sessions WHERE started_at < ?", (cutoff.isoformat(),))
            deleted = cur.rowcount
            cur.execute("DELETE FROM daily_stats WHERE date < ?", (cutoff.date().isoformat(),))
            self._db.conn.commit()
        return deleted

    def _row_to_record(self, row) -> UsageSessionRecord:
        return UsageSessionRecord(
            session_id=row["session_id"],
            target_app=row["target_app"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            duration_s=float(row["duration_s"]),
            was_interrupted=bool(row["was_interrupted"]),
            interruption_type=row["interruption_type"],
            date=row["date"],
        )
