"""SQLite connection, schema, and the key-value engine state table."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlsplit

logger = logging.getLogger("nudge.db")

SCHEMA_VERSION = 1


def _is_memory_path(path: str) -> bool:
    value = (path or "").strip().lower()
    return value in {":memory:", "file::memory:"} or value.startswith("file::memory:")


def _is_uri_path(path: str) -> bool:
    return (path or "").strip().lower().startswith("file:")


def _filesystem_path_from_uri(path: str) -> Optional[str]:
    parsed = urlsplit(path)
    if parsed.scheme != "file":
        return None
    raw_path = unquote(parsed.path or "")
    if not raw_path or raw_path.startswith(":memory:"):
        return None
    return raw_path


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class Database:
    """One shared connection for every nudge table.

    Stores hold a reference to this object and run their queries under
    ``lock``; the async surface is ``asyncio.to_thread`` over sync methods.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self.lock = threading.Lock()
        self.conn = self._connect()
        self._init_db()

    @property
    def path(self) -> str:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        db_path = self._path
        uri_mode = _is_uri_path(db_path)

        if uri_mode:
            fs_path = _filesystem_path_from_uri(db_path)
            if fs_path:
                Path(fs_path).parent.mkdir(parents=True, exist_ok=True)
        elif not _is_memory_path(db_path):
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False, uri=uri_mode)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init_db(self) -> None:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = cur.execute("SELECT version FROM schema_version").fetchone()
            if row is None:
                cur.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported DB schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS engine_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_sessions (
                    session_id TEXT PRIMARY KEY,
                    target_app TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT NOT NULL,
                    duration_s REAL NOT NULL,
                    was_interrupted INTEGER NOT NULL DEFAULT 0,
                    interruption_type TEXT,
                    date TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_sessions_app_started "
                "ON usage_sessions(target_app, started_at)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_usage_sessions_date ON usage_sessions(date)")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS daily_stats (
                    date TEXT PRIMARY KEY,
                    total_minutes REAL NOT NULL,
                    session_count INTEGER NOT NULL,
                    longest_session_minutes REAL NOT NULL,
                    goal_minutes INTEGER,
                    goal_met INTEGER,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS content_arms (
                    arm TEXT PRIMARY KEY,
                    alpha REAL NOT NULL,
                    beta REAL NOT NULL,
                    pulls INTEGER NOT NULL,
                    total_reward REAL NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS comprehensive_outcomes (
                    intervention_id TEXT PRIMARY KEY,
                    session_id TEXT,
                    target_app TEXT NOT NULL,
                    content_type TEXT,
                    rollout_variant TEXT,
                    shown_at TEXT NOT NULL,
                    hour INTEGER NOT NULL,
                    choice TEXT,
                    proximal_collected INTEGER NOT NULL DEFAULT 0,
                    short_term_collected INTEGER NOT NULL DEFAULT 0,
                    medium_term_collected INTEGER NOT NULL DEFAULT 0,
                    long_term_collected INTEGER NOT NULL DEFAULT 0,
                    reward_attributed INTEGER NOT NULL DEFAULT 0,
                    reward_score REAL,
                    finalized_at TEXT,
                    payload_json TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_outcomes_app ON comprehensive_outcomes(target_app)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_outcomes_shown_at ON comprehensive_outcomes(shown_at)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_outcomes_collection ON comprehensive_outcomes("
                "proximal_collected, short_term_collected, medium_term_collected, long_term_collected)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS outcome_stage_tasks (
                    intervention_id TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    due_at TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    last_error TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (intervention_id, stage)
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_stage_tasks_status_due "
                "ON outcome_stage_tasks(status, due_at)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS decision_explanations (
                    decision_id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    target_app TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    blocking_reason TEXT,
                    opportunity_score INTEGER NOT NULL,
                    opportunity_level TEXT NOT NULL,
                    burden_mitigation_applied INTEGER NOT NULL DEFAULT 0,
                    payload_json TEXT NOT NULL
                )
                """
            )
            for column in ("timestamp", "target_app", "decision", "blocking_reason", "opportunity_level"):
                cur.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_decisions_{column} "
                    f"ON decision_explanations({column})"
                )
            self.conn.commit()

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)

    def _clear(self) -> None:
        with self.lock:
            cur = self.conn.cursor()
            for table in (
                "engine_state",
                "usage_sessions",
                "daily_stats",
                "content_arms",
                "comprehensive_outcomes",
                "outcome_stage_tasks",
                "decision_explanations",
            ):
                cur.execute(f"DELETE FROM {table}")
            self.conn.commit()

    # ── Engine state (key-value) ──────────────────────────────────────────

    async def get_state(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self.get_state_sync, key)

    async def set_state(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self.set_state_sync, key, value)

    async def delete_state(self, key: str) -> None:
        await asyncio.to_thread(self.delete_state_sync, key)

    def get_state_sync(self, key: str) -> Optional[Any]:
        with self.lock:
            row = self.conn.execute(
                "SELECT value FROM engine_state WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except (TypeError, ValueError):
            logger.warning("Ignoring corrupt engine state for %s", key)
            return None

    def set_state_sync(self, key: str, value: Any) -> None:
        now = datetime.now().isoformat()
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO engine_state (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), now),
            )
            self.conn.commit()

    def delete_state_sync(self, key: str) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM engine_state WHERE key = ?", (key,))
            self.conn.commit()

    # ── Content arms ──────────────────────────────────────────────────────

    async def load_arms(self) -> Dict[str, Dict[str, float]]:
        return await asyncio.to_thread(self._load_arms)

    async def save_arm(
        self, arm: str, alpha: float, beta: float, pulls: int, total_reward: float
    ) -> None:
        await asyncio.to_thread(self._save_arm, arm, alpha, beta, pulls, total_reward)

    def _load_arms(self) -> Dict[str, Dict[str, float]]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT arm, alpha, beta, pulls, total_reward FROM content_arms"
            ).fetchall()
        return {
            row["arm"]: {
                "alpha": float(row["alpha"]),
                "beta": float(row["beta"]),
                "pulls": int(row["pulls"]),
                "total_reward": float(row["total_reward"]),
            }
            for row in rows
        }

    def _save_arm(
        self, arm: str, alpha: float, beta: float, pulls: int, total_reward: float
    ) -> None:
        now = datetime.now().isoformat()
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO content_arms (arm, alpha, beta, pulls, total_reward, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(arm) DO UPDATE SET
                    alpha = excluded.alpha,
                    beta = excluded.beta,
                    pulls = excluded.pulls,
                    total_reward = excluded.total_reward,
                    updated_at = excluded.updated_at
                """,
                (arm, alpha, beta, pulls, total_reward, now),
            )
            self.conn.commit()
