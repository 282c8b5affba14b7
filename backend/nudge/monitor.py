"""Foreground monitor: the single owner of the session tracker.

Every mutation of the tracker goes through ``MonitorController`` under one
asyncio lock, whether the sample came from the polling loop (``run``) or from
the HTTP ingest route. Tracker events are dispatched to the decision engine in
the order they were produced.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Set

from .engine import DecisionEngine
from .schemas import ComprehensiveOutcome, InterventionPlan
from .sessions import SessionEvent, SessionTracker

logger = logging.getLogger("nudge.monitor")

SESSION_SNAPSHOT_KEY = "session_snapshot"
OVERLAY_GRACE_S = 30.0
SNAPSHOT_REFRESH_S = 15.0


@dataclass(frozen=True)
class ForegroundSample:
    app_id: Optional[str]
    timestamp: datetime
    screen_on: bool = True


class ForegroundSource(Protocol):
    async def current(self) -> ForegroundSample: ...


@dataclass
class TickResult:
    events: List[SessionEvent] = field(default_factory=list)
    interventions: List[InterventionPlan] = field(default_factory=list)
    poll_interval_s: float = 1.5

    def event_kinds(self) -> List[str]:
        return [event.kind for event in self.events]


class MonitorController:
    def __init__(
        self,
        tracker: SessionTracker,
        engine: DecisionEngine,
        db=None,
        *,
        clock: Callable[[], datetime] = datetime.now,
        poll_active_s: float = 1.5,
        poll_idle_s: float = 5.0,
        poll_idle_after_s: float = 60.0,
        poll_screen_off_s: float = 30.0,
        poll_power_save_s: float = 10.0,
        overlay_grace_s: float = OVERLAY_GRACE_S,
    ) -> None:
        self.tracker = tracker
        self.engine = engine
        self._db = db
        self._clock = clock
        self._poll_active_s = poll_active_s
        self._poll_idle_s = poll_idle_s
        self._poll_idle_after_s = poll_idle_after_s
        self._poll_screen_off_s = poll_screen_off_s
        self._poll_power_save_s = poll_power_save_s
        self._overlay_grace_s = overlay_grace_s
        self._lock = asyncio.Lock()
        self._jobs: Set[asyncio.Task] = set()
        self.screen_on = True
        self.power_save = False
        self._overlay_until: Optional[datetime] = None
        self._last_monitored_at: Optional[datetime] = None
        self._snapshot_saved_at: Optional[datetime] = None
        self._snapshot_session_id: Optional[str] = None

    # ── Ingestion ─────────────────────────────────────────────────────────

    async def recover(self, now: Optional[datetime] = None) -> TickResult:
        """Resume a fresh in-flight session or end a stale one; never resume blindly."""
        now = now or self._clock()
        async with self._lock:
            snapshot = None
            if self._db is not None:
                try:
                    snapshot = await self._db.get_state(SESSION_SNAPSHOT_KEY)
                except Exception as exc:
                    logger.warning("Failed to load session snapshot: %s", exc)
            try:
                events = self.tracker.restore(snapshot, now)
            except ValueError as exc:
                logger.warning("Discarding session snapshot: %s", exc)
                events = []
            if events:
                logger.info("Ended stale session from previous run")
            elif self.tracker.current is not None:
                logger.info("Resumed session %s", self.tracker.current.session_id)
            result = await self._dispatch(events, now)
            self._save_snapshot(now, force=True)
            return result

    async def handle_sample(
        self, app_id: Optional[str], at: Optional[datetime] = None, screen_on: bool = True
    ) -> TickResult:
        at = at or self._clock()
        if not screen_on:
            return await self.handle_screen(False, at)
        async with self._lock:
            if not self.screen_on:
                self.screen_on = True
                self.engine.behavior.note_screen(True, at)
            if app_id:
                self.engine.behavior.note_launch(app_id, at)
                self.engine.outcomes.note_foreground(app_id, at)
                if self.tracker.is_monitored(app_id):
                    self._last_monitored_at = at

            if app_id and not self.tracker.is_monitored(app_id) and self._in_overlay_grace(at):
                # The overlay itself is in the foreground.
                events = self.tracker.check_timeout(at)
            else:
                events = self.tracker.observe(app_id, at)
            result = await self._dispatch(events, at)
            self._save_snapshot(at, force=bool(events))
            return result

    async def handle_screen(self, screen_on: bool, at: Optional[datetime] = None) -> TickResult:
        at = at or self._clock()
        async with self._lock:
            self.engine.behavior.note_screen(screen_on, at)
            events: List[SessionEvent] = []
            if screen_on:
                self.screen_on = True
            else:
                self.screen_on = False
                self._overlay_until = None
                events = self.tracker.force_end(at, "screen_off")
            result = await self._dispatch(events, at)
            self._save_snapshot(at, force=bool(events))
            return result

    async def handle_response(
        self,
        intervention_id: str,
        *,
        choice: str,
        response_time_ms: int = 0,
        interaction_depth: str = "VIEWED",
        feedback: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ComprehensiveOutcome:
        now = now or self._clock()
        async with self._lock:
            outcome = await self.engine.record_response(
                intervention_id,
                choice=choice,
                response_time_ms=response_time_ms,
                interaction_depth=interaction_depth,
                feedback=feedback,
                now=now,
            )
            self._overlay_until = None
            plan = self.engine.shown_intervention(intervention_id)
            current = self.tracker.current
            if plan is not None and current is not None and current.session_id == plan.session_id:
                if choice == "GO_BACK":
                    reason = "timer_alert" if plan.intervention_type == "TIMER" else "manual"
                    await self._dispatch(self.tracker.force_end(now, reason), now)
                elif plan.intervention_type == "TIMER":
                    self.tracker.acknowledge_timer_alert(now)
            self._save_snapshot(now, force=True)
            return outcome

    # ── Dispatch ──────────────────────────────────────────────────────────

    async def _dispatch(self, events: List[SessionEvent], at: datetime) -> TickResult:
        result = TickResult(events=list(events))
        for event in events:
            if event.kind == "session_started":
                logger.info("Session started for %s", event.session.target_app)
                decision = await self.engine.decide(event.session, "REMINDER", event.at)
                if decision.plan is not None:
                    self._open_overlay(event.at)
                    result.interventions.append(decision.plan)
            elif event.kind == "timer_alert":
                logger.info(
                    "Timer alert #%d for %s", event.session.alerts_fired, event.session.target_app
                )
                decision = await self.engine.decide(event.session, "TIMER", event.at)
                if decision.plan is not None:
                    self._open_overlay(event.at)
                    result.interventions.append(decision.plan)
                else:
                    self.tracker.acknowledge_timer_alert(event.at)
            elif event.kind == "session_ended":
                session = event.session
                logger.info(
                    "Session ended for %s after %.1fs (%s)",
                    session.target_app,
                    session.duration_s,
                    session.interruption_type,
                )
                if event.countable:
                    # A session started in the same tick is decided against this row.
                    await self._record_session(event)
        result.poll_interval_s = self.poll_interval(at)
        return result

    async def _record_session(self, event: SessionEvent) -> None:
        try:
            await self.engine.usage.record_session(event.session)
        except Exception as exc:
            logger.error("Failed to persist session %s: %s", event.session.session_id, exc)

    def _open_overlay(self, at: datetime) -> None:
        self._overlay_until = at + timedelta(seconds=self._overlay_grace_s)

    def _in_overlay_grace(self, at: datetime) -> bool:
        return self._overlay_until is not None and at < self._overlay_until

    def _save_snapshot(self, at: datetime, *, force: bool = False) -> None:
        if self._db is None:
            return
        current = self.tracker.current
        session_id = current.session_id if current else None
        if (
            not force
            and session_id == self._snapshot_session_id
            and self._snapshot_saved_at is not None
            and (at - self._snapshot_saved_at).total_seconds() < SNAPSHOT_REFRESH_S
        ):
            return
        self._snapshot_saved_at = at
        self._snapshot_session_id = session_id
        snapshot = self.tracker.snapshot()

        async def _write() -> None:
            try:
                if snapshot is None:
                    await self._db.delete_state(SESSION_SNAPSHOT_KEY)
                else:
                    await self._db.set_state(SESSION_SNAPSHOT_KEY, snapshot)
            except Exception as exc:
                logger.warning("Failed to persist session snapshot: %s", exc)

        self._spawn(_write())

    def _spawn(self, coro) -> None:
        job = asyncio.create_task(coro)
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)

    async def drain(self, timeout_s: Optional[float] = None) -> bool:
        jobs = [job for job in list(self._jobs) if not job.done()]
        if not jobs:
            return True
        if timeout_s is None:
            await asyncio.gather(*jobs, return_exceptions=True)
            return True
        _, pending = await asyncio.wait(jobs, timeout=timeout_s)
        return len(pending) == 0

    # ── Polling ───────────────────────────────────────────────────────────

    def poll_interval(self, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        if not self.screen_on:
            return self._poll_screen_off_s
        if self.power_save:
            return self._poll_power_save_s
        if self.tracker.current is not None:
            return self._poll_active_s
        if (
            self._last_monitored_at is not None
            and (now - self._last_monitored_at).total_seconds() < self._poll_idle_after_s
        ):
            return self._poll_active_s
        return self._poll_idle_s

    async def run(self, source: ForegroundSource, stop: asyncio.Event) -> None:
        """Poll ``source`` on the adaptive cadence until ``stop`` is set."""
        logger.info("Foreground monitor started")
        while not stop.is_set():
            try:
                sample = await source.current()
                await self.handle_sample(sample.app_id, sample.timestamp, sample.screen_on)
            except Exception as exc:
                logger.warning("Foreground poll failed: %s", exc)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval())
            except asyncio.TimeoutError:
                continue
        logger.info("Foreground monitor stopped")

    def session_payload(self) -> Optional[dict]:
        current = self.tracker.current
        return current.to_dict() if current is not None else None

    async def reset(self) -> None:
        for job in list(self._jobs):
            job.cancel()
        self._jobs.clear()
        self.tracker.reset()
        self.screen_on = True
        self.power_save = False
        self._overlay_until = None
        self._last_monitored_at = None
        self._snapshot_saved_at = None
        self._snapshot_session_id = None
