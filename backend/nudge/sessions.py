"""Foreground-sample session state machine with engagement-timer alerts.

The tracker is pure: every transition returns the list of ``SessionEvent``
values it produced and never touches storage. ``MonitorController`` owns the
single tracker instance and dispatches the events.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

SessionEventKind = Literal["session_started", "timer_alert", "session_ended"]


@dataclass
class Session:
    session_id: str
    target_app: str
    started_at: datetime
    last_active_at: datetime
    timer_anchor_at: datetime
    alert_pending: bool = False
    alerts_fired: int = 0
    ended_at: Optional[datetime] = None
    was_interrupted: bool = False
    interruption_type: Optional[str] = None

    @property
    def duration_s(self) -> float:
        end = self.ended_at or self.last_active_at
        return max(0.0, (end - self.started_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "target_app": self.target_app,
            "started_at": self.started_at.isoformat(),
            "last_active_at": self.last_active_at.isoformat(),
            "timer_anchor_at": self.timer_anchor_at.isoformat(),
            "alert_pending": self.alert_pending,
            "alerts_fired": self.alerts_fired,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "was_interrupted": self.was_interrupted,
            "interruption_type": self.interruption_type,
            "duration_s": round(self.duration_s, 3),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        ended_raw = data.get("ended_at")
        return cls(
            session_id=str(data["session_id"]),
            target_app=str(data["target_app"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            last_active_at=datetime.fromisoformat(data["last_active_at"]),
            timer_anchor_at=datetime.fromisoformat(
                data.get("timer_anchor_at") or data["started_at"]
            ),
            alert_pending=bool(data.get("alert_pending", False)),
            alerts_fired=int(data.get("alerts_fired", 0)),
            ended_at=datetime.fromisoformat(ended_raw) if ended_raw else None,
            was_interrupted=bool(data.get("was_interrupted", False)),
            interruption_type=data.get("interruption_type"),
        )


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    session: Session
    at: datetime
    countable: bool = True  # False for ended sessions shorter than the minimum


class SessionTracker:
    """Two-state machine: idle (``current is None``) or active(session)."""

    def __init__(
        self,
        monitored_apps: Iterable[str],
        gap_s: float = 30.0,
        min_duration_s: float = 5.0,
        timer_duration_s: float = 600.0,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._monitored = {app for app in monitored_apps if app}
        self._gap_s = float(gap_s)
        self._min_duration_s = float(min_duration_s)
        self._timer_duration_s = float(timer_duration_s)
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._current: Optional[Session] = None

    @property
    def current(self) -> Optional[Session]:
        return replace(self._current) if self._current is not None else None

    @property
    def gap_s(self) -> float:
        return self._gap_s

    @property
    def timer_duration_s(self) -> float:
        return self._timer_duration_s

    def is_monitored(self, app_id: Optional[str]) -> bool:
        return bool(app_id) and app_id in self._monitored

    def set_monitored_apps(self, apps: Iterable[str]) -> None:
        self._monitored = {app for app in apps if app}

    def set_timer_duration(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("timer duration must be positive")
        self._timer_duration_s = float(seconds)

    # ── Transitions ───────────────────────────────────────────────────────

    def observe(self, app_id: Optional[str], at: datetime) -> List[SessionEvent]:
        """Feed one foreground sample into the machine."""
        if not app_id:
            return self.check_timeout(at)

        current = self._current
        if current is not None and at < current.last_active_at:
            # Out-of-order sample from the poller.
            return []

        if current is None:
            if not self.is_monitored(app_id):
                return []
            return [self._start(app_id, at)]

        since_active = (at - current.last_active_at).total_seconds()
        if current.target_app == app_id and since_active < self._gap_s:
            return self._continue(at)

        if since_active >= self._gap_s:
            events = self._end(
                current.last_active_at, was_interrupted=False, interruption_type="timeout"
            )
        else:
            events = self._end(at, was_interrupted=False, interruption_type="app_switch")
        if self.is_monitored(app_id):
            events.append(self._start(app_id, at))
        return events

    def check_timeout(self, at: datetime) -> List[SessionEvent]:
        current = self._current
        if current is None:
            return []
        if (at - current.last_active_at).total_seconds() < self._gap_s:
            return []
        return self._end(current.last_active_at, was_interrupted=False, interruption_type="timeout")

    def force_end(self, at: datetime, interruption_type: str = "manual") -> List[SessionEvent]:
        """End the open session immediately (screen off, overlay, backgrounded)."""
        if self._current is None:
            return []
        end_at = max(at, self._current.last_active_at)
        return self._end(end_at, was_interrupted=True, interruption_type=interruption_type)

    def acknowledge_timer_alert(self, at: datetime) -> None:
        current = self._current
        if current is None:
            return
        current.alert_pending = False
        current.timer_anchor_at = max(at, current.timer_anchor_at)

    def reset(self) -> None:
        self._current = None

    # ── Restart recovery ──────────────────────────────────────────────────

    def snapshot(self) -> Optional[Dict[str, Any]]:
        if self._current is None:
            return None
        return self._current.to_dict()

    def restore(self, snapshot: Optional[Dict[str, Any]], at: datetime) -> List[SessionEvent]:
        """Recover a persisted in-flight session.

        Stale sessions are ended at their last active time; fresh ones resume
        with the timer re-anchored at ``at`` so no alert fires on stale
        elapsed time. Malformed snapshots raise ``ValueError``.
        """
        self._current = None
        if not snapshot:
            return []
        try:
            session = Session.from_dict(snapshot)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"malformed session snapshot: {exc}") from exc
        if session.ended_at is not None or not self.is_monitored(session.target_app):
            return []
        if at < session.last_active_at:
            raise ValueError("session snapshot is from the future")

        self._current = session
        if (at - session.last_active_at).total_seconds() >= self._gap_s:
            return self._end(
                session.last_active_at,
                was_interrupted=True,
                interruption_type="restart_discarded",
            )
        session.timer_anchor_at = at
        session.alert_pending = False
        return []

    # ── Internals ─────────────────────────────────────────────────────────

    def _start(self, app_id: str, at: datetime) -> SessionEvent:
        session = Session(
            session_id=self._id_factory(),
            target_app=app_id,
            started_at=at,
            last_active_at=at,
            timer_anchor_at=at,
        )
        self._current = session
        return SessionEvent(kind="session_started", session=replace(session), at=at)

    def _continue(self, at: datetime) -> List[SessionEvent]:
        current = self._current
        assert current is not None
        current.last_active_at = at
        since_anchor = (at - current.timer_anchor_at).total_seconds()
        if current.alert_pending or since_anchor < self._timer_duration_s:
            return []
        current.alert_pending = True
        current.alerts_fired += 1
        current.timer_anchor_at = at
        return [SessionEvent(kind="timer_alert", session=replace(current), at=at)]

    def _end(
        self,
        end_at: datetime,
        *,
        was_interrupted: bool,
        interruption_type: Optional[str],
    ) -> List[SessionEvent]:
        current = self._current
        if current is None:
            return []
        current.ended_at = max(end_at, current.started_at)
        current.was_interrupted = was_interrupted
        current.interruption_type = interruption_type
        self._current = None
        countable = current.duration_s >= self._min_duration_s
        return [
            SessionEvent(kind="session_ended", session=current, at=current.ended_at, countable=countable)
        ]
