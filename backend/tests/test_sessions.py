from datetime import datetime, timedelta

import pytest

from nudge.sessions import SessionTracker

IG = "com.instagram.android"
FB = "com.facebook.katana"
LAUNCHER = "com.android.launcher"

T0 = datetime(2026, 10, 14, 10, 0, 0)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def make_tracker(**kwargs) -> SessionTracker:
    counter = iter(range(1, 1000))
    kwargs.setdefault("gap_s", 30.0)
    kwargs.setdefault("min_duration_s", 5.0)
    kwargs.setdefault("timer_duration_s", 600.0)
    return SessionTracker([IG, FB], id_factory=lambda: f"s{next(counter)}", **kwargs)


def kinds(events):
    return [event.kind for event in events]


def test_monitored_app_starts_session():
    tracker = make_tracker()
    events = tracker.observe(IG, at(0))
    assert kinds(events) == ["session_started"]
    assert events[0].session.session_id == "s1"
    assert tracker.current.target_app == IG


def test_unmonitored_app_is_ignored_while_idle():
    tracker = make_tracker()
    assert tracker.observe(LAUNCHER, at(0)) == []
    assert tracker.observe(None, at(1)) == []
    assert tracker.current is None


def test_continuous_samples_extend_the_session():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    for second in range(2, 60, 2):
        assert tracker.observe(IG, at(second)) == []
    assert tracker.current.session_id == "s1"
    assert tracker.current.last_active_at == at(58)


def test_reopen_after_gap_creates_new_session():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    tracker.observe(IG, at(60))

    events = tracker.observe(IG, at(90))

    assert kinds(events) == ["session_ended", "session_started"]
    ended, started = events
    assert ended.session.session_id == "s1"
    assert ended.session.interruption_type == "timeout"
    assert ended.session.ended_at == at(60)
    assert started.session.session_id == "s2"


def test_reopen_just_inside_gap_continues():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    tracker.observe(IG, at(60))
    assert tracker.observe(IG, at(89)) == []
    assert tracker.current.session_id == "s1"


def test_switch_to_other_monitored_app_is_app_switch():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    events = tracker.observe(FB, at(10))
    assert kinds(events) == ["session_ended", "session_started"]
    assert events[0].session.interruption_type == "app_switch"
    assert events[0].session.ended_at == at(10)
    assert events[1].session.target_app == FB


def test_switch_to_unmonitored_app_ends_session():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    events = tracker.observe(LAUNCHER, at(20))
    assert kinds(events) == ["session_ended"]
    assert tracker.current is None


def test_short_session_is_not_countable():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    events = tracker.observe(LAUNCHER, at(3))
    assert events[0].countable is False

    tracker.observe(IG, at(10))
    events = tracker.observe(LAUNCHER, at(20))
    assert events[0].countable is True


def test_timeout_ends_at_last_active_time():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    tracker.observe(IG, at(12))
    assert tracker.check_timeout(at(30)) == []
    events = tracker.check_timeout(at(45))
    assert kinds(events) == ["session_ended"]
    assert events[0].session.ended_at == at(12)
    assert events[0].session.duration_s == pytest.approx(12.0)


def test_out_of_order_sample_is_dropped():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    tracker.observe(IG, at(20))
    assert tracker.observe(FB, at(10)) == []
    assert tracker.current.target_app == IG


def test_timer_alert_fires_once_until_acknowledged():
    tracker = make_tracker(timer_duration_s=60.0)
    tracker.observe(IG, at(0))
    fired = []
    for second in range(5, 200, 5):
        fired += tracker.observe(IG, at(second))
    assert kinds(fired) == ["timer_alert"]
    assert fired[0].at == at(60)
    assert fired[0].session.alerts_fired == 1

    tracker.acknowledge_timer_alert(at(200))
    later = []
    for second in range(205, 300, 5):
        later += tracker.observe(IG, at(second))
    assert kinds(later) == ["timer_alert"]
    assert later[0].session.alerts_fired == 2


def test_force_end_marks_interrupted():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    events = tracker.force_end(at(40), "screen_off")
    assert kinds(events) == ["session_ended"]
    session = events[0].session
    assert session.was_interrupted is True
    assert session.interruption_type == "screen_off"
    assert tracker.force_end(at(41)) == []


def test_current_returns_copy():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    copy = tracker.current
    copy.target_app = "mutated"
    assert tracker.current.target_app == IG


def test_restore_resumes_fresh_snapshot_with_reanchored_timer():
    tracker = make_tracker(timer_duration_s=60.0)
    tracker.observe(IG, at(0))
    tracker.observe(IG, at(50))
    snapshot = tracker.snapshot()

    restored = make_tracker(timer_duration_s=60.0)
    events = restored.restore(snapshot, at(55))
    assert events == []
    assert restored.current.session_id == "s1"
    assert restored.current.timer_anchor_at == at(55)
    # The elapsed time before the restart does not count toward the timer.
    assert restored.observe(IG, at(70)) == []


def test_restore_ends_stale_snapshot():
    tracker = make_tracker()
    tracker.observe(IG, at(0))
    tracker.observe(IG, at(20))
    snapshot = tracker.snapshot()

    restored = make_tracker()
    events = restored.restore(snapshot, at(600))
    assert kinds(events) == ["session_ended"]
    assert events[0].session.interruption_type == "restart_discarded"
    assert events[0].session.ended_at == at(20)
    assert restored.current is None


def test_restore_rejects_malformed_snapshot():
    tracker = make_tracker()
    with pytest.raises(ValueError):
        tracker.restore({"target_app": IG}, at(0))
    assert tracker.current is None


def test_restore_with_empty_snapshot_is_idle():
    tracker = make_tracker()
    assert tracker.restore(None, at(0)) == []
    assert tracker.current is None
