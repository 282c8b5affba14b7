import asyncio
from datetime import datetime, timedelta

from conftest import FACEBOOK, INSTAGRAM, LAUNCHER, build_stack
from nudge.monitor import SESSION_SNAPSHOT_KEY, ForegroundSample, MonitorController
from nudge.sessions import SessionTracker

T = datetime(2026, 10, 14, 10, 0, 0)
OVERLAY_APP = "com.nudge.overlay"


def at(seconds):
    return T + timedelta(seconds=seconds)


def test_session_start_dispatches_reminder(stack):
    result = asyncio.run(stack.monitor.handle_sample(INSTAGRAM, T))
    assert result.event_kinds() == ["session_started"]
    assert len(result.interventions) == 1
    plan = result.interventions[0]
    assert plan.intervention_type == "REMINDER"
    assert plan.target_app == INSTAGRAM
    assert plan.session_id == stack.tracker.current.session_id
    assert result.poll_interval_s == 1.5


def test_overlay_in_foreground_does_not_end_session(stack):
    async def scenario():
        await stack.monitor.handle_sample(INSTAGRAM, T)
        during = await stack.monitor.handle_sample(OVERLAY_APP, at(10))
        back = await stack.monitor.handle_sample(INSTAGRAM, at(20))
        return during, back

    during, back = asyncio.run(scenario())
    assert during.events == []
    assert back.events == []
    assert stack.tracker.current.last_active_at == at(20)


def test_screen_off_ends_and_persists_session(stack):
    async def scenario():
        await stack.monitor.handle_sample(INSTAGRAM, T)
        await stack.monitor.handle_sample(INSTAGRAM, at(20))
        result = await stack.monitor.handle_sample(None, at(25), screen_on=False)
        await stack.monitor.drain()
        return result, await stack.usage.sessions_between(T, at(60))

    result, sessions = asyncio.run(scenario())
    assert result.event_kinds() == ["session_ended"]
    ended = result.events[0].session
    assert ended.interruption_type == "screen_off"
    assert ended.was_interrupted is True
    assert ended.ended_at == at(25)
    assert result.poll_interval_s == 30.0
    assert [s.duration_s for s in sessions] == [25.0]


def test_go_back_response_ends_session(stack):
    async def scenario():
        started = await stack.monitor.handle_sample(INSTAGRAM, T)
        plan = started.interventions[0]
        outcome = await stack.monitor.handle_response(plan.intervention_id, choice="GO_BACK", now=at(8))
        await stack.monitor.drain()
        return plan, outcome, await stack.usage.get_session(plan.session_id)

    plan, outcome, record = asyncio.run(scenario())
    assert outcome.proximal.choice == "GO_BACK"
    assert stack.tracker.current is None
    assert record.interruption_type == "manual"
    assert record.duration_s == 8.0


def test_continue_response_keeps_session(stack):
    async def scenario():
        started = await stack.monitor.handle_sample(INSTAGRAM, T)
        plan = started.interventions[0]
        await stack.monitor.handle_response(plan.intervention_id, choice="CONTINUE", now=at(5))
        return plan

    plan = asyncio.run(scenario())
    assert stack.tracker.current.session_id == plan.session_id


def _capture_contexts(engine):
    contexts = []
    build = engine._context_for

    async def recording(session, now):
        ctx = await build(session, now)
        contexts.append(ctx)
        return ctx

    engine._context_for = recording
    return contexts


def test_reopen_after_gap_sees_the_session_that_just_ended(stack):
    contexts = _capture_contexts(stack.engine)

    async def scenario():
        for seconds in range(0, 65, 5):
            await stack.monitor.handle_sample(INSTAGRAM, at(seconds))
        return await stack.monitor.handle_sample(INSTAGRAM, at(95))

    reopened = asyncio.run(scenario())
    assert reopened.event_kinds() == ["session_ended", "session_started"]
    ctx = contexts[-1]
    assert ctx.quick_reopen is True
    assert ctx.session_count_today == 2
    assert ctx.last_session_end_at == at(60)


def test_app_switch_sees_the_session_that_just_ended(stack):
    contexts = _capture_contexts(stack.engine)

    async def scenario():
        for seconds in range(0, 65, 5):
            await stack.monitor.handle_sample(INSTAGRAM, at(seconds))
        return await stack.monitor.handle_sample(FACEBOOK, at(61))

    switched = asyncio.run(scenario())
    assert switched.event_kinds() == ["session_ended", "session_started"]
    ctx = contexts[-1]
    assert ctx.target_app == FACEBOOK
    assert ctx.quick_reopen is True
    assert ctx.session_count_today == 2


def test_skipped_timer_alert_is_acknowledged(clock):
    stack = build_stack(clock, timer_s=60.0)

    async def scenario():
        results = []
        for seconds in (0, 20, 40, 60):
            results.append(await stack.monitor.handle_sample(INSTAGRAM, at(seconds)))
        return results[-1]

    try:
        alert = asyncio.run(scenario())
    finally:
        stack.db.close()
    assert alert.event_kinds() == ["timer_alert"]
    assert alert.interventions == []
    current = stack.tracker.current
    assert current.alerts_fired == 1
    assert current.alert_pending is False


def test_recovery_resumes_fresh_and_ends_stale_snapshots(stack):
    async def scenario():
        await stack.monitor.handle_sample(INSTAGRAM, T)
        await stack.monitor.drain()
        saved = await stack.db.get_state(SESSION_SNAPSHOT_KEY)

        fresh = MonitorController(
            SessionTracker([INSTAGRAM], gap_s=30.0), stack.engine, stack.db, clock=stack.clock
        )
        resumed = await fresh.recover(at(10))

        stale = MonitorController(
            SessionTracker([INSTAGRAM], gap_s=30.0), stack.engine, stack.db, clock=stack.clock
        )
        discarded = await stale.recover(at(300))
        return saved, fresh, resumed, discarded

    saved, fresh, resumed, discarded = asyncio.run(scenario())
    assert saved["target_app"] == INSTAGRAM
    assert resumed.events == []
    assert fresh.tracker.current.session_id == saved["session_id"]
    assert fresh.tracker.current.timer_anchor_at == at(10)
    assert discarded.event_kinds() == ["session_ended"]
    assert discarded.events[0].session.interruption_type == "restart_discarded"
    assert discarded.events[0].session.ended_at == T


def test_recovery_with_corrupt_snapshot_starts_idle(stack):
    async def scenario():
        await stack.db.set_state(SESSION_SNAPSHOT_KEY, {"target_app": INSTAGRAM})
        return await stack.monitor.recover(T)

    result = asyncio.run(scenario())
    assert result.events == []
    assert stack.tracker.current is None


def test_poll_interval_adapts(stack):
    monitor = stack.monitor
    assert monitor.poll_interval(T) == 5.0

    async def scenario():
        await monitor.handle_sample(INSTAGRAM, T)
        active = monitor.poll_interval(at(1))
        ended = await monitor.handle_sample(LAUNCHER, at(40))
        return active, ended

    active, ended = asyncio.run(scenario())
    assert active == 1.5
    assert ended.event_kinds() == ["session_ended"]
    assert ended.events[0].session.interruption_type == "timeout"
    assert monitor.poll_interval(at(50)) == 1.5
    assert monitor.poll_interval(at(61)) == 5.0
    monitor.power_save = True
    assert monitor.poll_interval(at(61)) == 10.0


class _ScriptedSource:
    def __init__(self, samples, stop):
        self._samples = list(samples)
        self._stop = stop

    async def current(self):
        sample = self._samples.pop(0)
        if not self._samples:
            self._stop.set()
        return sample


def test_run_loop_feeds_samples_until_stopped(stack):
    async def scenario():
        stop = asyncio.Event()
        source = _ScriptedSource([ForegroundSample(INSTAGRAM, T), ForegroundSample(INSTAGRAM, at(1))], stop)
        stack.monitor._poll_active_s = 0.01
        stack.monitor._poll_idle_s = 0.01
        await asyncio.wait_for(stack.monitor.run(source, stop), timeout=5)

    asyncio.run(scenario())
    assert stack.tracker.current.last_active_at == at(1)
