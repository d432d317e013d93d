"""Tests for the realtime notification watcher."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from scripts.crm.notification_watcher import NotificationWatcher, WatcherState
from scripts.lib.supabase_client import ChangeEvent


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
PAST = (NOW - timedelta(days=1)).isoformat()


class FakeClock:
    """Lets a fixed number of interval ticks through, then parks the timer."""

    def __init__(self, ticks):
        self.ticks = ticks
        self.sleeps = []
        self.exhausted = asyncio.Event()

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        if len(self.sleeps) > self.ticks:
            self.exhausted.set()
            await asyncio.Event().wait()

    def now(self):
        return NOW


def _handle(backend, table, event):
    return next(h for h in backend.handles if h.table == table and h.event == event)


async def _started(backend, alerts, clock=None):
    clock = clock or FakeClock(0)
    watcher = NotificationWatcher(
        backend, alert_sink=alerts.append, sleep=clock.sleep, clock=clock.now,
    )
    return await watcher.start()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_subscribes_three_categories_scoped_to_user(self, fake_backend):
        watcher = await _started(fake_backend, [])
        assert watcher.state == WatcherState.SUBSCRIBED
        assert watcher.user_id == "user-1"
        assert sorted(watcher.categories) == ["opportunity_assigned", "proposal_sent", "task_assigned"]
        filters = {(h.table, h.event, h.filter) for h in fake_backend.handles}
        assert ("opportunities", "UPDATE", "assigned_rep=eq.user-1") in filters
        assert ("tasks", "INSERT", "assigned_to=eq.user-1") in filters
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_identity_failure_stays_uninitialized(self, make_backend):
        backend = make_backend(user_id=None)
        alerts = []
        watcher = await _started(backend, alerts)
        assert watcher.state == WatcherState.UNINITIALIZED
        assert backend.handles == []
        assert alerts == []
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_subscription_failure_does_not_block_others(self, make_backend):
        backend = make_backend(fail_tables={"opportunities"})
        alerts = []
        watcher = await _started(backend, alerts)
        assert watcher.state == WatcherState.SUBSCRIBED
        assert watcher.categories == ["task_assigned"]

        _handle(backend, "tasks", "INSERT").callback(
            ChangeEvent("tasks", "INSERT", new={"title": "Call back"})
        )
        assert [a.title for a in alerts] == ["New Task Assigned"]
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_releases_handles(self, fake_backend):
        watcher = await _started(fake_backend, [])
        await watcher.stop()
        await watcher.stop()
        assert watcher.state == WatcherState.TERMINATED
        assert all(h.stop_calls == 1 for h in fake_backend.handles)
        assert watcher.categories == []

    @pytest.mark.asyncio
    async def test_no_alert_after_teardown(self, fake_backend):
        alerts = []
        watcher = await _started(fake_backend, alerts)
        handler = _handle(fake_backend, "tasks", "INSERT").callback
        await watcher.stop()

        assert handler(ChangeEvent("tasks", "INSERT", new={"title": "Late"})) is None
        assert alerts == []


class TestChangeAlerts:
    @pytest.mark.asyncio
    async def test_reassignment_to_me_raises_one_alert(self, fake_backend):
        alerts = []
        watcher = await _started(fake_backend, alerts)

        watcher.handle_opportunity_update(ChangeEvent(
            "opportunities", "UPDATE",
            old={"assigned_rep": None}, new={"assigned_rep": "user-1", "name": "Acme ASO"},
        ))
        assert len(alerts) == 1
        assert alerts[0].title == "New Opportunity Assigned"
        assert alerts[0].description == "Acme ASO"
        assert alerts[0].severity == "info"
        assert watcher.history[-1].category == "opportunity_assigned"
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_reassignment_between_reps_is_ignored(self, fake_backend):
        alerts = []
        watcher = await _started(fake_backend, alerts)
        watcher.handle_opportunity_update(ChangeEvent(
            "opportunities", "UPDATE",
            old={"assigned_rep": "user-2"}, new={"assigned_rep": "user-1", "name": "X"},
        ))
        assert alerts == []
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_proposal_sent_transition(self, fake_backend):
        alerts = []
        watcher = await _started(fake_backend, alerts)

        watcher.handle_proposal_update(ChangeEvent(
            "opportunities", "UPDATE",
            old={"proposal_sent": False}, new={"proposal_sent": True, "name": "Acme ASO"},
        ))
        watcher.handle_proposal_update(ChangeEvent(
            "opportunities", "UPDATE",
            old={"proposal_sent": True}, new={"proposal_sent": True, "name": "Acme ASO"},
        ))
        assert [(a.title, a.description) for a in alerts] == [("Proposal Sent", "Acme ASO")]
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_async_sink_is_scheduled(self, fake_backend):
        received = []

        async def sink(alert):
            received.append(alert)

        watcher = NotificationWatcher(fake_backend, alert_sink=sink, sleep=FakeClock(0).sleep)
        await watcher.start()
        watcher.handle_task_insert(ChangeEvent("tasks", "INSERT", new={"title": "Demo"}))
        await asyncio.sleep(0)
        assert [a.description for a in received] == ["Demo"]
        await watcher.stop()


class TestOverdueReminder:
    @pytest.mark.asyncio
    async def test_alternating_counts_fire_exactly_once(self, make_backend):
        overdue = [{"status": "to_do", "due_date": PAST}] * 2
        backend = make_backend(task_batches=[[], overdue, []])
        clock = FakeClock(ticks=3)
        alerts = []

        watcher = await _started(backend, alerts, clock)
        await asyncio.wait_for(clock.exhausted.wait(), timeout=1)

        assert len(backend.fetches) == 3
        assert len(alerts) == 1
        assert alerts[0].description == "You have 2 overdue task(s)"
        assert alerts[0].severity == "destructive"
        assert clock.sleeps[0] == 1800
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_zero_overdue_never_alerts(self, make_backend):
        backend = make_backend(task_batches=[[], [], []])
        clock = FakeClock(ticks=3)
        alerts = []

        watcher = await _started(backend, alerts, clock)
        await asyncio.wait_for(clock.exhausted.wait(), timeout=1)

        assert alerts == []
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_completed_and_future_tasks_are_not_counted(self, fake_backend):
        alerts = []
        watcher = await _started(fake_backend, alerts)
        fake_backend.task_batches = [[
            {"status": "completed", "due_date": PAST},
            {"status": "to_do", "due_date": (NOW + timedelta(days=1)).isoformat()},
            {"status": "in_progress", "due_date": PAST},
        ]]

        assert await watcher.check_overdue_tasks() == 1
        table, filters = fake_backend.fetches[-1]
        assert table == "tasks"
        assert filters["assigned_to"] == "user-1"
        assert filters["status__neq"] == "completed"
        await watcher.stop()

    @pytest.mark.asyncio
    async def test_timer_cancelled_on_stop(self, fake_backend):
        watcher = await _started(fake_backend, [])
        timer = watcher._timer
        assert timer.active
        await watcher.stop()
        assert not timer.active


class TestTeardownDuringStart:
    @pytest.mark.asyncio
    async def test_stop_while_identifying_never_subscribes(self, fake_backend):
        gate = asyncio.Event()

        async def slow_identity():
            await gate.wait()
            return "user-1"

        fake_backend.current_user_id = slow_identity
        watcher = NotificationWatcher(fake_backend, alert_sink=[].append, sleep=FakeClock(0).sleep)
        starting = asyncio.ensure_future(watcher.start())
        await asyncio.sleep(0)
        assert watcher.state == WatcherState.IDENTIFYING

        await watcher.stop()
        gate.set()
        await starting

        assert watcher.state == WatcherState.TERMINATED
        assert fake_backend.handles == []
        assert watcher._timer is None

    @pytest.mark.asyncio
    async def test_stop_between_subscriptions_releases_live_handles(self, fake_backend):
        subscribe = fake_backend.subscribe
        watcher = NotificationWatcher(fake_backend, alert_sink=[].append, sleep=FakeClock(0).sleep)

        async def subscribe_then_stop(*args):
            handle = await subscribe(*args)
            if len(fake_backend.handles) == 1:
                await watcher.stop()
            return handle

        fake_backend.subscribe = subscribe_then_stop
        await watcher.start()

        assert watcher.state == WatcherState.TERMINATED
        assert len(fake_backend.handles) == 1
        assert fake_backend.handles[0].stop_calls == 1
        assert watcher.categories == []
        assert watcher._timer is None

    @pytest.mark.asyncio
    async def test_events_on_live_handle_during_setup_are_delivered(self, fake_backend):
        subscribe = fake_backend.subscribe
        alerts = []

        async def subscribe_with_early_event(table, event, row_filter, callback):
            handle = await subscribe(table, event, row_filter, callback)
            if len(fake_backend.handles) == 2:
                fake_backend.handles[0].callback(ChangeEvent(
                    "opportunities", "UPDATE",
                    old={}, new={"assigned_rep": "user-1", "name": "Early Co"},
                ))
            return handle

        fake_backend.subscribe = subscribe_with_early_event
        watcher = await _started(fake_backend, alerts)

        assert [(a.title, a.description) for a in alerts] == [
            ("New Opportunity Assigned", "Early Co"),
        ]
        await watcher.stop()

    def test_explicit_zero_interval_is_kept(self, fake_backend):
        watcher = NotificationWatcher(fake_backend, alert_sink=[].append, reminder_interval=0)
        assert watcher.reminder_interval == 0
