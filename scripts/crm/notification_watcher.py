"""
Sales CRM Hub — Notification Watcher
======================================

Per-user realtime alerts for the CRM.

Once the current user is resolved, the watcher holds one realtime handle per
alert category plus an interval timer:

  opportunity_assigned  - opportunities UPDATE, assigned_rep empty -> me
  proposal_sent         - opportunities UPDATE, proposal_sent false -> true
  task_assigned         - tasks INSERT assigned to me
  overdue_tasks         - every 30 minutes, one aggregate alert while I have
                          overdue tasks

Lifecycle:
  UNINITIALIZED -> IDENTIFYING -> SUBSCRIBED -> UNSUBSCRIBING -> TERMINATED

If the user cannot be resolved the watcher falls back to UNINITIALIZED and
never subscribes. A category that fails to subscribe is logged and skipped.
``stop()`` is idempotent; once it begins, no further alert is raised.

Usage:
    watcher = NotificationWatcher(backend, alert_sink=send_alert)
    await watcher.start()
    ...
    await watcher.stop()
"""
from __future__ import annotations

import asyncio
import inspect
import os
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from models.crm_models import Alert, NotificationEvent
from scripts.crm.metrics import is_overdue
from scripts.lib.errors import SubscriptionError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import ChangeEvent

logger = setup_logger("notification_watcher")

OVERDUE_REMINDER_INTERVAL = float(os.getenv("OVERDUE_REMINDER_INTERVAL_SECONDS", "1800"))

AlertSink = Callable[[Alert], Any]


class WatcherState(str, Enum):
    UNINITIALIZED = "uninitialized"
    IDENTIFYING = "identifying"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBING = "unsubscribing"
    TERMINATED = "terminated"


class IntervalTimer:
    """Runs ``callback`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[Any]],
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "interval",
    ):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "IntervalTimer":
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    async def _run(self):
        while True:
            await self._sleep(self.interval)
            try:
                await self.callback()
            except Exception as e:
                logger.error("Timer '%s' tick failed: %s", self.name, e)

    async def stop(self):
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class NotificationWatcher:
    """Subscribes to one user's CRM change-events and raises alerts."""

    def __init__(
        self,
        backend,
        alert_sink: AlertSink,
        reminder_interval: float = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = None,
    ):
        self.backend = backend
        self.alert_sink = alert_sink
        self.reminder_interval = (
            OVERDUE_REMINDER_INTERVAL if reminder_interval is None else reminder_interval
        )
        self.state = WatcherState.UNINITIALIZED
        self.user_id: Optional[str] = None
        self.history: deque = deque(maxlen=50)
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handles: Dict[str, Any] = {}
        self._timer: Optional[IntervalTimer] = None
        self._stopping = False
        self._starting = False
        self._pending: set = set()

    # ─── Lifecycle ─────────────────────────────────────────

    @property
    def categories(self) -> list:
        """Categories with a live subscription."""
        return list(self._handles)

    def _subscriptions(self):
        uid = self.user_id
        return [
            ("opportunity_assigned", "opportunities", "UPDATE",
             f"assigned_rep=eq.{uid}", self.handle_opportunity_update),
            ("proposal_sent", "opportunities", "UPDATE",
             f"assigned_rep=eq.{uid}", self.handle_proposal_update),
            ("task_assigned", "tasks", "INSERT",
             f"assigned_to=eq.{uid}", self.handle_task_insert),
        ]

    async def start(self) -> "NotificationWatcher":
        """Resolve the current user, then subscribe and arm the reminder."""
        if self.state != WatcherState.UNINITIALIZED or self._stopping:
            return self

        self._starting = True
        try:
            await self._start()
        finally:
            self._starting = False
        return self

    async def _start(self):
        self.state = WatcherState.IDENTIFYING
        try:
            user_id = await self.backend.current_user_id()
        except Exception as e:
            logger.warning("No authenticated user, notifications disabled: %s", e)
            user_id = None

        if not user_id or self._stopping:
            self.state = (
                WatcherState.TERMINATED if self._stopping else WatcherState.UNINITIALIZED
            )
            return

        self.user_id = user_id
        # handles go live one by one; accept their events from the first one on
        self.state = WatcherState.SUBSCRIBED
        for category, table, event, row_filter, handler in self._subscriptions():
            try:
                self._handles[category] = await self.backend.subscribe(
                    table, event, row_filter, handler,
                )
            except Exception as e:
                err = e if isinstance(e, SubscriptionError) else SubscriptionError(table, event, e)
                logger.error("Notification category '%s' unavailable: %s", category, err)
            if self._stopping:
                await self._release()
                return

        self._timer = IntervalTimer(
            self.reminder_interval, self.check_overdue_tasks,
            sleep=self._sleep, name="overdue_tasks",
        ).start()

        logger.info(
            "Watching notifications for user %s (%d/3 subscriptions)",
            user_id, len(self._handles),
        )

    async def stop(self):
        """Cancel the reminder and close every subscription. Safe to repeat."""
        if self._stopping:
            return
        self._stopping = True
        if self._starting:
            # start() finishes the teardown at its next await
            return
        await self._release()

    async def _release(self):
        self.state = WatcherState.UNSUBSCRIBING
        if self._timer is not None:
            await self._timer.stop()
            self._timer = None

        handles, self._handles = self._handles, {}
        for category, handle in handles.items():
            try:
                await handle.stop()
            except Exception as e:
                logger.warning("Failed to close '%s' subscription: %s", category, e)

        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

        self.state = WatcherState.TERMINATED
        logger.info("Notification watcher stopped for user %s", self.user_id)

    # ─── Alerts ────────────────────────────────────────────

    def _accepting(self) -> bool:
        return self.state == WatcherState.SUBSCRIBED and not self._stopping

    def _raise(self, category: str, payload: Dict, alert: Alert) -> Optional[NotificationEvent]:
        if not self._accepting():
            return None

        event = NotificationEvent(
            category=category, payload=payload, observed_at=self._clock(), alert=alert,
        )
        self.history.append(event)
        logger.debug("Alert [%s]: %s", category, alert.title)

        result = self.alert_sink(alert)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return event

    def handle_opportunity_update(self, change: ChangeEvent) -> Optional[NotificationEvent]:
        previous = change.old.get("assigned_rep")
        current = change.new.get("assigned_rep")
        if previous or current != self.user_id:
            return None
        name = change.new.get("name") or "Untitled opportunity"
        return self._raise(
            "opportunity_assigned", change.new,
            Alert(title="New Opportunity Assigned", description=name),
        )

    def handle_proposal_update(self, change: ChangeEvent) -> Optional[NotificationEvent]:
        if change.old.get("proposal_sent") or change.new.get("proposal_sent") is not True:
            return None
        name = change.new.get("name") or "Untitled opportunity"
        return self._raise(
            "proposal_sent", change.new,
            Alert(title="Proposal Sent", description=name),
        )

    def handle_task_insert(self, change: ChangeEvent) -> Optional[NotificationEvent]:
        title = change.new.get("title") or "Untitled task"
        return self._raise(
            "task_assigned", change.new,
            Alert(title="New Task Assigned", description=title),
        )

    async def check_overdue_tasks(self) -> int:
        """Count the user's overdue tasks and alert once if there are any."""
        if not self._accepting():
            return 0

        now = self._clock()
        tasks = await self.backend.fetch(
            "tasks",
            {
                "assigned_to": self.user_id,
                "status__neq": "completed",
                "due_date__lt": now.isoformat(),
            },
        )
        count = sum(1 for t in tasks if is_overdue(t, now))
        if count > 0:
            self._raise(
                "overdue_tasks", {"count": count},
                Alert(
                    title="Overdue Tasks",
                    description=f"You have {count} overdue task(s)",
                    severity="destructive",
                ),
            )
        return count
