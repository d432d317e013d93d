"""Shared fixtures: environment defaults and an in-memory realtime backend."""

import os

os.environ.setdefault("LOG_TO_FILE", "false")

import pytest

from scripts.lib.errors import IdentityError, SubscriptionError


class FakeHandle:
    def __init__(self, table, event, row_filter, callback):
        self.table = table
        self.event = event
        self.filter = row_filter
        self.callback = callback
        self.stop_calls = 0

    async def stop(self):
        self.stop_calls += 1


class FakeBackend:
    """Records subscriptions and serves queued task fetches."""

    def __init__(self, user_id="user-1", fail_tables=(), task_batches=None):
        self.user_id = user_id
        self.fail_tables = set(fail_tables)
        self.task_batches = list(task_batches or [])
        self.handles = []
        self.fetches = []
        self.closed = False

    async def current_user_id(self):
        if self.user_id is None:
            raise IdentityError()
        return self.user_id

    async def subscribe(self, table, event, row_filter, callback):
        if table in self.fail_tables:
            raise SubscriptionError(table, event, RuntimeError("channel error"))
        handle = FakeHandle(table, event, row_filter, callback)
        self.handles.append(handle)
        return handle

    async def fetch(self, table, filters=None):
        self.fetches.append((table, filters))
        if self.task_batches:
            return self.task_batches.pop(0)
        return []

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def make_backend():
    return FakeBackend
