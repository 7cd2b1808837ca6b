"""
Pytest configuration and fixtures for Vehicle Live Tracker tests.
"""
import os
import sys

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

# Set test environment before importing app
os.environ["REDIS_URL"] = "redis://localhost:6379"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["DEBUG"] = "true"
os.environ["RATE_LIMIT_AUTH"] = "1000"
os.environ["RATE_LIMIT_PUBLIC"] = "1000"

from tracker.services.auth import User
from tracker.store_client import StoreWriteError, ancestors, normalize_path


class FakeSubscription:
    def __init__(self, store, path, callback, limit_to_last=None):
        self.store = store
        self.path = normalize_path(path)
        self.callback = callback
        self.limit_to_last = limit_to_last
        self.active = True

    def cancel(self):
        self.active = False


class FakeStore:
    """In-memory stand-in for tracker.store_client."""

    def __init__(self):
        self.records = {}
        self.logs = {}
        self.writes = []
        self.subscriptions = []
        self.fail_writes = False
        self.fail_paths = set()

    async def get(self, path):
        path = normalize_path(path)
        if path in self.records:
            return self.records[path]
        for parent in ancestors(path):
            if parent not in self.records:
                continue
            value = self.records[parent]
            for part in path[len(parent) + 1:].split("/"):
                if not isinstance(value, dict):
                    return None
                value = value.get(part)
            return value
        return None

    async def set(self, path, value):
        path = normalize_path(path)
        if self.fail_writes or path in self.fail_paths:
            raise StoreWriteError(path, "PERMISSION_DENIED: write rejected")
        self.writes.append((path, value))
        self.records[path] = value

    async def push(self, path, value):
        path = normalize_path(path)
        self.logs.setdefault(path, []).append(value)
        return str(len(self.logs[path]))

    async def last(self, path, limit):
        return self.logs.get(normalize_path(path), [])[-limit:]

    async def query_range(self, path, order_by, start_at):
        rows = [
            v for v in self.logs.get(normalize_path(path), [])
            if isinstance(v, dict) and isinstance(v.get(order_by), (int, float)) and v[order_by] >= start_at
        ]
        return sorted(rows, key=lambda v: v[order_by])

    def subscribe(self, path, callback, limit_to_last=None):
        subscription = FakeSubscription(self, path, callback, limit_to_last)
        self.subscriptions.append(subscription)
        return subscription

    def deliver(self, path, value):
        """Push ``value`` to every active subscriber of ``path``."""
        path = normalize_path(path)
        for subscription in self.subscriptions:
            if subscription.active and subscription.path == path:
                subscription.callback(value)


class FixedRandom:
    """rng whose random() always returns the same value."""

    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


async def no_sleep(seconds):
    return None


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def user():
    return User(uid="uid-123", email="driver@example.com")


@pytest.fixture
def make_session(fake_store, user):
    """Factory for a DashboardSession wired to the fake store."""
    from tracker.services.session import DashboardSession

    def _make(rng_value=0.99, **kwargs):
        kwargs.setdefault("user", user)
        kwargs.setdefault("store", fake_store)
        kwargs.setdefault("rng", FixedRandom(rng_value))
        kwargs.setdefault("sleep", no_sleep)
        return DashboardSession(**kwargs)

    return _make


@pytest.fixture
def session(make_session):
    """Session with both map containers on the page and alerts allowed."""
    s = make_session()
    s.page.update(containers=["map", "map-full"], width_px=1280, alerts_permitted=True)
    s.registry.ensure_all()
    return s


def drain(queue):
    """All patches currently queued for a listener."""
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages
