"""
Real-time store client: path-addressable records, append logs and push
subscriptions on top of Redis.

Paths look like ``/devices/vehicle_001/location``. Records are stored as JSON
under one key per path; a write to a path nested inside an existing record
updates that record in place, so readers of either path see the same tree.
Append logs (events, notifications, history) are Redis lists. Every write
publishes a change notice on the written path and on each ancestor path, and
subscribers re-read their path when notified.
"""
import asyncio
import inspect
import json
import secrets
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from tracker.config import get_settings

settings = get_settings()
logger = structlog.get_logger("store_client")

# Global Redis connection pool
_redis_pool: Optional[redis.Redis] = None

StoreCallback = Callable[[Any], Union[None, Awaitable[None]]]


class StoreWriteError(Exception):
    """A write to the store was not accepted."""

    def __init__(self, path: str, message: str):
        super().__init__(message)
        self.path = path
        self.message = message


async def get_redis() -> redis.Redis:
    """Get or create Redis connection."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.close()
        _redis_pool = None


# ============ Paths ============

def normalize_path(path: str) -> str:
    """Collapse slashes: '/devices//x/' -> 'devices/x'."""
    return "/".join(part for part in path.split("/") if part)


def ancestors(path: str) -> list[str]:
    """Ancestor paths, nearest first: 'a/b/c' -> ['a/b', 'a']."""
    parts = normalize_path(path).split("/")
    return ["/".join(parts[:i]) for i in range(len(parts) - 1, 0, -1)]


def device_path(device_id: str, *parts: str) -> str:
    """Path under a device root, e.g. device_path('v1', 'settings', 'speedLimit')."""
    return "/".join(["devices", device_id, *parts])


def _record_key(path: str) -> str:
    return f"store:{normalize_path(path)}"


def _log_key(path: str) -> str:
    return f"store-log:{normalize_path(path)}"


def _channel(path: str) -> str:
    return f"store-changes:{normalize_path(path)}"


# ============ Records ============

async def get(path: str) -> Any:
    """
    Read the current value at a path, or None.

    Falls back to the nearest ancestor record and descends into it, so
    ``/devices/D/status/systemArmed`` resolves inside the status record.
    """
    r = await get_redis()
    data = await r.get(_record_key(path))
    if data is not None:
        return json.loads(data)

    path = normalize_path(path)
    for parent in ancestors(path):
        data = await r.get(_record_key(parent))
        if data is None:
            continue
        value = json.loads(data)
        for part in path[len(parent) + 1:].split("/"):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value
    return None


async def _subtree_keys(r: redis.Redis, path: str) -> list[str]:
    """Record keys stored below a path."""
    keys = []
    async for key in r.scan_iter(match=f"{_record_key(path)}/*"):
        keys.append(key)
    return keys


async def set(path: str, value: Any) -> None:
    """
    Overwrite the value at a path (its whole subtree) and notify subscribers.

    A value lives in exactly one key: the outermost record that holds it.
    Keys left over for the path or anything below it are removed so later
    reads cannot see them.
    """
    path = normalize_path(path)
    try:
        r = await get_redis()
        stale = await _subtree_keys(r, path)
        for parent in ancestors(path):
            data = await r.get(_record_key(parent))
            if data is None:
                continue
            record = json.loads(data)
            if not isinstance(record, dict):
                record = {}
            node = record
            parts = path[len(parent) + 1:].split("/")
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value
            await r.set(_record_key(parent), json.dumps(record))
            stale.append(_record_key(path))
            break
        else:
            await r.set(_record_key(path), json.dumps(value))
        if stale:
            await r.delete(*stale)
        await _notify(r, path)
    except RedisError as e:
        logger.error("Store write failed", path=path, error=str(e))
        raise StoreWriteError(path, str(e)) from e


# ============ Append logs ============

def _push_id() -> str:
    """Time-ordered child id: epoch ms plus a random suffix."""
    return f"{int(time.time() * 1000):013d}-{secrets.token_hex(4)}"


async def push(path: str, value: Any) -> str:
    """Append a value to the log at a path. Returns the new child id."""
    path = normalize_path(path)
    child_id = _push_id()
    try:
        r = await get_redis()
        await r.rpush(_log_key(path), json.dumps({"id": child_id, "value": value}))
        await _notify(r, path)
    except RedisError as e:
        logger.error("Store push failed", path=path, error=str(e))
        raise StoreWriteError(path, str(e)) from e
    return child_id


async def last(path: str, limit: int) -> list[Any]:
    """Last ``limit`` log entries in insertion order (newest last)."""
    r = await get_redis()
    entries = await r.lrange(_log_key(path), -limit, -1)
    return [json.loads(entry)["value"] for entry in entries]


async def query_range(path: str, order_by: str, start_at: float) -> list[Any]:
    """
    Log entries whose ``order_by`` child is >= ``start_at``, ordered by it.
    Entries without a numeric ``order_by`` child are skipped.
    """
    r = await get_redis()
    entries = await r.lrange(_log_key(path), 0, -1)
    matched = []
    for entry in entries:
        value = json.loads(entry)["value"]
        if not isinstance(value, dict):
            continue
        key = value.get(order_by)
        if isinstance(key, (int, float)) and key >= start_at:
            matched.append(value)
    matched.sort(key=lambda v: v[order_by])
    return matched


# ============ Pub/Sub ============

async def _notify(r: redis.Redis, path: str) -> None:
    """Publish a change notice on the path and each ancestor."""
    for target in [path, *ancestors(path)]:
        await r.publish(_channel(target), json.dumps({"path": path}))


@asynccontextmanager
async def subscribe_to_path(path: str) -> AsyncIterator[PubSub]:
    """Subscribe to change notices for a path."""
    r = await get_redis()
    pubsub = r.pubsub()
    channel = _channel(path)
    await pubsub.subscribe(channel)
    try:
        yield pubsub
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.close()


class Subscription:
    """
    Push subscription for one path.

    The callback receives the full current value on start and again after
    every change notice: a record (or None) for plain paths, or a list of the
    last ``limit_to_last`` entries for append logs. Deliveries for one
    subscription are sequential, in the order the store announced them.
    """

    def __init__(self, path: str, callback: StoreCallback, limit_to_last: Optional[int] = None):
        self.path = normalize_path(path)
        self.callback = callback
        self.limit_to_last = limit_to_last
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def read(self) -> Any:
        if self.limit_to_last is not None:
            return await last(self.path, self.limit_to_last)
        return await get(self.path)

    async def deliver(self) -> None:
        """Read the current value and hand it to the callback."""
        try:
            value = await self.read()
        except (ValueError, KeyError, TypeError):
            # Undecodable record: skip this delivery, keep listening
            logger.exception("Discarding unreadable store value", path=self.path)
            return
        try:
            result = self.callback(value)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # One bad payload must not end the subscription
            logger.exception("Subscriber callback failed", path=self.path)

    async def run(self) -> None:
        while True:
            try:
                async with subscribe_to_path(self.path) as pubsub:
                    await self.deliver()
                    while True:
                        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                        if message and message["type"] == "message":
                            await self.deliver()
            except RedisError as e:
                # Transient store outage: resubscribe and resync
                logger.warning("Subscription interrupted", path=self.path, error=str(e))
                await asyncio.sleep(1)

    def start(self) -> "Subscription":
        if not self.active:
            self._task = asyncio.create_task(self.run())
        return self

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


def subscribe(path: str, callback: StoreCallback, limit_to_last: Optional[int] = None) -> Subscription:
    """Start a push subscription for a path (session lifetime)."""
    return Subscription(path, callback, limit_to_last=limit_to_last).start()
