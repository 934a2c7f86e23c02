"""Per-order dispatch guard and mutation lock.

``DispatchLock.guard(order_id)`` is non-blocking: a second dispatch for the
same order fails fast with ``DispatchInProgress`` instead of queueing.
``OrderMutex.hold(order_id)`` is blocking and serializes every Order and
Delivery mutation for one order (dispatch persistence, status updates,
cancellation), so concurrent writers never interleave.

The Redis guard uses SET NX EX with a random token, and only the holder of
that token may release the key.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Iterator, Protocol

from orderrelay.exceptions import DispatchInProgress

logger = logging.getLogger(__name__)

_KEY_PREFIX = "relay:dispatch"

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class DispatchLock(Protocol):
    def guard(self, order_id: str) -> Iterator[None]: ...

    def is_held(self, order_id: str) -> bool: ...


class MemoryDispatchLock:
    """In-process guard for a single worker process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: set[str] = set()

    @contextmanager
    def guard(self, order_id: str) -> Iterator[None]:
        with self._lock:
            if order_id in self._held:
                raise DispatchInProgress(order_id)
            self._held.add(order_id)
        try:
            yield
        finally:
            with self._lock:
                self._held.discard(order_id)

    def is_held(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._held


class RedisDispatchLock:
    """Guard shared by every worker process pointing at the same Redis."""

    def __init__(self, client, ttl_seconds: int = 120) -> None:
        self._redis = client
        self._ttl = ttl_seconds
        self._release = client.register_script(_RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 120) -> RedisDispatchLock:
        import redis as redis_lib

        return cls(redis_lib.from_url(url, decode_responses=True), ttl_seconds)

    @staticmethod
    def _key(order_id: str) -> str:
        return f"{_KEY_PREFIX}:{order_id}"

    @contextmanager
    def guard(self, order_id: str) -> Iterator[None]:
        key = self._key(order_id)
        token = uuid.uuid4().hex
        if not self._redis.set(key, token, nx=True, ex=self._ttl):
            raise DispatchInProgress(order_id)
        try:
            yield
        finally:
            try:
                self._release(keys=[key], args=[token])
            except Exception:
                # The key still expires after the TTL
                logger.warning("Failed to release dispatch guard for %s", order_id, exc_info=True)

    def is_held(self, order_id: str) -> bool:
        return bool(self._redis.exists(self._key(order_id)))


class OrderMutex:
    """Blocking per-order lock; entries are dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = {}

    @contextmanager
    def hold(self, order_id: str) -> Iterator[None]:
        with self._lock:
            lock = self._locks.setdefault(order_id, threading.Lock())
            self._refs[order_id] = self._refs.get(order_id, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._lock:
                self._refs[order_id] -= 1
                if self._refs[order_id] == 0:
                    del self._refs[order_id]
                    del self._locks[order_id]


def build_dispatch_lock(backend: str, redis_url: str, ttl_seconds: int) -> DispatchLock:
    if backend == "redis":
        return RedisDispatchLock.from_url(redis_url, ttl_seconds)
    if backend != "memory":
        raise ValueError(f"Unknown lock backend: {backend!r}")
    return MemoryDispatchLock()
