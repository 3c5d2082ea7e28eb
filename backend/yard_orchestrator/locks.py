"""Keyed, leased, fail-fast locks that keep two jobs off the same resource.

Two stores share one interface: an in-process store for single-process
deployments and tests, and a Redis store for rq workers spread over several
machines. Every lease carries an owner token and only the owner can release
or refresh it. Leases expire on their own so a killed worker cannot wedge a key.
"""

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Protocol, Tuple

import redis
from django.conf import settings

from .errors import LockContention

logger = logging.getLogger(__name__)

KEY_PREFIX = "shipyard:lock:"


@dataclass
class Guard:
    key: str
    token: str
    lease_seconds: int


class LockStore(Protocol):
    def acquire(self, key: str, lease_seconds: int, token: Optional[str] = None) -> Optional[str]: ...

    def adopt(self, key: str, token: str, lease_seconds: int) -> bool: ...

    def release(self, key: str, token: str) -> bool: ...

    def is_held(self, key: str) -> bool: ...


class MemoryLockStore:
    def __init__(self) -> None:
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._mutex = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        entry = self._leases.get(key)
        if entry and entry[1] <= now:
            del self._leases[key]
            return None
        return entry

    def acquire(self, key: str, lease_seconds: int, token: Optional[str] = None) -> Optional[str]:
        token = token or secrets.token_hex(16)
        now = time.monotonic()
        with self._mutex:
            if self._live(key, now):
                return None
            self._leases[key] = (token, now + lease_seconds)
            return token

    def adopt(self, key: str, token: str, lease_seconds: int) -> bool:
        now = time.monotonic()
        with self._mutex:
            entry = self._live(key, now)
            if entry and entry[0] != token:
                return False
            self._leases[key] = (token, now + lease_seconds)
            return True

    def release(self, key: str, token: str) -> bool:
        with self._mutex:
            entry = self._leases.get(key)
            if not entry or entry[0] != token:
                return False
            del self._leases[key]
            return True

    def is_held(self, key: str) -> bool:
        with self._mutex:
            return self._live(key, time.monotonic()) is not None

    def clear(self) -> None:
        with self._mutex:
            self._leases.clear()


class RedisLockStore:
    """SET NX PX leases with Lua compare-and-act for refresh and release."""

    _ADOPT_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if current and current ~= ARGV[1] then
        return 0
    end
    redis.call('SET', KEYS[1], ARGV[1], 'PX', tonumber(ARGV[2]))
    return 1
    """

    _RELEASE_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, redis_url: str, client=None) -> None:
        self._redis_url = redis_url
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def acquire(self, key: str, lease_seconds: int, token: Optional[str] = None) -> Optional[str]:
        token = token or secrets.token_hex(16)
        ok = self._get_client().set(KEY_PREFIX + key, token, nx=True, px=int(lease_seconds * 1000))
        return token if ok else None

    def adopt(self, key: str, token: str, lease_seconds: int) -> bool:
        result = self._get_client().eval(self._ADOPT_SCRIPT, 1, KEY_PREFIX + key, token, int(lease_seconds * 1000))
        return bool(result)

    def release(self, key: str, token: str) -> bool:
        return bool(self._get_client().eval(self._RELEASE_SCRIPT, 1, KEY_PREFIX + key, token))

    def is_held(self, key: str) -> bool:
        return bool(self._get_client().exists(KEY_PREFIX + key))


_memory_store = MemoryLockStore()
_redis_stores: Dict[str, RedisLockStore] = {}


def get_lock_store() -> LockStore:
    backend = getattr(settings, "SHIPYARD_COORDINATION_BACKEND", "redis")
    if backend == "memory":
        return _memory_store
    if backend == "redis":
        redis_url = settings.SHIPYARD_JOBS_REDIS_URL
        if redis_url not in _redis_stores:
            _redis_stores[redis_url] = RedisLockStore(redis_url)
        return _redis_stores[redis_url]
    raise ValueError(f"Unknown coordination backend: {backend}. Use 'memory' or 'redis'")


def acquire(key: str, lease_seconds: int) -> Guard:
    token = get_lock_store().acquire(key, lease_seconds)
    if token is None:
        logger.info("lock contention on %s", key)
        raise LockContention(key)
    logger.debug("acquired %s for %ss", key, lease_seconds)
    return Guard(key=key, token=token, lease_seconds=lease_seconds)


def release(guard: Guard) -> bool:
    released = get_lock_store().release(guard.key, guard.token)
    if not released:
        logger.warning("lease %s was no longer held by this owner at release", guard.key)
    return released


@contextmanager
def hold(key: str, lease_seconds: int, token: Optional[str] = None) -> Iterator[Guard]:
    """Hold ``key`` for the duration of the block.

    With ``token`` the caller takes over a lease acquired earlier (by the enqueue
    call that dispatched the job) instead of acquiring a new one.
    """
    if token:
        if not get_lock_store().adopt(key, token, lease_seconds):
            raise LockContention(key)
        guard = Guard(key=key, token=token, lease_seconds=lease_seconds)
    else:
        guard = acquire(key, lease_seconds)
    try:
        yield guard
    finally:
        release(guard)


def is_held(key: str) -> bool:
    return get_lock_store().is_held(key)
