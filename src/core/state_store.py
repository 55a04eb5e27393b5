"""
Shared Security State Store.

Key -> counter / value storage with TTL semantics, shared by the rate
limiter and the CSRF token manager:
- Atomic fixed-window counters (increment starts a new window on expiry)
- Set-if-absent values with TTL
- In-memory backend for a single process
- Redis backend for multiple processes

Backends are interchangeable; call sites depend only on StateStore.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class CounterState:
    """Snapshot of a fixed-window counter."""

    count: int
    reset_at: float

    def seconds_until_reset(self, now: float) -> float:
        return max(0.0, self.reset_at - now)


class StateStore(ABC):
    """Abstract counter/TTL store interface."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: float) -> CounterState:
        """
        Atomically increment a counter.

        Creates the counter with a window of `window_seconds` when it is
        absent or its window has elapsed.
        """
        pass

    @abstractmethod
    async def get_counter(self, key: str) -> CounterState | None:
        """Current counter state, or None if absent/expired."""
        pass

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Get a stored value."""
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> str:
        """Store value unless one exists. Returns whichever value is stored."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a counter or value."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


@dataclass
class _Entry:
    value: int | str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class MemoryStateStore(StateStore):
    """
    Process-local store.

    All mutations happen under one asyncio lock, so increment-and-read is a
    single atomic step for concurrent requests in the same event loop.
    Expired entries are dropped lazily and swept every `sweep_interval` writes.
    """

    def __init__(self, clock: Clock = time.time, sweep_interval: int = 1000):
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval
        self._writes = 0

    def _live(self, key: str, now: float) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._entries[key]
            return None
        return entry

    def _maybe_sweep(self, now: float) -> None:
        self._writes += 1
        if self._writes < self._sweep_interval:
            return
        self._writes = 0
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("State store sweep", expired=len(expired))

    async def increment(self, key: str, window_seconds: float) -> CounterState:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None or not isinstance(entry.value, int):
                entry = _Entry(value=0, expires_at=now + window_seconds)
                self._entries[key] = entry
            entry.value += 1
            self._maybe_sweep(now)
            return CounterState(count=entry.value, reset_at=entry.expires_at)

    async def get_counter(self, key: str) -> CounterState | None:
        async with self._lock:
            entry = self._live(key, self._clock())
            if entry is None or not isinstance(entry.value, int):
                return None
            return CounterState(count=entry.value, reset_at=entry.expires_at)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live(key, self._clock())
            if entry is None:
                return None
            return str(entry.value)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> str:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is not None:
                return str(entry.value)
            self._entries[key] = _Entry(value=value, expires_at=now + ttl_seconds)
            self._maybe_sweep(now)
            return value

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._entries)


class RedisStateStore(StateStore):
    """
    Redis-backed store shared by every API process.

    Counters use SET NX PX + INCR + PTTL inside one MULTI/EXEC so the window
    is created and incremented atomically on the server.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "chapterguard:",
        max_connections: int = 20,
        client: "redis.Redis | None" = None,
        clock: Clock = time.time,
    ):
        self._url = url
        self._prefix = prefix
        self._clock = clock
        self._client = client or redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def increment(self, key: str, window_seconds: float) -> CounterState:
        redis_key = self._make_key(key)
        window_ms = max(1, int(window_seconds * 1000))

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(redis_key, 0, px=window_ms, nx=True)
            pipe.incr(redis_key)
            pipe.pttl(redis_key)
            _, count, ttl_ms = await pipe.execute()

        if ttl_ms is None or ttl_ms < 0:
            # Key lost its expiry (e.g. written by another client); restore the window
            await self._client.pexpire(redis_key, window_ms)
            ttl_ms = window_ms

        return CounterState(count=int(count), reset_at=self._clock() + ttl_ms / 1000)

    async def get_counter(self, key: str) -> CounterState | None:
        redis_key = self._make_key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.get(redis_key)
            pipe.pttl(redis_key)
            value, ttl_ms = await pipe.execute()

        if value is None:
            return None
        try:
            count = int(value)
        except ValueError:
            return None
        remaining = max(0, ttl_ms or 0) / 1000
        return CounterState(count=count, reset_at=self._clock() + remaining)

    async def get(self, key: str) -> str | None:
        return await self._client.get(self._make_key(key))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> str:
        redis_key = self._make_key(key)
        ttl_ms = max(1, int(ttl_seconds * 1000))

        stored = await self._client.set(redis_key, value, px=ttl_ms, nx=True)
        if stored:
            return value

        existing = await self._client.get(redis_key)
        if existing is None:
            # Expired between SET NX and GET
            await self._client.set(redis_key, value, px=ttl_ms, nx=True)
            existing = await self._client.get(redis_key)
        return existing if existing is not None else value

    async def delete(self, key: str) -> bool:
        return await self._client.delete(self._make_key(key)) > 0

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis state store closed", url=self._url[:30])


def create_state_store(
    backend: str = "memory",
    redis_url: str | None = None,
    prefix: str = "chapterguard:",
    clock: Clock = time.time,
) -> StateStore:
    """Build the configured state store backend."""
    if backend == "redis":
        if not redis_url:
            raise ValueError("redis_url is required for the redis state store")
        logger.info("Using Redis state store", url=redis_url[:30])
        return RedisStateStore(url=redis_url, prefix=prefix, clock=clock)

    logger.info("Using in-memory state store")
    return MemoryStateStore(clock=clock)
