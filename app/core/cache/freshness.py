# app/core/cache/freshness.py
"""
Cache-aside store with TTL and per-key single-flight.

Per key:  empty -> fetching -> fresh -> stale (still servable) -> fetching ...

- A fresh entry (``age < ttl``) is returned without calling the fetch function.
- Concurrent callers for the same key await one shared fetch.
- A failed fetch leaves the previous entry in place and raises ``CacheFetchError``.
- ``invalidate(key)`` drops the entry and detaches any in-flight fetch, so
  the next ``get`` always fetches again and a detached result is never stored.

One instance per owning scope (the FastAPI app keeps its caches on
``app.state``); instances share nothing.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from app.core.dispatch.errors import CacheFetchError
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter, timed

logger = get_logger(__name__)

T = TypeVar("T")
FetchFn = Callable[[], Awaitable[Any]]

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    timestamp: float  # clock value when the fetch started

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_fresh(self, now: float, ttl: float) -> bool:
        return self.age(now) < ttl


class FreshnessCache:
    def __init__(
        self,
        name: str = "default",
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.default_ttl = default_ttl
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._generations: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(
        self,
        key: str,
        fetch_fn: FetchFn,
        ttl: float | None = None,
        force_refresh: bool = False,
    ) -> Any:
        """
        Return the value for ``key``, fetching it when missing, stale or forced.

        Raises:
            CacheFetchError: the fetch (own or joined) failed
        """
        ttl = self.default_ttl if ttl is None else ttl
        entry = self._entries.get(key)
        if not force_refresh and entry is not None and entry.is_fresh(self.clock(), ttl):
            inc_counter("cache_reads", cache=self.name, result="hit")
            return entry.data

        inflight = self._inflight.get(key)
        if inflight is not None:
            inc_counter("cache_reads", cache=self.name, result="joined")
            return await asyncio.shield(inflight)

        inc_counter("cache_reads", cache=self.name, result="miss")
        future = asyncio.ensure_future(self._fetch(key, fetch_fn))
        self._inflight[key] = future
        return await asyncio.shield(future)

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Current entry, fresh or stale, without fetching."""
        return self._entries.get(key)

    def is_stale(self, key: str, ttl: float | None = None) -> bool:
        """``age >= ttl``. A missing entry counts as stale."""
        ttl = self.default_ttl if ttl is None else ttl
        entry = self._entries.get(key)
        return entry is None or not entry.is_fresh(self.clock(), ttl)

    def is_loading(self, key: str) -> bool:
        return key in self._inflight

    def keys(self) -> list[str]:
        return list(self._entries)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, key: str) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1
        self._entries.pop(key, None)
        self._inflight.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Invalidate every key starting with ``prefix``. Returns how many were cached."""
        keys = {k for k in self._entries if k.startswith(prefix)}
        keys.update(k for k in self._inflight if k.startswith(prefix))
        for key in keys:
            self.invalidate(key)
        return len(keys)

    def invalidate_all(self) -> None:
        for key in set(self._entries) | set(self._inflight):
            self.invalidate(key)

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def resource(self, key: str, fetch_fn: FetchFn, ttl: float | None = None) -> "CachedResource":
        return CachedResource(self, key, fetch_fn, ttl)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _fetch(self, key: str, fetch_fn: FetchFn) -> Any:
        generation = self._generations.get(key, 0)
        started = self.clock()
        me = asyncio.current_task()
        try:
            with timed("cache_fetch_seconds", cache=self.name):
                data = await fetch_fn()
        except Exception as exc:
            logger.warning(f"Cache '{self.name}' fetch failed for {key!r}: {exc}")
            raise CacheFetchError(key, exc) from exc
        finally:
            if self._inflight.get(key) is me:
                del self._inflight[key]

        if self._generations.get(key, 0) == generation:
            self._entries[key] = CacheEntry(data=data, timestamp=started)
        else:
            logger.debug(f"Cache '{self.name}' dropped result for invalidated key {key!r}")
        return data


class CachedResource:
    """
    A handle bound to one key: ``data``, ``loading``, ``error``, ``refresh()``
    and ``invalidate()``.

    ``load()`` never raises a fetch error; it records it on ``error`` and
    returns whatever (possibly stale) value is cached.
    """

    def __init__(self, cache: FreshnessCache, key: str, fetch_fn: FetchFn, ttl: float | None = None):
        self.cache = cache
        self.key = key
        self.fetch_fn = fetch_fn
        self.ttl = ttl
        self.error: CacheFetchError | None = None

    @property
    def data(self) -> Any:
        entry = self.cache.peek(self.key)
        return entry.data if entry is not None else None

    @property
    def loading(self) -> bool:
        return self.cache.is_loading(self.key)

    @property
    def is_stale(self) -> bool:
        return self.cache.is_stale(self.key, self.ttl)

    async def load(self, force_refresh: bool = False) -> Any:
        try:
            value = await self.cache.get(self.key, self.fetch_fn, self.ttl, force_refresh)
        except CacheFetchError as e:
            self.error = e
            return self.data
        self.error = None
        return value

    async def refresh(self) -> Any:
        return await self.load(force_refresh=True)

    def invalidate(self) -> None:
        self.cache.invalidate(self.key)
