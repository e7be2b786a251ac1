# app/core/cache/batch.py
"""
Batch variant of the freshness cache.

A batch is N ``(key, fetch_fn)`` pairs fetched concurrently and stored as
one composite entry keyed by the ordered list of sub-keys.  A sub-fetch
that raises contributes ``None`` for its key instead of failing the batch.

Re-invoking a batch that is still in flight awaits the same operation
unless ``force_refresh`` is set, which always starts a new batch.  The
newest batch wins: results of a superseded batch are returned to its own
callers but never stored.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from app.core.cache.freshness import DEFAULT_TTL_SECONDS, CacheEntry, FetchFn
from app.core.dispatch.errors import CacheFetchError
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter, timed

logger = get_logger(__name__)

Queries = Union[Mapping[str, FetchFn], Sequence[tuple[str, FetchFn]]]


def _pairs(queries: Queries) -> list[tuple[str, FetchFn]]:
    if isinstance(queries, Mapping):
        return list(queries.items())
    return list(queries)


def composite_key(keys: Iterable[str]) -> str:
    """Stable cache key for a set of sub-keys, e.g. ``'["tasks", "webhooks"]'``."""
    return json.dumps(list(keys), ensure_ascii=False)


class BatchFreshnessCache:
    def __init__(
        self,
        name: str = "batch",
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.default_ttl = default_ttl
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._failed: dict[str, dict[str, CacheFetchError]] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._generations: dict[str, int] = {}

    async def get(
        self,
        queries: Queries,
        ttl: float | None = None,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        """Joined results keyed by sub-key; failed sub-fetches map to ``None``."""
        pairs = _pairs(queries)
        ckey = composite_key(k for k, _ in pairs)
        ttl = self.default_ttl if ttl is None else ttl

        entry = self._entries.get(ckey)
        if not force_refresh and entry is not None and entry.is_fresh(self.clock(), ttl):
            inc_counter("cache_reads", cache=self.name, result="hit")
            return dict(entry.data)

        inflight = self._inflight.get(ckey)
        if inflight is not None and not force_refresh:
            inc_counter("cache_reads", cache=self.name, result="joined")
            return dict(await asyncio.shield(inflight))

        if force_refresh:
            # Supersede whatever is in flight
            self._generations[ckey] = self._generations.get(ckey, 0) + 1

        inc_counter("cache_reads", cache=self.name, result="miss")
        future = asyncio.ensure_future(self._run(ckey, pairs))
        self._inflight[ckey] = future
        return dict(await asyncio.shield(future))

    def peek(self, keys: Iterable[str]) -> Optional[CacheEntry]:
        return self._entries.get(composite_key(keys))

    def failures(self, keys: Iterable[str]) -> dict[str, CacheFetchError]:
        """Sub-fetch errors of the last stored batch for ``keys``."""
        return dict(self._failed.get(composite_key(keys), {}))

    def is_stale(self, keys: Iterable[str], ttl: float | None = None) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        entry = self.peek(keys)
        return entry is None or not entry.is_fresh(self.clock(), ttl)

    def is_loading(self, keys: Iterable[str]) -> bool:
        return composite_key(keys) in self._inflight

    def invalidate(self, keys: Iterable[str]) -> None:
        ckey = composite_key(keys)
        self._generations[ckey] = self._generations.get(ckey, 0) + 1
        self._entries.pop(ckey, None)
        self._failed.pop(ckey, None)
        self._inflight.pop(ckey, None)

    def invalidate_all(self) -> None:
        for ckey in set(self._entries) | set(self._inflight):
            self._generations[ckey] = self._generations.get(ckey, 0) + 1
        self._entries.clear()
        self._failed.clear()
        self._inflight.clear()

    def resource(self, queries: Queries, ttl: float | None = None) -> "BatchCachedResource":
        return BatchCachedResource(self, queries, ttl)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _run(self, ckey: str, pairs: list[tuple[str, FetchFn]]) -> dict[str, Any]:
        generation = self._generations.get(ckey, 0)
        started = self.clock()
        me = asyncio.current_task()
        failed: dict[str, CacheFetchError] = {}

        async def one(key: str, fetch_fn: FetchFn) -> Any:
            try:
                return await fetch_fn()
            except Exception as exc:
                logger.warning(f"Batch '{self.name}' sub-fetch {key!r} failed: {exc}")
                inc_counter("cache_sub_fetch_failures", cache=self.name, key=key)
                failed[key] = CacheFetchError(key, exc)
                return None

        try:
            with timed("cache_fetch_seconds", cache=self.name):
                results = await asyncio.gather(*(one(k, fn) for k, fn in pairs))
        finally:
            if self._inflight.get(ckey) is me:
                del self._inflight[ckey]

        data = {key: value for (key, _), value in zip(pairs, results)}
        if self._generations.get(ckey, 0) == generation:
            self._entries[ckey] = CacheEntry(data=data, timestamp=started)
            self._failed[ckey] = failed
        return data


class BatchCachedResource:
    """
    Handle over one batch: ``data`` (dict keyed by sub-key), ``loading``,
    ``error`` (first failed sub-fetch, if any) and ``refresh()``.
    """

    def __init__(self, cache: BatchFreshnessCache, queries: Queries, ttl: float | None = None):
        self.cache = cache
        self.queries = _pairs(queries)
        self.keys = [k for k, _ in self.queries]
        self.ttl = ttl
        self._last: dict[str, Any] | None = None

    @property
    def data(self) -> dict[str, Any]:
        if self._last is not None:
            return dict(self._last)
        entry = self.cache.peek(self.keys)
        return dict(entry.data) if entry is not None else {}

    @property
    def loading(self) -> bool:
        return self.cache.is_loading(self.keys)

    @property
    def error(self) -> CacheFetchError | None:
        failures = self.cache.failures(self.keys)
        for key in self.keys:
            if key in failures:
                return failures[key]
        return None

    async def load(self, force_refresh: bool = False) -> dict[str, Any]:
        self._last = await self.cache.get(self.queries, self.ttl, force_refresh)
        return dict(self._last)

    async def refresh(self) -> dict[str, Any]:
        return await self.load(force_refresh=True)
