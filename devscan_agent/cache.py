"""Tiered verdict cache: fast TTL map in front of a durable or in-process backend."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable

from cachetools import TTLCache

from .backends import CacheBackend, CacheEntry, ForeignKeyViolation, InMemoryBackend, TransientStoreError
from .metrics import PipelineMetrics
from .models import Verdict, utcnow
from .url_utils import normalize_url, url_variants


logger = logging.getLogger(__name__)


class FastTier:
    """Short-lived process-wide map keyed by normalized URL."""

    def __init__(self, *, ttl_s: float = 600, maxsize: int = 10_000, timer: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_s, timer=timer)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._cache[key] = entry

    def purge(self, predicate: Callable[[CacheEntry], bool]) -> int:
        with self._lock:
            stale = [k for k, e in list(self._cache.items()) if predicate(e)]
            for k in stale:
                self._cache.pop(k, None)
        return len(stale)


class TieredCache:
    def __init__(
        self,
        durable: CacheBackend | None = None,
        *,
        fast_ttl_s: float = 600,
        fast_maxsize: int = 10_000,
        fallback_ttl_s: float = 24 * 60 * 60,
        fallback_maxsize: int = 50_000,
        entry_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.monotonic,
        metrics: PipelineMetrics | None = None,
    ):
        self._durable = durable
        self._fast = FastTier(ttl_s=fast_ttl_s, maxsize=fast_maxsize, timer=timer)
        self._fallback = InMemoryBackend(ttl_s=fallback_ttl_s, maxsize=fallback_maxsize, timer=timer)
        self._entry_ttl = entry_ttl
        self._clock = clock
        self.metrics = metrics or PipelineMetrics()

        self._backend: CacheBackend | None = None
        self._open_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, durable: CacheBackend | None, *, metrics: PipelineMetrics | None = None) -> TieredCache:
        return cls(
            durable,
            fast_ttl_s=settings.fast_cache_ttl_s,
            fast_maxsize=settings.fast_cache_maxsize,
            fallback_ttl_s=settings.fallback_cache_ttl_s,
            fallback_maxsize=settings.fallback_cache_maxsize,
            entry_ttl=timedelta(days=settings.cache_entry_ttl_days),
            metrics=metrics,
        )

    async def open(self) -> CacheBackend:
        """Probe the durable backend once; later calls reuse the decision."""
        if self._backend is not None:
            return self._backend
        async with self._open_lock:
            if self._backend is None:
                if self._durable is not None and await self._durable.probe():
                    self._backend = self._durable
                else:
                    logger.warning("Verdict cache running on in-process fallback only")
                    self._backend = self._fallback
        return self._backend

    @property
    def durable_available(self) -> bool:
        return self._backend is not None and self._backend is self._durable

    @property
    def backend_name(self) -> str:
        return self._backend.name if self._backend is not None else "unopened"

    async def _durable_backend(self) -> CacheBackend | None:
        backend = await self.open()
        return None if backend is self._fallback else backend

    async def get(self, url: str) -> CacheEntry | None:
        key = normalize_url(url)
        now = self._clock()

        entry = self._fast.get(key)
        if entry is not None and not entry.verdict.is_expired(now):
            self.metrics.incr("cache.fast_hit")
            return entry

        variants = url_variants(url)
        durable = await self._durable_backend()
        if durable is not None:
            try:
                entry = await durable.find(variants, now)
            except TransientStoreError as exc:
                logger.warning("Durable cache lookup failed for %s, using in-process fallback: %s", key, exc)
            else:
                if entry is not None:
                    self.metrics.incr("cache.durable_hit")
                    self._fast.set(key, entry)
                    return entry

        entry = await self._fallback.find(variants, now)
        if entry is not None:
            self.metrics.incr("cache.fallback_hit")
            self._fast.set(key, entry)
            return entry

        self.metrics.incr("cache.miss")
        return None

    async def get_by_link_id(self, link_id: int) -> CacheEntry | None:
        """Lookup for older rows that were stored against a link and carry no URL."""
        now = self._clock()
        durable = await self._durable_backend()
        if durable is not None:
            try:
                entry = await durable.find_by_link(link_id, now)
            except TransientStoreError as exc:
                logger.warning("Durable lookup by link %s failed: %s", link_id, exc)
            else:
                if entry is not None:
                    return entry
        return await self._fallback.find_by_link(link_id, now)

    async def put(self, url: str, verdict: Verdict, *, link_id: int | None = None) -> CacheEntry:
        key = normalize_url(url)
        if not verdict.is_cacheable:
            logger.debug("Not caching %s verdict for %s", verdict.final_verdict, key)
            return CacheEntry(url=key, verdict=verdict, link_id=link_id, persisted=False)

        now = self._clock()
        stamped = verdict.model_copy(update={"last_scanned": now, "expires_at": now + self._entry_ttl})
        entry = CacheEntry(url=key, verdict=stamped, link_id=link_id)

        durable = await self._durable_backend()
        if durable is not None:
            try:
                stored, created = await durable.insert_if_absent(entry, now)
            except ForeignKeyViolation as exc:
                logger.warning("Cache write for %s referenced a missing link (%s); writing to in-process fallback", key, exc)
                self.metrics.incr("cache.write_fallback")
            except TransientStoreError as exc:
                logger.warning("Durable cache write failed for %s, writing to in-process fallback: %s", key, exc)
                self.metrics.incr("cache.write_fallback")
            else:
                self.metrics.incr("cache.write" if created else "cache.duplicate_suppressed")
                self._fast.set(key, stored)
                return stored

        stored, created = await self._fallback.insert_if_absent(entry, now)
        self.metrics.incr("cache.write" if created else "cache.duplicate_suppressed")
        self._fast.set(key, stored)
        return stored

    async def invalidate_expired(self) -> int:
        now = self._clock()
        removed = 0
        durable = await self._durable_backend()
        if durable is not None:
            try:
                removed += await durable.sweep_expired(now)
            except TransientStoreError as exc:
                logger.warning("Durable cache sweep failed: %s", exc)
        removed += await self._fallback.sweep_expired(now)
        self._fast.purge(lambda e: e.verdict.is_expired(now))
        if removed:
            logger.info("Swept %d expired cache entries", removed)
        self.metrics.incr("cache.swept", removed)
        return removed

    async def cleanup_non_cacheable(self) -> int:
        removed = 0
        durable = await self._durable_backend()
        if durable is not None:
            try:
                removed += await durable.purge_non_cacheable()
            except TransientStoreError as exc:
                logger.warning("Non-cacheable cleanup failed: %s", exc)
        removed += await self._fallback.purge_non_cacheable()
        self._fast.purge(lambda e: not e.verdict.is_cacheable)
        if removed:
            logger.info("Removed %d non-cacheable cache entries", removed)
        return removed
