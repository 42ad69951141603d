"""Storage backends behind the tiered verdict cache.

Two implementations of one capability interface: ``DurableBackend`` (any
SQLAlchemy database) and ``InMemoryBackend`` (process-local, TTL-bounded). The
facade in ``cache.py`` picks one at open time and keeps the in-memory one as a
fallback.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Collection

from cachetools import TTLCache
from sqlalchemy import DateTime, Engine, delete, insert, literal, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .db import CachedResult, DeletedCachedLink, ScannedLink, init_schema
from .models import CACHEABLE_VERDICTS, Verdict


logger = logging.getLogger(__name__)

_RISK_LEVELS = ("Low", "Medium", "High", "Unknown")

_ENTRY_COLUMNS = (
    "url",
    "link_id",
    "final_verdict",
    "confidence_score",
    "anomaly_risk_level",
    "explanation",
    "tip",
    "cache_source",
    "last_scanned",
    "expires_at",
)
_ARCHIVE_COLUMNS = tuple(c for c in _ENTRY_COLUMNS if c != "link_id")


class TransientStoreError(Exception):
    """The durable store could not be reached or failed mid-operation."""


class ForeignKeyViolation(TransientStoreError):
    """A durable write referenced a session/link row that no longer exists."""


@dataclass(frozen=True)
class CacheEntry:
    url: str | None
    verdict: Verdict
    link_id: int | None = None
    persisted: bool = True


class CacheBackend(ABC):
    name: str = "abstract"

    @abstractmethod
    async def probe(self) -> bool:
        """Return True when the backend can serve reads and writes."""

    @abstractmethod
    async def find(self, variants: Collection[str], now: datetime) -> CacheEntry | None:
        """Most recent live cacheable entry stored under any of ``variants``."""

    @abstractmethod
    async def find_by_link(self, link_id: int, now: datetime) -> CacheEntry | None:
        ...

    @abstractmethod
    async def insert_if_absent(self, entry: CacheEntry, now: datetime) -> tuple[CacheEntry, bool]:
        """Store ``entry`` unless a live entry with the same URL and verdict exists.

        Returns the stored (or pre-existing) entry and whether a new one was created.
        """

    @abstractmethod
    async def sweep_expired(self, now: datetime) -> int:
        ...

    @abstractmethod
    async def purge_non_cacheable(self) -> int:
        ...


class InMemoryBackend(CacheBackend):
    name = "memory"

    def __init__(self, *, ttl_s: float = 24 * 60 * 60, maxsize: int = 50_000, timer: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._by_url: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_s, timer=timer)
        self._by_link: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_s, timer=timer)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_url)

    async def probe(self) -> bool:
        return True

    async def find(self, variants: Collection[str], now: datetime) -> CacheEntry | None:
        best: CacheEntry | None = None
        with self._lock:
            for key in variants:
                entry = self._by_url.get(key)
                if entry is None or entry.verdict.is_expired(now) or not entry.verdict.is_cacheable:
                    continue
                if best is None or (entry.verdict.last_scanned or now) > (best.verdict.last_scanned or now):
                    best = entry
        return best

    async def find_by_link(self, link_id: int, now: datetime) -> CacheEntry | None:
        with self._lock:
            entry = self._by_link.get(link_id)
        if entry is None or entry.verdict.is_expired(now):
            return None
        return entry

    async def insert_if_absent(self, entry: CacheEntry, now: datetime) -> tuple[CacheEntry, bool]:
        with self._lock:
            existing = self._by_url.get(entry.url) if entry.url else None
            if (
                existing is not None
                and existing.verdict.final_verdict == entry.verdict.final_verdict
                and not existing.verdict.is_expired(now)
            ):
                return existing, False
            if entry.url:
                self._by_url[entry.url] = entry
            if entry.link_id is not None:
                self._by_link[entry.link_id] = entry
        return entry, True

    def _purge(self, predicate: Callable[[CacheEntry], bool]) -> int:
        removed = 0
        with self._lock:
            for cache in (self._by_url, self._by_link):
                for key, entry in list(cache.items()):
                    if predicate(entry):
                        cache.pop(key, None)
                        if cache is self._by_url:
                            removed += 1
        return removed

    async def sweep_expired(self, now: datetime) -> int:
        return self._purge(lambda e: e.verdict.is_expired(now))

    async def purge_non_cacheable(self) -> int:
        return self._purge(lambda e: not e.verdict.is_cacheable)


async def run_sync(fn, *args):
    """Run a blocking database call off the event loop, mapping driver errors."""
    try:
        return await asyncio.to_thread(fn, *args)
    except IntegrityError as exc:
        raise ForeignKeyViolation(str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        raise TransientStoreError(str(exc)) from exc


def entry_from_row(row: CachedResult) -> CacheEntry:
    risk = row.anomaly_risk_level if row.anomaly_risk_level in _RISK_LEVELS else "Unknown"
    verdict = Verdict(
        final_verdict=row.final_verdict,
        confidence_score=row.confidence_score or "0%",
        anomaly_risk_level=risk,
        explanation=row.explanation or "",
        tip=row.tip or "",
        cache_source=row.cache_source or "ml_service",
        last_scanned=row.last_scanned,
        expires_at=row.expires_at,
    )
    return CacheEntry(url=row.url, verdict=verdict, link_id=row.link_id)


class DurableBackend(CacheBackend):
    name = "durable"

    def __init__(self, engine: Engine):
        self._engine = engine

    def _probe_sync(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        init_schema(self._engine)

    async def probe(self) -> bool:
        try:
            await asyncio.to_thread(self._probe_sync)
        except SQLAlchemyError as exc:
            logger.warning("Durable cache unavailable (%s): %s", self._engine.url.render_as_string(hide_password=True), exc)
            return False
        logger.info("Durable cache connected: %s", self._engine.url.render_as_string(hide_password=True))
        return True

    @staticmethod
    def _live(now: datetime) -> tuple:
        return (
            CachedResult.expires_at > now,
            CachedResult.final_verdict.in_(sorted(CACHEABLE_VERDICTS)),
        )

    def _find_sync(self, variants: list[str], now: datetime) -> CacheEntry | None:
        newest_first = (CachedResult.last_scanned.desc(), CachedResult.id.desc())
        with Session(self._engine) as session:
            row = session.scalars(
                select(CachedResult)
                .where(CachedResult.url.in_(variants), *self._live(now))
                .order_by(*newest_first)
                .limit(1)
            ).first()
            if row is None:
                # Legacy rows: URL only reachable through the scanned link.
                row = session.scalars(
                    select(CachedResult)
                    .join(ScannedLink, ScannedLink.link_id == CachedResult.link_id)
                    .where(CachedResult.url.is_(None), ScannedLink.url.in_(variants), *self._live(now))
                    .order_by(*newest_first)
                    .limit(1)
                ).first()
            return entry_from_row(row) if row is not None else None

    async def find(self, variants: Collection[str], now: datetime) -> CacheEntry | None:
        return await run_sync(self._find_sync, sorted(variants), now)

    def _find_by_link_sync(self, link_id: int, now: datetime) -> CacheEntry | None:
        with Session(self._engine) as session:
            row = session.scalars(
                select(CachedResult)
                .where(CachedResult.link_id == link_id, *self._live(now))
                .order_by(CachedResult.last_scanned.desc())
                .limit(1)
            ).first()
            return entry_from_row(row) if row is not None else None

    async def find_by_link(self, link_id: int, now: datetime) -> CacheEntry | None:
        return await run_sync(self._find_by_link_sync, link_id, now)

    def _insert_sync(self, entry: CacheEntry, now: datetime) -> tuple[CacheEntry, bool]:
        v = entry.verdict
        values = {
            "url": entry.url,
            "link_id": entry.link_id,
            "final_verdict": v.final_verdict,
            "confidence_score": v.confidence_score,
            "anomaly_risk_level": v.anomaly_risk_level,
            "explanation": v.explanation,
            "tip": v.tip,
            "cache_source": v.cache_source,
            "last_scanned": v.last_scanned or now,
            "expires_at": v.expires_at,
        }
        columns = CachedResult.__table__.c
        same = (
            CachedResult.url == entry.url,
            CachedResult.final_verdict == v.final_verdict,
            CachedResult.expires_at > now,
        )
        duplicate = select(CachedResult.id).where(*same).correlate(None)
        # One conditional statement, so concurrent identical writes cannot both insert.
        source = select(*(literal(values[c], columns[c].type) for c in _ENTRY_COLUMNS)).where(~duplicate.exists())

        with Session(self._engine) as session, session.begin():
            result = session.execute(insert(CachedResult).from_select(list(_ENTRY_COLUMNS), source))
            created = bool(result.rowcount)
            row = session.scalars(select(CachedResult).where(*same).order_by(CachedResult.id.asc()).limit(1)).first()
            stored = entry_from_row(row) if row is not None else entry
        return stored, created

    async def insert_if_absent(self, entry: CacheEntry, now: datetime) -> tuple[CacheEntry, bool]:
        return await run_sync(self._insert_sync, entry, now)

    def _sweep_sync(self, now: datetime) -> int:
        expired = CachedResult.expires_at <= now
        columns = CachedResult.__table__.c
        archived = select(*(columns[c] for c in _ARCHIVE_COLUMNS), literal(now, DateTime())).where(expired)
        with Session(self._engine) as session, session.begin():
            session.execute(insert(DeletedCachedLink).from_select([*_ARCHIVE_COLUMNS, "archived_at"], archived))
            result = session.execute(delete(CachedResult).where(expired))
            return result.rowcount or 0

    async def sweep_expired(self, now: datetime) -> int:
        return await run_sync(self._sweep_sync, now)

    def _purge_sync(self) -> int:
        with Session(self._engine) as session, session.begin():
            result = session.execute(
                delete(CachedResult).where(CachedResult.final_verdict.not_in(sorted(CACHEABLE_VERDICTS)))
            )
            return result.rowcount or 0

    async def purge_non_cacheable(self) -> int:
        return await run_sync(self._purge_sync)
