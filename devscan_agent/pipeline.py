"""Per-URL verdict resolution: record, whitelist, cache, classify, write back.

Cheap checks run first. A URL on a trusted domain is answered locally unless
its path or query looks like an attack; a cache hit is returned as stored; only
the remainder reaches the remote classifier.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AbstractSet, Iterable

from .cache import TieredCache
from .classifier import RemoteClassifier
from .metrics import PipelineMetrics
from .models import BatchResult, ResolveResult, Verdict, WhitelistResult
from .patterns import is_suspicious
from .sessions import SessionStore
from .whitelist import WhitelistIndex


logger = logging.getLogger(__name__)


def whitelisted_verdict(result: WhitelistResult) -> Verdict:
    where = "a manually trusted domain" if result.source == "manual" else f"a top-{result.rank or 'ranked'} domain"
    return Verdict(
        final_verdict="Whitelisted",
        confidence_score="100%",
        anomaly_risk_level="Low",
        explanation=f"{result.domain} is {where}.",
        tip="This link points to a well-known, trusted site.",
        cache_source="whitelist",
    )


class VerdictPipeline:
    def __init__(
        self,
        whitelist: WhitelistIndex,
        cache: TieredCache,
        classifier: RemoteClassifier,
        *,
        sessions: SessionStore | None = None,
        metrics: PipelineMetrics | None = None,
        concurrency: int = 8,
    ):
        self.whitelist = whitelist
        self.cache = cache
        self.classifier = classifier
        self.sessions = sessions
        self.metrics = metrics or PipelineMetrics()
        self.concurrency = max(1, int(concurrency))

    async def _record(self, url: str, session_id: int | None, page_url: str | None) -> int | None:
        if self.sessions is None or session_id is None:
            return None
        try:
            return await self.sessions.record_scanned_link(session_id, url, page_url)
        except Exception as exc:
            logger.warning("Could not record %s for session %s: %s", url, session_id, exc)
            return None

    def _check_whitelist(self, url: str) -> Verdict | None:
        try:
            result = self.whitelist.is_whitelisted(url)
            if not result.whitelisted:
                return None
            if is_suspicious(url):
                self.metrics.incr("whitelist.pattern_override")
                logger.info("Trusted domain %s but suspicious URL structure, checking further: %s", result.domain, url)
                return None
        except Exception:
            logger.exception("Whitelist check failed for %s", url)
            return None
        self.metrics.incr("whitelist.short_circuit")
        return whitelisted_verdict(result)

    async def _prepare(
        self,
        url: str,
        session_id: int | None,
        *,
        page_url: str | None,
        record: bool,
        known: Verdict | None = None,
    ) -> tuple[int | None, ResolveResult | None]:
        link_id = await self._record(url, session_id, page_url) if record else None

        verdict = self._check_whitelist(url)
        if verdict is not None:
            return link_id, ResolveResult(verdict=verdict, whitelisted=True, link_id=link_id)

        # Verdict already stored against this session for the page.
        if known is not None:
            self.metrics.incr("cache.session_hit")
            return link_id, ResolveResult(verdict=known, from_cache=True, link_id=link_id)

        try:
            entry = await self.cache.get(url)
        except Exception:
            logger.exception("Cache lookup failed for %s", url)
            entry = None
        if entry is not None:
            return link_id, ResolveResult(verdict=entry.verdict, from_cache=True, link_id=link_id)

        return link_id, None

    async def _session_verdicts(self, session_id: int | None, urls: list[str]) -> dict[str, Verdict]:
        if self.sessions is None or session_id is None or not urls:
            return {}
        try:
            return await self.sessions.find_cached_verdicts_for_session(session_id, urls)
        except Exception:
            logger.exception("Session verdict lookup failed for session %s", session_id)
            return {}

    async def _finish(self, url: str, verdict: Verdict, link_id: int | None) -> ResolveResult:
        if verdict.is_cacheable:
            try:
                entry = await self.cache.put(url, verdict, link_id=link_id)
                verdict = entry.verdict
            except Exception:
                logger.exception("Cache write failed for %s", url)
        return ResolveResult(verdict=verdict, link_id=link_id)

    async def resolve(
        self, url: str, session_id: int | None = None, *, page_url: str | None = None, record: bool = True
    ) -> ResolveResult:
        link_id, done = await self._prepare(url, session_id, page_url=page_url, record=record)
        if done is not None:
            return done
        verdicts = await self.classifier.classify_with_fallback([url])
        return await self._finish(url, verdicts[url], link_id)

    async def resolve_many(
        self,
        urls: Iterable[str],
        session_id: int | None = None,
        already_processed: AbstractSet[str] = frozenset(),
        *,
        page_url: str | None = None,
    ) -> BatchResult:
        """Resolve a batch; every input URL gets a verdict or ``"failed"``."""
        unique = list(dict.fromkeys(urls))
        sem = asyncio.Semaphore(self.concurrency)
        known = await self._session_verdicts(session_id, [u for u in unique if u in already_processed])

        async def prepare(url: str):
            async with sem:
                return await self._prepare(
                    url, session_id, page_url=page_url, record=url not in already_processed, known=known.get(url)
                )

        prepared = await asyncio.gather(*(prepare(u) for u in unique), return_exceptions=True)

        results: dict[str, Verdict | str] = {}
        pending: dict[str, int | None] = {}
        new_count = cached_count = 0
        for url, outcome in zip(unique, prepared):
            if isinstance(outcome, BaseException):
                logger.error("Resolving %s failed", url, exc_info=outcome)
                results[url] = "failed"
                continue
            link_id, done = outcome
            if done is None:
                pending[url] = link_id
                continue
            results[url] = done.verdict
            if done.from_cache:
                cached_count += 1
            else:
                new_count += 1

        if pending:
            classified = await self.classifier.classify_with_fallback(list(pending))

            async def finish(url: str) -> ResolveResult:
                async with sem:
                    return await self._finish(url, classified[url], pending[url])

            finished = await asyncio.gather(*(finish(u) for u in pending), return_exceptions=True)
            for url, outcome in zip(pending, finished):
                if isinstance(outcome, BaseException):
                    logger.error("Resolving %s failed", url, exc_info=outcome)
                    results[url] = "failed"
                    continue
                results[url] = outcome.verdict
                new_count += 1

        logger.info(
            "Resolved %d URLs (%d new, %d cached, %d classified)", len(unique), new_count, cached_count, len(pending)
        )
        return BatchResult(
            verdicts={u: results[u] for u in unique},
            new_count=new_count,
            cached_count=cached_count,
        )
