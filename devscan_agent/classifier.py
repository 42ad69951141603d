"""Gateway to the remote ML scoring service.

The service is a black box reached over HTTP: ``POST {"urls": [...]}`` answers
``{"results": [{url, final_verdict, confidence_score, ...}]}``. Everything the
service returns is normalized into ``Verdict`` here so schema drift never leaks
past this module.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable

import httpx

from .metrics import PipelineMetrics
from .models import ClassifierHealth, Verdict


logger = logging.getLogger(__name__)


class ClassifierError(Exception):
    pass


class TransientClassifierError(ClassifierError):
    """Timeout, network failure, overload or garbled payload. Worth retrying."""


class DefinitiveClassifierError(ClassifierError):
    """The service rejected the request itself. Retrying cannot help."""


_VERDICT_MAP = {
    "safe": "Safe",
    "benign": "Safe",
    "clean": "Safe",
    "legitimate": "Safe",
    "anomalous": "Anomalous",
    "anomaly": "Anomalous",
    "suspicious": "Anomalous",
    "malicious": "Malicious",
    "phishing": "Malicious",
    "malware": "Malicious",
}

_RISK_MAP = {
    "low": "Low",
    "medium": "Medium",
    "med": "Medium",
    "moderate": "Medium",
    "high": "High",
    "critical": "High",
}

_TRANSIENT_STATUS = {408, 429}


def format_confidence(value: Any) -> str:
    """``92``, ``92.0``, ``"92"`` and ``"92%"`` all become ``"92%"``; junk becomes ``"0%"``."""
    if value is None or isinstance(value, bool):
        return "0%"
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().rstrip("%").strip()
        try:
            number = float(text)
        except ValueError:
            return "0%"
    if math.isnan(number):
        return "0%"
    number = max(0.0, min(100.0, number))
    return f"{number:g}%"


def _normalize_result(raw: Any) -> Verdict | None:
    if not isinstance(raw, dict):
        return None

    verdict = _VERDICT_MAP.get(str(raw.get("final_verdict") or "").strip().lower())
    if verdict is None:
        return None

    risk = _RISK_MAP.get(str(raw.get("anomaly_risk_level") or "").strip().lower(), "Unknown")

    return Verdict(
        final_verdict=verdict,
        confidence_score=format_confidence(raw.get("confidence_score")),
        anomaly_risk_level=risk,
        explanation=str(raw.get("explanation") or "").strip(),
        tip=str(raw.get("tip") or "").strip(),
        cache_source="ml_service",
    )


def degraded_verdict() -> Verdict:
    return Verdict(
        final_verdict="Scan Failed",
        confidence_score="0%",
        anomaly_risk_level="Unknown",
        explanation="The analysis service is temporarily unavailable. This link will be checked again on the next scan.",
        tip="Be careful with this link until it can be verified.",
        cache_source="fallback",
    )


def _health_url(url: str) -> str:
    if "/analyze" in url:
        head, _, tail = url.rpartition("/analyze")
        return f"{head}/health{tail}"
    return url.rstrip("/") + "/health"


class RemoteClassifier:
    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 120.0,
        max_attempts: int = 2,
        retry_delay_s: float = 2.0,
        health_timeout_s: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: PipelineMetrics | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.url = url
        self.timeout_s = timeout_s
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_s = retry_delay_s
        self.health_timeout_s = health_timeout_s
        self._transport = transport
        self._sleep = sleep
        self.metrics = metrics or PipelineMetrics()

    @classmethod
    def from_settings(cls, settings, *, transport: httpx.AsyncBaseTransport | None = None, metrics: PipelineMetrics | None = None) -> RemoteClassifier:
        return cls(
            settings.ml_service_url,
            timeout_s=settings.ml_timeout_s,
            max_attempts=settings.ml_max_attempts,
            retry_delay_s=settings.ml_retry_delay_s,
            health_timeout_s=settings.ml_health_timeout_s,
            transport=transport,
            metrics=metrics,
        )

    async def _send(self, urls: list[str]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            return await client.post(self.url, json={"urls": urls})

    async def _post(self, urls: list[str]) -> list[Verdict]:
        try:
            # httpx limits each phase; wait_for bounds the whole exchange.
            res = await asyncio.wait_for(self._send(urls), timeout=self.timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransientClassifierError(f"timed out after {self.timeout_s:g}s") from exc
        except httpx.HTTPError as exc:
            raise TransientClassifierError(f"{exc.__class__.__name__}: {exc}") from exc

        if res.status_code >= 400:
            message = f"HTTP {res.status_code}: {res.text[:200]}"
            if res.status_code in _TRANSIENT_STATUS or (res.status_code >= 500 and res.status_code != 501):
                raise TransientClassifierError(message)
            raise DefinitiveClassifierError(message)

        try:
            payload = res.json()
        except ValueError as exc:
            raise TransientClassifierError("response is not JSON") from exc

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise TransientClassifierError("response is missing a results array")
        return self._match(urls, results)

    @staticmethod
    def _match(urls: list[str], results: list[Any]) -> list[Verdict]:
        # Results are matched by their url field, then by position.
        positional = [_normalize_result(item) for item in results]
        by_url: dict[str, Verdict] = {}
        for item, verdict in zip(results, positional):
            if verdict is not None and isinstance(item.get("url"), str):
                by_url[item["url"]] = verdict

        out: list[Verdict] = []
        for i, url in enumerate(urls):
            verdict = by_url.get(url)
            if verdict is None and i < len(positional):
                verdict = positional[i]
            if verdict is None:
                raise TransientClassifierError(f"no usable result for {url}")
            out.append(verdict)
        return out

    async def classify(self, urls: list[str]) -> list[Verdict]:
        """One verdict per URL, in order. Raises ``ClassifierError`` once attempts run out."""
        if not urls:
            return []

        attempt = 0
        while True:
            attempt += 1
            started = time.perf_counter()
            try:
                return await self._post(urls)
            except DefinitiveClassifierError as exc:
                logger.error("ML service rejected a batch of %d URLs, not retrying: %s", len(urls), exc)
                raise
            except TransientClassifierError as exc:
                logger.warning("ML service attempt %d/%d failed for %d URLs: %s", attempt, self.max_attempts, len(urls), exc)
                if attempt >= self.max_attempts:
                    raise
            finally:
                self.metrics.observe("classifier.latency", time.perf_counter() - started)

            await self._sleep(self.retry_delay_s)

    async def _classify_one(self, url: str) -> Verdict:
        try:
            return (await self.classify([url]))[0]
        except ClassifierError as exc:
            self.metrics.incr("classifier.url_failed")
            logger.warning("Classification failed for %s, returning degraded verdict: %s", url, exc)
            return degraded_verdict()

    async def classify_with_fallback(self, urls: list[str]) -> dict[str, Verdict]:
        """Batch first, then URL by URL; never raises."""
        unique = list(dict.fromkeys(urls))
        if not unique:
            return {}

        try:
            return dict(zip(unique, await self.classify(unique)))
        except ClassifierError as exc:
            self.metrics.incr("classifier.batch_failed")
            if len(unique) == 1:
                self.metrics.incr("classifier.url_failed")
                logger.warning("Classification failed for %s, returning degraded verdict: %s", unique[0], exc)
                return {unique[0]: degraded_verdict()}
            logger.warning("Batch classification of %d URLs failed (%s); retrying one by one", len(unique), exc)

        verdicts = await asyncio.gather(*(self._classify_one(u) for u in unique))
        return dict(zip(unique, verdicts))

    async def health(self) -> ClassifierHealth:
        url = _health_url(self.url)
        try:
            async with httpx.AsyncClient(timeout=self.health_timeout_s, transport=self._transport) as client:
                res = await client.get(url)
            res.raise_for_status()
        except httpx.HTTPError as exc:
            return ClassifierHealth(status="unhealthy", url=url, error=str(exc) or exc.__class__.__name__)

        try:
            details = res.json()
        except ValueError:
            details = res.text[:500]
        return ClassifierHealth(status="healthy", url=url, details=details)
