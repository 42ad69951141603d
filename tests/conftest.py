from __future__ import annotations

import json
from datetime import datetime, timedelta

import httpx
import pytest

from devscan_agent.db import make_engine


class FakeMLService:
    """Stands in for the remote scoring service behind an httpx.MockTransport.

    ``verdicts`` maps URL -> result dict; URLs listed in ``fail_urls`` make any
    request that contains them answer ``fail_status``.
    """

    def __init__(self, verdicts=None, *, fail_urls=(), fail_status=500, fail_batches=False):
        self.verdicts = dict(verdicts or {})
        self.fail_urls = set(fail_urls)
        self.fail_status = fail_status
        self.fail_batches = fail_batches
        self.requests: list[list[str]] = []
        self.health_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/health"):
            return httpx.Response(self.health_status, json={"status": "ok", "model": "test"})

        urls = json.loads(request.content)["urls"]
        self.requests.append(urls)
        if self.fail_urls.intersection(urls) or (self.fail_batches and len(urls) > 1):
            return httpx.Response(self.fail_status, json={"error": "boom"})

        results = []
        for url in urls:
            item = {"url": url, "final_verdict": "Safe", "confidence_score": "80%", "anomaly_risk_level": "Low"}
            item.update(self.verdicts.get(url, {}))
            results.append(item)
        return httpx.Response(200, json={"results": results})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def scored_urls(self) -> list[str]:
        return [u for batch in self.requests for u in batch]


class FrozenClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ManualTimer:
    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'devscan.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def ml_service():
    return FakeMLService()
