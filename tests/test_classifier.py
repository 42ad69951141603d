import asyncio

import httpx
import pytest

from conftest import FakeMLService, no_sleep
from devscan_agent.classifier import (
    DefinitiveClassifierError,
    RemoteClassifier,
    TransientClassifierError,
    format_confidence,
)


def _client(transport, **kwargs) -> RemoteClassifier:
    kwargs.setdefault("sleep", no_sleep)
    return RemoteClassifier("http://ml.test/analyze", transport=transport, **kwargs)


@pytest.mark.parametrize(
    "raw, expected",
    [(92, "92%"), (92.0, "92%"), ("92", "92%"), ("92%", "92%"), ("87.5 %", "87.5%"), (None, "0%"), ("n/a", "0%"), (140, "100%")],
)
def test_format_confidence(raw, expected):
    assert format_confidence(raw) == expected


def test_batch_results_are_normalized():
    service = FakeMLService(
        {
            "https://a.test/": {"final_verdict": "MALICIOUS", "confidence_score": 92, "anomaly_risk_level": "high"},
            "https://b.test/": {"final_verdict": "suspicious", "confidence_score": "61", "anomaly_risk_level": "moderate"},
        }
    )
    verdicts = asyncio.run(_client(service.transport).classify(["https://a.test/", "https://b.test/"]))

    assert [v.final_verdict for v in verdicts] == ["Malicious", "Anomalous"]
    assert verdicts[0].confidence_score == "92%"
    assert verdicts[0].anomaly_risk_level == "High"
    assert verdicts[1].anomaly_risk_level == "Medium"
    assert service.requests == [["https://a.test/", "https://b.test/"]]


def test_results_without_urls_match_by_position():
    def handler(request):
        return httpx.Response(200, json={"results": [{"final_verdict": "Safe"}, {"final_verdict": "Malicious"}]})

    verdicts = asyncio.run(_client(httpx.MockTransport(handler)).classify(["u1", "u2"]))
    assert [v.final_verdict for v in verdicts] == ["Safe", "Malicious"]


def test_retries_are_bounded_on_timeouts():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    async def record_sleep(seconds):
        sleeps.append(seconds)

    classifier = _client(httpx.MockTransport(handler), max_attempts=3, retry_delay_s=2.0, sleep=record_sleep)
    with pytest.raises(TransientClassifierError):
        asyncio.run(classifier.classify(["https://slow.test/"]))

    assert len(calls) == 3
    assert sleeps == [2.0, 2.0]
    assert classifier.metrics.snapshot()["timings"]["classifier.latency"]["count"] == 3


@pytest.mark.parametrize("status", [400, 404, 422, 501])
def test_definitive_failures_skip_retries(status):
    service = FakeMLService(fail_urls={"https://x.test/"}, fail_status=status)
    with pytest.raises(DefinitiveClassifierError):
        asyncio.run(_client(service.transport, max_attempts=5).classify(["https://x.test/"]))
    assert len(service.requests) == 1


@pytest.mark.parametrize("status", [429, 500, 503])
def test_transient_statuses_are_retried(status):
    service = FakeMLService(fail_urls={"https://x.test/"}, fail_status=status)
    with pytest.raises(TransientClassifierError):
        asyncio.run(_client(service.transport, max_attempts=2).classify(["https://x.test/"]))
    assert len(service.requests) == 2


def test_malformed_payload_is_transient():
    def handler(request):
        return httpx.Response(200, json={"verdicts": []})

    with pytest.raises(TransientClassifierError):
        asyncio.run(_client(httpx.MockTransport(handler), max_attempts=1).classify(["https://a.test/"]))


def test_batch_failure_falls_back_per_url():
    service = FakeMLService(
        {"https://good.test/": {"final_verdict": "Malicious", "confidence_score": "92%"}},
        fail_urls={"https://bad.test/"},
    )
    classifier = _client(service.transport, max_attempts=2)

    verdicts = asyncio.run(classifier.classify_with_fallback(["https://good.test/", "https://bad.test/"]))

    assert verdicts["https://good.test/"].final_verdict == "Malicious"
    failed = verdicts["https://bad.test/"]
    assert failed.final_verdict == "Scan Failed"
    assert failed.confidence_score == "0%"
    assert "temporarily unavailable" in failed.explanation
    # Two batch attempts, then one call for the good URL and two for the bad one.
    assert len(service.requests) == 5
    assert classifier.metrics.count("classifier.batch_failed") == 1
    assert classifier.metrics.count("classifier.url_failed") == 1


def test_single_url_failure_is_not_retried_twice():
    service = FakeMLService(fail_urls={"https://bad.test/"})
    verdicts = asyncio.run(_client(service.transport).classify_with_fallback(["https://bad.test/"]))
    assert verdicts["https://bad.test/"].final_verdict == "Scan Failed"
    assert len(service.requests) == 2


def test_health_reports_both_states():
    service = FakeMLService()
    classifier = _client(service.transport)

    healthy = asyncio.run(classifier.health())
    assert healthy.status == "healthy"
    assert healthy.url == "http://ml.test/health"
    assert healthy.details == {"status": "ok", "model": "test"}

    service.health_status = 503
    unhealthy = asyncio.run(classifier.health())
    assert unhealthy.status == "unhealthy"
    assert unhealthy.error


def test_stalled_response_hits_the_overall_timeout():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"results": []})

    classifier = _client(httpx.MockTransport(handler), timeout_s=0.05, max_attempts=1)

    async def run():
        started = asyncio.get_running_loop().time()
        with pytest.raises(TransientClassifierError, match="timed out"):
            await classifier.classify(["https://slow.test/"])
        return asyncio.get_running_loop().time() - started

    assert asyncio.run(run()) < 2


def test_single_attempt_raises_without_waiting():
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    service = FakeMLService(fail_urls={"https://x.test/"}, fail_status=503)
    classifier = _client(service.transport, max_attempts=1, sleep=record_sleep)
    with pytest.raises(TransientClassifierError, match="HTTP 503"):
        asyncio.run(classifier.classify(["https://x.test/"]))
    assert len(service.requests) == 1
    assert sleeps == []
