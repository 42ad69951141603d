import asyncio
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import ManualTimer
from devscan_agent.backends import DurableBackend, InMemoryBackend, TransientStoreError
from devscan_agent.cache import TieredCache
from devscan_agent.db import CachedResult, DeletedCachedLink, ScannedLink, ScanSession, init_schema, make_engine
from devscan_agent.models import Verdict


def _count(engine, model) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


def _malicious() -> Verdict:
    return Verdict(final_verdict="Malicious", confidence_score="92%", anomaly_risk_level="High", explanation="phishing kit")


class FlakyBackend(InMemoryBackend):
    """Probes fine, then fails every durable call."""

    name = "flaky"

    async def find(self, variants, now):
        raise TransientStoreError("connection reset")

    async def insert_if_absent(self, entry, now):
        raise TransientStoreError("connection reset")

    async def sweep_expired(self, now):
        raise TransientStoreError("connection reset")


def test_round_trip_through_any_variant(engine, clock):
    async def run():
        writer = TieredCache(DurableBackend(engine), clock=clock)
        stored = await writer.put("https://example.com/a?b=1", _malicious())
        assert stored.persisted is True
        assert stored.verdict.expires_at == clock.now + timedelta(days=7)

        # A second process shares only the durable tier.
        reader = TieredCache(DurableBackend(engine), clock=clock)
        hit = await reader.get("http://www.example.com/a/?b=1")
        return writer, reader, hit

    writer, reader, hit = asyncio.run(run())
    assert writer.durable_available is True
    assert hit is not None
    assert hit.verdict.final_verdict == "Malicious"
    assert hit.verdict.confidence_score == "92%"
    assert hit.verdict.anomaly_risk_level == "High"
    assert reader.metrics.count("cache.durable_hit") == 1


def test_fast_tier_serves_repeats_until_its_ttl(engine, clock):
    timer = ManualTimer()

    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock, timer=timer, fast_ttl_s=600)
        await cache.put("https://example.com/x", _malicious())
        await cache.get("https://example.com/x")
        timer.value += 601
        await cache.get("https://example.com/x/")
        return cache

    cache = asyncio.run(run())
    assert cache.metrics.count("cache.fast_hit") == 1
    assert cache.metrics.count("cache.durable_hit") == 1


def test_identical_writes_create_one_row(engine, clock):
    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        first = await cache.put("https://example.com/dup", _malicious())
        clock.advance(minutes=5)
        second = await cache.put("http://www.example.com/dup/", _malicious())
        return cache, first, second

    cache, first, second = asyncio.run(run())
    assert _count(engine, CachedResult) == 1
    assert second.verdict.last_scanned == first.verdict.last_scanned
    assert cache.metrics.count("cache.write") == 1
    assert cache.metrics.count("cache.duplicate_suppressed") == 1


def test_concurrent_identical_writes_create_one_row(engine, clock):
    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        entries = await asyncio.gather(*(cache.put("https://example.com/race", _malicious()) for _ in range(20)))
        return cache, entries

    cache, entries = asyncio.run(run())
    assert _count(engine, CachedResult) == 1
    assert len({e.verdict.last_scanned for e in entries}) == 1
    assert cache.metrics.count("cache.write") == 1
    assert cache.metrics.count("cache.duplicate_suppressed") == 19


def test_changed_verdict_is_stored_alongside(engine, clock):
    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        await cache.put("https://example.com/flip", Verdict(final_verdict="Safe", confidence_score="70%"))
        clock.advance(minutes=1)
        await cache.put("https://example.com/flip", _malicious())
        reader = TieredCache(DurableBackend(engine), clock=clock)
        return await reader.get("https://example.com/flip")

    hit = asyncio.run(run())
    assert _count(engine, CachedResult) == 2
    assert hit.verdict.final_verdict == "Malicious"


def test_non_cacheable_verdicts_are_never_stored(engine, clock):
    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        results = []
        for kind in ("Whitelisted", "Scan Failed", "Unknown"):
            results.append(await cache.put(f"https://example.com/{kind}", Verdict(final_verdict=kind)))
        return results, await cache.get("https://example.com/Unknown")

    results, hit = asyncio.run(run())
    assert all(r.persisted is False for r in results)
    assert _count(engine, CachedResult) == 0
    assert hit is None


def test_expired_entries_are_hidden_then_archived(engine, clock):
    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        await cache.put("https://example.com/old", _malicious())
        clock.advance(days=7, seconds=1)
        hit = await cache.get("https://example.com/old")
        removed = await cache.invalidate_expired()
        return hit, removed

    hit, removed = asyncio.run(run())
    assert hit is None
    assert removed == 1
    assert _count(engine, CachedResult) == 0
    assert _count(engine, DeletedCachedLink) == 1


def test_expired_entry_does_not_block_a_fresh_write(engine, clock):
    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        await cache.put("https://example.com/again", _malicious())
        clock.advance(days=8)
        return await cache.put("https://example.com/again", _malicious())

    fresh = asyncio.run(run())
    assert fresh.verdict.expires_at == clock.now + timedelta(days=7)
    assert _count(engine, CachedResult) == 2


def test_unreachable_store_degrades_to_memory(tmp_path, clock):
    broken = make_engine(f"sqlite:///{tmp_path / 'missing-dir' / 'devscan.db'}")

    async def run():
        cache = TieredCache(DurableBackend(broken), clock=clock)
        await cache.put("https://example.com/m", _malicious())
        return cache, await cache.get("https://example.com/m")

    cache, hit = asyncio.run(run())
    assert cache.durable_available is False
    assert cache.backend_name == "memory"
    assert hit.verdict.final_verdict == "Malicious"
    broken.dispose()


def test_mid_call_store_failures_fall_back(clock):
    timer = ManualTimer()

    async def run():
        cache = TieredCache(FlakyBackend(), clock=clock, timer=timer)
        await cache.open()
        await cache.put("https://example.com/f", _malicious())
        timer.value += 601
        hit = await cache.get("https://example.com/f")
        removed = await cache.invalidate_expired()
        return cache, hit, removed

    cache, hit, removed = asyncio.run(run())
    assert cache.durable_available is True
    assert hit.verdict.final_verdict == "Malicious"
    assert removed == 0
    assert cache.metrics.count("cache.write_fallback") == 1
    assert cache.metrics.count("cache.fallback_hit") == 1


def test_dangling_link_reference_falls_back(engine, clock):
    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        await cache.put("https://example.com/fk", _malicious(), link_id=424242)
        return cache, await cache.get("https://example.com/fk")

    cache, hit = asyncio.run(run())
    assert _count(engine, CachedResult) == 0
    assert cache.metrics.count("cache.write_fallback") == 1
    assert hit is not None and hit.link_id == 424242


def test_cleanup_removes_only_non_cacheable_rows(engine, clock):
    init_schema(engine)
    future = clock.now + timedelta(days=1)
    with Session(engine) as session, session.begin():
        for kind in ("Safe", "Scan Failed", "Whitelisted"):
            session.add(CachedResult(url=f"https://example.com/{kind}", final_verdict=kind, expires_at=future))

    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        return await cache.cleanup_non_cacheable()

    assert asyncio.run(run()) == 2
    assert _count(engine, CachedResult) == 1


def test_legacy_rows_are_found_through_their_link(engine, clock):
    init_schema(engine)
    with Session(engine) as session, session.begin():
        scan = ScanSession(browser_info="test", engine_version="DEVSCAN-4.0")
        session.add(scan)
        session.flush()
        link = ScannedLink(session_id=scan.session_id, url="https://legacy.example/")
        session.add(link)
        session.flush()
        link_id = link.link_id
        session.add(
            CachedResult(
                link_id=link_id,
                url=None,
                final_verdict="Anomalous",
                confidence_score="55%",
                anomaly_risk_level="Medium",
                last_scanned=clock.now,
                expires_at=clock.now + timedelta(days=1),
            )
        )

    async def run():
        cache = TieredCache(DurableBackend(engine), clock=clock)
        return await cache.get("https://legacy.example/"), await cache.get_by_link_id(link_id)

    by_url, by_link = asyncio.run(run())
    assert by_url.verdict.final_verdict == "Anomalous"
    assert by_link.verdict.confidence_score == "55%"


def test_in_memory_backend_prefers_newest_variant(clock):
    from devscan_agent.backends import CacheEntry

    backend = InMemoryBackend()
    older = Verdict(final_verdict="Safe", last_scanned=clock.now - timedelta(hours=1), expires_at=clock.now + timedelta(days=1))
    newer = Verdict(final_verdict="Malicious", last_scanned=clock.now, expires_at=clock.now + timedelta(days=1))

    async def run():
        await backend.insert_if_absent(CacheEntry(url="http://example.com/p", verdict=older), clock.now)
        await backend.insert_if_absent(CacheEntry(url="https://example.com/p", verdict=newer), clock.now)
        return await backend.find({"http://example.com/p", "https://example.com/p"}, clock.now)

    assert asyncio.run(run()).verdict.final_verdict == "Malicious"
