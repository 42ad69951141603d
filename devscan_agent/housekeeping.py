from __future__ import annotations

import asyncio
import logging

from .cache import TieredCache
from .logutil import log_exception_throttled


logger = logging.getLogger(__name__)


async def run_cleanup(cache: TieredCache) -> tuple[int, int]:
    """Sweep expired entries, then drop any non-cacheable ones. Returns both counts."""
    expired = await cache.invalidate_expired()
    non_cacheable = await cache.cleanup_non_cacheable()
    return expired, non_cacheable


async def _sweep_loop(cache: TieredCache, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(float(interval_seconds))
        try:
            await cache.invalidate_expired()
        except Exception:
            log_exception_throttled(
                logger,
                "housekeeping.sweep",
                interval_seconds=300,
                message="Expired cache sweep failed",
            )


def start_sweeper(cache: TieredCache, interval_seconds: float) -> asyncio.Task | None:
    """Start the periodic expiry sweep on the running loop.

    An interval of 0 or less disables it. The caller owns the returned task and
    cancels it on shutdown.
    """
    if interval_seconds <= 0:
        logger.info("Periodic cache sweep disabled")
        return None
    logger.info("Sweeping expired cache entries every %gs", interval_seconds)
    return asyncio.create_task(_sweep_loop(cache, interval_seconds), name="cache-sweeper")
