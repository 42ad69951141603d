from __future__ import annotations

import logging
import threading
from collections import Counter, defaultdict
from typing import Any, Dict


logger = logging.getLogger(__name__)


class PipelineMetrics:
    """Process-local counters and latency summaries.

    Recording never raises: observability must not change control flow.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter()
        self._timings: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"count": 0, "total_s": 0.0, "max_s": 0.0}
        )

    def incr(self, name: str, amount: int = 1) -> None:
        try:
            with self._lock:
                self._counters[name] += amount
        except Exception:
            logger.debug("metrics incr failed for %s", name, exc_info=True)

    def observe(self, name: str, seconds: float) -> None:
        try:
            with self._lock:
                t = self._timings[name]
                t["count"] += 1
                t["total_s"] += float(seconds)
                t["max_s"] = max(t["max_s"], float(seconds))
        except Exception:
            logger.debug("metrics observe failed for %s", name, exc_info=True)

    def count(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            timings = {}
            for name, t in self._timings.items():
                count = int(t["count"])
                timings[name] = {
                    "count": count,
                    "avg_ms": round(t["total_s"] / count * 1000, 2) if count else 0.0,
                    "max_ms": round(t["max_s"] * 1000, 2),
                }
            return {"counters": dict(self._counters), "timings": timings}
