from __future__ import annotations

import logging
import sys
import threading
import time


class _LineFormatter(logging.Formatter):
    """[ 2026-10-19 09:55:02 UTC ] : INFO : devscan_agent.cache : message"""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__(
            fmt="[ %(asctime)s UTC ] : %(levelname)s : %(name)s : %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level)
    # Reloads and test clients may call this more than once.
    if any(getattr(h, "_devscan", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_LineFormatter())
    handler._devscan = True  # type: ignore[attr-defined]
    root.addHandler(handler)


class _Throttle:
    """Per-key gate that opens again ``interval`` seconds after it last let a record through."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._reopens_at: dict[str, float] = {}

    def allow(self, key: str, interval: float) -> bool:
        now = self._clock()
        with self._lock:
            if now < self._reopens_at.get(key, now):
                return False
            self._reopens_at[key] = now + float(interval)
            return True


_throttle = _Throttle()


def should_log(key: str, *, interval_seconds: float) -> bool:
    return _throttle.allow(key, interval_seconds)


def log_exception_throttled(logger, key: str, *args, interval_seconds: float, message: str) -> None:
    """``logger.exception`` for background loops, suppressed while ``key`` was reported recently.

    Call it from inside an ``except`` block. A failing handler is ignored so the loop keeps running.
    """
    if not should_log(key, interval_seconds=interval_seconds):
        return
    try:
        logger.exception(message, *args)
    except Exception:
        pass
