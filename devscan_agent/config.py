from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_HERE = Path(__file__).resolve()
_REPO_ROOT = _HERE.parents[1]

DEFAULT_MANUAL_WHITELIST: tuple[str, ...] = (
    "google.com",
    "microsoft.com",
    "apple.com",
    "github.com",
    "stackoverflow.com",
    "wikipedia.org",
)


def load_env() -> None:
    # Real environment wins over the repo .env file.
    load_dotenv(_REPO_ROOT / ".env", override=False)


def _env_str(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        try:
            return int(float(raw))
        except ValueError:
            return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./devscan.db"

    ml_service_url: str = "http://localhost:5000/analyze"
    ml_timeout_s: float = 120.0
    ml_max_attempts: int = 2
    ml_retry_delay_s: float = 2.0
    ml_health_timeout_s: float = 5.0

    whitelist_path: str = str(_REPO_ROOT / "data" / "top-1m.csv")
    whitelist_cutoff_rank: int = 1000
    manual_whitelist: tuple[str, ...] = DEFAULT_MANUAL_WHITELIST

    fast_cache_ttl_s: float = 10 * 60
    fast_cache_maxsize: int = 10_000
    fallback_cache_ttl_s: float = 24 * 60 * 60
    fallback_cache_maxsize: int = 50_000
    cache_entry_ttl_days: int = 7
    cache_sweep_interval_s: float = 60 * 60

    resolve_concurrency: int = 8
    engine_version: str = "DEVSCAN-4.0"
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        # Timeouts and delays are configured in milliseconds, like the extension side.
        return cls(
            database_url=_env_str("DEVSCAN_DATABASE_URL", cls.database_url),
            ml_service_url=_env_str("ML_SERVICE_URL", cls.ml_service_url),
            ml_timeout_s=_env_int("ML_TIMEOUT", 120_000) / 1000,
            ml_max_attempts=max(1, _env_int("ML_MAX_ATTEMPTS", cls.ml_max_attempts)),
            ml_retry_delay_s=max(0, _env_int("ML_RETRY_DELAY_MS", 2000)) / 1000,
            ml_health_timeout_s=_env_int("ML_HEALTH_TIMEOUT_MS", 5000) / 1000,
            whitelist_path=_env_str("WHITELIST_PATH", cls.whitelist_path),
            whitelist_cutoff_rank=_env_int("WHITELIST_CUTOFF_RANK", cls.whitelist_cutoff_rank),
            manual_whitelist=_env_list("MANUAL_WHITELIST", DEFAULT_MANUAL_WHITELIST),
            fast_cache_ttl_s=_env_float("FAST_CACHE_TTL_S", cls.fast_cache_ttl_s),
            fast_cache_maxsize=_env_int("FAST_CACHE_MAXSIZE", cls.fast_cache_maxsize),
            fallback_cache_ttl_s=_env_float("FALLBACK_CACHE_TTL_S", cls.fallback_cache_ttl_s),
            fallback_cache_maxsize=_env_int("FALLBACK_CACHE_MAXSIZE", cls.fallback_cache_maxsize),
            cache_entry_ttl_days=_env_int("CACHE_ENTRY_TTL_DAYS", cls.cache_entry_ttl_days),
            cache_sweep_interval_s=_env_float("CACHE_SWEEP_INTERVAL_S", cls.cache_sweep_interval_s),
            resolve_concurrency=max(1, _env_int("RESOLVE_CONCURRENCY", cls.resolve_concurrency)),
            engine_version=_env_str("ENGINE_VERSION", cls.engine_version),
            cors_origins=_env_list("DEVSCAN_CORS_ORIGINS", ("*",)),
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
        )
