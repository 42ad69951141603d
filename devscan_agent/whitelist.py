from __future__ import annotations

import asyncio
import csv
import logging
from pathlib import Path
from typing import Iterable, Sequence

from .config import DEFAULT_MANUAL_WHITELIST
from .models import WhitelistResult
from .url_utils import extract_domain


logger = logging.getLogger(__name__)


def _norm_domain(s: str) -> str:
    d = (s or "").strip().lower().rstrip(".")
    if d.startswith("www."):
        d = d[4:]
    return d


class WhitelistIndex:
    """Trusted-domain lookup: a manual allow-list plus a ranked top-N dataset.

    The ranked half is empty until ``load_csv``/``load_rows`` completes and is
    replaced wholesale on reload; it is never mutated in place.
    """

    def __init__(self, manual_domains: Iterable[str] = DEFAULT_MANUAL_WHITELIST, *, cutoff_rank: int = 1000):
        self.cutoff_rank = int(cutoff_rank)
        self._manual: frozenset[str] = frozenset(d for d in (_norm_domain(x) for x in manual_domains) if d)
        self._ranked: frozenset[str] = frozenset()
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def manual_domains(self) -> frozenset[str]:
        return self._manual

    @property
    def ranked_count(self) -> int:
        return len(self._ranked)

    def _collect(self, rows: Iterable[Sequence[str]]) -> frozenset[str]:
        domains: set[str] = set()
        for row in rows:
            if len(row) < 2:
                continue
            try:
                rank = int(str(row[0]).strip())
            except ValueError:
                # Header line or junk.
                continue
            domain = _norm_domain(row[1])
            if domain and 1 <= rank <= self.cutoff_rank:
                domains.add(domain)
        return frozenset(domains)

    def load_rows(self, rows: Iterable[Sequence[str]]) -> int:
        self._ranked = self._collect(rows)
        self._loaded = True
        return len(self._ranked)

    def _read_csv(self, path: Path) -> frozenset[str]:
        with path.open("r", encoding="utf-8", newline="") as fh:
            return self._collect(csv.reader(fh))

    async def load_csv(self, path: str | Path) -> int:
        """Stream a ``rank,domain`` file; on failure the ranked set stays empty."""
        p = Path(path)
        logger.info("Loading ranked domains from %s (top %d)", p, self.cutoff_rank)
        try:
            ranked = await asyncio.to_thread(self._read_csv, p)
        except (OSError, csv.Error, UnicodeDecodeError):
            logger.exception("Failed to load ranked domains from %s; continuing with manual whitelist only", p)
            self._ranked = frozenset()
            return 0
        self._ranked = ranked
        self._loaded = True
        logger.info("Loaded %d ranked domains (ranks 1-%d)", len(ranked), self.cutoff_rank)
        return len(ranked)

    def is_whitelisted(self, url: str) -> WhitelistResult:
        domain = extract_domain(url)
        if not domain:
            return WhitelistResult(whitelisted=False, domain=None, source="none", reason="invalid_url")

        if domain in self._manual:
            return WhitelistResult(whitelisted=True, domain=domain, source="manual", reason="manual_whitelist")

        if domain in self._ranked:
            return WhitelistResult(
                whitelisted=True,
                domain=domain,
                source="ranked",
                reason="ranked_safe",
                rank=f"1-{self.cutoff_rank}",
            )

        return WhitelistResult(whitelisted=False, domain=domain, source="none", reason="not_in_safe_rankings")
