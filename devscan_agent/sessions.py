from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from .backends import TransientStoreError, entry_from_row, run_sync
from .db import CachedResult, ScannedLink, ScanSession
from .models import CACHEABLE_VERDICTS, Verdict, utcnow


logger = logging.getLogger(__name__)


class SessionStore:
    """Scan sessions and the links recorded under them."""

    def __init__(self, engine: Engine, *, engine_version: str = "DEVSCAN-4.0"):
        self._engine = engine
        self.engine_version = engine_version

    def _get_or_create_sync(self, session_id: int | None, browser_info: str | None, domain: str | None) -> int | None:
        with Session(self._engine) as session, session.begin():
            if session_id is not None and session.get(ScanSession, session_id) is not None:
                return session_id
            if not browser_info and not domain:
                return None
            row = ScanSession(
                browser_info=browser_info or f"Extension scan from {domain}",
                engine_version=self.engine_version,
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            return row.session_id

    async def get_or_create_session(
        self, session_id: int | None, browser_info: str | None = None, domain: str | None = None
    ) -> int | None:
        try:
            sid = await run_sync(self._get_or_create_sync, session_id, browser_info, domain)
        except TransientStoreError as exc:
            logger.warning("Could not resolve scan session %s: %s", session_id, exc)
            return None
        if sid is not None and sid != session_id:
            logger.info("Created scan session %s", sid)
        return sid

    def _record_sync(self, session_id: int | None, url: str, page_url: str | None) -> int:
        with Session(self._engine) as session, session.begin():
            row = ScannedLink(session_id=session_id, url=url, page_url=page_url, scanned_at=utcnow())
            session.add(row)
            session.flush()
            return row.link_id

    async def record_scanned_link(self, session_id: int | None, url: str, page_url: str | None = None) -> int:
        """Raises ``TransientStoreError`` (or ``ForeignKeyViolation``) on failure."""
        return await run_sync(self._record_sync, session_id, url, page_url)

    def _processed_sync(self, session_id: int, page_url: str) -> set[str]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(ScannedLink.url).where(ScannedLink.session_id == session_id, ScannedLink.page_url == page_url)
            )
            return set(rows)

    async def processed_links_for_page(
        self, session_id: int | None, page_url: str | None, page_refreshed: bool = False
    ) -> set[str]:
        # A refreshed page is scanned from scratch.
        if session_id is None or not page_url or page_refreshed:
            return set()
        try:
            return await run_sync(self._processed_sync, session_id, page_url)
        except TransientStoreError as exc:
            logger.warning("Could not load processed links for %s: %s", page_url, exc)
            return set()

    def _session_verdicts_sync(self, session_id: int, urls: list[str]) -> dict[str, Verdict]:
        now = utcnow()
        with Session(self._engine) as session:
            rows = session.execute(
                select(ScannedLink.url, CachedResult)
                .join(CachedResult, CachedResult.link_id == ScannedLink.link_id)
                .where(
                    ScannedLink.session_id == session_id,
                    ScannedLink.url.in_(urls),
                    CachedResult.expires_at > now,
                    CachedResult.final_verdict.in_(sorted(CACHEABLE_VERDICTS)),
                )
                .order_by(CachedResult.last_scanned.desc())
            )
            out: dict[str, Verdict] = {}
            for url, cached in rows:
                out.setdefault(url, entry_from_row(cached).verdict)
            return out

    async def find_cached_verdicts_for_session(self, session_id: int | None, urls: Iterable[str]) -> dict[str, Verdict]:
        wanted = sorted(set(urls))
        if session_id is None or not wanted:
            return {}
        try:
            return await run_sync(self._session_verdicts_sync, session_id, wanted)
        except TransientStoreError as exc:
            logger.warning("Could not load cached verdicts for session %s: %s", session_id, exc)
            return {}
