"""Best-effort link helpers for the extension: redirect resolution and link extraction."""
from __future__ import annotations

import html
import logging
import re

import httpx

from .models import ExtractLinksResponse, UnshortenResponse
from .url_utils import strip_fragment


logger = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/122.0.0.0 Safari/537.36"
_MAX_REDIRECTS = 10

_ATTR_RE = re.compile(r"\b(href|src|action|data-href)\s*=\s*([\"']?)([^\"'\s>]+)\2", re.IGNORECASE)
_ONCLICK_RE = re.compile(r"\bonclick\s*=\s*(\"[^\"]*\"|'[^']*')", re.IGNORECASE)
_HTTP_RE = re.compile(r"https?://[^\s'\"]+", re.IGNORECASE)


async def unshorten_url(
    url: str, *, timeout_s: float = 10.0, transport: httpx.AsyncBaseTransport | None = None
) -> UnshortenResponse:
    """Follow redirects and report where ``url`` finally lands."""
    current = url
    try:
        async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            for _ in range(_MAX_REDIRECTS):
                res = await client.get(current, headers={"user-agent": _USER_AGENT})
                if 300 <= res.status_code < 400 and res.headers.get("location"):
                    current = str(httpx.URL(current).join(res.headers["location"]))
                    continue
                return UnshortenResponse(success=True, url=current)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.warning("Could not resolve %s: %s", url, exc)
        return UnshortenResponse(success=False, message="Failed to resolve URL")

    logger.warning("Too many redirects resolving %s", url)
    return UnshortenResponse(success=False, message="Failed to resolve URL")


def _absolute(base: httpx.URL, value: str) -> str | None:
    value = html.unescape(value.strip())
    if not value or value.startswith("#"):
        return None
    try:
        joined = base.join(value)
    except (httpx.InvalidURL, ValueError):
        return None
    if joined.scheme not in ("http", "https") or not joined.host:
        return None
    return strip_fragment(str(joined))


def find_links(page_html: str, base_url: str) -> list[str]:
    """Absolute http(s) URLs referenced by ``page_html``, deduplicated in document order."""
    base = httpx.URL(base_url)
    found: list[tuple[int, str]] = []
    for m in _ATTR_RE.finditer(page_html):
        found.append((m.start(), m.group(3)))
    for m in _ONCLICK_RE.finditer(page_html):
        target = _HTTP_RE.search(m.group(1)[1:-1])
        if target:
            found.append((m.start(), target.group(0)))

    links: list[str] = []
    seen: set[str] = set()
    for _, raw in sorted(found, key=lambda item: item[0]):
        link = _absolute(base, raw)
        if link and link not in seen:
            seen.add(link)
            links.append(link)
    return links


async def extract_links(
    url: str, *, timeout_s: float = 10.0, transport: httpx.AsyncBaseTransport | None = None
) -> ExtractLinksResponse:
    try:
        async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True, transport=transport) as client:
            res = await client.get(url, headers={"user-agent": "DEVScan-Server/1.0"})
            res.raise_for_status()
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.warning("Link extraction failed for %s: %s", url, exc)
        return ExtractLinksResponse(success=False, error=str(exc) or exc.__class__.__name__)

    return ExtractLinksResponse(success=True, links=find_links(res.text, str(res.url)))
