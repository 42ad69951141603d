"""URL canonicalization for cache keys and whitelist lookups.

``normalize_url`` maps every spelling of a resource (scheme, ``www.`` prefix,
trailing slash, host case) onto one key; ``url_variants`` goes the other way and
lists the spellings an earlier scan may have been stored under. Neither raises.
"""
from __future__ import annotations

import re
from urllib.parse import SplitResult, urlsplit

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z\d+.-]*://")
# A leading "name:" that is not a bare "host:port".
_ANY_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z\d+.-]*):(?!\d+(?:[/?#]|$))")
_QUERY_OR_FRAGMENT_RE = re.compile(r"[?#]")
_WEB_SCHEMES = ("http", "https")


def _browser_slashes(value: str) -> str:
    # Browsers read "\" as "/" before the query in http(s) URLs.
    m = _QUERY_OR_FRAGMENT_RE.search(value)
    cut = m.start() if m else len(value)
    return value[:cut].replace("\\", "/") + value[cut:]


def _split(raw: str) -> SplitResult:
    value = (raw or "").strip()
    if not value:
        raise ValueError("empty URL")

    m = _ANY_SCHEME_RE.match(value)
    if m and m.group(1).lower() not in _WEB_SCHEMES:
        raise ValueError(f"not an http(s) URL: {raw!r}")
    value = _browser_slashes(value)
    if not _SCHEME_RE.match(value):
        value = "https://" + value

    parsed = urlsplit(value)
    if parsed.scheme not in _WEB_SCHEMES:
        raise ValueError(f"not an http(s) URL: {raw!r}")
    if not parsed.hostname:
        raise ValueError(f"URL has no host: {raw!r}")
    # Accessing .port validates it (raises ValueError for garbage like ':abc').
    parsed.port
    return parsed


def _strip_www(host: str) -> str:
    while host.startswith("www.") and len(host) > 4:
        host = host[4:]
    return host


def _host_port(parsed: SplitResult, host: str) -> str:
    if ":" in host:
        host = f"[{host}]"
    port = parsed.port
    return f"{host}:{port}" if port is not None else host


def _fallback_key(raw: str) -> str:
    return (raw or "").strip().lower().rstrip("/")


def _normalize_once(raw: str) -> str:
    try:
        parsed = _split(raw)
    except ValueError:
        return _fallback_key(raw)

    host = _host_port(parsed, _strip_www(parsed.hostname or ""))
    path = parsed.path.rstrip("/") or "/"
    normalized = f"https://{host}{path}"
    if parsed.query:
        normalized += "?" + parsed.query
    return normalized


def normalize_url(raw: str) -> str:
    key = _normalize_once(raw)
    # A fallback key can itself be parseable; settle on a fixed point.
    for _ in range(3):
        again = _normalize_once(key)
        if again == key:
            break
        key = again
    return key


def url_variants(raw: str) -> set[str]:
    """All spellings a cached verdict for ``raw`` may be stored under."""
    try:
        parsed = _split(raw)
    except ValueError:
        return {raw, normalize_url(raw)}

    bare = _strip_www(parsed.hostname or "")
    hosts = (_host_port(parsed, bare), _host_port(parsed, "www." + bare))
    stripped = parsed.path.rstrip("/")
    paths = (stripped, stripped + "/")
    query = "?" + parsed.query if parsed.query else ""

    variants = {raw, normalize_url(raw)}
    for scheme in ("http", "https"):
        for host in hosts:
            for path in paths:
                variants.add(f"{scheme}://{host}{path}{query}")
    return variants


def extract_domain(raw: str) -> str | None:
    """Lower-cased host without leading ``www.``; ``None`` when unparsable."""
    try:
        parsed = _split(raw)
    except ValueError:
        return None
    return _strip_www((parsed.hostname or "").rstrip("."))


def strip_fragment(u: str) -> str:
    try:
        return urlsplit(u)._replace(fragment="").geturl()
    except ValueError:
        return u
