from __future__ import annotations

import base64
import binascii
import re
from urllib.parse import unquote, urlsplit

_SUSPICIOUS_KEYWORDS = (
    # open redirects
    "redirect",
    "redir",
    "returnurl",
    "return_url",
    # credential harvesting
    "login",
    "signin",
    "sign-in",
    "logon",
    "verify",
    "password",
    "passwd",
    "credential",
    "webscr",
    # risky downloads
    ".exe",
    ".scr",
    ".bat",
    ".cmd",
    ".msi",
    ".vbs",
    ".ps1",
    ".hta",
    ".jar",
    ".apk",
    # script injection
    "javascript:",
    "vbscript:",
    "data:text/html",
    "<script",
    "onerror=",
    "onload=",
    "document.cookie",
)

# Parameter names that carry a destination URL.
_REDIRECT_PARAM_NAMES = frozenset(
    {
        "dest",
        "destination",
        "redirect",
        "redirect_uri",
        "redirect_url",
        "redir",
        "goto",
        "return_to",
        "returnurl",
        "next_url",
        "target_url",
    }
)

_SCRIPT_SCHEMES = ("javascript:", "vbscript:", "data:text/html")

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
_BASE64_URLSAFE_RE = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")
_MIN_BASE64_LEN = 8


def _contains_keyword(text: str) -> bool:
    lowered = text.lower()
    return any(k in lowered for k in _SUSPICIOUS_KEYWORDS)


def _decode_base64(value: str) -> str | None:
    if len(value) < _MIN_BASE64_LEN or len(value) % 4:
        return None
    try:
        if _BASE64_RE.match(value):
            raw = base64.b64decode(value, validate=True)
        elif _BASE64_URLSAFE_RE.match(value):
            raw = base64.urlsafe_b64decode(value)
        else:
            return None
        return raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


def _query_pairs(query: str) -> list[tuple[str, str]]:
    # Percent-decoding only; "+" stays literal so base64 payloads survive.
    pairs = []
    for chunk in query.split("&"):
        if not chunk:
            continue
        name, _, value = chunk.partition("=")
        pairs.append((unquote(name), unquote(value)))
    return pairs


def url_components(url: str) -> tuple[list[tuple[str, str]], list[str]]:
    """Percent-decoded query pairs and path segments of ``url``."""
    value = (url or "").strip()
    if "://" not in value:
        value = "https://" + value
    try:
        parts = urlsplit(value)
    except ValueError:
        return [], []

    pairs = _query_pairs(parts.query)
    segments = [unquote(s) for s in parts.path.split("/") if s]
    return pairs, segments


def is_suspicious(url: str) -> bool:
    if (url or "").strip().lower().startswith(_SCRIPT_SCHEMES):
        return True

    pairs, segments = url_components(url)

    if any(name.lower() in _REDIRECT_PARAM_NAMES for name, _ in pairs):
        return True

    values = [v for pair in pairs for v in pair if v]
    for value in (*values, *segments):
        if _contains_keyword(value):
            return True
        decoded = _decode_base64(value)
        if decoded is not None and _contains_keyword(decoded):
            return True
    return False
