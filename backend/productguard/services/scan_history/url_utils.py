"""
URL normalization for delta detection.

Two URLs that differ only in scheme, a leading www., query string,
fragment, case or trailing slashes are the same infringement.
"""
import hashlib
import re

_SCHEME_RE = re.compile(r"^https?://")
_WWW_RE = re.compile(r"^www\.")
_QUERY_FRAGMENT_RE = re.compile(r"[?#].*$")
_TRAILING_SLASH_RE = re.compile(r"/+$")


def normalize_url(url: str) -> str:
    """Canonical form used as the dedup key."""
    normalized = url.strip().lower()
    normalized = _SCHEME_RE.sub("", normalized)
    normalized = _WWW_RE.sub("", normalized)
    normalized = _QUERY_FRAGMENT_RE.sub("", normalized)
    normalized = _TRAILING_SLASH_RE.sub("", normalized)
    return normalized


def hash_url(url: str) -> str:
    """SHA-256 hex digest of the normalized URL."""
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()
