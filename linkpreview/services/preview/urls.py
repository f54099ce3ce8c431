"""URL canonicalisation and cache key derivation.

The normalised URL string is the only input to key derivation, so two
spellings of the same resource share cache entries.
"""

from __future__ import annotations

import hashlib
import re
import string
from enum import Enum
from typing import NamedTuple
from urllib.parse import urlsplit, urlunsplit

from pydantic import HttpUrl, ValidationError

_PERCENT_ESCAPE = re.compile(r"%([0-9A-Fa-f]{2})")
_UNRESERVED = frozenset(string.ascii_letters + string.digits + "-._~")


class InvalidURL(ValueError):
    """Raised when an input string is not an absolute http(s) URL."""


class CacheKind(str, Enum):
    METADATA = "metadata"
    IMAGE = "image"
    PROXY = "proxy"


class CacheKeys(NamedTuple):
    metadata: str
    image: str


def _canonical_escape(match: re.Match[str]) -> str:
    char = chr(int(match.group(1), 16))
    if char in _UNRESERVED:
        return char
    return match.group(0).upper()


def normalize_url(raw: str | None) -> str:
    """Return the canonical form of *raw*.

    Scheme and host are lowercased, default ports and dot segments removed
    (by pydantic's ``HttpUrl``), the fragment and an empty query dropped,
    and percent escapes canonicalised.  Idempotent.

    Raises:
        InvalidURL: if *raw* is empty or not an absolute http(s) URL.
    """
    if raw is None or not raw.strip():
        raise InvalidURL("URL is empty")
    try:
        parsed = str(HttpUrl(raw.strip()))
    except ValidationError as exc:
        raise InvalidURL(f"Invalid URL: {raw}") from exc

    parts = urlsplit(parsed)
    path = _PERCENT_ESCAPE.sub(_canonical_escape, parts.path) or "/"
    query = _PERCENT_ESCAPE.sub(_canonical_escape, parts.query)
    return urlunsplit((parts.scheme, parts.netloc, path, query, ""))


def url_hash(normalized_url: str) -> str:
    return hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()


def cache_key(normalized_url: str, kind: CacheKind, namespace: str) -> str:
    """Derive the store key for one artifact kind of *normalized_url*.

    All kinds share ``<namespace>:<sha256>``; non-metadata kinds append
    their name so each artifact can exist or expire on its own.
    """
    base = f"{namespace}:{url_hash(normalized_url)}"
    if kind is CacheKind.METADATA:
        return base
    return f"{base}:{kind.value}"


def derive_cache_keys(normalized_url: str, namespace: str) -> CacheKeys:
    return CacheKeys(
        metadata=cache_key(normalized_url, CacheKind.METADATA, namespace),
        image=cache_key(normalized_url, CacheKind.IMAGE, namespace),
    )
