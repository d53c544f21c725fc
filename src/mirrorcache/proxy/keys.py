"""Cache key derivation and target URL resolution.

A key looks like ``cache/example.com/img/a.png--sha1=<40 hex>``. The prefix
keeps objects browsable in the bucket; the hash of the exact requested URL
keeps keys unique when long URLs are truncated to fit the store's limit.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from typing import Optional
from urllib.parse import urlsplit

from .errors import BadRequest


MAX_KEY_BYTES = 1024
KEY_PREFIX = "cache/"
HASH_MARKER = "--sha1="
HASH_LENGTH = 40

_SCHEME_RE = re.compile(r"^https?://")


def url_hash(url: str) -> str:
    return hashlib.sha1(url.encode("utf-8")).hexdigest()


def strip_scheme(url: str) -> str:
    return _SCHEME_RE.sub("", url, count=1)


def _truncate_utf8(value: str, max_bytes: int) -> str:
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    # "ignore" drops a trailing partial multi-byte sequence
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def derive_key(url: str) -> str:
    """Map a requested URL to its object-cache key (at most MAX_KEY_BYTES bytes)."""
    digest = url_hash(url)
    budget = MAX_KEY_BYTES - len(HASH_MARKER) - len(digest)
    prefix = _truncate_utf8(KEY_PREFIX + strip_scheme(url), budget)
    return f"{prefix}{HASH_MARKER}{digest}"


def split_key(key: str) -> tuple[str, str]:
    """Split a derived key into its URL prefix and hash suffix."""
    prefix, marker, digest = key.rpartition(HASH_MARKER)
    if not marker or len(digest) != HASH_LENGTH:
        raise ValueError(f"not a derived cache key: {key!r}")
    return prefix, digest


def decode_extra_params(blob: str) -> str:
    """Decode the base64 ``params`` query blob (standard or URL-safe, padding optional)."""
    cleaned = blob.strip()
    padded = cleaned + "=" * (-len(cleaned) % 4)
    altchars = b"-_" if ("-" in cleaned or "_" in cleaned) else None
    try:
        raw = base64.b64decode(padded, altchars=altchars, validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise BadRequest("Invalid params parameter") from exc


def encode_extra_params(query: str) -> str:
    return base64.urlsafe_b64encode(query.encode("utf-8")).decode("ascii")


def resolve_target_url(url: str, extra_params: Optional[str]) -> str:
    """Append decoded extra query parameters to the requested URL.

    Both the key lookup and the origin fetch go through here, so they always
    agree on the URL.
    """
    if not extra_params:
        return url
    decoded = decode_extra_params(extra_params)
    if not decoded:
        return url
    if not decoded.startswith("?"):
        decoded = "?" + decoded
    return url + decoded


def request_path(url: str) -> str:
    try:
        return urlsplit(url).path
    except ValueError:
        return ""
