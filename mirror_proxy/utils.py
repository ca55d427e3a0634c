"""Utility helpers for origin normalization and URL handling."""

from __future__ import annotations

import codecs
from typing import Optional, Tuple
from urllib.parse import urljoin, urlsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_origin(value: str) -> str:
    """Reduce a URL to ``scheme://host[:port]`` as a browser computes its origin.

    Raises ``ValueError`` if ``value`` has no scheme or host.
    """
    parts = urlsplit(value.strip())
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"Not an absolute URL: {value!r}")
    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def resolve_path(url: str, origin: str) -> Optional[Tuple[str, str]]:
    """Resolve ``url`` against ``origin`` and split it into (origin, path+query).

    Returns ``None`` for URLs without a network origin (``mailto:``,
    ``data:``, ``javascript:`` and friends). Malformed URLs raise
    ``ValueError``.
    """
    resolved = urljoin(origin + "/", url.strip())
    parts = urlsplit(resolved)
    if parts.scheme not in DEFAULT_PORTS or not parts.hostname:
        return None
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return normalize_origin(resolved), path


def strip_origin(value: str, origin: str) -> str:
    """Remove every raw and slash-escaped occurrence of ``origin`` from ``value``."""
    escaped = origin.replace("/", "\\/")
    previous = None
    while previous != value:
        previous = value
        value = value.replace(origin, "").replace(escaped, "")
    return value


def split_query(path: str) -> str:
    """Drop the query string from a path+query value."""
    return path.split("?", 1)[0]


def is_ok(status: int) -> bool:
    """True for 2xx statuses; aiohttp's ``ClientResponse.ok`` also accepts 3xx."""
    return 200 <= status < 300


def is_html(content_type: Optional[str]) -> bool:
    return bool(content_type) and "text/html" in content_type.lower()


def pick_encoding(charset: Optional[str], default: str = "utf-8") -> str:
    """Return a codec name Python knows, falling back to ``default``."""
    if not charset:
        return default
    try:
        return codecs.lookup(charset).name
    except LookupError:
        return default
