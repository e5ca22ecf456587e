"""Cache/flight key derivation and upstream URL building.

Cache keys embed the auth tier: anonymous-tier and authenticated responses
never share an entry.
"""

from typing import Any, Optional
from urllib.parse import quote, urlencode

NOCACHE_SUFFIX = ":nocache"
_BYPASS_VALUES = ("1", "true")


def auth_tier(token: Optional[str]) -> str:
    """Return ``"auth"`` when an upstream credential is configured, else ``"anon"``."""
    return "auth" if token else "anon"


def cache_key(
    tier: str,
    resource_type: str,
    resource_id: str,
    subresource: str,
    page: Any,
    per: Any,
) -> str:
    """Build the stable identity of a cacheable upstream response.

    Example:
        >>> cache_key("anon", "channels", "my-work", "contents", 1, 100)
        'anon:channels:my-work:contents:page=1:per=100'
    """
    return f"{tier}:{resource_type}:{resource_id}:{subresource}:page={page}:per={per}"


def flight_key(key: str, bypass_cache: bool) -> str:
    """Return the dedup key; bypassing requests never join a cached-path flight."""
    return f"{key}{NOCACHE_SUFFIX}" if bypass_cache else key


def is_bypass(value: Optional[str]) -> bool:
    """Interpret the ``nocache`` query flag. Only ``"1"`` and ``"true"`` count."""
    return value in _BYPASS_VALUES


def upstream_url(
    base: str,
    resource_type: str,
    resource_id: str,
    subresource: str,
    page: Any,
    per: Any,
) -> str:
    qs = urlencode({"page": page, "per": per})
    return (
        f"{base.rstrip('/')}/{resource_type}/{quote(str(resource_id), safe='')}"
        f"/{subresource}?{qs}"
    )
