"""
URL Resolver

Classifies an image reference and decides how it is fetched:
- DIRECT: used as-is (foreign hosts, and allow-listed hosts the dev relay
  does not forward to)
- DEV_RELAY: dev relay host, rewritten to the dev server's path-prefix relay
- PROD_RELAY: allow-listed host, rewritten to the same-origin /relay endpoint
- REJECTED: host not allowed and direct fetching is disabled

Routes are recomputed on every call and never cached.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import parse_qsl, quote, urlencode, urljoin, urlsplit, urlunsplit

import httpx

from .environment import VOLATILE_PARAMS, Environment
from .errors import InvalidReference

logger = logging.getLogger(__name__)


class RouteKind(str, Enum):
    DIRECT = "direct"
    DEV_RELAY = "dev_relay"
    PROD_RELAY = "prod_relay"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ResolvedRoute:
    """Where to fetch a reference from."""
    kind: RouteKind
    url: str          # Absolute URL to request
    reference: str    # Absolute form of the original reference

    @property
    def rewritten(self) -> bool:
        return self.kind in (RouteKind.DEV_RELAY, RouteKind.PROD_RELAY)


def is_data_url(value) -> bool:
    """Check whether a reference already carries its payload inline."""
    return isinstance(value, str) and value.strip().lower().startswith("data:")


def _to_absolute(raw: str, page_origin: str) -> str:
    """Parse an absolute URL, falling back to the page origin for relative paths."""
    try:
        parts = urlsplit(raw)
        if not parts.scheme:
            parts = urlsplit(urljoin(page_origin.rstrip("/") + "/", raw))
    except ValueError as e:
        raise InvalidReference(f"Unparseable reference: {raw[:80]}") from e

    if parts.scheme.lower() not in ("http", "https"):
        raise InvalidReference(f"Unsupported scheme '{parts.scheme}': {raw[:80]}")
    if not parts.hostname:
        raise InvalidReference(f"Reference has no host: {raw[:80]}")

    absolute = urlunsplit(parts)
    # Must also parse as an httpx URL
    try:
        httpx.URL(absolute)
    except httpx.InvalidURL as e:
        raise InvalidReference(f"Invalid URL: {raw[:80]}") from e
    return absolute


def _strip_volatile(url: str) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
             if k not in VOLATILE_PARAMS]
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path,
                       urlencode(query), ""))


def normalize_reference(raw, page_origin: str) -> Optional[str]:
    """
    Cache and dedup key for a reference.

    Returns None for references with nothing to fetch (non-strings, blanks,
    data URLs). Raises InvalidReference when the reference cannot be parsed.
    """
    if not isinstance(raw, str) or not raw.strip() or is_data_url(raw):
        return None
    return _strip_volatile(_to_absolute(raw.strip(), page_origin))


def add_cache_bust(url: str, param: str, token: str) -> str:
    """Set a cache-busting query parameter, replacing any previous value."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != param]
    query.append((param, token))
    return urlunsplit(parts._replace(query=urlencode(query)))


def resolve_route(raw, environment: Environment, bust: Optional[str] = None) -> Optional[ResolvedRoute]:
    """
    Pick the fetch route for a reference.

    Args:
        raw: Reference as supplied by upstream data
        environment: Runtime the route is computed for
        bust: Optional cache-busting token added as the `_t` parameter

    Returns:
        ResolvedRoute, or None when there is nothing to fetch.
    """
    if not isinstance(raw, str) or not raw.strip() or is_data_url(raw):
        return None

    absolute = _to_absolute(raw.strip(), environment.page_origin)
    target = add_cache_bust(absolute, "_t", bust) if bust else absolute
    parts = urlsplit(target)

    if not environment.is_allowed(parts.hostname):
        if not environment.allow_direct:
            logger.warning(f"[ImageResolver] Host not allowed: {parts.hostname}")
            return ResolvedRoute(RouteKind.REJECTED, target, absolute)
        return ResolvedRoute(RouteKind.DIRECT, target, absolute)

    origin = environment.page_origin.rstrip("/")
    if environment.development:
        if parts.hostname.lower() != environment.dev_relay_host.lower():
            # The dev relay forwards to a single host; others are fetched directly
            return ResolvedRoute(RouteKind.DIRECT, target, absolute)
        path = parts.path or "/"
        relayed = f"{origin}{environment.dev_relay_prefix}{path}"
        if parts.query:
            relayed = f"{relayed}?{parts.query}"
        return ResolvedRoute(RouteKind.DEV_RELAY, relayed, absolute)

    relayed = f"{origin}{environment.relay_path}?url={quote(target, safe='')}"
    return ResolvedRoute(RouteKind.PROD_RELAY, relayed, absolute)


def needs_relay(raw, environment: Environment) -> bool:
    """True when the reference targets an allow-listed host on another origin."""
    try:
        route = resolve_route(raw, environment)
    except InvalidReference:
        return False
    if route is None or not route.rewritten:
        return False
    return urlsplit(route.reference).netloc != urlsplit(environment.page_origin).netloc
