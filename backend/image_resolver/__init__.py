"""
Image Resolver Module

Turns image references from contract data into embeddable pixel data.

Features:
- Environment-aware routing (direct, dev relay, same-origin relay)
- Fallback strategies with retry and exponential backoff
- Time-expiring in-memory cache
- Batched loading and periodic refresh with a circuit breaker
"""

from .environment import Environment, DEFAULT_ALLOWED_HOSTS
from .cache import ImageCache
from .loader import ImageLoader
from .batch import BatchLoader
from .refresh import RefreshScheduler, SchedulerState, watch_data_ready
from .payload import ImagePayload
from .url_resolver import ResolvedRoute, RouteKind, resolve_route, normalize_reference

__all__ = [
    "Environment",
    "DEFAULT_ALLOWED_HOSTS",
    "ImageCache",
    "ImageLoader",
    "BatchLoader",
    "RefreshScheduler",
    "SchedulerState",
    "watch_data_ready",
    "ImagePayload",
    "ResolvedRoute",
    "RouteKind",
    "resolve_route",
    "normalize_reference",
]
