"""
Runtime Environment

Single value object describing where the resolver runs. Every component
receives it at construction time instead of probing globals.

Presets mirror the two deployments:
- development: local dev server with a path-rewriting relay
- hosted: production platform with the same-origin HTTP relay
"""

import os
from dataclasses import dataclass, field, replace
from typing import FrozenSet

# Storage host serving contract images. The relay checks the same set.
STORAGE_HOST = "my-bus.storage-te.com"
DEFAULT_ALLOWED_HOSTS: FrozenSet[str] = frozenset({STORAGE_HOST})

DEV_RELAY_PREFIX = "/__mbus__"
RELAY_PATH = "/relay"

# Query parameters added for cache busting; never part of the cache key.
VOLATILE_PARAMS = frozenset({"_t", "_v", "_refresh"})


def _split_hosts(value: str) -> FrozenSet[str]:
    return frozenset(h.strip().lower() for h in value.split(",") if h.strip())


@dataclass(frozen=True)
class Environment:
    """Resolver configuration for one runtime."""
    development: bool = True
    page_origin: str = "http://localhost:5173"
    allowed_hosts: FrozenSet[str] = DEFAULT_ALLOWED_HOSTS
    benign_hosts: FrozenSet[str] = field(default_factory=frozenset)
    allow_direct: bool = True
    cache_bust: bool = False

    dev_relay_prefix: str = DEV_RELAY_PREFIX
    dev_relay_host: str = STORAGE_HOST    # Only host the dev path-prefix relay forwards to
    relay_path: str = RELAY_PATH

    # Fetch / retry
    timeout: float = 15.0           # Seconds per attempt
    max_attempts: int = 3
    backoff_unit: float = 1.0       # Multiplier for 2 ** attempt

    # Batch loading
    batch_size: int = 3
    batch_delay: float = 0.1        # Seconds between groups

    # Refresh scheduling
    refresh_interval: float = 120.0
    refresh_max_failures: int = 3

    @classmethod
    def development_preset(cls, **overrides) -> "Environment":
        return replace(cls(), **overrides)

    @classmethod
    def hosted_preset(cls, page_origin: str, **overrides) -> "Environment":
        base = cls(
            development=False,
            page_origin=page_origin,
            cache_bust=True,
            timeout=20.0,
            max_attempts=5,
            batch_size=2,
            batch_delay=0.3,
        )
        return replace(base, **overrides)

    @classmethod
    def from_env(cls) -> "Environment":
        """
        Build an environment from process variables.

        APP_ENV=production selects the hosted preset; PAGE_ORIGIN,
        IMAGE_ALLOWED_HOSTS and IMAGE_BENIGN_HOSTS refine it.
        """
        hosted = os.getenv("APP_ENV", "development").lower() in ("production", "hosted")
        origin = os.getenv("PAGE_ORIGIN", "").rstrip("/")
        overrides = {}
        if os.getenv("IMAGE_ALLOWED_HOSTS"):
            overrides["allowed_hosts"] = _split_hosts(os.getenv("IMAGE_ALLOWED_HOSTS"))
        if os.getenv("IMAGE_BENIGN_HOSTS"):
            overrides["benign_hosts"] = _split_hosts(os.getenv("IMAGE_BENIGN_HOSTS"))

        if hosted:
            return cls.hosted_preset(origin or "https://localhost", **overrides)
        if origin:
            overrides["page_origin"] = origin
        return cls.development_preset(**overrides)

    def is_allowed(self, host: str) -> bool:
        return (host or "").lower() in self.allowed_hosts
