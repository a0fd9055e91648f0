"""
Image Loader

Facade used by the view layer. Resolves a reference to pixel data:

    reference -> normalize -> cache lookup -> route -> retry(fallback chain)
              -> cache store -> ImagePayload

Concurrent loads of the same normalized reference share one in-flight task.
The task is cancelled when every caller waiting on it has been cancelled.
"""

import asyncio
import logging
import time
from typing import Dict, Optional

import httpx

from .cache import ImageCache
from .environment import Environment
from .errors import DomainRejected, ImageLoadError
from .fallback_chain import FallbackChain
from .fetch_pipeline import FetchPipeline
from .payload import ImagePayload
from .retry import RetryController
from .url_resolver import RouteKind, is_data_url, normalize_reference, resolve_route

logger = logging.getLogger(__name__)


class ImageLoader:
    """
    Usage:
        loader = ImageLoader(Environment.from_env(), ImageCache())
        data_url = await loader.load_data_url(trip["vehicle_photo"])
        await loader.close()
    """

    def __init__(
        self,
        environment: Environment,
        cache: ImageCache,
        client: Optional[httpx.AsyncClient] = None,
        chain: Optional[FallbackChain] = None,
        retry: Optional[RetryController] = None,
    ):
        self.environment = environment
        self.cache = cache

        self._owns_client = client is None
        self.http_client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "ContractImageResolver/1.0"},
        )
        self.pipeline = FetchPipeline(self.http_client, environment.page_origin)
        self.chain = chain or FallbackChain.default(self.pipeline, environment)
        self.retry = retry or RetryController(
            max_attempts=environment.max_attempts,
            backoff_unit=environment.backoff_unit,
        )
        self._inflight: Dict[str, asyncio.Task] = {}
        self._waiters: Dict[asyncio.Task, int] = {}

    async def close(self):
        """Close HTTP client if this loader created it."""
        if self._owns_client:
            await self.http_client.aclose()

    def image_src(self, reference) -> Optional[str]:
        """
        Source string the view can put straight into an <img> tag.

        Data URLs pass through, fetchable references become their route URL,
        anything invalid or rejected becomes None.
        """
        if is_data_url(reference):
            return reference.strip()
        try:
            route = resolve_route(reference, self.environment)
        except ImageLoadError as e:
            logger.warning(f"[ImageLoader] Cannot resolve reference: {e}")
            return None
        if route is None or route.kind == RouteKind.REJECTED:
            return None
        return route.url

    async def load(
        self,
        reference,
        *,
        bypass_cache: bool = False,
        bust: Optional[str] = None,
    ) -> Optional[ImagePayload]:
        """
        Resolve a reference to pixel data.

        Returns None when there is nothing to fetch (blank reference).

        Raises:
            InvalidReference, DomainRejected: deterministic, not retried
            RetryExhausted: every attempt failed
        """
        if is_data_url(reference):
            return ImagePayload.from_data_url(reference.strip())

        key = normalize_reference(reference, self.environment.page_origin)
        if key is None:
            return None

        if not bypass_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"[ImageLoader] Cache hit: {key[:60]}...")
                return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(reference, key, bypass_cache, bust))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))

        self._waiters[task] = self._waiters.get(task, 0) + 1
        try:
            return await asyncio.shield(task)
        finally:
            self._waiters[task] -= 1
            if not self._waiters[task]:
                del self._waiters[task]
                if not task.done():
                    logger.debug(f"[ImageLoader] All callers gone, cancelling: {key[:60]}...")
                    task.cancel()
                    self._forget(key, task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _fetch_and_store(self, reference: str, key: str, bypass_cache: bool, bust: Optional[str]) -> ImagePayload:
        if bust is None and self.environment.cache_bust:
            bust = str(int(time.time() * 1000))

        route = resolve_route(reference, self.environment, bust=bust)
        if route.kind == RouteKind.REJECTED:
            raise DomainRejected(f"Domain not allowed: {route.reference[:80]}")

        started = time.monotonic()
        payload = await self.retry.run(lambda: self.chain.run(route.url), label=route.reference)
        self.cache.put(key, payload)

        logger.info(
            f"[ImageLoader] Loaded via {route.kind.value}: {key[:50]}... "
            f"({payload.size} bytes, {time.monotonic() - started:.2f}s"
            f"{', refreshed' if bypass_cache else ''})"
        )
        return payload

    async def load_or_none(self, reference, **kwargs) -> Optional[ImagePayload]:
        """Like `load`, but any resolution failure becomes None."""
        try:
            return await self.load(reference, **kwargs)
        except ImageLoadError as e:
            logger.warning(f"[ImageLoader] Failed: {str(reference)[:60]}... - {e}")
            return None

    async def load_data_url(self, reference) -> Optional[str]:
        """Collaborator entry point: usable image source or None."""
        payload = await self.load_or_none(reference)
        return payload.to_data_url() if payload else None
