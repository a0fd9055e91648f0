"""
Fallback Chain

Ordered retrieval strategies tried until one yields readable bytes:
1. cors: credentialed cross-origin request, opaque results rejected
2. anonymous: no credentials, opaque accepted only for benign hosts
3. render: image-element style load decoded through Pillow and re-encoded
   as PNG, the way a canvas export would normalize it

A strategy failure is recorded and the next strategy runs. Only exhaustion of
the whole chain is reported upward. Non-retryable errors (an invalid
reference) end the chain at once.
"""

import logging
import time
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional, Sequence
from urllib.parse import urlsplit

from PIL import Image, UnidentifiedImageError

from .environment import Environment
from .errors import ImageLoadError, OpaqueBlocked, StrategiesExhausted, UndecodableImage
from .fetch_pipeline import FetchPipeline
from .payload import DEFAULT_CONTENT_TYPE, ImagePayload

logger = logging.getLogger(__name__)

IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8"


@dataclass
class LoadAttempt:
    """Outcome of one strategy execution."""
    strategy: str
    success: bool
    elapsed: float
    error: Optional[str] = None


class FetchStrategy:
    """Base strategy: subclasses implement `run`."""

    name = "base"

    def __init__(self, pipeline: FetchPipeline, environment: Environment):
        self.pipeline = pipeline
        self.environment = environment

    async def run(self, url: str) -> ImagePayload:
        raise NotImplementedError


class CorsStrategy(FetchStrategy):
    name = "cors"

    async def run(self, url: str) -> ImagePayload:
        response = await self.pipeline.fetch(url, timeout=self.environment.timeout, credentials=True)
        if response.opaque:
            raise OpaqueBlocked("Credentialed response is not readable")
        return ImagePayload(response.content, response.content_type or DEFAULT_CONTENT_TYPE)


class AnonymousStrategy(FetchStrategy):
    name = "anonymous"

    async def run(self, url: str) -> ImagePayload:
        response = await self.pipeline.fetch(url, timeout=self.environment.timeout, credentials=False)
        if response.opaque:
            host = (urlsplit(url).hostname or "").lower()
            if host not in self.environment.benign_hosts:
                raise OpaqueBlocked(f"Opaque response from {host}")
            logger.debug(f"[FallbackChain] Accepting opaque response from benign host {host}")
        return ImagePayload(response.content, response.content_type or DEFAULT_CONTENT_TYPE)


class RenderStrategy(FetchStrategy):
    """Decode through an image primitive and export pixels as PNG."""

    name = "render"

    async def run(self, url: str) -> ImagePayload:
        response = await self.pipeline.fetch(
            url,
            timeout=self.environment.timeout,
            credentials=False,
            accept=IMAGE_ACCEPT,
        )
        if response.opaque:
            raise OpaqueBlocked("Canvas would be tainted by cross-origin pixels")
        return ImagePayload(self._rasterize(response.content), "image/png")

    @staticmethod
    def _rasterize(data: bytes) -> bytes:
        try:
            img = Image.open(BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise UndecodableImage(f"Cannot decode image: {e}") from e

        if img.mode not in ("RGB", "RGBA"):
            has_alpha = img.mode in ("LA", "PA", "P") or "transparency" in img.info
            img = img.convert("RGBA" if has_alpha else "RGB")

        output = BytesIO()
        img.save(output, format="PNG")
        return output.getvalue()


DEFAULT_STRATEGIES = (CorsStrategy, AnonymousStrategy, RenderStrategy)


class FallbackChain:
    """
    Runs strategies in order for one retrieval attempt.

    Usage:
        chain = FallbackChain.default(pipeline, environment)
        payload = await chain.run(route.url)
    """

    def __init__(self, strategies: Sequence[FetchStrategy]):
        if not strategies:
            raise ValueError("FallbackChain needs at least one strategy")
        self.strategies = list(strategies)
        self.last_attempts: List[LoadAttempt] = []

    @classmethod
    def default(cls, pipeline: FetchPipeline, environment: Environment) -> "FallbackChain":
        return cls([strategy(pipeline, environment) for strategy in DEFAULT_STRATEGIES])

    async def run(self, url: str) -> ImagePayload:
        attempts: List[LoadAttempt] = []
        last_error: Optional[ImageLoadError] = None

        for strategy in self.strategies:
            started = time.monotonic()
            try:
                payload = await strategy.run(url)
            except ImageLoadError as e:
                if not e.retryable:
                    raise
                elapsed = time.monotonic() - started
                attempts.append(LoadAttempt(strategy.name, False, elapsed, str(e)))
                logger.debug(f"[FallbackChain] {strategy.name} failed in {elapsed:.2f}s: {e}")
                last_error = e
                continue

            elapsed = time.monotonic() - started
            attempts.append(LoadAttempt(strategy.name, True, elapsed))
            self.last_attempts = attempts
            logger.debug(f"[FallbackChain] {strategy.name} succeeded in {elapsed:.2f}s: {url[:60]}...")
            return payload

        self.last_attempts = attempts
        raise StrategiesExhausted(attempts) from last_error
