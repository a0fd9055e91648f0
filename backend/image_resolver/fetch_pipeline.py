"""
Fetch Pipeline

One bounded network retrieval for a resolved URL.

- Timeout cancels the in-flight request and reports FetchTimeout
- URLs httpx refuses to build are InvalidReference
- Transport faults are NetworkFailure, non-2xx is HttpStatusError
- Zero-byte bodies are EmptyPayload, never success
- Readability follows browser cross-origin rules so strategies can tell an
  opaque response from a usable one
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

import httpx

from .errors import EmptyPayload, FetchTimeout, HttpStatusError, InvalidReference, NetworkFailure
from .payload import media_type

logger = logging.getLogger(__name__)

DEFAULT_ACCEPT = "image/*,*/*;q=0.8"


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


@dataclass
class FetchResponse:
    """Bytes and headers returned by a single attempt."""
    url: str
    status_code: int
    content: bytes
    content_type: str
    headers: httpx.Headers
    same_origin: bool
    credentials: bool

    @property
    def readable(self) -> bool:
        """
        Whether the page may read this body.

        Same-origin responses are always readable. Cross-origin responses need
        Access-Control-Allow-Origin for the page; a wildcard does not cover
        credentialed requests.
        """
        if self.same_origin:
            return True
        allow_origin = self.headers.get("access-control-allow-origin", "").strip()
        if not allow_origin:
            return False
        if self.credentials:
            allow_credentials = self.headers.get("access-control-allow-credentials", "")
            return allow_origin != "*" and allow_credentials.lower() == "true"
        return True

    @property
    def opaque(self) -> bool:
        return not self.readable


class FetchPipeline:
    """
    Executes exactly one request per call.

    Usage:
        pipeline = FetchPipeline(client, page_origin="https://contracts.example")
        response = await pipeline.fetch(url, timeout=15.0)
    """

    def __init__(self, client: httpx.AsyncClient, page_origin: str):
        self.client = client
        self.page_origin = origin_of(page_origin)

    async def fetch(
        self,
        url: str,
        *,
        timeout: float,
        credentials: bool = True,
        accept: str = DEFAULT_ACCEPT,
        extra_headers: Optional[dict] = None,
    ) -> FetchResponse:
        headers = {"Accept": accept, "Cache-Control": "no-cache", "Pragma": "no-cache"}
        if extra_headers:
            headers.update(extra_headers)

        try:
            request = self.client.build_request("GET", url, headers=headers)
        except httpx.InvalidURL as e:
            raise InvalidReference(f"Invalid URL: {url[:60]}") from e
        if not credentials:
            request.headers.pop("Cookie", None)

        try:
            response = await asyncio.wait_for(self.client.send(request), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(f"[FetchPipeline] Timeout after {timeout}s: {url[:60]}...")
            raise FetchTimeout(f"Timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning(f"[FetchPipeline] Network error: {url[:60]}... - {e}")
            raise NetworkFailure(str(e) or e.__class__.__name__) from e

        if not response.is_success:
            raise HttpStatusError(response.status_code, response.reason_phrase)

        content = response.content
        if not content:
            raise EmptyPayload(f"Empty body from {url[:60]}")

        return FetchResponse(
            url=url,
            status_code=response.status_code,
            content=content,
            content_type=media_type(response.headers.get("content-type")),
            headers=response.headers,
            same_origin=origin_of(url) == self.page_origin,
            credentials=credentials,
        )
