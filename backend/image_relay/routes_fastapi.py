"""
Image Relay API Routes

Provides endpoints for:
- Relaying allow-listed storage images to the browser (bypasses CORS)
- Development path-prefix relay (/__mbus__/...) forwarding to storage
- Health check

The allow-list is the only thing standing between this relay and an open
proxy: every request is checked against it before any upstream traffic.
"""

import asyncio
import logging
import os
from typing import FrozenSet, Optional
from urllib.parse import unquote, urlsplit

import httpx
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from image_resolver.environment import DEFAULT_ALLOWED_HOSTS, DEV_RELAY_PREFIX, RELAY_PATH, STORAGE_HOST
from image_resolver.errors import InternalFault, RelayUpstreamError

logger = logging.getLogger(__name__)

# ============================================
# Configuration
# ============================================

RELAY_TIMEOUT_SECONDS = float(os.getenv("RELAY_TIMEOUT_SECONDS", "10"))
CACHE_MAX_AGE = int(os.getenv("RELAY_CACHE_MAX_AGE", "3600"))
DEV_RELAY_TARGET = os.getenv("DEV_RELAY_TARGET", f"https://{STORAGE_HOST}").rstrip("/")
DEFAULT_IMAGE_TYPE = "image/jpeg"
USER_AGENT = "Mozilla/5.0 (compatible; ImageProxy/1.0)"

ALLOWED_HOSTS: FrozenSet[str] = frozenset(
    h.strip().lower() for h in os.getenv("IMAGE_ALLOWED_HOSTS", "").split(",") if h.strip()
) or DEFAULT_ALLOWED_HOSTS

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

# HTTP client for upstream requests
http_client = httpx.AsyncClient(
    timeout=RELAY_TIMEOUT_SECONDS,
    follow_redirects=True,
    headers={"User-Agent": USER_AGENT, "Accept": "image/*,*/*;q=0.8"},
)


def get_http_client() -> httpx.AsyncClient:
    return http_client


def get_allowed_hosts() -> FrozenSet[str]:
    return ALLOWED_HOSTS


def get_relay_timeout() -> float:
    return RELAY_TIMEOUT_SECONDS


# ============================================
# Response Models
# ============================================


class ErrorResponse(BaseModel):
    """JSON body of every relay failure."""
    error: str


class HealthResponse(BaseModel):
    status: str
    service: str
    allowed_hosts: list
    timeout_seconds: float


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
        headers=CORS_HEADERS,
    )


# ============================================
# Upstream
# ============================================


async def _open_upstream(client: httpx.AsyncClient, url: str, timeout: float) -> httpx.Response:
    """
    Start an upstream GET and return the response with its body unread.

    Raises:
        RelayUpstreamError: upstream answered with a non-success status
        InternalFault: connection-level failure talking to the upstream
        asyncio.TimeoutError / httpx.TimeoutException: no answer in time
    """
    request = client.build_request("GET", url, headers={"User-Agent": USER_AGENT})
    try:
        response = await asyncio.wait_for(client.send(request, stream=True), timeout=timeout)
    except httpx.TimeoutException:
        raise
    except httpx.HTTPError as e:
        raise InternalFault(f"Upstream transport error: {e}") from e
    if not response.is_success:
        await response.aclose()
        raise RelayUpstreamError(response.status_code, response.reason_phrase)
    return response


async def _relay(client: httpx.AsyncClient, url: str, timeout: float):
    """Fetch `url` and stream it back, mapping failures to JSON errors."""
    try:
        logger.info(f"[ImageRelay] Fetching: {url[:80]}...")
        upstream = await _open_upstream(client, url, timeout)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        logger.error(f"[ImageRelay] Timeout: {url[:60]}...")
        return _error(408, "Request timeout")
    except RelayUpstreamError as e:
        logger.error(f"[ImageRelay] Upstream error {e.status_code}: {url[:60]}...")
        return _error(e.status_code, str(e))
    except InternalFault as e:
        logger.error(f"[ImageRelay] {e}")
        return _error(500, "Internal server error")
    except Exception as e:
        logger.exception(f"[ImageRelay] Relay error: {e}")
        return _error(500, "Internal server error")

    content_type = upstream.headers.get("content-type") or DEFAULT_IMAGE_TYPE
    headers = {**CORS_HEADERS, "Cache-Control": f"public, max-age={CACHE_MAX_AGE}"}

    return StreamingResponse(
        upstream.aiter_bytes(),
        media_type=content_type,
        headers=headers,
        background=BackgroundTask(upstream.aclose),
    )


# ============================================
# Router
# ============================================

router = APIRouter(prefix=RELAY_PATH, tags=["Image Relay"])
dev_router = APIRouter(prefix=DEV_RELAY_PREFIX, tags=["Image Relay (dev)"])


# ============================================
# Endpoints
# ============================================


@router.options("")
async def relay_preflight():
    """CORS preflight."""
    return Response(status_code=200, headers=CORS_HEADERS)


@router.get("")
async def relay_image(
    url: Optional[str] = Query(None, description="URL-encoded absolute image URL"),
    client: httpx.AsyncClient = Depends(get_http_client),
    allowed_hosts: FrozenSet[str] = Depends(get_allowed_hosts),
    timeout: float = Depends(get_relay_timeout),
):
    """
    Relay an allow-listed storage image.

    Example:
        GET /relay?url=https%3A%2F%2Fmy-bus.storage-te.com%2Fphotos%2Fbus.jpg
    """
    if not url or not url.strip():
        return _error(400, "URL parameter is required")

    # Decode URL if encoded
    try:
        decoded = unquote(url.strip(), errors="strict")
    except UnicodeDecodeError:
        return _error(400, "Invalid URL encoding")

    # Validate URL
    try:
        parsed = urlsplit(decoded)
        host = (parsed.hostname or "").lower()
    except ValueError:
        return _error(400, "Invalid URL")
    if parsed.scheme.lower() not in ("http", "https") or not host:
        return _error(400, "Invalid URL")

    if host not in allowed_hosts:
        logger.warning(f"[ImageRelay] Rejected host: {host}")
        return _error(403, "Domain not allowed")

    return await _relay(client, decoded, timeout)


@router.api_route("", methods=["POST", "PUT", "PATCH", "DELETE", "HEAD"])
async def relay_method_not_allowed():
    return _error(405, "Method not allowed")


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        service="image-relay",
        allowed_hosts=sorted(ALLOWED_HOSTS),
        timeout_seconds=RELAY_TIMEOUT_SECONDS,
    )


@dev_router.get("/{path:path}")
async def dev_relay_image(
    path: str,
    request: Request,
    client: httpx.AsyncClient = Depends(get_http_client),
    timeout: float = Depends(get_relay_timeout),
):
    """
    Development relay: /__mbus__/<path> is forwarded to the storage host.

    Only the fixed DEV_RELAY_TARGET is reachable through this route.
    """
    target = f"{DEV_RELAY_TARGET}/{path}"
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return await _relay(client, target, timeout)
