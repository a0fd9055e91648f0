"""
Image Relay Module

Same-origin relay that lets the contract page load storage images without
cross-origin restrictions.

Features:
- Strict host allow-list shared with the client-side resolver
- Fixed upstream timeout with JSON error bodies
- Streams bytes back with the upstream content type and a 1h cache directive
"""

from .routes_fastapi import router, dev_router, http_client

__all__ = ["router", "dev_router", "http_client"]
