"""
Contract Image Relay Server

FastAPI application serving the image relay routes.

    uvicorn main:app --port 8001
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from image_relay import dev_router, http_client, router as relay_router

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Image relay starting")
    yield
    await http_client.aclose()
    logger.info("Image relay stopped")


def create_app(enable_dev_relay: bool = None) -> FastAPI:
    """Build the application; the dev relay is mounted outside production."""
    if enable_dev_relay is None:
        enable_dev_relay = os.getenv("APP_ENV", "development").lower() == "development"

    app = FastAPI(
        title="Contract Image Relay",
        description="Same-origin relay for contract storage images",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(relay_router)
    if enable_dev_relay:
        app.include_router(dev_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8001")),
        reload=os.getenv("APP_ENV", "development") == "development",
    )
