"""
Media Proxy Backend - Main Application

This is the entry point for the FastAPI application.
Most logic lives in:
- core/: Configuration, security checks and error types
- services/: Upstream fetching, disk cache, range serving, prefetching
- api/routes/: REST API endpoints
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import ALLOWED_ORIGINS, CACHE_DIR
from services.cache import temp_sweep_task
from services.cache_manager import CacheManager
from services.fetcher import create_proxy_client
from api.routes.video_proxy import router as video_proxy_router

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    cache_manager: Optional[CacheManager] = None,
    proxy_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the application.

    ``cache_manager`` and ``proxy_client`` are created at startup unless
    given; injected instances are left for the caller to close.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - set up shared state and background tasks."""
        client = proxy_client or create_proxy_client()
        manager = cache_manager or CacheManager(CACHE_DIR, client)
        app.state.proxy_client = client
        app.state.cache_manager = manager

        tasks = []
        if manager.enabled:
            manager.sweep()
            tasks.append(asyncio.create_task(temp_sweep_task(manager.cache_dir)))
            logger.info(f"Video cache enabled at {manager.cache_dir}")
        else:
            logger.info("Video cache disabled")
        yield

        # Cancel and await all background tasks
        for task in tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when task is cancelled
            except Exception as e:
                logger.warning(f"Error during task shutdown: {e}")

        await manager.close()

        if proxy_client is None:
            await client.aclose()
            logger.info("Closed proxy HTTP client")

    app = FastAPI(title="Media Proxy Backend", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True if ALLOWED_ORIGINS != ["*"] else False,
        allow_methods=["*"],
        allow_headers=["*"],
        # Players need these to seek
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges"],
    )

    app.include_router(video_proxy_router)

    @app.get("/")
    def read_root():
        """Health check endpoint."""
        return {"status": "ok", "service": "Media Proxy Backend"}

    return app


app = create_app()


# ============================================================================
# Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
