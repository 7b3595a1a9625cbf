"""
API routes module.
"""
from api.routes.video_proxy import router as video_proxy_router

__all__ = ["video_proxy_router"]
