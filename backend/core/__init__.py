"""
Core module exports.
"""
from core.config import (
    CACHE_DIR,
    MAX_CACHE_BYTES,
    MAX_SIZE_BYTES,
    CONNECT_TIMEOUT_SECONDS,
    IDLE_TIMEOUT_SECONDS,
    MAX_REDIRECTS,
    MAX_CONCURRENT_DOWNLOADS,
    DOWNLOAD_TIMEOUT_SECONDS,
)
from core.security import is_url_allowed, is_content_type_allowed, get_user_from_request

__all__ = [
    "CACHE_DIR",
    "MAX_CACHE_BYTES",
    "MAX_SIZE_BYTES",
    "CONNECT_TIMEOUT_SECONDS",
    "IDLE_TIMEOUT_SECONDS",
    "MAX_REDIRECTS",
    "MAX_CONCURRENT_DOWNLOADS",
    "DOWNLOAD_TIMEOUT_SECONDS",
    "is_url_allowed",
    "is_content_type_allowed",
    "get_user_from_request",
]
