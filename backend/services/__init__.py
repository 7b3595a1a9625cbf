"""
Services module exports.
"""
from services.cache import (
    CacheHit,
    get_cache_key,
    get_cache_path,
    get_cache_meta_path,
    is_cached,
    sweep_stale_temp_files,
)
from services.fetcher import fetch_with_redirects, iter_with_idle_timeout
from services.tee import tee_to_cache
from services.range_server import parse_range, serve_cached_file
from services.prefetcher import BackgroundPrefetcher
from services.cache_manager import CacheManager

__all__ = [
    "CacheHit",
    "get_cache_key",
    "get_cache_path",
    "get_cache_meta_path",
    "is_cached",
    "sweep_stale_temp_files",
    "fetch_with_redirects",
    "iter_with_idle_timeout",
    "tee_to_cache",
    "parse_range",
    "serve_cached_file",
    "BackgroundPrefetcher",
    "CacheManager",
]
