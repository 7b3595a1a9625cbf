"""
Owned cache state for one application instance.

Holds the cache directory, the per-entry size cap and the background
prefetcher (and with it the in-flight download registry). One instance is
created at startup and kept on ``app.state``.
"""
import os
import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx

from core.config import MAX_CACHE_BYTES
from core.errors import DownloadConcurrencyError, DownloadNotAllowedError
from core.security import is_url_allowed
from services.cache import CacheHit, is_cached, sweep_stale_temp_files
from services.prefetcher import BackgroundPrefetcher
from services.tee import tee_to_cache

logger = logging.getLogger(__name__)


class CacheManager:
    def __init__(
        self,
        cache_dir: str,
        client: httpx.AsyncClient,
        max_entry_bytes: int = MAX_CACHE_BYTES,
        prefetcher: Optional[BackgroundPrefetcher] = None,
    ):
        self.cache_dir = cache_dir
        self.max_entry_bytes = max_entry_bytes
        self.prefetcher = prefetcher or BackgroundPrefetcher(client)
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)

    @property
    def enabled(self) -> bool:
        """An empty cache directory disables caching."""
        return bool(self.cache_dir)

    def is_cacheable_size(self, total_size: Optional[int]) -> bool:
        return self.enabled and total_size is not None and total_size <= self.max_entry_bytes

    async def lookup(self, url: str) -> Optional[CacheHit]:
        if not self.enabled:
            return None
        return await is_cached(self.cache_dir, url)

    def tee(self, url: str, upstream_body: AsyncIterator[bytes], content_type: str) -> AsyncIterator[bytes]:
        return tee_to_cache(self.cache_dir, url, upstream_body, content_type, self.max_entry_bytes)

    def prefetch(self, url: str) -> Optional[asyncio.Task]:
        """Fire-and-forget background download; guard rejections are only logged."""
        try:
            return self.prefetcher.start(self.cache_dir, url, is_url_allowed, self.max_entry_bytes)
        except (DownloadConcurrencyError, DownloadNotAllowedError) as e:
            logger.info(f"PREFETCH skipped: {e.message} ({url[:60]}...)")
            return None

    def sweep(self) -> int:
        if not self.enabled:
            return 0
        return sweep_stale_temp_files(self.cache_dir)

    async def close(self):
        await self.prefetcher.shutdown()
