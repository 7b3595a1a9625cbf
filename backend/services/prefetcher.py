"""
Background prefetching of whole media files into the disk cache.

Players seek with Range requests, which are never cached directly. When one
misses, a background download of the full resource is started so that the
next request is served from disk. Downloads are deduplicated per URL and
capped at a small number in flight; excess requests are rejected rather
than queued.
"""
import asyncio
import logging
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional

import httpx

from core.config import (
    DOWNLOAD_TIMEOUT_SECONDS,
    IDLE_TIMEOUT_SECONDS,
    MAX_CONCURRENT_DOWNLOADS,
    MAX_DOWNLOAD_REDIRECTS,
)
from core.errors import (
    DownloadConcurrencyError,
    DownloadNotAllowedError,
    SizeLimitError,
    UpstreamError,
)
from services.cache import CacheFileWriter, is_cached
from services.fetcher import fetch_with_redirects, stream_upstream

logger = logging.getLogger(__name__)


class BackgroundPrefetcher:
    """
    Tracks in-flight background downloads by URL.

    All guard checks and registration in ``start`` happen without awaiting,
    so concurrent callers on the event loop can never register the same URL
    twice or overshoot the concurrency ceiling.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_concurrent: int = MAX_CONCURRENT_DOWNLOADS,
        timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
        max_redirects: int = MAX_DOWNLOAD_REDIRECTS,
        idle_timeout: Optional[float] = IDLE_TIMEOUT_SECONDS,
    ):
        self._client = client
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.idle_timeout = idle_timeout
        self._active: Dict[str, asyncio.Task] = {}

    @property
    def active_downloads(self) -> Mapping[str, asyncio.Task]:
        """Read-only view of the in-flight registry."""
        return MappingProxyType(self._active)

    def start(
        self,
        cache_dir: str,
        url: str,
        url_validator: Callable[[str], bool],
        max_size: int,
    ) -> asyncio.Task:
        """
        Start (or join) a background download of ``url`` into ``cache_dir``.

        Returns the tracked task; a second call for the same URL while the
        first is running returns the very same task. The task never raises:
        failures are logged and it resolves to None.

        Raises:
            DownloadConcurrencyError: the in-flight ceiling has been reached.
            DownloadNotAllowedError: the URL fails validation.
        """
        existing = self._active.get(url)
        if existing is not None:
            return existing

        if len(self._active) >= self.max_concurrent:
            raise DownloadConcurrencyError("Max concurrent downloads reached")

        if not url_validator(url):
            raise DownloadNotAllowedError("URL not allowed")

        task = asyncio.get_running_loop().create_task(
            self._run(cache_dir, url, url_validator, max_size)
        )
        self._active[url] = task
        task.add_done_callback(lambda t: self._forget(url, t))
        logger.info(f"PREFETCH: started background download ({len(self._active)} active) {url[:60]}...")
        return task

    def _forget(self, url: str, task: asyncio.Task):
        if self._active.get(url) is task:
            del self._active[url]

    async def _run(self, cache_dir: str, url: str, url_validator: Callable[[str], bool], max_size: int):
        try:
            await asyncio.wait_for(self._download(cache_dir, url, url_validator, max_size), self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Background download timed out after {self.timeout}s ({url[:80]})")
        except Exception as e:
            logger.error(f"Background download failed ({url[:80]}): {e}")

    async def _download(self, cache_dir: str, url: str, url_validator: Callable[[str], bool], max_size: int):
        if await is_cached(cache_dir, url):
            logger.info(f"PREFETCH: already cached {url[:60]}...")
            return

        response = await fetch_with_redirects(
            self._client,
            url,
            max_redirects=self.max_redirects,
            connect_timeout=None,  # Covered by the overall download timeout
            url_validator=url_validator,
        )
        body = stream_upstream(response, self.idle_timeout)
        try:
            if not response.is_success:
                raise UpstreamError(f"Upstream returned {response.status_code}")

            content_type = response.headers.get("content-type") or "video/mp4"
            content_length = response.headers.get("content-length")
            if content_length and content_length.isdigit() and int(content_length) > max_size:
                raise SizeLimitError("Resource too large")

            writer = CacheFileWriter(cache_dir, url)
            await writer.open()
            committed = False
            try:
                async for chunk in body:
                    await writer.write(chunk)
                    # Chunked responses have no trustworthy length up front
                    if writer.bytes_written > max_size:
                        raise SizeLimitError("Downloaded file exceeds max size")
                await writer.commit(content_type, max_size=max_size)
                committed = True
            finally:
                if not committed:
                    await writer.discard()
        finally:
            await body.aclose()
            await response.aclose()

        logger.info(f"PREFETCH OK: background download complete {url[:60]}...")

    async def shutdown(self):
        """Cancel every in-flight download and wait for them to unwind."""
        tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background download(s)")
