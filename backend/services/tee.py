"""
Tee-to-cache streaming.

One producer loop pulls from upstream and feeds two legs: the client (by
yielding) and a temp file (by writing). The disk leg is best-effort; if it
fails, it drops out and the client keeps streaming. Overflow and idle
timeouts abort both legs.
"""
import logging
from typing import AsyncIterator, Optional

from core.config import IDLE_TIMEOUT_SECONDS
from core.errors import CacheWriteError, SizeLimitError
from services.cache import CacheFileWriter
from services.fetcher import iter_with_idle_timeout

logger = logging.getLogger(__name__)


async def tee_to_cache(
    cache_dir: str,
    url: str,
    upstream_body: AsyncIterator[bytes],
    content_type: str,
    max_size: int,
    idle_timeout: Optional[float] = IDLE_TIMEOUT_SECONDS,
) -> AsyncIterator[bytes]:
    """
    Stream ``upstream_body`` to the caller while caching it under ``url``.

    The entry only becomes visible after upstream finished, the meta file
    was written and the temp file was renamed into place. Closing this
    iterator before upstream finishes (client disconnect) deletes the temp
    file instead.

    Raises:
        SizeLimitError: more than ``max_size`` bytes arrived.
        UpstreamError: upstream failed or went idle for ``idle_timeout``.
    """
    writer: Optional[CacheFileWriter] = CacheFileWriter(cache_dir, url)
    stream = iter_with_idle_timeout(upstream_body, idle_timeout)
    total = 0
    upstream_done = False

    try:
        try:
            await writer.open()
        except CacheWriteError as e:
            logger.warning(f"Caching disabled for this stream: {e}")
            writer = None

        async for chunk in stream:
            total += len(chunk)
            if total > max_size:
                logger.error(f"Cache tee aborted after {total} bytes: upstream resource too large")
                raise SizeLimitError("Upstream resource too large")

            if writer is not None:
                try:
                    await writer.write(chunk)
                except CacheWriteError as e:
                    logger.warning(f"Caching abandoned mid-stream: {e}")
                    writer = None

            yield chunk

        upstream_done = True

        if writer is not None:
            try:
                await writer.commit(content_type)
            except CacheWriteError as e:
                logger.warning(f"Cache finalize error: {e}")
    finally:
        if not upstream_done and writer is not None:
            await writer.discard()
        await stream.aclose()
        # The idle wrapper only closes upstream if it was ever started
        aclose = getattr(upstream_body, "aclose", None)
        if aclose is not None:
            await aclose()
