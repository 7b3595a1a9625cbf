"""
On-disk cache store for proxied media.

Layout: ``<cache_dir>/<sha256(url)><ext>`` holds the media bytes and a
``.meta`` sidecar holds the upstream content type. Writers always go through
a ``.tmp`` sibling and rename into place, so an entry is either complete or
absent.
"""
import os
import re
import time
import uuid
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

import aiofiles
import aiofiles.os

from core.config import STALE_TEMP_AGE_SECONDS, TEMP_SWEEP_INTERVAL_SECONDS
from core.errors import CacheWriteError, SizeLimitError

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".mp4"
META_SUFFIX = ".meta"
TEMP_SUFFIX = ".tmp"

_SAFE_EXTENSION = re.compile(r"^\.[a-zA-Z0-9]{1,10}$")


@dataclass(frozen=True)
class CacheHit:
    file_path: str
    content_type: str


def get_cache_key(url: str) -> str:
    """SHA-256 hex of the URL: deterministic, filesystem-safe, no traversal."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def _extract_extension(url: str) -> str:
    """Extension of the URL path (e.g. '.webm'), or '' if missing or unsafe."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    ext = os.path.splitext(path)[1]
    if ext and _SAFE_EXTENSION.match(ext):
        return ext
    return ""


def get_cache_path(cache_dir: str, url: str) -> str:
    """Full path to the cached media file."""
    ext = _extract_extension(url) or DEFAULT_EXTENSION
    return os.path.join(cache_dir, get_cache_key(url) + ext)


def get_cache_meta_path(cache_path: str) -> str:
    """Sidecar metadata file (stores upstream content-type)."""
    return cache_path + META_SUFFIX


def get_cache_temp_path(cache_path: str) -> str:
    """
    Unique in-progress path next to the final file.

    Same directory as the entry so the final rename stays on one volume.
    The random token keeps concurrent writers of the same URL apart.
    """
    return f"{cache_path}.{uuid.uuid4().hex[:16]}{TEMP_SUFFIX}"


async def is_cached(cache_dir: str, url: str) -> Optional[CacheHit]:
    """
    Return the cache entry for a URL if it is complete.

    Requires a non-empty media file and a non-empty meta sidecar. Any
    filesystem error is treated as a miss.
    """
    file_path = get_cache_path(cache_dir, url)
    meta_path = get_cache_meta_path(file_path)

    try:
        stat = await aiofiles.os.stat(file_path)
        if stat.st_size == 0:
            return None
        async with aiofiles.open(meta_path, "r", encoding="utf-8") as f:
            content_type = (await f.read()).strip()
    except (OSError, ValueError):
        return None

    if not content_type:
        return None
    return CacheHit(file_path=file_path, content_type=content_type)


def remove_quietly(path: str) -> None:
    """Delete a file, ignoring it if it's already gone."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")


class CacheFileWriter:
    """
    Writes one cache entry through a temp file and commits it atomically.

    Every failure removes the temp file before raising CacheWriteError, so
    callers only need to decide whether to keep going without the cache.
    """

    def __init__(self, cache_dir: str, url: str):
        self.file_path = get_cache_path(cache_dir, url)
        self.meta_path = get_cache_meta_path(self.file_path)
        self.temp_path = get_cache_temp_path(self.file_path)
        self.bytes_written = 0
        self._file = None

    async def open(self):
        try:
            self._file = await aiofiles.open(self.temp_path, "wb")
        except OSError as e:
            await self.discard()
            raise CacheWriteError(f"Cannot open {self.temp_path}: {e}") from e

    async def write(self, chunk: bytes):
        try:
            await self._file.write(chunk)
        except OSError as e:
            await self.discard()
            raise CacheWriteError(f"Cache write failed: {e}") from e
        self.bytes_written += len(chunk)

    async def commit(self, content_type: str, max_size: Optional[int] = None):
        """
        Write the meta sidecar and rename the temp file into place.

        With ``max_size`` set, the on-disk size is checked first and an
        oversized file is discarded with SizeLimitError.
        """
        try:
            await self._close()
            if max_size is not None:
                stat = await aiofiles.os.stat(self.temp_path)
                if stat.st_size > max_size:
                    await self.discard()
                    raise SizeLimitError("Downloaded file exceeds max size")
            async with aiofiles.open(self.meta_path, "w", encoding="utf-8") as f:
                await f.write(content_type)
            await aiofiles.os.replace(self.temp_path, self.file_path)
        except OSError as e:
            await self.discard()
            raise CacheWriteError(f"Cache finalize failed: {e}") from e
        logger.info(f"Cached {self.bytes_written} bytes: {os.path.basename(self.file_path)}")

    async def discard(self):
        """Close and delete the temp file. Safe to call more than once."""
        try:
            await self._close()
        except OSError:
            pass
        remove_quietly(self.temp_path)

    async def _close(self):
        if self._file is not None:
            f, self._file = self._file, None
            await f.close()


def sweep_stale_temp_files(cache_dir: str, max_age: float = STALE_TEMP_AGE_SECONDS) -> int:
    """
    Remove orphaned .tmp files left behind by a crashed process.

    Only in-progress artifacts older than ``max_age`` are touched; committed
    entries are never removed. Returns the number of files deleted.
    """
    removed = 0
    if not cache_dir or not os.path.isdir(cache_dir):
        return removed

    now = time.time()
    for name in os.listdir(cache_dir):
        if not name.endswith(TEMP_SUFFIX):
            continue
        path = os.path.join(cache_dir, name)
        try:
            if now - os.path.getmtime(path) > max_age:
                os.remove(path)
                removed += 1
        except OSError:
            continue  # Finished or removed by its writer meanwhile
    if removed:
        logger.info(f"Removed {removed} stale temp file(s) from {cache_dir}")
    return removed


async def temp_sweep_task(cache_dir: str, interval: float = TEMP_SWEEP_INTERVAL_SECONDS):
    """Background task to periodically sweep stale temp files."""
    while True:
        await asyncio.sleep(interval)
        try:
            sweep_stale_temp_files(cache_dir)
        except Exception as e:
            logger.error(f"Error in temp sweep task: {e}")
