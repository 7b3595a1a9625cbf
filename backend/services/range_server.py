"""
Serve cached files with HTTP Range support.
"""
import re
import logging
from typing import AsyncIterator, Optional, Tuple

import aiofiles
import aiofiles.os
from starlette.responses import Response, StreamingResponse

from core.config import STREAM_CHUNK_SIZE
from core.errors import RangeNotSatisfiableError

logger = logging.getLogger(__name__)

_SUFFIX_RANGE = re.compile(r"^bytes=-(\d+)$")
_SPAN_RANGE = re.compile(r"^bytes=(\d+)-(\d*)$")


def parse_range(range_header: str, total_size: int) -> Tuple[int, int]:
    """
    Resolve a single-span Range header against a file size.

    Accepts 'bytes=start-end', 'bytes=start-' and the suffix form 'bytes=-N'
    (last N bytes, clamped to the whole file). Returns an inclusive
    (start, end) pair.

    Raises RangeNotSatisfiableError for malformed or out-of-bounds ranges.
    """
    header = range_header.strip()

    suffix_match = _SUFFIX_RANGE.match(header)
    if suffix_match:
        suffix = int(suffix_match.group(1))
        start = max(0, total_size - suffix)
        end = total_size - 1
    else:
        span_match = _SPAN_RANGE.match(header)
        if not span_match:
            raise RangeNotSatisfiableError("Invalid range", total_size)
        start = int(span_match.group(1))
        end = int(span_match.group(2)) if span_match.group(2) else total_size - 1

    if start >= total_size or end >= total_size or start > end:
        raise RangeNotSatisfiableError("Range not satisfiable", total_size)

    return start, end


async def _iter_open_file(f, length: int, chunk_size: int = STREAM_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Read ``length`` bytes from an already positioned file, then close it."""
    try:
        remaining = length
        while remaining > 0:
            chunk = await f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        await f.close()


async def serve_cached_file(range_header: Optional[str], file_path: str, content_type: str) -> Response:
    """
    Build the response for a cached file.

    No Range header gives 200 with the whole file, a valid range gives 206
    with that span, and an invalid one gives a bodyless 416.

    Raises OSError if the file disappeared; callers treat that as a miss.
    """
    stat = await aiofiles.os.stat(file_path)
    total_size = stat.st_size

    headers = {
        "Content-Type": content_type,
        "Accept-Ranges": "bytes",
    }

    if range_header:
        try:
            start, end = parse_range(range_header, total_size)
        except RangeNotSatisfiableError as e:
            logger.info(f"{e.message}: {range_header[:40]} (size {total_size})")
            headers["Content-Range"] = f"bytes */{e.total_size}"
            return Response(status_code=e.status_code, headers=headers)
        status_code = 206
        headers["Content-Range"] = f"bytes {start}-{end}/{total_size}"
    else:
        start, end = 0, total_size - 1
        status_code = 200

    length = end - start + 1
    headers["Content-Length"] = str(length)

    # Open before returning so a concurrent delete surfaces here, not mid-stream
    f = await aiofiles.open(file_path, "rb")
    await f.seek(start)

    return StreamingResponse(_iter_open_file(f, length), status_code=status_code, headers=headers)
