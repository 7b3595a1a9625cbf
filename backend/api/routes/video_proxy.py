"""
Media proxy API route.

Serves audio/video for the player: cache hits straight from disk with Range
support, everything else streamed from upstream (and cached on the way
through when the response is a complete, reasonably sized file).
"""
import re
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from fastapi import APIRouter, HTTPException, Query, Request
from starlette.responses import Response, StreamingResponse

from core.config import MAX_SIZE_BYTES
from core.errors import ContentTypeError, ProxyError, SizeLimitError, UpstreamError
from core.security import get_user_from_request, is_content_type_allowed, is_url_allowed
from services.cache_manager import CacheManager
from services.fetcher import fetch_with_redirects, iter_response_body, stream_upstream
from services.range_server import serve_cached_file

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["video-proxy"])

_CONTENT_RANGE_TOTAL = re.compile(r"^bytes \d+-\d+/(\d+)$")
_CONTENT_RANGE_SPAN = re.compile(r"^bytes (\d+)-(\d+)/")


@dataclass
class UpstreamPlan:
    status_code: int
    content_type: str
    headers: Dict[str, str]
    total_size: Optional[int]


def _plan_upstream_response(upstream: httpx.Response) -> UpstreamPlan:
    """
    Check an upstream response and work out the headers we send back.

    Raises ProxyError subclasses for anything we refuse to pass through.
    """
    if not upstream.is_success:
        raise UpstreamError(f"Upstream returned {upstream.status_code}")

    content_type = upstream.headers.get("content-type")
    if not is_content_type_allowed(content_type):
        raise ContentTypeError("Upstream content type not allowed")

    headers = {
        "Content-Type": content_type,
        "Accept-Ranges": "bytes",
    }
    total_size = None

    content_length = upstream.headers.get("content-length")
    if content_length and content_length.isdigit():
        size = int(content_length)
        if size > MAX_SIZE_BYTES:
            raise SizeLimitError("Upstream resource too large")
        if size > 0:
            total_size = size
        headers["Content-Length"] = content_length
    else:
        content_length = None

    if upstream.status_code == 206:
        content_range = upstream.headers.get("content-range")
        if not content_range:
            raise UpstreamError("Upstream 206 missing Content-Range")
        headers["Content-Range"] = content_range

        total_match = _CONTENT_RANGE_TOTAL.match(content_range)
        if total_match and int(total_match.group(1)) > 0:
            total_size = int(total_match.group(1))

        # If upstream omitted Content-Length, compute it from Content-Range
        if not content_length:
            span_match = _CONTENT_RANGE_SPAN.match(content_range)
            if span_match:
                start, end = int(span_match.group(1)), int(span_match.group(2))
                headers["Content-Length"] = str(end - start + 1)

    return UpstreamPlan(
        status_code=upstream.status_code,
        content_type=content_type,
        headers=headers,
        total_size=total_size,
    )


@router.options("/video-proxy")
async def video_proxy_options():
    """Handle CORS preflight requests."""
    return Response(
        content="",
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, OPTIONS",
            "Access-Control-Allow-Headers": "*",
            "Access-Control-Max-Age": "86400",
        }
    )


@router.get("/video-proxy")
async def video_proxy(
    request: Request,
    url: str = Query("", description="Percent-encoded URL of the media to proxy"),
):
    """Proxy a remote audio/video resource, serving from the disk cache when possible."""
    user = get_user_from_request(request)
    if not user:
        raise HTTPException(status_code=401, detail="User identity required")

    if not is_url_allowed(url):
        raise HTTPException(status_code=400, detail="Invalid or disallowed URL")

    cache: CacheManager = request.app.state.cache_manager
    client: httpx.AsyncClient = request.app.state.proxy_client
    client_range = request.headers.get("range")

    cached = await cache.lookup(url)
    if cached:
        try:
            response = await serve_cached_file(client_range, cached.file_path, cached.content_type)
        except OSError as e:
            # Entry vanished between lookup and open; fall through to upstream
            logger.warning(f"Cache entry unreadable, refetching: {e}")
        else:
            logger.info(f"CACHE HIT: {url[:60]}... [range={client_range or 'none'}]")
            return response

    outgoing_headers = {}
    if client_range:
        outgoing_headers["Range"] = client_range

    try:
        upstream = await fetch_with_redirects(client, url, headers=outgoing_headers)
    except ProxyError as e:
        logger.warning(f"Proxy fetch failed for {url[:100]}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.detail)

    try:
        plan = _plan_upstream_response(upstream)
    except ProxyError as e:
        await upstream.aclose()
        logger.warning(f"Proxy refused {url[:100]}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.detail)

    size_mb = f"{plan.total_size / 1_000_000:.1f}" if plan.total_size else "?"
    final_url = str(upstream.url)
    logger.info(
        f"Proxy {url[:100]} -> {plan.status_code} {plan.content_type} ({size_mb}MB) "
        f"[client-range={client_range or 'none'}]"
        + (f" (redirected -> {final_url[:80]})" if final_url != url else "")
    )

    # Full 200 responses only; Range/206 bodies are partial
    if plan.status_code == 200 and not client_range and cache.is_cacheable_size(plan.total_size):
        body = cache.tee(url, iter_response_body(upstream), plan.content_type)
    else:
        if client_range and cache.is_cacheable_size(plan.total_size):
            # Players always seek with Range; warm the cache so the next request hits disk
            cache.prefetch(url)
        body = stream_upstream(upstream)

    return StreamingResponse(body, status_code=plan.status_code, headers=plan.headers)
